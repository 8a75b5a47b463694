"""
Payment Gateway Client
======================
Thin async boundary around the Stripe SDK.

- IPaymentGateway: what the session builder and reconciler depend on
- StripeGateway: blocking SDK calls pushed to a worker thread, API key
  passed per call (no module-level stripe.api_key)
- Webhook authentication against the raw request body, before any parsing

Everything returned across the boundary is a plain dict so handlers and
test doubles speak the same shape.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Optional

import stripe
import structlog

from payments.errors import InvalidWebhookPayload, WebhookSignatureError


SESSION_EXPAND = ["line_items", "payment_intent"]
COUPON_NAME_MAX_CHARS = 40


def to_plain(obj: Any) -> Any:
    """Convert a StripeObject (or anything JSON-like) into plain dicts/lists"""
    if isinstance(obj, stripe.StripeObject):
        return json.loads(str(obj))
    return obj


def payment_intent_id(session: dict) -> Optional[str]:
    """A session's payment_intent is an id string, or an object once expanded"""
    intent = session.get("payment_intent")
    if isinstance(intent, dict):
        return intent.get("id")
    return intent


class IPaymentGateway(ABC):
    """Payment gateway interface"""

    @abstractmethod
    async def create_session(self, params: dict, idempotency_key: Optional[str] = None) -> dict:
        """Create a hosted checkout session; returns at least {id, url}"""
        pass

    @abstractmethod
    async def retrieve_session(self, session_id: str, expand: Optional[list[str]] = None) -> dict:
        pass

    @abstractmethod
    async def list_sessions(self, limit: int = 10) -> list[dict]:
        """Most recent checkout sessions, newest first"""
        pass

    @abstractmethod
    async def create_coupon(self, amount_off: int, currency: str, name: Optional[str] = None) -> dict:
        """Single-use fixed-amount coupon; returns at least {id}"""
        pass

    @abstractmethod
    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict:
        """Authenticate a webhook body and return the parsed event"""
        pass


class StripeGateway(IPaymentGateway):
    """
    Stripe-backed gateway.

    Example:
        gateway = StripeGateway(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET)
        session = await gateway.create_session({...})
        event = gateway.construct_event(raw_body, request.headers["stripe-signature"])
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: Optional[str] = None,
        tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
    ):
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._tolerance = tolerance
        self._logger = structlog.get_logger().bind(component="stripe_gateway")

    @property
    def has_webhook_secret(self) -> bool:
        return bool(self._webhook_secret)

    async def create_session(self, params: dict, idempotency_key: Optional[str] = None) -> dict:
        options = {"api_key": self._api_key}
        if idempotency_key:
            options["idempotency_key"] = idempotency_key
        try:
            session = await asyncio.to_thread(stripe.checkout.Session.create, **params, **options)
        except stripe.StripeError as e:
            self._logger.error("session_create_failed", error=str(e), error_type=type(e).__name__)
            raise
        return to_plain(session)

    async def retrieve_session(self, session_id: str, expand: Optional[list[str]] = None) -> dict:
        session = await asyncio.to_thread(
            stripe.checkout.Session.retrieve,
            session_id,
            api_key=self._api_key,
            expand=expand or SESSION_EXPAND,
        )
        return to_plain(session)

    async def list_sessions(self, limit: int = 10) -> list[dict]:
        page = await asyncio.to_thread(
            stripe.checkout.Session.list, limit=limit, api_key=self._api_key
        )
        return [to_plain(s) for s in page.data]

    async def create_coupon(self, amount_off: int, currency: str, name: Optional[str] = None) -> dict:
        coupon = await asyncio.to_thread(
            stripe.Coupon.create,
            amount_off=amount_off,
            currency=currency,
            duration="once",
            max_redemptions=1,
            name=(name or "Discount")[:COUPON_NAME_MAX_CHARS],
            api_key=self._api_key,
        )
        return to_plain(coupon)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict:
        if not signature:
            self._logger.warning("webhook_signature_missing")
            raise WebhookSignatureError("Missing Stripe-Signature header")
        if not self._webhook_secret:
            self._logger.error("webhook_secret_missing")
            raise WebhookSignatureError("Webhook secret not configured")

        body = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload

        # Verify BEFORE parsing
        try:
            stripe.WebhookSignature.verify_header(
                body, signature, self._webhook_secret, self._tolerance
            )
        except stripe.SignatureVerificationError as e:
            self._logger.warning("webhook_signature_invalid", error=str(e))
            raise WebhookSignatureError() from e

        try:
            event = json.loads(body)
        except ValueError as e:
            raise InvalidWebhookPayload("Webhook body is not valid JSON") from e
        if not isinstance(event, dict) or "type" not in event:
            raise InvalidWebhookPayload("Webhook body is not an event")
        return event
