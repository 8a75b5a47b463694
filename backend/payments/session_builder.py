"""
Checkout Session Builder
========================
Turns a cart, or an existing failed order, into a hosted checkout session.

Two mutually exclusive inputs:
- order_id      retry path, line items rebuilt from the stored order
- NewOrderIntent new order, intent packed into session metadata; no row is
                 written until the webhook confirms payment
"""

import uuid
from decimal import Decimal
from typing import Optional

import structlog

from config import Settings
from payments.errors import InvalidCheckoutRequest, InvalidStateForRetry, OrderNotFound
from payments.gateway import IPaymentGateway
from payments.intent_codec import encode_existing, encode_intent
from schemas.checkout import CheckoutSessionResult, NewOrderIntent
from schemas.orders import Order, PaymentStatus, ShippingRate, to_cents, to_money
from storage.repository import AuditEventType, AuditLogEntry, IAuditLog, IOrderRepository


class CheckoutSessionBuilder:
    """
    Builds and creates gateway checkout sessions.

    Example:
        builder = CheckoutSessionBuilder(gateway, orders, audit, settings)
        result = await builder.create(intent=NewOrderIntent(items=[...]))
        # redirect the browser to result.url
    """

    def __init__(
        self,
        gateway: IPaymentGateway,
        orders: IOrderRepository,
        audit: IAuditLog,
        settings: Settings,
    ):
        self.gateway = gateway
        self.orders = orders
        self.audit = audit
        self.settings = settings
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str = None):
        return self._base_logger.bind(
            component="session_builder",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def create(
        self,
        order_id: Optional[str] = None,
        intent: Optional[NewOrderIntent] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> CheckoutSessionResult:
        """Dispatch to the retry or new-order path; exactly one input allowed"""
        if bool(order_id) == bool(intent):
            raise InvalidCheckoutRequest("Either orderId or orderData must be provided")

        if order_id:
            return await self.create_for_existing(
                order_id, success_url, cancel_url, correlation_id
            )
        return await self.create_for_new(intent, success_url, cancel_url, correlation_id)

    # =========================================================================
    # RETRY PATH
    # =========================================================================

    async def create_for_existing(
        self,
        order_id: str,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> CheckoutSessionResult:
        correlation_id = correlation_id or str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)

        if order.payment_status != PaymentStatus.FAILED:
            log.info("retry_rejected",
                     order_id=order.id,
                     payment_status=order.payment_status.value)
            raise InvalidStateForRetry(
                order.payment_status.value,
                "Can only retry payment for failed orders",
            )

        metadata = encode_existing(order.id)
        params = self._base_params(
            line_items=self._line_items_from_order(order),
            metadata=metadata,
            success_url=success_url,
            cancel_url=cancel_url or f"{self.settings.FRONTEND_URL}/profile",
        )
        # payment_failed events carry the intent's metadata, not the session's
        params["payment_intent_data"] = {"metadata": {"orderId": order.id}}
        params.update(self._address_collection())
        if order.guest_email:
            params["customer_email"] = order.guest_email
        if order.discount_amount:
            params["discounts"] = await self._discounts(
                order.discount_amount, order.subtotal_amount, order.discount_code, log
            )

        session = await self.gateway.create_session(
            params, idempotency_key=f"retry_{order.id}_v{order.version}"
        )

        # Optimistic update; a concurrent webhook or retry surfaces as 409
        pending = order.transition(
            payment_status=PaymentStatus.PENDING,
            checkout_session_id=session["id"],
        )
        await self.orders.update(pending, expected_version=order.version)

        await self.audit.append(AuditLogEntry(
            correlation_id=correlation_id,
            event_type=AuditEventType.RETRY_SESSION_CREATED,
            entity_type="order",
            entity_id=order.id,
            previous_state={"payment_status": order.payment_status.value},
            new_state={"payment_status": pending.payment_status.value,
                       "checkout_session_id": session["id"]},
            actor="user",
        ))

        log.info("retry_session_created",
                 order_id=order.id,
                 order_number=order.order_number,
                 stripe_session_id=session["id"])

        return CheckoutSessionResult(url=session["url"], session_id=session["id"], order_id=order.id)

    # =========================================================================
    # NEW-ORDER PATH
    # =========================================================================

    async def create_for_new(
        self,
        intent: NewOrderIntent,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> CheckoutSessionResult:
        correlation_id = correlation_id or str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        # Raises MetadataTooLarge before anything reaches the gateway
        metadata = encode_intent(intent, budget=self.settings.METADATA_BUDGET_CHARS)

        params = self._base_params(
            line_items=self._line_items_from_intent(intent),
            metadata=metadata,
            success_url=success_url,
            cancel_url=cancel_url or f"{self.settings.FRONTEND_URL}/cart",
        )
        if intent.shipping_rate:
            params["shipping_options"] = [self._shipping_option(intent.shipping_rate)]
        if not intent.has_address:
            params.update(self._address_collection())
        email = intent.guest_email or (intent.shipping_address.email if intent.shipping_address else None)
        if email:
            params["customer_email"] = email
        if intent.discount_amount:
            params["discounts"] = await self._discounts(
                intent.discount_amount, intent.subtotal, intent.discount_code, log
            )

        session = await self.gateway.create_session(params)

        await self.audit.append(AuditLogEntry(
            correlation_id=correlation_id,
            event_type=AuditEventType.SESSION_CREATED,
            entity_type="checkout_session",
            entity_id=session["id"],
            new_state={"session_id": session["id"]},
            metadata={
                "line_count": len(intent.items),
                "subtotal": str(intent.subtotal),
                "metadata_chars": len(metadata["intent"]),
            },
            actor="user",
        ))

        log.info("checkout_created",
                 stripe_session_id=session["id"],
                 line_count=len(intent.items),
                 subtotal=str(intent.subtotal),
                 has_shipping_rate=intent.shipping_rate is not None)

        return CheckoutSessionResult(url=session["url"], session_id=session["id"])

    # =========================================================================
    # REQUEST PIECES
    # =========================================================================

    def _base_params(
        self,
        line_items: list[dict],
        metadata: dict,
        success_url: Optional[str],
        cancel_url: str,
    ) -> dict:
        return {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": line_items,
            "success_url": success_url or (
                f"{self.settings.FRONTEND_URL}/orders/success?session_id={{CHECKOUT_SESSION_ID}}"
            ),
            "cancel_url": cancel_url,
            "metadata": metadata,
            "billing_address_collection": "required",
        }

    def _line_item(self, name: str, price, quantity: int) -> dict:
        return {
            "price_data": {
                "currency": self.settings.CURRENCY,
                "product_data": {"name": name},
                "unit_amount": to_cents(price),
            },
            "quantity": max(1, int(quantity or 1)),
        }

    def _line_items_from_order(self, order: Order) -> list[dict]:
        return [
            self._line_item(item.product_name or item.product_id or "Item", item.price, item.quantity)
            for item in order.items
        ]

    def _line_items_from_intent(self, intent: NewOrderIntent) -> list[dict]:
        return [
            self._line_item(line.name or line.product_id, line.price, line.quantity)
            for line in intent.items
        ]

    def _shipping_option(self, rate: ShippingRate) -> dict:
        display_name = " ".join(p for p in (rate.carrier, rate.service_name) if p) or "Shipping"
        rate_data = {
            "type": "fixed_amount",
            "fixed_amount": {"amount": to_cents(rate.amount), "currency": self.settings.CURRENCY},
            "display_name": display_name,
        }
        if rate.estimated_days:
            rate_data["delivery_estimate"] = {
                "minimum": {"unit": "business_day", "value": rate.estimated_days},
                "maximum": {"unit": "business_day", "value": rate.estimated_days},
            }
        return {"shipping_rate_data": rate_data}

    async def _discounts(self, amount: Decimal, subtotal: Decimal, code: Optional[str], log) -> list[dict]:
        """One-off coupon so the gateway charges the discounted amount"""
        amount = to_money(amount)
        if amount >= to_money(subtotal):
            raise InvalidCheckoutRequest("Discount must be less than the order subtotal")

        coupon = await self.gateway.create_coupon(
            to_cents(amount), self.settings.CURRENCY, name=code or "Discount"
        )
        log.info("discount_applied", coupon_id=coupon["id"], discount_code=code, amount=str(amount))
        return [{"coupon": coupon["id"]}]

    def _address_collection(self) -> dict:
        return {
            "shipping_address_collection": {
                "allowed_countries": list(self.settings.ALLOWED_SHIPPING_COUNTRIES),
            },
            "phone_number_collection": {"enabled": True},
        }
