"""Pytest fixtures and test doubles for the checkout service tests."""

import asyncio
import copy
import hashlib
import hmac
import json
import time
from decimal import Decimal
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from api.container import PaymentServices
from api.server import create_app
from config import Settings
from fulfillment.notifications import (
    INotificationDispatcher,
    NotificationRecord,
    NotificationStatus,
)
from fulfillment.orchestrator import FulfillmentService
from fulfillment.shipping import IShippingClient, LabelPurchase, Parcel
from payments.gateway import IPaymentGateway, StripeGateway
from payments.reconciler import WebhookReconciler
from payments.session_builder import CheckoutSessionBuilder
from pipeline.event_bus import InMemoryEventBus
from schemas.checkout import NewOrderIntent
from schemas.orders import (
    CartLine,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    ShippingAddress,
    ShippingRate,
)
from storage.repository import InMemoryAuditLog, InMemoryOrderRepository, InMemoryUserDirectory

WEBHOOK_SECRET = "whsec_test_secret"


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header value for payload."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def event_body(event_type: str, obj: dict, event_id: str = "evt_test_1") -> bytes:
    return json.dumps({
        "id": event_id,
        "type": event_type,
        "livemode": False,
        "data": {"object": obj},
    }).encode("utf-8")


# =============================================================================
# TEST DOUBLES
# =============================================================================

class FakeGateway(IPaymentGateway):
    """In-memory checkout sessions; webhook signatures are verified for real."""

    def __init__(self, webhook_secret: Optional[str] = WEBHOOK_SECRET):
        self._verifier = StripeGateway("sk_test_fake", webhook_secret)
        self.sessions: dict[str, dict] = {}
        self.created: list[tuple[dict, Optional[str]]] = []
        self.create_error: Optional[Exception] = None
        self.coupons: dict[str, dict] = {}

    async def create_session(self, params: dict, idempotency_key: Optional[str] = None) -> dict:
        if self.create_error:
            raise self.create_error
        self.created.append((params, idempotency_key))
        session_id = f"cs_test_{len(self.created)}"
        session = {
            "id": session_id,
            "url": f"https://checkout.stripe.test/c/pay/{session_id}",
            "metadata": dict(params.get("metadata") or {}),
            "payment_status": "unpaid",
            "status": "open",
            "currency": params["line_items"][0]["price_data"]["currency"] if params.get("line_items") else "usd",
            "payment_intent": None,
        }
        discounted = sum(self.coupons[d["coupon"]]["amount_off"] for d in params.get("discounts", []))
        if discounted:
            session["total_details"] = {"amount_discount": discounted}
        self.sessions[session_id] = session
        return copy.deepcopy(session)

    async def retrieve_session(self, session_id: str, expand: Optional[list[str]] = None) -> dict:
        if session_id not in self.sessions:
            raise LookupError(f"No such checkout session: {session_id}")
        return copy.deepcopy(self.sessions[session_id])

    async def list_sessions(self, limit: int = 10) -> list[dict]:
        return [copy.deepcopy(s) for s in reversed(list(self.sessions.values()))][:limit]

    async def create_coupon(self, amount_off: int, currency: str, name: Optional[str] = None) -> dict:
        coupon = {"id": f"coupon_test_{len(self.coupons) + 1}", "amount_off": amount_off,
                  "currency": currency, "name": name, "duration": "once"}
        self.coupons[coupon["id"]] = coupon
        return dict(coupon)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict:
        return self._verifier.construct_event(payload, signature)

    def complete(
        self,
        session_id: str,
        payment_intent: str = "pi_123",
        amount_total: Optional[int] = None,
        **fields,
    ) -> dict:
        """Mark a session paid, as the hosted page would."""
        session = self.sessions[session_id]
        session.update(
            payment_status="paid",
            status="complete",
            payment_intent=payment_intent,
            amount_total=amount_total,
            **fields,
        )
        return session

    def add_session(self, session: dict) -> dict:
        self.sessions[session["id"]] = session
        return session


class FakeShippingClient(IShippingClient):
    def __init__(self, rates: Optional[list[ShippingRate]] = None):
        self.rates = rates if rates is not None else [
            ShippingRate(rate_id="rate_cheapest", carrier="USPS", service_name="Ground Advantage",
                         amount=Decimal("5.25"), estimated_days=3),
        ]
        self.quotes: list[tuple[ShippingAddress, list[Parcel]]] = []
        self.purchases: list[tuple[str, dict]] = []
        self.purchase_error: Optional[Exception] = None
        self.closed = False

    async def quote(self, address: ShippingAddress, parcels: list[Parcel]) -> list[ShippingRate]:
        self.quotes.append((address, parcels))
        return list(self.rates)

    async def purchase(self, rate_id: str, shipment_meta: dict) -> LabelPurchase:
        if self.purchase_error:
            raise self.purchase_error
        self.purchases.append((rate_id, shipment_meta))
        number = f"9400{len(self.purchases):018d}"
        return LabelPurchase(
            shipment_id=f"txn_{len(self.purchases)}",
            tracking_number=number,
            tracking_url=f"https://goshippo.com/track/{number}",
            label_url=f"https://shippo.test/label/{number}.pdf",
            carrier=shipment_meta.get("carrier") or "USPS",
            service_name=shipment_meta.get("service_name") or "Ground Advantage",
            amount=shipment_meta.get("amount"),
        )

    async def close(self) -> None:
        self.closed = True


class FakeNotifier(INotificationDispatcher):
    def __init__(self):
        self.sent: list[tuple[Order, Optional[LabelPurchase]]] = []
        self.error: Optional[Exception] = None

    async def send_order_confirmation(self, order, shipping=None, correlation_id=None) -> NotificationRecord:
        if self.error:
            raise self.error
        self.sent.append((order, shipping))
        return NotificationRecord(
            order_id=order.id,
            correlation_id=correlation_id,
            recipient_email=order.guest_email,
            subject=f"Order Confirmation - #{order.order_number}",
            status=NotificationStatus.SENT,
        )


# =============================================================================
# BUILDERS
# =============================================================================

def make_address(**overrides) -> ShippingAddress:
    fields = dict(
        name="Jane Doe",
        email="jane@example.com",
        street="1 Main St",
        city="X",
        state="NY",
        zip="10001",
        country="US",
    )
    fields.update(overrides)
    return ShippingAddress(**fields)


def make_intent(**overrides) -> NewOrderIntent:
    fields = dict(
        items=[CartLine(product_id="p1", quantity=2, price=Decimal("4.99"), name="Black Licorice Rope")],
        guest_email="jane@example.com",
        shipping_address=make_address(),
    )
    fields.update(overrides)
    return NewOrderIntent(**fields)


def make_order(**overrides) -> Order:
    order_id = overrides.pop("id", "order-1")
    fields = dict(
        id=order_id,
        order_number="ORD-1700000000000-ABCDEFGHI",
        guest_email="jane@example.com",
        total_amount=Decimal("9.98"),
        subtotal_amount=Decimal("9.98"),
        status=OrderStatus.CANCELLED,
        payment_status=PaymentStatus.FAILED,
        shipping_address=make_address(),
        items=[OrderItem(order_id=order_id, product_id="p1", product_name="Black Licorice Rope",
                         quantity=2, price=Decimal("4.99"), total=Decimal("9.98"))],
    )
    fields.update(overrides)
    return Order(**fields)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def settings():
    return Settings(
        STRIPE_SECRET_KEY="sk_test_fake",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        FRONTEND_URL="https://shop.test",
        LOG_FORMAT="console",
        SHIPPO_QUEUED_RETRY_SECONDS=0,
    )


@pytest.fixture
def orders():
    return InMemoryOrderRepository()


@pytest.fixture
def audit():
    return InMemoryAuditLog()


@pytest.fixture
def users():
    return InMemoryUserDirectory({"user-42": "member@example.com"})


@pytest.fixture
def event_bus():
    return InMemoryEventBus()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def shipping():
    return FakeShippingClient()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def builder(gateway, orders, audit, settings):
    return CheckoutSessionBuilder(gateway, orders, audit, settings)


@pytest.fixture
def reconciler(gateway, orders, audit, settings):
    return WebhookReconciler(gateway, orders, audit, settings)


@pytest.fixture
def fulfillment(orders, shipping, notifier, audit, event_bus):
    return FulfillmentService(orders, shipping, notifier, audit, event_bus)


@pytest.fixture
def services(settings, orders, audit, users, gateway, shipping, notifier, event_bus):
    return PaymentServices.assemble(
        settings, orders, audit, users,
        gateway=gateway, shipping=shipping, notifier=notifier, event_bus=event_bus,
    )


@pytest.fixture
def client(services):
    with TestClient(create_app(services=services)) as test_client:
        yield test_client


@pytest.fixture
def unconfigured_client(orders, audit, users, event_bus):
    settings = Settings(LOG_FORMAT="console")
    services = PaymentServices.assemble(settings, orders, audit, users, event_bus=event_bus)
    with TestClient(create_app(services=services)) as test_client:
        yield test_client



@pytest.fixture
def run():
    """Drive store coroutines from synchronous TestClient tests"""
    return asyncio.run
