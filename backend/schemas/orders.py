# schemas/orders.py
# ============================================================================
# STOREFRONT CHECKOUT — ORDER DOMAIN MODELS
# ============================================================================
# Orders, order items, shipping details and the status state machine.
# Every status change goes through Order.transition() so the
# payment/order status pairing is checked in one place.
# ============================================================================

import random
import string
import time
import uuid
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, computed_field


CENTS = Decimal("0.01")


def to_money(value) -> Decimal:
    """Normalize any numeric input to a two-place Decimal"""
    if isinstance(value, Decimal):
        amount = value
    else:
        amount = Decimal(str(value if value not in (None, "") else 0))
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def to_cents(value) -> int:
    """Convert a money value to integer cents (never negative)"""
    return max(0, int((to_money(value) * 100).to_integral_value(rounding=ROUND_HALF_UP)))


def from_cents(cents: Optional[int]) -> Decimal:
    return to_money(Decimal(cents or 0) / 100)


def generate_order_number() -> str:
    """ORD-<epoch millis>-<9 random base36 chars>"""
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=9))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


ORDER_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.REFUNDED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED},
    # A failed payment cancels the order; a successful retry revives it.
    OrderStatus.CANCELLED: {OrderStatus.CONFIRMED},
    OrderStatus.REFUNDED: set(),
}

PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: {PaymentStatus.PENDING, PaymentStatus.COMPLETED},
    PaymentStatus.REFUNDED: set(),
}

PAID_ORDER_STATUSES = frozenset({
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
})


class InvalidTransitionError(ValueError):
    """Raised when a status change is not allowed by the state machine"""


# =============================================================================
# VALUE OBJECTS
# =============================================================================

class ShippingAddress(BaseModel):
    """Destination address for an order"""
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    street: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    country: str = "US"

    @property
    def first_name(self) -> Optional[str]:
        parts = self.name.split()
        return parts[0] if parts else None

    @property
    def last_name(self) -> Optional[str]:
        parts = self.name.split()
        return " ".join(parts[1:]) or None

    @property
    def is_shippable(self) -> bool:
        return all([self.name, self.street, self.city, self.state, self.zip, self.country])


class ShippingRate(BaseModel):
    """A carrier quote the customer can select at checkout"""
    rate_id: str
    carrier: str = ""
    service_name: str = ""
    amount: Decimal = Decimal("0.00")
    currency: str = "USD"
    estimated_days: Optional[int] = None


class CartLine(BaseModel):
    """One cart entry as submitted at checkout"""
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(default=1, ge=1)
    price: Decimal = Field(default=Decimal("0.00"), ge=0)
    name: Optional[str] = None

    @computed_field
    @property
    def line_total(self) -> Decimal:
        return to_money(self.price * self.quantity)


# =============================================================================
# ORDER AGGREGATE
# =============================================================================

class OrderItem(BaseModel):
    """Immutable line of an order; price and name are snapshots at purchase time"""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_id: Optional[str] = None
    product_id: str
    product_name: str = "Product"
    quantity: int = Field(ge=1)
    price: Decimal
    total: Decimal

    model_config = {"frozen": True}

    @classmethod
    def from_cart_line(cls, line: CartLine, order_id: Optional[str] = None,
                       product_name: Optional[str] = None) -> "OrderItem":
        price = to_money(line.price)
        return cls(
            order_id=order_id,
            product_id=line.product_id,
            product_name=product_name or line.name or "Product",
            quantity=line.quantity,
            price=price,
            total=to_money(price * line.quantity),
        )


class Order(BaseModel):
    """Core order entity"""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_number: str = Field(default_factory=generate_order_number)

    user_id: Optional[str] = None
    guest_email: Optional[str] = None

    total_amount: Decimal = Decimal("0.00")
    subtotal_amount: Decimal = Decimal("0.00")
    shipping_amount: Decimal = Decimal("0.00")
    tax_amount: Decimal = Decimal("0.00")
    discount_amount: Decimal = Decimal("0.00")
    discount_code: Optional[str] = None

    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_id: Optional[str] = None
    checkout_session_id: Optional[str] = None

    shipping_address: Optional[ShippingAddress] = None

    shipping_rate_id: Optional[str] = None
    shipping_carrier: Optional[str] = None
    shipping_service: Optional[str] = None
    shipping_cost: Optional[Decimal] = None
    shipment_id: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    shipping_label_url: Optional[str] = None

    notes: Optional[str] = None
    items: list[OrderItem] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    paid_at: Optional[datetime] = None

    version: int = 1  # Optimistic locking

    @computed_field
    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.COMPLETED

    @property
    def customer_name(self) -> str:
        if self.shipping_address and self.shipping_address.name:
            return self.shipping_address.name
        return "Customer"

    def can_transition(
        self,
        status: Optional[OrderStatus] = None,
        payment_status: Optional[PaymentStatus] = None,
    ) -> bool:
        try:
            self._check_transition(status, payment_status)
        except InvalidTransitionError:
            return False
        return True

    def _check_transition(
        self,
        status: Optional[OrderStatus],
        payment_status: Optional[PaymentStatus],
    ) -> None:
        new_status = status or self.status
        new_payment = payment_status or self.payment_status

        if new_status != self.status and new_status not in ORDER_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Order {self.order_number}: status {self.status.value} -> {new_status.value} not allowed"
            )
        if new_payment != self.payment_status and new_payment not in PAYMENT_TRANSITIONS[self.payment_status]:
            raise InvalidTransitionError(
                f"Order {self.order_number}: payment {self.payment_status.value} -> {new_payment.value} not allowed"
            )
        if new_payment == PaymentStatus.COMPLETED and new_status not in PAID_ORDER_STATUSES:
            raise InvalidTransitionError(
                f"Order {self.order_number}: completed payment requires a confirmed order, got {new_status.value}"
            )

    def transition(
        self,
        status: Optional[OrderStatus] = None,
        payment_status: Optional[PaymentStatus] = None,
        **changes,
    ) -> "Order":
        """Immutable state transition; bumps the version"""
        self._check_transition(status, payment_status)
        update = dict(changes)
        if status is not None:
            update["status"] = status
        if payment_status is not None:
            update["payment_status"] = payment_status
        update["updated_at"] = datetime.utcnow()
        update["version"] = self.version + 1
        return self.model_copy(update=update)

    def with_changes(self, **changes) -> "Order":
        """Non-status field update (shipment details etc.); bumps the version"""
        changes["updated_at"] = datetime.utcnow()
        changes["version"] = self.version + 1
        return self.model_copy(update=changes)
