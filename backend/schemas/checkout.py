# schemas/checkout.py
# ============================================================================
# STOREFRONT CHECKOUT — CHECKOUT INTENT
# ============================================================================
# The transient "order that does not exist yet" carried through the payment
# gateway's metadata channel, plus the result of creating a session.
# ============================================================================

from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from schemas.orders import CartLine, ShippingAddress, ShippingRate, to_money


class ExistingOrderIntent(BaseModel):
    """Retry-payment path: the order row already exists"""
    kind: Literal["existing"] = "existing"
    order_id: str = Field(..., min_length=1)
    is_retry: bool = True


class NewOrderIntent(BaseModel):
    """New checkout: the order is materialized only once payment succeeds"""
    kind: Literal["new"] = "new"
    items: list[CartLine] = Field(..., min_length=1)
    user_id: Optional[str] = None
    guest_email: Optional[str] = None
    shipping_address: Optional[ShippingAddress] = None
    shipping_rate: Optional[ShippingRate] = None
    discount_code: Optional[str] = None
    discount_amount: Decimal = Decimal("0.00")
    notes: Optional[str] = None

    @property
    def subtotal(self) -> Decimal:
        return to_money(sum((line.price * line.quantity for line in self.items), Decimal("0")))

    @property
    def shipping_amount(self) -> Decimal:
        return to_money(self.shipping_rate.amount) if self.shipping_rate else Decimal("0.00")

    @property
    def has_address(self) -> bool:
        return bool(self.shipping_address and self.shipping_address.name)


CheckoutIntent = Annotated[
    Union[ExistingOrderIntent, NewOrderIntent],
    Field(discriminator="kind"),
]


class CheckoutSessionResult(BaseModel):
    """Checkout session creation result"""
    url: str
    session_id: str
    order_id: Optional[str] = None
