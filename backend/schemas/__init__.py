# schemas/__init__.py
# ============================================================================
# STOREFRONT CHECKOUT — DOMAIN SCHEMAS
# ============================================================================

from schemas.orders import (
    CartLine,
    InvalidTransitionError,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    ShippingAddress,
    ShippingRate,
    from_cents,
    generate_order_number,
    to_cents,
    to_money,
)
from schemas.checkout import (
    CheckoutIntent,
    CheckoutSessionResult,
    ExistingOrderIntent,
    NewOrderIntent,
)

__all__ = [
    "CartLine",
    "CheckoutIntent",
    "CheckoutSessionResult",
    "ExistingOrderIntent",
    "InvalidTransitionError",
    "NewOrderIntent",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentStatus",
    "ShippingAddress",
    "ShippingRate",
    "from_cents",
    "generate_order_number",
    "to_cents",
    "to_money",
]
