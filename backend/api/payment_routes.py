# api/payment_routes.py
# ============================================================================
# STOREFRONT CHECKOUT — PAYMENT ROUTES
# ============================================================================
# /payment/* endpoints: session creation, retry, webhook, verification.
# Errors raised as CheckoutError are rendered by the app-level handler;
# anything unexpected becomes a 500 with a generic message.
# ============================================================================

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from api.container import PaymentServices
from payments.errors import CheckoutError, ConcurrentUpdateError, InvalidCheckoutRequest
from payments.gateway import to_plain
from schemas.checkout import NewOrderIntent
from schemas.orders import CartLine, ShippingAddress, ShippingRate

logger = structlog.get_logger().bind(component="payment_routes")

router = APIRouter(prefix="/payment", tags=["payment"])

NOTES_MAX_CHARS = 50
SESSION_SUMMARY_EXPAND = ["line_items", "customer", "payment_intent"]


def get_services(request: Request) -> PaymentServices:
    return request.app.state.services


def _server_error(message: str) -> JSONResponse:
    return JSONResponse(status_code=500, content={"message": message})


# =============================================================================
# REQUEST MODELS
# =============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)


class CheckoutItemBody(_CamelModel):
    product_id: Optional[str] = Field(default=None, alias="productId")
    quantity: int = Field(default=1, ge=1)
    price: Decimal = Field(default=Decimal("0"), ge=0)
    name: Optional[str] = None
    product_name: Optional[str] = Field(default=None, alias="productName")

    def to_cart_line(self) -> CartLine:
        if not self.product_id:
            raise InvalidCheckoutRequest("Every item needs a productId")
        return CartLine(
            product_id=self.product_id,
            quantity=self.quantity,
            price=self.price,
            name=self.product_name or self.name,
        )


class AddressBody(_CamelModel):
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    street: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = Field(default="", alias="zipCode")
    country: str = "US"

    def to_address(self) -> ShippingAddress:
        return ShippingAddress(
            name=self.name,
            email=self.email,
            phone=self.phone,
            street=self.street,
            city=self.city,
            state=self.state,
            zip=self.zip_code,
            country=self.country or "US",
        )


class ShippingRateBody(_CamelModel):
    object_id: str = Field(..., alias="objectId")
    carrier: str = ""
    amount: Decimal = Decimal("0")
    service_name: str = Field(default="", alias="serviceName")
    currency: str = "USD"
    estimated_days: Optional[int] = Field(default=None, alias="estimatedDays")

    def to_rate(self) -> ShippingRate:
        return ShippingRate(
            rate_id=self.object_id,
            carrier=self.carrier,
            service_name=self.service_name,
            amount=self.amount,
            currency=self.currency,
            estimated_days=self.estimated_days,
        )


class OrderDataBody(_CamelModel):
    user_id: Optional[str] = Field(default=None, alias="userId")
    order_items: list[CheckoutItemBody] = Field(default_factory=list, alias="orderItems")
    shipping_address: Optional[AddressBody] = Field(default=None, alias="shippingAddress")
    order_notes: Optional[str] = Field(default=None, alias="orderNotes")
    discount_code: Optional[str] = Field(default=None, alias="discountCode")
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0, alias="discountAmount")


class CreateCheckoutSessionBody(_CamelModel):
    order_id: Optional[str] = Field(default=None, alias="orderId")
    order_data: Optional[OrderDataBody] = Field(default=None, alias="orderData")
    items: list[CheckoutItemBody] = Field(default_factory=list)
    success_url: Optional[str] = Field(default=None, alias="successUrl")
    cancel_url: Optional[str] = Field(default=None, alias="cancelUrl")
    selected_shipping_rate: Optional[ShippingRateBody] = Field(default=None, alias="selectedShippingRate")

    def to_intent(self) -> Optional[NewOrderIntent]:
        data = self.order_data
        if data is None:
            return None

        # orderItems carries product ids when present; items is the display cart
        lines = [item.to_cart_line() for item in (data.order_items or self.items)]
        address = data.shipping_address.to_address() if data.shipping_address else None
        return NewOrderIntent(
            items=lines,
            user_id=data.user_id,
            guest_email=address.email if address else None,
            shipping_address=address,
            shipping_rate=self.selected_shipping_rate.to_rate() if self.selected_shipping_rate else None,
            discount_code=data.discount_code,
            discount_amount=data.discount_amount,
            notes=data.order_notes[:NOTES_MAX_CHARS] if data.order_notes else None,
        )


class RetryPaymentBody(_CamelModel):
    order_id: Optional[str] = Field(default=None, alias="orderId")
    success_url: Optional[str] = Field(default=None, alias="successUrl")
    cancel_url: Optional[str] = Field(default=None, alias="cancelUrl")


class VerifyPaymentBody(_CamelModel):
    order_id: Optional[str] = Field(default=None, alias="orderId")


# =============================================================================
# CHECKOUT
# =============================================================================

@router.post("/create-checkout-session")
async def create_checkout_session(
    body: CreateCheckoutSessionBody,
    services: PaymentServices = Depends(get_services),
):
    """Create a hosted checkout session for a cart or an existing order"""
    services.require_gateway()
    if not body.items:
        raise InvalidCheckoutRequest("No items provided")

    try:
        result = await services.builder.create(
            order_id=body.order_id,
            intent=body.to_intent(),
            success_url=body.success_url,
            cancel_url=body.cancel_url,
        )
    except CheckoutError:
        raise
    except Exception as e:
        logger.error("checkout_session_failed", error=str(e), error_type=type(e).__name__, exc_info=True)
        return _server_error("Failed to create checkout session")

    return {"url": result.url}


@router.post("/retry-payment")
async def retry_payment(
    body: RetryPaymentBody,
    services: PaymentServices = Depends(get_services),
):
    """New checkout session for an order whose payment failed"""
    services.require_gateway()
    if not body.order_id:
        raise InvalidCheckoutRequest("Order ID is required")

    try:
        result = await services.builder.create_for_existing(
            body.order_id,
            success_url=body.success_url,
            cancel_url=body.cancel_url,
        )
    except CheckoutError:
        raise
    except Exception as e:
        logger.error("retry_payment_failed", order_id=body.order_id, error=str(e), exc_info=True)
        return _server_error("Failed to create retry payment session")

    return {"url": result.url}


@router.post("/verify-payment-status")
async def verify_payment_status(
    body: VerifyPaymentBody,
    background_tasks: BackgroundTasks,
    services: PaymentServices = Depends(get_services),
):
    services.require_gateway()
    if not body.order_id:
        raise InvalidCheckoutRequest("Order ID is required")

    try:
        result = await services.reconciler.verify_payment_status(body.order_id)
    except CheckoutError:
        raise
    except Exception as e:
        logger.error("payment_verification_failed", order_id=body.order_id, error=str(e), exc_info=True)
        return _server_error("Failed to verify payment status")

    if result.events:
        background_tasks.add_task(services.event_bus.publish_batch, result.events)

    return {
        "message": result.message,
        "paymentStatus": result.payment_status,
        "fixed": result.fixed,
    }


@router.get("/session/{session_id}")
async def get_session(
    session_id: str,
    services: PaymentServices = Depends(get_services),
):
    """Session summary for the order success page"""
    gateway = services.require_gateway()

    try:
        session = to_plain(await gateway.retrieve_session(session_id, expand=SESSION_SUMMARY_EXPAND))
    except Exception as e:
        logger.error("session_fetch_failed", session_id=session_id, error=str(e))
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to fetch session", "message": str(e)},
        )

    line_items: Any = session.get("line_items") or {}
    return {
        "session": {
            "id": session.get("id"),
            "amount_total": session.get("amount_total"),
            "amount_subtotal": session.get("amount_subtotal"),
            "currency": session.get("currency"),
            "status": session.get("status"),
            "payment_status": session.get("payment_status"),
            "metadata": session.get("metadata") or {},
            "customer_details": session.get("customer_details"),
            "shipping_details": session.get("shipping_details"),
            "line_items": line_items.get("data", []) if isinstance(line_items, dict) else line_items,
        }
    }


# =============================================================================
# WEBHOOK
# =============================================================================

@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    services: PaymentServices = Depends(get_services),
):
    """
    Gateway callback. The raw body is handed over untouched for signature
    verification. A 5xx makes the gateway redeliver, so only failures worth
    retrying map to one.
    """
    services.require_gateway()
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        outcome = await services.reconciler.handle(payload, signature)
    except ConcurrentUpdateError as e:
        logger.warning("webhook_concurrent_update", order_id=e.order_id, error=str(e))
        return _server_error("Webhook processing failed")
    except CheckoutError:
        raise
    except Exception as e:
        logger.error("webhook_processing_failed", error=str(e), error_type=type(e).__name__, exc_info=True)
        return _server_error("Webhook processing failed")

    # Side effects run after the response, on the committed order
    if outcome.events:
        background_tasks.add_task(services.event_bus.publish_batch, outcome.events)

    return {"received": True}


# =============================================================================
# HEALTH
# =============================================================================

@router.get("/health")
async def payment_health(services: PaymentServices = Depends(get_services)):
    services.require_gateway()
    return {
        "status": "healthy",
        "configured": {
            "hasStripe": True,
            "hasWebhookSecret": services.settings.webhook_configured,
        },
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }
