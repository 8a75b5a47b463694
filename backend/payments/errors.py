# payments/errors.py
# ============================================================================
# STOREFRONT CHECKOUT — ERROR HIERARCHY
# ============================================================================
# Every error the checkout flow raises on purpose derives from CheckoutError.
# The API layer renders them as {"message": ..., **extra} with status_code.
# ============================================================================

from typing import Any, Optional


class CheckoutError(Exception):
    """Base error carrying an HTTP status and optional response fields"""
    status_code: int = 500
    default_message: str = "Checkout error"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def to_response(self) -> dict:
        return {"message": self.message, **self.extra}


class GatewayNotConfigured(CheckoutError):
    status_code = 503
    default_message = "Stripe not configured"


class WebhookSignatureError(CheckoutError):
    status_code = 400
    default_message = "Invalid signature"


class InvalidWebhookPayload(CheckoutError):
    status_code = 400
    default_message = "Invalid webhook payload"


class OrderNotFound(CheckoutError):
    status_code = 404
    default_message = "Order not found"

    def __init__(self, order_id: Optional[str] = None, message: Optional[str] = None):
        super().__init__(message)
        self.order_id = order_id


class InvalidStateForRetry(CheckoutError):
    status_code = 400
    default_message = "Order is not in a failed payment state"

    def __init__(self, current_status: str, message: Optional[str] = None):
        super().__init__(message, currentStatus=current_status)
        self.current_status = current_status


class MetadataTooLarge(CheckoutError):
    status_code = 400
    default_message = "Checkout data exceeds the payment metadata limit"

    def __init__(self, size: int, limit: int, message: Optional[str] = None):
        super().__init__(
            message or f"Checkout data is {size} characters; the limit is {limit}",
        )
        self.size = size
        self.limit = limit


class InvalidCheckoutRequest(CheckoutError):
    status_code = 400
    default_message = "Invalid checkout request"


class ConcurrentUpdateError(CheckoutError):
    """Stored version differs from the one the caller read"""
    status_code = 409
    default_message = "Order was modified concurrently"

    def __init__(self, order_id: str, expected_version: int, actual_version: Optional[int] = None):
        super().__init__(
            f"Order {order_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.order_id = order_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class ShippingError(Exception):
    """Label purchase or rate quote failed; logged by fulfillment, never surfaced"""


class NotificationError(Exception):
    """Email dispatch failed; logged by fulfillment, never surfaced"""
