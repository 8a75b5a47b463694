"""
Webhook Reconciler
==================
The order-finalization state machine.

Features:
- Signature check against the raw body before any parsing
- Webhook Router Pattern (event type -> handler)
- Keyed lock per checkout session plus store-level create_if_absent,
  so a redelivered or concurrent webhook never creates a second order
- Optimistic concurrency on every update of an existing order
- Audit Logging (every applied transition traced with correlation_id)
- Post-commit events returned to the caller, never dispatched inline

Example:
    reconciler = WebhookReconciler(gateway, orders, audit, settings)
    outcome = await reconciler.handle(raw_body, request.headers.get("stripe-signature"))
    background_tasks.add_task(event_bus.publish_batch, outcome.events)
"""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel, Field

from config import Settings
from payments.errors import OrderNotFound
from payments.gateway import SESSION_EXPAND, IPaymentGateway, payment_intent_id
from payments.intent_codec import decode_intent
from pipeline.event_bus import (
    BaseEvent,
    OrderConfirmedEvent,
    OrderConfirmedPayload,
)
from pipeline.locks import KeyedLock
from schemas.checkout import ExistingOrderIntent, NewOrderIntent
from schemas.orders import (
    PAID_ORDER_STATUSES,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    ShippingAddress,
    from_cents,
    to_money,
)
from storage.repository import AuditEventType, AuditLogEntry, IAuditLog, IOrderRepository


LOCK_TIMEOUT_SECONDS = 30.0
PAID_SESSION_STATUSES = ("paid", "no_payment_required")


# =============================================================================
# RESULT MODELS
# =============================================================================

class ReconcileOutcome(BaseModel):
    """What a webhook did, plus the events to publish once it is committed"""
    status: str  # processed, already_processed, ignored, duplicate_payment, partial_refund
    event_type: Optional[str] = None
    order_id: Optional[str] = None
    events: list[BaseEvent] = Field(default_factory=list)


class VerificationResult(BaseModel):
    message: str
    payment_status: str
    fixed: bool = False
    events: list[BaseEvent] = Field(default_factory=list)


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

WebhookHandler = Callable[[dict, str], Awaitable[Any]]


class WebhookRouter:
    """Maps gateway event types to handlers"""

    def __init__(self):
        self._handlers: dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            return handler
        return decorator

    async def route(self, event: dict, correlation_id: str) -> Optional[Any]:
        event_type = event.get("type", "unknown")

        handler = self._handlers.get(event_type)
        if not handler:
            self._logger.info("no_handler", event_type=event_type, correlation_id=correlation_id)
            return None

        return await handler(event, correlation_id)


# =============================================================================
# GATEWAY SESSION HELPERS
# =============================================================================

def address_from_session(session: dict) -> Optional[ShippingAddress]:
    """Shipping address the gateway collected, if any"""
    customer = session.get("customer_details") or {}
    shipping = (
        session.get("shipping_details")
        or (session.get("collected_information") or {}).get("shipping_details")
    )
    source = shipping or (customer if customer.get("address") else None)
    if not source:
        return None

    addr = source.get("address") or {}
    return ShippingAddress(
        name=source.get("name") or customer.get("name") or "",
        email=customer.get("email"),
        phone=customer.get("phone"),
        street=", ".join(p for p in (addr.get("line1"), addr.get("line2")) if p),
        city=addr.get("city") or "",
        state=addr.get("state") or "",
        zip=addr.get("postal_code") or "",
        country=addr.get("country") or "US",
    )


def shipping_cents(session: dict) -> Optional[int]:
    cost = session.get("shipping_cost") or {}
    if cost.get("amount_total") is not None:
        return cost["amount_total"]
    return (session.get("total_details") or {}).get("amount_shipping")


def line_item_descriptions(session: dict) -> list[Optional[str]]:
    line_items = session.get("line_items") or {}
    return [item.get("description") for item in line_items.get("data", [])]


# =============================================================================
# RECONCILER
# =============================================================================

class WebhookReconciler:
    """
    Applies payment gateway callbacks to orders exactly once.

    checkout.session.completed        -> confirm existing order or create new one
    payment_intent.payment_failed     -> FAILED / CANCELLED (retry orders only)
    charge.refunded                   -> REFUNDED / REFUNDED (full refunds only)
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

        self.router = WebhookRouter()
        self._register_handlers()
        self._session_locks = KeyedLock()
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str = None):
        return self._base_logger.bind(
            component="webhook_reconciler",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    async def _emit_audit(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        correlation_id: str,
        previous_state: dict = None,
        new_state: dict = None,
        metadata: dict = None,
    ):
        await self.audit.append(AuditLogEntry(
            correlation_id=correlation_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            previous_state=previous_state,
            new_state=new_state,
            metadata=metadata or {},
            actor="webhook",
        ))

    @staticmethod
    def _state(order: Order) -> dict:
        return {"status": order.status.value, "payment_status": order.payment_status.value}

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def handle(self, payload: bytes, signature: Optional[str]) -> ReconcileOutcome:
        """
        Authenticate and apply one webhook delivery.

        Raises WebhookSignatureError / InvalidWebhookPayload (400),
        OrderNotFound (404); anything else propagates as a 500 so the
        gateway redelivers.
        """
        event = self.gateway.construct_event(payload, signature)

        event_type = event.get("type", "unknown")
        correlation_id = event.get("id") or str(uuid.uuid4())
        log = self._get_logger(correlation_id)
        log.info("webhook_received", event_type=event_type, livemode=event.get("livemode"))

        outcome = await self.router.route(event, correlation_id)
        if outcome is None:
            outcome = ReconcileOutcome(status="ignored")
        outcome.event_type = event_type

        log.info("webhook_processed",
                 event_type=event_type,
                 status=outcome.status,
                 order_id=outcome.order_id,
                 follow_up_events=len(outcome.events))
        return outcome

    def _register_handlers(self):

        @self.router.register("checkout.session.completed")
        async def handle_checkout_completed(event: dict, correlation_id: str):
            return await self._on_checkout_completed(event, correlation_id)

        @self.router.register("checkout.session.async_payment_succeeded")
        async def handle_async_payment_succeeded(event: dict, correlation_id: str):
            return await self._on_checkout_completed(event, correlation_id)

        @self.router.register("payment_intent.payment_failed")
        async def handle_payment_failed(event: dict, correlation_id: str):
            return await self._on_payment_failed(event, correlation_id)

        @self.router.register("charge.refunded")
        async def handle_refund(event: dict, correlation_id: str):
            return await self._on_refund(event, correlation_id)

    # =========================================================================
    # CHECKOUT COMPLETED
    # =========================================================================

    async def _on_checkout_completed(self, event: dict, correlation_id: str) -> ReconcileOutcome:
        log = self._get_logger(correlation_id)
        session_id = event["data"]["object"]["id"]

        try:
            async with self._session_locks.hold(session_id, timeout=LOCK_TIMEOUT_SECONDS):
                return await self._finalize_locked(session_id, correlation_id, log)
        except TimeoutError:
            log.error("checkout_lock_timeout", session_id=session_id)
            raise

    async def _finalize_locked(self, session_id: str, correlation_id: str, log) -> ReconcileOutcome:
        # Webhook payloads can be partial; always read the full session
        session = await self.gateway.retrieve_session(session_id, expand=SESSION_EXPAND)

        payment_state = session.get("payment_status")
        if payment_state and payment_state not in PAID_SESSION_STATUSES:
            log.info("checkout_awaiting_payment",
                     session_id=session_id,
                     payment_status=payment_state)
            return ReconcileOutcome(status="ignored")

        intent = decode_intent(session.get("metadata"))
        if isinstance(intent, ExistingOrderIntent):
            return await self._confirm_existing(intent, session, correlation_id, log)
        return await self._create_from_intent(intent, session, correlation_id, log)

    async def _confirm_existing(
        self,
        intent: ExistingOrderIntent,
        session: dict,
        correlation_id: str,
        log,
    ) -> ReconcileOutcome:
        order = await self.orders.get(intent.order_id)
        if order is None:
            log.error("order_not_found", order_id=intent.order_id, session_id=session["id"])
            raise OrderNotFound(intent.order_id)

        pid = payment_intent_id(session)

        if order.payment_status == PaymentStatus.COMPLETED:
            if order.payment_id == pid or (pid is None and order.checkout_session_id == session["id"]):
                log.info("checkout_already_processed", order_id=order.id, payment_id=pid)
                return ReconcileOutcome(status="already_processed", order_id=order.id)

            log.warning("duplicate_payment",
                        order_id=order.id,
                        recorded_payment_id=order.payment_id,
                        payment_id=pid)
            await self._emit_audit(
                AuditEventType.PAYMENT_CONFIRMED, "payment", pid or session["id"], correlation_id,
                metadata={"order_id": order.id, "duplicate_of": order.payment_id},
            )
            return ReconcileOutcome(status="duplicate_payment", order_id=order.id)

        if order.payment_status == PaymentStatus.REFUNDED:
            log.warning("checkout_for_refunded_order", order_id=order.id, payment_id=pid)
            return ReconcileOutcome(status="ignored", order_id=order.id)

        changes: dict = {
            "payment_id": pid,
            "checkout_session_id": session["id"],
            "paid_at": datetime.utcnow(),
        }

        amount_total = session.get("amount_total")
        if amount_total is not None:
            captured = from_cents(amount_total)
            if captured != to_money(order.total_amount):
                log.info("amount_reconciled",
                         order_id=order.id,
                         stored_total=str(order.total_amount),
                         captured_total=str(captured))
                changes["total_amount"] = captured

        collected = address_from_session(session)
        if collected and collected.is_shippable:
            changes["shipping_address"] = collected
        email = (session.get("customer_details") or {}).get("email")
        if email and not order.guest_email and not order.user_id:
            changes["guest_email"] = email

        target = order.status if order.status in PAID_ORDER_STATUSES else OrderStatus.CONFIRMED
        confirmed = order.transition(
            status=target,
            payment_status=PaymentStatus.COMPLETED,
            **changes,
        )
        await self.orders.update(confirmed, expected_version=order.version)

        await self._emit_audit(
            AuditEventType.PAYMENT_CONFIRMED, "order", order.id, correlation_id,
            previous_state=self._state(order),
            new_state=self._state(confirmed),
            metadata={"payment_id": pid, "session_id": session["id"], "is_retry": intent.is_retry},
        )

        log.info("order_payment_confirmed",
                 order_id=order.id,
                 order_number=order.order_number,
                 payment_id=pid,
                 total=str(confirmed.total_amount))

        return ReconcileOutcome(
            status="processed",
            order_id=order.id,
            events=[OrderConfirmedEvent(
                correlation_id=correlation_id,
                payload=OrderConfirmedPayload(
                    order_id=order.id,
                    order_number=order.order_number,
                    is_new_order=False,
                ),
            )],
        )

    async def _create_from_intent(
        self,
        intent: NewOrderIntent,
        session: dict,
        correlation_id: str,
        log,
    ) -> ReconcileOutcome:
        pid = payment_intent_id(session)
        session_id = session["id"]

        existing = None
        if pid:
            existing = await self.orders.get_by_payment_id(pid)
        if existing is None:
            existing = await self.orders.get_by_session_id(session_id)
        if existing:
            log.info("checkout_already_processed", order_id=existing.id, session_id=session_id)
            return ReconcileOutcome(status="already_processed", order_id=existing.id)

        order = self.build_order(intent, session)
        stored, created = await self.orders.create_if_absent(order)
        if not created:
            log.info("checkout_already_processed", order_id=stored.id, session_id=session_id)
            return ReconcileOutcome(status="already_processed", order_id=stored.id)

        await self._emit_audit(
            AuditEventType.ORDER_CREATED, "order", stored.id, correlation_id,
            new_state=self._state(stored),
            metadata={
                "order_number": stored.order_number,
                "payment_id": pid,
                "session_id": session_id,
                "total": str(stored.total_amount),
                "item_count": len(stored.items),
            },
        )

        log.info("order_created",
                 order_id=stored.id,
                 order_number=stored.order_number,
                 total=str(stored.total_amount),
                 tax=str(stored.tax_amount),
                 item_count=len(stored.items))

        return ReconcileOutcome(
            status="processed",
            order_id=stored.id,
            events=[OrderConfirmedEvent(
                correlation_id=correlation_id,
                payload=OrderConfirmedPayload(
                    order_id=stored.id,
                    order_number=stored.order_number,
                    is_new_order=True,
                ),
            )],
        )

    def build_order(self, intent: NewOrderIntent, session: dict) -> Order:
        """Materialize a paid order from its intent and the gateway session"""
        customer = session.get("customer_details") or {}

        if intent.has_address:
            address = intent.shipping_address.model_copy(update={
                "email": intent.shipping_address.email or intent.guest_email or customer.get("email"),
                "phone": intent.shipping_address.phone or customer.get("phone"),
            })
        else:
            address = address_from_session(session)

        subtotal = intent.subtotal
        if intent.shipping_rate:
            shipping = intent.shipping_amount
        else:
            shipping = from_cents(shipping_cents(session))
        # Gateway-reported discount and tax take precedence over the intent
        totals = session.get("total_details") or {}
        if totals.get("amount_discount") is not None:
            discount = from_cents(totals["amount_discount"])
        else:
            discount = to_money(intent.discount_amount)

        amount_total = session.get("amount_total")
        if amount_total is not None:
            total = from_cents(amount_total)
        else:
            total = to_money(subtotal + shipping - discount)
        if totals.get("amount_tax") is not None:
            tax = from_cents(totals["amount_tax"])
        else:
            tax = max(to_money(total - shipping - subtotal + discount), Decimal("0.00"))

        order_id = str(uuid.uuid4())
        names = line_item_descriptions(session)
        items = [
            OrderItem.from_cart_line(
                line,
                order_id=order_id,
                product_name=names[i] if i < len(names) else None,
            )
            for i, line in enumerate(intent.items)
        ]

        rate = intent.shipping_rate
        return Order(
            id=order_id,
            user_id=intent.user_id,
            guest_email=intent.guest_email or (address.email if address else None) or customer.get("email"),
            total_amount=total,
            subtotal_amount=subtotal,
            shipping_amount=shipping,
            tax_amount=tax,
            discount_amount=discount,
            discount_code=intent.discount_code,
            status=OrderStatus.CONFIRMED,
            payment_status=PaymentStatus.COMPLETED,
            payment_id=payment_intent_id(session),
            checkout_session_id=session["id"],
            shipping_address=address,
            shipping_rate_id=rate.rate_id if rate else None,
            shipping_carrier=rate.carrier if rate else None,
            shipping_service=rate.service_name if rate else None,
            shipping_cost=to_money(rate.amount) if rate else None,
            notes=intent.notes,
            items=items,
            paid_at=datetime.utcnow(),
        )

    # =========================================================================
    # PAYMENT FAILED
    # =========================================================================

    async def _on_payment_failed(self, event: dict, correlation_id: str) -> ReconcileOutcome:
        log = self._get_logger(correlation_id)
        intent_obj = event["data"]["object"]
        order_id = (intent_obj.get("metadata") or {}).get("orderId")
        error = intent_obj.get("last_payment_error") or {}

        if not order_id:
            # New-order checkouts have no row to mark
            log.info("payment_failed_without_order",
                     payment_id=intent_obj.get("id"),
                     error_code=error.get("code"))
            return ReconcileOutcome(status="ignored")

        order = await self.orders.get(order_id)
        if order is None:
            log.warning("payment_failed_order_not_found", order_id=order_id)
            return ReconcileOutcome(status="ignored")

        if order.payment_status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
            log.warning("payment_failed_after_completion",
                        order_id=order.id,
                        payment_status=order.payment_status.value)
            return ReconcileOutcome(status="ignored", order_id=order.id)

        if order.payment_status == PaymentStatus.FAILED and order.status == OrderStatus.CANCELLED:
            return ReconcileOutcome(status="already_processed", order_id=order.id)

        failed = order.transition(status=OrderStatus.CANCELLED, payment_status=PaymentStatus.FAILED)
        await self.orders.update(failed, expected_version=order.version)

        await self._emit_audit(
            AuditEventType.PAYMENT_FAILED, "order", order.id, correlation_id,
            previous_state=self._state(order),
            new_state=self._state(failed),
            metadata={
                "payment_id": intent_obj.get("id"),
                "error_code": error.get("code"),
                "decline_code": error.get("decline_code"),
                "message": error.get("message"),
            },
        )

        log.warning("payment_failed",
                    order_id=order.id,
                    error_code=error.get("code"),
                    decline_code=error.get("decline_code"))

        return ReconcileOutcome(status="processed", order_id=order.id)

    # =========================================================================
    # REFUNDS
    # =========================================================================

    async def _on_refund(self, event: dict, correlation_id: str) -> ReconcileOutcome:
        log = self._get_logger(correlation_id)
        charge = event["data"]["object"]
        pid = charge.get("payment_intent")
        amount_refunded = charge.get("amount_refunded", 0)

        order = await self.orders.get_by_payment_id(pid) if pid else None
        if order is None:
            log.warning("refund_order_not_found", payment_id=pid, charge_id=charge.get("id"))
            return ReconcileOutcome(status="ignored")

        if not charge.get("refunded"):
            await self._emit_audit(
                AuditEventType.PARTIAL_REFUND, "order", order.id, correlation_id,
                metadata={
                    "charge_id": charge.get("id"),
                    "amount_refunded": amount_refunded,
                    "amount": charge.get("amount"),
                },
            )
            log.info("partial_refund",
                     order_id=order.id,
                     amount_refunded=amount_refunded,
                     amount=charge.get("amount"))
            return ReconcileOutcome(status="partial_refund", order_id=order.id)

        if order.payment_status == PaymentStatus.REFUNDED:
            return ReconcileOutcome(status="already_processed", order_id=order.id)
        if order.payment_status != PaymentStatus.COMPLETED:
            log.warning("refund_for_unpaid_order",
                        order_id=order.id,
                        payment_status=order.payment_status.value)
            return ReconcileOutcome(status="ignored", order_id=order.id)

        refunded = order.transition(status=OrderStatus.REFUNDED, payment_status=PaymentStatus.REFUNDED)
        await self.orders.update(refunded, expected_version=order.version)

        await self._emit_audit(
            AuditEventType.PAYMENT_REFUNDED, "order", order.id, correlation_id,
            previous_state=self._state(order),
            new_state=self._state(refunded),
            metadata={"charge_id": charge.get("id"), "amount_refunded": amount_refunded},
        )

        log.info("refund_processed",
                 order_id=order.id,
                 charge_id=charge.get("id"),
                 amount_refunded=amount_refunded)

        return ReconcileOutcome(status="processed", order_id=order.id)

    # =========================================================================
    # STUCK PAYMENT VERIFICATION
    # =========================================================================

    async def verify_payment_status(
        self,
        order_id: str,
        correlation_id: Optional[str] = None,
    ) -> VerificationResult:
        """
        Resolve an order left in PENDING payment by a lost webhook.

        Only orders untouched for STALE_PENDING_MINUTES are checked; the most
        recent gateway sessions are scanned for one belonging to the order.
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)

        stale_before = datetime.utcnow() - timedelta(minutes=self.settings.STALE_PENDING_MINUTES)
        if order.payment_status != PaymentStatus.PENDING or order.updated_at >= stale_before:
            return VerificationResult(
                message="Payment status is current",
                payment_status=order.payment_status.value,
            )

        sessions = await self.gateway.list_sessions(limit=10)
        match = next(
            (s for s in sessions
             if (s.get("metadata") or {}).get("orderId") == order.id
             or (order.checkout_session_id and s.get("id") == order.checkout_session_id)),
            None,
        )

        if match and match.get("payment_status") in PAID_SESSION_STATUSES:
            target = order.status if order.status in PAID_ORDER_STATUSES else OrderStatus.CONFIRMED
            updated = order.transition(
                status=target,
                payment_status=PaymentStatus.COMPLETED,
                payment_id=payment_intent_id(match) or order.payment_id,
                checkout_session_id=match.get("id"),
                paid_at=datetime.utcnow(),
            )
            message, reported = "Payment status updated to paid", "paid"
            events = [OrderConfirmedEvent(
                correlation_id=correlation_id,
                source="payment_verifier",
                payload=OrderConfirmedPayload(
                    order_id=order.id,
                    order_number=order.order_number,
                    is_new_order=False,
                ),
            )]
        else:
            updated = order.transition(payment_status=PaymentStatus.FAILED)
            if match:
                message = "Payment status updated to failed"
            else:
                message = "No payment session found, marked as failed"
            reported = "failed"
            events = []

        await self.orders.update(updated, expected_version=order.version)
        await self.audit.append(AuditLogEntry(
            correlation_id=correlation_id,
            event_type=AuditEventType.PAYMENT_VERIFIED,
            entity_type="order",
            entity_id=order.id,
            previous_state=self._state(order),
            new_state=self._state(updated),
            metadata={"session_id": match.get("id") if match else None},
            actor="user",
        ))

        log.info("payment_status_verified",
                 order_id=order.id,
                 session_found=match is not None,
                 payment_status=updated.payment_status.value)

        return VerificationResult(message=message, payment_status=reported, fixed=True, events=events)
