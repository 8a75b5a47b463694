"""
Fulfillment Service
===================
Best-effort side effects of a confirmed order: shipping label, then the
confirmation email. Runs as an order.confirmed subscriber, after the order
has been committed and the webhook answered.

A failure in either step is logged and the next step still runs; nothing
here can change the payment state of the order.
"""

import uuid
from decimal import Decimal
from typing import Optional

import structlog

from fulfillment.notifications import INotificationDispatcher, NotificationRecord
from fulfillment.shipping import IShippingClient, LabelPurchase, default_parcel
from payments.errors import ConcurrentUpdateError, ShippingError
from pipeline.event_bus import (
    BaseEvent,
    EventType,
    IEventBus,
    OrderFulfilledEvent,
    OrderFulfilledPayload,
)
from pipeline.locks import KeyedLock
from schemas.orders import Order
from storage.repository import AuditEventType, AuditLogEntry, IAuditLog, IOrderRepository

SHIPMENT_SAVE_ATTEMPTS = 5
SHIPMENT_FIELDS = (
    "shipment_id",
    "tracking_number",
    "tracking_url",
    "shipping_label_url",
    "shipping_carrier",
    "shipping_service",
    "shipping_cost",
)


class FulfillmentService:
    """
    Ships and notifies for confirmed orders.

    Example:
        fulfillment = FulfillmentService(orders, shippo, dispatcher, audit, event_bus)
        await fulfillment.register()
    """

    def __init__(
        self,
        orders: IOrderRepository,
        shipping: Optional[IShippingClient],
        notifier: INotificationDispatcher,
        audit: IAuditLog,
        event_bus: Optional[IEventBus] = None,
    ):
        self.orders = orders
        self.shipping = shipping
        self.notifier = notifier
        self.audit = audit
        self.event_bus = event_bus
        self._order_locks = KeyedLock()
        self._subscription_id: Optional[str] = None
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str = None):
        return self._base_logger.bind(
            component="fulfillment",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    async def register(self) -> str:
        self._subscription_id = await self.event_bus.subscribe(
            [EventType.ORDER_CONFIRMED], self.on_order_confirmed
        )
        return self._subscription_id

    async def unregister(self) -> None:
        if self._subscription_id:
            await self.event_bus.unsubscribe(self._subscription_id)
            self._subscription_id = None

    async def on_order_confirmed(self, event: BaseEvent) -> None:
        await self.fulfill(event.payload.order_id, event.correlation_id)

    async def fulfill(self, order_id: str, correlation_id: Optional[str] = None) -> Optional[Order]:
        log = self._get_logger(correlation_id)

        async with self._order_locks.hold(order_id):
            order = await self.orders.get(order_id)
            if order is None:
                log.error("fulfillment_order_not_found", order_id=order_id)
                return None

            label: Optional[LabelPurchase] = None
            try:
                order, label = await self._ship(order, correlation_id, log)
            except Exception as e:
                log.error("shipping_failed",
                          order_id=order.id,
                          order_number=order.order_number,
                          error=str(e),
                          error_type=type(e).__name__)

            record: Optional[NotificationRecord] = None
            try:
                record = await self.notifier.send_order_confirmation(order, label, correlation_id)
            except Exception as e:
                log.error("confirmation_email_failed",
                          order_id=order.id,
                          error=str(e),
                          error_type=type(e).__name__)

        log.info("order_fulfilled",
                 order_id=order.id,
                 label_purchased=label is not None,
                 tracking_number=order.tracking_number,
                 email_status=record.status.value if record else "failed")

        if self.event_bus is not None:
            await self.event_bus.publish(OrderFulfilledEvent(
                correlation_id=correlation_id or str(uuid.uuid4()),
                payload=OrderFulfilledPayload(
                    order_id=order.id,
                    tracking_number=order.tracking_number,
                    label_purchased=label is not None,
                    email_status=record.status.value if record else "failed",
                ),
            ))
        return order

    # =========================================================================
    # SHIPPING
    # =========================================================================

    async def _ship(self, order: Order, correlation_id: Optional[str], log) -> tuple[Order, Optional[LabelPurchase]]:
        if self.shipping is None:
            log.info("shipping_disabled", order_id=order.id)
            return order, None

        if order.tracking_number:
            log.info("label_already_purchased",
                     order_id=order.id,
                     tracking_number=order.tracking_number)
            return order, None

        address = order.shipping_address
        if address is None or not address.is_shippable:
            log.warning("shipping_address_incomplete", order_id=order.id)
            return order, None

        recorded = await self._recorded_shipment(order.id)
        if recorded is not None:
            log.warning("label_recovered_from_audit",
                        order_id=order.id,
                        shipment_id=recorded["shipment_id"])
            return await self._save_shipment(order, recorded, log), None

        meta = {"order_id": order.id, "order_number": order.order_number}
        if order.shipping_rate_id:
            # The customer paid for this quote; never substitute another rate
            rate_id = order.shipping_rate_id
            meta.update(
                carrier=order.shipping_carrier,
                service_name=order.shipping_service,
                amount=order.shipping_cost,
            )
        else:
            item_count = sum(item.quantity for item in order.items)
            rates = await self.shipping.quote(address, [default_parcel(item_count)])
            if not rates:
                raise ShippingError("No shipping rates available")
            rate = rates[0]
            rate_id = rate.rate_id
            meta.update(carrier=rate.carrier, service_name=rate.service_name, amount=rate.amount)
            log.info("shipping_rate_selected",
                     order_id=order.id,
                     rate_id=rate_id,
                     carrier=rate.carrier,
                     amount=str(rate.amount))

        label = await self.shipping.purchase(rate_id, meta)

        changes = {
            "shipment_id": label.shipment_id,
            "tracking_number": label.tracking_number,
            "tracking_url": label.tracking_url,
            "shipping_label_url": label.label_url,
            "shipping_carrier": label.carrier or order.shipping_carrier,
            "shipping_service": label.service_name or order.shipping_service,
            "shipping_cost": label.amount if label.amount is not None else order.shipping_cost,
        }
        # Recorded before the order write; a lost write is recovered from here
        await self.audit.append(AuditLogEntry(
            correlation_id=correlation_id or str(uuid.uuid4()),
            event_type=AuditEventType.SHIPMENT_CREATED,
            entity_type="order",
            entity_id=order.id,
            new_state=_shipment_state(changes),
            metadata={"rate_id": rate_id, "carrier": label.carrier},
        ))

        updated = await self._save_shipment(order, changes, log)
        return updated, label

    async def _recorded_shipment(self, order_id: str) -> Optional[dict]:
        """Shipment fields of a label bought earlier but never written to the order"""
        entries = await self.audit.get_by_entity(order_id)
        for entry in reversed(entries):
            if entry.event_type == AuditEventType.SHIPMENT_CREATED and entry.new_state:
                return _shipment_changes(entry.new_state)
        return None

    async def _save_shipment(self, order: Order, changes: dict, log) -> Order:
        """Write shipment fields, re-reading the order after each version conflict"""
        current = order
        for attempt in range(1, SHIPMENT_SAVE_ATTEMPTS + 1):
            try:
                return await self.orders.update(
                    current.with_changes(**changes), expected_version=current.version
                )
            except ConcurrentUpdateError:
                log.warning("shipment_save_conflict", order_id=order.id, attempt=attempt)

            current = await self.orders.get(order.id)
            if current is None:
                raise ShippingError(f"Order {order.id} disappeared before its shipment was saved")
            if current.tracking_number:
                return current

        raise ShippingError(
            f"Shipment {changes['shipment_id']} for order {order.id} not saved "
            f"after {SHIPMENT_SAVE_ATTEMPTS} attempts"
        )


def _shipment_state(changes: dict) -> dict:
    state = dict(changes)
    if state["shipping_cost"] is not None:
        state["shipping_cost"] = str(state["shipping_cost"])
    return state


def _shipment_changes(state: dict) -> dict:
    changes = {field: state.get(field) for field in SHIPMENT_FIELDS}
    if changes["shipping_cost"] is not None:
        changes["shipping_cost"] = Decimal(changes["shipping_cost"])
    return changes
