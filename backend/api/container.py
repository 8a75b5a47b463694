"""
Service Container
=================
Wires the checkout collaborators from Settings.

Stripe, Shippo and SendGrid are each optional: an unset key leaves the
matching collaborator as None (or, for email, a log-only dispatcher) and the
routes answer 503 where the gateway is required.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from config import Settings
from database import Database, PostgresAuditLog, PostgresOrderRepository, PostgresUserDirectory
from fulfillment.notifications import EmailNotificationDispatcher, INotificationDispatcher
from fulfillment.orchestrator import FulfillmentService
from fulfillment.shipping import IShippingClient, ShippoClient
from payments.errors import GatewayNotConfigured
from payments.gateway import IPaymentGateway, StripeGateway
from payments.reconciler import WebhookReconciler
from payments.session_builder import CheckoutSessionBuilder
from pipeline.event_bus import IEventBus, InMemoryEventBus
from storage.repository import (
    IAuditLog,
    IOrderRepository,
    IUserDirectory,
    InMemoryAuditLog,
    InMemoryOrderRepository,
    InMemoryUserDirectory,
)

logger = structlog.get_logger().bind(component="container")


@dataclass
class PaymentServices:
    settings: Settings
    orders: IOrderRepository
    audit: IAuditLog
    users: IUserDirectory
    event_bus: IEventBus
    fulfillment: FulfillmentService
    gateway: Optional[IPaymentGateway] = None
    builder: Optional[CheckoutSessionBuilder] = None
    reconciler: Optional[WebhookReconciler] = None
    shipping: Optional[IShippingClient] = None
    db: Optional[Database] = None

    def require_gateway(self) -> IPaymentGateway:
        if self.gateway is None:
            raise GatewayNotConfigured()
        return self.gateway

    @classmethod
    def assemble(
        cls,
        settings: Settings,
        orders: IOrderRepository,
        audit: IAuditLog,
        users: IUserDirectory,
        gateway: Optional[IPaymentGateway] = None,
        shipping: Optional[IShippingClient] = None,
        notifier: Optional[INotificationDispatcher] = None,
        event_bus: Optional[IEventBus] = None,
        db: Optional[Database] = None,
    ) -> "PaymentServices":
        """Build the graph from already-constructed adapters"""
        event_bus = event_bus or InMemoryEventBus()
        notifier = notifier or EmailNotificationDispatcher(settings, users)
        fulfillment = FulfillmentService(orders, shipping, notifier, audit, event_bus)

        builder = reconciler = None
        if gateway is not None:
            builder = CheckoutSessionBuilder(gateway, orders, audit, settings)
            reconciler = WebhookReconciler(gateway, orders, audit, settings)

        return cls(
            settings=settings,
            orders=orders,
            audit=audit,
            users=users,
            event_bus=event_bus,
            fulfillment=fulfillment,
            gateway=gateway,
            builder=builder,
            reconciler=reconciler,
            shipping=shipping,
            db=db,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "PaymentServices":
        db = None
        if settings.USE_POSTGRES:
            db = Database(settings.DATABASE_URL, settings.DB_MIN_POOL_SIZE, settings.DB_MAX_POOL_SIZE)
            orders, audit, users = PostgresOrderRepository(db), PostgresAuditLog(db), PostgresUserDirectory(db)
        else:
            orders, audit, users = InMemoryOrderRepository(), InMemoryAuditLog(), InMemoryUserDirectory()

        gateway = None
        if settings.gateway_configured:
            gateway = StripeGateway(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET)

        shipping = ShippoClient(settings) if settings.shipping_configured else None

        logger.info("services_configured",
                    persistence="postgres" if db else "memory",
                    stripe=gateway is not None,
                    webhook_secret=settings.webhook_configured,
                    shippo=shipping is not None,
                    sendgrid=settings.email_configured)

        return cls.assemble(settings, orders, audit, users, gateway=gateway, shipping=shipping, db=db)
