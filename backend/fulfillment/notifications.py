"""
Notification Dispatcher
=======================
Order confirmation email through SendGrid.

- Recipient: the order's guest email, else the registered user's email
- Unconfigured SendGrid: the email is logged, record status LOGGED
- Every attempt leaves a NotificationRecord; send failures are recorded and
  re-raised for the caller to log
"""

import asyncio
import html
import uuid
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Optional

import structlog
from pydantic import BaseModel, Field
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import From, Mail

from config import Settings
from fulfillment.shipping import LabelPurchase
from payments.errors import NotificationError
from schemas.orders import Order
from storage.repository import IUserDirectory

# Most recent dispatch records kept for inspection
RECENT_RECORDS_LIMIT = 200


class NotificationType(str, Enum):
    ORDER_CONFIRMATION = "order_confirmation"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    LOGGED = "logged"      # email disabled, content written to the log
    SKIPPED = "skipped"    # no recipient
    FAILED = "failed"


class NotificationRecord(BaseModel):
    """Email notification tracking"""
    notification_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_id: str
    correlation_id: Optional[str] = None

    notification_type: NotificationType = NotificationType.ORDER_CONFIRMATION
    recipient_email: Optional[str] = None
    subject: str = ""

    sendgrid_message_id: Optional[str] = None

    status: NotificationStatus = NotificationStatus.PENDING
    sent_at: Optional[datetime] = None
    last_error: Optional[str] = None


# =============================================================================
# TEMPLATE
# =============================================================================

def render_order_confirmation(
    order: Order,
    shipping: Optional[LabelPurchase],
    store_name: str,
) -> tuple[str, str]:
    """Return (subject, html) for the confirmation email"""
    esc = html.escape
    subject = f"Order Confirmation - #{order.order_number}"

    rows = "".join(
        f"<tr><td>{esc(item.product_name)}</td><td>{item.quantity}</td>"
        f"<td>${item.price}</td><td>${item.total}</td></tr>"
        for item in order.items
    )

    address_block = ""
    if order.shipping_address:
        a = order.shipping_address
        address_block = (
            f"<h3>Shipping to</h3><p>{esc(a.name)}<br>{esc(a.street)}<br>"
            f"{esc(a.city)}, {esc(a.state)} {esc(a.zip)}<br>{esc(a.country)}</p>"
        )

    tracking_block = ""
    if shipping:
        tracking_block = (
            f"<h3>Tracking</h3><p>{esc(shipping.carrier)} {esc(shipping.service_name)}: "
            f"<a href=\"{esc(shipping.tracking_url)}\">{esc(shipping.tracking_number)}</a></p>"
        )

    body = f"""<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; color: #333;">
  <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
    <h1>Order Confirmed!</h1>
    <p>Hi {esc(order.customer_name)}, thank you for shopping with {esc(store_name)}.</p>
    <p>Order number: <strong>{esc(order.order_number)}</strong></p>
    <table width="100%" cellpadding="4">
      <tr><th align="left">Item</th><th>Qty</th><th>Price</th><th>Total</th></tr>
      {rows}
    </table>
    <p>Subtotal: ${order.subtotal_amount}<br>
       Shipping: ${order.shipping_amount}<br>
       Tax: ${order.tax_amount}<br>
       <strong>Total: ${order.total_amount}</strong></p>
    {address_block}
    {tracking_block}
  </div>
</body>
</html>"""
    return subject, body


# =============================================================================
# DISPATCHERS
# =============================================================================

class INotificationDispatcher(ABC):

    @abstractmethod
    async def send_order_confirmation(
        self,
        order: Order,
        shipping: Optional[LabelPurchase] = None,
        correlation_id: Optional[str] = None,
    ) -> NotificationRecord:
        pass


class EmailNotificationDispatcher(INotificationDispatcher):
    """
    SendGrid-backed dispatcher.

    Example:
        dispatcher = EmailNotificationDispatcher(settings, user_directory)
        record = await dispatcher.send_order_confirmation(order, label)
    """

    def __init__(
        self,
        settings: Settings,
        users: IUserDirectory,
        client: Optional[SendGridAPIClient] = None,
    ):
        self.settings = settings
        self.users = users
        self._client = client or (
            SendGridAPIClient(settings.SENDGRID_API_KEY) if settings.email_configured else None
        )
        self.records: deque[NotificationRecord] = deque(maxlen=RECENT_RECORDS_LIMIT)
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str = None):
        return self._base_logger.bind(
            component="notification_dispatcher",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    async def resolve_recipient(self, order: Order) -> Optional[str]:
        if order.guest_email:
            return order.guest_email
        if order.user_id:
            return await self.users.get_email(order.user_id)
        return None

    async def send_order_confirmation(
        self,
        order: Order,
        shipping: Optional[LabelPurchase] = None,
        correlation_id: Optional[str] = None,
    ) -> NotificationRecord:
        log = self._get_logger(correlation_id)
        subject, body = render_order_confirmation(order, shipping, self.settings.STORE_NAME)

        record = NotificationRecord(
            order_id=order.id,
            correlation_id=correlation_id,
            recipient_email=await self.resolve_recipient(order),
            subject=subject,
        )
        self.records.append(record)

        if not record.recipient_email:
            record.status = NotificationStatus.SKIPPED
            log.warning("notification_skipped", order_id=order.id, reason="no_recipient")
            return record

        if self._client is None:
            record.status = NotificationStatus.LOGGED
            log.info("notification_logged",
                     order_id=order.id,
                     to=record.recipient_email,
                     subject=subject)
            return record

        message = Mail(
            from_email=From(self.settings.EMAIL_FROM, self.settings.EMAIL_FROM_NAME),
            to_emails=record.recipient_email,
            subject=subject,
            html_content=body,
        )

        try:
            response = await asyncio.to_thread(self._client.send, message)
            if response.status_code >= 400:
                raise NotificationError(f"SendGrid returned {response.status_code}")
        except Exception as e:
            record.status = NotificationStatus.FAILED
            record.last_error = str(e)
            log.error("notification_failed", order_id=order.id, error=str(e))
            if isinstance(e, NotificationError):
                raise
            raise NotificationError(str(e)) from e

        record.sendgrid_message_id = response.headers.get("X-Message-Id")
        record.status = NotificationStatus.SENT
        record.sent_at = datetime.utcnow()

        log.info("notification_sent",
                 order_id=order.id,
                 order_number=order.order_number,
                 message_id=record.sendgrid_message_id)
        return record
