"""
Order Store
===========
Persistence interfaces for orders, the audit trail and user lookups, plus
in-memory implementations used by tests and the local demo.

The PostgreSQL implementations live in database.py and satisfy the same
interfaces, so the reconciler never knows which one it talks to.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from payments.errors import ConcurrentUpdateError
from schemas.orders import Order


# =============================================================================
# AUDIT LOG MODELS
# =============================================================================

class AuditEventType(str, Enum):
    SESSION_CREATED = "session_created"
    RETRY_SESSION_CREATED = "retry_session_created"
    ORDER_CREATED = "order_created"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REFUNDED = "payment_refunded"
    PARTIAL_REFUND = "partial_refund"
    PAYMENT_VERIFIED = "payment_verified"
    SHIPMENT_CREATED = "shipment_created"


class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    event_type: AuditEventType
    entity_type: str  # "order", "payment", "checkout_session", "webhook"
    entity_id: str
    previous_state: Optional[dict] = None
    new_state: Optional[dict] = None
    metadata: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    actor: str = "system"  # "system", "webhook", "user"

    model_config = {"frozen": True}


# =============================================================================
# INTERFACES
# =============================================================================

class IOrderRepository(ABC):
    """Order store interface"""

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_order_number(self, order_number: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_payment_id(self, payment_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_session_id(self, session_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def create_if_absent(self, order: Order) -> tuple[Order, bool]:
        """
        Insert order with its items atomically unless an order already exists
        for the same payment id or checkout session id.

        Returns (stored_order, created).
        """
        pass

    @abstractmethod
    async def update(self, order: Order, expected_version: int) -> Order:
        """
        Replace the stored order if its version still equals expected_version.
        Raises ConcurrentUpdateError otherwise.
        """
        pass


class IAuditLog(ABC):
    """Append-only audit log"""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        pass

    @abstractmethod
    async def get_by_entity(self, entity_id: str) -> list[AuditLogEntry]:
        pass


class IUserDirectory(ABC):
    """Looks up contact details of registered users"""

    @abstractmethod
    async def get_email(self, user_id: str) -> Optional[str]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryOrderRepository(IOrderRepository):
    """Lock-guarded in-memory order store"""

    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._lock = asyncio.Lock()

    def _find(self, **criteria) -> Optional[Order]:
        for order in self._orders.values():
            if all(value is not None and getattr(order, field) == value
                   for field, value in criteria.items()):
                return order
        return None

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            return self._orders.get(order_id)

    async def get_by_order_number(self, order_number: str) -> Optional[Order]:
        async with self._lock:
            return self._find(order_number=order_number)

    async def get_by_payment_id(self, payment_id: str) -> Optional[Order]:
        async with self._lock:
            return self._find(payment_id=payment_id)

    async def get_by_session_id(self, session_id: str) -> Optional[Order]:
        async with self._lock:
            return self._find(checkout_session_id=session_id)

    async def create_if_absent(self, order: Order) -> tuple[Order, bool]:
        async with self._lock:
            existing = (
                (order.payment_id and self._find(payment_id=order.payment_id))
                or (order.checkout_session_id and self._find(checkout_session_id=order.checkout_session_id))
                or self._find(order_number=order.order_number)
            )
            if existing:
                return existing, False
            self._orders[order.id] = order
            return order, True

    async def update(self, order: Order, expected_version: int) -> Order:
        async with self._lock:
            stored = self._orders.get(order.id)
            if stored is None or stored.version != expected_version:
                raise ConcurrentUpdateError(
                    order.id, expected_version, stored.version if stored else None
                )
            self._orders[order.id] = order
            return order

    # Testing utilities
    async def save(self, order: Order) -> Order:
        """Unconditional write, used to seed fixtures"""
        async with self._lock:
            self._orders[order.id] = order
            return order

    async def count(self) -> int:
        async with self._lock:
            return len(self._orders)

    async def all(self) -> list[Order]:
        async with self._lock:
            return list(self._orders.values())


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: list[AuditLogEntry] = []
        self._by_correlation: dict[str, list[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            self._by_correlation[entry.correlation_id].append(entry)

    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return list(self._by_correlation.get(correlation_id, []))

    async def get_by_entity(self, entity_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return [e for e in self._logs if e.entity_id == entity_id]

    @property
    def entries(self) -> list[AuditLogEntry]:
        return list(self._logs)


class InMemoryUserDirectory(IUserDirectory):

    def __init__(self, emails: Optional[dict[str, str]] = None):
        self._emails = dict(emails or {})

    def add(self, user_id: str, email: str) -> None:
        self._emails[user_id] = email

    async def get_email(self, user_id: str) -> Optional[str]:
        return self._emails.get(user_id)
