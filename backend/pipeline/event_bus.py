"""
Order Event Bus
===============
Post-commit events for the checkout service.

Features:
- Typed Event System: Pydantic models for every order event
- Publisher/Subscriber Pattern: async interfaces, in-process implementation
- Failure Isolation: a failing subscriber is logged, never propagated
- Circuit Breaker: shared guard for calls to external services
- Correlation Tracking: events carry the webhook's correlation_id
"""

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from functools import wraps
from typing import Any, Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel, Field, computed_field


CB_FAILURE_THRESHOLD = 5
CB_RESET_TIMEOUT_SECONDS = 30.0


# =============================================================================
# EVENT TYPES
# =============================================================================

class EventType(str, Enum):
    """All order lifecycle events"""

    # Webhook reconciler -> fulfillment
    ORDER_CONFIRMED = "order.confirmed"

    # Fulfillment (internal)
    ORDER_FULFILLED = "order.fulfilled"


# =============================================================================
# EVENT SCHEMAS
# =============================================================================

class BaseEvent(BaseModel):
    """Base event schema - all events inherit from this"""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source: str = "payment_reconciler"
    payload: dict = Field(default_factory=dict)

    @computed_field
    @property
    def routing_key(self) -> str:
        return self.event_type.value


class OrderConfirmedPayload(BaseModel):
    order_id: str
    order_number: str
    is_new_order: bool = True


class OrderConfirmedEvent(BaseEvent):
    """Payment completed and the order row is committed"""
    event_type: EventType = EventType.ORDER_CONFIRMED
    payload: OrderConfirmedPayload


class OrderFulfilledPayload(BaseModel):
    order_id: str
    tracking_number: Optional[str] = None
    label_purchased: bool = False
    email_status: Optional[str] = None


class OrderFulfilledEvent(BaseEvent):
    event_type: EventType = EventType.ORDER_FULFILLED
    source: str = "fulfillment"
    payload: OrderFulfilledPayload


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(ConnectionError):
    """Raised instead of calling a service whose breaker is open"""


class CircuitBreaker:
    """
    Trips after `failure_threshold` consecutive failures. Once `reset_timeout`
    seconds have passed a single trial call is let through; its result
    closes or re-opens the circuit.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = CB_FAILURE_THRESHOLD,
        reset_timeout: float = CB_RESET_TIMEOUT_SECONDS,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._guard = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="circuit_breaker", breaker=name)

    @property
    def state(self) -> CircuitState:
        return self._state

    def _trip(self, reason: str, error: Optional[Exception]) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = time.monotonic()
        self._logger.warning(reason,
                             consecutive_failures=self._consecutive_failures,
                             error=str(error) if error else None)

    async def can_execute(self) -> bool:
        async with self._guard:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.HALF_OPEN:
                return not self._trial_in_flight

            waited = time.monotonic() - self._opened_at
            if waited < self.reset_timeout:
                return False
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = True
            self._logger.info("circuit_half_open", waited_seconds=round(waited, 3))
            return True

    async def record_success(self):
        async with self._guard:
            if self._state != CircuitState.CLOSED:
                self._logger.info("circuit_closed")
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._trial_in_flight = False

    async def record_failure(self, error: Exception = None):
        async with self._guard:
            self._consecutive_failures += 1
            was_trial, self._trial_in_flight = self._trial_in_flight, False
            if was_trial:
                self._trip("circuit_reopened", error)
            elif self._state == CircuitState.CLOSED and self._consecutive_failures >= self.failure_threshold:
                self._trip("circuit_opened", error)

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Await func through the breaker"""
        if not await self.can_execute():
            raise CircuitOpenError(f"Circuit breaker {self.name} is OPEN")
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            await self.record_failure(e)
            raise
        await self.record_success()
        return result


def with_circuit_breaker(circuit_breaker: CircuitBreaker):
    """Decorator form of CircuitBreaker.call"""
    def decorator(func):
        @wraps(func)
        async def guarded(*args, **kwargs):
            return await circuit_breaker.call(func, *args, **kwargs)
        return guarded
    return decorator


# =============================================================================
# EVENT BUS INTERFACE
# =============================================================================

EventHandler = Callable[[BaseEvent], Awaitable[Any]]


class IEventBus(ABC):
    """Publish/subscribe interface"""

    @abstractmethod
    async def publish(self, event: BaseEvent) -> bool:
        pass

    @abstractmethod
    async def publish_batch(self, events: list[BaseEvent]) -> int:
        """Publishes in order; returns how many events were published"""
        pass

    @abstractmethod
    async def subscribe(self, event_types: list[EventType], handler: EventHandler) -> str:
        pass

    @abstractmethod
    async def unsubscribe(self, subscription_id: str) -> bool:
        pass


# =============================================================================
# IN-PROCESS EVENT BUS
# =============================================================================

class InMemoryEventBus(IEventBus):
    """
    In-process event bus.

    Handlers are awaited in subscription order. A handler that raises is
    logged with the event's correlation_id; remaining handlers still run and
    the publisher never sees the error.
    """

    def __init__(self):
        self._subscriptions: dict[str, tuple[frozenset[EventType], EventHandler]] = {}
        self._history: list[BaseEvent] = []
        self._logger = structlog.get_logger().bind(component="event_bus")

    def _handlers_for(self, event_type: EventType) -> list[tuple[str, EventHandler]]:
        return [
            (sub_id, handler)
            for sub_id, (types, handler) in self._subscriptions.items()
            if event_type in types
        ]

    async def _deliver(self, sub_id: str, handler: EventHandler, event: BaseEvent) -> bool:
        try:
            await handler(event)
        except Exception as e:
            self._logger.error("handler_error",
                               event_type=event.routing_key,
                               subscription_id=sub_id,
                               correlation_id=event.correlation_id,
                               error=str(e),
                               exc_info=True)
            return False
        return True

    async def publish(self, event: BaseEvent) -> bool:
        self._history.append(event)
        handlers = self._handlers_for(event.event_type)

        delivered = 0
        for sub_id, handler in handlers:
            delivered += await self._deliver(sub_id, handler, event)

        self._logger.info("event_published",
                          event_type=event.routing_key,
                          event_id=event.event_id,
                          correlation_id=event.correlation_id,
                          handlers=len(handlers),
                          handler_failures=len(handlers) - delivered)
        return True

    async def publish_batch(self, events: list[BaseEvent]) -> int:
        results = [await self.publish(event) for event in events]
        return sum(results)

    async def subscribe(self, event_types: list[EventType], handler: EventHandler) -> str:
        subscription_id = uuid.uuid4().hex
        self._subscriptions[subscription_id] = (frozenset(event_types), handler)
        self._logger.info("subscribed",
                          subscription_id=subscription_id,
                          event_types=sorted(t.value for t in event_types))
        return subscription_id

    async def unsubscribe(self, subscription_id: str) -> bool:
        removed = self._subscriptions.pop(subscription_id, None) is not None
        if removed:
            self._logger.info("unsubscribed", subscription_id=subscription_id)
        return removed

    # Testing utilities
    def get_published_events(self) -> list[BaseEvent]:
        return list(self._history)

    def clear_events(self):
        self._history.clear()
