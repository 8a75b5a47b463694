"""Tests for the in-process event bus, keyed locks and circuit breaker."""

import asyncio

import pytest

from pipeline.event_bus import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    EventType,
    InMemoryEventBus,
    OrderConfirmedEvent,
    OrderConfirmedPayload,
    OrderFulfilledEvent,
    OrderFulfilledPayload,
    with_circuit_breaker,
)
from pipeline.locks import KeyedLock


def confirmed(order_id="order-1"):
    return OrderConfirmedEvent(payload=OrderConfirmedPayload(order_id=order_id, order_number="ORD-1-X"))


class TestEventBus:
    @pytest.mark.asyncio
    async def test_handlers_receive_matching_events(self):
        bus = InMemoryEventBus()
        received = []

        async def handler(event):
            received.append(event)

        await bus.subscribe([EventType.ORDER_CONFIRMED], handler)
        await bus.publish(confirmed())
        await bus.publish(OrderFulfilledEvent(payload=OrderFulfilledPayload(order_id="order-1")))

        assert [e.event_type for e in received] == [EventType.ORDER_CONFIRMED]
        assert len(bus.get_published_events()) == 2

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self):
        bus = InMemoryEventBus()
        received = []

        async def broken(event):
            raise RuntimeError("handler exploded")

        async def healthy(event):
            received.append(event)

        await bus.subscribe([EventType.ORDER_CONFIRMED], broken)
        await bus.subscribe([EventType.ORDER_CONFIRMED], healthy)

        assert await bus.publish(confirmed()) is True
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_publish_batch_counts_published_events(self):
        bus = InMemoryEventBus()

        async def broken(event):
            raise RuntimeError("handler exploded")

        await bus.subscribe([EventType.ORDER_CONFIRMED], broken)
        assert await bus.publish_batch([confirmed("a"), confirmed("b")]) == 2
        bus.clear_events()
        assert bus.get_published_events() == []

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = InMemoryEventBus()
        received = []

        async def handler(event):
            received.append(event)

        sub_id = await bus.subscribe([EventType.ORDER_CONFIRMED], handler)
        assert await bus.unsubscribe(sub_id) is True
        assert await bus.unsubscribe(sub_id) is False
        await bus.publish(confirmed())
        assert received == []

    def test_routing_key(self):
        assert confirmed().model_dump()["routing_key"] == "order.confirmed"


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLock()
        trace = []

        async def worker(name):
            async with locks.hold("cs_1"):
                trace.append(f"{name}-in")
                await asyncio.sleep(0.01)
                trace.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert trace in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_timeout(self):
        locks = KeyedLock()
        async with locks.hold("cs_1"):
            assert locks.locked("cs_1")
            with pytest.raises(TimeoutError):
                async with locks.hold("cs_1", timeout=0.01):
                    pass
        assert not locks.locked("cs_1")
        assert len(locks) == 0


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        breaker = CircuitBreaker("test", failure_threshold=2, reset_timeout=60)

        @with_circuit_breaker(breaker)
        async def flaky():
            raise ConnectionError("down")

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await flaky()

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await flaky()

    @pytest.mark.asyncio
    async def test_half_open_trial_call_closes_on_success(self):
        breaker = CircuitBreaker("test", failure_threshold=1, reset_timeout=0)
        await breaker.record_failure(ConnectionError("down"))
        assert breaker.state == CircuitState.OPEN

        assert await breaker.can_execute() is True
        assert breaker.state == CircuitState.HALF_OPEN
        await breaker.record_success()
        assert breaker.state == CircuitState.CLOSED
