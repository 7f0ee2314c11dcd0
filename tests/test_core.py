"""
Tests for clock, random source, event bus, registry and error taxonomy
"""

import asyncio
from datetime import datetime, timezone

import pytest

from execution_alpha.core import (
    ManualClock, RandomSource, EventBus, EventType, Registry,
    TaskNotFoundError, InvalidTaskStateError, OrderGatewayError, InsufficientBalanceError,
    OrderSide, Urgency,
)
from execution_alpha.core.exceptions import is_unrecoverable
from execution_alpha.core.types import signed_slippage


class TestManualClock:

    def test_starts_at_given_time(self):
        start = datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc)
        clock = ManualClock(start)
        assert clock.utcnow() == start

    @pytest.mark.asyncio
    async def test_sleep_advances_virtual_time(self, clock):
        before = clock.now_ms()
        await clock.sleep(1500)
        assert clock.now_ms() == before + 1500
        assert clock.sleep_calls == 1

    @pytest.mark.asyncio
    async def test_negative_sleep_does_not_rewind(self, clock):
        before = clock.now_ms()
        await clock.sleep(-100)
        assert clock.now_ms() == before

    def test_advance_rejects_negative(self, clock):
        with pytest.raises(ValueError):
            clock.advance(-1)

    @pytest.mark.asyncio
    async def test_wait_for_times_out_on_loop_time(self, clock):
        never = asyncio.get_running_loop().create_future()
        with pytest.raises(asyncio.TimeoutError):
            await clock.wait_for(never, 10)


class TestRandomSource:

    def test_seeded_sources_repeat(self):
        a, b = RandomSource(seed=7), RandomSource(seed=7)
        assert [a.random() for _ in range(5)] == [b.random() for _ in range(5)]

    def test_symmetric_stays_in_range(self, rng):
        draws = [rng.symmetric(0.2) for _ in range(200)]
        assert all(-0.2 <= d < 0.2 for d in draws)

    def test_token_length(self, rng):
        assert len(rng.token()) == 9


class TestEventBus:

    def test_publish_reaches_subscribers(self, clock):
        bus = EventBus(source="test", clock=clock)
        received = []
        bus.subscribe(EventType.TASK_CREATED, received.append)

        bus.publish(EventType.TASK_CREATED, {'task_id': 't1'})

        assert len(received) == 1
        assert received[0].payload == {'task_id': 't1'}
        assert received[0].source == "test"
        assert received[0].timestamp == clock.now_ms()

    def test_unsubscribe(self, clock):
        bus = EventBus(clock=clock)
        received = []
        unsubscribe = bus.subscribe(EventType.TASK_CREATED, received.append)
        unsubscribe()

        bus.publish(EventType.TASK_CREATED)

        assert received == []
        assert bus.handler_count(EventType.TASK_CREATED) == 0

    def test_failing_handler_does_not_break_others(self, clock):
        bus = EventBus(clock=clock)
        received = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(EventType.SLICE_EXECUTED, broken)
        bus.subscribe(EventType.SLICE_EXECUTED, received.append)

        bus.publish(EventType.SLICE_EXECUTED)

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_async_handler_is_scheduled(self, clock):
        bus = EventBus(clock=clock)
        received = []

        async def handler(event):
            received.append(event.type)

        bus.subscribe(EventType.TASK_STARTED, handler)
        bus.publish(EventType.TASK_STARTED)
        await asyncio.sleep(0)

        assert received == [EventType.TASK_STARTED]


class TestRegistry:

    def test_ids_are_unique_and_ordered(self):
        registry = Registry(kind="task")
        first = registry.create("twap_BTC", lambda item_id: {'id': item_id})
        second = registry.create("twap_BTC", lambda item_id: {'id': item_id})

        assert first['id'] != second['id']
        assert registry.ids() == [first['id'], second['id']]
        assert len(registry) == 2

    def test_require_unknown_raises(self):
        registry = Registry(kind="iceberg")
        with pytest.raises(TaskNotFoundError, match="Iceberg not found: nope"):
            registry.require("nope")

    def test_remove(self):
        registry = Registry()
        item = registry.create("x", lambda item_id: item_id)
        assert registry.remove(item) == item
        assert item not in registry


class TestErrors:

    def test_insufficient_balance_is_unrecoverable(self):
        assert is_unrecoverable(InsufficientBalanceError("no funds"))

    def test_message_markers_are_unrecoverable(self):
        assert is_unrecoverable(OrderGatewayError("Account balance too low"))

    def test_transient_error_is_recoverable(self):
        assert not is_unrecoverable(OrderGatewayError("timeout contacting exchange"))

    def test_invalid_state_message(self):
        error = InvalidTaskStateError("twap_1", "completed")
        assert "completed" in str(error)


class TestTypes:

    def test_parse_accepts_strings(self):
        assert OrderSide.parse("BUY") == OrderSide.BUY
        assert Urgency.parse("critical") == Urgency.CRITICAL

    def test_signed_slippage_direction(self):
        assert signed_slippage(OrderSide.BUY, 101, 100) == pytest.approx(0.01)
        assert signed_slippage(OrderSide.SELL, 101, 100) == pytest.approx(-0.01)
        assert signed_slippage(OrderSide.BUY, 101, 0) == 0.0
