"""Tests for the priority-tiered event bus."""

from __future__ import annotations

import asyncio

import pytest

from agendum.modules.events import (
    BusEvent,
    BusEventKind,
    EventBus,
    InMemoryPatternSink,
    Priority,
)


def _event(kind: BusEventKind = BusEventKind.EVENT_CREATED, **payload) -> BusEvent:
    return BusEvent(kind=kind, payload=payload, source="test")


class FlakySink:
    """Pattern sink that fails a fixed number of times before recording."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0
        self.recorded: list[BusEvent] = []

    def record(self, event: BusEvent) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("sink unavailable")
        self.recorded.append(event)


class TestDelivery:
    """Tier semantics of publish/subscribe."""

    @pytest.mark.asyncio
    async def test_urgent_delivered_before_publish_returns(self, bus: EventBus) -> None:
        """Urgent subscribers have run when publish returns."""
        received: list[BusEvent] = []
        bus.subscribe(BusEventKind.EVENT_CREATED, Priority.URGENT, received.append)

        await bus.publish(_event())

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_async_urgent_handler_is_awaited(self, bus: EventBus) -> None:
        """Coroutine handlers on the urgent tier complete inside publish."""
        received: list[str] = []

        async def handler(event: BusEvent) -> None:
            await asyncio.sleep(0)
            received.append(event.id)

        bus.subscribe(None, Priority.URGENT, handler)
        event = _event()
        await bus.publish(event)

        assert received == [event.id]

    @pytest.mark.asyncio
    async def test_lane_preserves_fifo_order(self, bus: EventBus) -> None:
        """Events in one lane arrive in publish order."""
        seen: list[int] = []

        async def handler(event: BusEvent) -> None:
            await asyncio.sleep(0)
            seen.append(event.payload["n"])

        bus.subscribe(BusEventKind.EVENT_CREATED, Priority.NORMAL, handler)
        for n in range(10):
            await bus.publish(_event(n=n))
        await bus.drain()

        assert seen == list(range(10))

    @pytest.mark.asyncio
    async def test_every_tier_receives_the_event(self, bus: EventBus) -> None:
        """One publish reaches subscribers on all four tiers."""
        tiers: list[Priority] = []
        for priority in Priority:
            bus.subscribe(
                BusEventKind.CONFLICT_DETECTED,
                priority,
                lambda event, p=priority: tiers.append(p),
            )

        await bus.publish(_event(BusEventKind.CONFLICT_DETECTED))
        await bus.drain()

        assert sorted(tiers) == sorted(Priority)

    @pytest.mark.asyncio
    async def test_kind_filter(self, bus: EventBus) -> None:
        """Subscribers only see the kind they asked for."""
        conflicts: list[BusEvent] = []
        everything: list[BusEvent] = []
        bus.subscribe(BusEventKind.CONFLICT_DETECTED, Priority.URGENT, conflicts.append)
        bus.subscribe(None, Priority.URGENT, everything.append)

        await bus.publish(_event(BusEventKind.EVENT_CREATED))
        await bus.publish(_event(BusEventKind.CONFLICT_DETECTED))

        assert [e.kind for e in conflicts] == [BusEventKind.CONFLICT_DETECTED]
        assert len(everything) == 2


class TestFailureIsolation:
    """Subscriber and sink failures stay contained."""

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_block_others(self, bus: EventBus) -> None:
        """A raising handler never prevents delivery to its neighbours."""
        received: list[str] = []

        def boom(event: BusEvent) -> None:
            raise ValueError("handler bug")

        bus.subscribe(None, Priority.URGENT, boom)
        bus.subscribe(None, Priority.URGENT, lambda e: received.append("urgent"))
        bus.subscribe(None, Priority.LOW, boom)
        bus.subscribe(None, Priority.LOW, lambda e: received.append("low"))

        await bus.publish(_event())
        await bus.drain()

        assert sorted(received) == ["low", "urgent"]

    @pytest.mark.asyncio
    async def test_sink_records_even_when_subscribers_fail(
        self, bus: EventBus, pattern_sink: InMemoryPatternSink,
    ) -> None:
        """The pattern sink sees every event regardless of subscriber errors."""

        def boom(event: BusEvent) -> None:
            raise RuntimeError("nope")

        bus.subscribe(None, Priority.URGENT, boom)
        bus.subscribe(None, Priority.HIGH, boom)

        await bus.publish(_event(BusEventKind.EVENT_CREATED))
        await bus.publish(_event(BusEventKind.EVENT_SUGGESTED))
        await bus.drain()

        assert pattern_sink.counts[BusEventKind.EVENT_CREATED] == 1
        assert pattern_sink.counts[BusEventKind.EVENT_SUGGESTED] == 1
        assert pattern_sink.last().kind == BusEventKind.EVENT_SUGGESTED

    @pytest.mark.asyncio
    async def test_flaky_sink_is_retried(self) -> None:
        """A sink that fails transiently still records the event."""
        sink = FlakySink(failures=2)
        bus = EventBus(pattern_sink=sink, sink_attempts=3)
        try:
            await bus.publish(_event())
        finally:
            await bus.stop()

        assert sink.calls == 3
        assert len(sink.recorded) == 1

    @pytest.mark.asyncio
    async def test_dead_sink_does_not_block_subscribers(self) -> None:
        """Exhausted sink retries are logged and delivery continues."""
        sink = FlakySink(failures=100)
        bus = EventBus(pattern_sink=sink, sink_attempts=2)
        received: list[BusEvent] = []
        bus.subscribe(None, Priority.URGENT, received.append)
        try:
            await bus.publish(_event())
        finally:
            await bus.stop()

        assert sink.calls == 2
        assert len(received) == 1


class TestSubscriptionLifecycle:
    """Cancellation tokens and bus start/stop."""

    @pytest.mark.asyncio
    async def test_cancel_from_inside_urgent_handler(self, bus: EventBus) -> None:
        """A handler can cancel its own subscription; no later delivery."""
        calls: list[BusEvent] = []
        subscription = None

        def once(event: BusEvent) -> None:
            calls.append(event)
            subscription.cancel()
            subscription.cancel()

        subscription = bus.subscribe(None, Priority.URGENT, once)
        await bus.publish(_event())
        await bus.publish(_event())

        assert len(calls) == 1
        assert subscription.active is False
        assert subscription not in bus.subscribers()

    @pytest.mark.asyncio
    async def test_cancel_from_inside_lane_handler_skips_queued(self, bus: EventBus) -> None:
        """Deliveries already queued for a cancelled subscription are dropped."""
        calls: list[BusEvent] = []
        subscription = None

        def once(event: BusEvent) -> None:
            calls.append(event)
            subscription.cancel()

        subscription = bus.subscribe(None, Priority.NORMAL, once)
        for _ in range(3):
            await bus.publish(_event())
        await bus.drain()

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_publish_starts_bus_lazily(self) -> None:
        """Publishing on a fresh bus starts the lanes."""
        bus = EventBus()
        assert bus.is_running is False
        await bus.publish(_event())
        assert bus.is_running is True
        await bus.stop()
        assert bus.is_running is False

    @pytest.mark.asyncio
    async def test_stop_drains_pending_deliveries(self) -> None:
        """stop() delivers what is queued before shutting the lanes down."""
        bus = EventBus()
        received: list[BusEvent] = []

        async def slow(event: BusEvent) -> None:
            await asyncio.sleep(0.01)
            received.append(event)

        bus.subscribe(None, Priority.LOW, slow)
        for _ in range(3):
            await bus.publish(_event())
        await bus.stop()

        assert len(received) == 3
