"""Priority-tiered publish/subscribe hub.

Urgent subscribers are awaited inline by ``publish``. High, normal and low
subscribers are served by one asyncio worker per tier, so delivery is FIFO
inside a tier and unordered across tiers.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from typing import Optional

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from agendum.logging_config import get_logger
from agendum.modules.events.models import (
    BusEvent,
    BusEventKind,
    Handler,
    PatternSink,
    Priority,
    Subscription,
)

logger = get_logger(__name__)

LANE_PRIORITIES = (Priority.HIGH, Priority.NORMAL, Priority.LOW)


class EventBus:
    """Decoupled state-change notifications between calendar components."""

    def __init__(
        self,
        pattern_sink: Optional[PatternSink] = None,
        sink_attempts: int = 3,
    ) -> None:
        self._pattern_sink = pattern_sink
        self._sink_attempts = sink_attempts
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()
        self._lanes: dict[Priority, asyncio.Queue[tuple[Subscription, BusEvent]]] = {}
        self._workers: dict[Priority, asyncio.Task] = {}
        self._pending = 0
        self._idle: Optional[asyncio.Event] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def subscribe(
        self,
        kind: Optional[BusEventKind],
        priority: Priority,
        handler: Handler,
    ) -> Subscription:
        """Register ``handler`` for ``kind`` (``None`` means every kind)."""
        subscription = Subscription(kind, Priority(priority), handler, self._remove)
        with self._lock:
            self._subscriptions.append(subscription)
        logger.debug(
            "bus_subscribed",
            subscription_id=subscription.id,
            kind=kind,
            priority=subscription.priority,
        )
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            try:
                self._subscriptions.remove(subscription)
            except ValueError:
                pass
        logger.debug("bus_unsubscribed", subscription_id=subscription.id)

    def subscribers(self, kind: Optional[BusEventKind] = None) -> list[Subscription]:
        """Active subscriptions, optionally only those matching ``kind``."""
        with self._lock:
            subs = list(self._subscriptions)
        if kind is None:
            return subs
        return [s for s in subs if s.matches(kind)]

    async def start(self) -> None:
        """Start one worker per delivery lane."""
        if self._running:
            return
        self._running = True
        self._idle = asyncio.Event()
        self._idle.set()
        self._pending = 0
        for priority in LANE_PRIORITIES:
            queue: asyncio.Queue[tuple[Subscription, BusEvent]] = asyncio.Queue()
            self._lanes[priority] = queue
            self._workers[priority] = asyncio.create_task(
                self._run_lane(queue), name=f"event-bus-{priority}",
            )
        logger.info("event_bus_started")

    async def stop(self, drain: bool = True) -> None:
        """Stop the lane workers, optionally delivering what is queued first."""
        if not self._running:
            return
        if drain:
            await self.drain()
        self._running = False

        for worker in self._workers.values():
            worker.cancel()
        for worker in self._workers.values():
            try:
                await worker
            except asyncio.CancelledError:
                pass

        self._workers.clear()
        self._lanes.clear()
        self._pending = 0
        if self._idle is not None:
            self._idle.set()
        logger.info("event_bus_stopped")

    async def drain(self) -> None:
        """Wait until every queued delivery has been handled."""
        if self._idle is not None:
            await self._idle.wait()

    async def publish(self, event: BusEvent) -> None:
        """Publish ``event``.

        The pattern sink sees the event before any subscriber. Urgent
        subscribers have run by the time this returns; the rest are queued.
        """
        if not self._running:
            await self.start()

        await self._record(event)

        for subscription in self.subscribers(event.kind):
            if subscription.priority is Priority.URGENT:
                await self._deliver(subscription, event)
            else:
                self._enqueue(subscription, event)

        logger.debug("bus_published", kind=event.kind, event_id=event.id)

    def _enqueue(self, subscription: Subscription, event: BusEvent) -> None:
        self._pending += 1
        if self._idle is not None:
            self._idle.clear()
        self._lanes[subscription.priority].put_nowait((subscription, event))

    async def _run_lane(self, queue: asyncio.Queue[tuple[Subscription, BusEvent]]) -> None:
        while True:
            subscription, event = await queue.get()
            try:
                await self._deliver(subscription, event)
            finally:
                queue.task_done()
                self._pending -= 1
                if self._pending <= 0 and self._idle is not None:
                    self._idle.set()

    async def _deliver(self, subscription: Subscription, event: BusEvent) -> None:
        if not subscription.active:
            return
        try:
            result = subscription.handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error(
                "bus_handler_failed",
                subscription_id=subscription.id,
                kind=event.kind,
                error=f"{type(exc).__name__}: {exc}",
            )

    async def _record(self, event: BusEvent) -> None:
        if self._pattern_sink is None:
            return
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._sink_attempts),
                wait=wait_exponential(multiplier=0.05, max=1),
                reraise=True,
            ):
                with attempt:
                    result = self._pattern_sink.record(event)
                    if inspect.isawaitable(result):
                        await result
        except Exception as exc:
            logger.error(
                "pattern_sink_failed",
                kind=event.kind,
                event_id=event.id,
                attempts=self._sink_attempts,
                error=str(exc),
            )
