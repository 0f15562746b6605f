"""Event bus message and subscription types."""

from __future__ import annotations

import datetime as dt
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Awaitable, Callable, Optional, Protocol, Union


class Priority(StrEnum):
    """Delivery tiers. Urgent is synchronous, the rest each get a lane."""

    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class BusEventKind(StrEnum):
    """State changes announced by the calendar core."""

    CONFLICT_DETECTED = "conflict_detected"
    EVENT_SUGGESTED = "event_suggested"
    EVENT_CREATED = "event_created"
    EVENT_UPDATED = "event_updated"
    EVENT_DELETED = "event_deleted"
    PROVIDER_ADDED = "provider_added"
    FETCH_FAILED = "fetch_failed"


@dataclass(frozen=True)
class BusEvent:
    """A published state change."""

    kind: BusEventKind
    payload: dict[str, Any] = field(default_factory=dict)
    source: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: dt.datetime = field(default_factory=lambda: dt.datetime.now(dt.UTC))


Handler = Callable[[BusEvent], Union[None, Awaitable[None]]]


class PatternSink(Protocol):
    """Receives every published event for usage-pattern recording."""

    def record(self, event: BusEvent) -> Union[None, Awaitable[None]]: ...


class Subscription:
    """Cancellation token returned by ``EventBus.subscribe``.

    ``cancel()`` may be called from inside the subscription's own handler;
    the bus checks ``active`` right before every delivery.
    """

    def __init__(
        self,
        kind: Optional[BusEventKind],
        priority: Priority,
        handler: Handler,
        on_cancel: Callable[["Subscription"], None],
    ) -> None:
        self.id = str(uuid.uuid4())
        self.kind = kind
        self.priority = priority
        self.handler = handler
        self._on_cancel = on_cancel
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def matches(self, kind: BusEventKind) -> bool:
        return self.kind is None or self.kind == kind

    def cancel(self) -> None:
        """Stop all further deliveries. Safe to call more than once."""
        if not self._active:
            return
        self._active = False
        self._on_cancel(self)

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, kind={self.kind}, "
            f"priority={self.priority}, active={self._active})>"
        )
