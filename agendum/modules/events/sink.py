"""In-process pattern sink that remembers what the bus published."""

from __future__ import annotations

from collections import Counter, deque
from typing import Optional

from agendum.modules.events.models import BusEvent, BusEventKind


class InMemoryPatternSink:
    """Counts published events per kind and keeps the most recent ones."""

    def __init__(self, max_recent: int = 200) -> None:
        self.counts: Counter[BusEventKind] = Counter()
        self.recent: deque[BusEvent] = deque(maxlen=max_recent)

    def record(self, event: BusEvent) -> None:
        self.counts[event.kind] += 1
        self.recent.append(event)

    def last(self, kind: Optional[BusEventKind] = None) -> Optional[BusEvent]:
        """Most recent recorded event, optionally of one kind."""
        for event in reversed(self.recent):
            if kind is None or event.kind == kind:
                return event
        return None
