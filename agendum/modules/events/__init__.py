"""Event bus: priority-tiered notifications between calendar components."""

from agendum.modules.events.bus import EventBus
from agendum.modules.events.models import BusEvent, BusEventKind, Priority, Subscription
from agendum.modules.events.sink import InMemoryPatternSink

__all__ = [
    "BusEvent",
    "BusEventKind",
    "EventBus",
    "InMemoryPatternSink",
    "Priority",
    "Subscription",
]
