"""Calendar aggregation: providers, conflict detection and slot finding."""

from agendum.modules.calendar.conflicts import detect_conflicts, overlaps
from agendum.modules.calendar.models import (
    CalendarConflict,
    CapturedIntent,
    TimeRange,
    UnifiedCalendarEvent,
)
from agendum.modules.calendar.scheduling import SmartScheduler
from agendum.modules.calendar.service import CalendarManager

__all__ = [
    "CalendarConflict",
    "CalendarManager",
    "CapturedIntent",
    "SmartScheduler",
    "TimeRange",
    "UnifiedCalendarEvent",
    "detect_conflicts",
    "overlaps",
]
