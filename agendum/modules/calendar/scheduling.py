"""Slot finding with trailing accommodation buffers.

Everything here is synchronous and side-effect free; the manager calls it
between provider round-trips.
"""

from __future__ import annotations

import datetime as dt
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from agendum.config import Settings
from agendum.logging_config import get_logger
from agendum.modules.calendar.conflicts import conflicts_involving
from agendum.modules.calendar.models import (
    CalendarConflict,
    SlotProposal,
    TimeRange,
    TimeSlot,
    UnifiedCalendarEvent,
    as_utc,
)

logger = get_logger(__name__)

Interval = tuple[dt.datetime, dt.datetime]


class SmartScheduler:
    """Greedy earliest-fit slot finder."""

    def __init__(
        self,
        max_alternatives: int = 3,
        alternative_step_minutes: int = 15,
        alternative_window_hours: int = 12,
        timezone: str = "UTC",
        active_hours: Optional[dict[str, tuple[dt.time, dt.time]]] = None,
    ) -> None:
        self.max_alternatives = max_alternatives
        self.alternative_step = dt.timedelta(minutes=alternative_step_minutes)
        self.alternative_window = dt.timedelta(hours=alternative_window_hours)
        self._tz = ZoneInfo(timezone)
        self._active_hours = dict(active_hours or {})

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmartScheduler":
        return cls(
            max_alternatives=settings.max_alternatives,
            alternative_step_minutes=settings.alternative_step_minutes,
            alternative_window_hours=settings.alternative_window_hours,
            timezone=settings.timezone,
            active_hours={
                domain: hours
                for domain in settings.domain_hours
                if (hours := settings.active_hours_for(domain)) is not None
            },
        )

    def find_slot(
        self,
        duration: dt.timedelta,
        domain: Optional[str],
        existing_events: Iterable[UnifiedCalendarEvent],
        search_horizon: TimeRange,
        buffer_minutes: int = 0,
    ) -> SlotProposal:
        """Return the earliest slot of ``duration`` inside ``search_horizon``.

        The slot needs ``duration + buffer_minutes`` of free time: the buffer
        sits after the slot's end and must be clear before the next busy
        interval starts. Existing events block ``[start, occupied_until)``.
        When nothing fits, the scan carries on from the horizon end and the
        first free slot found there is flagged ``low_confidence``.
        """
        buffer = dt.timedelta(minutes=buffer_minutes)
        busy = self._busy(existing_events)

        start = self._first_fit(search_horizon.start, duration, buffer, domain, busy)
        if start + duration <= search_horizon.end:
            return SlotProposal(start=start, end=start + duration)

        start = self._first_fit(search_horizon.end, duration, buffer, domain, busy)
        logger.info(
            "slot_search_exhausted",
            horizon_end=search_horizon.end.isoformat(),
            fallback_start=start.isoformat(),
        )
        return SlotProposal(start=start, end=start + duration, low_confidence=True)

    def find_alternatives(
        self,
        event: UnifiedCalendarEvent,
        conflicts: Iterable[CalendarConflict],
        existing_events: Iterable[UnifiedCalendarEvent],
        limit: Optional[int] = None,
        not_before: Optional[dt.datetime] = None,
        domain: Optional[str] = None,
    ) -> list[TimeSlot]:
        """Nearby free slots for an event caught in a conflict.

        Candidates step outward from the event's start, earlier before later
        at equal distance, and keep the event's duration and buffer.
        """
        limit = self.max_alternatives if limit is None else limit
        if limit <= 0 or not conflicts_involving(event.key, conflicts):
            return []

        duration = event.end - event.start
        buffer = dt.timedelta(minutes=event.buffer_minutes)
        busy = self._busy(e for e in existing_events if e.key != event.key)
        floor = as_utc(not_before) if not_before is not None else None
        steps = int(self.alternative_window / self.alternative_step)

        found: list[TimeSlot] = []
        for step in range(1, steps + 1):
            for direction in (-1, 1):
                start = event.start + direction * step * self.alternative_step
                if floor is not None and start < floor:
                    continue
                if not self._within_hours(start, duration, domain):
                    continue
                if self._is_free(start, start + duration + buffer, busy):
                    found.append(TimeSlot(start=start, end=start + duration))
                    if len(found) >= limit:
                        return found
        return found

    @staticmethod
    def _busy(events: Iterable[UnifiedCalendarEvent]) -> list[Interval]:
        return sorted(
            (event.start, event.occupied_until)
            for event in events
            if event.is_well_formed
        )

    @staticmethod
    def _is_free(start: dt.datetime, end: dt.datetime, busy: list[Interval]) -> bool:
        return all(not (start < busy_end and busy_start < end) for busy_start, busy_end in busy)

    def _first_fit(
        self,
        cursor: dt.datetime,
        duration: dt.timedelta,
        buffer: dt.timedelta,
        domain: Optional[str],
        busy: list[Interval],
    ) -> dt.datetime:
        """Earliest start at or after ``cursor`` whose slot and buffer are clear."""
        for busy_start, busy_end in busy:
            if busy_end <= cursor:
                continue
            candidate = self._align(cursor, duration, domain)
            if candidate + duration + buffer <= busy_start:
                return candidate
            cursor = max(cursor, busy_end)
        return self._align(cursor, duration, domain)

    def _window(self, day: dt.date, domain: Optional[str]) -> Optional[Interval]:
        hours = self._active_hours.get(str(domain)) if domain is not None else None
        if hours is None:
            return None
        opens, closes = hours
        return (
            dt.datetime.combine(day, opens, tzinfo=self._tz),
            dt.datetime.combine(day, closes, tzinfo=self._tz),
        )

    def _align(self, moment: dt.datetime, duration: dt.timedelta, domain: Optional[str]) -> dt.datetime:
        """Move ``moment`` forward into the domain's active hours, if it has any."""
        local = moment.astimezone(self._tz)
        window = self._window(local.date(), domain)
        if window is None or window[1] - window[0] < duration:
            return moment

        day = local.date()
        while True:
            opens, closes = self._window(day, domain)
            candidate = max(local, opens)
            if candidate + duration <= closes:
                return candidate.astimezone(dt.UTC)
            day += dt.timedelta(days=1)

    def _within_hours(self, start: dt.datetime, duration: dt.timedelta, domain: Optional[str]) -> bool:
        local = start.astimezone(self._tz)
        window = self._window(local.date(), domain)
        if window is None or window[1] - window[0] < duration:
            return True
        return window[0] <= local and local + duration <= window[1]
