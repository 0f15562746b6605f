"""Data models for unified calendar events, conflicts and providers."""

from __future__ import annotations

import datetime as dt
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

# Namespace for deterministic conflict identifiers.
CONFLICT_NAMESPACE = uuid.UUID("6f1c2a4e-9b0d-4c47-8a43-2f7c5d1e0b93")


def as_utc(value: dt.datetime) -> dt.datetime:
    """Interpret naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.UTC)
    return value.astimezone(dt.UTC)


class ProviderKind(StrEnum):
    """Where a calendar backend lives relative to the user's device."""

    FIRST_PARTY = "first_party"
    SECOND_PARTY = "second_party"
    THIRD_PARTY = "third_party"


class AuthState(StrEnum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    DENIED = "denied"


class DomainTag(StrEnum):
    """Life domain a captured intent belongs to."""

    WORK = "work"
    PERSONAL = "personal"
    HEALTH = "health"
    OTHER = "other"


class ConflictKind(StrEnum):
    TIME_OVERLAP = "time_overlap"
    LOCATION_CONFLICT = "location_conflict"
    CROSS_CALENDAR = "cross_calendar"


class ConflictSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TimeSlot(BaseModel):
    """A candidate (start, end) interval."""

    start: dt.datetime
    end: dt.datetime

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, value: dt.datetime) -> dt.datetime:
        return as_utc(value)

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() / 60)

    def overlaps(self, start: dt.datetime, end: dt.datetime) -> bool:
        """Half-open overlap test: touching endpoints do not overlap."""
        return self.start < end and start < self.end


class SlotProposal(TimeSlot):
    """Slot returned by the scheduler.

    ``low_confidence`` is set when nothing fit inside the search horizon and
    the slot was placed right after it instead; callers must not present such
    a slot as certain.
    """

    low_confidence: bool = False


class TimeRange(BaseModel):
    """Query window for provider fetches and slot searches."""

    start: dt.datetime
    end: dt.datetime

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, value: dt.datetime) -> dt.datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def _ordered(self) -> "TimeRange":
        if self.end <= self.start:
            raise ValueError("TimeRange end must be after start")
        return self

    @classmethod
    def starting_at(cls, start: dt.datetime, days: int) -> "TimeRange":
        return cls(start=start, end=as_utc(start) + dt.timedelta(days=days))

    def contains(self, moment: dt.datetime) -> bool:
        return self.start <= as_utc(moment) < self.end

    def intersects(self, start: dt.datetime, end: dt.datetime) -> bool:
        return self.start < as_utc(end) and as_utc(start) < self.end


class UnifiedCalendarEvent(BaseModel):
    """Unified calendar event model across all providers."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str
    start: dt.datetime
    end: dt.datetime
    location: Optional[str] = None
    notes: Optional[str] = None
    provider_id: str = ""
    calendar_id: str = ""
    all_day: bool = False
    buffer_minutes: int = Field(default=0, ge=0)
    reminder_minutes: int = 15
    alternatives: list[TimeSlot] = Field(default_factory=list)
    is_draft: bool = False

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, value: dt.datetime) -> dt.datetime:
        return as_utc(value)

    @field_validator("location", "notes")
    @classmethod
    def _blank_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @property
    def duration_minutes(self) -> int:
        """Event duration in minutes."""
        return int((self.end - self.start).total_seconds() / 60)

    @property
    def occupied_until(self) -> dt.datetime:
        """End of the event plus its trailing buffer."""
        return self.end + dt.timedelta(minutes=self.buffer_minutes)

    @property
    def key(self) -> str:
        """Provider-qualified identity; provider ids are only unique per provider."""
        return f"{self.provider_id}:{self.id}"

    @property
    def is_well_formed(self) -> bool:
        return self.start < self.end

    def overlaps(self, other: "UnifiedCalendarEvent") -> bool:
        """Half-open interval overlap, symmetric in its arguments."""
        return self.start < other.end and other.start < self.end

    def as_slot(self) -> TimeSlot:
        return TimeSlot(start=self.start, end=self.end)


def apply_buffer(event: UnifiedCalendarEvent, minutes: int) -> UnifiedCalendarEvent:
    """Return a copy of ``event`` reserving ``minutes`` after its end.

    The buffer is set, not added, so applying it again to the same draft
    leaves ``occupied_until`` unchanged. The start never moves.
    """
    if minutes < 0:
        raise ValueError("buffer minutes must be non-negative")
    return event.model_copy(update={"buffer_minutes": minutes})


class CalendarConflict(BaseModel):
    """A set of events that cannot all happen as scheduled.

    ``event_ids`` holds event keys (``provider_id:id``).
    """

    id: str
    event_ids: list[str]
    kind: ConflictKind
    severity: ConflictSeverity
    suggestion: str
    resolved: bool = False

    @field_validator("event_ids")
    @classmethod
    def _at_least_two(cls, value: list[str]) -> list[str]:
        ids = sorted(set(value))
        if len(ids) < 2:
            raise ValueError("a conflict involves at least two events")
        return ids

    @classmethod
    def build(
        cls,
        event_ids: list[str],
        kind: ConflictKind,
        severity: ConflictSeverity,
        suggestion: str,
    ) -> "CalendarConflict":
        """Create a conflict whose id depends only on its kind and members."""
        ids = sorted(set(event_ids))
        conflict_id = uuid.uuid5(CONFLICT_NAMESPACE, f"{kind}:{'|'.join(ids)}")
        return cls(
            id=str(conflict_id),
            event_ids=ids,
            kind=kind,
            severity=severity,
            suggestion=suggestion,
        )

    def involves(self, event_key: str) -> bool:
        return event_key in self.event_ids


class SubCalendar(BaseModel):
    """A calendar inside one provider account."""

    id: str
    title: str = ""
    is_default: bool = False


class CalendarProviderRef(BaseModel):
    """Public description of a registered provider."""

    provider_id: str
    kind: ProviderKind
    auth_state: AuthState = AuthState.UNAUTHENTICATED
    calendars: list[SubCalendar] = Field(default_factory=list)


class CapturedIntent(BaseModel):
    """Structured output of the capture/extraction collaborator."""

    text: str
    title: Optional[str] = None
    date_hint: Optional[dt.datetime] = None
    duration_hint: Optional[int] = Field(default=None, ge=1)
    domain: DomainTag = DomainTag.OTHER

    @field_validator("date_hint")
    @classmethod
    def _utc(cls, value: Optional[dt.datetime]) -> Optional[dt.datetime]:
        return as_utc(value) if value is not None else None

    @property
    def display_title(self) -> str:
        """Explicit title, else the first line of the captured text."""
        if self.title and self.title.strip():
            return self.title.strip()
        first_line = self.text.strip().splitlines()[0] if self.text.strip() else ""
        return first_line[:80] or "Untitled"


@dataclass(frozen=True)
class CalendarSnapshot:
    """One aggregation cycle's result. Replaced wholesale, never mutated."""

    events: tuple[UnifiedCalendarEvent, ...] = ()
    conflicts: tuple[CalendarConflict, ...] = ()
    range: Optional[TimeRange] = None
    generated_at: dt.datetime = field(default_factory=lambda: dt.datetime.now(dt.UTC))

    def event(self, event_id: str, provider_id: Optional[str] = None) -> Optional[UnifiedCalendarEvent]:
        return next(
            (
                e for e in self.events
                if e.id == event_id and (provider_id is None or e.provider_id == provider_id)
            ),
            None,
        )


@dataclass
class ProviderFailure:
    """A provider fetch that failed while running in resilient mode."""

    provider_id: str
    error: Exception


@dataclass
class FetchResult:
    """Merged outcome of a fan-out fetch."""

    events: list[UnifiedCalendarEvent] = field(default_factory=list)
    conflicts: list[CalendarConflict] = field(default_factory=list)
    errors: list[ProviderFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class IntentOutcomeStatus(StrEnum):
    CREATED = "created"
    SUGGESTED = "suggested"


@dataclass
class IntentOutcome:
    """Result of turning a captured intent into an event."""

    status: IntentOutcomeStatus
    event: UnifiedCalendarEvent
    conflicts: list[CalendarConflict] = field(default_factory=list)
    alternatives: list[TimeSlot] = field(default_factory=list)
    low_confidence: bool = False
