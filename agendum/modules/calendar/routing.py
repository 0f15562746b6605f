"""Domain tag to (provider, sub-calendar) routing."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from agendum.config import Settings
from agendum.modules.calendar.models import DomainTag


@dataclass(frozen=True)
class CalendarTarget:
    """Where new events for a domain are written."""

    provider_id: str
    calendar_id: str = ""

    @classmethod
    def parse(cls, value: str) -> "CalendarTarget":
        """Parse ``"provider_id/calendar_id"``; the calendar part is optional."""
        provider_id, _, calendar_id = value.partition("/")
        if not provider_id.strip():
            raise ValueError(f"Invalid calendar target: {value!r}")
        return cls(provider_id=provider_id.strip(), calendar_id=calendar_id.strip())


class CalendarRouter(Protocol):
    """Anything that can pick a target calendar for a domain."""

    def route(self, domain: DomainTag) -> Optional[CalendarTarget]: ...


class StaticCalendarRouter:
    """Fixed mapping that can also learn from user choices."""

    def __init__(
        self,
        mapping: Optional[dict[str, CalendarTarget]] = None,
        default: Optional[CalendarTarget] = None,
    ) -> None:
        self._mapping = {str(k): v for k, v in (mapping or {}).items()}
        self._default = default

    @classmethod
    def from_settings(cls, settings: Settings) -> "StaticCalendarRouter":
        mapping = {
            domain: CalendarTarget.parse(target)
            for domain, target in settings.domain_calendars.items()
        }
        default = mapping.pop("default", None)
        return cls(mapping, default)

    def route(self, domain: DomainTag) -> Optional[CalendarTarget]:
        return self._mapping.get(str(domain), self._default)

    def learn(self, domain: DomainTag, target: CalendarTarget) -> None:
        """Remember that events of ``domain`` belong in ``target``."""
        self._mapping[str(domain)] = target
