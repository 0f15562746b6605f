"""Shared test fixtures and configuration."""

from __future__ import annotations

import datetime as dt
import os
from typing import AsyncGenerator, Callable

import pytest
import pytest_asyncio

os.environ.setdefault("AGENDUM_ENV", "test")
os.environ.setdefault("AGENDUM_LOG_LEVEL", "WARNING")

from agendum.config import Settings
from agendum.modules.calendar.models import UnifiedCalendarEvent
from agendum.modules.events import EventBus, InMemoryPatternSink

# Thursday, so weekday-sensitive logic never trips over a weekend.
BASE_DAY = dt.date(2026, 2, 12)


def at(hour: int, minute: int = 0, day_offset: int = 0) -> dt.datetime:
    """Aware UTC timestamp on the shared test day."""
    day = BASE_DAY + dt.timedelta(days=day_offset)
    return dt.datetime(day.year, day.month, day.day, hour, minute, tzinfo=dt.UTC)


@pytest.fixture
def settings() -> Settings:
    """Return test settings."""
    return Settings(
        agendum_env="test",
        agendum_log_level="WARNING",
        default_buffer_minutes=15,
        search_horizon_days=7,
        _env_file=None,
    )


@pytest.fixture
def make_event() -> Callable[..., UnifiedCalendarEvent]:
    """Factory for events with readable ids derived from the title."""

    def _make(
        title: str,
        start: dt.datetime,
        end: dt.datetime,
        provider_id: str = "local",
        **kwargs,
    ) -> UnifiedCalendarEvent:
        kwargs.setdefault("id", title.lower().replace(" ", "-"))
        return UnifiedCalendarEvent(
            title=title, start=start, end=end, provider_id=provider_id, **kwargs,
        )

    return _make


@pytest.fixture
def pattern_sink() -> InMemoryPatternSink:
    return InMemoryPatternSink()


@pytest_asyncio.fixture
async def bus(pattern_sink: InMemoryPatternSink) -> AsyncGenerator[EventBus, None]:
    """Event bus wired to an in-memory pattern sink; stopped after the test."""
    event_bus = EventBus(pattern_sink=pattern_sink)
    yield event_bus
    await event_bus.stop()
