"""Tests for the smart scheduler's slot finding and alternatives."""

from __future__ import annotations

import datetime as dt
import random

from agendum.config import Settings
from agendum.modules.calendar.conflicts import detect_conflicts
from agendum.modules.calendar.models import DomainTag, TimeRange
from agendum.modules.calendar.scheduling import SmartScheduler
from tests.conftest import at

HOUR = dt.timedelta(hours=1)


def _horizon(start: dt.datetime, hours: int = 24) -> TimeRange:
    return TimeRange(start=start, end=start + dt.timedelta(hours=hours))


class TestFindSlot:
    """Greedy earliest-fit behaviour."""

    def test_empty_calendar_starts_at_horizon(self) -> None:
        slot = SmartScheduler().find_slot(HOUR, None, [], _horizon(at(8)))
        assert slot.start == at(8)
        assert slot.end == at(9)
        assert slot.low_confidence is False

    def test_first_gap_that_fits(self, make_event) -> None:
        events = [
            make_event("Standup", at(8), at(9)),
            make_event("Review", at(9, 30), at(11)),
        ]
        slot = SmartScheduler().find_slot(HOUR, None, events, _horizon(at(8)))
        assert slot.start == at(11)

    def test_buffer_must_fit_before_next_event(self, make_event) -> None:
        """45 minutes plus a 15 minute buffer exactly fills a one-hour gap."""
        events = [
            make_event("A", at(9), at(10)),
            make_event("B", at(11), at(12)),
        ]
        scheduler = SmartScheduler()
        horizon = _horizon(at(9))

        fits = scheduler.find_slot(dt.timedelta(minutes=45), None, events, horizon, buffer_minutes=15)
        too_long = scheduler.find_slot(dt.timedelta(minutes=50), None, events, horizon, buffer_minutes=15)

        assert fits.start == at(10)
        assert too_long.start == at(12)

    def test_buffer_is_trailing_only(self, make_event) -> None:
        """A new slot may start the moment the previous event ends."""
        events = [make_event("A", at(9), at(10))]
        slot = SmartScheduler().find_slot(HOUR, None, events, _horizon(at(9)), buffer_minutes=30)
        assert slot.start == at(10)

    def test_existing_event_buffer_blocks_time(self, make_event) -> None:
        events = [make_event("A", at(9), at(10), buffer_minutes=15)]
        slot = SmartScheduler().find_slot(HOUR, None, events, _horizon(at(9)))
        assert slot.start == at(10, 15)

    def test_ongoing_event_pushes_cursor(self, make_event) -> None:
        events = [make_event("Workshop", at(7), at(10))]
        slot = SmartScheduler().find_slot(HOUR, None, events, _horizon(at(8)))
        assert slot.start == at(10)

    def test_overlapping_busy_intervals(self, make_event) -> None:
        events = [
            make_event("Long", at(9), at(13)),
            make_event("Short", at(10), at(11)),
        ]
        slot = SmartScheduler().find_slot(HOUR, None, events, _horizon(at(9)))
        assert slot.start == at(13)

    def test_full_horizon_gives_low_confidence_slot(self, make_event) -> None:
        """The fallback is the first free slot after the horizon, not its end."""
        events = [make_event("Offsite", at(8), at(20))]
        horizon = TimeRange(start=at(8), end=at(18))

        slot = SmartScheduler().find_slot(HOUR, None, events, horizon)

        assert slot.low_confidence is True
        assert slot.start == at(20)
        assert slot.end == at(21)

    def test_fallback_keeps_buffers_clear(self, make_event) -> None:
        events = [
            make_event("Offsite", at(8), at(18, 30), buffer_minutes=15),
            make_event("Dinner", at(19, 30), at(21)),
        ]
        horizon = TimeRange(start=at(8), end=at(18))

        slot = SmartScheduler().find_slot(HOUR, None, events, horizon, buffer_minutes=15)

        # 18:45 + 1h + 15m runs into dinner.
        assert slot.low_confidence is True
        assert slot.start == at(21)

    def test_fallback_honours_domain_hours(self, make_event) -> None:
        scheduler = SmartScheduler(active_hours={"work": (dt.time(9), dt.time(17))})
        events = [make_event("Offsite", at(8), at(20))]
        horizon = TimeRange(start=at(8), end=at(18))

        slot = scheduler.find_slot(HOUR, DomainTag.WORK, events, horizon)

        assert slot.low_confidence is True
        assert slot.start == at(9, day_offset=1)

    def test_malformed_events_ignored(self, make_event) -> None:
        events = [make_event("Backwards", at(10), at(9))]
        slot = SmartScheduler().find_slot(HOUR, None, events, _horizon(at(9)))
        assert slot.start == at(9)

    def test_slot_never_overlaps_busy_time(self, make_event) -> None:
        """The slot plus its buffer never intersects any event plus buffer.

        Short horizons force the low-confidence fallback past the horizon end.
        """
        rng = random.Random(20260212)
        scheduler = SmartScheduler()
        fallbacks = 0

        for _ in range(100):
            horizon = _horizon(at(6), hours=rng.choice([1, 6, 48]))
            events = []
            for index in range(rng.randint(0, 12)):
                start = at(6) + dt.timedelta(minutes=15 * rng.randint(0, 160))
                length = dt.timedelta(minutes=15 * rng.randint(1, 12))
                events.append(make_event(
                    f"E{index}", start, start + length, buffer_minutes=rng.choice([0, 10, 15]),
                ))
            duration = dt.timedelta(minutes=15 * rng.randint(1, 8))
            buffer = rng.choice([0, 15, 30])

            slot = scheduler.find_slot(duration, None, events, horizon, buffer)

            assert slot.end - slot.start == duration
            assert slot.start >= horizon.start
            if slot.low_confidence:
                fallbacks += 1
                assert slot.start >= horizon.end
            else:
                assert slot.end <= horizon.end
            occupied = slot.end + dt.timedelta(minutes=buffer)
            for event in events:
                assert not (slot.start < event.occupied_until and event.start < occupied)

        assert fallbacks > 0


class TestDomainHours:
    """Active hours per life domain."""

    def _scheduler(self) -> SmartScheduler:
        return SmartScheduler(active_hours={"work": (dt.time(9), dt.time(17))})

    def test_moves_to_next_opening(self) -> None:
        slot = self._scheduler().find_slot(HOUR, DomainTag.WORK, [], _horizon(at(18), hours=72))
        assert slot.start == at(9, day_offset=1)

    def test_other_domains_unrestricted(self) -> None:
        slot = self._scheduler().find_slot(HOUR, DomainTag.PERSONAL, [], _horizon(at(18)))
        assert slot.start == at(18)

    def test_slot_must_end_before_closing(self, make_event) -> None:
        events = [make_event("Busy", at(9), at(16, 30))]
        slot = self._scheduler().find_slot(HOUR, DomainTag.WORK, events, _horizon(at(9), hours=72))
        assert slot.start == at(9, day_offset=1)

    def test_from_settings(self) -> None:
        settings = Settings(
            _env_file=None,
            domain_hours={"work": "09:00-17:00"},
            max_alternatives=5,
        )
        scheduler = SmartScheduler.from_settings(settings)
        assert scheduler.max_alternatives == 5
        slot = scheduler.find_slot(HOUR, DomainTag.WORK, [], _horizon(at(6), hours=24))
        assert slot.start == at(9)


class TestAlternatives:
    """Nearby free slots for a conflicting event."""

    def test_no_conflict_no_alternatives(self, make_event) -> None:
        draft = make_event("Draft", at(9), at(10))
        assert SmartScheduler().find_alternatives(draft, [], [draft]) == []

    def test_nearest_first_and_earlier_before_later(self, make_event) -> None:
        draft = make_event("Draft", at(10), at(11))
        blocker = make_event("Blocker", at(10, 30), at(11))
        events = [draft, blocker]
        conflicts = detect_conflicts(events)

        alternatives = SmartScheduler().find_alternatives(draft, conflicts, events)

        assert [slot.start for slot in alternatives] == [at(9, 30), at(9, 15), at(9)]
        for slot in alternatives:
            assert slot.duration_minutes == 60
            assert not slot.overlaps(blocker.start, blocker.occupied_until)

    def test_alternatives_keep_the_buffer(self, make_event) -> None:
        draft = make_event("Draft", at(10), at(11), buffer_minutes=30)
        blocker = make_event("Blocker", at(10, 30), at(11))
        events = [draft, blocker]

        alternatives = SmartScheduler().find_alternatives(
            draft, detect_conflicts(events), events, limit=1,
        )

        # 09:00 + 1h + 30m buffer runs into 10:30, so 09:00 is the latest fit.
        assert [slot.start for slot in alternatives] == [at(9)]

    def test_limit_and_not_before(self, make_event) -> None:
        draft = make_event("Draft", at(10), at(11))
        blocker = make_event("Blocker", at(10), at(11))
        events = [draft, blocker]
        conflicts = detect_conflicts(events)
        scheduler = SmartScheduler()

        assert scheduler.find_alternatives(draft, conflicts, events, limit=0) == []
        later = scheduler.find_alternatives(draft, conflicts, events, limit=2, not_before=at(10))
        assert [slot.start for slot in later] == [at(11), at(11, 15)]
