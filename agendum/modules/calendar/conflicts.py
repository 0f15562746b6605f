"""Conflict detection across merged calendars.

``detect_conflicts`` is pure and deterministic: the output only depends on
the set of events, never on the order they were passed in. Pairwise
overlaps are found with a sweep over events sorted by (start, title), then
merged into clusters with a union-find so that three or more entangled
events produce one record instead of a pile of overlapping pairs. Events are
identified by their provider-qualified ``key``, since two providers may hand
out the same id.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable

from agendum.modules.calendar.models import (
    CalendarConflict,
    ConflictKind,
    ConflictSeverity,
    UnifiedCalendarEvent,
)

REVIEW_SUGGESTION = (
    "Several events overlap here. Review your schedule and decide which "
    "ones to move."
)


def overlaps(a: UnifiedCalendarEvent, b: UnifiedCalendarEvent) -> bool:
    """Half-open overlap: 09:00-10:00 and 10:00-11:00 do not overlap."""
    return a.start < b.end and b.start < a.end


def _sort_key(event: UnifiedCalendarEvent) -> tuple:
    return (event.start, event.title, event.key)


def _distinct_locations(a: UnifiedCalendarEvent, b: UnifiedCalendarEvent) -> bool:
    return bool(
        a.location and b.location and a.location.casefold() != b.location.casefold()
    )


def classify(a: UnifiedCalendarEvent, b: UnifiedCalendarEvent) -> ConflictKind:
    if a.provider_id != b.provider_id:
        return ConflictKind.CROSS_CALENDAR
    if _distinct_locations(a, b):
        return ConflictKind.LOCATION_CONFLICT
    return ConflictKind.TIME_OVERLAP


def rate(a: UnifiedCalendarEvent, b: UnifiedCalendarEvent) -> ConflictSeverity:
    if _distinct_locations(a, b):
        return ConflictSeverity.HIGH
    if a.all_day or b.all_day:
        return ConflictSeverity.LOW
    return ConflictSeverity.MEDIUM


def suggest(
    kind: ConflictKind,
    first: UnifiedCalendarEvent,
    second: UnifiedCalendarEvent,
) -> str:
    """Suggestion for a pair, ``first`` being earlier in sort order."""
    if kind is ConflictKind.CROSS_CALENDAR:
        return (
            f"'{first.title}' and '{second.title}' overlap on different "
            f"calendars. Consider moving '{second.title}'."
        )
    if kind is ConflictKind.LOCATION_CONFLICT:
        return (
            f"'{first.title}' at {first.location} overlaps '{second.title}' at "
            f"{second.location}. Allow travel time or reschedule one of them."
        )
    return f"'{first.title}' overlaps '{second.title}'. Shorten or move one of them."


class _DisjointSet:
    """Union-find over event keys with path halving."""

    def __init__(self) -> None:
        self._parent: dict[str, str] = {}

    def find(self, item: str) -> str:
        self._parent.setdefault(item, item)
        while self._parent[item] != item:
            self._parent[item] = self._parent[self._parent[item]]
            item = self._parent[item]
        return item

    def union(self, a: str, b: str) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a != root_b:
            # Smaller key wins so roots are stable for a given set of edges.
            if root_b < root_a:
                root_a, root_b = root_b, root_a
            self._parent[root_b] = root_a


def pairwise_conflicts(events: Iterable[UnifiedCalendarEvent]) -> list[CalendarConflict]:
    """Every overlapping pair, unmerged."""
    ordered = sorted(events, key=_sort_key)
    pairs: list[CalendarConflict] = []
    for index, first in enumerate(ordered):
        for second in ordered[index + 1:]:
            if second.start >= first.end:
                break
            if second.key == first.key:
                continue
            kind = classify(first, second)
            pairs.append(CalendarConflict.build(
                [first.key, second.key],
                kind,
                rate(first, second),
                suggest(kind, first, second),
            ))
    return pairs


def detect_conflicts(events: Iterable[UnifiedCalendarEvent]) -> list[CalendarConflict]:
    """Return merged conflict clusters for ``events``.

    A cluster made of a single overlapping pair keeps that pair's kind,
    severity and suggestion. A cluster stitched together from several pairs
    becomes one high-severity time-overlap record covering all its events.
    """
    events = list(events)
    pairs = pairwise_conflicts(events)
    if not pairs:
        return []

    forest = _DisjointSet()
    for conflict in pairs:
        first, *rest = conflict.event_ids
        for other in rest:
            forest.union(first, other)

    clusters: dict[str, list[CalendarConflict]] = defaultdict(list)
    for conflict in pairs:
        clusters[forest.find(conflict.event_ids[0])].append(conflict)

    merged: list[CalendarConflict] = []
    for members in clusters.values():
        if len(members) == 1:
            merged.append(members[0])
            continue
        keys = sorted({key for conflict in members for key in conflict.event_ids})
        merged.append(CalendarConflict.build(
            keys,
            ConflictKind.TIME_OVERLAP,
            ConflictSeverity.HIGH,
            REVIEW_SUGGESTION,
        ))

    starts = {event.key: event.start for event in events}
    merged.sort(key=lambda c: (min(starts[key] for key in c.event_ids), c.event_ids))
    return merged


def conflicts_involving(
    event_key: str, conflicts: Iterable[CalendarConflict],
) -> list[CalendarConflict]:
    return [c for c in conflicts if c.involves(event_key)]
