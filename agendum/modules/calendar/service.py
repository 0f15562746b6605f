"""Calendar manager: one conflict-checked view across all providers.

The manager is the only writer of its snapshot. A snapshot is replaced in a
single assignment after a fetch or a write-back completes, so readers never
see a half-updated event list.

Write-back is never retried. If ``create_from_intent`` fails after the
provider accepted the event (or the caller runs it again after an error),
the event can end up duplicated on the provider; callers own that retry
decision.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from typing import Any, Awaitable, Callable, Optional

from agendum.config import Settings, get_settings
from agendum.logging_config import get_logger
from agendum.modules.calendar.conflicts import conflicts_involving, detect_conflicts
from agendum.modules.calendar.errors import (
    AgendumError,
    AuthError,
    CalendarError,
    CalendarErrorReason,
    NetworkError,
    NetworkErrorReason,
    SchedulingError,
    SchedulingErrorReason,
)
from agendum.modules.calendar.models import (
    CalendarProviderRef,
    CalendarSnapshot,
    CapturedIntent,
    DomainTag,
    FetchResult,
    IntentOutcome,
    IntentOutcomeStatus,
    ProviderFailure,
    SubCalendar,
    TimeRange,
    UnifiedCalendarEvent,
    apply_buffer,
    as_utc,
)
from agendum.modules.calendar.providers import BaseCalendarProvider, create_provider
from agendum.modules.calendar.routing import CalendarRouter, StaticCalendarRouter
from agendum.modules.calendar.scheduling import SmartScheduler
from agendum.modules.events import BusEvent, BusEventKind, EventBus

logger = get_logger(__name__)

PersistCallback = Callable[[UnifiedCalendarEvent], Awaitable[None]]
Clock = Callable[[], dt.datetime]


def _event_order(event: UnifiedCalendarEvent) -> tuple:
    return (event.start, event.title, event.provider_id, event.id)


class CalendarManager:
    """Aggregates registered providers and drives capture-to-event creation."""

    def __init__(
        self,
        bus: EventBus,
        settings: Optional[Settings] = None,
        scheduler: Optional[SmartScheduler] = None,
        router: Optional[CalendarRouter] = None,
        persist: Optional[PersistCallback] = None,
        clock: Optional[Clock] = None,
        providers: Optional[list[BaseCalendarProvider]] = None,
    ) -> None:
        self._bus = bus
        self._settings = settings or get_settings()
        self._scheduler = scheduler or SmartScheduler.from_settings(self._settings)
        self._router = router or StaticCalendarRouter.from_settings(self._settings)
        self._persist = persist
        self._clock = clock or (lambda: dt.datetime.now(dt.UTC))
        self._providers: dict[str, BaseCalendarProvider] = {}
        self._snapshot = CalendarSnapshot()
        for provider in providers or []:
            self._add(provider)

    @classmethod
    def from_settings(
        cls, bus: EventBus, settings: Optional[Settings] = None, **kwargs: Any,
    ) -> "CalendarManager":
        """Build a manager with every provider listed in the configuration."""
        settings = settings or get_settings()
        providers = [create_provider(cfg) for cfg in settings.calendar_providers]
        return cls(bus, settings=settings, providers=providers, **kwargs)

    # ── Providers ────────────────────────────────────────────────────

    @property
    def providers(self) -> dict[str, BaseCalendarProvider]:
        return dict(self._providers)

    @property
    def snapshot(self) -> CalendarSnapshot:
        """Latest completed aggregation result."""
        return self._snapshot

    def _add(self, provider: BaseCalendarProvider) -> None:
        if provider.provider_id in self._providers:
            raise ValueError(f"Provider already registered: {provider.provider_id}")
        self._providers[provider.provider_id] = provider

    async def register_provider(self, provider: BaseCalendarProvider) -> None:
        """Add a provider and announce it on the bus."""
        self._add(provider)
        logger.info("calendar_provider_registered", provider=provider.provider_id, kind=provider.kind)
        await self._publish(BusEventKind.PROVIDER_ADDED, provider=provider.ref)

    def provider_refs(self) -> list[CalendarProviderRef]:
        return [provider.ref for provider in self._providers.values()]

    async def authenticate_all(self) -> dict[str, Optional[Exception]]:
        """Authenticate every provider concurrently.

        Returns provider id -> error (``None`` on success).
        """
        providers = list(self._providers.values())
        outcomes = await asyncio.gather(
            *(provider.authenticate() for provider in providers), return_exceptions=True,
        )
        results: dict[str, Optional[Exception]] = {}
        for provider, outcome in zip(providers, outcomes):
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome
            results[provider.provider_id] = outcome if isinstance(outcome, Exception) else None
            if outcome is not None:
                logger.warning("provider_auth_failed", provider=provider.provider_id, error=str(outcome))
        return results

    async def list_all_calendars(self) -> dict[str, list[SubCalendar]]:
        """List sub-calendars of every provider."""
        providers = list(self._providers.values())
        calendars = await asyncio.gather(*(provider.list_calendars() for provider in providers))
        return {provider.provider_id: cals for provider, cals in zip(providers, calendars)}

    # ── Aggregation ──────────────────────────────────────────────────

    async def _fetch_one(
        self, provider: BaseCalendarProvider, time_range: TimeRange,
    ) -> list[UnifiedCalendarEvent]:
        timeout = self._settings.provider_timeout_seconds
        try:
            async with asyncio.timeout(timeout):
                await provider.ensure_authenticated()
                return await provider.list_events(time_range)
        except TimeoutError as exc:
            raise NetworkError(
                NetworkErrorReason.OFFLINE,
                f"Fetch timed out after {timeout}s",
                provider.provider_id,
            ) from exc
        except AgendumError as exc:
            if not exc.provider_id:
                exc.provider_id = provider.provider_id
            raise

    async def _collect(
        self,
        tasks: dict[asyncio.Task, BaseCalendarProvider],
        abort_on_first_error: bool,
    ) -> tuple[dict[str, list[UnifiedCalendarEvent]], list[ProviderFailure]]:
        results: dict[str, list[UnifiedCalendarEvent]] = {}
        failures: list[ProviderFailure] = []
        pending = set(tasks)

        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in sorted(done, key=lambda t: tasks[t].provider_id):
                provider_id = tasks[task].provider_id
                error = task.exception()
                if error is None:
                    results[provider_id] = task.result()
                    continue
                if abort_on_first_error:
                    raise error
                logger.warning("provider_fetch_failed", provider=provider_id, error=str(error))
                failures.append(ProviderFailure(provider_id=provider_id, error=error))

        failures.sort(key=lambda f: f.provider_id)
        return results, failures

    def _merge(
        self, results: dict[str, list[UnifiedCalendarEvent]],
    ) -> list[UnifiedCalendarEvent]:
        """Union of provider results, malformed events rejected, deterministic order."""
        seen: set[str] = set()
        merged: list[UnifiedCalendarEvent] = []
        for provider_id in sorted(results):
            for event in results[provider_id]:
                if not event.is_well_formed:
                    logger.warning(
                        "malformed_event_rejected",
                        provider=provider_id,
                        event_id=event.id,
                        start=event.start.isoformat(),
                        end=event.end.isoformat(),
                    )
                    continue
                if event.provider_id != provider_id:
                    event = event.model_copy(update={"provider_id": provider_id})
                key = event.key
                if key in seen:
                    continue
                seen.add(key)
                merged.append(event)
        merged.sort(key=_event_order)
        return merged

    async def fetch_all(
        self,
        time_range: TimeRange,
        abort_on_first_error: Optional[bool] = None,
    ) -> FetchResult:
        """Fetch every provider concurrently and replace the snapshot.

        With ``abort_on_first_error`` (the default from settings) the first
        provider failure cancels the remaining fetches and is raised; nothing
        is merged or published. Otherwise failures are returned next to the
        union of the providers that succeeded.
        """
        abort = (
            self._settings.abort_on_first_error
            if abort_on_first_error is None else abort_on_first_error
        )
        tasks = {
            asyncio.create_task(
                self._fetch_one(provider, time_range), name=f"fetch-{provider.provider_id}",
            ): provider
            for provider in self._providers.values()
        }

        try:
            results, failures = await self._collect(tasks, abort)
        except BaseException as exc:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.error(
                "fetch_all_aborted",
                error=f"{type(exc).__name__}: {exc}",
                provider=getattr(exc, "provider_id", None),
            )
            raise

        events = self._merge(results)
        conflicts = detect_conflicts(events)
        self._snapshot = CalendarSnapshot(
            events=tuple(events),
            conflicts=tuple(conflicts),
            range=time_range,
            generated_at=self._clock(),
        )
        logger.info(
            "fetch_all_complete",
            providers=len(tasks),
            failed=len(failures),
            events=len(events),
            conflicts=len(conflicts),
        )

        if failures:
            await self._publish(
                BusEventKind.FETCH_FAILED,
                errors=[
                    {
                        "provider_id": f.provider_id,
                        "reason": str(getattr(f.error, "reason", type(f.error).__name__)),
                        "error": str(f.error),
                    }
                    for f in failures
                ],
            )
        if conflicts:
            await self._publish(BusEventKind.CONFLICT_DETECTED, conflicts=list(conflicts))

        return FetchResult(events=events, conflicts=conflicts, errors=failures)

    # ── Creation pipeline ────────────────────────────────────────────

    def _resolve_target(self, domain: DomainTag) -> tuple[BaseCalendarProvider, str]:
        target = self._router.route(domain)
        if target is None:
            if not self._providers:
                raise CalendarError(CalendarErrorReason.CREATE_FAILED, "No calendar provider registered")
            return next(iter(self._providers.values())), ""
        provider = self._providers.get(target.provider_id)
        if provider is None:
            raise CalendarError(
                CalendarErrorReason.CREATE_FAILED,
                f"No provider '{target.provider_id}' for domain '{domain}'",
            )
        return provider, target.calendar_id

    async def create_from_intent(self, intent: CapturedIntent) -> IntentOutcome:
        """Turn a captured intent into an event in a conflict-free slot.

        Writes to the provider at most once. When the proposed event would
        conflict, nothing is written and an ``event_suggested`` notification
        carries the draft and alternatives instead.
        """
        provider, calendar_id = self._resolve_target(intent.domain)
        duration = dt.timedelta(
            minutes=intent.duration_hint or self._settings.default_duration_minutes,
        )
        now = as_utc(self._clock())
        search_start = max(now, intent.date_hint) if intent.date_hint else now
        horizon = TimeRange.starting_at(search_start, self._settings.search_horizon_days)
        buffer_minutes = self._settings.default_buffer_minutes

        slot = self._scheduler.find_slot(
            duration, intent.domain, self._snapshot.events, horizon, buffer_minutes,
        )
        if slot.low_confidence and not self._settings.allow_low_confidence_slots:
            raise SchedulingError(
                SchedulingErrorReason.NO_SLOT_FOUND,
                f"No free {int(duration.total_seconds() // 60)} minute slot before {horizon.end.isoformat()}",
            )

        title = intent.display_title
        draft = UnifiedCalendarEvent(
            title=title,
            start=slot.start,
            end=slot.end,
            notes=intent.text if intent.text.strip() != title else None,
            provider_id=provider.provider_id,
            calendar_id=calendar_id,
            is_draft=True,
        )
        draft = apply_buffer(draft, buffer_minutes)
        logger.info(
            "intent_slot_found",
            domain=intent.domain,
            start=slot.start.isoformat(),
            low_confidence=slot.low_confidence,
        )
        return await self.submit_draft(draft, domain=intent.domain, low_confidence=slot.low_confidence)

    async def submit_draft(
        self,
        draft: UnifiedCalendarEvent,
        domain: Optional[DomainTag] = None,
        low_confidence: bool = False,
    ) -> IntentOutcome:
        """Check ``draft`` against the snapshot and write it back if clear.

        Also used to accept one of the alternatives from an earlier
        suggestion. The draft's buffer is kept as given, zero included;
        ``create_from_intent`` is where the default buffer is applied.
        """
        if not draft.is_well_formed:
            raise ValueError(f"Draft '{draft.title}' ends before it starts")
        provider = self._providers.get(draft.provider_id)
        if provider is None:
            raise CalendarError(
                CalendarErrorReason.CREATE_FAILED, f"Unknown provider '{draft.provider_id}'",
            )

        snapshot = self._snapshot
        proposed = [e for e in snapshot.events if e.key != draft.key] + [draft]
        conflicts = conflicts_involving(draft.key, detect_conflicts(proposed))

        if conflicts:
            alternatives = self._scheduler.find_alternatives(
                draft,
                conflicts,
                snapshot.events,
                not_before=self._clock(),
                domain=domain,
            )
            suggested = draft.model_copy(update={"alternatives": alternatives})
            logger.info(
                "event_suggested",
                title=draft.title,
                conflicts=len(conflicts),
                alternatives=len(alternatives),
            )
            await self._publish(
                BusEventKind.EVENT_SUGGESTED,
                draft=suggested,
                conflicts=conflicts,
                alternatives=alternatives,
            )
            return IntentOutcome(
                status=IntentOutcomeStatus.SUGGESTED,
                event=suggested,
                conflicts=conflicts,
                alternatives=alternatives,
                low_confidence=low_confidence,
            )

        created = await self._write_back(provider, draft)
        self._replace_events([*self._snapshot.events, created])
        await self._save(created)
        await self._publish(BusEventKind.EVENT_CREATED, event=created)
        return IntentOutcome(
            status=IntentOutcomeStatus.CREATED,
            event=created,
            low_confidence=low_confidence,
        )

    async def _write_back(
        self, provider: BaseCalendarProvider, draft: UnifiedCalendarEvent,
    ) -> UnifiedCalendarEvent:
        await provider.ensure_authenticated()
        try:
            event_id = await provider.create_event(draft)
        except (AuthError, NetworkError, CalendarError) as exc:
            logger.error("event_create_failed", provider=provider.provider_id, error=str(exc))
            raise
        except Exception as exc:
            logger.error(
                "event_create_failed",
                provider=provider.provider_id,
                error=f"{type(exc).__name__}: {exc}",
            )
            raise CalendarError(
                CalendarErrorReason.CREATE_FAILED, str(exc), provider.provider_id,
            ) from exc

        logger.info("event_created", title=draft.title, provider=provider.provider_id, event_id=event_id)
        return draft.model_copy(update={"id": event_id, "is_draft": False, "alternatives": []})

    async def _save(self, event: UnifiedCalendarEvent) -> None:
        if self._persist is None:
            return
        try:
            await self._persist(event)
        except Exception as exc:
            logger.error("event_persist_failed", event_id=event.id, error=str(exc))

    # ── Edits ────────────────────────────────────────────────────────

    def _provider_for(self, provider_id: str) -> BaseCalendarProvider:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise ValueError(f"Unknown provider: {provider_id}")
        return provider

    async def update_event(self, event: UnifiedCalendarEvent) -> UnifiedCalendarEvent:
        """Push an edited event to its provider and refresh the snapshot."""
        if not event.is_well_formed:
            raise ValueError(f"Event {event.id} ends before it starts")
        provider = self._provider_for(event.provider_id)
        await provider.ensure_authenticated()
        updated = await provider.update_event(event)
        self._replace_events(
            [e for e in self._snapshot.events if e.key != updated.key] + [updated],
        )
        await self._publish(BusEventKind.EVENT_UPDATED, event=updated)
        return updated

    async def delete_event(self, provider_id: str, event_id: str) -> bool:
        """Delete an event on its provider and drop it from the snapshot."""
        provider = self._provider_for(provider_id)
        await provider.ensure_authenticated()
        deleted = await provider.delete_event(event_id)
        if deleted:
            self._replace_events([
                e for e in self._snapshot.events
                if not (e.provider_id == provider_id and e.id == event_id)
            ])
            await self._publish(BusEventKind.EVENT_DELETED, provider_id=provider_id, event_id=event_id)
        return deleted

    # ── Internals ────────────────────────────────────────────────────

    def _replace_events(self, events: list[UnifiedCalendarEvent]) -> None:
        events = sorted(events, key=_event_order)
        self._snapshot = CalendarSnapshot(
            events=tuple(events),
            conflicts=tuple(detect_conflicts(events)),
            range=self._snapshot.range,
            generated_at=self._clock(),
        )

    async def _publish(self, kind: BusEventKind, **payload: Any) -> None:
        await self._bus.publish(BusEvent(kind=kind, payload=payload, source="calendar_manager"))
