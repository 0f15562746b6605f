"""Agendum CLI: inspect calendars, conflicts and free slots."""

from __future__ import annotations

import asyncio
import datetime as dt
import json
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from agendum.config import get_settings
from agendum.logging_config import setup_logging
from agendum.modules.calendar.conflicts import detect_conflicts
from agendum.modules.calendar.errors import AgendumError
from agendum.modules.calendar.models import (
    CalendarConflict,
    DomainTag,
    TimeRange,
    UnifiedCalendarEvent,
    as_utc,
)
from agendum.modules.calendar.scheduling import SmartScheduler

app = typer.Typer(help="Agendum calendar aggregation CLI", no_args_is_help=True)
console = Console()


@app.callback()
def main() -> None:
    """Configure logging before any command runs."""
    setup_logging()


def _async_run(coro):
    """Run an async coroutine."""
    return asyncio.run(coro)


def _load_events(path: Path) -> list[UnifiedCalendarEvent]:
    """Read a JSON list of events (or ``{"events": [...]}``) and drop malformed ones."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"{path} is not valid JSON: {exc}") from exc
    if isinstance(data, dict):
        data = data.get("events", [])

    events = []
    for index, item in enumerate(data):
        try:
            event = UnifiedCalendarEvent.model_validate(item)
        except ValidationError as exc:
            raise typer.BadParameter(f"Event #{index} is invalid: {exc}") from exc
        if not event.is_well_formed:
            console.print(f"[yellow]⚠ Skipping '{event.title}': it ends before it starts[/yellow]")
            continue
        events.append(event)
    return events


def _parse_start(value: Optional[str]) -> dt.datetime:
    if not value:
        return dt.datetime.now(dt.UTC)
    try:
        return as_utc(dt.datetime.fromisoformat(value))
    except ValueError as exc:
        raise typer.BadParameter(f"Not an ISO timestamp: {value}") from exc


def _conflict_table(conflicts: list[CalendarConflict], titles: dict[str, str]) -> Table:
    table = Table(title="Conflicts")
    table.add_column("Kind", style="cyan", no_wrap=True)
    table.add_column("Severity", style="yellow", no_wrap=True)
    table.add_column("Events", style="green")
    table.add_column("Suggestion", style="white")
    for conflict in conflicts:
        table.add_row(
            conflict.kind.value,
            conflict.severity.value,
            ", ".join(titles.get(eid, eid) for eid in conflict.event_ids),
            conflict.suggestion,
        )
    return table


@app.command()
def conflicts(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON file of events"),
) -> None:
    """Detect merged conflicts in a file of events."""
    events = _load_events(file)
    found = detect_conflicts(events)
    if not found:
        console.print(f"[green]✓[/green] No conflicts among {len(events)} events")
        return

    console.print(f"[bold]{len(found)} conflict(s)[/bold] among {len(events)} events")
    console.print(_conflict_table(found, {e.key: e.title for e in events}))


@app.command("find-slot")
def find_slot(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON file of existing events"),
    duration: int = typer.Option(60, "--duration", "-d", min=1, help="Slot length in minutes"),
    domain: DomainTag = typer.Option(DomainTag.OTHER, "--domain", help="Life domain of the new event"),
    days: Optional[int] = typer.Option(None, "--days", min=1, help="Search horizon in days"),
    buffer: Optional[int] = typer.Option(None, "--buffer", "-b", min=0, help="Buffer after the event"),
    start: Optional[str] = typer.Option(None, "--start", help="Search from this ISO timestamp"),
) -> None:
    """Find the earliest free slot after the existing events."""
    settings = get_settings()
    events = _load_events(file)
    horizon = TimeRange.starting_at(_parse_start(start), days or settings.search_horizon_days)
    buffer_minutes = settings.default_buffer_minutes if buffer is None else buffer

    slot = SmartScheduler.from_settings(settings).find_slot(
        dt.timedelta(minutes=duration), domain, events, horizon, buffer_minutes,
    )

    console.print(f"Slot: [green]{slot.start.isoformat()}[/green] → [green]{slot.end.isoformat()}[/green]")
    console.print(f"Buffer: {buffer_minutes} min")
    if slot.low_confidence:
        console.print(
            f"[yellow]⚠ Low confidence: nothing fit before {horizon.end.isoformat()}[/yellow]"
        )


@app.command()
def agenda(
    days: int = typer.Option(1, "--days", min=1, help="How many days to fetch"),
    resilient: bool = typer.Option(False, "--resilient", help="Keep going when a provider fails"),
) -> None:
    """Fetch all configured providers and show the merged agenda."""
    from agendum.modules.calendar.service import CalendarManager
    from agendum.modules.events import EventBus

    async def _agenda():
        bus = EventBus()
        manager = CalendarManager.from_settings(bus)
        if not manager.providers:
            console.print("[yellow]No calendar providers configured (CALENDAR_PROVIDERS).[/yellow]")
            return None
        window = TimeRange.starting_at(dt.datetime.now(dt.UTC), days)
        try:
            return await manager.fetch_all(window, abort_on_first_error=False if resilient else None)
        finally:
            await bus.stop()

    try:
        result = _async_run(_agenda())
    except AgendumError as exc:
        console.print(f"[red]✗ {type(exc).__name__} ({exc.reason}): {exc}[/red]")
        raise typer.Exit(code=1)
    if result is None:
        return

    table = Table(title="Agenda")
    table.add_column("Start", style="cyan", no_wrap=True)
    table.add_column("End", style="cyan", no_wrap=True)
    table.add_column("Title", style="green")
    table.add_column("Provider", style="yellow")
    for event in result.events:
        table.add_row(
            event.start.strftime("%Y-%m-%d %H:%M"),
            event.end.strftime("%H:%M"),
            event.title,
            event.provider_id,
        )
    console.print(table)

    for failure in result.errors:
        console.print(f"[red]✗ {failure.provider_id}: {failure.error}[/red]")
    if result.conflicts:
        console.print(_conflict_table(result.conflicts, {e.key: e.title for e in result.events}))


@app.command()
def config() -> None:
    """Show the effective scheduling configuration."""
    settings = get_settings()

    table = Table(title="Calendar Manager")
    table.add_column("Option", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")
    rows = {
        "abort_on_first_error": settings.abort_on_first_error,
        "default_buffer_minutes": settings.default_buffer_minutes,
        "search_horizon_days": settings.search_horizon_days,
        "default_duration_minutes": settings.default_duration_minutes,
        "allow_low_confidence_slots": settings.allow_low_confidence_slots,
        "max_alternatives": settings.max_alternatives,
        "timezone": settings.timezone,
        "providers": ", ".join(p.id for p in settings.calendar_providers) or "-",
    }
    for option, value in rows.items():
        table.add_row(option, str(value))
    console.print(table)


if __name__ == "__main__":
    app()
