"""Structlog setup shared by the calendar manager, providers and CLI."""

from __future__ import annotations

import datetime as dt
import logging
import sys
from typing import Any, Optional

import structlog

from agendum.config import Settings, get_settings


def _isoformat_times(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Render datetimes and dates (slot starts, fetch windows) as ISO strings."""
    for key, value in event_dict.items():
        if isinstance(value, (dt.datetime, dt.date)):
            event_dict[key] = value.isoformat()
    return event_dict


def setup_logging(settings: Optional[Settings] = None, *, json_logs: Optional[bool] = None) -> None:
    """Configure structlog and the stdlib root logger.

    Output goes to stderr so that CLI tables on stdout stay clean. JSON lines
    are used in production unless ``json_logs`` says otherwise. Loggers are
    only cached outside the test environment, where streams get swapped.
    """
    settings = settings or get_settings()
    level = logging.getLevelName(settings.agendum_log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    if json_logs is None:
        json_logs = settings.agendum_env == "production"

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _isoformat_times,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=settings.agendum_env != "test",
    )
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)


def get_logger(name: str) -> Any:
    """Return a structured logger tagged with its component."""
    return structlog.get_logger(name, component=name.rsplit(".", 1)[-1])
