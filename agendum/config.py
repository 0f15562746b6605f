"""Centralized configuration loaded from environment variables."""

from __future__ import annotations

import datetime as dt
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderConfig(BaseModel):
    """One configured calendar backend.

    ``backend`` selects the adapter variant; the remaining fields are only
    read by the variant that needs them.
    """

    id: str
    backend: str = "memory"
    kind: Optional[str] = None
    url: str = ""
    username: str = ""
    password: str = ""
    access_token: str = ""
    calendar_id: str = ""


class Settings(BaseSettings):
    """Application-wide settings sourced from .env / environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── General ──────────────────────────────────────────────────────
    agendum_env: str = "development"
    agendum_log_level: str = "INFO"
    timezone: str = "UTC"

    # ── Calendar manager ─────────────────────────────────────────────
    abort_on_first_error: bool = True
    default_buffer_minutes: int = Field(default=15, ge=0)
    search_horizon_days: int = Field(default=7, ge=1)
    default_duration_minutes: int = Field(default=30, ge=1)
    allow_low_confidence_slots: bool = True
    provider_timeout_seconds: float = 30.0

    # ── Smart scheduler ──────────────────────────────────────────────
    max_alternatives: int = Field(default=3, ge=0)
    alternative_step_minutes: int = Field(default=15, ge=1)
    alternative_window_hours: int = Field(default=12, ge=1)
    domain_hours: dict[str, str] = Field(default_factory=dict)

    # ── Routing & providers ──────────────────────────────────────────
    domain_calendars: dict[str, str] = Field(default_factory=dict)
    calendar_providers: list[ProviderConfig] = Field(default_factory=list)

    # ── Event bus ────────────────────────────────────────────────────
    pattern_sink_attempts: int = Field(default=3, ge=1)

    @field_validator("domain_hours")
    @classmethod
    def _check_domain_hours(cls, value: dict[str, str]) -> dict[str, str]:
        for window in value.values():
            parse_hours(window)
        return value

    def active_hours_for(self, domain: str) -> Optional[tuple[dt.time, dt.time]]:
        """Return the (start, end) wall-clock window for a domain, if any."""
        window = self.domain_hours.get(str(domain))
        if not window:
            return None
        return parse_hours(window)


def parse_hours(window: str) -> tuple[dt.time, dt.time]:
    """Parse ``"HH:MM-HH:MM"`` into a pair of times."""
    try:
        start_str, end_str = (part.strip() for part in window.split("-", 1))
        start = dt.time.fromisoformat(start_str)
        end = dt.time.fromisoformat(end_str)
    except ValueError as exc:
        raise ValueError(f"Invalid hours window: {window!r}") from exc
    if end <= start:
        raise ValueError(f"Hours window must end after it starts: {window!r}")
    return start, end


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the singleton Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
