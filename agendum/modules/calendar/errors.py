"""Structured error taxonomy for the calendar core.

Only kinds are carried here; user-facing wording is up to the presentation
layer.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Optional


class AuthErrorReason(StrEnum):
    NOT_AUTHENTICATED = "not_authenticated"
    ACCESS_DENIED = "access_denied"


class NetworkErrorReason(StrEnum):
    OFFLINE = "offline"
    RATE_LIMITED = "rate_limited"


class CalendarErrorReason(StrEnum):
    CONFLICT = "conflict"
    CREATE_FAILED = "create_failed"
    UPDATE_FAILED = "update_failed"


class SchedulingErrorReason(StrEnum):
    NO_SLOT_FOUND = "no_slot_found"


class AgendumError(Exception):
    """Base class for errors raised by the calendar core."""

    def __init__(
        self,
        reason: StrEnum,
        message: str = "",
        provider_id: Optional[str] = None,
    ) -> None:
        self.reason = reason
        self.provider_id = provider_id
        detail = message or str(reason)
        if provider_id:
            detail = f"[{provider_id}] {detail}"
        super().__init__(detail)


class AuthError(AgendumError):
    """A provider refused or lacks credentials."""

    def __init__(
        self,
        reason: AuthErrorReason,
        message: str = "",
        provider_id: Optional[str] = None,
    ) -> None:
        super().__init__(reason, message, provider_id)


class NetworkError(AgendumError):
    """A provider could not be reached or throttled the request."""

    def __init__(
        self,
        reason: NetworkErrorReason,
        message: str = "",
        provider_id: Optional[str] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(reason, message, provider_id)
        self.retry_after = retry_after


class CalendarError(AgendumError):
    """A write-back to a provider could not be completed."""

    def __init__(
        self,
        reason: CalendarErrorReason,
        message: str = "",
        provider_id: Optional[str] = None,
    ) -> None:
        super().__init__(reason, message, provider_id)


class SchedulingError(AgendumError):
    """No certain slot exists and low-confidence fallback is disabled."""

    def __init__(self, reason: SchedulingErrorReason, message: str = "") -> None:
        super().__init__(reason, message)
