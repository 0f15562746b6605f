"""Calendar provider adapters (on-device memory, MS Graph, CalDAV).

Every adapter is a leaf: it knows how to talk to one backend and nothing
about the bus, the detector or the manager. Backend failures are translated
into the core error taxonomy at this boundary.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import uuid
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from agendum.config import ProviderConfig
from agendum.logging_config import get_logger
from agendum.modules.calendar.errors import (
    AuthError,
    AuthErrorReason,
    CalendarError,
    CalendarErrorReason,
    NetworkError,
    NetworkErrorReason,
)
from agendum.modules.calendar.models import (
    AuthState,
    CalendarProviderRef,
    ProviderKind,
    SubCalendar,
    TimeRange,
    UnifiedCalendarEvent,
    as_utc,
)

logger = get_logger(__name__)

TokenSource = Union[str, Callable[[], Awaitable[str]]]


class BaseCalendarProvider(ABC):
    """Abstract calendar provider interface."""

    kind: ProviderKind

    def __init__(self, provider_id: str) -> None:
        self.provider_id = provider_id
        self.auth_state = AuthState.UNAUTHENTICATED
        self._calendars: list[SubCalendar] = []

    @property
    def ref(self) -> CalendarProviderRef:
        return CalendarProviderRef(
            provider_id=self.provider_id,
            kind=self.kind,
            auth_state=self.auth_state,
            calendars=list(self._calendars),
        )

    async def ensure_authenticated(self) -> None:
        """Authenticate unless already done."""
        if self.auth_state is not AuthState.AUTHENTICATED:
            await self.authenticate()

    @abstractmethod
    async def authenticate(self) -> None:
        """Verify credentials; raises ``AuthError``."""

    @abstractmethod
    async def list_events(self, time_range: TimeRange) -> list[UnifiedCalendarEvent]:
        """List events intersecting ``time_range``; raises ``NetworkError``."""

    @abstractmethod
    async def create_event(self, draft: UnifiedCalendarEvent) -> str:
        """Create ``draft`` and return the provider-assigned id.

        Not idempotent: calling twice creates two events.
        """

    @abstractmethod
    async def update_event(self, event: UnifiedCalendarEvent) -> UnifiedCalendarEvent:
        """Update an existing event."""

    @abstractmethod
    async def delete_event(self, event_id: str) -> bool:
        """Delete an event by its provider-specific ID."""

    @abstractmethod
    async def list_calendars(self) -> list[SubCalendar]:
        """List sub-calendars of this account."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(id={self.provider_id}, kind={self.kind})>"


class InMemoryCalendarProvider(BaseCalendarProvider):
    """On-device calendar held in process memory."""

    kind = ProviderKind.FIRST_PARTY

    def __init__(
        self,
        provider_id: str,
        events: Optional[list[UnifiedCalendarEvent]] = None,
        calendars: Optional[list[SubCalendar]] = None,
        access_granted: bool = True,
    ) -> None:
        super().__init__(provider_id)
        self._events: dict[str, UnifiedCalendarEvent] = {}
        self._calendars = calendars or [SubCalendar(id="primary", title="Calendar", is_default=True)]
        self._access_granted = access_granted
        for event in events or []:
            self.add_event(event)

    def add_event(self, event: UnifiedCalendarEvent) -> UnifiedCalendarEvent:
        """Seed an event as if it already existed on the device."""
        stored = event.model_copy(update={
            "provider_id": self.provider_id,
            "calendar_id": event.calendar_id or self._default_calendar_id(),
            "is_draft": False,
        })
        self._events[stored.id] = stored
        return stored

    def _default_calendar_id(self) -> str:
        default = next((c for c in self._calendars if c.is_default), None)
        return (default or self._calendars[0]).id if self._calendars else ""

    def _require_auth(self) -> None:
        if self.auth_state is AuthState.DENIED:
            raise AuthError(AuthErrorReason.ACCESS_DENIED, provider_id=self.provider_id)
        if self.auth_state is not AuthState.AUTHENTICATED:
            raise AuthError(AuthErrorReason.NOT_AUTHENTICATED, provider_id=self.provider_id)

    async def authenticate(self) -> None:
        if not self._access_granted:
            self.auth_state = AuthState.DENIED
            raise AuthError(AuthErrorReason.ACCESS_DENIED, "Calendar access not granted", self.provider_id)
        self.auth_state = AuthState.AUTHENTICATED

    async def list_events(self, time_range: TimeRange) -> list[UnifiedCalendarEvent]:
        self._require_auth()
        events = [
            event.model_copy()
            for event in self._events.values()
            if time_range.intersects(event.start, event.end)
        ]
        events.sort(key=lambda e: e.start)
        return events

    async def create_event(self, draft: UnifiedCalendarEvent) -> str:
        self._require_auth()
        event_id = f"{self.provider_id}-{uuid.uuid4().hex[:12]}"
        self.add_event(draft.model_copy(update={"id": event_id}))
        logger.debug("memory_event_created", provider=self.provider_id, event_id=event_id)
        return event_id

    async def update_event(self, event: UnifiedCalendarEvent) -> UnifiedCalendarEvent:
        self._require_auth()
        if event.id not in self._events:
            raise CalendarError(
                CalendarErrorReason.UPDATE_FAILED, f"Unknown event {event.id}", self.provider_id,
            )
        return self.add_event(event)

    async def delete_event(self, event_id: str) -> bool:
        self._require_auth()
        return self._events.pop(event_id, None) is not None

    async def list_calendars(self) -> list[SubCalendar]:
        return list(self._calendars)


def _parse_graph_datetime(value: str) -> dt.datetime:
    """Graph returns seven fractional digits; datetime accepts six."""
    value = value.rstrip("Z")
    if "." in value:
        whole, fraction = value.split(".", 1)
        value = f"{whole}.{fraction[:6]}"
    return dt.datetime.fromisoformat(value).replace(tzinfo=dt.UTC)


def _graph_datetime(value: dt.datetime) -> dict[str, str]:
    return {"dateTime": as_utc(value).replace(tzinfo=None).isoformat(), "timeZone": "UTC"}


class MSGraphCalendarProvider(BaseCalendarProvider):
    """Microsoft Graph API calendar integration for Office 365.

    Tokens come from the OAuth collaborator, either as a fixed string or as
    an async callable returning a fresh one.
    """

    kind = ProviderKind.SECOND_PARTY

    def __init__(
        self,
        provider_id: str,
        access_token: TokenSource,
        calendar_id: str = "",
        base_url: str = "https://graph.microsoft.com/v1.0",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(provider_id)
        self._access_token = access_token
        self._calendar_id = calendar_id
        self._base_url = base_url
        self._transport = transport
        self._timeout = timeout

    async def _token(self) -> str:
        if callable(self._access_token):
            return await self._access_token()
        return self._access_token

    def _events_path(self, calendar_id: str = "") -> str:
        calendar_id = calendar_id or self._calendar_id
        return f"/me/calendars/{calendar_id}" if calendar_id else "/me"

    def _check_response(self, resp: httpx.Response, operation: str) -> None:
        """Map HTTP failures onto the error taxonomy."""
        status = resp.status_code
        if status == 401:
            self.auth_state = AuthState.UNAUTHENTICATED
            raise AuthError(AuthErrorReason.NOT_AUTHENTICATED, f"{operation}: HTTP 401", self.provider_id)
        if status == 403:
            self.auth_state = AuthState.DENIED
            raise AuthError(AuthErrorReason.ACCESS_DENIED, f"{operation}: HTTP 403", self.provider_id)
        if status == 429:
            retry_after = resp.headers.get("Retry-After")
            raise NetworkError(
                NetworkErrorReason.RATE_LIMITED,
                f"{operation}: HTTP 429",
                self.provider_id,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status < 400:
            return
        if operation == "create":
            raise CalendarError(CalendarErrorReason.CREATE_FAILED, f"create: HTTP {status}", self.provider_id)
        if status >= 500:
            raise NetworkError(NetworkErrorReason.OFFLINE, f"{operation}: HTTP {status}", self.provider_id)
        resp.raise_for_status()

    async def _request(
        self, method: str, url: str, operation: str, **kwargs: Any,
    ) -> httpx.Response:
        token = await self._token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Prefer": 'outlook.timezone="UTC"',
        }
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url, transport=self._transport, timeout=self._timeout,
            ) as client:
                resp = await client.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as exc:
            if operation == "create":
                raise CalendarError(
                    CalendarErrorReason.CREATE_FAILED, f"create: {exc}", self.provider_id,
                ) from exc
            raise NetworkError(NetworkErrorReason.OFFLINE, str(exc), self.provider_id) from exc
        self._check_response(resp, operation)
        return resp

    async def authenticate(self) -> None:
        try:
            self._calendars = await self.list_calendars()
        except AuthError:
            logger.warning("msgraph_auth_failed", provider=self.provider_id, state=self.auth_state)
            raise
        self.auth_state = AuthState.AUTHENTICATED
        logger.info("msgraph_authenticated", provider=self.provider_id, calendars=len(self._calendars))

    @retry(
        retry=retry_if_exception_type(NetworkError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        reraise=True,
    )
    async def list_events(self, time_range: TimeRange) -> list[UnifiedCalendarEvent]:
        params: Optional[dict[str, str]] = {
            "startDateTime": time_range.start.isoformat(),
            "endDateTime": time_range.end.isoformat(),
            "$orderby": "start/dateTime",
            "$top": "250",
        }
        url = f"{self._events_path()}/calendarView"
        events: list[UnifiedCalendarEvent] = []

        while url:
            resp = await self._request("GET", url, "list", params=params)
            data = resp.json()
            events.extend(self._parse_event(item) for item in data.get("value", []))
            url = data.get("@odata.nextLink", "")
            params = None  # nextLink already carries the query

        logger.debug("msgraph_events_listed", provider=self.provider_id, events=len(events))
        return events

    def _parse_event(self, item: dict[str, Any]) -> UnifiedCalendarEvent:
        return UnifiedCalendarEvent(
            id=item["id"],
            title=item.get("subject", ""),
            start=_parse_graph_datetime(item["start"]["dateTime"]),
            end=_parse_graph_datetime(item["end"]["dateTime"]),
            location=(item.get("location") or {}).get("displayName") or None,
            notes=item.get("bodyPreview") or None,
            provider_id=self.provider_id,
            calendar_id=self._calendar_id,
            all_day=item.get("isAllDay", False),
            reminder_minutes=item.get("reminderMinutesBeforeStart", 15),
        )

    def _to_body(self, event: UnifiedCalendarEvent) -> dict[str, Any]:
        return {
            "subject": event.title,
            "body": {"contentType": "text", "content": event.notes or ""},
            "start": _graph_datetime(event.start),
            "end": _graph_datetime(event.end),
            "location": {"displayName": event.location or ""},
            "isAllDay": event.all_day,
            "isReminderOn": event.reminder_minutes > 0,
            "reminderMinutesBeforeStart": event.reminder_minutes,
        }

    async def create_event(self, draft: UnifiedCalendarEvent) -> str:
        resp = await self._request(
            "POST", f"{self._events_path(draft.calendar_id)}/events", "create", json=self._to_body(draft),
        )
        return resp.json()["id"]

    async def update_event(self, event: UnifiedCalendarEvent) -> UnifiedCalendarEvent:
        await self._request("PATCH", f"/me/events/{event.id}", "update", json=self._to_body(event))
        return event

    async def delete_event(self, event_id: str) -> bool:
        try:
            await self._request("DELETE", f"/me/events/{event_id}", "delete")
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                return False
            raise
        return True

    async def list_calendars(self) -> list[SubCalendar]:
        resp = await self._request("GET", "/me/calendars", "calendars")
        return [
            SubCalendar(id=c["id"], title=c.get("name", ""), is_default=c.get("isDefaultCalendar", False))
            for c in resp.json().get("value", [])
        ]


def _ical_text(value: str) -> str:
    return (
        value.replace("\\", "\\\\").replace(";", "\\;").replace(",", "\\,").replace("\n", "\\n")
    )


def _ical_stamp(value: dt.datetime) -> str:
    return as_utc(value).strftime("%Y%m%dT%H%M%SZ")


def _to_ical(event: UnifiedCalendarEvent, uid: str) -> str:
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//agendum//calendar core//EN",
        "BEGIN:VEVENT",
        f"UID:{uid}",
        f"DTSTAMP:{_ical_stamp(dt.datetime.now(dt.UTC))}",
        f"DTSTART:{_ical_stamp(event.start)}",
        f"DTEND:{_ical_stamp(event.end)}",
        f"SUMMARY:{_ical_text(event.title)}",
    ]
    if event.notes:
        lines.append(f"DESCRIPTION:{_ical_text(event.notes)}")
    if event.location:
        lines.append(f"LOCATION:{_ical_text(event.location)}")
    lines += ["END:VEVENT", "END:VCALENDAR"]
    return "\r\n".join(lines)


class CalDAVCalendarProvider(BaseCalendarProvider):
    """CalDAV protocol calendar integration.

    The caldav client is blocking, so every call runs in a worker thread.
    """

    kind = ProviderKind.THIRD_PARTY

    def __init__(
        self,
        provider_id: str,
        url: str,
        username: str,
        password: str,
        calendar_id: str = "",
    ) -> None:
        super().__init__(provider_id)
        self._url = url
        self._username = username
        self._password = password
        self._calendar_id = calendar_id

    def _get_client(self):
        import caldav
        return caldav.DAVClient(
            url=self._url,
            username=self._username,
            password=self._password,
        )

    def _translate(self, exc: Exception, operation: str) -> Optional[Exception]:
        from caldav.lib import error as caldav_error

        if isinstance(exc, caldav_error.AuthorizationError):
            self.auth_state = AuthState.DENIED
            return AuthError(AuthErrorReason.ACCESS_DENIED, str(exc), self.provider_id)
        if operation == "create":
            return CalendarError(CalendarErrorReason.CREATE_FAILED, str(exc), self.provider_id)
        if isinstance(exc, OSError):
            return NetworkError(NetworkErrorReason.OFFLINE, str(exc), self.provider_id)
        return None

    async def _run(self, operation: str, func: Callable[[], Any]) -> Any:
        try:
            return await asyncio.to_thread(func)
        except (AuthError, NetworkError, CalendarError):
            raise
        except Exception as exc:
            translated = self._translate(exc, operation)
            if translated is None:
                raise
            raise translated from exc

    def _pick_calendar(self, calendars: list, calendar_id: str = ""):
        wanted = calendar_id or self._calendar_id
        for cal in calendars:
            if wanted and wanted in (str(cal.url), cal.name):
                return cal
        if not calendars:
            raise CalendarError(CalendarErrorReason.CREATE_FAILED, "No calendars on server", self.provider_id)
        return calendars[0]

    async def authenticate(self) -> None:
        def _auth():
            principal = self._get_client().principal()
            return principal.calendars()

        calendars = await self._run("authenticate", _auth)
        self._calendars = [
            SubCalendar(id=str(cal.url), title=cal.name or "", is_default=index == 0)
            for index, cal in enumerate(calendars)
        ]
        self.auth_state = AuthState.AUTHENTICATED

    def _parse_component(self, item: Any, calendar_id: str) -> UnifiedCalendarEvent:
        component = item.icalendar_component
        start = component.get("dtstart").dt
        end_prop = component.get("dtend")
        all_day = not isinstance(start, dt.datetime)

        if all_day:
            start = dt.datetime.combine(start, dt.time.min)
        if end_prop is not None:
            end = end_prop.dt
            if not isinstance(end, dt.datetime):
                end = dt.datetime.combine(end, dt.time.min)
        elif component.get("duration") is not None:
            end = start + component.get("duration").dt
        else:
            end = start + dt.timedelta(days=1) if all_day else start

        location = component.get("location")
        description = component.get("description")
        return UnifiedCalendarEvent(
            id=str(item.url),
            title=str(component.get("summary", "")),
            start=start,
            end=end,
            location=str(location) if location else None,
            notes=str(description) if description else None,
            provider_id=self.provider_id,
            calendar_id=calendar_id,
            all_day=all_day,
        )

    @retry(
        retry=retry_if_exception_type(NetworkError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        reraise=True,
    )
    async def list_events(self, time_range: TimeRange) -> list[UnifiedCalendarEvent]:
        def _fetch():
            calendars = self._get_client().principal().calendars()
            events = []
            for cal in calendars:
                if self._calendar_id and self._calendar_id not in (str(cal.url), cal.name):
                    continue
                for item in cal.search(start=time_range.start, end=time_range.end, event=True, expand=True):
                    events.append(self._parse_component(item, str(cal.url)))
            return events

        return await self._run("list", _fetch)

    async def create_event(self, draft: UnifiedCalendarEvent) -> str:
        def _create():
            calendars = self._get_client().principal().calendars()
            cal = self._pick_calendar(calendars, draft.calendar_id)
            created = cal.save_event(_to_ical(draft, str(uuid.uuid4())))
            return str(created.url)

        return await self._run("create", _create)

    async def update_event(self, event: UnifiedCalendarEvent) -> UnifiedCalendarEvent:
        def _update():
            import caldav

            resource = caldav.CalendarObjectResource(client=self._get_client(), url=event.id)
            resource.load()
            uid = str(resource.icalendar_component.get("uid", uuid.uuid4()))
            resource.data = _to_ical(event, uid)
            resource.save()

        await self._run("update", _update)
        return event

    async def delete_event(self, event_id: str) -> bool:
        def _delete():
            import caldav

            caldav.CalendarObjectResource(client=self._get_client(), url=event_id).delete()
            return True

        return await self._run("delete", _delete)

    async def list_calendars(self) -> list[SubCalendar]:
        await self.ensure_authenticated()
        return list(self._calendars)


_BACKENDS: dict[str, Callable[[ProviderConfig], BaseCalendarProvider]] = {
    "memory": lambda cfg: InMemoryCalendarProvider(cfg.id),
    "msgraph": lambda cfg: MSGraphCalendarProvider(
        cfg.id, access_token=cfg.access_token, calendar_id=cfg.calendar_id,
    ),
    "caldav": lambda cfg: CalDAVCalendarProvider(
        cfg.id, url=cfg.url, username=cfg.username, password=cfg.password, calendar_id=cfg.calendar_id,
    ),
}


def create_provider(config: ProviderConfig) -> BaseCalendarProvider:
    """Build the adapter variant named by ``config.backend``."""
    builder = _BACKENDS.get(config.backend)
    if builder is None:
        raise ValueError(f"Unsupported calendar backend: {config.backend}")
    provider = builder(config)
    if config.kind:
        provider.kind = ProviderKind(config.kind)
    logger.info("calendar_provider_created", provider=config.id, backend=config.backend, kind=provider.kind)
    return provider
