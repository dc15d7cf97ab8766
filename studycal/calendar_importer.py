"""Read-only import of Google Calendar events.

The importer obtains an access token through a ``TokenProvider`` (link the
Google credential to the session, or re-authenticate when it is already
linked), fetches single events for a window and normalizes them into
``gcal_``-prefixed CalendarEvents. ``sync`` never raises: failures are
classified into user-facing messages and an empty event list is returned.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Optional, Protocol, Union

import httpx
from dateutil import parser as date_parser

from .exceptions import CalendarAuthError, CalendarFetchError, InvalidEventError
from .http_client import get_shared_client, record_client_error, record_client_success
from .models import (
    DEFAULT_DURATION_MINUTES,
    EXTERNAL_ID_PREFIX,
    EXTERNAL_LINK_PROPERTY_ID,
    AssignedBy,
    CalendarEvent,
    EventProperty,
    EventType,
    PropertyType,
)

logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_API_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"
CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar.events.readonly"
DEFAULT_EXTERNAL_TITLE = "Google Event"
EXTERNAL_LINK_NAME = "Google Link"
API_TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
DEFAULT_REQUEST_TIMEOUT = 30.0
CONNECT_TIMEOUT = 10.0

# Provider codes meaning the credential exists already; re-authenticate instead
ALREADY_LINKED_CODES = frozenset({"auth/credential-already-in-use", "auth/provider-already-linked"})

UNAUTHORIZED_DOMAIN_CODE = "auth/unauthorized-domain"
OPERATION_NOT_ALLOWED_CODE = "auth/operation-not-allowed"
POPUP_CLOSED_CODE = "auth/popup-closed-by-user"
POPUP_BLOCKED_CODE = "auth/popup-blocked"


class TokenProvider(Protocol):
    """Authorization handshake with the calendar provider.

    Both methods return an OAuth access token (or None if the provider gave
    no token) and raise CalendarAuthError carrying the provider's code.
    """

    async def link(self, scope: str) -> Optional[str]:
        """Link the provider credential to the current session."""
        ...

    async def reauthenticate(self, scope: str) -> Optional[str]:
        """Re-authenticate the current session to get a fresh token."""
        ...


class StaticTokenProvider:
    """TokenProvider for an access token obtained elsewhere (CLI, scripts)."""

    def __init__(self, token: str) -> None:
        self.token = token

    async def link(self, scope: str) -> Optional[str]:
        return self.token

    async def reauthenticate(self, scope: str) -> Optional[str]:
        return self.token


class SyncFailureKind(str, Enum):
    """Classified external sync failures."""

    UNAUTHORIZED_DOMAIN = "unauthorized_domain"
    SIGN_IN_DISABLED = "sign_in_disabled"
    POPUP_BLOCKED = "popup_blocked"
    POPUP_CLOSED = "popup_closed"
    OTHER = "other"


@dataclass(frozen=True)
class SyncFailure:
    """A classified failure with the message to show the user (None if benign)."""

    kind: SyncFailureKind
    message: Optional[str]
    code: Optional[str] = None

    @property
    def is_benign(self) -> bool:
        return self.kind == SyncFailureKind.POPUP_CLOSED


@dataclass
class ImportResult:
    """Outcome of one sync: imported events, or an empty list plus the failure."""

    events: list[CalendarEvent] = field(default_factory=list)
    failure: Optional[SyncFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


def classify_failure(exc: BaseException, app_domain: str = "localhost") -> SyncFailure:
    """Map an exception from the sync flow to a user-facing failure."""
    code = getattr(exc, "code", None)
    if code == UNAUTHORIZED_DOMAIN_CODE:
        message = (
            "CONFIGURATION REQUIRED:\n"
            f'The domain "{app_domain}" is not authorized for authentication.\n\n'
            "To fix this:\n"
            "1. Open the authentication provider's console and select your project.\n"
            "2. Go to Authentication > Settings > Authorized Domains.\n"
            f'3. Click "Add Domain" and enter: {app_domain}'
        )
        return SyncFailure(SyncFailureKind.UNAUTHORIZED_DOMAIN, message, code)
    if code == OPERATION_NOT_ALLOWED_CODE:
        return SyncFailure(
            SyncFailureKind.SIGN_IN_DISABLED,
            "Google Sign-In is not enabled. Go to Authentication > Sign-in method "
            "and enable Google.",
            code,
        )
    if code == POPUP_CLOSED_CODE:
        return SyncFailure(SyncFailureKind.POPUP_CLOSED, None, code)
    if code == POPUP_BLOCKED_CODE:
        return SyncFailure(
            SyncFailureKind.POPUP_BLOCKED,
            "Pop-up blocked. Please allow pop-ups for this site to sync Google Calendar.",
            code,
        )
    detail = str(exc) or "Unknown error"
    return SyncFailure(
        SyncFailureKind.OTHER, f"Failed to sync Google Calendar: {detail}", code
    )


def _parse_instant(value: Mapping[str, Any]) -> tuple[Optional[datetime], bool]:
    """Return (start, is_all_day) from a ``{dateTime|date}`` object."""
    if value.get("dateTime"):
        return date_parser.isoparse(value["dateTime"]), False
    if value.get("date"):
        day = date.fromisoformat(str(value["date"])[:10])
        return datetime.combine(day, time()), True
    return None, False


def _duration_minutes(start: datetime, end: Optional[datetime]) -> int:
    if end is None:
        return DEFAULT_DURATION_MINUTES
    if (start.tzinfo is None) != (end.tzinfo is None):
        start, end = start.replace(tzinfo=None), end.replace(tzinfo=None)
    minutes = int((end - start) / timedelta(minutes=1))
    return minutes if minutes > 0 else DEFAULT_DURATION_MINUTES


def normalize_external_event(item: Mapping[str, Any]) -> CalendarEvent:
    """Normalize one Google Calendar item into a read-only CalendarEvent.

    Date and time are taken from the start instant as written (its own
    offset), all-day items get no time.

    Raises:
        InvalidEventError: If the item is not an object, or has no id or no usable start
    """
    if not isinstance(item, Mapping):
        raise InvalidEventError(f"External event is not an object: {item!r}")
    external_id = item.get("id")
    if not external_id:
        raise InvalidEventError("External event without id")
    try:
        start, all_day = _parse_instant(item.get("start") or {})
        end, _ = _parse_instant(item.get("end") or {})
    except (ValueError, OverflowError) as exc:
        raise InvalidEventError(f"External event {external_id!r} has a bad start/end") from exc
    if start is None:
        raise InvalidEventError(f"External event {external_id!r} has no start")

    properties = []
    if item.get("htmlLink"):
        properties.append(
            EventProperty(
                id=EXTERNAL_LINK_PROPERTY_ID,
                name=EXTERNAL_LINK_NAME,
                type=PropertyType.URL,
                value=item["htmlLink"],
            )
        )

    return CalendarEvent(
        id=f"{EXTERNAL_ID_PREFIX}{external_id}",
        title=item.get("summary") or DEFAULT_EXTERNAL_TITLE,
        date=start.date(),
        time=None if all_day else start.strftime("%H:%M"),
        duration_minutes=_duration_minutes(start, end),
        type=EventType.OTHER,
        assigned_by=AssignedBy.USER,
        is_recurring=False,
        description=item.get("description"),
        properties=properties,
    )


def _api_time(value: Union[date, datetime], end: bool = False) -> str:
    """Format a window bound as a UTC instant for the events API.

    Dates are local calendar days and an end date covers its whole day, since
    ``timeMax`` is exclusive. Naive datetimes are local wall-clock time.
    """
    if not isinstance(value, datetime):
        if end:
            value += timedelta(days=1)
        value = datetime.combine(value, time())
    return value.astimezone(timezone.utc).strftime(API_TIME_FORMAT)


class ExternalCalendarImporter:
    """Fetches and normalizes events from the user's primary Google Calendar."""

    def __init__(
        self,
        token_provider: TokenProvider,
        settings: Any = None,
        client: Optional[httpx.AsyncClient] = None,
        app_domain: str = "localhost",
    ) -> None:
        """Initialize importer.

        Args:
            token_provider: Authorization handshake collaborator
            settings: Optional config with ``calendar_api_url`` and
                ``request_timeout`` (seconds)
            client: Injected HTTP client; the shared client is used when omitted
            app_domain: Host name reported in unauthorized-domain messages
        """
        self.token_provider = token_provider
        self.api_url = getattr(settings, "calendar_api_url", None) or DEFAULT_CALENDAR_API_URL
        timeout_seconds = float(
            getattr(settings, "request_timeout", None) or DEFAULT_REQUEST_TIMEOUT
        )
        self.timeout = httpx.Timeout(timeout_seconds, connect=min(CONNECT_TIMEOUT, timeout_seconds))
        self.client = client
        self.app_domain = app_domain
        self._client_id = "calendar_importer"

    async def sync(
        self, window_start: Union[date, datetime], window_end: Union[date, datetime]
    ) -> ImportResult:
        """Fetch external events for the window; never raises.

        On any failure the result carries no events and a classified failure.
        """
        try:
            events = await self.fetch_external(window_start, window_end)
        except Exception as exc:  # noqa: BLE001
            return self._failed(exc)
        return ImportResult(events=events)

    def _failed(self, exc: Exception) -> ImportResult:
        failure = classify_failure(exc, self.app_domain)
        if failure.is_benign:
            logger.info("Google Calendar sync cancelled by user")
        else:
            logger.error("Google Calendar sync failed (%s): %s", failure.kind.value, exc)
        return ImportResult(events=[], failure=failure)

    async def obtain_token(self) -> str:
        """Link the calendar credential, re-authenticating if it is already linked.

        Raises:
            CalendarAuthError: If the handshake fails or yields no token
        """
        try:
            token = await self.token_provider.link(CALENDAR_SCOPE)
        except CalendarAuthError as exc:
            if exc.code not in ALREADY_LINKED_CODES:
                raise
            logger.debug("Calendar credential already linked (%s); re-authenticating", exc.code)
            token = await self.token_provider.reauthenticate(CALENDAR_SCOPE)
        if not token:
            raise CalendarAuthError("Could not obtain Google access token")
        return token

    async def fetch_external(
        self, window_start: Union[date, datetime], window_end: Union[date, datetime]
    ) -> list[CalendarEvent]:
        """Fetch and normalize external events between the window bounds.

        Raises:
            CalendarAuthError: On handshake failures
            CalendarFetchError: On HTTP errors or unreadable responses
        """
        token = await self.obtain_token()
        params = {
            "timeMin": _api_time(window_start),
            "timeMax": _api_time(window_end, end=True),
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        headers = {"Authorization": f"Bearer {token}"}

        client = self.client or await get_shared_client(self._client_id, timeout=self.timeout)
        try:
            response = await client.get(
                self.api_url, params=params, headers=headers, timeout=self.timeout
            )
        except httpx.HTTPError as exc:
            await record_client_error(self._client_id)
            raise CalendarFetchError(f"Network error: {exc}") from exc

        if response.status_code != 200:
            await record_client_error(self._client_id)
            raise CalendarFetchError(
                f"Failed to fetch from Google Calendar (HTTP {response.status_code})",
                status_code=response.status_code,
            )
        await record_client_success(self._client_id)

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarFetchError("Google Calendar returned invalid JSON") from exc

        events: list[CalendarEvent] = []
        if not isinstance(payload, dict):
            raise CalendarFetchError("Google Calendar returned an unexpected payload")

        events_list = payload.get("items") or []
        for item in events_list:
            try:
                events.append(normalize_external_event(item))
            except InvalidEventError as exc:
                logger.warning("Skipping external event: %s", exc)
        logger.debug(
            "Imported %d Google Calendar event(s) for %s..%s",
            len(events),
            params["timeMin"],
            params["timeMax"],
        )
        return events
