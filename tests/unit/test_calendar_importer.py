"""Unit tests for calendar_importer module."""

import json
import logging
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from studycal.calendar_importer import (
    CALENDAR_SCOPE,
    ExternalCalendarImporter,
    SyncFailureKind,
    classify_failure,
    normalize_external_event,
)
from studycal.exceptions import CalendarAuthError, CalendarFetchError, InvalidEventError
from studycal.event_merger import TimelineMerger, week_window

pytestmark = pytest.mark.unit


def utc_stamp(value):
    """Expected API form of a local (naive) or aware instant."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


TIMED_ITEM = {
    "id": "abc",
    "summary": "Seminar",
    "description": "Room 2",
    "start": {"dateTime": "2024-03-04T14:30:00-05:00"},
    "end": {"dateTime": "2024-03-04T16:00:00-05:00"},
    "htmlLink": "https://calendar.google.com/event?eid=abc",
}

ALL_DAY_ITEM = {
    "id": "holiday",
    "summary": "Spring break",
    "start": {"date": "2024-03-05"},
    "end": {"date": "2024-03-06"},
}


class FakeTokenProvider:
    """Scripted TokenProvider recording the handshake calls."""

    def __init__(self, link_result="link-token", link_error=None, reauth_result="fresh-token"):
        self.link_result = link_result
        self.link_error = link_error
        self.reauth_result = reauth_result
        self.calls = []

    async def link(self, scope):
        self.calls.append(("link", scope))
        if self.link_error is not None:
            raise self.link_error
        return self.link_result

    async def reauthenticate(self, scope):
        self.calls.append(("reauthenticate", scope))
        return self.reauth_result


def json_handler(payload, status_code=200, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status_code, json=payload)

    return handler


class TestNormalizeExternalEvent:
    """Tests for normalize_external_event."""

    def test_timed_event_keeps_written_wall_clock(self):
        event = normalize_external_event(TIMED_ITEM)
        assert event.id == "gcal_abc"
        assert event.title == "Seminar"
        assert event.date == date(2024, 3, 4)
        assert event.time == "14:30"
        assert event.duration_minutes == 90
        assert event.type == "other"
        assert event.assigned_by == "user"
        assert event.is_recurring is False
        assert event.description == "Room 2"
        assert event.is_external
        assert event.external_link == TIMED_ITEM["htmlLink"]

    def test_all_day_event_has_no_time(self):
        event = normalize_external_event(ALL_DAY_ITEM)
        assert event.date == date(2024, 3, 5)
        assert event.time is None
        assert event.duration_minutes == 24 * 60
        assert event.properties == []

    def test_defaults_title_and_duration(self):
        event = normalize_external_event(
            {"id": "x", "start": {"dateTime": "2024-03-04T10:00:00Z"}}
        )
        assert event.title == "Google Event"
        assert event.duration_minutes == 60

    def test_non_positive_duration_defaults(self):
        item = {
            "id": "x",
            "start": {"dateTime": "2024-03-04T10:00:00Z"},
            "end": {"dateTime": "2024-03-04T10:00:00Z"},
        }
        assert normalize_external_event(item).duration_minutes == 60

    @pytest.mark.parametrize(
        "item",
        [
            {"summary": "no id", "start": {"date": "2024-03-04"}},
            {"id": "x", "start": {}},
            {"id": "x", "start": {"dateTime": "not a date"}},
            None,
            "abc",
        ],
    )
    def test_rejects_unusable_items(self, item):
        with pytest.raises(InvalidEventError):
            normalize_external_event(item)


class TestClassifyFailure:
    """Tests for classify_failure."""

    def test_unauthorized_domain_names_the_domain(self):
        failure = classify_failure(
            CalendarAuthError("denied", code="auth/unauthorized-domain"), "planner.example.edu"
        )
        assert failure.kind == SyncFailureKind.UNAUTHORIZED_DOMAIN
        assert "planner.example.edu" in failure.message
        assert "Authorized Domains" in failure.message

    def test_sign_in_disabled(self):
        failure = classify_failure(CalendarAuthError("x", code="auth/operation-not-allowed"))
        assert failure.kind == SyncFailureKind.SIGN_IN_DISABLED
        assert failure.message.startswith("Google Sign-In is not enabled")

    def test_popup_blocked(self):
        failure = classify_failure(CalendarAuthError("x", code="auth/popup-blocked"))
        assert failure.message == (
            "Pop-up blocked. Please allow pop-ups for this site to sync Google Calendar."
        )

    def test_popup_closed_is_benign(self):
        failure = classify_failure(CalendarAuthError("x", code="auth/popup-closed-by-user"))
        assert failure.is_benign
        assert failure.message is None

    def test_other_errors(self):
        failure = classify_failure(CalendarFetchError("HTTP 500", status_code=500))
        assert failure.kind == SyncFailureKind.OTHER
        assert failure.message == "Failed to sync Google Calendar: HTTP 500"
        assert not failure.is_benign


class TestExternalCalendarImporter:
    """Tests for ExternalCalendarImporter."""

    @pytest.mark.asyncio
    async def test_fetch_sends_window_and_bearer_token(self, simple_settings):
        seen = []
        transport = httpx.MockTransport(json_handler({"items": [TIMED_ITEM, ALL_DAY_ITEM]}, seen=seen))
        async with httpx.AsyncClient(transport=transport) as client:
            importer = ExternalCalendarImporter(FakeTokenProvider(), simple_settings, client=client)
            events = await importer.fetch_external(date(2024, 2, 19), date(2024, 4, 18))

        assert [event.id for event in events] == ["gcal_abc", "gcal_holiday"]
        request = seen[0]
        assert request.url.host == "calendar.test"
        assert request.headers["Authorization"] == "Bearer link-token"
        params = request.url.params
        assert params["timeMin"] == utc_stamp(datetime(2024, 2, 19))
        # An end date covers the whole day
        assert params["timeMax"] == utc_stamp(datetime(2024, 4, 19))
        assert params["singleEvents"] == "true"
        assert params["orderBy"] == "startTime"

    @pytest.mark.asyncio
    async def test_already_linked_reauthenticates(self):
        provider = FakeTokenProvider(
            link_error=CalendarAuthError("in use", code="auth/credential-already-in-use")
        )
        seen = []
        transport = httpx.MockTransport(json_handler({"items": []}, seen=seen))
        async with httpx.AsyncClient(transport=transport) as client:
            result = await ExternalCalendarImporter(provider, client=client).sync(
                date(2024, 3, 1), date(2024, 3, 31)
            )

        assert result.ok
        assert provider.calls == [("link", CALENDAR_SCOPE), ("reauthenticate", CALENDAR_SCOPE)]
        assert seen[0].headers["Authorization"] == "Bearer fresh-token"

    @pytest.mark.asyncio
    async def test_provider_already_linked_code_also_reauthenticates(self):
        provider = FakeTokenProvider(
            link_error=CalendarAuthError("linked", code="auth/provider-already-linked")
        )
        importer = ExternalCalendarImporter(provider)
        assert await importer.obtain_token() == "fresh-token"

    @pytest.mark.asyncio
    async def test_popup_blocked_returns_empty_result(self, caplog):
        provider = FakeTokenProvider(link_error=CalendarAuthError("x", code="auth/popup-blocked"))
        importer = ExternalCalendarImporter(provider)

        with caplog.at_level(logging.ERROR, logger="studycal.calendar_importer"):
            result = await importer.sync(date(2024, 3, 1), date(2024, 3, 31))

        assert result.events == []
        assert result.failure.kind == SyncFailureKind.POPUP_BLOCKED
        assert provider.calls == [("link", CALENDAR_SCOPE)]
        assert "popup_blocked" in caplog.text

    @pytest.mark.asyncio
    async def test_cancelled_popup_is_benign(self):
        provider = FakeTokenProvider(
            link_error=CalendarAuthError("closed", code="auth/popup-closed-by-user")
        )
        result = await ExternalCalendarImporter(provider).sync(date(2024, 3, 1), date(2024, 3, 2))
        assert result.events == []
        assert result.failure.is_benign

    @pytest.mark.asyncio
    async def test_missing_token_fails_softly(self):
        result = await ExternalCalendarImporter(FakeTokenProvider(link_result=None)).sync(
            date(2024, 3, 1), date(2024, 3, 2)
        )
        assert result.failure.kind == SyncFailureKind.OTHER
        assert "Could not obtain Google access token" in result.failure.message

    @pytest.mark.asyncio
    async def test_http_error_status_fails_softly(self):
        transport = httpx.MockTransport(json_handler({"error": "forbidden"}, status_code=403))
        async with httpx.AsyncClient(transport=transport) as client:
            importer = ExternalCalendarImporter(FakeTokenProvider(), client=client)
            result = await importer.sync(date(2024, 3, 1), date(2024, 3, 2))
            with pytest.raises(CalendarFetchError) as exc_info:
                await importer.fetch_external(date(2024, 3, 1), date(2024, 3, 2))

        assert result.events == []
        assert result.failure.message.startswith("Failed to sync Google Calendar: ")
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_network_error_fails_softly(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await ExternalCalendarImporter(FakeTokenProvider(), client=client).sync(
                date(2024, 3, 1), date(2024, 3, 2)
            )

        assert result.events == []
        assert "connection refused" in result.failure.message

    @pytest.mark.asyncio
    async def test_invalid_json_fails_softly(self):
        def handler(request):
            return httpx.Response(200, content=b"<html>", headers={"Content-Type": "text/html"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await ExternalCalendarImporter(FakeTokenProvider(), client=client).sync(
                date(2024, 3, 1), date(2024, 3, 2)
            )

        assert result.failure.kind == SyncFailureKind.OTHER
        assert "invalid JSON" in result.failure.message

    @pytest.mark.asyncio
    async def test_bad_items_are_skipped(self, caplog):
        payload = {"items": [TIMED_ITEM, {"summary": "broken"}]}
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, content=json.dumps(payload).encode())
        )
        async with httpx.AsyncClient(transport=transport) as client:
            with caplog.at_level(logging.WARNING, logger="studycal.calendar_importer"):
                result = await ExternalCalendarImporter(FakeTokenProvider(), client=client).sync(
                    date(2024, 3, 1), date(2024, 3, 31)
                )

        assert [event.id for event in result.events] == ["gcal_abc"]
        assert "Skipping external event" in caplog.text

    @pytest.mark.asyncio
    async def test_non_object_items_are_skipped(self, caplog):
        transport = httpx.MockTransport(json_handler({"items": [None, TIMED_ITEM, 7]}))
        async with httpx.AsyncClient(transport=transport) as client:
            with caplog.at_level(logging.WARNING, logger="studycal.calendar_importer"):
                result = await ExternalCalendarImporter(FakeTokenProvider(), client=client).sync(
                    date(2024, 3, 1), date(2024, 3, 31)
                )

        assert result.ok
        assert [event.id for event in result.events] == ["gcal_abc"]
        assert "not an object" in caplog.text


class TestWindowBounds:
    """Tests for the timeMin/timeMax sent to the events API."""

    @pytest.mark.asyncio
    async def test_last_day_of_window_is_fetched(self):
        sunday_item = {
            "id": "sun",
            "summary": "Review",
            "start": {"dateTime": "2024-01-07T03:00:00Z"},
            "end": {"dateTime": "2024-01-07T04:00:00Z"},
        }

        def handler(request):
            # timeMax is exclusive, as in the Google API
            time_max = datetime.strptime(
                request.url.params["timeMax"], "%Y-%m-%dT%H:%M:%SZ"
            ).replace(tzinfo=timezone.utc)
            start = datetime.fromisoformat(sunday_item["start"]["dateTime"].replace("Z", "+00:00"))
            return httpx.Response(200, json={"items": [sunday_item] if start < time_max else []})

        window = week_window(date(2024, 1, 3))
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await ExternalCalendarImporter(FakeTokenProvider(), client=client).sync(
                window.start, window.end
            )

        merged = TimelineMerger().merge([], result.events, window)
        assert [event.id for event in merged] == ["gcal_sun"]

    @pytest.mark.asyncio
    async def test_datetime_bounds_are_converted_to_utc(self):
        seen = []
        transport = httpx.MockTransport(json_handler({"items": []}, seen=seen))
        eastern = timezone(timedelta(hours=-5))
        async with httpx.AsyncClient(transport=transport) as client:
            importer = ExternalCalendarImporter(FakeTokenProvider(), client=client)
            await importer.fetch_external(
                datetime(2024, 3, 4, 9, 0, tzinfo=eastern), datetime(2024, 3, 4, 18, 30)
            )

        params = seen[0].url.params
        assert params["timeMin"] == "2024-03-04T14:00:00Z"
        # Naive datetimes are local wall-clock time; no whole-day padding
        assert params["timeMax"] == utc_stamp(datetime(2024, 3, 4, 18, 30))


class TestRequestTimeout:
    """Tests for the configured request timeout."""

    @pytest.mark.asyncio
    async def test_timeout_is_sent_with_request(self, simple_settings):
        simple_settings.request_timeout = 12
        seen = []
        transport = httpx.MockTransport(json_handler({"items": []}, seen=seen))
        async with httpx.AsyncClient(transport=transport) as client:
            importer = ExternalCalendarImporter(FakeTokenProvider(), simple_settings, client=client)
            await importer.fetch_external(date(2024, 3, 1), date(2024, 3, 2))

        timeout = seen[0].extensions["timeout"]
        assert timeout["read"] == 12.0
        assert timeout["pool"] == 12.0
        assert timeout["connect"] == 10.0

    def test_short_timeout_caps_connect(self, simple_settings):
        simple_settings.request_timeout = 3
        importer = ExternalCalendarImporter(FakeTokenProvider(), simple_settings)
        assert importer.timeout.connect == 3.0
        assert importer.timeout.read == 3.0

    @pytest.mark.asyncio
    async def test_shared_client_is_created_with_timeout(self, simple_settings):
        simple_settings.request_timeout = 12
        transport = httpx.MockTransport(json_handler({"items": []}))
        async with httpx.AsyncClient(transport=transport) as client:
            getter = AsyncMock(return_value=client)
            with patch("studycal.calendar_importer.get_shared_client", getter):
                importer = ExternalCalendarImporter(FakeTokenProvider(), simple_settings)
                await importer.fetch_external(date(2024, 3, 1), date(2024, 3, 2))

        assert getter.await_args.args == ("calendar_importer",)
        assert getter.await_args.kwargs["timeout"].read == 12.0
