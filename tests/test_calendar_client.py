"""Unit tests for CalendarApiClient.

Covers:
- list_calendars / list_events parse Google payloads into models
- list_events query parameters (singleEvents, orderBy, maxResults, RFC 3339 bounds)
- Cancelled and malformed items are filtered out
- 401/403 classified as session expired, other statuses as remote failures
- Network errors become failures without a status code
- Error details are sanitized (credential values redacted, length capped)
- delete_event treats 404/410 as success
- validate_token reports accepted/rejected tokens
- Bearer token and URL encoding of calendar/event ids
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from cbtjournal.calendar.client import (
    GOOGLE_CALENDAR_API_BASE_URL,
    CalendarApiClient,
    _google_rfc3339,
    classify_status,
)
from cbtjournal.calendar.errors import ErrorKind
from cbtjournal.calendar.models import (
    AccessRole,
    EventCreate,
    EventDateTime,
    EventPatch,
)

from tests.conftest import FakeCalendarApi, session_expired_body

pytestmark = pytest.mark.unit

TIME_MIN = datetime(2024, 6, 10, tzinfo=UTC)
TIME_MAX = datetime(2024, 6, 12, 23, 59, 59, tzinfo=UTC)


def _mock_response(
    *,
    status_code: int,
    url: str,
    method: str = "GET",
    json_body: dict | None = None,
    text: str = "",
) -> httpx.Response:
    request = httpx.Request(method, url)
    if json_body is not None:
        return httpx.Response(status_code=status_code, json=json_body, request=request)
    return httpx.Response(status_code=status_code, text=text, request=request)


def _client_with_response(response: httpx.Response) -> tuple[CalendarApiClient, MagicMock]:
    mock_http = MagicMock(spec=httpx.AsyncClient)
    mock_http.request = AsyncMock(return_value=response)
    return CalendarApiClient(mock_http), mock_http


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_rfc3339_uses_z_suffix(self):
        assert _google_rfc3339(datetime(2024, 6, 10, 9, 30, tzinfo=UTC)) == "2024-06-10T09:30:00Z"

    def test_rfc3339_converts_offsets_to_utc(self):
        value = datetime(2024, 6, 10, 9, 0, tzinfo=timezone(timedelta(hours=2)))
        assert _google_rfc3339(value) == "2024-06-10T07:00:00Z"

    def test_rfc3339_treats_naive_as_utc(self):
        assert _google_rfc3339(datetime(2024, 6, 10, 9, 0)) == "2024-06-10T09:00:00Z"

    @pytest.mark.parametrize(
        ("status_code", "kind"),
        [
            (401, ErrorKind.SESSION_EXPIRED),
            (403, ErrorKind.SESSION_EXPIRED),
            (404, ErrorKind.REMOTE_REQUEST_FAILED),
            (500, ErrorKind.REMOTE_REQUEST_FAILED),
            (None, ErrorKind.REMOTE_REQUEST_FAILED),
        ],
    )
    def test_classify_status(self, status_code: int | None, kind: ErrorKind):
        assert classify_status(status_code) is kind

    def test_page_size_must_be_positive(self):
        with pytest.raises(ValueError, match="page_size"):
            CalendarApiClient(MagicMock(spec=httpx.AsyncClient), page_size=0)


# ---------------------------------------------------------------------------
# list_calendars
# ---------------------------------------------------------------------------


class TestListCalendars:
    async def test_parses_calendar_list(self, api_client: CalendarApiClient):
        result = await api_client.list_calendars("tok")

        assert result.success is True
        assert [c.id for c in result.data] == ["me@example.com", "work@example.com"]
        assert result.data[0].primary is True
        assert result.data[0].access_role is AccessRole.owner
        assert result.data[1].access_role is AccessRole.writer

    async def test_sends_bearer_token(
        self, api_client: CalendarApiClient, calendar_api: FakeCalendarApi
    ):
        await api_client.list_calendars("tok-123")

        request = calendar_api.requests[0]
        assert request.headers["Authorization"] == "Bearer tok-123"
        assert str(request.url) == f"{GOOGLE_CALENDAR_API_BASE_URL}/users/me/calendarList"

    async def test_skips_malformed_entries(
        self, api_client: CalendarApiClient, calendar_api: FakeCalendarApi
    ):
        calendar_api.calendars.append({"summary": "no id", "accessRole": "reader"})
        calendar_api.calendars.append("not-an-object")

        result = await api_client.list_calendars("tok")

        assert result.success is True
        assert len(result.data) == 2

    async def test_empty_list(self, api_client: CalendarApiClient, calendar_api: FakeCalendarApi):
        calendar_api.calendars = []

        result = await api_client.list_calendars("tok")

        assert result.success is True
        assert result.data == []

    async def test_unauthorized_is_session_expired(
        self, api_client: CalendarApiClient, calendar_api: FakeCalendarApi
    ):
        calendar_api.failures["calendar_list"] = (401, session_expired_body())

        result = await api_client.list_calendars("tok")

        assert result.success is False
        assert result.error_kind is ErrorKind.SESSION_EXPIRED
        assert result.status_code == 401
        assert result.error == (
            "list_calendars: 401 Request had invalid authentication credentials."
        )


# ---------------------------------------------------------------------------
# list_events
# ---------------------------------------------------------------------------


class TestListEvents:
    async def test_query_parameters(
        self, api_client: CalendarApiClient, calendar_api: FakeCalendarApi
    ):
        await api_client.list_events("tok", "me@example.com", TIME_MIN, TIME_MAX)

        request = calendar_api.requests[0]
        assert request.method == "GET"
        assert request.url.raw_path.startswith(b"/calendar/v3/calendars/me%40example.com/events")
        params = request.url.params
        assert params["timeMin"] == "2024-06-10T00:00:00Z"
        assert params["timeMax"] == "2024-06-12T23:59:59Z"
        assert params["singleEvents"] == "true"
        assert params["orderBy"] == "startTime"
        assert params["maxResults"] == "100"

    async def test_page_size_is_configurable(self, calendar_api: FakeCalendarApi):
        async with httpx.AsyncClient(transport=httpx.MockTransport(calendar_api)) as http:
            client = CalendarApiClient(http, page_size=25)
            await client.list_events("tok", "primary", TIME_MIN, TIME_MAX)

        assert calendar_api.requests[0].url.params["maxResults"] == "25"

    async def test_parses_events_and_drops_cancelled(
        self, api_client: CalendarApiClient, calendar_api: FakeCalendarApi
    ):
        calendar_api.events = [
            {
                "id": "evt-1",
                "summary": "Therapy",
                "start": {"dateTime": "2024-06-10T09:00:00Z"},
                "end": {"dateTime": "2024-06-10T10:00:00Z"},
                "status": "confirmed",
                "htmlLink": "https://calendar.google.com/event?eid=1",
            },
            {
                "id": "evt-2",
                "status": "cancelled",
                "start": {"dateTime": "2024-06-10T11:00:00Z"},
                "end": {"dateTime": "2024-06-10T12:00:00Z"},
            },
            {"id": "evt-3", "summary": "no boundaries"},
            {
                "id": "evt-4",
                "start": {"date": "2024-06-11"},
                "end": {"date": "2024-06-12"},
            },
        ]

        result = await api_client.list_events("tok", "primary", TIME_MIN, TIME_MAX)

        assert result.success is True
        assert [e.id for e in result.data] == ["evt-1", "evt-4"]
        assert result.data[0].html_link == "https://calendar.google.com/event?eid=1"
        assert result.data[1].is_all_day is True

    async def test_missing_items_means_no_events(self):
        client, _ = _client_with_response(
            _mock_response(status_code=200, url="https://x", json_body={"kind": "events"})
        )

        result = await client.list_events("tok", "primary", TIME_MIN, TIME_MAX)

        assert result.success is True
        assert result.data == []

    async def test_unauthorized_is_session_expired(
        self, api_client: CalendarApiClient, calendar_api: FakeCalendarApi
    ):
        calendar_api.failures["list_events"] = (401, session_expired_body())

        result = await api_client.list_events("tok", "primary", TIME_MIN, TIME_MAX)

        assert result.success is False
        assert result.error_kind is ErrorKind.SESSION_EXPIRED
        assert result.status_code == 401

    async def test_forbidden_is_session_expired(
        self, api_client: CalendarApiClient, calendar_api: FakeCalendarApi
    ):
        calendar_api.failures["list_events"] = (403, {"error": {"message": "Forbidden"}})

        result = await api_client.list_events("tok", "primary", TIME_MIN, TIME_MAX)

        assert result.error_kind is ErrorKind.SESSION_EXPIRED
        assert result.error == "list_events: 403 Forbidden"

    async def test_server_error_is_remote_failure(
        self, api_client: CalendarApiClient, calendar_api: FakeCalendarApi
    ):
        calendar_api.failures["list_events"] = (503, {"error": {"message": "Backend Error"}})

        result = await api_client.list_events("tok", "primary", TIME_MIN, TIME_MAX)

        assert result.success is False
        assert result.error_kind is ErrorKind.REMOTE_REQUEST_FAILED
        assert result.status_code == 503
        assert result.error == "list_events: 503 Backend Error"

    async def test_plain_text_error_body_is_truncated(self):
        client, _ = _client_with_response(
            _mock_response(status_code=500, url="https://x", text="boom " * 100)
        )

        result = await client.list_events("tok", "primary", TIME_MIN, TIME_MAX)

        assert result.error is not None
        details = result.error.removeprefix("list_events: 500 ")
        assert len(details) <= 200
        assert details.startswith("boom boom")

    async def test_error_details_are_redacted(self):
        client, _ = _client_with_response(
            _mock_response(
                status_code=400,
                url="https://x",
                json_body={"error": {"message": "bad access_token=ya29.leaked value"}},
            )
        )

        result = await client.list_events("tok", "primary", TIME_MIN, TIME_MAX)

        assert "ya29.leaked" not in (result.error or "")
        assert "[REDACTED]" in (result.error or "")

    async def test_network_error_has_no_status(self):
        mock_http = MagicMock(spec=httpx.AsyncClient)
        mock_http.request = AsyncMock(side_effect=httpx.ConnectError("connection refused"))
        client = CalendarApiClient(mock_http)

        result = await client.list_events("tok", "primary", TIME_MIN, TIME_MAX)

        assert result.success is False
        assert result.error_kind is ErrorKind.REMOTE_REQUEST_FAILED
        assert result.status_code is None
        assert result.error == "list_events: network error connection refused"

    async def test_non_object_payload_is_failure(self):
        client, _ = _client_with_response(
            _mock_response(status_code=200, url="https://x", json_body=None, text="[1, 2]")
        )

        result = await client.list_events("tok", "primary", TIME_MIN, TIME_MAX)

        assert result.success is False
        assert result.error_kind is ErrorKind.REMOTE_REQUEST_FAILED


# ---------------------------------------------------------------------------
# Event mutations
# ---------------------------------------------------------------------------


class TestEventMutations:
    async def test_create_event_posts_google_body(
        self, api_client: CalendarApiClient, calendar_api: FakeCalendarApi
    ):
        payload = EventCreate(
            summary="Journal review",
            start=EventDateTime(date_time=datetime(2024, 6, 10, 18, 0, tzinfo=UTC)),
            end=EventDateTime(date_time=datetime(2024, 6, 10, 18, 30, tzinfo=UTC)),
        )

        result = await api_client.create_event("tok", "primary", payload)

        assert result.success is True
        assert result.data.id == "created-1"
        assert result.data.summary == "Journal review"
        request = calendar_api.requests[0]
        assert request.method == "POST"
        assert b'"dateTime"' in request.content
        assert b"date_time" not in request.content

    async def test_update_event_patches(
        self, api_client: CalendarApiClient, calendar_api: FakeCalendarApi
    ):
        result = await api_client.update_event(
            "tok", "primary", "evt/1", EventPatch(summary="Renamed")
        )

        assert result.success is True
        assert result.data.summary == "Renamed"
        request = calendar_api.requests[0]
        assert request.method == "PATCH"
        assert request.url.raw_path.endswith(b"/events/evt%2F1")
        assert json.loads(request.content) == {"summary": "Renamed"}

    async def test_delete_event_success(
        self, api_client: CalendarApiClient, calendar_api: FakeCalendarApi
    ):
        result = await api_client.delete_event("tok", "primary", "evt-1")

        assert result.success is True
        assert calendar_api.requests[0].method == "DELETE"

    @pytest.mark.parametrize("status_code", [404, 410])
    async def test_delete_already_gone_is_success(
        self,
        api_client: CalendarApiClient,
        calendar_api: FakeCalendarApi,
        status_code: int,
    ):
        calendar_api.failures["delete_event"] = (status_code, {"error": {"message": "Not Found"}})

        result = await api_client.delete_event("tok", "primary", "evt-1")

        assert result.success is True

    async def test_delete_server_error_is_failure(
        self, api_client: CalendarApiClient, calendar_api: FakeCalendarApi
    ):
        calendar_api.failures["delete_event"] = (500, {"error": {"message": "Internal"}})

        result = await api_client.delete_event("tok", "primary", "evt-1")

        assert result.success is False
        assert result.error == "delete_event: 500 Internal"


# ---------------------------------------------------------------------------
# validate_token
# ---------------------------------------------------------------------------


class TestValidateToken:
    async def test_accepted_token(
        self, api_client: CalendarApiClient, calendar_api: FakeCalendarApi
    ):
        result = await api_client.validate_token("tok")

        assert result.success is True
        assert result.data is True
        assert calendar_api.requests[0].url.params["maxResults"] == "1"

    @pytest.mark.parametrize("status_code", [401, 403])
    async def test_rejected_token(
        self,
        api_client: CalendarApiClient,
        calendar_api: FakeCalendarApi,
        status_code: int,
    ):
        calendar_api.failures["calendar_list"] = (status_code, session_expired_body())

        result = await api_client.validate_token("tok")

        assert result.success is True
        assert result.data is False

    async def test_server_error_is_failure(
        self, api_client: CalendarApiClient, calendar_api: FakeCalendarApi
    ):
        calendar_api.failures["calendar_list"] = (500, {"error": {"message": "Internal"}})

        result = await api_client.validate_token("tok")

        assert result.success is False
        assert result.error_kind is ErrorKind.REMOTE_REQUEST_FAILED


class TestOwnedHttpClient:
    async def test_owned_client_is_closed(self):
        client = CalendarApiClient()
        await client.aclose()
        assert client._http_client.is_closed

    async def test_injected_client_is_left_open(self):
        async with httpx.AsyncClient() as http:
            client = CalendarApiClient(http)
            await client.aclose()
            assert not http.is_closed
