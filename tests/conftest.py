"""Shared fixtures for the calendar test suite.

Provides a scriptable AuthProvider, a fixed clock, and an in-process Google
Calendar API served through ``httpx.MockTransport``.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest

from cbtjournal.calendar.auth import AuthProvider
from cbtjournal.calendar.client import CalendarApiClient
from cbtjournal.calendar.models import CALENDAR_SCOPES, AuthState, Capability, Notification
from cbtjournal.calendar.orchestrator import ConnectionOrchestrator
from cbtjournal.calendar.store import InMemoryConnectionStore
from cbtjournal.config import CalendarSettings

# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2024, 6, 10, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# AuthProvider
# ---------------------------------------------------------------------------


class FakeAuthProvider(AuthProvider):
    """AuthProvider whose answers are set by the test.

    Every call is recorded in ``calls``. Tokens issued by ``sign_in``,
    ``request_additional_scopes`` or ``silent_sign_in`` are considered valid
    by ``validate_token`` until ``revoke()`` is called.
    """

    def __init__(
        self,
        *,
        clock: FixedClock,
        configured: bool = True,
        token: str = "access-1",
        scopes: Iterable[str] = CALENDAR_SCOPES,
    ) -> None:
        self.configured = configured
        self.next_token = token
        self.grant_scopes = frozenset(scopes)
        self.silent_token: str | None = None
        self.sign_in_error: BaseException | None = None
        self.initialize_error: BaseException | None = None
        self.silent_error: BaseException | None = None
        self.valid_tokens: set[str] = set()
        self.calls: list[str] = []
        self.capabilities: list[Capability] = []
        self._clock = clock
        self._state = AuthState()

    def revoke(self) -> None:
        self.valid_tokens.clear()

    def is_configured(self) -> bool:
        return self.configured

    async def initialize(self) -> None:
        self.calls.append("initialize")
        if self.initialize_error is not None:
            raise self.initialize_error

    async def sign_in(self, capability: Capability) -> str:
        self.calls.append("sign_in")
        self.capabilities.append(capability)
        if self.sign_in_error is not None:
            raise self.sign_in_error
        return self._issue(self.next_token)

    async def request_additional_scopes(self, capability: Capability) -> str:
        self.calls.append("request_additional_scopes")
        self.capabilities.append(capability)
        if self.sign_in_error is not None:
            raise self.sign_in_error
        return self._issue(self.next_token)

    async def silent_sign_in(self, existing_token: str | None = None) -> str | None:
        self.calls.append("silent_sign_in")
        if self.silent_error is not None:
            raise self.silent_error
        if self.silent_token is None:
            return None
        return self._issue(self.silent_token)

    async def validate_token(self, token: str) -> bool:
        self.calls.append("validate_token")
        return token in self.valid_tokens

    def get_state(self) -> AuthState:
        return self._state.model_copy()

    async def sign_out(self) -> None:
        self.calls.append("sign_out")
        self._state = AuthState()

    def _issue(self, token: str) -> str:
        now = self._clock()
        self._state = AuthState(
            access_token=token,
            granted_scopes=self.grant_scopes,
            connected_at=self._state.connected_at or now,
            last_validated=now,
        )
        self.valid_tokens.add(token)
        return token


# ---------------------------------------------------------------------------
# Google Calendar API double
# ---------------------------------------------------------------------------


def calendar_entry(
    calendar_id: str,
    summary: str,
    *,
    primary: bool = False,
    access_role: str = "owner",
) -> dict[str, Any]:
    entry: dict[str, Any] = {"id": calendar_id, "summary": summary, "accessRole": access_role}
    if primary:
        entry["primary"] = True
    return entry


class FakeCalendarApi:
    """Minimal Google Calendar v3 served over ``httpx.MockTransport``.

    ``failures`` maps a route name (``calendar_list``, ``list_events``,
    ``create_event``, ``update_event``, ``delete_event``) to a
    ``(status_code, json_body)`` pair returned instead of the normal answer.
    """

    def __init__(self) -> None:
        self.calendars: list[dict[str, Any]] = [
            calendar_entry("me@example.com", "Me", primary=True),
            calendar_entry("work@example.com", "Work", access_role="writer"),
        ]
        self.events: list[dict[str, Any]] = []
        self.failures: dict[str, tuple[int, dict[str, Any]]] = {}
        self.requests: list[httpx.Request] = []

    def routes(self) -> list[str]:
        return [self._route(request) for request in self.requests]

    def _route(self, request: httpx.Request) -> str:
        path = request.url.path
        if path.endswith("/users/me/calendarList"):
            return "calendar_list"
        if request.method == "GET":
            return "list_events"
        if request.method == "POST":
            return "create_event"
        if request.method == "PATCH":
            return "update_event"
        return "delete_event"

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self._route(request)
        if route in self.failures:
            status_code, body = self.failures[route]
            return httpx.Response(status_code, json=body)

        if route == "calendar_list":
            return httpx.Response(200, json={"items": self.calendars})
        if route == "list_events":
            return httpx.Response(200, json={"items": self.events})
        if route == "create_event":
            body = json.loads(request.content)
            return httpx.Response(200, json={"id": "created-1", "status": "confirmed", **body})
        if route == "update_event":
            event_id = request.url.path.rsplit("/", 1)[-1]
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "id": event_id,
                    "start": {"dateTime": "2024-06-10T09:00:00Z"},
                    "end": {"dateTime": "2024-06-10T10:00:00Z"},
                    **body,
                },
            )
        return httpx.Response(204)


def session_expired_body() -> dict[str, Any]:
    return {
        "error": {
            "code": 401,
            "message": "Request had invalid authentication credentials.",
            "errors": [{"reason": "authError"}],
        }
    }


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def fake_auth(clock: FixedClock) -> FakeAuthProvider:
    return FakeAuthProvider(clock=clock)


@pytest.fixture
def memory_store() -> InMemoryConnectionStore:
    return InMemoryConnectionStore()


@pytest.fixture
def calendar_api() -> FakeCalendarApi:
    return FakeCalendarApi()


@pytest.fixture
async def api_client(calendar_api: FakeCalendarApi) -> AsyncIterator[CalendarApiClient]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(calendar_api))
    yield CalendarApiClient(http_client)
    await http_client.aclose()


@pytest.fixture
def notifications() -> list[Notification]:
    return []


@pytest.fixture
def orchestrator(
    fake_auth: FakeAuthProvider,
    memory_store: InMemoryConnectionStore,
    api_client: CalendarApiClient,
    notifications: list[Notification],
    clock: FixedClock,
) -> ConnectionOrchestrator:
    return ConnectionOrchestrator(
        fake_auth,
        memory_store,
        api_client,
        CalendarSettings(timezone="UTC"),
        notifier=notifications.append,
        clock=clock,
    )
