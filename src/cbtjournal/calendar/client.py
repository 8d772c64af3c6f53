"""Google Calendar REST wrappers.

Each public coroutine performs exactly one remote operation with a caller
supplied bearer token and returns a :class:`~cbtjournal.calendar.models.Result`.
Nothing raises across this boundary: non-2xx responses and transport failures
are classified into tagged failures. No retries happen here; retry policy
belongs to the orchestrator.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from cbtjournal.calendar.errors import ErrorKind, RemoteRequestFailedError
from cbtjournal.calendar.models import (
    CalendarDescriptor,
    EventCreate,
    EventPatch,
    EventStatus,
    ProviderEvent,
    Result,
)
from cbtjournal.core.logging import redact_secrets

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_EVENTS_PAGE_SIZE = 100
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
SESSION_EXPIRED_STATUS_CODES = frozenset({401, 403})
# Deleting an event that is already gone counts as success.
ALREADY_DELETED_STATUS_CODES = frozenset({404, 410})
_MAX_ERROR_DETAIL_CHARS = 200


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _sanitize(message: str) -> str:
    return " ".join(redact_secrets(message).split())[:_MAX_ERROR_DETAIL_CHARS]


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return _sanitize(message)
        if isinstance(error_payload, str) and error_payload.strip():
            return _sanitize(error_payload)

    raw_text = response.text.strip()
    if raw_text:
        return _sanitize(raw_text)
    return "Request failed without an error payload"


def _error_reason(response: httpx.Response) -> str | None:
    """Pull ``error.errors[0].reason`` from a Google error body, for logging."""
    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict) or not isinstance(payload.get("error"), dict):
        return None
    errors = payload["error"].get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        reason = errors[0].get("reason")
        return reason if isinstance(reason, str) else None
    return None


def classify_status(status_code: int | None) -> ErrorKind:
    if status_code in SESSION_EXPIRED_STATUS_CODES:
        return ErrorKind.SESSION_EXPIRED
    return ErrorKind.REMOTE_REQUEST_FAILED


def _failure(operation: str, exc: RemoteRequestFailedError) -> Result[Any]:
    if exc.status_code is None:
        message = f"{operation}: network error {exc.message}"
    else:
        message = f"{operation}: {exc.status_code} {exc.message}"
    return Result.fail(classify_status(exc.status_code), message, status_code=exc.status_code)


def _parse_items(
    payload: dict[str, Any],
    model: type[BaseModel],
    *,
    operation: str,
) -> list[Any]:
    items = payload.get("items")
    if items is None:
        return []
    if not isinstance(items, list):
        raise RemoteRequestFailedError(
            status_code=None,
            message=f"{operation} response has a non-list items field",
        )

    parsed: list[Any] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        if model is ProviderEvent and item.get("status") == EventStatus.cancelled.value:
            continue
        try:
            parsed.append(model.model_validate(item))
        except ValidationError as exc:
            logger.warning(
                "Skipping malformed %s item %r: %s",
                operation,
                item.get("id"),
                exc.errors(include_url=False),
            )
    return parsed


class CalendarApiClient:
    """Stateless Google Calendar v3 request/response wrappers."""

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        page_size: int = DEFAULT_EVENTS_PAGE_SIZE,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self._page_size = page_size
        self._base_url = base_url.rstrip("/")

    @property
    def page_size(self) -> int:
        return self._page_size

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # Request helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        token: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        try:
            return await self._http_client.request(
                method,
                f"{self._base_url}{normalized_path}",
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise RemoteRequestFailedError(status_code=None, message=_sanitize(str(exc))) from exc

    async def _request_json(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        token: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request(
            method, path, token=token, params=params, json_body=json_body
        )
        self._raise_for_status(operation, response)

        if response.status_code == 204:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteRequestFailedError(
                status_code=response.status_code,
                message="Google Calendar API returned invalid JSON",
            ) from exc
        if not isinstance(payload, dict):
            raise RemoteRequestFailedError(
                status_code=response.status_code,
                message="Google Calendar API returned an unexpected JSON payload shape",
            )
        return payload

    @staticmethod
    def _raise_for_status(operation: str, response: httpx.Response) -> None:
        if 200 <= response.status_code < 300:
            return
        details = _safe_google_error_message(response)
        logger.error(
            "Calendar API %s failed (status=%d, reason=%s): %s",
            operation,
            response.status_code,
            _error_reason(response),
            details,
        )
        raise RemoteRequestFailedError(status_code=response.status_code, message=details)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def list_calendars(self, token: str) -> Result[list[CalendarDescriptor]]:
        operation = "list_calendars"
        try:
            payload = await self._request_json(
                operation, "GET", "/users/me/calendarList", token=token
            )
            calendars = _parse_items(payload, CalendarDescriptor, operation=operation)
        except RemoteRequestFailedError as exc:
            return _failure(operation, exc)

        logger.info("Fetched %d calendar(s)", len(calendars))
        return Result.ok(calendars)

    async def list_events(
        self,
        token: str,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> Result[list[ProviderEvent]]:
        operation = "list_events"
        params: dict[str, Any] = {
            "timeMin": _google_rfc3339(time_min),
            "timeMax": _google_rfc3339(time_max),
            "singleEvents": True,
            "orderBy": "startTime",
            "maxResults": self._page_size,
        }
        try:
            payload = await self._request_json(
                operation,
                "GET",
                f"/calendars/{quote(calendar_id, safe='')}/events",
                token=token,
                params=params,
            )
            events = _parse_items(payload, ProviderEvent, operation=operation)
        except RemoteRequestFailedError as exc:
            return _failure(operation, exc)

        logger.info("Fetched %d event(s) from calendar %s", len(events), calendar_id)
        return Result.ok(events)

    async def create_event(
        self,
        token: str,
        calendar_id: str,
        payload: EventCreate,
    ) -> Result[ProviderEvent]:
        operation = "create_event"
        try:
            body = await self._request_json(
                operation,
                "POST",
                f"/calendars/{quote(calendar_id, safe='')}/events",
                token=token,
                json_body=payload.to_google(),
            )
            event = ProviderEvent.model_validate(body)
        except RemoteRequestFailedError as exc:
            return _failure(operation, exc)
        except ValidationError as exc:
            return Result.fail(
                ErrorKind.REMOTE_REQUEST_FAILED,
                f"{operation}: unexpected response {exc.error_count()} validation error(s)",
            )

        logger.info("Created event %s", event.id)
        return Result.ok(event)

    async def update_event(
        self,
        token: str,
        calendar_id: str,
        event_id: str,
        patch: EventPatch,
    ) -> Result[ProviderEvent]:
        operation = "update_event"
        try:
            body = await self._request_json(
                operation,
                "PATCH",
                f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
                token=token,
                json_body=patch.to_google(),
            )
            event = ProviderEvent.model_validate(body)
        except RemoteRequestFailedError as exc:
            return _failure(operation, exc)
        except ValidationError as exc:
            return Result.fail(
                ErrorKind.REMOTE_REQUEST_FAILED,
                f"{operation}: unexpected response {exc.error_count()} validation error(s)",
            )

        logger.info("Updated event %s", event.id)
        return Result.ok(event)

    async def delete_event(
        self,
        token: str,
        calendar_id: str,
        event_id: str,
    ) -> Result[None]:
        operation = "delete_event"
        try:
            response = await self._request(
                "DELETE",
                f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
                token=token,
            )
            if response.status_code in ALREADY_DELETED_STATUS_CODES:
                logger.debug(
                    "delete_event: event '%s' already deleted (status=%d); treating as success",
                    event_id,
                    response.status_code,
                )
                return Result.ok(None)
            self._raise_for_status(operation, response)
        except RemoteRequestFailedError as exc:
            return _failure(operation, exc)

        logger.info("Deleted event %s", event_id)
        return Result.ok(None)

    async def validate_token(self, token: str) -> Result[bool]:
        """Probe the calendar list with *token*; ``data`` is whether it was accepted."""
        operation = "validate_token"
        try:
            response = await self._request(
                "GET",
                "/users/me/calendarList",
                token=token,
                params={"maxResults": 1},
            )
        except RemoteRequestFailedError as exc:
            return _failure(operation, exc)

        if response.status_code in SESSION_EXPIRED_STATUS_CODES:
            return Result.ok(False)
        if not 200 <= response.status_code < 300:
            return Result.fail(
                ErrorKind.REMOTE_REQUEST_FAILED,
                f"{operation}: {response.status_code} {_safe_google_error_message(response)}",
                status_code=response.status_code,
            )
        return Result.ok(True)
