"""Data model for the calendar connection subsystem.

This module defines:
- ``ConnectionState``: the single per-session connection record and its phase
- ``ProviderEvent`` / ``EventDateTime``: Google Calendar event payloads (read-only input)
- ``DisplayEvent``: one normalized, single-day record for the UI
- ``CalendarDescriptor``: an entry of the account's calendar list
- ``Result``: the tagged success/error value returned across component seams
- ``Capability`` and the scope helpers used for token checks
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any, Generic, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from cbtjournal.calendar.errors import ErrorKind

T = TypeVar("T")

CALENDAR_EVENTS_SCOPE = "https://www.googleapis.com/auth/calendar.events"
CALENDAR_READONLY_SCOPE = "https://www.googleapis.com/auth/calendar.readonly"
CALENDAR_FULL_SCOPE = "https://www.googleapis.com/auth/calendar"
# Scopes requested whenever a calendar capability is missing.
CALENDAR_SCOPES: tuple[str, ...] = (CALENDAR_EVENTS_SCOPE, CALENDAR_READONLY_SCOPE)

UNTITLED_EVENT_TITLE = "(No title)"


class Capability(StrEnum):
    """Capabilities a token can be checked for."""

    CALENDAR_READ = "calendar.read"
    CALENDAR_WRITE = "calendar.write"


_CAPABILITY_SCOPES: dict[Capability, frozenset[str]] = {
    Capability.CALENDAR_READ: frozenset(
        {CALENDAR_EVENTS_SCOPE, CALENDAR_READONLY_SCOPE, CALENDAR_FULL_SCOPE}
    ),
    Capability.CALENDAR_WRITE: frozenset({CALENDAR_EVENTS_SCOPE, CALENDAR_FULL_SCOPE}),
}


def has_capability(scopes: Iterable[str], capability: Capability) -> bool:
    """Return whether any of *scopes* grants *capability*."""
    accepted = _CAPABILITY_SCOPES[capability]
    return any(scope.strip() in accepted for scope in scopes)


def parse_scope_string(raw: Any) -> frozenset[str]:
    """Split a space-delimited OAuth ``scope`` value into a set."""
    if not isinstance(raw, str):
        return frozenset()
    return frozenset(part for part in raw.split() if part)


def _coerce_zoneinfo(timezone: str | None) -> ZoneInfo | None:
    if not timezone:
        return None
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Connection state
# ---------------------------------------------------------------------------


class ConnectionPhase(StrEnum):
    """Lifecycle phases of a calendar connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SYNCING = "syncing"
    ERROR = "error"


# Fields written to the ConnectionStore; ``phase`` and ``last_error`` are transient.
PERSISTED_FIELDS: frozenset[str] = frozenset(
    {
        "access_token",
        "granted_scopes",
        "connected_at",
        "last_validated",
        "selected_calendar_id",
        "selected_calendar_name",
        "last_sync_at",
    }
)


class ConnectionState(BaseModel):
    """The per-session connection record owned by the orchestrator.

    Invariants are checked on every construction, so a state that violates
    them can never be built (the orchestrator rebuilds the state on every
    mutation).
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str | None = Field(default=None, repr=False)
    granted_scopes: frozenset[str] = Field(default_factory=frozenset)
    connected_at: datetime | None = None
    last_validated: datetime | None = None
    selected_calendar_id: str | None = None
    selected_calendar_name: str | None = None
    last_sync_at: datetime | None = None
    last_error: str | None = None
    phase: ConnectionPhase = ConnectionPhase.DISCONNECTED

    @field_validator("access_token", "selected_calendar_id")
    @classmethod
    def _normalize_optional(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @model_validator(mode="after")
    def _check_invariants(self) -> ConnectionState:
        if self.selected_calendar_id is not None:
            if self.access_token is None:
                raise ValueError("selected_calendar_id requires an access token")
            if not has_capability(self.granted_scopes, Capability.CALENDAR_READ):
                raise ValueError("selected_calendar_id requires a calendar-read scope")
        if (
            self.phase in (ConnectionPhase.CONNECTED, ConnectionPhase.SYNCING)
            and self.access_token is None
        ):
            raise ValueError(f"phase {self.phase.value!r} requires an access token")
        return self

    @field_serializer("granted_scopes")
    def _serialize_scopes(self, value: frozenset[str]) -> list[str]:
        return sorted(value)

    @property
    def has_calendar_access(self) -> bool:
        return self.access_token is not None and has_capability(
            self.granted_scopes, Capability.CALENDAR_READ
        )

    def to_persisted(self) -> dict[str, Any]:
        """Return the JSON-safe subset written to the ConnectionStore."""
        return self.model_dump(mode="json", include=set(PERSISTED_FIELDS))

    @classmethod
    def from_persisted(cls, payload: dict[str, Any]) -> ConnectionState:
        """Rebuild a state from a stored payload; transient fields take defaults."""
        persisted = {key: value for key, value in payload.items() if key in PERSISTED_FIELDS}
        return cls.model_validate(persisted)


class AuthState(BaseModel):
    """Snapshot reported by an AuthProvider's ``get_state()``."""

    model_config = ConfigDict(extra="forbid")

    access_token: str | None = Field(default=None, repr=False)
    granted_scopes: frozenset[str] = Field(default_factory=frozenset)
    connected_at: datetime | None = None
    last_validated: datetime | None = None


class TokenGrant(BaseModel):
    """A usable token handed back by the TokenValidator."""

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(min_length=1, repr=False)
    granted_scopes: frozenset[str] = Field(default_factory=frozenset)
    connected_at: datetime | None = None
    last_validated: datetime | None = None

    def has(self, capability: Capability) -> bool:
        return has_capability(self.granted_scopes, capability)


# ---------------------------------------------------------------------------
# Provider payloads
# ---------------------------------------------------------------------------


class EventStatus(StrEnum):
    """Event lifecycle states as reported by the provider."""

    confirmed = "confirmed"
    tentative = "tentative"
    cancelled = "cancelled"


class AccessRole(StrEnum):
    """Access role of the account on a calendar."""

    owner = "owner"
    writer = "writer"
    reader = "reader"
    free_busy_reader = "freeBusyReader"


class EventDateTime(BaseModel):
    """Either a precise instant (``dateTime``) or a whole-day ``date`` boundary."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    date_time: datetime | None = Field(default=None, alias="dateTime")
    all_day_date: date | None = Field(default=None, alias="date")
    time_zone: str | None = Field(default=None, alias="timeZone")

    @model_validator(mode="after")
    def _validate_shape(self) -> EventDateTime:
        if self.date_time is None and self.all_day_date is None:
            raise ValueError("event boundary needs either dateTime or date")
        if self.date_time is not None and self.date_time.tzinfo is None:
            zone = _coerce_zoneinfo(self.time_zone) or UTC
            self.date_time = self.date_time.replace(tzinfo=zone)
        return self

    def to_google(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ProviderEvent(BaseModel):
    """A Google Calendar event as returned by the events endpoints."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    summary: str | None = None
    description: str | None = None
    start: EventDateTime
    end: EventDateTime
    status: EventStatus = EventStatus.confirmed
    html_link: str | None = Field(default=None, alias="htmlLink")
    created: datetime | None = None
    updated: datetime | None = None

    @property
    def is_all_day(self) -> bool:
        return self.start.date_time is None and self.start.all_day_date is not None


class CalendarDescriptor(BaseModel):
    """One entry of the account's calendar list."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    id: str = Field(min_length=1)
    summary: str = ""
    primary: bool = False
    access_role: AccessRole = Field(alias="accessRole")
    background_color: str | None = Field(default=None, alias="backgroundColor")


class EventCreate(BaseModel):
    """Body for creating an event."""

    model_config = ConfigDict(extra="forbid")

    summary: str = Field(min_length=1)
    description: str | None = None
    start: EventDateTime
    end: EventDateTime

    def to_google(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "summary": self.summary,
            "start": self.start.to_google(),
            "end": self.end.to_google(),
        }
        if self.description is not None:
            body["description"] = self.description
        return body


class EventPatch(BaseModel):
    """Partial body for updating an event; ``None`` fields are left untouched."""

    model_config = ConfigDict(extra="forbid")

    summary: str | None = None
    description: str | None = None
    start: EventDateTime | None = None
    end: EventDateTime | None = None

    def to_google(self) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if self.summary is not None:
            body["summary"] = self.summary
        if self.description is not None:
            body["description"] = self.description
        if self.start is not None:
            body["start"] = self.start.to_google()
        if self.end is not None:
            body["end"] = self.end.to_google()
        return body


# ---------------------------------------------------------------------------
# Display model
# ---------------------------------------------------------------------------


class DisplayEvent(BaseModel):
    """A single-day display record derived from a ProviderEvent."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    provider_event_id: str
    title: str
    day: date = Field(alias="date")
    start_time: str | None = None
    end_time: str | None = None
    is_all_day: bool = False
    is_multi_day: bool = False
    multi_day_label: str | None = None
    description: str | None = None
    html_link: str | None = None


# ---------------------------------------------------------------------------
# Tagged results and notifications
# ---------------------------------------------------------------------------


class Result(BaseModel, Generic[T]):
    """Tagged outcome: ``success=True`` carries ``data``, otherwise ``error``."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    success: bool
    data: T | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    status_code: int | None = None

    @classmethod
    def ok(cls, data: T) -> Result[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        status_code: int | None = None,
    ) -> Result[T]:
        return cls(success=False, error=message, error_kind=kind, status_code=status_code)


class NotificationLevel(StrEnum):
    info = "info"
    success = "success"
    warning = "warning"
    error = "error"


class Notification(BaseModel):
    """A transient, user-visible message emitted by the orchestrator."""

    model_config = ConfigDict(frozen=True)

    level: NotificationLevel
    message: str
