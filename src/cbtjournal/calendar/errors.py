"""Error taxonomy for the calendar connection subsystem.

The API client and the token validator never raise these across their public
boundary; they report failures as :class:`~cbtjournal.calendar.models.Result`
objects tagged with an :class:`ErrorKind`. The exceptions below are raised
internally (and by :class:`~cbtjournal.calendar.auth.AuthProvider`
implementations) and translated at those seams.
"""

from __future__ import annotations

from enum import StrEnum

# Message an AuthProvider raises when the user dismisses the consent prompt.
USER_CANCELLED_SENTINEL = "popup_closed_by_user"

SESSION_EXPIRED_MESSAGE = "Session expired. Please reconnect Google Calendar."
CONFIGURATION_MISSING_MESSAGE = (
    "Google Calendar is not configured. Add Google credentials and reconnect."
)
RETRY_LATER_MESSAGE = "Could not reach Google Calendar. Please try again later."
CONNECT_FAILED_MESSAGE = "Failed to connect to Google Calendar."
NO_CALENDARS_MESSAGE = "No calendars found"


class ErrorKind(StrEnum):
    """Failure categories surfaced by tagged results."""

    CONFIGURATION_MISSING = "configuration_missing"
    SESSION_EXPIRED = "session_expired"
    USER_CANCELLED = "user_cancelled"
    REMOTE_REQUEST_FAILED = "remote_request_failed"
    CONNECTION_FAILED = "connection_failed"


class CalendarError(RuntimeError):
    """Base error for the calendar subsystem."""

    kind: ErrorKind = ErrorKind.CONNECTION_FAILED


class ConfigurationMissingError(CalendarError):
    """Raised when the provider integration has not been set up."""

    kind = ErrorKind.CONFIGURATION_MISSING


class SessionExpiredError(CalendarError):
    """Raised when no usable token is available; recoverable by reconnecting."""

    kind = ErrorKind.SESSION_EXPIRED


class UserCancelledError(SessionExpiredError):
    """Raised when the user dismissed the sign-in prompt."""

    kind = ErrorKind.USER_CANCELLED


class RemoteRequestFailedError(CalendarError):
    """Raised when the calendar API answers non-2xx or cannot be reached."""

    kind = ErrorKind.REMOTE_REQUEST_FAILED

    def __init__(self, *, status_code: int | None, message: str) -> None:
        self.status_code = status_code
        self.message = message
        if status_code is None:
            super().__init__(f"Google Calendar request failed: {message}")
        else:
            super().__init__(f"Google Calendar request failed ({status_code}): {message}")


class AuthProviderError(CalendarError):
    """Raised by AuthProvider implementations for any non-cancellation failure."""


class InvalidTransitionError(CalendarError):
    """Raised when an orchestrator operation is invoked from a phase that forbids it."""


def user_message_for(kind: ErrorKind | None) -> str | None:
    """Return the user-facing message for a failure kind (``None`` for cancellation)."""
    if kind is ErrorKind.USER_CANCELLED:
        return None
    if kind is ErrorKind.SESSION_EXPIRED:
        return SESSION_EXPIRED_MESSAGE
    if kind is ErrorKind.CONFIGURATION_MISSING:
        return CONFIGURATION_MISSING_MESSAGE
    if kind is ErrorKind.REMOTE_REQUEST_FAILED:
        return RETRY_LATER_MESSAGE
    return CONNECT_FAILED_MESSAGE
