"""Connection state machine for the calendar subsystem.

``ConnectionOrchestrator`` owns the single :class:`ConnectionState` of a session
and is the only component that mutates it. Every mutation rebuilds the state
through pydantic validation, so the connection invariants hold after each step.

Phases::

    disconnected/error --connect()--> connecting --> connected <--> syncing
                                          |
                                          +--failure--> error --> disconnected

Collaborators (AuthProvider, ConnectionStore, CalendarApiClient) are injected;
the orchestrator decides when a failure becomes a user-visible notification and
when it degrades silently.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import date, timedelta
from typing import Any

from opentelemetry import trace

from cbtjournal.calendar.auth import (
    AuthProvider,
    Clock,
    TokenValidator,
    is_user_cancellation,
    utcnow,
)
from cbtjournal.calendar.client import CalendarApiClient
from cbtjournal.calendar.errors import (
    NO_CALENDARS_MESSAGE,
    RETRY_LATER_MESSAGE,
    SESSION_EXPIRED_MESSAGE,
    ConfigurationMissingError,
    ErrorKind,
    InvalidTransitionError,
    user_message_for,
)
from cbtjournal.calendar.models import (
    CalendarDescriptor,
    Capability,
    ConnectionPhase,
    ConnectionState,
    DisplayEvent,
    EventCreate,
    EventPatch,
    Notification,
    NotificationLevel,
    ProviderEvent,
    Result,
    TokenGrant,
)
from cbtjournal.calendar.normalizer import EventNormalizer, end_of_day, start_of_day
from cbtjournal.calendar.store import ConnectionStore
from cbtjournal.config import CalendarSettings

logger = logging.getLogger(__name__)

Notifier = Callable[[Notification], None]
PhaseListener = Callable[[ConnectionPhase], None]

_ACTIVE_PHASES = frozenset({ConnectionPhase.CONNECTED, ConnectionPhase.SYNCING})
_BUSY_PHASES = frozenset({ConnectionPhase.CONNECTING, ConnectionPhase.SYNCING})


def pick_calendar(
    calendars: list[CalendarDescriptor],
    previous_id: str | None = None,
) -> CalendarDescriptor:
    """Keep *previous_id* when still listed, else the primary calendar, else the first."""
    if previous_id is not None:
        for calendar in calendars:
            if calendar.id == previous_id:
                return calendar
    for calendar in calendars:
        if calendar.primary:
            return calendar
    return calendars[0]


def _log_notification(notification: Notification) -> None:
    logger.info("Notification (%s): %s", notification.level.value, notification.message)


class ConnectionOrchestrator:
    """Drives connect, disconnect, calendar selection, fetches and silent refresh."""

    def __init__(
        self,
        auth: AuthProvider,
        store: ConnectionStore,
        client: CalendarApiClient,
        settings: CalendarSettings | None = None,
        *,
        normalizer: EventNormalizer | None = None,
        notifier: Notifier | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._auth = auth
        self._store = store
        self._client = client
        self._settings = settings or CalendarSettings()
        self._normalizer = normalizer or EventNormalizer(self._settings.tzinfo())
        self._notifier = notifier or _log_notification
        self._clock = clock
        self._validator = TokenValidator(
            auth,
            validation_cache=self._settings.validation_cache,
            clock=clock,
        )
        self._tracer = trace.get_tracer("cbtjournal")

        self._state = ConnectionState()
        self._calendars: list[CalendarDescriptor] = []
        self._events: list[DisplayEvent] = []
        self._listeners: list[PhaseListener] = []
        self._refresh_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    @property
    def phase(self) -> ConnectionPhase:
        return self._state.phase

    @property
    def last_error(self) -> str | None:
        return self._state.last_error

    @property
    def state(self) -> ConnectionState:
        return self._state.model_copy()

    @property
    def available_calendars(self) -> list[CalendarDescriptor]:
        return list(self._calendars)

    @property
    def events(self) -> list[DisplayEvent]:
        return list(self._events)

    @property
    def is_refresh_running(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    def subscribe(self, listener: PhaseListener) -> Callable[[], None]:
        """Call *listener* with the new phase on every phase change.

        Returns a callable that removes the listener.
        """
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def is_configured(self) -> bool:
        return self._auth.is_configured()

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def _replace_state(self, new_state: ConnectionState) -> None:
        previous_phase = self._state.phase
        self._state = new_state
        if new_state.phase is not previous_phase:
            logger.debug(
                "Calendar connection phase %s -> %s",
                previous_phase.value,
                new_state.phase.value,
            )
            for listener in list(self._listeners):
                try:
                    listener(new_state.phase)
                except Exception:
                    logger.exception("Calendar phase listener failed")

    def _update(self, **changes: Any) -> None:
        self._replace_state(ConnectionState.model_validate({**self._state.model_dump(), **changes}))

    def _apply_grant(self, grant: TokenGrant, **changes: Any) -> bool:
        """Apply *grant* to the state; returns whether a persisted field changed."""
        persisted_before = self._state.to_persisted()
        self._update(
            access_token=grant.access_token,
            granted_scopes=grant.granted_scopes,
            connected_at=self._state.connected_at or grant.connected_at or self._clock(),
            last_validated=grant.last_validated or self._state.last_validated,
            **changes,
        )
        return self._state.to_persisted() != persisted_before

    def _notify(self, level: NotificationLevel, message: str) -> None:
        try:
            self._notifier(Notification(level=level, message=message))
        except Exception:
            logger.exception("Calendar notifier failed")

    async def _persist(self) -> bool:
        try:
            await self._store.save(self._state)
        except Exception:
            logger.exception("Failed to persist calendar connection state")
            return False
        return True

    async def _mark_token_rejected(self) -> None:
        """Drop ``last_validated`` so the next revalidation asks the provider."""
        if self._state.last_validated is None:
            return
        self._update(last_validated=None)
        await self._persist()

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """Sign in, load the calendar list and select a calendar.

        Returns ``True`` once the connection is established. Failures are
        recorded in ``last_error`` and leave the phase at ``disconnected``.
        """
        if not self.is_configured():
            logger.warning("Calendar connect requested but Google is not configured")
            self._fail_connect(ErrorKind.CONFIGURATION_MISSING, "Google is not configured")
            return False

        phase = self._state.phase
        if phase is ConnectionPhase.CONNECTED:
            logger.debug("Calendar already connected")
            return True
        if phase in _BUSY_PHASES:
            logger.warning("Calendar connect ignored while %s", phase.value)
            return False

        previous_calendar_id = self._state.selected_calendar_id
        with self._tracer.start_as_current_span("calendar.connect") as span:
            # Connect always signs in again; a held token may be one the API
            # already rejected (e.g. after a failed restore).
            self._update(
                phase=ConnectionPhase.CONNECTING,
                last_error=None,
                access_token=None,
                granted_scopes=frozenset(),
                connected_at=None,
                last_validated=None,
                selected_calendar_id=None,
                selected_calendar_name=None,
            )

            try:
                await self._auth.initialize()
            except ConfigurationMissingError as exc:
                self._fail_connect(ErrorKind.CONFIGURATION_MISSING, str(exc))
                return False
            except Exception as exc:
                if is_user_cancellation(exc):
                    self._fail_connect(ErrorKind.USER_CANCELLED, "Sign-in cancelled")
                    return False
                logger.error("Calendar auth provider failed to initialize", exc_info=True)
                self._fail_connect(ErrorKind.CONNECTION_FAILED, str(exc))
                return False

            token_result = await self._validator.ensure_token(
                self._state, Capability.CALENDAR_READ
            )
            if not token_result.success or token_result.data is None:
                self._fail_connect(
                    token_result.error_kind or ErrorKind.CONNECTION_FAILED,
                    token_result.error or "Token acquisition failed",
                )
                return False

            grant = token_result.data
            self._apply_grant(grant)

            calendars_result = await self._client.list_calendars(grant.access_token)
            if not calendars_result.success:
                self._fail_connect(
                    calendars_result.error_kind or ErrorKind.REMOTE_REQUEST_FAILED,
                    calendars_result.error or "Failed to fetch calendars",
                )
                return False

            calendars = calendars_result.data or []
            if not calendars:
                self._fail_connect(
                    ErrorKind.CONNECTION_FAILED,
                    NO_CALENDARS_MESSAGE,
                    user_message=NO_CALENDARS_MESSAGE,
                )
                return False

            selected = pick_calendar(calendars, previous_calendar_id)
            self._calendars = list(calendars)
            self._update(
                selected_calendar_id=selected.id,
                selected_calendar_name=selected.summary,
                last_error=None,
                phase=ConnectionPhase.CONNECTED,
            )
            await self._persist()
            span.set_attribute("calendar_count", len(calendars))

        logger.info(
            "Connected to Google Calendar (calendar_id=%s, calendars=%d)",
            selected.id,
            len(calendars),
        )
        self._notify(NotificationLevel.success, "Connected to Google Calendar")
        return True

    def _fail_connect(
        self,
        kind: ErrorKind,
        detail: str,
        *,
        user_message: str | None = None,
    ) -> None:
        if kind is ErrorKind.USER_CANCELLED:
            logger.debug("Calendar connect cancelled by user")
            message = detail
        else:
            logger.warning("Calendar connect failed (%s): %s", kind.value, detail)
            message = user_message or user_message_for(kind) or detail

        self._update(phase=ConnectionPhase.ERROR, last_error=message)
        if kind is not ErrorKind.USER_CANCELLED:
            self._notify(NotificationLevel.error, message)
        self._update(phase=ConnectionPhase.DISCONNECTED)

    async def disconnect(self) -> None:
        """Forget the session entirely; no calendar API call is made."""
        await self.stop_periodic_refresh()

        self._calendars = []
        self._events = []
        self._replace_state(ConnectionState())

        try:
            await self._auth.sign_out()
        except Exception:
            logger.warning("Auth provider sign-out failed", exc_info=True)
        try:
            await self._store.clear()
        except Exception:
            logger.exception("Failed to clear stored calendar connection")

        logger.info("Disconnected from Google Calendar")

    # ------------------------------------------------------------------
    # Calendar selection and events
    # ------------------------------------------------------------------

    async def select_calendar(self, calendar: CalendarDescriptor) -> None:
        """Switch the selected calendar; cached events are discarded."""
        if self._state.phase not in _ACTIVE_PHASES:
            raise InvalidTransitionError(
                f"Cannot select a calendar while {self._state.phase.value}"
            )
        self._update(
            selected_calendar_id=calendar.id,
            selected_calendar_name=calendar.summary,
        )
        self._events = []
        await self._persist()
        logger.info("Selected calendar %s", calendar.id)

    async def fetch_events(self, start_date: date, end_date: date) -> list[DisplayEvent]:
        """Fetch and normalize events for the inclusive day range.

        Never raises for remote or token failures; those are reported through
        ``last_error`` and a notification, and an empty list is returned.
        """
        calendar_id = self._state.selected_calendar_id
        if calendar_id is None:
            logger.debug("fetch_events skipped: no calendar selected")
            return []
        if self._state.phase in _BUSY_PHASES:
            logger.warning("fetch_events skipped while %s", self._state.phase.value)
            return []
        if end_date < start_date:
            logger.warning("fetch_events skipped: end %s is before start %s", end_date, start_date)
            return []

        with self._tracer.start_as_current_span("calendar.fetch_events") as span:
            span.set_attribute("calendar_id", calendar_id)
            span.set_attribute("start_date", start_date.isoformat())
            span.set_attribute("end_date", end_date.isoformat())

            grant = await self._validator.revalidate(self._state, Capability.CALENDAR_READ)
            if grant is None:
                logger.warning("fetch_events aborted: no valid calendar token")
                self._update(last_error=SESSION_EXPIRED_MESSAGE)
                self._notify(NotificationLevel.warning, SESSION_EXPIRED_MESSAGE)
                return []

            if self._apply_grant(grant, phase=ConnectionPhase.CONNECTED):
                await self._persist()

            tz = self._normalizer.tz
            self._update(phase=ConnectionPhase.SYNCING)
            try:
                result = await self._client.list_events(
                    grant.access_token,
                    calendar_id,
                    start_of_day(start_date, tz),
                    end_of_day(end_date, tz),
                )
                if not result.success:
                    logger.warning("fetch_events failed: %s", result.error)
                    if result.error_kind is ErrorKind.SESSION_EXPIRED:
                        await self._mark_token_rejected()
                        message = SESSION_EXPIRED_MESSAGE
                    else:
                        message = RETRY_LATER_MESSAGE
                    self._update(phase=ConnectionPhase.CONNECTED, last_error=message)
                    self._notify(NotificationLevel.error, message)
                    return []

                display_events = self._normalizer.normalize(result.data or [])
                self._events = display_events
                self._update(
                    phase=ConnectionPhase.CONNECTED,
                    last_sync_at=self._clock(),
                    last_error=None,
                )
                await self._persist()
                span.set_attribute("event_count", len(display_events))
            finally:
                if self._state.phase is ConnectionPhase.SYNCING:
                    self._update(phase=ConnectionPhase.CONNECTED)

        logger.info(
            "Fetched %d display event(s) for %s..%s", len(display_events), start_date, end_date
        )
        return list(display_events)

    # ------------------------------------------------------------------
    # Token maintenance
    # ------------------------------------------------------------------

    async def validate_connection(self) -> bool:
        """Check the held token against the calendar API."""
        token = self._state.access_token
        if token is None:
            return False

        result = await self._client.validate_token(token)
        if not result.success:
            logger.warning("Calendar token validation request failed: %s", result.error)
            return False
        if not result.data:
            logger.info("Calendar token rejected by the API")
            self._update(last_error=SESSION_EXPIRED_MESSAGE)
            await self._mark_token_rejected()
            return False

        self._update(last_validated=self._clock())
        await self._persist()
        return True

    async def refresh_connection_silently(self) -> bool:
        """Revalidate the token and refresh the calendar list without prompting.

        On failure the current state is left untouched, except that a token the
        calendar API rejects is marked for revalidation. Returns whether a
        calendar-capable token was obtained.
        """
        if not self._state.has_calendar_access:
            return False
        if self._state.phase in _BUSY_PHASES:
            logger.debug("Silent refresh skipped while %s", self._state.phase.value)
            return False

        with self._tracer.start_as_current_span("calendar.refresh") as span:
            grant = await self._validator.revalidate(self._state, Capability.CALENDAR_READ)
            if grant is None:
                logger.info("Silent calendar refresh found no usable token")
                span.set_attribute("refreshed", False)
                return False

            calendars_result = await self._client.list_calendars(grant.access_token)
            if calendars_result.error_kind is ErrorKind.SESSION_EXPIRED:
                logger.info("Silent refresh token rejected by the calendar API")
                span.set_attribute("refreshed", False)
                await self._mark_token_rejected()
                return False

            changed = self._apply_grant(grant)
            if calendars_result.success and calendars_result.data:
                self._calendars = list(calendars_result.data)
            else:
                logger.warning(
                    "Silent refresh could not reload calendars: %s", calendars_result.error
                )
            if changed:
                await self._persist()
            span.set_attribute("refreshed", True)

        logger.debug("Silent calendar refresh succeeded")
        return True

    async def restore_session(self) -> bool:
        """Resume a persisted session without prompting.

        Returns ``True`` when the stored session is usable again. When the
        stored token cannot be revalidated the stored fields stay in place,
        the phase stays ``disconnected`` and ``last_error`` asks the user to
        reconnect.
        """
        if not self.is_configured():
            logger.debug("Google not configured; skipping session restore")
            return False
        if self._state.phase is not ConnectionPhase.DISCONNECTED:
            logger.debug("Session restore skipped while %s", self._state.phase.value)
            return self._state.phase in _ACTIVE_PHASES

        try:
            stored = await self._store.load()
        except Exception:
            logger.exception("Failed to load stored calendar connection")
            return False
        if stored is None or stored.access_token is None:
            logger.debug("No stored calendar session to restore")
            return False

        with self._tracer.start_as_current_span("calendar.restore"):
            self._replace_state(stored)
            self._update(phase=ConnectionPhase.CONNECTING, last_error=None)

            try:
                await self._auth.initialize()
            except Exception:
                logger.warning("Auth provider failed to initialize during restore", exc_info=True)
                self._update(
                    phase=ConnectionPhase.DISCONNECTED, last_error=SESSION_EXPIRED_MESSAGE
                )
                return False

            grant = await self._validator.revalidate(self._state, Capability.CALENDAR_READ)
            if grant is None:
                logger.info("Stored calendar session could not be revalidated")
                self._update(
                    phase=ConnectionPhase.DISCONNECTED, last_error=SESSION_EXPIRED_MESSAGE
                )
                return False

            self._apply_grant(grant)
            calendars_result = await self._client.list_calendars(grant.access_token)
            if calendars_result.error_kind is ErrorKind.SESSION_EXPIRED:
                logger.info("Restored calendar token rejected by the calendar API")
                self._update(
                    phase=ConnectionPhase.DISCONNECTED, last_error=SESSION_EXPIRED_MESSAGE
                )
                await self._mark_token_rejected()
                return False
            if calendars_result.success and calendars_result.data:
                calendars = calendars_result.data
                self._calendars = list(calendars)
                selected = pick_calendar(calendars, self._state.selected_calendar_id)
                if selected.id != self._state.selected_calendar_id:
                    logger.info("Stored calendar unavailable; selected %s instead", selected.id)
                self._update(
                    selected_calendar_id=selected.id,
                    selected_calendar_name=selected.summary,
                )
            else:
                logger.warning(
                    "Could not reload calendars during restore; will retry on use: %s",
                    calendars_result.error,
                )

            self._update(phase=ConnectionPhase.CONNECTED)
            await self._persist()

        logger.info(
            "Calendar session restored (calendar_id=%s)", self._state.selected_calendar_id
        )
        return True

    # ------------------------------------------------------------------
    # Periodic refresh
    # ------------------------------------------------------------------

    async def run_periodic_refresh(self, interval: timedelta | None = None) -> None:
        """Run :meth:`refresh_connection_silently` forever at *interval*.

        Runs until cancelled; individual refresh failures are logged.
        """
        interval_seconds = (interval or self._settings.refresh_interval).total_seconds()
        logger.debug("Calendar refresh loop started (interval=%ds)", interval_seconds)
        while True:
            await asyncio.sleep(interval_seconds)
            if not self._state.has_calendar_access:
                logger.debug("Calendar refresh tick skipped: not connected")
                continue
            try:
                await self.refresh_connection_silently()
            except Exception as exc:
                logger.error("Calendar refresh loop error: %s", exc, exc_info=True)

    def start_periodic_refresh(self, interval: timedelta | None = None) -> asyncio.Task[None]:
        """Start the refresh loop as a task owned by this orchestrator."""
        if self._refresh_task is not None and not self._refresh_task.done():
            return self._refresh_task
        self._refresh_task = asyncio.create_task(
            self.run_periodic_refresh(interval), name="calendar-token-refresh"
        )
        logger.info("Calendar token refresh started")
        return self._refresh_task

    async def stop_periodic_refresh(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            logger.info("Calendar token refresh stopped")
        self._refresh_task = None

    # ------------------------------------------------------------------
    # Event mutations
    # ------------------------------------------------------------------

    async def _write_token(self) -> Result[tuple[str, str]]:
        calendar_id = self._state.selected_calendar_id
        if self._state.phase not in _ACTIVE_PHASES or calendar_id is None:
            raise InvalidTransitionError("A connected calendar is required to modify events")

        token_result = await self._validator.ensure_token(self._state, Capability.CALENDAR_WRITE)
        if not token_result.success or token_result.data is None:
            kind = token_result.error_kind or ErrorKind.CONNECTION_FAILED
            message = user_message_for(kind)
            if message is not None:
                self._notify(NotificationLevel.error, message)
            return Result.fail(kind, token_result.error or "Token acquisition failed")

        grant = token_result.data
        if self._apply_grant(grant):
            await self._persist()
        return Result.ok((grant.access_token, calendar_id))

    def _report_mutation_failure(self, operation: str, result: Result[Any]) -> None:
        logger.warning("%s failed: %s", operation, result.error)
        message = user_message_for(result.error_kind)
        if message is not None:
            self._update(last_error=message)
            self._notify(NotificationLevel.error, message)

    async def create_event(self, payload: EventCreate) -> Result[ProviderEvent]:
        """Create an event on the selected calendar."""
        token_result = await self._write_token()
        if not token_result.success or token_result.data is None:
            return Result.fail(
                token_result.error_kind or ErrorKind.CONNECTION_FAILED,
                token_result.error or "Token acquisition failed",
            )
        token, calendar_id = token_result.data

        result = await self._client.create_event(token, calendar_id, payload)
        if not result.success:
            self._report_mutation_failure("create_event", result)
        return result

    async def update_event(self, event_id: str, patch: EventPatch) -> Result[ProviderEvent]:
        """Patch an event on the selected calendar."""
        token_result = await self._write_token()
        if not token_result.success or token_result.data is None:
            return Result.fail(
                token_result.error_kind or ErrorKind.CONNECTION_FAILED,
                token_result.error or "Token acquisition failed",
            )
        token, calendar_id = token_result.data

        result = await self._client.update_event(token, calendar_id, event_id, patch)
        if not result.success:
            self._report_mutation_failure("update_event", result)
        return result

    async def delete_event(self, event_id: str) -> Result[None]:
        """Delete an event from the selected calendar and drop it from the cache."""
        token_result = await self._write_token()
        if not token_result.success or token_result.data is None:
            return Result.fail(
                token_result.error_kind or ErrorKind.CONNECTION_FAILED,
                token_result.error or "Token acquisition failed",
            )
        token, calendar_id = token_result.data

        result = await self._client.delete_event(token, calendar_id, event_id)
        if not result.success:
            self._report_mutation_failure("delete_event", result)
            return result

        self._events = [event for event in self._events if event.provider_event_id != event_id]
        return result
