"""AuthProvider contract and the token acquisition policy built on top of it.

``TokenValidator`` decides *when* to talk to the AuthProvider:

- ``ensure_token()`` is the interactive path used by ``connect()`` and event
  mutations. It signs in when no token is held, asks for an incremental scope
  grant when the held token lacks a capability, and otherwise hands back the
  held token untouched.
- ``revalidate()`` is the silent path used before fetches and by background
  refresh. It never prompts and reports "no token" instead of failing.

Both hand back values (a tagged ``Result`` or ``None``); applying a grant to
the connection state is the orchestrator's job.
"""

from __future__ import annotations

import abc
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from cbtjournal.calendar.errors import (
    USER_CANCELLED_SENTINEL,
    ConfigurationMissingError,
    ErrorKind,
    SessionExpiredError,
    UserCancelledError,
)
from cbtjournal.calendar.models import (
    AuthState,
    Capability,
    ConnectionState,
    Result,
    TokenGrant,
    has_capability,
)

logger = logging.getLogger(__name__)

DEFAULT_VALIDATION_CACHE = timedelta(minutes=5)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


class AuthProvider(abc.ABC):
    """External collaborator that owns sign-in and token issuance.

    Cancellation of an interactive prompt must surface as an exception whose
    message equals :data:`~cbtjournal.calendar.errors.USER_CANCELLED_SENTINEL`
    (or as :class:`~cbtjournal.calendar.errors.UserCancelledError`).
    """

    @abc.abstractmethod
    def is_configured(self) -> bool:
        """Whether the provider integration has credentials to work with."""
        ...

    @abc.abstractmethod
    async def initialize(self) -> None:
        """Prepare the provider; safe to call repeatedly."""
        ...

    @abc.abstractmethod
    async def sign_in(self, capability: Capability) -> str:
        """Run a full sign-in for *capability* and return the new access token."""
        ...

    @abc.abstractmethod
    async def request_additional_scopes(self, capability: Capability) -> str:
        """Extend the current grant with *capability* and return the new access token."""
        ...

    @abc.abstractmethod
    async def silent_sign_in(self, existing_token: str | None = None) -> str | None:
        """Obtain a token without user interaction, or ``None`` when impossible."""
        ...

    @abc.abstractmethod
    async def validate_token(self, token: str) -> bool:
        """Return whether *token* is still accepted by the provider."""
        ...

    @abc.abstractmethod
    def get_state(self) -> AuthState:
        """Return the provider's current token and scope snapshot."""
        ...

    @abc.abstractmethod
    async def sign_out(self) -> None:
        """Forget the current token."""
        ...


def is_user_cancellation(exc: BaseException) -> bool:
    return isinstance(exc, UserCancelledError) or str(exc) == USER_CANCELLED_SENTINEL


class TokenValidator:
    """Decides when a held token is usable and when to ask the AuthProvider for one."""

    def __init__(
        self,
        auth_provider: AuthProvider,
        *,
        validation_cache: timedelta = DEFAULT_VALIDATION_CACHE,
        clock: Clock = utcnow,
    ) -> None:
        self._auth = auth_provider
        self._validation_cache = validation_cache
        self._clock = clock

    async def ensure_token(
        self,
        state: ConnectionState,
        capability: Capability,
    ) -> Result[TokenGrant]:
        """Return a token that grants *capability*, prompting the user if needed."""
        held_token = state.access_token
        if held_token is not None and has_capability(state.granted_scopes, capability):
            return Result.ok(
                TokenGrant(
                    access_token=held_token,
                    granted_scopes=state.granted_scopes,
                    connected_at=state.connected_at,
                    last_validated=state.last_validated,
                )
            )

        try:
            if held_token is None:
                logger.info("No token held; requesting sign-in for %s", capability.value)
                token = await self._auth.sign_in(capability)
            else:
                logger.info(
                    "Held token lacks %s; requesting additional scopes", capability.value
                )
                token = await self._auth.request_additional_scopes(capability)
        except ConfigurationMissingError as exc:
            logger.warning("Calendar auth is not configured: %s", exc)
            return Result.fail(ErrorKind.CONFIGURATION_MISSING, str(exc))
        except Exception as exc:
            if is_user_cancellation(exc):
                logger.debug("Sign-in cancelled by user")
                return Result.fail(ErrorKind.USER_CANCELLED, "Sign-in cancelled")
            if isinstance(exc, SessionExpiredError):
                logger.warning("Sign-in rejected: %s", exc)
                return Result.fail(ErrorKind.SESSION_EXPIRED, str(exc))
            logger.error("Token acquisition failed for %s", capability.value, exc_info=True)
            return Result.fail(ErrorKind.CONNECTION_FAILED, f"Token acquisition failed: {exc}")

        grant = self._grant_from_provider(token, state)
        if not grant.has(capability):
            logger.warning("Sign-in completed without granting %s", capability.value)
            return Result.fail(
                ErrorKind.SESSION_EXPIRED,
                f"Calendar access ({capability.value}) was not granted",
            )
        return Result.ok(grant)

    async def revalidate(
        self,
        state: ConnectionState,
        capability: Capability,
    ) -> TokenGrant | None:
        """Silently confirm or refresh the held token; ``None`` when there is none usable."""
        held_token = state.access_token
        if held_token is None:
            return None

        now = self._clock()
        if (
            has_capability(state.granted_scopes, capability)
            and state.last_validated is not None
            and now - state.last_validated < self._validation_cache
        ):
            logger.debug("Token validated recently; skipping revalidation")
            return TokenGrant(
                access_token=held_token,
                granted_scopes=state.granted_scopes,
                connected_at=state.connected_at,
                last_validated=state.last_validated,
            )

        try:
            if await self._auth.validate_token(held_token):
                scopes = self._auth.get_state().granted_scopes or state.granted_scopes
                if not has_capability(scopes, capability):
                    logger.info("Held token is valid but lacks %s", capability.value)
                    return None
                return TokenGrant(
                    access_token=held_token,
                    granted_scopes=scopes,
                    connected_at=state.connected_at,
                    last_validated=now,
                )

            logger.info("Held token rejected; attempting silent sign-in")
            token = await self._auth.silent_sign_in(held_token)
        except Exception:
            logger.warning("Silent token revalidation failed", exc_info=True)
            return None

        if token is None:
            logger.info("Silent sign-in produced no token; session needs reconnecting")
            return None

        grant = self._grant_from_provider(token, state)
        if not grant.has(capability):
            logger.info("Silently refreshed token lacks %s", capability.value)
            return None
        return grant

    def _grant_from_provider(self, token: str, state: ConnectionState) -> TokenGrant:
        auth_state = self._auth.get_state()
        now = self._clock()
        return TokenGrant(
            access_token=token,
            granted_scopes=auth_state.granted_scopes,
            connected_at=state.connected_at or auth_state.connected_at or now,
            last_validated=auth_state.last_validated or now,
        )
