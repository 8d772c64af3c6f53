"""Google AuthProvider backed by a stored OAuth refresh token.

The interactive consent flow happens elsewhere (it yields the refresh token
kept in config). This provider mints access tokens from that refresh token,
introspects tokens via Google's ``tokeninfo`` endpoint, and reports the scopes
Google says were granted.

Secret material (client_secret, refresh_token, access tokens) is never logged.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from cbtjournal.calendar.auth import AuthProvider, Clock, utcnow
from cbtjournal.calendar.errors import (
    AuthProviderError,
    ConfigurationMissingError,
    SessionExpiredError,
)
from cbtjournal.calendar.models import (
    AuthState,
    Capability,
    has_capability,
    parse_scope_string,
)

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_TOKENINFO_URL = "https://www.googleapis.com/oauth2/v1/tokeninfo"
DEFAULT_TOKEN_TTL_SECONDS = 3600


class GoogleOAuthCredentials(BaseModel):
    """OAuth client credentials required for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    scope: str | None = None

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    @field_validator("scope")
    @classmethod
    def _normalize_scope(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @classmethod
    def from_json(cls, raw_value: str) -> GoogleOAuthCredentials:
        """Parse a credential blob; accepts Google's ``installed``/``web`` client wrappers."""
        try:
            payload = json.loads(raw_value)
        except json.JSONDecodeError as exc:
            raise ConfigurationMissingError(
                f"Credential JSON must be valid JSON: {exc.msg}"
            ) from exc

        if not isinstance(payload, dict):
            raise ConfigurationMissingError("Credential JSON must decode to a JSON object")

        credential_data = {
            key: _extract_google_credential_value(payload, key)
            for key in ("client_id", "client_secret", "refresh_token")
        }
        missing = sorted(key for key, value in credential_data.items() if not value)
        if missing:
            raise ConfigurationMissingError(
                f"Credential JSON is missing required field(s): {', '.join(missing)}"
            )
        return cls(**credential_data, scope=_extract_google_credential_value(payload, "scope"))

    def __repr__(self) -> str:
        return (
            f"GoogleOAuthCredentials("
            f"client_id={self.client_id!r}, "
            f"client_secret=<REDACTED>, "
            f"refresh_token=<REDACTED>, "
            f"scope={self.scope!r})"
        )

    __str__ = __repr__


def _extract_google_credential_value(payload: dict[str, Any], key: str) -> Any:
    if key in payload:
        return payload[key]

    for nested_key in ("installed", "web"):
        nested = payload.get(nested_key)
        if isinstance(nested, dict) and key in nested:
            return nested[key]
    return None


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_TOKEN_TTL_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_TOKEN_TTL_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_TOKEN_TTL_SECONDS
    return DEFAULT_TOKEN_TTL_SECONDS


def _oauth_error_code(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict) and isinstance(payload.get("error"), str):
        return payload["error"]
    return None


class GoogleAuthProvider(AuthProvider):
    """Refresh-token AuthProvider with lightweight access-token caching."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials | None,
        http_client: httpx.AsyncClient | None = None,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._credentials = credentials
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._clock = clock
        self._state = AuthState()
        self._access_token_expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()
        self._initialized = False

    def is_configured(self) -> bool:
        return self._credentials is not None

    async def initialize(self) -> None:
        if self._initialized:
            return
        if self._credentials is None:
            raise ConfigurationMissingError("Google OAuth credentials are not configured")
        self._initialized = True
        logger.info("Google auth provider initialized (client_id=%s)", self._credentials.client_id)

    async def sign_in(self, capability: Capability) -> str:
        await self.initialize()
        token = await self._refresh_access_token()
        now = self._clock()
        self._state = self._state.model_copy(update={"connected_at": now})
        logger.info("Signed in to Google (scopes=%s)", sorted(self._state.granted_scopes))
        return token

    async def request_additional_scopes(self, capability: Capability) -> str:
        await self.initialize()
        token = await self._refresh_access_token()
        if not has_capability(self._state.granted_scopes, capability):
            raise AuthProviderError(
                f"Stored Google grant does not include {capability.value}; "
                "repeat the consent flow with the calendar scopes"
            )
        logger.info("Additional scopes available (scopes=%s)", sorted(self._state.granted_scopes))
        return token

    async def silent_sign_in(self, existing_token: str | None = None) -> str | None:
        if self._credentials is None:
            return None

        if existing_token and await self.validate_token(existing_token):
            self._state = self._state.model_copy(
                update={"access_token": existing_token, "last_validated": self._clock()}
            )
            logger.info("Existing token validated")
            return existing_token

        try:
            await self.initialize()
            token = await self._refresh_access_token()
        except (AuthProviderError, SessionExpiredError) as exc:
            logger.debug("Silent sign-in failed: %s", exc)
            return None
        if self._state.connected_at is None:
            self._state = self._state.model_copy(update={"connected_at": self._clock()})
        return token

    async def validate_token(self, token: str) -> bool:
        try:
            response = await self._http_client.get(
                GOOGLE_TOKENINFO_URL,
                params={"access_token": token},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.debug("Token introspection request failed: %s", exc)
            return False

        if response.status_code != 200:
            return False
        try:
            payload = response.json()
        except ValueError:
            return False
        if not isinstance(payload, dict):
            return False

        expires_in = payload.get("expires_in")
        if isinstance(expires_in, int | float) and not isinstance(expires_in, bool):
            if expires_in <= 0:
                return False

        updates: dict[str, Any] = {"last_validated": self._clock()}
        scopes = parse_scope_string(payload.get("scope"))
        if scopes:
            updates["granted_scopes"] = scopes
        self._state = self._state.model_copy(update=updates)
        return True

    def get_state(self) -> AuthState:
        return self._state.model_copy()

    async def sign_out(self) -> None:
        self._state = AuthState()
        self._access_token_expires_at = None
        logger.info("Signed out of Google")

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    def _token_is_fresh(self) -> bool:
        if self._state.access_token is None or self._access_token_expires_at is None:
            return False
        return self._clock() < self._access_token_expires_at

    async def _refresh_access_token(self) -> str:
        async with self._refresh_lock:
            if self._token_is_fresh():
                assert self._state.access_token is not None
                return self._state.access_token
            return await self._exchange_refresh_token()

    async def _exchange_refresh_token(self) -> str:
        assert self._credentials is not None
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": self._credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise AuthProviderError(f"Google OAuth token refresh request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            error_code = _oauth_error_code(response)
            if error_code == "invalid_grant":
                raise SessionExpiredError("Google refresh token was revoked or expired")
            raise AuthProviderError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {error_code or 'unknown error'}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthProviderError("Google OAuth token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise AuthProviderError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        expires_in_seconds = _coerce_expires_in_seconds(payload.get("expires_in"))
        # Refresh early to avoid edge-of-expiration failures.
        refresh_ttl_seconds = max(expires_in_seconds - 60, 30)

        now = self._clock()
        scopes = parse_scope_string(payload.get("scope")) or parse_scope_string(
            self._credentials.scope
        )
        self._state = self._state.model_copy(
            update={
                "access_token": access_token.strip(),
                "granted_scopes": scopes or self._state.granted_scopes,
                "last_validated": now,
            }
        )
        self._access_token_expires_at = now + timedelta(seconds=refresh_ttl_seconds)
        return access_token.strip()
