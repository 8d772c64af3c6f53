"""Configuration loading and validation.

Reads a TOML file, resolves ``${VAR_NAME}`` references against the process
environment, and returns a validated :class:`AppConfig`.

Example ``cbtjournal.toml``::

    [google]
    client_id = "${GOOGLE_CLIENT_ID}"
    client_secret = "${GOOGLE_CLIENT_SECRET}"
    refresh_token = "${GOOGLE_REFRESH_TOKEN}"

    [calendar]
    timezone = "Europe/Berlin"
    refresh_interval_minutes = 15

    [logging]
    level = "DEBUG"
    format = "json"

    [store]
    dsn = "postgresql://localhost/cbtjournal"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

# Pattern matching ${VAR_NAME}; alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

DEFAULT_CONFIG_FILENAME = "cbtjournal.toml"

# Environment fallbacks for the [google] section.
GOOGLE_ENV_FALLBACKS: dict[str, str] = {
    "client_id": "GOOGLE_CLIENT_ID",
    "client_secret": "GOOGLE_CLIENT_SECRET",
    "refresh_token": "GOOGLE_REFRESH_TOKEN",
}


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class StoreConfig:
    """Connection-state persistence from the [store] section.

    Without a DSN the connection state lives in memory only.
    """

    dsn: str | None = None


@dataclass
class GoogleAppCredentials:
    """OAuth client credentials from the [google] section."""

    client_id: str | None = None
    client_secret: str | None = field(default=None, repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    scope: str | None = None

    @property
    def is_complete(self) -> bool:
        return bool(self.client_id and self.client_secret and self.refresh_token)


class CalendarSettings(BaseModel):
    """Tunables for the calendar subsystem, from the [calendar] section."""

    model_config = ConfigDict(extra="forbid")

    timezone: str | None = None
    page_size: int = Field(default=100, ge=1, le=2500)
    validation_cache_minutes: float = Field(default=5, ge=0)
    refresh_interval_minutes: float = Field(default=15, gt=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not normalized:
            return None
        try:
            ZoneInfo(normalized)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {normalized!r}") from exc
        return normalized

    @property
    def validation_cache(self) -> timedelta:
        return timedelta(minutes=self.validation_cache_minutes)

    @property
    def refresh_interval(self) -> timedelta:
        return timedelta(minutes=self.refresh_interval_minutes)

    def tzinfo(self) -> tzinfo:
        """Return the configured zone, or the system local zone when unset."""
        if self.timezone is not None:
            return ZoneInfo(self.timezone)
        local = datetime.now().astimezone().tzinfo
        assert local is not None
        return local


@dataclass
class AppConfig:
    """Parsed application configuration."""

    google: GoogleAppCredentials = field(default_factory=GoogleAppCredentials)
    calendar: CalendarSettings = field(default_factory=CalendarSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    store: StoreConfig = field(default_factory=StoreConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _optional_str(section: dict[str, Any], key: str, *, section_name: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{section_name}.{key} must be a string")
    return value.strip() or None


def _parse_google(section: dict[str, Any]) -> GoogleAppCredentials:
    values: dict[str, str | None] = {}
    for key, env_name in GOOGLE_ENV_FALLBACKS.items():
        value = _optional_str(section, key, section_name="google")
        if value is None:
            value = (os.environ.get(env_name) or "").strip() or None
        values[key] = value
    return GoogleAppCredentials(
        **values,
        scope=_optional_str(section, "scope", section_name="google"),
    )


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Must be 'text' or 'json'.")
    return LoggingConfig(
        level=level,
        format=log_format,
        log_root=_optional_str(section, "log_root", section_name="logging"),
    )


def parse_config(data: dict[str, Any]) -> AppConfig:
    """Build an :class:`AppConfig` from an already-decoded TOML document."""
    data = resolve_env_vars(data)

    try:
        calendar = CalendarSettings.model_validate(_section(data, "calendar"))
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in exc.errors(include_url=False)
        )
        raise ConfigError(f"Invalid [calendar] config: {details}") from exc

    store_section = _section(data, "store")
    return AppConfig(
        google=_parse_google(_section(data, "google")),
        calendar=calendar,
        logging=_parse_logging(_section(data, "logging")),
        store=StoreConfig(dsn=_optional_str(store_section, "dsn", section_name="store")),
    )


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from *path*.

    With no path, ``cbtjournal.toml`` in the working directory is used when it
    exists; otherwise defaults plus environment fallbacks apply.

    Raises
    ------
    ConfigError
        If an explicit file is missing, contains invalid TOML, or has invalid values.
    """
    if path is None:
        default_path = Path.cwd() / DEFAULT_CONFIG_FILENAME
        if not default_path.exists():
            return parse_config({})
        path = default_path

    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    return parse_config(data)
