"""Persistence for the calendar connection record.

The persisted subset of :class:`~cbtjournal.calendar.models.ConnectionState`
(everything except ``phase`` and ``last_error``) is stored as one JSON object.
``StateTableConnectionStore`` keeps it in the PostgreSQL ``state`` key-value
table; ``InMemoryConnectionStore`` keeps it for the lifetime of the process.
"""

from __future__ import annotations

import abc
import json
import logging
from typing import Any

import asyncpg
from pydantic import ValidationError

from cbtjournal.calendar.models import ConnectionState

logger = logging.getLogger(__name__)

CONNECTION_STATE_KEY = "calendar::connection"

STATE_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS state (
    key TEXT PRIMARY KEY,
    value JSONB NOT NULL DEFAULT '{}',
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    version INTEGER NOT NULL DEFAULT 1
)
"""


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value returned as text by asyncpg.

    asyncpg hands JSONB back as a string when no codec is registered. A value
    that was double-encoded (JSON text stored as a JSON string) gets a second
    decode pass.
    """
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str):
        logger.warning("Double-encoded JSONB detected; applying second decode pass")
        try:
            val = json.loads(val)
        except ValueError:
            pass
    return val


async def state_get(pool: asyncpg.Pool, key: str) -> Any | None:
    """Return the JSONB value for *key*, or ``None`` if the key does not exist."""
    row = await pool.fetchval("SELECT value FROM state WHERE key = $1", key)
    if row is None:
        return None
    return decode_jsonb(row)


async def state_set(pool: asyncpg.Pool, key: str, value: Any) -> int:
    """Upsert *key* with *value* and return the row's new version."""
    new_version: int = await pool.fetchval(
        """
        INSERT INTO state (key, value, updated_at, version)
        VALUES ($1, $2::jsonb, now(), 1)
        ON CONFLICT (key) DO UPDATE
            SET value = EXCLUDED.value,
                updated_at = now(),
                version = state.version + 1
        RETURNING version
        """,
        key,
        json.dumps(value),
    )
    return new_version


async def state_delete(pool: asyncpg.Pool, key: str) -> None:
    """Delete *key*. No-op if the key does not exist."""
    await pool.execute("DELETE FROM state WHERE key = $1", key)


def _state_from_payload(payload: Any, *, source: str) -> ConnectionState | None:
    if payload is None:
        return None
    if not isinstance(payload, dict):
        logger.warning(
            "Discarding stored calendar connection from %s: expected an object, got %s",
            source,
            type(payload).__name__,
        )
        return None
    try:
        return ConnectionState.from_persisted(payload)
    except ValidationError as exc:
        logger.warning(
            "Discarding invalid stored calendar connection from %s: %s",
            source,
            exc.errors(include_url=False, include_input=False),
        )
        return None


class ConnectionStore(abc.ABC):
    """Durable slot for the persisted subset of the connection state."""

    @abc.abstractmethod
    async def load(self) -> ConnectionState | None:
        """Return the stored state (transient fields at defaults), or ``None``."""
        ...

    @abc.abstractmethod
    async def save(self, state: ConnectionState) -> None:
        """Replace the stored state with the persisted subset of *state*."""
        ...

    @abc.abstractmethod
    async def clear(self) -> None:
        """Remove the stored state."""
        ...


class InMemoryConnectionStore(ConnectionStore):
    """Process-local store; keeps the same JSON payload a durable store would."""

    def __init__(self, payload: dict[str, Any] | None = None) -> None:
        self._payload = dict(payload) if payload is not None else None
        self.save_count = 0

    @property
    def payload(self) -> dict[str, Any] | None:
        return None if self._payload is None else dict(self._payload)

    async def load(self) -> ConnectionState | None:
        return _state_from_payload(self.payload, source="memory")

    async def save(self, state: ConnectionState) -> None:
        self._payload = state.to_persisted()
        self.save_count += 1

    async def clear(self) -> None:
        self._payload = None


class StateTableConnectionStore(ConnectionStore):
    """Stores the connection record as JSONB in the ``state`` table."""

    def __init__(self, pool: asyncpg.Pool, key: str = CONNECTION_STATE_KEY) -> None:
        self._pool = pool
        self._key = key

    @property
    def key(self) -> str:
        return self._key

    async def ensure_table(self) -> None:
        await self._pool.execute(STATE_TABLE_DDL)

    async def load(self) -> ConnectionState | None:
        payload = await state_get(self._pool, self._key)
        return _state_from_payload(payload, source=f"state[{self._key}]")

    async def save(self, state: ConnectionState) -> None:
        version = await state_set(self._pool, self._key, state.to_persisted())
        logger.debug("Saved calendar connection (key=%s, version=%s)", self._key, version)

    async def clear(self) -> None:
        await state_delete(self._pool, self._key)
        logger.debug("Cleared calendar connection (key=%s)", self._key)
