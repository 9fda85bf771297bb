"""SQLite connection management and schema provisioning."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

import aiosqlite

from lighttime.calendar.models import ensure_utc

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS settings (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS calendar_events (
    id          TEXT PRIMARY KEY,
    provider_id TEXT NOT NULL,
    calendar_id TEXT,
    title       TEXT NOT NULL,
    start_time  TEXT NOT NULL,
    end_time    TEXT NOT NULL,
    is_all_day  INTEGER NOT NULL DEFAULT 0,
    ignored     INTEGER NOT NULL DEFAULT 0,
    fetched_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS ix_calendar_events_start_time ON calendar_events (start_time);

CREATE TABLE IF NOT EXISTS calendar_providers (
    id            TEXT PRIMARY KEY,
    provider_type TEXT NOT NULL,
    account_name  TEXT NOT NULL,
    connected_at  TEXT NOT NULL,
    last_sync_at  TEXT,
    status        TEXT NOT NULL DEFAULT 'connected'
);

CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""


def to_db_timestamp(value: datetime) -> str:
    """Fixed-width UTC ISO-8601 text, so lexical order is chronological."""
    return ensure_utc(value).isoformat(timespec="microseconds")


def from_db_timestamp(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value))


class Database:
    """Owns one aiosqlite connection to the LightTime database file.

    The connection runs in autocommit mode; callers that need several
    statements to land together wrap them in :meth:`transaction`. Every use
    goes through :meth:`acquire` (or :meth:`transaction`), which serialises
    tasks on the one connection so no autocommit statement from another task
    can run inside an open transaction.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database is not connected. Call connect() first.")
        return self._conn

    async def connect(self) -> aiosqlite.Connection:
        if self._conn is None:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(self.path, isolation_level=None)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            logger.debug("Opened database %s", self.path)
        return self._conn

    async def provision(self) -> None:
        """Create every table if missing and record the schema version."""
        conn = await self.connect()
        async with self._lock:
            await conn.executescript(_SCHEMA_DDL)
            await conn.execute(
                "INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
            )
        logger.debug("Provisioned schema version %d in %s", SCHEMA_VERSION, self.path)

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[aiosqlite.Connection]:
        """Exclusive use of the connection for the duration of the block."""
        conn = self.connection
        async with self._lock:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """BEGIN ... COMMIT under :meth:`acquire`, rolled back if the block raises."""
        async with self.acquire() as conn:
            await conn.execute("BEGIN")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            await conn.execute("COMMIT")

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            logger.debug("Closed database %s", self.path)

    async def __aenter__(self) -> Database:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
