"""Key/value settings table.

Only ``poll_interval_seconds`` is interpreted by the core; the remaining
defaults are preferences owned by the presentation layer and are stored
verbatim.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from lighttime.db import Database, to_db_timestamp

logger = logging.getLogger(__name__)

POLL_INTERVAL_KEY = "poll_interval_seconds"
DEFAULT_POLL_INTERVAL_SECONDS = 60

DEFAULT_SETTINGS: dict[str, str] = {
    "border_thickness": "medium",
    "border_position": "all",
    "color_palette": "ambient",
    "color_intensity": "normal",
    "warning_30min": "true",
    "warning_15min": "true",
    "warning_5min": "true",
    "warning_2min": "true",
    POLL_INTERVAL_KEY: str(DEFAULT_POLL_INTERVAL_SECONDS),
    "launch_at_login": "false",
}


def parse_poll_interval(raw: str | None) -> int:
    """Interval in seconds; the default when *raw* is absent, unparseable or not positive."""
    if raw is None:
        return DEFAULT_POLL_INTERVAL_SECONDS
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("Invalid %s setting %r; using the default", POLL_INTERVAL_KEY, raw)
        return DEFAULT_POLL_INTERVAL_SECONDS
    if value <= 0:
        logger.warning(
            "Non-positive %s setting %r; using %ds",
            POLL_INTERVAL_KEY,
            raw,
            DEFAULT_POLL_INTERVAL_SECONDS,
        )
        return DEFAULT_POLL_INTERVAL_SECONDS
    return value


class SettingsStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    async def seed_defaults(self) -> None:
        """Insert defaults without touching values the user already changed."""
        async with self._db.acquire() as conn:
            await conn.executemany(
                "INSERT OR IGNORE INTO settings (key, value) VALUES (?, ?)",
                list(DEFAULT_SETTINGS.items()),
            )

    async def get(self, key: str) -> str | None:
        async with self._db.acquire() as conn:
            async with conn.execute("SELECT value FROM settings WHERE key = ?", (key,)) as cursor:
                row = await cursor.fetchone()
        return row["value"] if row is not None else None

    async def set(self, key: str, value: str) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT (key) DO UPDATE SET
                    value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, value, to_db_timestamp(datetime.now(UTC))),
            )
        logger.debug("Setting %s updated", key)

    async def all(self) -> dict[str, str]:
        async with self._db.acquire() as conn:
            async with conn.execute("SELECT key, value FROM settings ORDER BY key") as cursor:
                rows = await cursor.fetchall()
        return {row["key"]: row["value"] for row in rows}

    async def poll_interval_seconds(self) -> int:
        return parse_poll_interval(await self.get(POLL_INTERVAL_KEY))
