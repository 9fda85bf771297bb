"""Durable event cache and connected-provider registry (SQLite)."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime

from lighttime.calendar.models import (
    CalendarEvent,
    ProviderRecord,
    ProviderRecordStatus,
    ProviderType,
)
from lighttime.db import Database, from_db_timestamp, to_db_timestamp

logger = logging.getLogger(__name__)


class EventCache:
    """Last-published event set, readable at cold start before any network call."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def replace_events(
        self,
        events: Sequence[CalendarEvent],
        fetched_at: datetime | None = None,
    ) -> None:
        """Atomically swap the cached set for *events*.

        DELETE, bulk INSERT and COMMIT run in one transaction; a failure rolls
        back to the previous set. Rows sharing an ``id`` collapse to the last
        one written.
        """
        stamp = to_db_timestamp(fetched_at or datetime.now(UTC))
        rows = [
            (
                event.id,
                event.provider_id,
                event.calendar_id,
                event.title,
                to_db_timestamp(event.start_time),
                to_db_timestamp(event.end_time),
                int(event.is_all_day),
                int(event.ignored),
                stamp,
            )
            for event in events
        ]
        async with self._db.transaction() as conn:
            await conn.execute("DELETE FROM calendar_events")
            await conn.executemany(
                """
                INSERT OR REPLACE INTO calendar_events
                    (id, provider_id, calendar_id, title, start_time, end_time,
                     is_all_day, ignored, fetched_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
        logger.debug("Cached %d events", len(rows))

    async def load_events(self) -> list[CalendarEvent]:
        """Return cached events ordered by start time; unparseable rows are skipped."""
        async with self._db.acquire() as conn:
            async with conn.execute(
                """
                SELECT id, provider_id, calendar_id, title, start_time, end_time,
                       is_all_day, ignored
                FROM calendar_events
                ORDER BY start_time
                """
            ) as cursor:
                rows = await cursor.fetchall()

        events: list[CalendarEvent] = []
        for row in rows:
            try:
                start_time = from_db_timestamp(row["start_time"])
                end_time = from_db_timestamp(row["end_time"])
            except (TypeError, ValueError):
                logger.warning("Skipping cached event %s with a corrupt timestamp", row["id"])
                continue
            events.append(
                CalendarEvent(
                    id=row["id"],
                    title=row["title"],
                    start_time=start_time,
                    end_time=end_time,
                    is_all_day=bool(row["is_all_day"]),
                    ignored=bool(row["ignored"]),
                    calendar_id=row["calendar_id"],
                    provider_id=row["provider_id"],
                )
            )
        return events


class ProviderRegistry:
    """Persisted :class:`ProviderRecord` rows; no token material is stored here."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def upsert(self, record: ProviderRecord) -> None:
        params = (
            record.id,
            str(record.provider_type),
            record.account_name,
            to_db_timestamp(record.connected_at),
            to_db_timestamp(record.last_sync_at) if record.last_sync_at else None,
            str(record.status),
        )
        async with self._db.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO calendar_providers
                    (id, provider_type, account_name, connected_at, last_sync_at, status)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    provider_type = excluded.provider_type,
                    account_name = excluded.account_name,
                    connected_at = excluded.connected_at,
                    status = excluded.status
                """,
                params,
            )

    async def delete(self, provider_id: str) -> bool:
        async with self._db.acquire() as conn:
            cursor = await conn.execute(
                "DELETE FROM calendar_providers WHERE id = ?", (provider_id,)
            )
        return cursor.rowcount > 0

    async def delete_by_type(self, provider_type: ProviderType) -> int:
        async with self._db.acquire() as conn:
            cursor = await conn.execute(
                "DELETE FROM calendar_providers WHERE provider_type = ?", (str(provider_type),)
            )
        return cursor.rowcount

    async def list_records(self, provider_type: ProviderType | None = None) -> list[ProviderRecord]:
        query = (
            "SELECT id, provider_type, account_name, connected_at, last_sync_at, status "
            "FROM calendar_providers"
        )
        params: tuple = ()
        if provider_type is not None:
            query += " WHERE provider_type = ?"
            params = (str(provider_type),)
        query += " ORDER BY connected_at, id"

        async with self._db.acquire() as conn:
            async with conn.execute(query, params) as cursor:
                rows = await cursor.fetchall()

        records: list[ProviderRecord] = []
        for row in rows:
            try:
                records.append(
                    ProviderRecord(
                        id=row["id"],
                        provider_type=ProviderType(row["provider_type"]),
                        account_name=row["account_name"],
                        connected_at=from_db_timestamp(row["connected_at"]),
                        last_sync_at=(
                            from_db_timestamp(row["last_sync_at"]) if row["last_sync_at"] else None
                        ),
                        status=ProviderRecordStatus(row["status"]),
                    )
                )
            except ValueError:
                logger.warning("Skipping unreadable provider record %s", row["id"])
        return records

    async def mark_synced(self, provider_ids: Iterable[str], at: datetime | None = None) -> None:
        stamp = to_db_timestamp(at or datetime.now(UTC))
        ids = list(provider_ids)
        if not ids:
            return
        async with self._db.acquire() as conn:
            await conn.executemany(
                "UPDATE calendar_providers SET last_sync_at = ? WHERE id = ?",
                [(stamp, provider_id) for provider_id in ids],
            )

    async def set_status(self, provider_id: str, status: ProviderRecordStatus) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(
                "UPDATE calendar_providers SET status = ? WHERE id = ?",
                (str(status), provider_id),
            )
