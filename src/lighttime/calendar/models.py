"""Calendar data model shared by providers, aggregator, poller and cache."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import NamedTuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from lighttime.calendar.errors import CalendarError


class ProviderType(StrEnum):
    GOOGLE = "google"
    MICROSOFT = "microsoft"
    APPLE = "apple"


class ProviderRecordStatus(StrEnum):
    CONNECTED = "connected"
    REAUTH_REQUIRED = "reauth_required"


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class CalendarEvent(BaseModel):
    """Canonical merged event.

    ``id`` is provider-local and not unique across providers. Instances are
    immutable; every fetch builds fresh ones.
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str
    title: str
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    ignored: bool = False
    calendar_id: str | None = None
    provider_id: str

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def dedup_key(self) -> tuple[str, datetime, datetime]:
        """Key under which two events count as the same logical event."""
        return (self.title, self.start_time, self.end_time)

    def fingerprint(self) -> EventFingerprint:
        return EventFingerprint(self.id, self.start_time, self.end_time)

    def to_payload(self) -> dict:
        """JSON-ready dict with camelCase keys for published updates."""
        return self.model_dump(mode="json", by_alias=True)


class EventFingerprint(NamedTuple):
    """Identity-relevant fields used for change detection between cycles."""

    id: str
    start_time: datetime
    end_time: datetime


def fingerprint_map(events: Iterable[CalendarEvent]) -> dict[str, EventFingerprint]:
    return {event.id: event.fingerprint() for event in events}


class ProviderRecord(BaseModel):
    """Persisted record of a connected account; token material lives in the keychain."""

    id: str
    provider_type: ProviderType
    account_name: str
    connected_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_sync_at: datetime | None = None
    status: ProviderRecordStatus = ProviderRecordStatus.CONNECTED


class ProviderStatus(BaseModel):
    """Connection status record published on the status topic."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    provider_type: ProviderType
    connected: bool
    account_name: str | None = None
    error: str | None = None

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


@dataclass
class AggregatorResult:
    """Outcome of one aggregated fetch: merged events plus per-provider failures."""

    events: list[CalendarEvent] = field(default_factory=list)
    errors: list[tuple[str, CalendarError]] = field(default_factory=list)
    succeeded: list[str] = field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        """True when nothing came back and at least one provider errored."""
        return not self.events and bool(self.errors)
