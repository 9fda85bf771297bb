"""Local system calendar provider (macOS EventKit).

There is no token lifecycle here: access is a system permission grant. The
EventKit calls are blocking, so every backend call runs on a worker thread.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import queue
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from lighttime.calendar.errors import AuthenticationFailed, FetchFailed, NotAuthenticated
from lighttime.calendar.models import CalendarEvent, ProviderType, ensure_utc
from lighttime.calendar.provider import CalendarProvider

logger = logging.getLogger(__name__)

APPLE_PROVIDER_ID = "apple-calendar"
DEFAULT_ACCOUNT_NAME = "Apple Calendar"


@dataclass(frozen=True)
class NativeEvent:
    """Platform event as read from the store; any field may be missing."""

    identifier: str | None
    title: str | None
    start: datetime | None
    end: datetime | None
    is_all_day: bool = False
    calendar_identifier: str | None = None


class EventStoreBackend(abc.ABC):
    """Blocking access to the platform event store."""

    @abc.abstractmethod
    def access_granted(self) -> bool:
        """Current authorization status. Never prompts."""

    @abc.abstractmethod
    def request_access(self) -> None:
        """Prompt the user and block until they answer.

        Raises :class:`AuthenticationFailed` when access is denied.
        """

    @abc.abstractmethod
    def events_between(self, start: datetime, end: datetime) -> list[NativeEvent]: ...


class EventKitBackend(EventStoreBackend):
    """EventKit via PyObjC (``pyobjc-framework-EventKit``, macOS only)."""

    def __init__(self) -> None:
        try:
            import EventKit
            import Foundation
        except ImportError as exc:
            raise AuthenticationFailed(
                "EventKit is unavailable; install lighttime[apple] on macOS"
            ) from exc
        self._eventkit = EventKit
        self._foundation = Foundation
        self._store = EventKit.EKEventStore.alloc().init()

    def access_granted(self) -> bool:
        ek = self._eventkit
        status = ek.EKEventStore.authorizationStatusForEntityType_(ek.EKEntityTypeEvent)
        granted = {getattr(ek, "EKAuthorizationStatusAuthorized", 3)}
        if hasattr(ek, "EKAuthorizationStatusFullAccess"):
            granted.add(ek.EKAuthorizationStatusFullAccess)
        return status in granted

    def request_access(self) -> None:
        answers: queue.Queue[tuple[bool, str | None]] = queue.Queue(maxsize=1)

        def completion(granted: bool, error: Any) -> None:
            reason = str(error.localizedDescription()) if error is not None else None
            answers.put((bool(granted), reason))

        if hasattr(self._store, "requestFullAccessToEventsWithCompletion_"):
            self._store.requestFullAccessToEventsWithCompletion_(completion)
        else:
            self._store.requestAccessToEntityType_completion_(
                self._eventkit.EKEntityTypeEvent, completion
            )

        granted, reason = answers.get()
        if not granted:
            raise AuthenticationFailed(reason or "calendar access denied by user")

    def events_between(self, start: datetime, end: datetime) -> list[NativeEvent]:
        nsdate = self._foundation.NSDate
        predicate = self._store.predicateForEventsWithStartDate_endDate_calendars_(
            nsdate.dateWithTimeIntervalSince1970_(start.timestamp()),
            nsdate.dateWithTimeIntervalSince1970_(end.timestamp()),
            None,
        )
        return [_native_event(item) for item in self._store.eventsMatchingPredicate_(predicate)]


def _native_event(item: Any) -> NativeEvent:
    def _text(value: Any) -> str | None:
        return str(value) if value is not None else None

    def _when(value: Any) -> datetime | None:
        if value is None:
            return None
        return datetime.fromtimestamp(value.timeIntervalSince1970(), tz=UTC)

    calendar = item.calendar()
    return NativeEvent(
        identifier=_text(item.calendarItemIdentifier()),
        title=_text(item.title()),
        start=_when(item.startDate()),
        end=_when(item.endDate()),
        is_all_day=bool(item.isAllDay()),
        calendar_identifier=_text(calendar.calendarIdentifier()) if calendar is not None else None,
    )


class AppleCalendarProvider(CalendarProvider):
    """System calendar provider; ``refresh_token`` is a no-op."""

    def __init__(
        self,
        account_name: str = DEFAULT_ACCOUNT_NAME,
        backend: EventStoreBackend | None = None,
    ) -> None:
        self._account_name = account_name or DEFAULT_ACCOUNT_NAME
        self._backend = backend
        self._authorized = False

    @property
    def provider_id(self) -> str:
        return APPLE_PROVIDER_ID

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.APPLE

    @property
    def account_name(self) -> str:
        return self._account_name

    @property
    def authorized(self) -> bool:
        return self._authorized

    def _store(self) -> EventStoreBackend:
        if self._backend is None:
            self._backend = EventKitBackend()
        return self._backend

    async def authenticate(self) -> None:
        backend = self._store()
        if await asyncio.to_thread(backend.access_granted):
            self._authorized = True
            return
        logger.info("Requesting system calendar access")
        await asyncio.to_thread(backend.request_access)
        self._authorized = True

    async def restore(self) -> bool:
        """Mark authorised if access was already granted. Never prompts."""
        self._authorized = await asyncio.to_thread(self._store().access_granted)
        return self._authorized

    async def refresh_token(self) -> None:
        return None

    async def fetch_events(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        if not self._authorized:
            raise NotAuthenticated()
        start, end = ensure_utc(start), ensure_utc(end)
        try:
            native_events = await asyncio.to_thread(self._store().events_between, start, end)
        except AuthenticationFailed:
            raise
        except Exception as exc:
            raise FetchFailed(f"system calendar query failed: {exc}") from exc

        events: list[CalendarEvent] = []
        for item in native_events:
            event = native_event_to_calendar_event(item, self.provider_id)
            if event is not None:
                events.append(event)
        events.sort(key=lambda event: event.start_time)
        return events


def native_event_to_calendar_event(item: NativeEvent, provider_id: str) -> CalendarEvent | None:
    """Map a platform event; entries missing a required field are skipped."""
    if not item.identifier or item.title is None or item.start is None or item.end is None:
        logger.debug("Skipping system calendar entry with missing fields: %r", item.identifier)
        return None
    return CalendarEvent(
        id=item.identifier,
        title=item.title,
        start_time=item.start,
        end_time=item.end,
        is_all_day=item.is_all_day,
        calendar_id=item.calendar_identifier,
        provider_id=provider_id,
    )
