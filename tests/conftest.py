"""Shared test fixtures for the lighttime test suite.

- ``memory_keyring``: an in-process keyring backend, so no test ever touches
  the real OS keychain.
- ``db``: a provisioned SQLite database in ``tmp_path``.
- ``make_event`` / ``fake_provider``: builders for aggregator and poller tests.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Iterable
from datetime import UTC, datetime, timedelta

import pytest
from keyring.backend import KeyringBackend
from keyring.errors import PasswordDeleteError

from lighttime.calendar.errors import CalendarError, UnauthorizedError
from lighttime.calendar.models import CalendarEvent, ProviderType
from lighttime.calendar.provider import CalendarProvider
from lighttime.db import Database

BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class MemoryKeyring(KeyringBackend):
    """Dict-backed keyring backend."""

    priority = 1  # type: ignore[assignment]

    def __init__(self) -> None:
        super().__init__()
        self.entries: dict[tuple[str, str], str] = {}

    def get_password(self, service: str, username: str) -> str | None:
        return self.entries.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        self.entries[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        try:
            del self.entries[(service, username)]
        except KeyError:
            raise PasswordDeleteError(username) from None


class FakeProvider(CalendarProvider):
    """Scriptable provider recording every call made through the interface."""

    def __init__(
        self,
        provider_id: str,
        events: Iterable[CalendarEvent] = (),
        *,
        provider_type: ProviderType = ProviderType.GOOGLE,
        account_name: str | None = None,
        error: Exception | None = None,
        unauthorized_times: int = 0,
        refresh_error: Exception | None = None,
        valid: bool = True,
    ) -> None:
        self._provider_id = provider_id
        self._provider_type = provider_type
        self._account_name = account_name or provider_id.split("-", 1)[-1]
        self.events = list(events)
        self.error = error
        self.unauthorized_times = unauthorized_times
        self.refresh_error = refresh_error
        self.valid = valid
        self.fetch_calls = 0
        self.refresh_calls = 0
        self.shutdown_calls = 0
        self.authenticated = False

    @property
    def provider_id(self) -> str:
        return self._provider_id

    @property
    def provider_type(self) -> ProviderType:
        return self._provider_type

    @property
    def account_name(self) -> str:
        return self._account_name

    async def authenticate(self) -> None:
        if isinstance(self.error, CalendarError):
            raise self.error
        self.authenticated = True

    async def fetch_events(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        self.fetch_calls += 1
        if self.unauthorized_times > 0:
            self.unauthorized_times -= 1
            raise UnauthorizedError("access token rejected")
        if self.error is not None:
            raise self.error
        return list(self.events)

    async def refresh_token(self) -> None:
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        self.valid = True

    def token_is_valid(self) -> bool:
        return self.valid

    async def shutdown(self) -> None:
        self.shutdown_calls += 1


def build_event(
    event_id: str = "evt-1",
    title: str = "Standup",
    *,
    start_offset: timedelta = timedelta(0),
    duration: timedelta = timedelta(minutes=30),
    provider_id: str = "google-alice@example.com",
    calendar_id: str | None = "primary",
    is_all_day: bool = False,
) -> CalendarEvent:
    start = BASE_TIME + start_offset
    return CalendarEvent(
        id=event_id,
        title=title,
        start_time=start,
        end_time=start + duration,
        is_all_day=is_all_day,
        calendar_id=calendar_id,
        provider_id=provider_id,
    )


@pytest.fixture
def memory_keyring() -> MemoryKeyring:
    return MemoryKeyring()


@pytest.fixture
async def db(tmp_path) -> AsyncIterator[Database]:
    database = Database(tmp_path / "lighttime.db")
    await database.provision()
    yield database
    await database.close()


@pytest.fixture
def make_event() -> Callable[..., CalendarEvent]:
    return build_event


@pytest.fixture
def fake_provider() -> type[FakeProvider]:
    return FakeProvider


@pytest.fixture
def base_time() -> datetime:
    return BASE_TIME
