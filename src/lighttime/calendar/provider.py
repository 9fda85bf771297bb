"""Provider abstraction implemented by every calendar backend."""

from __future__ import annotations

import abc
from datetime import datetime

from lighttime.calendar.models import CalendarEvent, ProviderType


class CalendarProvider(abc.ABC):
    """One connected calendar account.

    Each provider owns its authentication state and token lifecycle. The
    aggregator only calls through this interface and never touches token
    state directly.
    """

    @property
    @abc.abstractmethod
    def provider_id(self) -> str:
        """Session-stable identifier, e.g. ``google-user@example.com``.

        Web providers report a ``{type}-unknown`` placeholder until the first
        successful authentication resolves the account identity, so anything
        that indexes providers by id must tolerate the switch.
        """
        ...

    @property
    @abc.abstractmethod
    def provider_type(self) -> ProviderType: ...

    @property
    @abc.abstractmethod
    def account_name(self) -> str: ...

    @abc.abstractmethod
    async def authenticate(self) -> None:
        """Obtain a usable credential; calling again re-validates or re-prompts."""
        ...

    @abc.abstractmethod
    async def fetch_events(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        """Return non-cancelled events within ``[start, end)`` sorted by start time."""
        ...

    @abc.abstractmethod
    async def refresh_token(self) -> None:
        """Exchange the held refresh credential for a new access credential."""
        ...

    def token_is_valid(self) -> bool:
        return True

    async def ensure_valid_token(self) -> None:
        """Refresh the access credential when it is missing or about to expire."""
        if not self.token_is_valid():
            await self.refresh_token()

    async def shutdown(self) -> None:
        """Release provider-owned resources."""
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(provider_id={self.provider_id!r})"
