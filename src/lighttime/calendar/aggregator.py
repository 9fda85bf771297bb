"""Fan-out over connected providers with dedup, ordering and partial-failure tolerance."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from datetime import datetime

from lighttime.calendar.errors import CalendarError, ProviderError, UnauthorizedError
from lighttime.calendar.models import AggregatorResult, CalendarEvent, ProviderType
from lighttime.calendar.provider import CalendarProvider
from lighttime.core.logging import provider_context
from lighttime.core.metrics import sync_metrics
from lighttime.core.telemetry import traced

logger = logging.getLogger(__name__)


def deduplicate(events: Iterable[CalendarEvent]) -> list[CalendarEvent]:
    """Keep the first event for every ``(title, start_time, end_time)``.

    Different ids, providers or calendars do not prevent a merge: two distinct
    meetings with the same title and slot collapse into one.
    """
    seen: set[tuple[str, datetime, datetime]] = set()
    kept: list[CalendarEvent] = []
    for event in events:
        key = event.dedup_key()
        if key in seen:
            continue
        seen.add(key)
        kept.append(event)
    return kept


def merge_events(events: Iterable[CalendarEvent]) -> list[CalendarEvent]:
    """Deduplicate, then stable-sort by start time."""
    return sorted(deduplicate(events), key=lambda event: event.start_time)


class CalendarAggregator:
    """Ordered provider collection; insertion order decides which duplicate survives.

    A single lock covers structural changes and whole fetch passes, so a fetch
    never sees the provider list change underneath it. A provider that hangs
    therefore stalls every other caller until it returns.
    """

    def __init__(self, providers: Iterable[CalendarProvider] = ()) -> None:
        self._providers: list[CalendarProvider] = list(providers)
        self._lock = asyncio.Lock()

    @property
    def provider_count(self) -> int:
        return len(self._providers)

    @property
    def providers(self) -> tuple[CalendarProvider, ...]:
        return tuple(self._providers)

    def connected_providers(self) -> list[tuple[ProviderType, str]]:
        return [(provider.provider_type, provider.account_name) for provider in self._providers]

    async def add_provider(self, provider: CalendarProvider) -> None:
        async with self._lock:
            self._providers.append(provider)
        logger.info("Added provider %s", provider.provider_id)

    async def remove_provider(self, provider_id: str) -> bool:
        async with self._lock:
            removed = self._remove_where(lambda provider: provider.provider_id == provider_id)
        return bool(removed)

    async def remove_providers_by_prefix(self, prefix: str) -> int:
        async with self._lock:
            removed = self._remove_where(lambda provider: provider.provider_id.startswith(prefix))
        return len(removed)

    async def remove_providers_by_type(self, provider_type: ProviderType) -> int:
        async with self._lock:
            removed = self._remove_where(lambda provider: provider.provider_type == provider_type)
        return len(removed)

    def _remove_where(
        self, predicate: Callable[[CalendarProvider], bool]
    ) -> list[CalendarProvider]:
        removed = [provider for provider in self._providers if predicate(provider)]
        if removed:
            self._providers = [p for p in self._providers if not predicate(p)]
            for provider in removed:
                logger.info("Removed provider %s", provider.provider_id)
        return removed

    async def fetch_events(self, start: datetime, end: datetime) -> AggregatorResult:
        """Fetch every provider in insertion order and merge the results.

        Provider failures become ``(provider_id, error)`` entries; iteration
        always continues with the next provider.
        """
        result = AggregatorResult()
        collected: list[CalendarEvent] = []

        async with self._lock:
            for provider in self._providers:
                provider_id = provider.provider_id
                started = time.monotonic()
                with provider_context(provider_id):
                    try:
                        with traced(
                            "calendar.provider_fetch",
                            provider_id=provider_id,
                            provider_type=str(provider.provider_type),
                        ):
                            events = await _fetch_with_refresh(provider, start, end)
                    except CalendarError as exc:
                        logger.warning("Provider %s failed: %s", provider_id, exc)
                        result.errors.append((provider_id, exc))
                        sync_metrics.record_provider_error(str(provider.provider_type), exc.kind)
                        continue
                    except Exception as exc:
                        logger.exception("Provider %s raised unexpectedly", provider_id)
                        error = ProviderError(provider_id, str(exc) or type(exc).__name__)
                        result.errors.append((provider_id, error))
                        sync_metrics.record_provider_error(str(provider.provider_type), error.kind)
                        continue
                    finally:
                        sync_metrics.record_fetch_duration(
                            str(provider.provider_type), (time.monotonic() - started) * 1000
                        )
                logger.debug("Provider %s returned %d events", provider_id, len(events))
                collected.extend(events)
                result.succeeded.append(provider_id)

        result.events = merge_events(collected)
        return result


async def _fetch_with_refresh(
    provider: CalendarProvider, start: datetime, end: datetime
) -> list[CalendarEvent]:
    await provider.ensure_valid_token()
    try:
        return await provider.fetch_events(start, end)
    except UnauthorizedError:
        logger.info("Access token rejected for %s; refreshing once", provider.provider_id)
        await provider.refresh_token()
        return await provider.fetch_events(start, end)
