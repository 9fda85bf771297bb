"""Background poller: periodic aggregated fetch, change detection, publish and cache.

Lifecycle: cold start (load cache, publish if non-empty), then forever
``wait(interval) -> fetch -> classify -> publish + persist | skip``.

If every provider failed, a cycle changes nothing, so a transient outage
keeps serving the last good set instead of blanking it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from enum import StrEnum

import aiosqlite

from lighttime.calendar.aggregator import CalendarAggregator
from lighttime.calendar.cache import EventCache, ProviderRegistry
from lighttime.calendar.errors import TokenRefreshFailed, UnauthorizedError
from lighttime.calendar.models import (
    AggregatorResult,
    CalendarEvent,
    EventFingerprint,
    ProviderRecordStatus,
    fingerprint_map,
)
from lighttime.core.event_bus import EVENTS_UPDATE_TOPIC, EventBus
from lighttime.core.metrics import sync_metrics
from lighttime.core.settings import DEFAULT_POLL_INTERVAL_SECONDS, SettingsStore
from lighttime.core.telemetry import traced

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(hours=24)


class CycleOutcome(StrEnum):
    PUBLISHED = "published"
    UNCHANGED = "unchanged"
    ALL_FAILED = "all_failed"
    CLEARED = "cleared"
    IDLE = "idle"


def events_changed(
    previous: Mapping[str, EventFingerprint],
    current: Mapping[str, EventFingerprint],
) -> bool:
    return dict(previous) != dict(current)


class CalendarPoller:
    """One per process. Owns change-detection state and the publish side effects."""

    def __init__(
        self,
        aggregator: CalendarAggregator,
        cache: EventCache,
        bus: EventBus,
        *,
        settings: SettingsStore | None = None,
        registry: ProviderRegistry | None = None,
        window: timedelta = DEFAULT_WINDOW,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._aggregator = aggregator
        self._cache = cache
        self._bus = bus
        self._settings = settings
        self._registry = registry
        self._window = window
        self._clock = clock or (lambda: datetime.now(UTC))
        self._fingerprints: dict[str, EventFingerprint] = {}
        self._cycle_lock = asyncio.Lock()
        self._force_sync_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS

    @property
    def fingerprints(self) -> dict[str, EventFingerprint]:
        return dict(self._fingerprints)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def load_interval(self) -> int:
        """Read the poll interval once from settings (default 60s)."""
        if self._settings is not None:
            self.interval_seconds = await self._settings.poll_interval_seconds()
        return self.interval_seconds

    async def cold_start(self) -> list[CalendarEvent]:
        """Publish the cached set, if any, before the first network round-trip."""
        try:
            cached = await self._cache.load_events()
        except aiosqlite.Error:
            logger.exception("Failed to load cached events on cold start")
            return []
        if cached:
            logger.info("Cold start: publishing %d cached events", len(cached))
            self._publish(cached)
            self._fingerprints = fingerprint_map(cached)
        return cached

    def start(self) -> asyncio.Task:
        if self._task is not None and not self._task.done():
            return self._task
        self._task = asyncio.create_task(self.run(), name="calendar-poller")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def run(self) -> None:
        """Cold start, then cycle every ``interval_seconds`` until cancelled."""
        await self.load_interval()
        await self.cold_start()
        logger.debug("Calendar poller loop started (interval=%ds)", self.interval_seconds)

        while True:
            forced = False
            try:
                await asyncio.wait_for(
                    self._force_sync_event.wait(),
                    timeout=self.interval_seconds,
                )
                self._force_sync_event.clear()
                forced = True
                logger.debug("Calendar poller: immediate sync requested")
            except TimeoutError:
                pass

            try:
                await self.run_cycle(force=forced)
            except Exception as exc:
                logger.error("Calendar poller cycle error: %s", exc, exc_info=True)

    def request_sync(self) -> None:
        """Wake the background loop for an immediate forced cycle."""
        self._force_sync_event.set()

    async def force_sync(self) -> CycleOutcome:
        """Run one forced cycle now and wait for it."""
        return await self.run_cycle(force=True)

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, *, force: bool = False) -> CycleOutcome:
        """Fetch, classify and (when changed, or when forced) publish.

        A forced cycle publishes even an unchanged set. It still skips
        everything when every provider failed, and only writes the cache when
        the set actually changed.
        """
        async with self._cycle_lock:
            provider_count = self._aggregator.provider_count
            with traced("calendar.sync_cycle", provider_count=provider_count, forced=force) as span:
                if provider_count == 0:
                    outcome = self._handle_no_providers(force=force)
                    result = AggregatorResult()
                else:
                    start = self._clock()
                    result = await self._aggregator.fetch_events(start, start + self._window)
                    await self._record_provider_outcomes(result)
                    outcome = await self._apply_result(result, force=force)

                span.set_attribute("event_count", len(result.events))
                span.set_attribute("error_count", len(result.errors))
                span.set_attribute(
                    "published", outcome in (CycleOutcome.PUBLISHED, CycleOutcome.CLEARED)
                )

        sync_metrics.record_cycle(outcome)
        logger.debug(
            "Calendar sync cycle: outcome=%s events=%d errors=%d",
            outcome,
            len(result.events),
            len(result.errors),
        )
        return outcome

    def _handle_no_providers(self, *, force: bool) -> CycleOutcome:
        if self._fingerprints or force:
            # Publish the empty set once on the transition to "nothing connected".
            self._publish([])
            self._fingerprints = {}
            return CycleOutcome.CLEARED
        return CycleOutcome.IDLE

    async def _apply_result(self, result: AggregatorResult, *, force: bool) -> CycleOutcome:
        if result.all_failed:
            logger.warning(
                "All %d providers failed; keeping last known events", len(result.errors)
            )
            return CycleOutcome.ALL_FAILED

        current = fingerprint_map(result.events)
        changed = events_changed(self._fingerprints, current)
        if not changed and not force:
            return CycleOutcome.UNCHANGED

        self._publish(result.events)
        self._fingerprints = current
        if changed:
            try:
                await self._cache.replace_events(result.events)
            except aiosqlite.Error:
                logger.error("Failed to write calendar event cache", exc_info=True)
        return CycleOutcome.PUBLISHED

    async def _record_provider_outcomes(self, result: AggregatorResult) -> None:
        if self._registry is None:
            return
        try:
            await self._registry.mark_synced(result.succeeded, self._clock())
            for provider_id, error in result.errors:
                if isinstance(error, TokenRefreshFailed) and not isinstance(
                    error, UnauthorizedError
                ):
                    logger.warning("Provider %s needs re-authentication", provider_id)
                    await self._registry.set_status(
                        provider_id, ProviderRecordStatus.REAUTH_REQUIRED
                    )
        except aiosqlite.Error:
            logger.error("Failed to update provider records", exc_info=True)

    def _publish(self, events: list[CalendarEvent]) -> None:
        self._bus.publish(EVENTS_UPDATE_TOPIC, [event.to_payload() for event in events])
        sync_metrics.record_publish()
