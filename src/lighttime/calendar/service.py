"""Command surface consumed by the UI layer: connect, disconnect, statuses, force sync.

:class:`CalendarService` wires providers, aggregator, poller, cache and
registry together. Connect failures propagate to the caller after a status
record carrying the error has been published.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import timedelta

from keyring.backend import KeyringBackend

from lighttime.calendar.aggregator import CalendarAggregator
from lighttime.calendar.apple import AppleCalendarProvider
from lighttime.calendar.cache import EventCache, ProviderRegistry
from lighttime.calendar.errors import CalendarError, TokenRefreshFailed
from lighttime.calendar.google import GoogleCalendarProvider
from lighttime.calendar.microsoft import MicrosoftCalendarProvider
from lighttime.calendar.models import (
    ProviderRecord,
    ProviderRecordStatus,
    ProviderStatus,
    ProviderType,
)
from lighttime.calendar.oauth import OAuthCalendarProvider
from lighttime.calendar.poller import CalendarPoller, CycleOutcome
from lighttime.calendar.provider import CalendarProvider
from lighttime.config import LightTimeConfig
from lighttime.core.event_bus import PROVIDER_STATUS_TOPIC, EventBus
from lighttime.core.settings import SettingsStore
from lighttime.credential_store import (
    ACCOUNT_EMAIL,
    GOOGLE_SERVICE,
    MICROSOFT_SERVICE,
    TOKEN_FIELDS,
    CredentialStore,
    account_key,
)
from lighttime.db import Database

logger = logging.getLogger(__name__)

REAUTH_REQUIRED_MESSAGE = "re-authentication required"


class ProviderFactory:
    """Builds fresh or restored provider instances from configuration."""

    def __init__(
        self,
        config: LightTimeConfig,
        google_store: CredentialStore,
        microsoft_store: CredentialStore,
    ) -> None:
        self._config = config
        self.google_store = google_store
        self.microsoft_store = microsoft_store

    def create(self, provider_type: ProviderType) -> CalendarProvider:
        if provider_type is ProviderType.GOOGLE:
            return GoogleCalendarProvider(
                self._config.google.client_id,
                self.google_store,
                client_secret=self._config.google.client_secret,
            )
        if provider_type is ProviderType.MICROSOFT:
            return MicrosoftCalendarProvider(
                self._config.microsoft.client_id,
                self.microsoft_store,
                tenant=self._config.microsoft.tenant,
            )
        return AppleCalendarProvider(self._config.apple.account_name)

    async def restore(self, record: ProviderRecord) -> CalendarProvider | None:
        """Rebuild a provider from its record; ``None`` when it cannot be resumed silently."""
        if record.provider_type is ProviderType.GOOGLE:
            return await GoogleCalendarProvider.restore_session(
                record.account_name,
                self._config.google.client_id,
                self.google_store,
                client_secret=self._config.google.client_secret,
            )
        if record.provider_type is ProviderType.MICROSOFT:
            return await MicrosoftCalendarProvider.restore(
                self._config.microsoft.client_id,
                self.microsoft_store,
                tenant=self._config.microsoft.tenant,
            )
        apple = AppleCalendarProvider(self._config.apple.account_name)
        return apple if await apple.restore() else None


class CalendarService:
    def __init__(
        self,
        config: LightTimeConfig,
        db: Database,
        bus: EventBus,
        *,
        factory: ProviderFactory | None = None,
        keyring_backend: KeyringBackend | None = None,
    ) -> None:
        self._config = config
        self._bus = bus
        self.factory = factory or ProviderFactory(
            config,
            CredentialStore(GOOGLE_SERVICE, keyring_backend),
            CredentialStore(MICROSOFT_SERVICE, keyring_backend),
        )
        self.aggregator = CalendarAggregator()
        self.cache = EventCache(db)
        self.registry = ProviderRegistry(db)
        self.settings = SettingsStore(db)
        self.poller = CalendarPoller(
            self.aggregator,
            self.cache,
            bus,
            settings=self.settings,
            registry=self.registry,
            window=timedelta(hours=config.poller.window_hours),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def restore_providers(self) -> list[str]:
        """Rebuild providers from persisted records, oldest connection first.

        Accounts whose stored credentials no longer work are marked
        ``reauth_required`` and left out; nothing here ever prompts the user.
        """
        restored: list[str] = []
        for record in await self.registry.list_records():
            try:
                provider = await self.factory.restore(record)
            except TokenRefreshFailed as exc:
                logger.warning("Stored session for %s is no longer valid: %s", record.id, exc)
                provider = None
            except CalendarError as exc:
                logger.warning("Could not restore %s: %s", record.id, exc)
                continue

            if provider is None:
                await self.registry.set_status(record.id, ProviderRecordStatus.REAUTH_REQUIRED)
                continue

            await self.aggregator.add_provider(provider)
            if record.status is not ProviderRecordStatus.CONNECTED:
                await self.registry.set_status(record.id, ProviderRecordStatus.CONNECTED)
            restored.append(provider.provider_id)

        logger.info("Restored %d calendar provider(s)", len(restored))
        return restored

    async def start(self) -> None:
        await self.restore_providers()
        self.poller.start()

    async def close(self) -> None:
        await self.poller.stop()
        for provider in self.aggregator.providers:
            await provider.shutdown()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def connect(self, provider_type: ProviderType) -> str:
        """Authenticate a new account and start syncing it; returns its account name."""
        provider = self.factory.create(provider_type)
        try:
            await provider.authenticate()
        except CalendarError as exc:
            logger.warning("Connecting %s failed: %s", provider_type, exc)
            await provider.shutdown()
            self._publish_status(
                ProviderStatus(provider_type=provider_type, connected=False, error=str(exc))
            )
            raise

        # Reconnecting replaces the previous instance for the same account.
        if provider_type is ProviderType.MICROSOFT:
            stale = self._matching(lambda p: p.provider_type is ProviderType.MICROSOFT)
            await self.aggregator.remove_providers_by_type(ProviderType.MICROSOFT)
            await self.registry.delete_by_type(ProviderType.MICROSOFT)
        else:
            stale = self._matching(lambda p: p.provider_id == provider.provider_id)
            await self.aggregator.remove_provider(provider.provider_id)
        for old in stale:
            await old.shutdown()

        await self.aggregator.add_provider(provider)
        await self.registry.upsert(
            ProviderRecord(
                id=provider.provider_id,
                provider_type=provider_type,
                account_name=provider.account_name,
            )
        )
        self._publish_status(
            ProviderStatus(
                provider_type=provider_type,
                connected=True,
                account_name=provider.account_name,
            )
        )
        if self.poller.running:
            self.poller.request_sync()
        logger.info("Connected %s account %s", provider_type, provider.account_name)
        return provider.account_name

    async def disconnect(self, provider_type: ProviderType, account: str | None = None) -> None:
        """Remove one account (or every account of *provider_type*) and its stored tokens."""
        if account is not None:
            provider_id = f"{provider_type}-{account}"
            records = [
                r for r in await self.registry.list_records(provider_type) if r.id == provider_id
            ]
            removed = self._matching(lambda p: p.provider_id == provider_id)
            await self.aggregator.remove_provider(provider_id)
            await self.registry.delete(provider_id)
        else:
            records = await self.registry.list_records(provider_type)
            removed = self._matching(lambda p: p.provider_type is provider_type)
            await self.aggregator.remove_providers_by_type(provider_type)
            await self.registry.delete_by_type(provider_type)

        for provider in removed:
            if isinstance(provider, OAuthCalendarProvider):
                await provider.forget_tokens()
            await provider.shutdown()
        await self._forget_stored_tokens(provider_type, records, account)

        self._publish_status(
            ProviderStatus(provider_type=provider_type, connected=False, account_name=account)
        )
        logger.info("Disconnected %s%s", provider_type, f" account {account}" if account else "")

    async def get_statuses(self) -> list[ProviderStatus]:
        """One status per connected account, or one disconnected status per type."""
        connected = self.aggregator.connected_providers()
        reauth = [
            record
            for record in await self.registry.list_records()
            if record.status is ProviderRecordStatus.REAUTH_REQUIRED
        ]

        statuses: list[ProviderStatus] = []
        for provider_type in ProviderType:
            accounts = [name for ptype, name in connected if ptype is provider_type]
            for name in accounts:
                statuses.append(
                    ProviderStatus(provider_type=provider_type, connected=True, account_name=name)
                )
            pending = [
                record
                for record in reauth
                if record.provider_type is provider_type and record.account_name not in accounts
            ]
            for record in pending:
                statuses.append(
                    ProviderStatus(
                        provider_type=provider_type,
                        connected=False,
                        account_name=record.account_name,
                        error=REAUTH_REQUIRED_MESSAGE,
                    )
                )
            if not accounts and not pending:
                statuses.append(ProviderStatus(provider_type=provider_type, connected=False))
        return statuses

    async def force_sync(self) -> CycleOutcome:
        """Run one fetch + publish cycle now, outside the regular interval."""
        return await self.poller.force_sync()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _matching(
        self, predicate: Callable[[CalendarProvider], bool]
    ) -> list[CalendarProvider]:
        return [provider for provider in self.aggregator.providers if predicate(provider)]

    async def _forget_stored_tokens(
        self,
        provider_type: ProviderType,
        records: list[ProviderRecord],
        account: str | None,
    ) -> None:
        if provider_type is ProviderType.GOOGLE:
            emails = {record.account_name for record in records}
            if account is not None:
                emails.add(account)
            for email in emails:
                await self.factory.google_store.delete_many(
                    account_key(email, name) for name in TOKEN_FIELDS
                )
        elif provider_type is ProviderType.MICROSOFT:
            await self.factory.microsoft_store.delete_many((*TOKEN_FIELDS, ACCOUNT_EMAIL))

    def _publish_status(self, status: ProviderStatus) -> None:
        self._bus.publish(PROVIDER_STATUS_TOPIC, status.to_payload())
