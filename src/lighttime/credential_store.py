"""OS keychain-backed credential store for provider token material.

Tokens never touch the SQLite database. Each provider type gets its own
keyring service namespace; within it, entries are plain string fields.

Usage: persisting a Google session::

    store = CredentialStore(GOOGLE_SERVICE)
    await store.store("user@example.com:refresh_token", "1//0g...")

Usage: reading it back::

    refresh = await store.load("user@example.com:refresh_token")
    if refresh is None:
        ...  # nothing stored, re-authentication required

All keyring calls block (they may talk to a D-Bus secret service or the
macOS keychain), so the async API offloads them to worker threads.

Note: stored values are NEVER exposed by ``__repr__`` or logs.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

import keyring
from keyring.backend import KeyringBackend
from keyring.errors import KeyringError, PasswordDeleteError

from lighttime.calendar.errors import ProviderError

logger = logging.getLogger(__name__)

GOOGLE_SERVICE = "com.lighttime.google-oauth"
MICROSOFT_SERVICE = "com.lighttime.microsoft-oauth"

ACCESS_TOKEN = "access_token"
REFRESH_TOKEN = "refresh_token"
TOKEN_EXPIRY = "token_expiry"
ACCOUNT_EMAIL = "account_email"

TOKEN_FIELDS = (ACCESS_TOKEN, REFRESH_TOKEN, TOKEN_EXPIRY)


def account_key(account: str, field: str) -> str:
    """Key for a per-account field, e.g. ``user@example.com:refresh_token``."""
    return f"{account}:{field}"


class CredentialStore:
    """Async key/value view over one keyring service namespace.

    Parameters
    ----------
    service:
        Keyring service name, e.g. :data:`GOOGLE_SERVICE`.
    backend:
        Optional explicit keyring backend. Defaults to the process-wide
        keyring selected by the ``keyring`` library.
    """

    def __init__(self, service: str, backend: KeyringBackend | None = None) -> None:
        self._service = service
        self._backend = backend

    def __repr__(self) -> str:
        return f"CredentialStore(service={self._service!r})"

    @property
    def service(self) -> str:
        return self._service

    def _keyring(self) -> KeyringBackend:
        return self._backend if self._backend is not None else keyring.get_keyring()

    async def store(self, key: str, value: str) -> None:
        try:
            await asyncio.to_thread(self._keyring().set_password, self._service, key, value)
        except KeyringError as exc:
            raise ProviderError(self._service, f"failed to store {key}: {exc}") from exc
        logger.debug("Stored credential %s in %s", key, self._service)

    async def load(self, key: str) -> str | None:
        """Return the stored value, or ``None`` when the entry does not exist."""
        try:
            return await asyncio.to_thread(self._keyring().get_password, self._service, key)
        except KeyringError as exc:
            raise ProviderError(self._service, f"failed to load {key}: {exc}") from exc

    async def delete(self, key: str) -> bool:
        """Delete one entry. Returns False when it was not present."""
        try:
            await asyncio.to_thread(self._keyring().delete_password, self._service, key)
        except PasswordDeleteError:
            return False
        except KeyringError as exc:
            raise ProviderError(self._service, f"failed to delete {key}: {exc}") from exc
        logger.debug("Deleted credential %s from %s", key, self._service)
        return True

    async def delete_many(self, keys: Iterable[str]) -> int:
        deleted = 0
        for key in keys:
            if await self.delete(key):
                deleted += 1
        return deleted
