"""Microsoft 365 / Outlook calendar provider (OAuth2 PKCE + Graph calendarView).

One Microsoft account is supported at a time: keychain entries use bare field
names plus an ``account_email`` entry recording whose tokens they are.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlencode

import httpx

from lighttime.calendar.errors import (
    AuthenticationFailed,
    DeserializationError,
    FetchFailed,
    NetworkError,
    UnauthorizedError,
)
from lighttime.calendar.http import (
    is_success,
    json_object,
    safe_error_message,
    send_with_backoff,
)
from lighttime.calendar.models import CalendarEvent, ProviderType, ensure_utc
from lighttime.calendar.oauth import (
    CALLBACK_TIMEOUT_SECONDS,
    AuthAttempt,
    BrowserOpener,
    OAuthCalendarProvider,
    TokenResponse,
)
from lighttime.credential_store import (
    ACCOUNT_EMAIL,
    REFRESH_TOKEN,
    CredentialStore,
)

logger = logging.getLogger(__name__)

MICROSOFT_LOGIN_BASE = "https://login.microsoftonline.com"
MICROSOFT_CALENDAR_VIEW_URL = "https://graph.microsoft.com/v1.0/me/calendarView"
MICROSOFT_SCOPES = "Calendars.Read offline_access"
MICROSOFT_CALLBACK_PORTS = tuple(range(19857, 19868))
MICROSOFT_DEFAULT_TENANT = "common"
MICROSOFT_PAGE_SIZE = 250
MICROSOFT_SELECT_FIELDS = "id,subject,start,end,isAllDay,isCancelled"
UNTITLED_EVENT = "(No Subject)"
DEFAULT_ACCOUNT_NAME = "Microsoft Account"

_GRAPH_DATETIME_RE = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<fraction>\d+))?"
    r"(?P<offset>Z|[+-]\d{2}:\d{2})?$"
)


class MicrosoftCalendarProvider(OAuthCalendarProvider):
    """Microsoft account (``microsoft-{email}``)."""

    callback_ports = MICROSOFT_CALLBACK_PORTS
    redirect_host = "localhost"
    uses_state = True

    def __init__(
        self,
        client_id: str,
        credential_store: CredentialStore,
        *,
        tenant: str = MICROSOFT_DEFAULT_TENANT,
        http_client: httpx.AsyncClient | None = None,
        browser_opener: BrowserOpener | None = None,
        callback_ports: tuple[int, ...] | None = None,
        callback_timeout: float = CALLBACK_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__(
            client_id,
            credential_store,
            http_client=http_client,
            browser_opener=browser_opener,
            callback_ports=callback_ports,
            callback_timeout=callback_timeout,
        )
        self._tenant = tenant.strip() or MICROSOFT_DEFAULT_TENANT
        self.token_url = f"{MICROSOFT_LOGIN_BASE}/{self._tenant}/oauth2/v2.0/token"

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.MICROSOFT

    @property
    def account_name(self) -> str:
        return self._account_identity or DEFAULT_ACCOUNT_NAME

    @property
    def authorization_endpoint(self) -> str:
        return f"{MICROSOFT_LOGIN_BASE}/{self._tenant}/oauth2/v2.0/authorize"

    @classmethod
    async def restore(
        cls,
        client_id: str,
        credential_store: CredentialStore,
        **kwargs: Any,
    ) -> MicrosoftCalendarProvider | None:
        """Rebuild the provider from stored tokens, or ``None`` if nothing is stored.

        The access token is refreshed only when it is missing or close to
        expiry.
        """
        if not await credential_store.load(REFRESH_TOKEN):
            return None

        provider = cls(client_id, credential_store, **kwargs)
        provider._account_identity = await credential_store.load(ACCOUNT_EMAIL)
        await provider._load_tokens()
        if not provider.token_is_valid():
            try:
                await provider.refresh_token()
            except NetworkError as exc:
                logger.warning("Could not refresh Microsoft session: %s", exc)
            except BaseException:
                await provider.shutdown()
                raise
        return provider

    def _extra_token_params(self) -> dict[str, str]:
        return {"scope": MICROSOFT_SCOPES}

    def build_authorization_url(self, attempt: AuthAttempt) -> str:
        if attempt.state is None:
            raise AuthenticationFailed("Microsoft authorization requires a state parameter")
        query = {
            "client_id": self._client_id,
            "response_type": "code",
            "redirect_uri": attempt.require_redirect_uri(),
            "scope": MICROSOFT_SCOPES,
            "code_challenge_method": "S256",
            "code_challenge": attempt.challenge,
            "state": attempt.state,
            "response_mode": "query",
        }
        return f"{self.authorization_endpoint}?{urlencode(query)}"

    async def _resolve_identity(self, response: TokenResponse) -> str:
        if response.id_token is None:
            raise AuthenticationFailed("Microsoft token response did not include an id_token")
        email = extract_email_from_id_token(response.id_token)
        if email is None:
            raise AuthenticationFailed("could not read an account email from the id_token")
        return email

    async def _persist_tokens(self) -> None:
        await super()._persist_tokens()
        if self._account_identity is not None:
            await self._credentials.store(ACCOUNT_EMAIL, self._account_identity)

    async def forget_tokens(self) -> None:
        await super().forget_tokens()
        await self._credentials.delete(ACCOUNT_EMAIL)

    async def fetch_events(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        access_token = self._tokens.require_access_token()
        provider_id = self.provider_id
        start, end = ensure_utc(start), ensure_utc(end)
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Prefer": 'outlook.timezone="UTC"',
        }

        url: str = MICROSOFT_CALENDAR_VIEW_URL
        params: dict[str, str] | None = {
            "startDateTime": _format_graph_datetime(start),
            "endDateTime": _format_graph_datetime(end),
            "$select": MICROSOFT_SELECT_FIELDS,
            "$orderby": "start/dateTime",
            "$top": str(MICROSOFT_PAGE_SIZE),
        }

        events: list[CalendarEvent] = []
        while True:
            response = await send_with_backoff(
                self._http_client,
                "GET",
                url,
                context="Microsoft Graph request",
                params=params,
                headers=headers,
            )
            if response.status_code == 401:
                raise UnauthorizedError("Microsoft Graph rejected the access token")
            if not is_success(response):
                raise FetchFailed(
                    f"Microsoft Graph API ({response.status_code}): {safe_error_message(response)}"
                )

            payload = json_object(response, context="Microsoft Graph calendarView response")
            values = payload.get("value", [])
            if not isinstance(values, list):
                raise DeserializationError(
                    "Microsoft Graph calendarView response has a non-list value"
                )
            for item in values:
                if not isinstance(item, dict):
                    continue
                event = graph_event_to_calendar_event(item, provider_id=provider_id)
                if event is not None and event.start_time < end and event.end_time > start:
                    events.append(event)

            next_link = payload.get("@odata.nextLink")
            if not isinstance(next_link, str) or not next_link:
                break
            # nextLink already carries every query parameter.
            url, params = next_link, None

        events.sort(key=lambda event: event.start_time)
        return events


def extract_email_from_id_token(id_token: str) -> str | None:
    """Read ``preferred_username`` (else ``email``) from an unverified JWT payload.

    Only used to key local storage; the token came straight from the token
    endpoint over TLS.
    """
    parts = id_token.split(".")
    if len(parts) != 3:
        return None
    segment = parts[1]
    try:
        decoded = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
        claims = json.loads(decoded)
    except (binascii.Error, ValueError):
        return None
    if not isinstance(claims, dict):
        return None

    for claim in ("preferred_username", "email"):
        value = claims.get(claim)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _format_graph_datetime(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.0000000Z")


def parse_graph_datetime(value: str) -> datetime | None:
    """Parse Graph ``dateTime`` values such as ``2026-02-20T10:00:00.0000000``.

    Values without an offset are UTC because requests ask for UTC.
    """
    match = _GRAPH_DATETIME_RE.match(value.strip())
    if match is None:
        return None
    text = match.group("base")
    fraction = match.group("fraction")
    if fraction:
        text += "." + fraction[:6].ljust(6, "0")
    offset = match.group("offset")
    if offset and offset != "Z":
        text += offset
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return ensure_utc(parsed)


def graph_event_to_calendar_event(
    payload: dict[str, Any],
    *,
    provider_id: str,
) -> CalendarEvent | None:
    """Map one Graph event resource; ``None`` for cancelled or unusable entries."""
    if payload.get("isCancelled") is True:
        return None

    event_id = payload.get("id")
    if not isinstance(event_id, str) or not event_id:
        logger.debug("Skipping Microsoft event without an id")
        return None

    start_payload = payload.get("start")
    end_payload = payload.get("end")
    start_raw = start_payload.get("dateTime") if isinstance(start_payload, dict) else None
    end_raw = end_payload.get("dateTime") if isinstance(end_payload, dict) else None
    if not isinstance(start_raw, str) or not isinstance(end_raw, str):
        logger.debug("Skipping Microsoft event %s without start/end", event_id)
        return None

    start_time = parse_graph_datetime(start_raw)
    end_time = parse_graph_datetime(end_raw)
    if start_time is None or end_time is None:
        logger.debug("Skipping Microsoft event %s with unparseable start/end", event_id)
        return None

    subject = payload.get("subject")
    title = subject if isinstance(subject, str) and subject else UNTITLED_EVENT

    return CalendarEvent(
        id=event_id,
        title=title,
        start_time=start_time,
        end_time=end_time,
        is_all_day=payload.get("isAllDay") is True,
        calendar_id=None,
        provider_id=provider_id,
    )
