"""Google Calendar provider (OAuth2 PKCE + Calendar v3 events API).

Multiple Google accounts can be connected at once, so every keychain entry
is namespaced by the account email (``{email}:{field}``).
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime
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
from lighttime.credential_store import REFRESH_TOKEN, CredentialStore, account_key

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"
GOOGLE_CALENDAR_EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"
GOOGLE_SCOPES = (
    "https://www.googleapis.com/auth/calendar.events.readonly "
    "https://www.googleapis.com/auth/userinfo.email"
)
GOOGLE_CALLBACK_PORTS = tuple(range(19847, 19857))
GOOGLE_PAGE_SIZE = 250
GOOGLE_CALENDAR_ID = "primary"
UNTITLED_EVENT = "(No title)"


class GoogleCalendarProvider(OAuthCalendarProvider):
    """Google Calendar account (``google-{email}``)."""

    token_url = GOOGLE_TOKEN_URL
    callback_ports = GOOGLE_CALLBACK_PORTS
    callback_path = "/callback"

    def __init__(
        self,
        client_id: str,
        credential_store: CredentialStore,
        *,
        client_secret: str = "",
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
        self._client_secret = client_secret.strip()

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.GOOGLE

    @property
    def account_name(self) -> str:
        return self._account_identity or "unknown"

    @classmethod
    async def restore_session(
        cls,
        email: str,
        client_id: str,
        credential_store: CredentialStore,
        **kwargs: Any,
    ) -> GoogleCalendarProvider | None:
        """Rebuild a provider for *email* from its stored refresh token.

        Returns ``None`` when nothing is stored for the account. Otherwise the
        access token is refreshed immediately, so a revoked grant surfaces as
        :class:`TokenRefreshFailed` here rather than on the first fetch.
        """
        refresh = await credential_store.load(account_key(email, REFRESH_TOKEN))
        if not refresh:
            logger.info("No stored Google refresh token for %s", email)
            return None

        provider = cls(client_id, credential_store, **kwargs)
        provider._account_identity = email
        await provider._load_tokens()
        try:
            await provider.refresh_token()
        except NetworkError as exc:
            # Offline at startup: keep the session, the next fetch refreshes again.
            logger.warning("Could not refresh Google session for %s: %s", email, exc)
        except BaseException:
            await provider.shutdown()
            raise
        return provider

    def _token_key(self, field_name: str) -> str:
        if self._account_identity is None:
            raise AuthenticationFailed("Google account identity is not resolved")
        return account_key(self._account_identity, field_name)

    def _extra_token_params(self) -> dict[str, str]:
        if self._client_secret:
            return {"client_secret": self._client_secret}
        return {}

    def build_authorization_url(self, attempt: AuthAttempt) -> str:
        query = {
            "client_id": self._client_id,
            "redirect_uri": attempt.require_redirect_uri(),
            "response_type": "code",
            "scope": GOOGLE_SCOPES,
            "code_challenge": attempt.challenge,
            "code_challenge_method": "S256",
            # Without these a previously consented user gets no refresh token.
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(query)}"

    async def _resolve_identity(self, response: TokenResponse) -> str:
        userinfo_response = await send_with_backoff(
            self._http_client,
            "GET",
            GOOGLE_USERINFO_URL,
            context="Google userinfo request",
            headers={"Authorization": f"Bearer {response.access_token}"},
        )
        if not is_success(userinfo_response):
            raise AuthenticationFailed(
                f"Google userinfo request failed ({userinfo_response.status_code}): "
                f"{safe_error_message(userinfo_response)}"
            )
        payload = json_object(userinfo_response, context="Google userinfo response")
        email = payload.get("email")
        if not isinstance(email, str) or not email.strip():
            raise AuthenticationFailed("Google userinfo response is missing an email")
        return email.strip()

    async def fetch_events(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        access_token = self._tokens.require_access_token()
        provider_id = self.provider_id
        start, end = ensure_utc(start), ensure_utc(end)
        params: dict[str, str] = {
            "timeMin": _format_rfc3339(start),
            "timeMax": _format_rfc3339(end),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": str(GOOGLE_PAGE_SIZE),
        }

        events: list[CalendarEvent] = []
        page_token: str | None = None
        while True:
            if page_token is not None:
                params["pageToken"] = page_token
            response = await send_with_backoff(
                self._http_client,
                "GET",
                GOOGLE_CALENDAR_EVENTS_URL,
                context="Google Calendar request",
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            if response.status_code == 401:
                raise UnauthorizedError("Google Calendar rejected the access token")
            if not is_success(response):
                raise FetchFailed(
                    f"Google Calendar API ({response.status_code}): {safe_error_message(response)}"
                )

            payload = json_object(response, context="Google Calendar events response")
            items = payload.get("items", [])
            if not isinstance(items, list):
                raise DeserializationError("Google Calendar events response has non-list items")
            for item in items:
                if not isinstance(item, dict):
                    continue
                event = google_event_to_calendar_event(item, provider_id=provider_id)
                if event is not None and event.start_time < end and event.end_time > start:
                    events.append(event)

            next_token = payload.get("nextPageToken")
            if not isinstance(next_token, str) or not next_token:
                break
            page_token = next_token

        events.sort(key=lambda event: event.start_time)
        return events


def _format_rfc3339(value: datetime) -> str:
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    parsed = datetime.fromisoformat(normalized)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _parse_google_boundary(payload: Any) -> tuple[datetime, bool] | None:
    """Parse a ``start``/``end`` object into ``(utc_datetime, is_all_day)``."""
    if not isinstance(payload, dict):
        return None

    date_time_value = payload.get("dateTime")
    if isinstance(date_time_value, str) and date_time_value.strip():
        try:
            return _parse_google_datetime(date_time_value).astimezone(UTC), False
        except ValueError:
            return None

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed_date = date.fromisoformat(date_value.strip())
        except ValueError:
            return None
        return datetime(parsed_date.year, parsed_date.month, parsed_date.day, tzinfo=UTC), True

    return None


def google_event_to_calendar_event(
    payload: dict[str, Any],
    *,
    provider_id: str,
) -> CalendarEvent | None:
    """Map one Calendar v3 event resource; ``None`` for cancelled or unusable entries."""
    status_raw = payload.get("status")
    if isinstance(status_raw, str) and status_raw.lower() == "cancelled":
        return None

    event_id = payload.get("id")
    if not isinstance(event_id, str) or not event_id.strip():
        logger.debug("Skipping Google event without an id")
        return None

    start = _parse_google_boundary(payload.get("start"))
    end = _parse_google_boundary(payload.get("end"))
    if start is None or end is None:
        logger.debug("Skipping Google event %s with unparseable start/end", event_id)
        return None

    summary = payload.get("summary")
    title = summary.strip() if isinstance(summary, str) and summary.strip() else UNTITLED_EVENT

    return CalendarEvent(
        id=event_id.strip(),
        title=title,
        start_time=start[0],
        end_time=end[0],
        is_all_day=start[1],
        calendar_id=GOOGLE_CALENDAR_ID,
        provider_id=provider_id,
    )
