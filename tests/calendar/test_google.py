"""Tests for GoogleCalendarProvider.

HTTP traffic goes through ``httpx.MockTransport``. The authorization flow
uses the real loopback listener and a fake browser that follows the redirect
on a background thread.
"""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from lighttime.calendar.errors import (
    AuthenticationFailed,
    ConsentDenied,
    DeserializationError,
    FetchFailed,
    NotAuthenticated,
    TokenRefreshFailed,
    UnauthorizedError,
)
from lighttime.calendar.google import (
    GOOGLE_CALENDAR_ID,
    UNTITLED_EVENT,
    GoogleCalendarProvider,
    google_event_to_calendar_event,
)
from lighttime.calendar.oauth import code_challenge
from lighttime.credential_store import GOOGLE_SERVICE, CredentialStore

pytestmark = pytest.mark.unit

EMAIL = "alice@example.com"
START = datetime(2026, 3, 2, 0, 0, tzinfo=UTC)
END = START + timedelta(days=1)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeGoogle:
    """Minimal Google token, userinfo and Calendar v3 endpoints."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.token_forms: list[dict[str, str]] = []
        self.token_status = 200
        self.token_payload: dict = {
            "access_token": "ya29.fresh",
            "refresh_token": "1//fresh",
            "expires_in": 3600,
        }
        self.pages: list[tuple[int, dict]] = []
        self.offline = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.offline:
            raise httpx.ConnectError("offline", request=request)
        if request.url.host == "oauth2.googleapis.com":
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            self.token_forms.append(form)
            return httpx.Response(self.token_status, json=self.token_payload)
        if request.url.path == "/oauth2/v3/userinfo":
            return httpx.Response(200, json={"email": EMAIL})
        if request.url.path.endswith("/events"):
            status, payload, *headers = self.pages.pop(0)
            return httpx.Response(status, json=payload, headers=headers[0] if headers else None)
        return httpx.Response(404, json={"error": "not found"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def patch_default_client(self, monkeypatch) -> list[httpx.AsyncClient]:
        """Route clients the provider builds for itself through this fake."""
        created: list[httpx.AsyncClient] = []
        real_client = httpx.AsyncClient

        def factory(**kwargs):
            client = real_client(transport=httpx.MockTransport(self.handler), **kwargs)
            created.append(client)
            return client

        monkeypatch.setattr(httpx, "AsyncClient", factory)
        return created


def _approving_browser(captured: dict, **callback_params: str):
    """Browser stand-in: records the URL and hits the redirect URI from a thread."""

    def opener(url: str) -> bool:
        captured["url"] = url
        query = parse_qs(urlsplit(url).query)
        redirect = query["redirect_uri"][0]
        params = callback_params or {"code": "auth-code"}
        threading.Thread(
            target=httpx.get, args=(redirect,), kwargs={"params": params, "timeout": 5}, daemon=True
        ).start()
        return True

    return opener


def _event(event_id: str, start: str, end: str, **extra) -> dict:
    return {"id": event_id, "start": {"dateTime": start}, "end": {"dateTime": end}, **extra}


@pytest.fixture
def google():
    return FakeGoogle()


@pytest.fixture
def store(memory_keyring):
    return CredentialStore(GOOGLE_SERVICE, memory_keyring)


async def _seed_session(store: CredentialStore, expiry: str = "2099-01-01T00:00:00Z") -> None:
    await store.store(f"{EMAIL}:access_token", "ya29.stored")
    await store.store(f"{EMAIL}:refresh_token", "1//stored")
    await store.store(f"{EMAIL}:token_expiry", expiry)


async def _restored(google: FakeGoogle, store: CredentialStore) -> GoogleCalendarProvider:
    await _seed_session(store)
    provider = await GoogleCalendarProvider.restore_session(
        EMAIL, "client-id", store, http_client=google.client()
    )
    assert provider is not None
    google.requests.clear()
    google.token_forms.clear()
    return provider


# ---------------------------------------------------------------------------
# authenticate()
# ---------------------------------------------------------------------------


@pytest.mark.integration
class TestAuthenticate:
    async def test_full_flow(self, google, store, memory_keyring):
        captured: dict = {}
        provider = GoogleCalendarProvider(
            "client-id",
            store,
            client_secret="desktop-secret",
            http_client=google.client(),
            browser_opener=_approving_browser(captured),
            callback_ports=(0,),
        )
        assert provider.provider_id == "google-unknown"

        await provider.authenticate()

        assert provider.provider_id == f"google-{EMAIL}"
        assert provider.account_name == EMAIL
        assert provider.token_is_valid()

        query = parse_qs(urlsplit(captured["url"]).query)
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["code_challenge_method"] == ["S256"]
        assert query["redirect_uri"][0].startswith("http://127.0.0.1:")
        assert query["redirect_uri"][0].endswith("/callback")

        (form,) = google.token_forms
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "auth-code"
        assert form["client_secret"] == "desktop-secret"
        assert code_challenge(form["code_verifier"]) == query["code_challenge"][0]
        assert form["redirect_uri"] == query["redirect_uri"][0]

        assert memory_keyring.entries[(GOOGLE_SERVICE, f"{EMAIL}:access_token")] == "ya29.fresh"
        assert memory_keyring.entries[(GOOGLE_SERVICE, f"{EMAIL}:refresh_token")] == "1//fresh"
        assert (GOOGLE_SERVICE, f"{EMAIL}:token_expiry") in memory_keyring.entries

    async def test_consent_denied(self, google, store):
        provider = GoogleCalendarProvider(
            "client-id",
            store,
            http_client=google.client(),
            browser_opener=_approving_browser({}, error="access_denied"),
            callback_ports=(0,),
        )
        with pytest.raises(ConsentDenied):
            await provider.authenticate()
        assert google.token_forms == []
        assert provider.provider_id == "google-unknown"

    async def test_rejected_code_exchange(self, google, store):
        google.token_status = 400
        google.token_payload = {"error": "invalid_grant", "error_description": "Bad code"}
        provider = GoogleCalendarProvider(
            "client-id",
            store,
            http_client=google.client(),
            browser_opener=_approving_browser({}),
            callback_ports=(0,),
        )
        with pytest.raises(AuthenticationFailed, match="invalid_grant: Bad code"):
            await provider.authenticate()


class TestAuthenticatePreconditions:
    async def test_missing_client_id(self, google, store):
        provider = GoogleCalendarProvider("", store, http_client=google.client())
        with pytest.raises(AuthenticationFailed, match="client id is not configured"):
            await provider.authenticate()
        assert google.requests == []

    async def test_browser_failure(self, google, store):
        provider = GoogleCalendarProvider(
            "client-id",
            store,
            http_client=google.client(),
            browser_opener=lambda url: False,
            callback_ports=(0,),
        )
        with pytest.raises(AuthenticationFailed, match="failed to open browser"):
            await provider.authenticate()


# ---------------------------------------------------------------------------
# restore_session() / refresh_token()
# ---------------------------------------------------------------------------


class TestRestoreAndRefresh:
    async def test_nothing_stored(self, google, store):
        restored = await GoogleCalendarProvider.restore_session(
            EMAIL, "client-id", store, http_client=google.client()
        )
        assert restored is None
        assert google.requests == []

    async def test_restore_refreshes_immediately(self, google, store, memory_keyring):
        await _seed_session(store)
        provider = await GoogleCalendarProvider.restore_session(
            EMAIL, "client-id", store, http_client=google.client()
        )
        assert provider is not None
        assert provider.provider_id == f"google-{EMAIL}"
        (form,) = google.token_forms
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "1//stored"
        assert memory_keyring.entries[(GOOGLE_SERVICE, f"{EMAIL}:access_token")] == "ya29.fresh"

    async def test_restore_offline_keeps_session(self, google, store):
        await _seed_session(store)
        google.offline = True
        provider = await GoogleCalendarProvider.restore_session(
            EMAIL, "client-id", store, http_client=google.client()
        )
        assert provider is not None
        assert provider.tokens.refresh_token == "1//stored"

    async def test_restore_revoked_grant_raises(self, google, store):
        await _seed_session(store)
        google.token_status = 400
        google.token_payload = {"error": "invalid_grant"}
        with pytest.raises(TokenRefreshFailed, match="invalid_grant"):
            await GoogleCalendarProvider.restore_session(
                EMAIL, "client-id", store, http_client=google.client()
            )

    async def test_restore_revoked_grant_closes_own_client(self, google, store, monkeypatch):
        await _seed_session(store)
        google.token_status = 400
        google.token_payload = {"error": "invalid_grant"}
        created = google.patch_default_client(monkeypatch)
        with pytest.raises(TokenRefreshFailed):
            await GoogleCalendarProvider.restore_session(EMAIL, "client-id", store)
        (client,) = created
        assert client.is_closed

    async def test_refresh_keeps_refresh_token_when_not_rotated(self, google, store):
        provider = await _restored(google, store)
        google.token_payload = {"access_token": "ya29.next", "expires_in": 3600}
        await provider.refresh_token()
        assert provider.tokens.access_token == "ya29.next"
        assert provider.tokens.refresh_token == "1//fresh"

    async def test_refresh_without_refresh_token(self, google, store):
        provider = GoogleCalendarProvider("client-id", store, http_client=google.client())
        with pytest.raises(TokenRefreshFailed, match="no refresh token"):
            await provider.refresh_token()

    async def test_forget_tokens(self, google, store, memory_keyring):
        provider = await _restored(google, store)
        await provider.forget_tokens()
        assert memory_keyring.entries == {}
        assert provider.tokens.access_token is None


# ---------------------------------------------------------------------------
# fetch_events()
# ---------------------------------------------------------------------------


class TestFetchEvents:
    async def test_requires_access_token(self, google, store):
        provider = GoogleCalendarProvider("client-id", store, http_client=google.client())
        with pytest.raises(NotAuthenticated):
            await provider.fetch_events(START, END)

    async def test_paginates_and_maps(self, google, store):
        provider = await _restored(google, store)
        google.pages = [
            (
                200,
                {
                    "items": [
                        _event("b", "2026-03-02T15:00:00+01:00", "2026-03-02T15:30:00+01:00"),
                        _event(
                            "gone",
                            "2026-03-02T10:00:00Z",
                            "2026-03-02T11:00:00Z",
                            status="cancelled",
                        ),
                    ],
                    "nextPageToken": "page-2",
                },
            ),
            (
                200,
                {
                    "items": [
                        {
                            "id": "a",
                            "summary": "Offsite",
                            "start": {"date": "2026-03-02"},
                            "end": {"date": "2026-03-03"},
                        }
                    ]
                },
            ),
        ]

        events = await provider.fetch_events(START, END)

        assert [e.id for e in events] == ["a", "b"]
        offsite, meeting = events
        assert offsite.is_all_day
        assert offsite.start_time == START
        assert meeting.start_time == datetime(2026, 3, 2, 14, 0, tzinfo=UTC)
        assert meeting.title == UNTITLED_EVENT
        assert meeting.calendar_id == GOOGLE_CALENDAR_ID
        assert meeting.provider_id == f"google-{EMAIL}"

        first, second = google.requests
        assert first.url.params["timeMin"] == "2026-03-02T00:00:00Z"
        assert first.url.params["singleEvents"] == "true"
        assert first.url.params["orderBy"] == "startTime"
        assert first.headers["Authorization"] == "Bearer ya29.fresh"
        assert second.url.params["pageToken"] == "page-2"

    async def test_drops_events_outside_window(self, google, store):
        provider = await _restored(google, store)
        google.pages = [
            (
                200,
                {
                    "items": [
                        _event("before", "2026-03-01T22:00:00Z", "2026-03-02T00:00:00Z"),
                        _event("spans", "2026-03-01T23:00:00Z", "2026-03-02T01:00:00Z"),
                        _event("after", "2026-03-03T00:00:00Z", "2026-03-03T01:00:00Z"),
                    ]
                },
            )
        ]
        assert [e.id for e in await provider.fetch_events(START, END)] == ["spans"]

    async def test_unauthorized(self, google, store):
        provider = await _restored(google, store)
        google.pages = [(401, {"error": {"message": "Invalid Credentials"}})]
        with pytest.raises(UnauthorizedError):
            await provider.fetch_events(START, END)

    async def test_server_error(self, google, store):
        provider = await _restored(google, store)
        google.pages = [(500, {"error": {"message": "Backend Error"}})]
        with pytest.raises(FetchFailed, match="500.*Backend Error"):
            await provider.fetch_events(START, END)

    async def test_rate_limit_retried(self, google, store):
        provider = await _restored(google, store)
        google.pages = [
            (429, {"error": {"message": "slow down"}}, {"Retry-After": "0"}),
            (200, {"items": []}),
        ]
        assert await provider.fetch_events(START, END) == []
        assert len(google.requests) == 2

    async def test_non_list_items(self, google, store):
        provider = await _restored(google, store)
        google.pages = [(200, {"items": {"oops": True}})]
        with pytest.raises(DeserializationError):
            await provider.fetch_events(START, END)


# ---------------------------------------------------------------------------
# Event mapping
# ---------------------------------------------------------------------------


class TestMapping:
    def test_skips_event_without_times(self):
        assert google_event_to_calendar_event({"id": "x", "start": {}}, provider_id="p") is None

    def test_skips_unparseable_times(self):
        payload = _event("x", "not-a-time", "2026-03-02T10:00:00Z")
        assert google_event_to_calendar_event(payload, provider_id="p") is None

    def test_summary_becomes_title(self):
        payload = _event("x", "2026-03-02T10:00:00Z", "2026-03-02T11:00:00Z", summary=" 1:1 ")
        event = google_event_to_calendar_event(payload, provider_id="google-a@example.com")
        assert event is not None
        assert event.title == "1:1"
        assert not event.is_all_day
