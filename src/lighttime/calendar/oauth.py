"""OAuth2 authorization-code + PKCE machinery shared by the web providers.

Each authorization attempt owns its own :class:`AuthAttempt` (verifier, state
nonce, redirect URI). Nothing about an in-flight attempt is stored at module
level, so Google and Microsoft flows can run side by side.

The loopback callback listener is a one-shot ``http.server`` bound on
127.0.0.1. Its blocking receive runs on a worker thread via
``asyncio.to_thread`` and the result comes back as an awaited future.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import html
import logging
import secrets
import time
import webbrowser
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any
from urllib.parse import parse_qs, urlsplit

import httpx

from lighttime.calendar.errors import (
    AuthenticationFailed,
    CalendarError,
    CallbackStateMismatch,
    ConsentDenied,
    DeserializationError,
    NotAuthenticated,
    TokenRefreshFailed,
)
from lighttime.calendar.http import (
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    is_success,
    json_object,
    safe_error_message,
    send_with_backoff,
)
from lighttime.calendar.provider import CalendarProvider
from lighttime.credential_store import (
    ACCESS_TOKEN,
    REFRESH_TOKEN,
    TOKEN_EXPIRY,
    TOKEN_FIELDS,
    CredentialStore,
)

logger = logging.getLogger(__name__)

CALLBACK_TIMEOUT_SECONDS = 120.0
# Per-connection read limit; an idle or stalled socket must not eat the callback wait.
CALLBACK_CONNECTION_TIMEOUT_SECONDS = 5.0
TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)
DEFAULT_EXPIRES_IN_SECONDS = 3600
LOOPBACK_HOST = "127.0.0.1"

BrowserOpener = Callable[[str], bool]


# ---------------------------------------------------------------------------
# PKCE primitives
# ---------------------------------------------------------------------------


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_code_verifier() -> str:
    """32 random bytes, base64url without padding (43 characters)."""
    return _b64url(secrets.token_bytes(32))


def code_challenge(verifier: str) -> str:
    """S256 challenge: base64url(SHA-256(verifier)) without padding."""
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_state() -> str:
    return _b64url(secrets.token_bytes(16))


class AuthPhase(StrEnum):
    IDLE = "idle"
    CHALLENGE_BUILT = "challenge_built"
    BROWSER_OPENED = "browser_opened"
    AWAITING_CALLBACK = "awaiting_callback"
    CODE_RECEIVED = "code_received"
    TOKEN_EXCHANGED = "token_exchanged"
    IDENTITY_RESOLVED = "identity_resolved"
    PERSISTED = "persisted"
    FAILED = "failed"


@dataclass
class AuthAttempt:
    """State of one authorization attempt.

    The verifier never leaves this object except in the token exchange
    request. A retry after failure or timeout starts a fresh attempt with a
    new verifier/challenge pair.
    """

    provider: str
    verifier: str = field(default_factory=generate_code_verifier, repr=False)
    state: str | None = None
    redirect_uri: str | None = None
    phase: AuthPhase = AuthPhase.IDLE
    failure_reason: str | None = None

    @classmethod
    def start(cls, provider: str, *, with_state: bool = False) -> AuthAttempt:
        attempt = cls(provider=provider, state=generate_state() if with_state else None)
        attempt.advance(AuthPhase.CHALLENGE_BUILT)
        return attempt

    @property
    def challenge(self) -> str:
        return code_challenge(self.verifier)

    def advance(self, phase: AuthPhase) -> None:
        logger.debug("OAuth attempt for %s: %s -> %s", self.provider, self.phase, phase)
        self.phase = phase

    def require_redirect_uri(self) -> str:
        if self.redirect_uri is None:
            raise AuthenticationFailed(f"{self.provider} authorization has no redirect URI bound")
        return self.redirect_uri

    def fail(self, reason: str) -> None:
        logger.debug("OAuth attempt for %s failed during %s: %s", self.provider, self.phase, reason)
        self.phase = AuthPhase.FAILED
        self.failure_reason = reason


# ---------------------------------------------------------------------------
# Loopback callback listener
# ---------------------------------------------------------------------------

_SUCCESS_PAGE = """<!DOCTYPE html>
<html><head><title>LightTime</title></head>
<body style="font-family: sans-serif; text-align: center; padding-top: 4em;">
<h2>Authorization complete</h2>
<p>You can close this window and return to LightTime.</p>
</body></html>"""

_FAILURE_PAGE = """<!DOCTYPE html>
<html><head><title>LightTime</title></head>
<body style="font-family: sans-serif; text-align: center; padding-top: 4em;">
<h2>Authorization failed</h2>
<p>{reason}</p>
</body></html>"""


class _CallbackHTTPServer(HTTPServer):
    callback_path: str = "/"
    expected_state: str | None = None
    connection_timeout: float = CALLBACK_CONNECTION_TIMEOUT_SECONDS
    outcome: str | CalendarError | None = None


class _CallbackHandler(BaseHTTPRequestHandler):
    server: _CallbackHTTPServer

    def setup(self) -> None:
        # StreamRequestHandler applies self.timeout to the accepted socket.
        self.timeout = self.server.connection_timeout
        super().setup()

    def do_GET(self) -> None:  # noqa: N802
        url = urlsplit(self.path)
        if url.path != self.server.callback_path:
            # Browsers also ask for /favicon.ico and the like.
            self._respond(404, _FAILURE_PAGE.format(reason="Not found"))
            return
        params = {key: values[0] for key, values in parse_qs(url.query).items() if values}
        outcome = _classify_callback(params, self.server.expected_state)
        if isinstance(outcome, CalendarError):
            self._respond(400, _FAILURE_PAGE.format(reason=html.escape(str(outcome))))
        else:
            self._respond(200, _SUCCESS_PAGE)
        self.server.outcome = outcome

    def _respond(self, status: int, body: str) -> None:
        encoded = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(encoded)))
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(encoded)

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        logger.debug("OAuth callback listener: " + format, *args)


def _classify_callback(params: dict[str, str], expected_state: str | None) -> str | CalendarError:
    error = params.get("error")
    if error:
        description = params.get("error_description")
        return ConsentDenied(f"{error}: {description}" if description else error)

    if expected_state is not None and params.get("state") != expected_state:
        return CallbackStateMismatch("state parameter mismatch on OAuth callback")

    code = params.get("code")
    if not code:
        return AuthenticationFailed("no authorization code in callback")
    return code


class CallbackListener:
    """Loopback HTTP listener for the OAuth redirect.

    Bind with :meth:`bind`, which takes the first free port of the given
    range. The listener serves requests until one reaches the callback path
    or the overall timeout passes, and is closed afterwards. Connections that
    never send a request and requests for other paths are answered and
    ignored.
    """

    def __init__(self, server: _CallbackHTTPServer) -> None:
        self._server = server

    @classmethod
    def bind(cls, ports: Iterable[int], path: str = "/") -> CallbackListener:
        tried: list[int] = []
        for port in ports:
            tried.append(port)
            try:
                server = _CallbackHTTPServer((LOOPBACK_HOST, port), _CallbackHandler)
            except OSError:
                continue
            server.callback_path = path
            logger.debug("OAuth callback listener bound on port %d", server.server_port)
            return cls(server)
        raise AuthenticationFailed(f"no free callback port in {tried!r}")

    @property
    def port(self) -> int:
        return self._server.server_port

    def redirect_uri(self, host: str = LOOPBACK_HOST) -> str:
        return f"http://{host}:{self.port}{self._server.callback_path}"

    def wait_for_code(
        self,
        expected_state: str | None = None,
        timeout: float = CALLBACK_TIMEOUT_SECONDS,
    ) -> str:
        """Block until a callback request arrives and return its ``code``.

        *timeout* bounds the whole wait, including time spent on connections
        that never deliver a callback. Raises :class:`AuthenticationFailed`
        (or a subclass) on timeout, an ``error`` callback, a state mismatch,
        or a missing code.
        """
        server = self._server
        server.expected_state = expected_state
        deadline = time.monotonic() + timeout
        try:
            while server.outcome is None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                server.timeout = remaining
                server.connection_timeout = min(CALLBACK_CONNECTION_TIMEOUT_SECONDS, remaining)
                server.handle_request()
        finally:
            self.close()

        outcome = server.outcome
        if outcome is None:
            raise AuthenticationFailed("timeout")
        if isinstance(outcome, CalendarError):
            raise outcome
        return outcome

    async def wait_for_code_async(
        self,
        expected_state: str | None = None,
        timeout: float = CALLBACK_TIMEOUT_SECONDS,
    ) -> str:
        return await asyncio.to_thread(self.wait_for_code, expected_state, timeout)

    def close(self) -> None:
        self._server.server_close()


def open_browser(url: str, opener: BrowserOpener | None = None) -> None:
    """Open *url* in the default browser; failure is fatal for the flow."""
    launch = opener or webbrowser.open
    try:
        opened = launch(url)
    except webbrowser.Error as exc:
        raise AuthenticationFailed(f"failed to open browser: {exc}") from exc
    if not opened:
        raise AuthenticationFailed("failed to open browser")


# ---------------------------------------------------------------------------
# Token state
# ---------------------------------------------------------------------------


def coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def format_expiry(value: datetime) -> str:
    """RFC3339 rendering used for the ``token_expiry`` keychain field."""
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_expiry(value: str | None) -> datetime | None:
    if not value:
        return None
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        logger.warning("Ignoring unparseable stored token expiry %r", value)
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


@dataclass
class TokenResponse:
    access_token: str
    refresh_token: str | None
    expires_in: int
    id_token: str | None = None


def parse_token_response(payload: dict[str, Any], *, context: str) -> TokenResponse:
    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token.strip():
        raise DeserializationError(f"{context}: response is missing a non-empty access_token")

    refresh_token = payload.get("refresh_token")
    if not isinstance(refresh_token, str) or not refresh_token.strip():
        refresh_token = None

    id_token = payload.get("id_token")
    if not isinstance(id_token, str) or not id_token.strip():
        id_token = None

    return TokenResponse(
        access_token=access_token.strip(),
        refresh_token=refresh_token.strip() if refresh_token else None,
        expires_in=coerce_expires_in_seconds(payload.get("expires_in")),
        id_token=id_token,
    )


@dataclass
class OAuthTokens:
    """In-memory token material owned by one provider instance."""

    access_token: str | None = None
    refresh_token: str | None = field(default=None, repr=False)
    expires_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"OAuthTokens(access_token={'<set>' if self.access_token else None}, "
            f"refresh_token={'<set>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at!r})"
        )

    def is_valid(self, now: datetime | None = None) -> bool:
        """Valid only with an access token and an expiry more than 60s away."""
        if self.access_token is None or self.expires_at is None:
            return False
        current = now or datetime.now(UTC)
        return current < self.expires_at - TOKEN_EXPIRY_MARGIN

    def apply(self, response: TokenResponse, now: datetime | None = None) -> None:
        """Adopt a token endpoint response, keeping the old refresh token if none came back."""
        current = now or datetime.now(UTC)
        self.access_token = response.access_token
        if response.refresh_token:
            self.refresh_token = response.refresh_token
        self.expires_at = current + timedelta(seconds=response.expires_in)

    def require_access_token(self) -> str:
        if self.access_token is None:
            raise NotAuthenticated()
        return self.access_token


# ---------------------------------------------------------------------------
# Base class for web providers
# ---------------------------------------------------------------------------


class OAuthCalendarProvider(CalendarProvider):
    """Shared plumbing for OAuth2 PKCE calendar providers.

    Owns the HTTP client, the token state and the authorization sequence.
    Subclasses supply the endpoints, the authorization URL and the identity
    lookup, and decide how token fields are keyed in the credential store.
    """

    token_url: str = ""
    callback_ports: tuple[int, ...] = ()
    callback_path = "/"
    redirect_host = LOOPBACK_HOST
    uses_state = False

    def __init__(
        self,
        client_id: str,
        credential_store: CredentialStore,
        *,
        http_client: httpx.AsyncClient | None = None,
        browser_opener: BrowserOpener | None = None,
        callback_ports: Iterable[int] | None = None,
        callback_timeout: float = CALLBACK_TIMEOUT_SECONDS,
    ) -> None:
        self._client_id = client_id.strip()
        self._credentials = credential_store
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT_SECONDS)
        self._browser_opener = browser_opener
        if callback_ports is not None:
            self.callback_ports = tuple(callback_ports)
        self._callback_timeout = callback_timeout
        self._tokens = OAuthTokens()
        self._account_identity: str | None = None

    @property
    def tokens(self) -> OAuthTokens:
        return self._tokens

    @property
    def account_identity(self) -> str | None:
        return self._account_identity

    @property
    def provider_id(self) -> str:
        return f"{self.provider_type}-{self._account_identity or 'unknown'}"

    def token_is_valid(self) -> bool:
        return self._tokens.is_valid()

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # -- hooks -----------------------------------------------------------

    def build_authorization_url(self, attempt: AuthAttempt) -> str:
        raise NotImplementedError

    def _extra_token_params(self) -> dict[str, str]:
        return {}

    async def _resolve_identity(self, response: TokenResponse) -> str:
        raise NotImplementedError

    def _token_key(self, field_name: str) -> str:
        return field_name

    # -- authorization ---------------------------------------------------

    async def authenticate(self) -> None:
        """Run the full browser authorization and persist the resulting tokens.

        Every failure surfaces as :class:`AuthenticationFailed` (or one of its
        subclasses). Calling again always starts a fresh attempt.
        """
        if not self._client_id:
            raise AuthenticationFailed(
                f"{self.provider_type} client id is not configured; "
                f"set providers.{self.provider_type}.client_id"
            )

        attempt = AuthAttempt.start(str(self.provider_type), with_state=self.uses_state)
        try:
            code = await self._await_authorization_code(attempt)
            attempt.advance(AuthPhase.CODE_RECEIVED)

            response = await self._exchange_code(attempt, code)
            attempt.advance(AuthPhase.TOKEN_EXCHANGED)

            identity = await self._resolve_identity(response)
            attempt.advance(AuthPhase.IDENTITY_RESOLVED)

            self._tokens.apply(response)
            self._account_identity = identity
            await self._persist_tokens()
            attempt.advance(AuthPhase.PERSISTED)
        except AuthenticationFailed as exc:
            attempt.fail(str(exc))
            raise
        except CalendarError as exc:
            attempt.fail(str(exc))
            raise AuthenticationFailed(exc.reason or str(exc)) from exc

        logger.info("Authenticated %s", self.provider_id)

    async def _await_authorization_code(self, attempt: AuthAttempt) -> str:
        listener = CallbackListener.bind(self.callback_ports, self.callback_path)
        attempt.redirect_uri = listener.redirect_uri(self.redirect_host)
        try:
            open_browser(self.build_authorization_url(attempt), self._browser_opener)
        except CalendarError:
            listener.close()
            raise
        attempt.advance(AuthPhase.BROWSER_OPENED)
        attempt.advance(AuthPhase.AWAITING_CALLBACK)
        return await listener.wait_for_code_async(attempt.state, self._callback_timeout)

    async def _exchange_code(self, attempt: AuthAttempt, code: str) -> TokenResponse:
        data = {
            "client_id": self._client_id,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": attempt.require_redirect_uri(),
            "code_verifier": attempt.verifier,
            **self._extra_token_params(),
        }
        return await self._post_token_form(
            data,
            context=f"{self.provider_type} token exchange",
            error_cls=AuthenticationFailed,
        )

    # -- refresh ---------------------------------------------------------

    async def refresh_token(self) -> None:
        """Trade the held refresh token for a new access token and persist it.

        A missing or rejected refresh token raises :class:`TokenRefreshFailed`;
        the account must then be re-authenticated.
        """
        refresh = self._tokens.refresh_token
        if not refresh:
            raise TokenRefreshFailed("no refresh token held; re-authentication required")

        data = {
            "client_id": self._client_id,
            "grant_type": "refresh_token",
            "refresh_token": refresh,
            **self._extra_token_params(),
        }
        response = await self._post_token_form(
            data,
            context=f"{self.provider_type} token refresh",
            error_cls=TokenRefreshFailed,
        )
        self._tokens.apply(response)
        await self._persist_tokens()
        logger.debug("Refreshed access token for %s", self.provider_id)

    async def _post_token_form(
        self,
        data: dict[str, str],
        *,
        context: str,
        error_cls: type[CalendarError],
    ) -> TokenResponse:
        response = await send_with_backoff(
            self._http_client,
            "POST",
            self.token_url,
            context=context,
            data=data,
            headers={"Accept": "application/json"},
        )
        if not is_success(response):
            raise error_cls(f"{context} ({response.status_code}): {safe_error_message(response)}")
        payload = json_object(response, context=context)
        return parse_token_response(payload, context=context)

    # -- persistence -----------------------------------------------------

    async def _persist_tokens(self) -> None:
        tokens = self._tokens
        if tokens.access_token is not None:
            await self._credentials.store(self._token_key(ACCESS_TOKEN), tokens.access_token)
        if tokens.refresh_token is not None:
            await self._credentials.store(self._token_key(REFRESH_TOKEN), tokens.refresh_token)
        if tokens.expires_at is not None:
            await self._credentials.store(
                self._token_key(TOKEN_EXPIRY), format_expiry(tokens.expires_at)
            )

    async def _load_tokens(self) -> None:
        self._tokens = OAuthTokens(
            access_token=await self._credentials.load(self._token_key(ACCESS_TOKEN)),
            refresh_token=await self._credentials.load(self._token_key(REFRESH_TOKEN)),
            expires_at=parse_expiry(await self._credentials.load(self._token_key(TOKEN_EXPIRY))),
        )

    async def forget_tokens(self) -> None:
        """Drop token material from memory and from the credential store."""
        await self._credentials.delete_many(self._token_key(name) for name in TOKEN_FIELDS)
        self._tokens = OAuthTokens()
