"""Failure taxonomy shared by calendar providers and the aggregator.

Every provider operation raises a subclass of :class:`CalendarError`. The
aggregator downgrades these to ``(provider_id, error)`` data entries during a
fetch; connect/refresh paths triggered by a user let them propagate.
"""

from __future__ import annotations

import re
from enum import StrEnum

_MAX_MESSAGE_LENGTH = 200


class ErrorKind(StrEnum):
    """Closed set of failure kinds."""

    AUTHENTICATION_FAILED = "authentication_failed"
    TOKEN_REFRESH_FAILED = "token_refresh_failed"
    FETCH_FAILED = "fetch_failed"
    NOT_AUTHENTICATED = "not_authenticated"
    NETWORK_ERROR = "network_error"
    DESERIALIZATION_ERROR = "deserialization_error"
    PROVIDER_ERROR = "provider_error"


class CalendarError(Exception):
    """Base error for every calendar provider failure."""

    kind: ErrorKind = ErrorKind.PROVIDER_ERROR
    _prefix = "calendar error"

    def __init__(self, reason: str = "") -> None:
        self.reason = reason
        super().__init__(f"{self._prefix}: {reason}" if reason else self._prefix)


class AuthenticationFailed(CalendarError):
    """User denial, network failure or malformed response during authentication."""

    kind = ErrorKind.AUTHENTICATION_FAILED
    _prefix = "authentication failed"


class ConsentDenied(AuthenticationFailed):
    """The identity provider redirected back with an ``error`` parameter."""


class CallbackStateMismatch(AuthenticationFailed):
    """The ``state`` nonce on the OAuth callback did not match the one we sent."""


class TokenRefreshFailed(CalendarError):
    """Refresh credential missing or rejected; re-authentication is required."""

    kind = ErrorKind.TOKEN_REFRESH_FAILED
    _prefix = "token refresh failed"


class UnauthorizedError(TokenRefreshFailed):
    """Upstream rejected the access token (HTTP 401).

    Callers refresh once and retry the same fetch before surfacing this.
    """


class FetchFailed(CalendarError):
    """Upstream answered a fetch with a non-success response."""

    kind = ErrorKind.FETCH_FAILED
    _prefix = "failed to fetch events"


class NotAuthenticated(CalendarError):
    """No access credential is held."""

    kind = ErrorKind.NOT_AUTHENTICATED
    _prefix = "provider not authenticated"


class NetworkError(CalendarError):
    kind = ErrorKind.NETWORK_ERROR
    _prefix = "network error"


class DeserializationError(CalendarError):
    kind = ErrorKind.DESERIALIZATION_ERROR
    _prefix = "deserialization error"


class ProviderError(CalendarError):
    """Catch-all for credential store and other provider-internal failures."""

    kind = ErrorKind.PROVIDER_ERROR

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        self.message = message
        self.reason = message
        Exception.__init__(self, f"provider error ({provider}): {message}")


def redact_credential_values(message: str) -> str:
    """Redact token-like values from a message before it is logged or stored."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|id_token|code_verifier|code)"
        r"\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|id_token)['"]?\s*:\s*)"""
        r"""(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    return redacted


def sanitize_message(message: str) -> str:
    """Redact, collapse whitespace and truncate an upstream error message."""
    return " ".join(redact_credential_values(message).split())[:_MAX_MESSAGE_LENGTH]
