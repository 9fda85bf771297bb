"""HTTP helpers shared by the web calendar providers.

Wraps httpx calls with the 429/503 backoff policy and maps transport and
payload failures onto the calendar error taxonomy.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from lighttime.calendar.errors import (
    CalendarError,
    DeserializationError,
    NetworkError,
    sanitize_message,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0


async def send_with_backoff(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    context: str,
    **kwargs: Any,
) -> httpx.Response:
    """Send one request, retrying rate-limited responses with exponential backoff.

    ``context`` names the call in error messages (e.g. ``"calendar API request"``).
    Transport failures raise :class:`NetworkError`.
    """
    response = await _send_once(client, method, url, context=context, **kwargs)

    retry = 0
    while response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES:
        backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
        if response.status_code == 429:
            retry_after_header = response.headers.get("Retry-After")
            if retry_after_header is not None:
                try:
                    backoff = float(retry_after_header)
                except ValueError:
                    pass
        logger.warning(
            "%s rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
            context,
            response.status_code,
            backoff,
            retry + 1,
            RATE_LIMIT_MAX_RETRIES,
        )
        await asyncio.sleep(backoff)
        response = await _send_once(client, method, url, context=context, **kwargs)
        retry += 1

    return response


async def _send_once(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    context: str,
    **kwargs: Any,
) -> httpx.Response:
    try:
        return await client.request(method, url, **kwargs)
    except httpx.HTTPError as exc:
        raise NetworkError(f"{context}: {exc}") from exc


def is_success(response: httpx.Response) -> bool:
    return 200 <= response.status_code < 300


def safe_error_message(response: httpx.Response) -> str:
    """Best-effort short error description from an upstream error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        description = payload.get("error_description")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return sanitize_message(message)
        if isinstance(error_payload, str) and error_payload.strip():
            if isinstance(description, str) and description.strip():
                return sanitize_message(f"{error_payload}: {description}")
            return sanitize_message(error_payload)

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_message(raw_text)
    return f"request failed with status {response.status_code} and no error payload"


def json_object(
    response: httpx.Response,
    *,
    context: str,
    error_cls: type[CalendarError] = DeserializationError,
) -> dict[str, Any]:
    """Decode a JSON object body or raise *error_cls*."""
    try:
        payload = response.json()
    except ValueError as exc:
        raise error_cls(f"{context}: response is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise error_cls(f"{context}: expected a JSON object")
    return payload
