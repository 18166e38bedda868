"""Gateway session API client.

Reads message history for one scope (device) from the gateway's HTTP API.

Environment variables:
    SESSION_API_URL      — Gateway base URL
    SESSION_API_KEY      — API key sent as X-API-Key (optional)
    SESSION_API_TIMEOUT_S — Per-request timeout

Endpoint used:
    GET /api/devices/{scope}/messages?since={cursor}&limit={n}

Expected response::

    {"messages": [
        {"id": "3EB0C1", "direction": "in", "cursor": 1718000000123,
         "timestamp": "2024-06-10T06:13:20Z", "from": "...", "body": "..."},
        ...
    ]}

Messages must be ordered by cursor ascending.  ``cursor`` falls back to
``timestamp`` (epoch milliseconds) when the gateway does not expose offsets.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from src.coordinator.base import Direction, Message, MessageFetcher
from src.coordinator.errors import FetchPermanentError, FetchTransientError

logger = logging.getLogger("gatewaysync.coordinator.fetcher")

# Envelope fields lifted onto Message; everything else stays in the payload.
_ENVELOPE_FIELDS = frozenset({"id", "messageId", "direction", "cursor", "scope"})


def _parse_timestamp(value: Any) -> datetime | None:
    """Parse epoch seconds / milliseconds or an ISO-8601 string to UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 10**11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_message(scope: str, raw: dict) -> Message:
    """Convert one API record to a ``Message``.

    This is a pure function — no I/O.

    Raises:
        FetchPermanentError: If the record lacks an id, direction or cursor.
    """
    if not isinstance(raw, dict):
        raise FetchPermanentError("Message record is not an object", context={"scope": scope})

    message_id = raw.get("id") or raw.get("messageId")
    if not message_id:
        raise FetchPermanentError("Message record has no id", context={"scope": scope})

    try:
        direction = Direction.parse(raw.get("direction", ""))
    except ValueError as exc:
        raise FetchPermanentError(
            str(exc), context={"scope": scope, "message_id": message_id}
        ) from exc

    observed_at = _parse_timestamp(raw.get("timestamp"))
    cursor_value = raw.get("cursor")
    if cursor_value is None and observed_at is not None:
        cursor_value = int(observed_at.timestamp() * 1000)
    try:
        cursor = int(cursor_value)
    except (TypeError, ValueError) as exc:
        raise FetchPermanentError(
            "Message record has no usable cursor",
            context={"scope": scope, "message_id": message_id},
        ) from exc

    payload = {k: v for k, v in raw.items() if k not in _ENVELOPE_FIELDS}
    return Message(
        message_id=str(message_id),
        scope=scope,
        direction=direction,
        cursor=cursor,
        payload=payload,
        observed_at=observed_at or datetime.now(timezone.utc),
    )


def classify_status(status_code: int) -> type[FetchTransientError] | type[FetchPermanentError]:
    """429 and 5xx are worth retrying; every other error status is not."""
    if status_code == 429 or status_code >= 500:
        return FetchTransientError
    return FetchPermanentError


class HttpMessageFetcher(MessageFetcher):
    """``MessageFetcher`` over the gateway HTTP API."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout_s: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the fetcher.

        Args:
            base_url:    Gateway base URL (SESSION_API_URL).
            api_key:     Optional API key (SESSION_API_KEY).
            timeout_s:   Request timeout in seconds.
            http_client: Optional pre-configured httpx client (for testing).
        """
        headers = {"Accept": "application/json"}
        if api_key:
            headers["X-API-Key"] = api_key
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout_s,
        )

    async def fetch_messages(
        self, scope: str, since_cursor: int, limit: int
    ) -> list[Message]:
        try:
            response = await self._client.get(
                f"/api/devices/{scope}/messages",
                params={"since": since_cursor, "limit": limit},
            )
        except httpx.TimeoutException as exc:
            raise FetchTransientError("Session API timed out", context={"scope": scope}) from exc
        except httpx.TransportError as exc:
            raise FetchTransientError(
                f"Session API unreachable: {exc}", context={"scope": scope}
            ) from exc

        if response.status_code >= 400:
            error_cls = classify_status(response.status_code)
            raise error_cls(
                f"Session API returned {response.status_code}",
                context={"scope": scope},
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise FetchPermanentError(
                "Session API returned invalid JSON", context={"scope": scope}
            ) from exc

        records = body.get("messages") if isinstance(body, dict) else body
        if not isinstance(records, list):
            raise FetchPermanentError(
                "Session API response has no message list", context={"scope": scope}
            )

        messages = [parse_message(scope, r) for r in records[:limit]]
        messages.sort(key=lambda m: m.cursor)
        logger.debug(
            "Fetched %d messages for %s since %d", len(messages), scope, since_cursor
        )
        return messages

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
