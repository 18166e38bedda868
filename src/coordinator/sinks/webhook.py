"""Webhook sink — one POST per batch, at-least-once.

Request body::

    {"scope": "dev-1", "count": 2, "timestamp": "...Z",
     "messages": [{"id": ..., "direction": "in", ...}, ...]}

Headers:
    Idempotency-Key   — SHA-256 over the batch's (scope, direction, id)
                        triples.  A replayed batch carries the same key, so
                        the receiver can drop it.  The sink itself cannot
                        enforce this.
    X-Sync-Signature  — ``sha256=<hex>`` HMAC of the body, when
                        SYNC_WEBHOOK_SECRET is set.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone

import httpx

from src.coordinator.base import Message
from src.coordinator.dedup import payload_content_hash
from src.coordinator.errors import WritePermanentError, WriteTransientError
from src.coordinator.sinks.base import SinkAdapter, WriteAck

logger = logging.getLogger("gatewaysync.coordinator.sinks.webhook")


def batch_idempotency_key(batch: list[Message]) -> str:
    return payload_content_hash(
        [[m.scope, m.direction.value, m.message_id] for m in batch]
    )


def sign_body(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookSink(SinkAdapter):
    """POST batches to an HTTP endpoint."""

    SINK_ID = "webhook"

    def __init__(
        self,
        url: str,
        secret: str | None = None,
        timeout_s: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the sink.

        Args:
            url:         Endpoint URL (SYNC_WEBHOOK_URL).
            secret:      Optional HMAC signing secret.
            timeout_s:   Request timeout in seconds.
            http_client: Optional pre-configured httpx client (for testing).
        """
        self._url = url
        self._secret = secret
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout_s)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def build_request_body(self, batch: list[Message]) -> bytes:
        payload = {
            "scope": batch[0].scope,
            "messages": [m.to_record() for m in batch],
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "count": len(batch),
        }
        try:
            return json.dumps(payload, default=str).encode()
        except (TypeError, ValueError) as exc:
            raise WritePermanentError(f"Batch is not serializable: {exc}") from exc

    async def _write(self, batch: list[Message]) -> WriteAck:
        body = self.build_request_body(batch)
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": batch_idempotency_key(batch),
        }
        if self._secret:
            headers["X-Sync-Signature"] = sign_body(self._secret, body)

        try:
            response = await self._client.post(self._url, content=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise WriteTransientError("Webhook timed out", context={"url": self._url}) from exc
        except httpx.TransportError as exc:
            raise WriteTransientError(
                f"Webhook unreachable: {exc}", context={"url": self._url}
            ) from exc

        status = response.status_code
        if status == 429 or status >= 500:
            raise WriteTransientError(
                f"Webhook returned {status}", context={"url": self._url}
            )
        if status >= 400:
            raise WritePermanentError(
                f"Webhook rejected batch with {status}", context={"url": self._url}
            )

        logger.info("[webhook] Sent %d messages to %s, response: %d", len(batch), self._url, status)
        return WriteAck(count=len(batch), sink=self.SINK_ID, detail=str(status))
