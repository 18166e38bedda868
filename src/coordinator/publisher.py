"""Best-effort notifications for the real-time fan-out layer.

After a batch is durably written, one event per message is published so the
externally-owned socket layer can push it to connected clients.  Publishing is
a side channel: a failure is logged and counted, never raised into the pass.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod

from src.coordinator import metrics
from src.coordinator.base import Message
from src.coordinator.store import KeyValueStore

logger = logging.getLogger("gatewaysync.coordinator.publisher")


class EventPublisher(ABC):
    """Notification egress."""

    @abstractmethod
    async def _send(self, message: Message) -> None:
        """Deliver one notification.  May raise; ``publish`` contains it."""

    async def publish(self, message: Message) -> bool:
        """Publish a message-level event.  Returns False on failure, never raises."""
        try:
            await self._send(message)
            return True
        except Exception as exc:
            # Side channel: nothing raised here may reach the pass.
            logger.warning(
                "Failed to publish sync event for %s/%s: %s",
                message.scope, message.message_id, exc,
            )
            metrics.PUBLISH_FAILURES.labels(scope=message.scope).inc()
            return False

    async def publish_all(self, messages: list[Message]) -> int:
        """Publish each message in order; returns the number delivered."""
        delivered = 0
        for message in messages:
            if await self.publish(message):
                delivered += 1
        return delivered


class StoreEventPublisher(EventPublisher):
    """Publish events on the shared store's pub/sub, one channel per scope.

    Channel: ``{prefix}:{scope}``; body: JSON with ``event`` = ``message.synced``.
    """

    def __init__(self, store: KeyValueStore, channel_prefix: str = "sync:messages") -> None:
        self._store = store
        self._prefix = channel_prefix

    def channel(self, scope: str) -> str:
        return f"{self._prefix}:{scope}"

    async def _send(self, message: Message) -> None:
        body = json.dumps({"event": "message.synced", "message": message.to_record()}, default=str)
        receivers = await self._store.publish(self.channel(message.scope), body)
        logger.debug(
            "Published %s to %s (%d receivers)",
            message.message_id, self.channel(message.scope), receivers,
        )


class NullEventPublisher(EventPublisher):
    """Used when notifications are disabled."""

    async def _send(self, message: Message) -> None:
        return None
