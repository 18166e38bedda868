"""Deduplication cache for message sync.

Prevents writing the same message twice when sync passes re-fetch an
overlapping window (e.g. after a failed batch the next tick replays from the
unchanged cursor).

Dedup keys:
    dedup:{scope}:{direction}:{message_id}  — one key per message, with TTL

Entries expire after ``ttl_seconds``.  After expiry a very old message could
in theory be written again; sinks are expected to tolerate a duplicate
write (postgres upserts, the file sink de-duplicates on read, webhook
receivers get an idempotency key).
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections import OrderedDict
from typing import Iterable

from src.coordinator.base import Direction, Message
from src.coordinator.store import KeyValueStore

logger = logging.getLogger("gatewaysync.coordinator.dedup")

DEFAULT_TTL_SECONDS = 7 * 24 * 3600


def dedup_key(scope: str, direction: Direction, message_id: str) -> str:
    """Generate the dedup key for one message.

    Args:
        scope:      Scope identifier.
        direction:  Message direction.
        message_id: Stable identifier from the source system.

    Returns:
        Colon-separated dedup key string.
    """
    return f"dedup:{scope}:{Direction(direction).value}:{message_id}"


def payload_content_hash(payload: object) -> str:
    """Compute a content hash for detecting identical payloads.

    Args:
        payload: Any JSON-serializable value.

    Returns:
        SHA-256 hex digest of the canonicalized JSON.
    """
    # Sort keys for deterministic serialization
    canonical = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def group_by_direction(messages: Iterable[Message]) -> "OrderedDict[Direction, list[Message]]":
    """Split a batch by direction, preserving the relative order within each."""
    groups: OrderedDict[Direction, list[Message]] = OrderedDict()
    for message in messages:
        groups.setdefault(message.direction, []).append(message)
    return groups


class DedupCache:
    """Store-backed record of messages already written, per scope and direction.

    Shared by every pass and every process, but only mutated by the process
    holding the scope lock.

    Usage::

        cache = DedupCache(store, ttl_seconds=604800)
        unseen = await cache.filter_unseen("dev-1", Direction.INBOUND, batch)
        await sink.write(unseen)
        await cache.mark_seen("dev-1", Direction.INBOUND, unseen)
    """

    def __init__(self, store: KeyValueStore, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        self._store = store
        self._ttl = ttl_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    async def filter_unseen(
        self, scope: str, direction: Direction, messages: list[Message]
    ) -> list[Message]:
        """Return only the messages not yet marked seen for (scope, direction).

        Order is preserved.  Duplicate ids within ``messages`` collapse to
        their first occurrence.

        Raises:
            StoreUnavailableError: If the store cannot be reached.
        """
        if not messages:
            return []
        keys = [dedup_key(scope, direction, m.message_id) for m in messages]
        present = await self._store.exists_many(keys)

        unseen: list[Message] = []
        batch_ids: set[str] = set()
        for message, seen in zip(messages, present):
            if seen or message.message_id in batch_ids:
                logger.debug("Skipping duplicate: %s/%s/%s", scope, direction.value, message.message_id)
                continue
            batch_ids.add(message.message_id)
            unseen.append(message)
        return unseen

    async def mark_seen(
        self, scope: str, direction: Direction, messages: list[Message]
    ) -> None:
        """Record messages as processed.  Idempotent: re-marking refreshes the TTL.

        Raises:
            StoreUnavailableError: If the store cannot be reached.
        """
        if not messages:
            return
        keys = [dedup_key(scope, direction, m.message_id) for m in messages]
        await self._store.set_many(keys, "1", self._ttl)
        logger.debug("Marked %d %s messages seen for %s", len(keys), direction.value, scope)

    async def is_seen(self, scope: str, direction: Direction, message_id: str) -> bool:
        """Return True if this message id has been marked seen."""
        [seen] = await self._store.exists_many([dedup_key(scope, direction, message_id)])
        return seen

    # ------------------------------------------------------------------
    # Mixed-direction batches
    # ------------------------------------------------------------------

    async def filter_batch(self, scope: str, messages: list[Message]) -> list[Message]:
        """``filter_unseen`` over a mixed-direction batch, keeping fetch order."""
        keep: set[tuple[Direction, str]] = set()
        for direction, group in group_by_direction(messages).items():
            for message in await self.filter_unseen(scope, direction, group):
                keep.add((direction, message.message_id))

        unseen: list[Message] = []
        for message in messages:
            ident = (message.direction, message.message_id)
            if ident in keep:
                keep.discard(ident)
                unseen.append(message)
        return unseen

    async def mark_batch_seen(self, scope: str, messages: list[Message]) -> None:
        """``mark_seen`` over a mixed-direction batch."""
        for direction, group in group_by_direction(messages).items():
            await self.mark_seen(scope, direction, group)
