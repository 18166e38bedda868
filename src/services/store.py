"""Shared lock/cache store client.

One ``KeyValueStore`` per process, initialized at startup and shared by the
lock coordinator, dedup cache, cursor store and event publisher.

``LOCK_STORE_BACKEND=memory`` swaps Redis for the in-process store — only
safe when a single worker process runs.
"""

from __future__ import annotations

import logging

from src.config import Settings, get_settings
from src.coordinator.store import InMemoryStore, KeyValueStore, RedisStore

logger = logging.getLogger("gatewaysync.store")

# Module-level store, initialized once at app startup
_store: KeyValueStore | None = None


async def init_store(settings: Settings | None = None) -> KeyValueStore:
    """Create the shared store client. Call once at app startup."""
    global _store
    s = settings or get_settings()
    if s.lock_store_backend == "memory":
        logger.warning("Using in-memory lock store: locks do not span processes")
        _store = InMemoryStore()
    else:
        _store = RedisStore.from_url(s.redis_url, key_prefix=s.redis_key_prefix)
        if not await _store.ping():
            logger.warning("Redis not reachable at startup; ticks will be skipped until it is")
    return _store


async def close_store() -> None:
    """Close the store. Call at app shutdown."""
    global _store
    if _store is not None:
        await _store.close()
        _store = None
        logger.info("Store closed")
