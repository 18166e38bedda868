"""Key/value store capability shared by the lock coordinator, dedup cache,
cursor store and event publisher.

Two backends implement ``KeyValueStore``:

    RedisStore     — production backend over ``redis.asyncio``.  Atomic
                     compare-and-delete, compare-and-extend and the fenced
                     cursor write run as Lua scripts.
    InMemoryStore  — single-process backend for local development and tests.
                     Expiry is evaluated against an injectable clock.

Every operation is a point operation; nothing holds a connection across ticks.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from src.coordinator.base import Clock, system_clock
from src.coordinator.errors import StoreUnavailableError

logger = logging.getLogger("gatewaysync.coordinator.store")

# KEYS[1] = lock key, ARGV[1] = owner token
_COMPARE_AND_DELETE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# KEYS[1] = lock key, ARGV[1] = owner token, ARGV[2] = lease in ms
_COMPARE_AND_PEXPIRE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""

# KEYS[1] = cursor record key, KEYS[2] = lock key
# ARGV[1] = record JSON, ARGV[2] = owner token, ARGV[3] = new cursor
_FENCED_CURSOR_SET = """
if redis.call("get", KEYS[2]) ~= ARGV[2] then
    return 0
end
local current = redis.call("get", KEYS[1])
if current then
    local ok, record = pcall(cjson.decode, current)
    if ok and type(record) == "table" then
        local stored = tonumber(record["cursor"])
        if stored and stored > tonumber(ARGV[3]) then
            return 0
        end
    end
end
redis.call("set", KEYS[1], ARGV[1])
return 1
"""


def _stored_cursor(raw: str) -> int | None:
    try:
        return int(json.loads(raw)["cursor"])
    except (ValueError, TypeError, KeyError):
        return None


class KeyValueStore(ABC):
    """Capability interface over the shared lock/cache store."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        """Atomically set ``key`` only if it does not exist.  True on success."""

    @abstractmethod
    async def compare_and_delete(self, key: str, expected: str) -> bool:
        """Delete ``key`` only if its value equals ``expected``."""

    @abstractmethod
    async def compare_and_expire(self, key: str, expected: str, ttl_ms: int) -> bool:
        """Reset the TTL of ``key`` only if its value equals ``expected``."""

    @abstractmethod
    async def set_cursor_if_owner(
        self, key: str, value: str, cursor: int, lock_key: str, token: str
    ) -> bool:
        """Write the cursor record ``value`` to ``key`` as one atomic step.

        The write applies only while ``lock_key`` still holds ``token`` and
        the stored record's ``cursor`` is not greater than ``cursor``.
        Returns False when refused.
        """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the value of ``key`` or None."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_s: int | None = None) -> None:
        """Unconditionally set ``key``."""

    @abstractmethod
    async def exists_many(self, keys: list[str]) -> list[bool]:
        """Presence of each key, in input order."""

    @abstractmethod
    async def set_many(self, keys: list[str], value: str, ttl_s: int) -> None:
        """Set every key to ``value`` with the same TTL."""

    @abstractmethod
    async def publish(self, channel: str, message: str) -> int:
        """Publish to a pub/sub channel; returns the receiver count."""

    @abstractmethod
    async def ping(self) -> bool:
        """Connectivity probe."""

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisStore(KeyValueStore):
    """``KeyValueStore`` over a Redis server.

    Usage::

        store = RedisStore.from_url("redis://localhost:6379/0", key_prefix="gw:")
        ok = await store.set_if_absent("lock:dev-1", token, 300_000)
        await store.close()

    All ``RedisError`` failures surface as ``StoreUnavailableError``.
    """

    def __init__(self, client: aioredis.Redis, key_prefix: str = "") -> None:
        self._client = client
        self._prefix = key_prefix
        self._cad = client.register_script(_COMPARE_AND_DELETE)
        self._cae = client.register_script(_COMPARE_AND_PEXPIRE)
        self._fcs = client.register_script(_FENCED_CURSOR_SET)

    @classmethod
    def from_url(
        cls,
        url: str,
        key_prefix: str = "",
        socket_timeout: float = 5.0,
    ) -> "RedisStore":
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        logger.info("Initializing Redis store (prefix=%r)", key_prefix)
        return cls(client, key_prefix=key_prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        try:
            result = await self._client.set(self._key(key), value, nx=True, px=ttl_ms)
        except RedisError as exc:
            raise StoreUnavailableError("SET NX failed", context={"key": key}) from exc
        return bool(result)

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        try:
            result = await self._cad(keys=[self._key(key)], args=[expected])
        except RedisError as exc:
            raise StoreUnavailableError(
                "compare-and-delete failed", context={"key": key}
            ) from exc
        return int(result) == 1

    async def compare_and_expire(self, key: str, expected: str, ttl_ms: int) -> bool:
        try:
            result = await self._cae(keys=[self._key(key)], args=[expected, ttl_ms])
        except RedisError as exc:
            raise StoreUnavailableError(
                "compare-and-expire failed", context={"key": key}
            ) from exc
        return int(result) == 1

    async def set_cursor_if_owner(
        self, key: str, value: str, cursor: int, lock_key: str, token: str
    ) -> bool:
        try:
            result = await self._fcs(
                keys=[self._key(key), self._key(lock_key)], args=[value, token, cursor]
            )
        except RedisError as exc:
            raise StoreUnavailableError(
                "fenced cursor write failed", context={"key": key}
            ) from exc
        return int(result) == 1

    async def get(self, key: str) -> str | None:
        try:
            return await self._client.get(self._key(key))
        except RedisError as exc:
            raise StoreUnavailableError("GET failed", context={"key": key}) from exc

    async def set(self, key: str, value: str, ttl_s: int | None = None) -> None:
        try:
            await self._client.set(self._key(key), value, ex=ttl_s)
        except RedisError as exc:
            raise StoreUnavailableError("SET failed", context={"key": key}) from exc

    async def exists_many(self, keys: list[str]) -> list[bool]:
        if not keys:
            return []
        try:
            async with self._client.pipeline(transaction=False) as pipe:
                for key in keys:
                    pipe.exists(self._key(key))
                results = await pipe.execute()
        except RedisError as exc:
            raise StoreUnavailableError(
                "EXISTS pipeline failed", context={"keys": len(keys)}
            ) from exc
        return [bool(r) for r in results]

    async def set_many(self, keys: list[str], value: str, ttl_s: int) -> None:
        if not keys:
            return
        try:
            async with self._client.pipeline(transaction=False) as pipe:
                for key in keys:
                    pipe.set(self._key(key), value, ex=ttl_s)
                await pipe.execute()
        except RedisError as exc:
            raise StoreUnavailableError(
                "SET pipeline failed", context={"keys": len(keys)}
            ) from exc

    async def publish(self, channel: str, message: str) -> int:
        try:
            return int(await self._client.publish(self._key(channel), message))
        except RedisError as exc:
            raise StoreUnavailableError(
                "PUBLISH failed", context={"channel": channel}
            ) from exc

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as exc:
            logger.warning("Redis ping failed: %s", exc)
            return False

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Redis store closed")


# ---------------------------------------------------------------------------
# In-process backend
# ---------------------------------------------------------------------------


class InMemoryStore(KeyValueStore):
    """Single-process ``KeyValueStore``.

    Not a replacement for Redis when more than one process runs — the lock
    only excludes coroutines sharing this instance.  Each method completes
    without awaiting, so operations are atomic with respect to other
    coroutines on the same event loop.

    Usage::

        store = InMemoryStore()
        await store.set_if_absent("lock:dev-1", "token-a", 5_000)
    """

    def __init__(self, clock: Clock = system_clock) -> None:
        self._clock = clock
        # key -> (value, expires_at epoch seconds or None)
        self._data: dict[str, tuple[str, float | None]] = {}
        self._subscribers: dict[str, list[asyncio.Queue]] = defaultdict(list)

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def _expiry(self, ttl_ms: float | None) -> float | None:
        if ttl_ms is None:
            return None
        return self._clock() + ttl_ms / 1000.0

    def ttl_ms(self, key: str) -> float | None:
        """Remaining TTL in milliseconds (None if missing or persistent)."""
        if self._live(key) is None:
            return None
        expires_at = self._data[key][1]
        if expires_at is None:
            return None
        return (expires_at - self._clock()) * 1000.0

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        if self._live(key) is not None:
            return False
        self._data[key] = (value, self._expiry(ttl_ms))
        return True

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        if self._live(key) != expected:
            return False
        del self._data[key]
        return True

    async def compare_and_expire(self, key: str, expected: str, ttl_ms: int) -> bool:
        if self._live(key) != expected:
            return False
        self._data[key] = (expected, self._expiry(ttl_ms))
        return True

    async def set_cursor_if_owner(
        self, key: str, value: str, cursor: int, lock_key: str, token: str
    ) -> bool:
        if self._live(lock_key) != token:
            return False
        current = self._live(key)
        if current is not None:
            stored = _stored_cursor(current)
            if stored is not None and stored > cursor:
                return False
        self._data[key] = (value, None)
        return True

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def set(self, key: str, value: str, ttl_s: int | None = None) -> None:
        self._data[key] = (value, self._expiry(ttl_s * 1000 if ttl_s else None))

    async def exists_many(self, keys: list[str]) -> list[bool]:
        return [self._live(k) is not None for k in keys]

    async def set_many(self, keys: list[str], value: str, ttl_s: int) -> None:
        expires_at = self._expiry(ttl_s * 1000)
        for key in keys:
            self._data[key] = (value, expires_at)

    def subscribe(self, channel: str) -> asyncio.Queue:
        """Return a queue that receives every message published on ``channel``."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers[channel].append(queue)
        return queue

    async def publish(self, channel: str, message: str) -> int:
        receivers = self._subscribers.get(channel, [])
        for queue in receivers:
            queue.put_nowait(message)
        return len(receivers)

    async def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        return sum(1 for k in list(self._data) if self._live(k) is not None)
