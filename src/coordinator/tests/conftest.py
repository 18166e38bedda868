"""Shared fixtures and fakes for sync coordinator tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from src.coordinator.base import Direction, Message, MessageFetcher
from src.coordinator.cursor import CursorStore
from src.coordinator.dedup import DedupCache
from src.coordinator.errors import StoreUnavailableError
from src.coordinator.lock import LockCoordinator
from src.coordinator.scheduler import SchedulerConfig, SyncScheduler
from src.coordinator.sinks.base import SinkAdapter, WriteAck
from src.coordinator.store import InMemoryStore, KeyValueStore

# Canonical test scopes
TEST_SCOPE = "dev-1"
OTHER_SCOPE = "dev-2"
BASE_TIME = 1_718_000_000.0  # epoch seconds
BASE_CURSOR = 1_718_000_000_000  # epoch milliseconds


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_message(
    n: int,
    scope: str = TEST_SCOPE,
    direction: Direction = Direction.INBOUND,
    message_id: str | None = None,
) -> Message:
    """Message number ``n`` with cursor BASE_CURSOR + n seconds."""
    cursor = BASE_CURSOR + n * 1000
    return Message(
        message_id=message_id or f"msg-{n}",
        scope=scope,
        direction=direction,
        cursor=cursor,
        payload={"from": "15550001111@s.whatsapp.net", "body": f"hello {n}"},
        observed_at=datetime.fromtimestamp(cursor / 1000, tz=timezone.utc),
    )


def make_messages(count: int, scope: str = TEST_SCOPE) -> list[Message]:
    return [make_message(n, scope=scope) for n in range(1, count + 1)]


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays without waiting."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.delays: list[float] = []
        self._clock = clock

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self._clock is not None:
            self._clock.advance(delay)


class FakeFetcher(MessageFetcher):
    """Serves messages with cursor > since, in cursor order.

    ``failures`` is consumed one entry per call; ``None`` means succeed.
    ``on_fetch`` runs before each call (e.g. to advance a clock).
    """

    def __init__(self, messages: list[Message] | None = None) -> None:
        self.messages: list[Message] = list(messages or [])
        self.calls: list[tuple[str, int, int]] = []
        self.failures: list[BaseException | None] = []
        self.on_fetch = None

    async def fetch_messages(self, scope: str, since_cursor: int, limit: int) -> list[Message]:
        self.calls.append((scope, since_cursor, limit))
        if self.on_fetch is not None:
            result = self.on_fetch()
            if asyncio.iscoroutine(result):
                await result
        if self.failures:
            exc = self.failures.pop(0)
            if exc is not None:
                raise exc
        matching = sorted(
            (m for m in self.messages if m.scope == scope and m.cursor > since_cursor),
            key=lambda m: m.cursor,
        )
        return matching[:limit]


class RecordingSink(SinkAdapter):
    """In-memory sink that records every write call.

    ``failures`` is consumed one entry per call; ``None`` means succeed.
    """

    SINK_ID = "recording"

    def __init__(self) -> None:
        self.calls: list[list[Message]] = []
        self.batches: list[list[Message]] = []
        self.failures: list[BaseException | None] = []

    @property
    def written_ids(self) -> list[str]:
        return [m.message_id for batch in self.batches for m in batch]

    async def _write(self, batch: list[Message]) -> WriteAck:
        self.calls.append(list(batch))
        if self.failures:
            exc = self.failures.pop(0)
            if exc is not None:
                raise exc
        self.batches.append(list(batch))
        return WriteAck(count=len(batch), sink=self.SINK_ID)


class UnreachableStore(KeyValueStore):
    """Store whose every operation fails as if Redis were down."""

    async def _fail(self, *args, **kwargs):
        raise StoreUnavailableError("connection refused")

    set_if_absent = _fail
    compare_and_delete = _fail
    compare_and_expire = _fail
    set_cursor_if_owner = _fail
    get = _fail
    set = _fail
    exists_many = _fail
    set_many = _fail
    publish = _fail

    async def ping(self) -> bool:
        return False


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryStore:
    return InMemoryStore(clock=clock)


@pytest.fixture
def recording_sleep(clock: FakeClock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def locks(store: InMemoryStore, clock: FakeClock) -> LockCoordinator:
    return LockCoordinator(store, clock=clock)


@pytest.fixture
def dedup(store: InMemoryStore) -> DedupCache:
    return DedupCache(store, ttl_seconds=3600)


@pytest.fixture
def cursors(store: InMemoryStore) -> CursorStore:
    return CursorStore(store)


@pytest.fixture
def make_scheduler(store, clock, recording_sleep, fetcher, sink):
    """Factory for a scheduler wired to the in-memory fakes."""

    def _make(**overrides) -> SyncScheduler:
        publisher = overrides.pop("publisher", None)
        config = SchedulerConfig(
            scopes=overrides.pop("scopes", [TEST_SCOPE]),
            interval_s=overrides.pop("interval_s", 0.01),
            lease_ms=overrides.pop("lease_ms", 300_000),
            batch_size=overrides.pop("batch_size", 100),
            retry_attempts=overrides.pop("retry_attempts", 3),
            retry_delay_s=overrides.pop("retry_delay_s", 5.0),
            shutdown_timeout_s=overrides.pop("shutdown_timeout_s", 1.0),
        )
        return SyncScheduler(
            config=config,
            locks=LockCoordinator(store, clock=clock),
            dedup=DedupCache(store, ttl_seconds=3600),
            cursors=CursorStore(store),
            fetcher=overrides.pop("fetcher", fetcher),
            sink=overrides.pop("sink", sink),
            publisher=publisher,
            clock=clock,
            sleep=overrides.pop("sleep", recording_sleep),
        )

    return _make
