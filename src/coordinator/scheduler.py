"""Background sync scheduler for gateway message scopes.

Manages one recurring loop per scope and coordinates the sync workflow:
1. Acquire the scope lock (skip the tick if Busy)
2. Load the scope cursor
3. Fetch the next batch from the session API (retried)
4. Drop messages already marked seen
5. Write the rest to the sink (retried)
6. Mark them seen, then advance the cursor
7. Publish one event per written message
8. Repeat 3–7 until a short batch, then release the lock

Passes of one scope never overlap within a process (the loop is sequential);
the distributed lock keeps other processes out.  A failing scope never
affects the others.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from src.coordinator import metrics
from src.coordinator.base import (
    Clock,
    LockLease,
    Message,
    MessageFetcher,
    PassOutcome,
    PassState,
    SyncAttempt,
    SyncScope,
    system_clock,
    utc_now,
)
from src.coordinator.cursor import CursorStore
from src.coordinator.dedup import DedupCache, group_by_direction
from src.coordinator.errors import (
    LockLostError,
    StoreUnavailableError,
    SyncError,
)
from src.coordinator.lock import LockCoordinator
from src.coordinator.publisher import EventPublisher, NullEventPublisher
from src.coordinator.retry import Sleep, with_retry
from src.coordinator.sinks.base import SinkAdapter

logger = logging.getLogger("gatewaysync.coordinator.scheduler")

PassListener = Callable[[SyncAttempt], Awaitable[None] | None]


@dataclass
class ScopeStatus:
    """In-memory view of one scope, for status endpoints.

    Attributes:
        scope:            Scope id.
        state:            Current PassState.
        cursor:           Last cursor this process observed.
        consecutive_busy: Ticks skipped in a row because the lock was held.
        last_attempt:     Most recent SyncAttempt (skipped ticks included).
    """

    scope: str
    state: PassState = PassState.IDLE
    cursor: int | None = None
    consecutive_busy: int = 0
    last_attempt: SyncAttempt | None = None

    def to_json(self) -> dict:
        return {
            "scope": self.scope,
            "state": self.state.value,
            "cursor": self.cursor,
            "consecutive_busy": self.consecutive_busy,
            "last_attempt": self.last_attempt.to_json() if self.last_attempt else None,
        }


@dataclass
class SchedulerConfig:
    """Tunables for the scheduler.

    Attributes:
        scopes:         Scope ids to sync.
        interval_s:     Pause between the end of one pass and the next tick.
        lease_ms:       Lock lease duration.
        batch_size:     Max messages per fetch / write.
        retry_attempts: Total attempts per fetch or write.
        retry_delay_s:  Linear backoff unit.
        shutdown_timeout_s: How long ``stop`` waits for in-flight passes.
    """

    scopes: list[str] = field(default_factory=list)
    interval_s: float = 60.0
    lease_ms: int = 300_000
    batch_size: int = 100
    retry_attempts: int = 3
    retry_delay_s: float = 5.0
    shutdown_timeout_s: float = 30.0


class SyncScheduler:
    """Schedule and execute sync passes, one loop per scope.

    Usage::

        scheduler = SyncScheduler(
            config=SchedulerConfig(scopes=["dev-1", "dev-2"]),
            locks=LockCoordinator(store),
            dedup=DedupCache(store),
            cursors=CursorStore(store),
            fetcher=HttpMessageFetcher(settings.session_api_url),
            sink=FileSink("./data"),
        )
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        config: SchedulerConfig,
        locks: LockCoordinator,
        dedup: DedupCache,
        cursors: CursorStore,
        fetcher: MessageFetcher,
        sink: SinkAdapter,
        publisher: EventPublisher | None = None,
        clock: Clock = system_clock,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the scheduler.

        Args:
            config:    Scheduler tunables.
            locks:     Distributed lock coordinator.
            dedup:     Dedup cache.
            cursors:   Scope cursor store.
            fetcher:   Session API client.
            sink:      Downstream sink (already opened).
            publisher: Event publisher; notifications are dropped if None.
            clock:     Epoch-seconds clock used for lease renewal decisions.
            sleep:     Awaitable sleep used for retry backoff.
        """
        self._config = config
        self._locks = locks
        self._dedup = dedup
        self._cursors = cursors
        self._fetcher = fetcher
        self._sink = sink
        self._publisher = publisher or NullEventPublisher()
        self._clock = clock
        self._sleep = sleep
        self.process_id = f"sync-worker-{os.getpid()}-{int(time.time() * 1000)}"

        self._status: dict[str, ScopeStatus] = {s: ScopeStatus(scope=s) for s in config.scopes}
        self._tasks: dict[str, asyncio.Task] = {}
        self._stop_event = asyncio.Event()
        self._listeners: list[PassListener] = []
        self._running = False
        self._started_at: float | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def scopes(self) -> list[str]:
        return list(self._config.scopes)

    def add_listener(self, listener: PassListener) -> None:
        """Register a callback invoked with every finished SyncAttempt."""
        self._listeners.append(listener)

    def start(self) -> None:
        """Spawn one loop task per scope.  Must be called inside a running loop."""
        if self._running:
            logger.warning("SyncScheduler is already running")
            return
        if not self._config.scopes:
            logger.warning("SyncScheduler: no scopes configured, nothing to sync")

        self._running = True
        self._started_at = time.time()
        self._stop_event = asyncio.Event()
        for scope in self._config.scopes:
            self._tasks[scope] = asyncio.create_task(
                self._scope_loop(scope), name=f"sync:{scope}"
            )
        logger.info(
            "SyncScheduler %s started: %d scopes, interval %.1fs",
            self.process_id, len(self._config.scopes), self._config.interval_s,
        )

    async def stop(self) -> None:
        """Stop all scope loops.

        In-flight passes get ``shutdown_timeout_s`` to finish; after that they
        are cancelled, which still releases their locks in ``finally``.
        """
        if not self._running:
            logger.warning("SyncScheduler is not running")
            return
        self._running = False
        self._stop_event.set()

        tasks = list(self._tasks.values())
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self._config.shutdown_timeout_s)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        logger.info("SyncScheduler %s stopped", self.process_id)

    async def _scope_loop(self, scope: str) -> None:
        while self._running:
            await self.run_pass(scope)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._config.interval_s)
            except asyncio.TimeoutError:
                continue

    async def trigger(self, scope: str) -> SyncAttempt:
        """Run one pass for ``scope`` right now (manual sync).

        Raises:
            RuntimeError: If the scheduler is not running.
            KeyError:     If the scope is not configured.
        """
        if not self._running:
            raise RuntimeError("Worker is not running")
        if scope not in self._status:
            raise KeyError(f"Unknown scope '{scope}'. Configured: {self._config.scopes}")
        logger.info("Manual sync triggered for %s", scope)
        return await self.run_pass(scope)

    def status(self) -> dict:
        """Snapshot of the worker and every scope."""
        return {
            "is_running": self._running,
            "process_id": self.process_id,
            "uptime_seconds": (
                round(time.time() - self._started_at, 1)
                if self._running and self._started_at
                else None
            ),
            "config": {
                "interval_s": self._config.interval_s,
                "lease_ms": self._config.lease_ms,
                "batch_size": self._config.batch_size,
                "retry_attempts": self._config.retry_attempts,
                "retry_delay_s": self._config.retry_delay_s,
                "sink": self._sink.SINK_ID,
            },
            "scopes": {s: st.to_json() for s, st in self._status.items()},
        }

    # ------------------------------------------------------------------
    # One pass
    # ------------------------------------------------------------------

    def _set_state(self, scope: str, state: PassState) -> None:
        self._status.setdefault(scope, ScopeStatus(scope=scope)).state = state

    async def run_pass(self, scope: str) -> SyncAttempt:
        """Execute one sync pass for ``scope``.

        Never raises for scope-level failures; the outcome is on the
        returned SyncAttempt.

        Returns:
            SyncAttempt describing the pass.
        """
        attempt = SyncAttempt(scope=scope, batch_size=self._config.batch_size)
        status = self._status.setdefault(scope, ScopeStatus(scope=scope))

        self._set_state(scope, PassState.ACQUIRING)
        lease = await self._locks.acquire(scope, self._config.lease_ms)
        if lease is None:
            status.consecutive_busy += 1
            attempt.outcome = PassOutcome.SKIPPED
            self._set_state(scope, PassState.IDLE)
            return await self._finish(attempt)

        status.consecutive_busy = 0
        attempt.token = lease.token
        started = time.monotonic()
        record: SyncScope | None = None
        lost = False

        try:
            record = await self._cursors.load(scope)
            attempt.cursor_before = record.cursor
            status.cursor = record.cursor
            await self._drain(scope, lease, record, attempt)
            attempt.outcome = PassOutcome.SUCCESS

        except LockLostError as exc:
            lost = True
            attempt.outcome = PassOutcome.LOST
            attempt.error = str(exc)
            logger.warning("Abandoning pass for %s: %s", scope, exc)

        except SyncError as exc:
            attempt.outcome = PassOutcome.PARTIAL if attempt.batches else PassOutcome.FAILED
            attempt.error = str(exc)
            logger.error("Sync pass for %s %s: %s", scope, attempt.outcome.value, exc)

        except Exception as exc:
            attempt.outcome = PassOutcome.PARTIAL if attempt.batches else PassOutcome.FAILED
            attempt.error = f"{type(exc).__name__}: {exc}"
            logger.exception("Unexpected error in sync pass for %s", scope)

        finally:
            if not lost:
                self._set_state(scope, PassState.RELEASING)
                if record is not None:
                    await self._record_outcome(record, lease, attempt)
                await self._locks.release(lease)
            self._set_state(scope, PassState.IDLE)
            metrics.PASS_DURATION.labels(scope=scope).observe(time.monotonic() - started)

        return await self._finish(attempt)

    async def _drain(
        self, scope: str, lease: LockLease, record: SyncScope, attempt: SyncAttempt
    ) -> None:
        """Loop fetch → filter → write → mark seen until the source is drained."""
        cfg = self._config
        cursor = record.cursor

        while True:
            self._set_state(scope, PassState.FETCHING)
            since = cursor
            batch: list[Message] = await with_retry(
                lambda: self._fetcher.fetch_messages(scope, since, cfg.batch_size),
                cfg.retry_attempts,
                cfg.retry_delay_s,
                sleep=self._sleep,
                label="fetch",
                on_attempt=lambda _n: self._ensure_lease(lease),
            )
            attempt.fetched += len(batch)
            if not batch:
                break

            self._set_state(scope, PassState.FILTERING)
            unseen = await self._dedup.filter_batch(scope, batch)
            self._count_skipped(scope, batch, unseen)
            attempt.skipped += len(batch) - len(unseen)

            if unseen:
                self._set_state(scope, PassState.WRITING)
                await with_retry(
                    lambda: self._sink.write(unseen),
                    cfg.retry_attempts,
                    cfg.retry_delay_s,
                    sleep=self._sleep,
                    label="write",
                    on_attempt=lambda _n: self._before_write(lease, attempt),
                )
                self._set_state(scope, PassState.MARKING_SEEN)
                await self._dedup.mark_batch_seen(scope, unseen)

            # Only reached after the sink acknowledged (or nothing needed writing).
            last_cursor = batch[-1].cursor
            if last_cursor <= cursor:
                logger.warning(
                    "Session API returned no progress for %s (cursor %d); stopping pass",
                    scope, cursor,
                )
                break
            await self._cursors.advance(record, last_cursor, len(unseen), lease)
            cursor = last_cursor
            self._status[scope].cursor = cursor
            metrics.SCOPE_CURSOR.labels(scope=scope).set(cursor)

            attempt.batches += 1
            attempt.written += len(unseen)
            for direction, group in group_by_direction(unseen).items():
                metrics.SYNC_MESSAGES.labels(scope=scope, direction=direction.value).inc(len(group))

            if unseen:
                await self._publisher.publish_all(unseen)

            if len(batch) < cfg.batch_size:
                break

    async def _ensure_lease(self, lease: LockLease) -> None:
        """Renew once more than half the lease has elapsed.

        Runs before every fetch and write attempt, retries included.

        Raises:
            LockLostError: If renewal reports the lock was Lost.
        """
        if not lease.needs_renewal(self._clock()):
            return
        if not await self._locks.renew(lease, self._config.lease_ms):
            raise LockLostError(
                "Lease lost during pass", context={"scope": lease.scope, "token": lease.token}
            )

    async def _before_write(self, lease: LockLease, attempt: SyncAttempt) -> None:
        await self._ensure_lease(lease)
        attempt.write_attempts += 1

    @staticmethod
    def _count_skipped(scope: str, batch: list[Message], unseen: list[Message]) -> None:
        kept = {(m.direction, m.message_id) for m in unseen}
        for message in batch:
            if (message.direction, message.message_id) not in kept:
                metrics.SYNC_DEDUP_SKIPPED.labels(
                    scope=scope, direction=message.direction.value
                ).inc()

    async def _record_outcome(
        self, record: SyncScope, lease: LockLease, attempt: SyncAttempt
    ) -> None:
        try:
            await self._cursors.record_outcome(
                record, lease, attempt.outcome.value, attempt.error
            )
        except StoreUnavailableError as exc:
            logger.warning("Could not record pass outcome for %s: %s", record.scope_id, exc)

    async def _finish(self, attempt: SyncAttempt) -> SyncAttempt:
        attempt.finished_at = utc_now()
        if attempt.cursor_after is None and attempt.cursor_before is not None:
            status = self._status.get(attempt.scope)
            attempt.cursor_after = status.cursor if status else attempt.cursor_before
        self._status[attempt.scope].last_attempt = attempt
        metrics.SYNC_PASSES.labels(scope=attempt.scope, outcome=attempt.outcome.value).inc()

        if attempt.outcome is PassOutcome.SKIPPED:
            logger.debug("Sync tick skipped for %s: lock busy", attempt.scope)
        elif attempt.outcome is PassOutcome.SUCCESS:
            if attempt.written:
                logger.info(
                    "Sync completed for %s: %d messages written in %d batches (%d skipped), cursor %s",
                    attempt.scope, attempt.written, attempt.batches, attempt.skipped,
                    attempt.cursor_after,
                )
            else:
                logger.debug("Sync pass for %s: nothing new", attempt.scope)

        for listener in self._listeners:
            try:
                result = listener(attempt)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                logger.warning("Pass listener failed for %s: %s", attempt.scope, exc)
        return attempt
