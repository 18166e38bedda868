"""Wire the coordinator from settings.

``SyncRuntime`` owns everything a worker process needs (sink, fetcher,
publisher, scheduler) and opens / closes it in the right order.  Both the
FastAPI lifespan and the standalone worker go through here.

Usage::

    runtime = build_runtime(settings, store)
    await runtime.start()
    ...
    await runtime.close()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from src.config import Settings
from src.coordinator.base import MessageFetcher, SyncAttempt
from src.coordinator.cursor import CursorStore
from src.coordinator.dedup import DedupCache
from src.coordinator.fetcher import HttpMessageFetcher
from src.coordinator.lock import LockCoordinator
from src.coordinator.publisher import EventPublisher, NullEventPublisher, StoreEventPublisher
from src.coordinator.scheduler import SchedulerConfig, SyncScheduler
from src.coordinator.sinks import SinkAdapter, build_sink
from src.coordinator.store import KeyValueStore

logger = logging.getLogger("gatewaysync.coordinator.runtime")


def scheduler_config(settings: Settings) -> SchedulerConfig:
    return SchedulerConfig(
        scopes=settings.scopes,
        interval_s=settings.sync_interval_s,
        lease_ms=settings.sync_lock_expiry_ms,
        batch_size=settings.sync_batch_size,
        retry_attempts=settings.sync_retry_attempts,
        retry_delay_s=settings.retry_delay_s,
    )


def _log_attempt(attempt: SyncAttempt) -> None:
    if attempt.outcome.value in ("failed", "partial"):
        logger.error("Sync failed for %s", attempt.scope, extra={"attempt": attempt.to_json()})


@dataclass
class SyncRuntime:
    """All long-lived collaborators of one worker process."""

    store: KeyValueStore
    sink: SinkAdapter
    fetcher: MessageFetcher
    publisher: EventPublisher
    scheduler: SyncScheduler

    async def start(self) -> None:
        await self.sink.open()
        self.scheduler.start()

    async def close(self) -> None:
        if self.scheduler.is_running:
            await self.scheduler.stop()
        await self.fetcher.close()
        await self.sink.close()


def build_runtime(
    settings: Settings,
    store: KeyValueStore,
    sink: SinkAdapter | None = None,
    fetcher: MessageFetcher | None = None,
) -> SyncRuntime:
    """Assemble a SyncRuntime.

    Args:
        settings: Validated settings.
        store:    Initialized shared store.
        sink:     Override the configured sink (tests, embedding).
        fetcher:  Override the session API client.

    Raises:
        ConfigInvalidError: If the sink configuration is invalid.
    """
    sink = sink or build_sink(settings)
    fetcher = fetcher or HttpMessageFetcher(
        settings.session_api_url,
        api_key=settings.session_api_key,
        timeout_s=settings.session_api_timeout_s,
    )
    publisher: EventPublisher = (
        StoreEventPublisher(store, settings.notify_channel_prefix)
        if settings.notify_enabled
        else NullEventPublisher()
    )
    scheduler = SyncScheduler(
        config=scheduler_config(settings),
        locks=LockCoordinator(store),
        dedup=DedupCache(store, ttl_seconds=settings.dedup_ttl_seconds),
        cursors=CursorStore(store),
        fetcher=fetcher,
        sink=sink,
        publisher=publisher,
    )
    scheduler.add_listener(_log_attempt)
    logger.info(
        "Sync runtime built: sink=%s scopes=%s batch=%d",
        sink.SINK_ID, settings.scopes, settings.sync_batch_size,
    )
    return SyncRuntime(
        store=store, sink=sink, fetcher=fetcher, publisher=publisher, scheduler=scheduler
    )
