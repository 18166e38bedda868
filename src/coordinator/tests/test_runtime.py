"""Tests for runtime wiring, the shared store service and the standalone worker."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from src.config import load_settings
from src.coordinator.fetcher import HttpMessageFetcher
from src.coordinator.publisher import NullEventPublisher, StoreEventPublisher
from src.coordinator.runtime import build_runtime, scheduler_config
from src.coordinator.sinks import FileSink, WebhookSink
from src.coordinator.store import InMemoryStore
from src.services import store as store_service
from src.worker import main, run_worker


def _settings(tmp_path: Path, **overrides):
    values = {
        "sync_scopes": "dev-1,dev-2",
        "sync_file_path": str(tmp_path),
        "lock_store_backend": "memory",
    }
    values.update(overrides)
    return load_settings(**values)


class TestBuildRuntime:
    def test_scheduler_config_converts_units(self, tmp_path: Path) -> None:
        config = scheduler_config(
            _settings(tmp_path, sync_interval_ms=1500, sync_retry_delay_ms=250)
        )
        assert config.scopes == ["dev-1", "dev-2"]
        assert config.interval_s == 1.5
        assert config.retry_delay_s == 0.25
        assert config.lease_ms == 300_000

    def test_builds_configured_collaborators(self, tmp_path: Path) -> None:
        runtime = build_runtime(_settings(tmp_path), InMemoryStore())
        assert isinstance(runtime.sink, FileSink)
        assert isinstance(runtime.fetcher, HttpMessageFetcher)
        assert isinstance(runtime.publisher, StoreEventPublisher)
        assert runtime.scheduler.scopes == ["dev-1", "dev-2"]

    def test_notifications_can_be_disabled(self, tmp_path: Path) -> None:
        runtime = build_runtime(_settings(tmp_path, notify_enabled=False), InMemoryStore())
        assert isinstance(runtime.publisher, NullEventPublisher)

    def test_webhook_sink_selected(self, tmp_path: Path) -> None:
        settings = load_settings(sync_webhook_url="https://hooks.example.com/sync")
        runtime = build_runtime(settings, InMemoryStore())
        assert isinstance(runtime.sink, WebhookSink)


class TestStoreService:
    @pytest.mark.asyncio
    async def test_memory_backend_lifecycle(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        close = AsyncMock()
        monkeypatch.setattr(InMemoryStore, "close", close)
        store = await store_service.init_store(_settings(tmp_path))
        assert isinstance(store, InMemoryStore)
        assert len(store) == 0

        await store_service.close_store()
        await store_service.close_store()

        close.assert_awaited_once()


class TestWorker:
    @pytest.mark.asyncio
    async def test_run_worker_stops_on_event(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        close = AsyncMock()
        monkeypatch.setattr(InMemoryStore, "close", close)
        stop = asyncio.Event()
        stop.set()
        await run_worker(_settings(tmp_path, sync_scopes=""), stop_event=stop)
        assert tmp_path.is_dir()
        close.assert_awaited_once()

    def test_invalid_config_exits_nonzero(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SYNC_SINK", "postgres")
        monkeypatch.delenv("POSTGRES_URL", raising=False)
        monkeypatch.delenv("DATABASE_URL", raising=False)
        assert main() == 1
