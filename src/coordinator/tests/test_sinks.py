"""Tests for the PostgreSQL, file and webhook sinks."""

from __future__ import annotations

import errno
import json
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import httpx
import pytest

from src.config import load_settings
from src.coordinator.base import Direction
from src.coordinator.errors import (
    ConfigInvalidError,
    WritePermanentError,
    WriteTransientError,
)
from src.coordinator.sinks import (
    SINK_REGISTRY,
    FileSink,
    PostgresSink,
    WebhookSink,
    build_sink,
    get_sink,
)
from src.coordinator.sinks.file import read_messages, sink_file_path
from src.coordinator.sinks.postgres import build_schema_ddl, build_upsert_query
from src.coordinator.sinks.webhook import batch_idempotency_key, sign_body
from src.coordinator.tests.conftest import (
    OTHER_SCOPE,
    TEST_SCOPE,
    make_message,
    make_messages,
)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_all_sinks_registered(self) -> None:
        assert set(SINK_REGISTRY) == {"postgres", "file", "webhook"}
        assert get_sink("file") is FileSink

    def test_unknown_sink(self) -> None:
        with pytest.raises(KeyError, match="No sink registered"):
            get_sink("s3")

    def test_build_from_settings(self, tmp_path: Path) -> None:
        settings = load_settings(sync_sink="file", sync_file_path=str(tmp_path))
        sink = build_sink(settings)
        assert isinstance(sink, FileSink)
        assert sink.base_path == tmp_path

    def test_build_rejects_bad_table_name(self) -> None:
        settings = load_settings(
            postgres_url="postgresql://localhost/gw", postgres_table="messages; DROP TABLE x"
        )
        with pytest.raises(ConfigInvalidError):
            build_sink(settings)


# ---------------------------------------------------------------------------
# File sink
# ---------------------------------------------------------------------------


class TestFileSink:
    @pytest.mark.asyncio
    async def test_writes_one_line_per_message(self, tmp_path: Path) -> None:
        sink = FileSink(tmp_path)
        await sink.open()
        batch = make_messages(3)

        ack = await sink.write(batch)

        assert ack.count == 3
        today = datetime.now(timezone.utc).date()
        path = sink_file_path(tmp_path, TEST_SCOPE, "in", today)
        lines = path.read_text().splitlines()
        assert [json.loads(line)["id"] for line in lines] == ["msg-1", "msg-2", "msg-3"]

    @pytest.mark.asyncio
    async def test_directions_go_to_separate_files(self, tmp_path: Path) -> None:
        sink = FileSink(tmp_path)
        batch = [
            make_message(1, direction=Direction.INBOUND),
            make_message(2, direction=Direction.OUTBOUND),
        ]
        await sink.write(batch)

        files = sorted(p.name for p in (tmp_path / TEST_SCOPE).iterdir())
        assert len(files) == 2
        assert files[0].startswith("messages_in_")
        assert files[1].startswith("messages_out_")

    @pytest.mark.asyncio
    async def test_replay_is_deduplicated_on_read(self, tmp_path: Path) -> None:
        sink = FileSink(tmp_path)
        batch = make_messages(2)
        await sink.write(batch)
        await sink.write(batch)

        path = next((tmp_path / TEST_SCOPE).iterdir())
        assert len(path.read_text().splitlines()) == 4
        assert [r["id"] for r in read_messages(path)] == ["msg-1", "msg-2"]

    def test_read_skips_torn_line(self, tmp_path: Path) -> None:
        path = tmp_path / "messages_in_2024-06-10.jsonl"
        path.write_text('{"id": "a"}\n{"id": "b"}\n{"id": "c"')
        assert [r["id"] for r in read_messages(path)] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_permission_error_is_permanent(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def denied(chunks):
            raise PermissionError(errno.EACCES, "Permission denied")

        monkeypatch.setattr(FileSink, "_append_all", staticmethod(denied))
        with pytest.raises(WritePermanentError):
            await FileSink(tmp_path).write(make_messages(1))

    @pytest.mark.asyncio
    async def test_disk_full_is_transient(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def full(chunks):
            raise OSError(errno.ENOSPC, "No space left on device")

        monkeypatch.setattr(FileSink, "_append_all", staticmethod(full))
        with pytest.raises(WriteTransientError):
            await FileSink(tmp_path).write(make_messages(1))


# ---------------------------------------------------------------------------
# Webhook sink
# ---------------------------------------------------------------------------


def _webhook(handler, secret: str | None = None) -> tuple[WebhookSink, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookSink("https://hooks.example.com/sync", secret=secret, http_client=client), client


class TestWebhookSink:
    @pytest.mark.asyncio
    async def test_posts_batch_envelope(self) -> None:
        received: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(202)

        sink, client = _webhook(handler)
        batch = make_messages(2)
        ack = await sink.write(batch)
        await client.aclose()

        assert ack.count == 2
        assert ack.detail == "202"
        body = json.loads(received[0].content)
        assert body["scope"] == TEST_SCOPE
        assert body["count"] == 2
        assert [m["id"] for m in body["messages"]] == ["msg-1", "msg-2"]
        assert body["timestamp"].endswith("Z")
        assert received[0].headers["Idempotency-Key"] == batch_idempotency_key(batch)
        assert "X-Sync-Signature" not in received[0].headers

    @pytest.mark.asyncio
    async def test_signs_body_when_secret_set(self) -> None:
        received: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(200)

        sink, client = _webhook(handler, secret="s3cret")
        await sink.write(make_messages(1))
        await client.aclose()

        request = received[0]
        assert request.headers["X-Sync-Signature"] == sign_body("s3cret", request.content)
        assert request.headers["X-Sync-Signature"].startswith("sha256=")

    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    @pytest.mark.asyncio
    async def test_retryable_statuses_are_transient(self, status: int) -> None:
        sink, client = _webhook(lambda request: httpx.Response(status))
        with pytest.raises(WriteTransientError):
            await sink.write(make_messages(1))
        await client.aclose()

    @pytest.mark.parametrize("status", [400, 401, 404, 422])
    @pytest.mark.asyncio
    async def test_client_errors_are_permanent(self, status: int) -> None:
        sink, client = _webhook(lambda request: httpx.Response(status))
        with pytest.raises(WritePermanentError):
            await sink.write(make_messages(1))
        await client.aclose()

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        sink, client = _webhook(handler)
        with pytest.raises(WriteTransientError):
            await sink.write(make_messages(1))
        await client.aclose()

    def test_idempotency_key_depends_only_on_identity(self) -> None:
        batch = make_messages(2)
        edited = [replace(m, payload={"body": "edited"}) for m in batch]
        assert batch_idempotency_key(batch) == batch_idempotency_key(edited)
        assert batch_idempotency_key(batch) != batch_idempotency_key(batch[:1])

    def test_idempotency_key_differs_per_scope(self) -> None:
        assert batch_idempotency_key(make_messages(2)) != batch_idempotency_key(
            make_messages(2, scope=OTHER_SCOPE)
        )


# ---------------------------------------------------------------------------
# PostgreSQL sink
# ---------------------------------------------------------------------------


def _fake_pool(executemany: AsyncMock) -> MagicMock:
    conn = MagicMock()
    conn.executemany = executemany
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    return pool


class TestPostgresSink:
    def test_upsert_query_shape(self) -> None:
        query = build_upsert_query(
            "synced_messages", ["message_id", "direction", "payload"], ["message_id", "direction"]
        )
        assert query.startswith("INSERT INTO synced_messages (message_id, direction, payload)")
        assert "VALUES ($1, $2, $3)" in query
        assert "ON CONFLICT (message_id, direction) DO UPDATE SET payload = EXCLUDED.payload" in query

    def test_sink_query_is_keyed_by_scope(self) -> None:
        sink = PostgresSink("postgresql://localhost/gw")
        assert "ON CONFLICT (scope, message_id, direction) DO UPDATE SET" in sink.query
        assert "scope = EXCLUDED.scope" not in sink.query
        assert "UNIQUE (scope, message_id, direction)" in build_schema_ddl("synced_messages")

    def test_upsert_without_update_columns_does_nothing(self) -> None:
        query = build_upsert_query("t", ["a"], ["a"])
        assert query.endswith("ON CONFLICT (a) DO NOTHING")

    def test_rejects_unsafe_table_name(self) -> None:
        with pytest.raises(ValueError):
            PostgresSink("postgresql://localhost/gw", table="x; DROP TABLE y")

    @pytest.mark.asyncio
    async def test_write_upserts_every_row(self) -> None:
        executemany = AsyncMock()
        sink = PostgresSink("unused", pool=_fake_pool(executemany), ensure_schema=False)
        batch = make_messages(3)

        ack = await sink.write(batch)

        assert ack.count == 3
        query, rows = executemany.await_args.args
        assert query == sink.query
        assert [r[0] for r in rows] == ["msg-1", "msg-2", "msg-3"]
        assert rows[0][1] == "in"
        assert json.loads(rows[0][5])["body"] == "hello 1"

    @pytest.mark.asyncio
    async def test_unopened_sink_is_transient(self) -> None:
        with pytest.raises(WriteTransientError):
            await PostgresSink("postgresql://localhost/gw").write(make_messages(1))

    @pytest.mark.asyncio
    async def test_connection_errors_are_transient(self) -> None:
        executemany = AsyncMock(side_effect=ConnectionRefusedError("refused"))
        sink = PostgresSink("unused", pool=_fake_pool(executemany), ensure_schema=False)
        with pytest.raises(WriteTransientError):
            await sink.write(make_messages(1))

    @pytest.mark.asyncio
    async def test_too_many_connections_is_transient(self) -> None:
        executemany = AsyncMock(
            side_effect=asyncpg.exceptions.TooManyConnectionsError("too many clients")
        )
        sink = PostgresSink("unused", pool=_fake_pool(executemany), ensure_schema=False)
        with pytest.raises(WriteTransientError):
            await sink.write(make_messages(1))

    @pytest.mark.asyncio
    async def test_data_errors_are_permanent(self) -> None:
        executemany = AsyncMock(
            side_effect=asyncpg.exceptions.InvalidTextRepresentationError("bad input")
        )
        sink = PostgresSink("unused", pool=_fake_pool(executemany), ensure_schema=False)
        with pytest.raises(WritePermanentError):
            await sink.write(make_messages(1))
