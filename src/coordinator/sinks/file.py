"""Append-only JSON Lines sink.

Layout::

    {base_path}/{scope}/messages_{direction}_{YYYY-MM-DD}.jsonl

One line per message.  The file is append-only, so a replayed batch can leave
duplicate lines; ``read_messages`` de-duplicates by message id on read.
"""

from __future__ import annotations

import asyncio
import errno
import json
import logging
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterator

from src.coordinator.base import Message
from src.coordinator.dedup import group_by_direction
from src.coordinator.errors import WritePermanentError, WriteTransientError
from src.coordinator.sinks.base import SinkAdapter, WriteAck

logger = logging.getLogger("gatewaysync.coordinator.sinks.file")

# Failures no amount of waiting will fix.
_PERMANENT_ERRNOS = frozenset({errno.EACCES, errno.EPERM, errno.EROFS, errno.EISDIR, errno.ENAMETOOLONG})


def sink_file_path(base_path: Path, scope: str, direction: str, day: date) -> Path:
    return base_path / scope / f"messages_{direction}_{day.isoformat()}.jsonl"


def read_messages(path: Path) -> list[dict]:
    """Read a sink file, collapsing duplicate message ids to the first line.

    Unparseable lines (e.g. a torn final line after a crash) are skipped.

    Args:
        path: A ``.jsonl`` file written by FileSink.

    Returns:
        Records in file order, one per unique message id.
    """
    records: list[dict] = []
    seen: set[str] = set()
    for record in _iter_lines(path):
        message_id = record.get("id")
        if message_id in seen:
            continue
        seen.add(message_id)
        records.append(record)
    return records


def _iter_lines(path: Path) -> Iterator[dict]:
    with path.open("r", encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping unparseable line %d in %s", lineno, path)


class FileSink(SinkAdapter):
    """Append batches to per-scope, per-direction, per-day JSONL files."""

    SINK_ID = "file"

    def __init__(self, base_path: str | Path = "./data") -> None:
        self._base = Path(base_path)

    @property
    def base_path(self) -> Path:
        return self._base

    async def open(self) -> None:
        await asyncio.to_thread(self._base.mkdir, parents=True, exist_ok=True)
        logger.info("File sink writing under %s", self._base.resolve())

    async def _write(self, batch: list[Message]) -> WriteAck:
        today = datetime.now(timezone.utc).date()
        try:
            chunks = [
                (
                    sink_file_path(self._base, batch[0].scope, direction.value, today),
                    "".join(json.dumps(m.to_record(), default=str) + "\n" for m in group),
                )
                for direction, group in group_by_direction(batch).items()
            ]
        except (TypeError, ValueError) as exc:
            raise WritePermanentError(f"Batch is not serializable: {exc}") from exc

        try:
            await asyncio.to_thread(self._append_all, chunks)
        except OSError as exc:
            error_cls = WritePermanentError if exc.errno in _PERMANENT_ERRNOS else WriteTransientError
            raise error_cls(
                f"Error writing messages: {exc}", context={"path": str(self._base)}
            ) from exc

        paths = ", ".join(str(p) for p, _ in chunks)
        logger.info("[file] Written %d messages to %s", len(batch), paths)
        return WriteAck(count=len(batch), sink=self.SINK_ID, detail=paths)

    @staticmethod
    def _append_all(chunks: list[tuple[Path, str]]) -> None:
        for path, data in chunks:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as fh:
                fh.write(data)
                fh.flush()
