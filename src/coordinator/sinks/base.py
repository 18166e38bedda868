"""Base class for downstream sinks.

Every sink subclasses SinkAdapter and implements ``write``.  The scheduler
and retry engine never look past this interface, so adding a sink means
adding a subclass and a registry entry — nothing else changes.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from src.coordinator import metrics
from src.coordinator.base import Message
from src.coordinator.errors import PermanentSyncError, TransientSyncError

logger = logging.getLogger("gatewaysync.coordinator.sinks")


@dataclass
class WriteAck:
    """Durable write acknowledgement.

    Attributes:
        count:  Messages acknowledged.
        sink:   SINK_ID of the sink that acknowledged.
        detail: Free-form detail (file path, HTTP status, rows affected).
    """

    count: int
    sink: str
    detail: str = ""


class SinkAdapter(ABC):
    """Uniform write interface over a durable sink.

    ``write`` must either acknowledge the whole batch or raise:

        WriteTransientError  — the sink is unavailable; the batch may be retried.
        WritePermanentError  — the batch will never succeed as-is.

    Implementations should be tolerant of receiving the same message twice.
    """

    SINK_ID: str = ""

    async def open(self) -> None:
        """Acquire connections or directories.  Called once at startup."""
        return None

    async def close(self) -> None:
        """Release resources.  Called once at shutdown."""
        return None

    @abstractmethod
    async def _write(self, batch: list[Message]) -> WriteAck:
        """Sink-specific write.  See ``write``."""

    async def write(self, batch: list[Message]) -> WriteAck:
        """Write a batch and record the result in metrics.

        Args:
            batch: Messages in fetch order.  Never empty.

        Returns:
            WriteAck covering the whole batch.
        """
        try:
            ack = await self._write(batch)
        except TransientSyncError:
            metrics.SINK_WRITES.labels(sink=self.SINK_ID, result="transient").inc()
            raise
        except PermanentSyncError:
            metrics.SINK_WRITES.labels(sink=self.SINK_ID, result="permanent").inc()
            raise
        metrics.SINK_WRITES.labels(sink=self.SINK_ID, result="ok").inc()
        return ack
