"""Canonical data models and collaborator interfaces for the sync coordinator.

Every component (lock coordinator, dedup cache, sinks, scheduler) speaks in
terms of the types defined here.  ``Message`` is the unit that flows from the
session API to the sink; ``SyncAttempt`` is the ephemeral record of one pass.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger("gatewaysync.coordinator")

# Wall-clock source in epoch seconds.  Injected everywhere expiry matters so
# tests can move time forward without sleeping.
Clock = Callable[[], float]


def system_clock() -> float:
    return time.time()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Direction(str, Enum):
    """Message direction relative to the gateway session."""

    INBOUND = "in"
    OUTBOUND = "out"

    @classmethod
    def parse(cls, value: str) -> "Direction":
        """Accept both queue-style ('in'/'out') and long-form names."""
        normalized = str(value).strip().lower()
        if normalized in ("in", "inbound", "incoming"):
            return cls.INBOUND
        if normalized in ("out", "outbound", "outgoing"):
            return cls.OUTBOUND
        raise ValueError(f"Unknown message direction: {value!r}")


class PassState(str, Enum):
    """Per-scope scheduler state."""

    IDLE = "idle"
    ACQUIRING = "acquiring"
    FETCHING = "fetching"
    FILTERING = "filtering"
    WRITING = "writing"
    MARKING_SEEN = "marking_seen"
    RELEASING = "releasing"


class PassOutcome(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"   # some batches written before a failure
    FAILED = "failed"
    SKIPPED = "skipped"   # lock busy
    LOST = "lost"         # lease lost mid-pass


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Message:
    """One message observed on a gateway session.  Immutable once fetched.

    Attributes:
        message_id:  Stable identifier from the source system.
        scope:       Scope (device / account group) the message belongs to.
        direction:   Inbound or outbound.
        cursor:      Monotonic offset or millisecond timestamp from the source.
        payload:     Structured fields the sink needs, plus the opaque body.
        observed_at: UTC timestamp the message was observed by the gateway.
    """

    message_id: str
    scope: str
    direction: Direction
    cursor: int
    payload: dict = field(default_factory=dict, hash=False, compare=False)
    observed_at: datetime = field(default_factory=utc_now, compare=False)

    def to_record(self) -> dict[str, Any]:
        """JSON-serializable representation used by every sink."""
        return {
            "id": self.message_id,
            "scope": self.scope,
            "direction": self.direction.value,
            "cursor": self.cursor,
            "observed_at": self.observed_at.isoformat(),
            "payload": self.payload,
        }


# ---------------------------------------------------------------------------
# Scope / lock / attempt records
# ---------------------------------------------------------------------------


@dataclass
class SyncScope:
    """Cursor tracking for one unit of exclusivity.

    Attributes:
        scope_id:     Scope identifier.
        cursor:       Watermark up to which the scope is durably synced.
        total_synced: Running count of messages written to the sink.
        last_status:  Outcome of the most recent pass.
        last_error:   Error detail of the most recent failed pass.
        updated_at:   When this record last changed.
    """

    scope_id: str
    cursor: int = 0
    total_synced: int = 0
    last_status: str = "never"
    last_error: str | None = None
    updated_at: datetime | None = None

    def to_json(self) -> dict:
        return {
            "scope_id": self.scope_id,
            "cursor": self.cursor,
            "total_synced": self.total_synced,
            "last_status": self.last_status,
            "last_error": self.last_error,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_json(cls, data: dict) -> "SyncScope":
        scope = cls(scope_id=data["scope_id"])
        scope.cursor = int(data.get("cursor", 0))
        scope.total_synced = int(data.get("total_synced", 0))
        scope.last_status = data.get("last_status", "never")
        scope.last_error = data.get("last_error")
        if updated := data.get("updated_at"):
            try:
                scope.updated_at = datetime.fromisoformat(updated)
            except ValueError:
                pass
        return scope


@dataclass
class LockLease:
    """Proof of ownership of a scope lock.

    Attributes:
        scope:       Scope the lock guards.
        token:       Owner token stored as the lock value.
        lease_ms:    Lease duration requested on acquire/renew.
        acquired_at: Epoch seconds of acquisition.
        renewed_at:  Epoch seconds of the last successful acquire or renew.
    """

    scope: str
    token: str
    lease_ms: int
    acquired_at: float
    renewed_at: float

    @property
    def expires_at(self) -> float:
        return self.renewed_at + self.lease_ms / 1000.0

    def needs_renewal(self, now: float) -> bool:
        """True once more than half of the current lease has elapsed."""
        return (now - self.renewed_at) * 1000.0 > self.lease_ms / 2


@dataclass
class SyncAttempt:
    """Ephemeral record of one sync pass for a scope.

    Attributes:
        scope:            Scope id.
        token:            Lock token held during the pass (None if skipped).
        batch_size:       Configured batch size.
        batches:          Number of batches written.
        fetched:          Messages returned by the session API.
        written:          Messages acknowledged by the sink.
        skipped:          Messages dropped by the dedup filter.
        write_attempts:   Total sink write calls, including retries.
        outcome:          PassOutcome value.
        error:            Error detail when the pass did not succeed.
        cursor_before:    Cursor at the start of the pass.
        cursor_after:     Cursor at the end of the pass.
        started_at:       UTC start time.
        finished_at:      UTC finish time.
    """

    scope: str
    batch_size: int
    token: str | None = None
    batches: int = 0
    fetched: int = 0
    written: int = 0
    skipped: int = 0
    write_attempts: int = 0
    outcome: PassOutcome = PassOutcome.SUCCESS
    error: str | None = None
    cursor_before: int | None = None
    cursor_after: int | None = None
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_json(self) -> dict:
        return {
            "scope": self.scope,
            "batch_size": self.batch_size,
            "batches": self.batches,
            "fetched": self.fetched,
            "written": self.written,
            "skipped": self.skipped,
            "write_attempts": self.write_attempts,
            "outcome": self.outcome.value,
            "error": self.error,
            "cursor_before": self.cursor_before,
            "cursor_after": self.cursor_after,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
        }


# ---------------------------------------------------------------------------
# Session API collaborator
# ---------------------------------------------------------------------------


class MessageFetcher(ABC):
    """Read side of the gateway session API.

    Implementations must be side-effect free: calling ``fetch_messages``
    repeatedly with the same cursor returns the same ordered batch.
    """

    @abstractmethod
    async def fetch_messages(
        self, scope: str, since_cursor: int, limit: int
    ) -> list[Message]:
        """Return up to ``limit`` messages with cursor strictly greater than
        ``since_cursor``, ordered by cursor ascending.

        Raises:
            FetchTransientError: On network / timeout / 5xx failures.
            FetchPermanentError: On auth rejection or malformed responses.
        """

    async def close(self) -> None:
        """Release any held resources.  Default: nothing to release."""
        return None
