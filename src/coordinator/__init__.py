"""Gateway Sync Coordinator.

This package drains messages from the gateway's live sessions into a durable
sink.  Any number of worker processes may run: a distributed lock keeps each
scope to one active pass, a dedup cache absorbs overlapping re-fetches, and a
bounded retry engine recovers transient fetch/write failures.

Subpackages:
    sinks/     — Downstream sink adapters (PostgreSQL, JSONL files, webhook)

Core modules:
    base       — Message / SyncScope / LockLease / SyncAttempt models, MessageFetcher ABC
    errors     — SyncError hierarchy (transient vs. permanent classification)
    store      — KeyValueStore over Redis, plus an in-process backend
    lock       — Scope lock acquire / renew / release by owner token
    dedup      — Seen-message cache per (scope, direction)
    cursor     — Per-scope cursor persistence
    retry      — Bounded linear-backoff retry
    fetcher    — Gateway session API client
    publisher  — Best-effort message.synced notifications
    scheduler  — Per-scope recurring sync loop
    runtime    — Wiring from Settings
"""

from src.coordinator.base import (
    Direction,
    LockLease,
    Message,
    MessageFetcher,
    PassOutcome,
    PassState,
    SyncAttempt,
    SyncScope,
)
from src.coordinator.errors import (
    LockLostError,
    LockUnavailableError,
    PermanentSyncError,
    SyncError,
    TransientSyncError,
)

__all__ = [
    "Direction",
    "Message",
    "MessageFetcher",
    "SyncScope",
    "LockLease",
    "SyncAttempt",
    "PassState",
    "PassOutcome",
    "SyncError",
    "TransientSyncError",
    "PermanentSyncError",
    "LockUnavailableError",
    "LockLostError",
]
