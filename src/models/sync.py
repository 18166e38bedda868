"""Pydantic models for the sync status and manual trigger endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field

from src.coordinator.base import PassOutcome, PassState
from src.models.base import GatewaySyncBase


# ---------- Attempts ----------

class SyncAttemptRead(GatewaySyncBase):
    scope: str
    outcome: PassOutcome
    batches: int = 0
    fetched: int = 0
    written: int = 0
    skipped: int = 0
    write_attempts: int = 0
    cursor_before: int | None = None
    cursor_after: int | None = None
    error: str | None = None
    started_at: datetime
    finished_at: datetime | None = None
    duration_seconds: float | None = None


# ---------- Status ----------

class ScopeStatusRead(GatewaySyncBase):
    scope: str
    state: PassState
    cursor: int | None = None
    consecutive_busy: int = 0
    last_attempt: SyncAttemptRead | None = None


class SchedulerConfigRead(GatewaySyncBase):
    interval_s: float
    lease_ms: int
    batch_size: int
    retry_attempts: int
    retry_delay_s: float
    sink: str


class SyncStatusRead(GatewaySyncBase):
    is_running: bool
    process_id: str
    uptime_seconds: float | None = None
    config: SchedulerConfigRead
    scopes: dict[str, ScopeStatusRead] = Field(default_factory=dict)


class HealthRead(GatewaySyncBase):
    status: str
    version: str
    environment: str
    store: str
    worker: str
    timestamp: datetime
    details: dict[str, Any] = Field(default_factory=dict)
