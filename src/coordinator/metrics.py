"""Prometheus metrics for the sync coordinator.

Counters are labeled by scope so a single stuck or failing scope stands out
on a dashboard.  Exposed by ``GET /metrics``.
"""

from __future__ import annotations

from typing import Final

from prometheus_client import Counter, Gauge, Histogram

SYNC_PASSES: Final[Counter] = Counter(
    "gatewaysync_passes_total",
    "Sync passes by scope and outcome (success, partial, failed, skipped, lost).",
    labelnames=("scope", "outcome"),
)

SYNC_MESSAGES: Final[Counter] = Counter(
    "gatewaysync_messages_total",
    "Messages durably written to the sink, by scope and direction.",
    labelnames=("scope", "direction"),
)

SYNC_DEDUP_SKIPPED: Final[Counter] = Counter(
    "gatewaysync_dedup_skipped_total",
    "Fetched messages dropped because they were already marked seen.",
    labelnames=("scope", "direction"),
)

SINK_WRITES: Final[Counter] = Counter(
    "gatewaysync_sink_writes_total",
    "Sink write calls by sink and result (ok, transient, permanent).",
    labelnames=("sink", "result"),
)

RETRY_ATTEMPTS: Final[Counter] = Counter(
    "gatewaysync_retry_attempts_total",
    "Retries scheduled after a transient failure, by operation.",
    labelnames=("operation",),
)

LOCK_EVENTS: Final[Counter] = Counter(
    "gatewaysync_lock_events_total",
    "Lock lifecycle events (acquired, busy, renewed, released, lost, store_unavailable).",
    labelnames=("scope", "event"),
)

PUBLISH_FAILURES: Final[Counter] = Counter(
    "gatewaysync_publish_failures_total",
    "Best-effort notifications that could not be published.",
    labelnames=("scope",),
)

PASS_DURATION: Final[Histogram] = Histogram(
    "gatewaysync_pass_duration_seconds",
    "Wall time of sync passes that acquired the lock.",
    labelnames=("scope",),
    buckets=(0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0),
)

SCOPE_CURSOR: Final[Gauge] = Gauge(
    "gatewaysync_scope_cursor",
    "Current durable cursor per scope.",
    labelnames=("scope",),
)
