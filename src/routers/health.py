"""Health check and metrics endpoints — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from src.dependencies import AppSettings, Runtime
from src.models.sync import HealthRead

router = APIRouter(tags=["system"])
logger = logging.getLogger("gatewaysync.health")


@router.get("/health", response_model=HealthRead)
async def health_check(runtime: Runtime, settings: AppSettings) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also pings the lock/cache store; without it every tick is skipped.
    """
    store_ok = await runtime.store.ping()
    if not store_ok:
        logger.warning("Health check store probe failed")
    worker_ok = runtime.scheduler.is_running

    return {
        "status": "healthy" if store_ok and worker_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "store": "connected" if store_ok else "unreachable",
        "worker": "running" if worker_ok else "stopped",
        "timestamp": datetime.now(timezone.utc),
        "details": {"process_id": runtime.scheduler.process_id, "sink": runtime.sink.SINK_ID},
    }


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Prometheus exposition of the sync counters."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
