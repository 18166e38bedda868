"""Sync worker status and manual trigger endpoints."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException

from src.dependencies import Runtime
from src.models.sync import SyncAttemptRead, SyncStatusRead

router = APIRouter(prefix="/sync", tags=["sync"])
logger = logging.getLogger("gatewaysync.routers.sync")


@router.get("/status", response_model=SyncStatusRead)
async def sync_status(runtime: Runtime) -> Any:
    return runtime.scheduler.status()


@router.post("/{scope}/trigger", response_model=SyncAttemptRead)
async def trigger_sync(scope: str, runtime: Runtime) -> Any:
    """Run one pass for ``scope`` immediately.

    A Busy lock is not an error: the attempt comes back with outcome
    ``skipped``.
    """
    try:
        attempt = await runtime.scheduler.trigger(scope)
    except RuntimeError as exc:
        logger.warning("Manual sync for %s rejected: %s", scope, exc)
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown scope '{scope}'") from exc
    return attempt.to_json()
