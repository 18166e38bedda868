"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.coordinator.runtime import SyncRuntime


async def get_runtime(request: Request) -> SyncRuntime:
    """Return the sync runtime the lifespan attached to ``app.state``."""
    runtime: SyncRuntime | None = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Sync runtime not initialized")
    return runtime


# Annotated shortcuts for route signatures
Runtime = Annotated[SyncRuntime, Depends(get_runtime)]
AppSettings = Annotated[Settings, Depends(get_settings)]
