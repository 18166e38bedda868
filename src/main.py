"""Gateway Sync API — FastAPI application entry point.

Runs the sync worker in-process and exposes health, status and metrics.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from src.config import get_settings
from src.coordinator.runtime import SyncRuntime, build_runtime
from src.routers import health, sync
from src.services.store import close_store, init_store

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("gatewaysync")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks.

    If ``app.state.runtime`` was set before startup (tests), it is started
    as-is instead of being built from settings.
    """
    settings = get_settings()
    logger.info(
        "Starting Gateway Sync v%s [%s]: %s",
        settings.app_version,
        settings.environment,
        settings.summary(),
    )
    runtime: SyncRuntime | None = getattr(app.state, "runtime", None)
    owns_store = runtime is None
    if runtime is None:
        store = await init_store(settings)
        runtime = build_runtime(settings, store)
        app.state.runtime = runtime

    await runtime.start()
    yield
    await runtime.close()
    if owns_store:
        await close_store()
    logger.info("Gateway Sync shut down")


# ---------- App factory ----------

def create_app(runtime: SyncRuntime | None = None) -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description=(
            "Background worker that drains gateway session messages into a "
            "durable sink, exactly once per scope cursor across processes."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    if runtime is not None:
        app.state.runtime = runtime

    # ---------- Health + metrics (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    app.include_router(sync.router, prefix="/api/v1")

    return app


app = create_app()
