"""Standalone sync worker, without the HTTP surface.

Run:
    python -m src.worker

Stops gracefully on SIGINT / SIGTERM: in-flight passes finish (or are
cancelled after the shutdown timeout) and their locks are released.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from src.config import Settings, load_settings
from src.coordinator.errors import ConfigInvalidError
from src.coordinator.runtime import build_runtime
from src.services.store import close_store, init_store

logger = logging.getLogger("gatewaysync.worker")


async def run_worker(settings: Settings, stop_event: asyncio.Event | None = None) -> None:
    """Run the scheduler until ``stop_event`` is set or a signal arrives."""
    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Not available on this platform / outside the main thread
            pass

    store = await init_store(settings)
    runtime = build_runtime(settings, store)
    try:
        await runtime.start()
        logger.info("Sync worker %s running", runtime.scheduler.process_id)
        await stop_event.wait()
        logger.info("Shutdown requested, stopping sync worker")
    finally:
        await runtime.close()
        await close_store()


def main() -> int:
    try:
        settings = load_settings()
    except ConfigInvalidError as exc:
        logging.basicConfig(level=logging.ERROR, stream=sys.stderr)
        logger.error("Invalid configuration: %s", exc)
        return 1

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )
    try:
        asyncio.run(run_worker(settings))
    except ConfigInvalidError as exc:
        logger.error("Invalid sink configuration: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
