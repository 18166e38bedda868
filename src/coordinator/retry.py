"""Bounded retry with linear backoff.

Only ``TransientSyncError`` is retried.  Permanent failures, and any
exception the caller has not classified, surface on the first occurrence.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from src.coordinator import metrics
from src.coordinator.errors import RetryExhaustedError, TransientSyncError

logger = logging.getLogger("gatewaysync.coordinator.retry")

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(base_delay_s: float, attempt: int) -> float:
    """Delay before retrying after failed attempt number ``attempt`` (1-based)."""
    return base_delay_s * attempt


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    attempts: int,
    base_delay_s: float,
    *,
    sleep: Sleep = asyncio.sleep,
    label: str = "operation",
    on_attempt: Callable[[int], Awaitable[None] | None] | None = None,
) -> T:
    """Run ``operation`` with up to ``attempts`` total calls.

    After the n-th transient failure the engine waits ``base_delay_s * n``
    before the next call.

    Args:
        operation:    Zero-argument coroutine factory.  Called once per attempt.
        attempts:     Total number of calls allowed (>= 1).
        base_delay_s: Linear backoff unit in seconds.
        sleep:        Awaitable sleep, injectable for tests.
        label:        Operation name for logs and metrics ('fetch', 'write').
        on_attempt:   Optional callback invoked with the attempt number
                      before each call.  May be a coroutine function; an
                      exception it raises aborts the retry loop.

    Returns:
        Whatever ``operation`` returns.

    Raises:
        PermanentSyncError: Re-raised immediately, never retried.
        RetryExhaustedError: When every attempt failed transiently.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    last_error: TransientSyncError | None = None
    for attempt in range(1, attempts + 1):
        if on_attempt is not None:
            result = on_attempt(attempt)
            if asyncio.iscoroutine(result):
                await result
        try:
            return await operation()
        except TransientSyncError as exc:
            last_error = exc
            if attempt == attempts:
                break
            delay = backoff_delay(base_delay_s, attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                label, attempt, attempts, delay, exc,
            )
            metrics.RETRY_ATTEMPTS.labels(operation=label).inc()
            await sleep(delay)

    assert last_error is not None
    logger.error("%s failed after %d attempts: %s", label, attempts, last_error)
    raise RetryExhaustedError(
        f"{label} failed after {attempts} attempts",
        attempts=attempts,
        last_error=last_error,
    ) from last_error
