"""Error hierarchy for the sync coordinator.

Every failure the coordinator reasons about is a ``SyncError`` subclass.
The retry engine only needs to know whether an error is a
``TransientSyncError`` (retry with backoff) or anything else (surface
immediately).

Usage::

    from src.coordinator.errors import WriteTransientError

    try:
        await sink.write(batch)
    except WriteTransientError as exc:
        logger.warning("Sink unavailable: %s", exc)
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "ConfigInvalidError",
    "FetchPermanentError",
    "FetchTransientError",
    "LockLostError",
    "LockUnavailableError",
    "PermanentSyncError",
    "RetryExhaustedError",
    "StoreUnavailableError",
    "SyncError",
    "TransientSyncError",
    "WritePermanentError",
    "WriteTransientError",
]


class SyncError(Exception):
    """Base exception for all sync coordinator errors.

    Attributes:
        code:    Machine-readable error code.
        message: Human-readable description.
        context: Extra fields for logging.
    """

    code: str = "SYNC_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"[{self.code}] {self.message} ({ctx})"
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
        }


# =============================================================================
# Lock errors
# =============================================================================


class LockUnavailableError(SyncError):
    """The scope lock is held elsewhere or the store is unreachable.

    Never fatal: the tick is skipped.
    """

    code: str = "LOCK_UNAVAILABLE"


class LockLostError(SyncError):
    """This process no longer owns the scope lock.

    The in-flight pass must stop writing and must not release the lock.
    """

    code: str = "LOCK_LOST"


# =============================================================================
# Fetch / write errors
# =============================================================================


class TransientSyncError(SyncError):
    """Retryable failure (network, timeout, sink unavailable)."""

    code: str = "TRANSIENT"


class PermanentSyncError(SyncError):
    """Non-retryable failure (malformed payload, auth rejection)."""

    code: str = "PERMANENT"


class FetchTransientError(TransientSyncError):
    code: str = "FETCH_TRANSIENT"


class FetchPermanentError(PermanentSyncError):
    code: str = "FETCH_PERMANENT"


class WriteTransientError(TransientSyncError):
    code: str = "WRITE_TRANSIENT"


class WritePermanentError(PermanentSyncError):
    code: str = "WRITE_PERMANENT"


class RetryExhaustedError(SyncError):
    """All retry attempts failed with transient errors.

    Attributes:
        attempts:   Number of calls made.
        last_error: The error raised by the final attempt.
    """

    code: str = "RETRY_EXHAUSTED"

    def __init__(self, message: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            message,
            context={"attempts": attempts, "last_error": str(last_error)},
        )
        self.attempts = attempts
        self.last_error = last_error


# =============================================================================
# Configuration errors
# =============================================================================


class ConfigInvalidError(SyncError):
    """Missing or invalid configuration. Fatal at startup."""

    code: str = "CONFIG_INVALID"


# =============================================================================
# Store errors
# =============================================================================


class StoreUnavailableError(TransientSyncError):
    """The shared lock/cache store could not be reached."""

    code: str = "STORE_UNAVAILABLE"
