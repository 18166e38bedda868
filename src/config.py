"""Application configuration loaded from environment variables."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings

from src.coordinator.errors import ConfigInvalidError

logger = logging.getLogger("gatewaysync.config")

SinkName = Literal["postgres", "file", "webhook"]

DEFAULT_FILE_SINK_PATH = "./data"


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Gateway Sync"
    app_version: str = "0.1.0"
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Sync loop ---
    sync_interval_ms: int = Field(default=60_000, gt=0)
    sync_lock_expiry_ms: int = Field(default=300_000, gt=0)
    sync_batch_size: int = Field(default=100, gt=0)
    sync_retry_attempts: int = Field(default=3, gt=0)
    sync_retry_delay_ms: int = Field(default=5_000, ge=0)
    sync_scopes: str = ""  # comma-separated scope ids, e.g. "dev-1,dev-2"

    # --- Sink ---
    sync_sink: SinkName | None = None  # inferred from the parameters below when unset
    postgres_url: str | None = Field(
        default=None, validation_alias=AliasChoices("postgres_url", "database_url")
    )
    postgres_table: str = "synced_messages"
    sync_file_path: str | None = None
    sync_webhook_url: str | None = None
    sync_webhook_secret: str | None = None  # HMAC signing key, optional
    sync_webhook_timeout_s: float = Field(default=10.0, gt=0)

    # --- Lock / cache store ---
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = ""
    lock_store_backend: Literal["redis", "memory"] = "redis"
    dedup_ttl_seconds: int = Field(default=7 * 24 * 3600, gt=0)

    # --- Session API ---
    session_api_url: str = "http://localhost:3000"
    session_api_key: str | None = None
    session_api_timeout_s: float = Field(default=10.0, gt=0)

    # --- Notifications ---
    notify_enabled: bool = True
    notify_channel_prefix: str = "sync:messages"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @model_validator(mode="after")
    def _resolve_sink(self) -> "Settings":
        if self.sync_sink is None:
            if self.postgres_url:
                self.sync_sink = "postgres"
            elif self.sync_file_path:
                self.sync_sink = "file"
            elif self.sync_webhook_url:
                self.sync_sink = "webhook"
            else:
                logger.warning(
                    "No downstream sink configured, using default file sink at %s",
                    DEFAULT_FILE_SINK_PATH,
                )
                self.sync_sink = "file"
                self.sync_file_path = DEFAULT_FILE_SINK_PATH

        required = {
            "postgres": ("postgres_url", "POSTGRES_URL or DATABASE_URL"),
            "file": ("sync_file_path", "SYNC_FILE_PATH"),
            "webhook": ("sync_webhook_url", "SYNC_WEBHOOK_URL"),
        }
        attr, env_name = required[self.sync_sink]
        if not getattr(self, attr):
            raise ValueError(f"SYNC_SINK={self.sync_sink} requires {env_name} to be set")
        return self

    @model_validator(mode="after")
    def _check_retry_budget(self) -> "Settings":
        # The lease is renewed between retries, not during a backoff sleep.
        if self.retry_backoff_total_ms >= self.sync_lock_expiry_ms / 2:
            raise ValueError(
                f"Retry backoff of {self.retry_backoff_total_ms} ms must be under half "
                f"of SYNC_LOCK_EXPIRY_MS ({self.sync_lock_expiry_ms} ms)"
            )
        return self

    # ------------------------------------------------------------------
    # Convenience accessors
    # ------------------------------------------------------------------

    @property
    def scopes(self) -> list[str]:
        """Configured scope ids, de-duplicated, in declaration order."""
        seen: dict[str, None] = {}
        for part in self.sync_scopes.split(","):
            part = part.strip()
            if part:
                seen.setdefault(part, None)
        return list(seen)

    @property
    def sync_interval_s(self) -> float:
        return self.sync_interval_ms / 1000.0

    @property
    def retry_delay_s(self) -> float:
        return self.sync_retry_delay_ms / 1000.0

    @property
    def retry_backoff_total_ms(self) -> int:
        """Worst-case time spent sleeping between attempts of one operation."""
        n = self.sync_retry_attempts
        return self.sync_retry_delay_ms * n * (n - 1) // 2

    def summary(self) -> dict:
        """Non-secret view of the sync configuration, logged at startup."""
        return {
            "sync_interval_ms": self.sync_interval_ms,
            "lock_expiry_ms": self.sync_lock_expiry_ms,
            "batch_size": self.sync_batch_size,
            "retry_attempts": self.sync_retry_attempts,
            "retry_delay_ms": self.sync_retry_delay_ms,
            "scopes": self.scopes,
            "sink": self.sync_sink,
            "lock_store_backend": self.lock_store_backend,
        }


def load_settings(**overrides: object) -> Settings:
    """Build and validate settings, converting validation failures.

    Raises:
        ConfigInvalidError: If any option is missing or invalid.  This is
            startup-fatal; callers must not catch it per tick.
    """
    try:
        return Settings(**overrides)  # type: ignore[arg-type]
    except ValidationError as exc:
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
            for err in exc.errors()
        ]
        raise ConfigInvalidError(
            "Invalid sync configuration",
            context={"errors": problems},
        ) from exc


@lru_cache
def get_settings() -> Settings:
    return load_settings()
