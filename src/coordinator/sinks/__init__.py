"""Downstream sinks for synced messages.

Each sink implements the SinkAdapter ABC and handles:
- Opening / closing its own connections
- Writing a batch durably or raising a classified error
- Tolerating a replayed batch

Available sinks:
    PostgresSink — idempotent upsert into a PostgreSQL table
    FileSink     — append-only JSON Lines files
    WebhookSink  — at-least-once HTTP POST per batch
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from src.coordinator.errors import ConfigInvalidError
from src.coordinator.sinks.base import SinkAdapter, WriteAck
from src.coordinator.sinks.file import FileSink
from src.coordinator.sinks.postgres import PostgresSink
from src.coordinator.sinks.webhook import WebhookSink

if TYPE_CHECKING:
    from src.config import Settings

__all__ = [
    "SinkAdapter",
    "WriteAck",
    "PostgresSink",
    "FileSink",
    "WebhookSink",
]

# Registry: sink name → adapter class
SINK_REGISTRY: dict[str, type[SinkAdapter]] = {
    "postgres": PostgresSink,
    "file": FileSink,
    "webhook": WebhookSink,
}


def get_sink(name: str) -> type[SinkAdapter]:
    """Return the sink class for a given name.

    Args:
        name: e.g. 'postgres', 'file', 'webhook'

    Returns:
        The sink class (not an instance).

    Raises:
        KeyError: If the name is not registered.
    """
    if name not in SINK_REGISTRY:
        raise KeyError(
            f"No sink registered for '{name}'. "
            f"Available: {list(SINK_REGISTRY)}"
        )
    return SINK_REGISTRY[name]


def build_sink(settings: "Settings") -> SinkAdapter:
    """Instantiate the configured sink.

    Raises:
        ConfigInvalidError: If the sink is unknown or its parameters are invalid.
    """
    name = settings.sync_sink or ""
    try:
        sink_cls = get_sink(name)
    except KeyError as exc:
        raise ConfigInvalidError(str(exc), context={"sync_sink": name}) from exc

    try:
        if sink_cls is PostgresSink:
            return PostgresSink(settings.postgres_url or "", table=settings.postgres_table)
        if sink_cls is FileSink:
            return FileSink(settings.sync_file_path or "./data")
        return WebhookSink(
            settings.sync_webhook_url or "",
            secret=settings.sync_webhook_secret,
            timeout_s=settings.sync_webhook_timeout_s,
        )
    except ValueError as exc:
        raise ConfigInvalidError(str(exc), context={"sync_sink": name}) from exc
