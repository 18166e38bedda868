"""PostgreSQL sink — idempotent upsert keyed by message identity.

Rows land in ``synced_messages`` (table name configurable).  The UNIQUE
constraint on (scope, message_id, direction) makes a replayed batch update
the existing rows instead of inserting duplicates, while the same source id
seen by two scopes keeps two rows.

Uses ``asyncpg`` with a small connection pool owned by the sink.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re

import asyncpg

from src.coordinator.base import Message
from src.coordinator.errors import WritePermanentError, WriteTransientError
from src.coordinator.sinks.base import SinkAdapter, WriteAck

logger = logging.getLogger("gatewaysync.coordinator.sinks.postgres")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

COLUMNS = ["message_id", "direction", "scope", "cursor", "observed_at", "payload"]
CONFLICT_COLUMNS = ["scope", "message_id", "direction"]

# Errors that mean "the server or the link is unhealthy right now".
_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.SerializationError,
)


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    Generates idempotent writes — safe to call multiple times with the same
    data.  On conflict, updates the non-key columns.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(
            f"{col} = EXCLUDED.{col}" for col in update_columns
        )
        update_set += ", updated_at = NOW()"
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )


def build_schema_ddl(table: str) -> str:
    return f"""
        CREATE TABLE IF NOT EXISTS {table} (
            message_id  TEXT        NOT NULL,
            direction   TEXT        NOT NULL,
            scope       TEXT        NOT NULL,
            cursor      BIGINT      NOT NULL,
            observed_at TIMESTAMPTZ NOT NULL,
            payload     JSONB       NOT NULL DEFAULT '{{}}'::jsonb,
            created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            UNIQUE (scope, message_id, direction)
        );
        CREATE INDEX IF NOT EXISTS {table.replace('.', '_')}_scope_cursor_idx
            ON {table} (scope, cursor);
    """


def _row(message: Message) -> tuple:
    return (
        message.message_id,
        message.direction.value,
        message.scope,
        message.cursor,
        message.observed_at,
        json.dumps(message.payload, default=str),
    )


class PostgresSink(SinkAdapter):
    """Upsert batches into a PostgreSQL table in one transaction."""

    SINK_ID = "postgres"

    def __init__(
        self,
        dsn: str,
        table: str = "synced_messages",
        pool: asyncpg.Pool | None = None,
        ensure_schema: bool = True,
        command_timeout: float = 30,
    ) -> None:
        """Initialize the sink.

        Args:
            dsn:             Connection string (POSTGRES_URL / DATABASE_URL).
            table:           Target table, optionally schema-qualified.
            pool:            Pre-built pool (for testing).  Not closed by the sink.
            ensure_schema:   Create the table on ``open`` if missing.
            command_timeout: Per-statement timeout in seconds.
        """
        if not _IDENTIFIER.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        self._dsn = dsn
        self._table = table
        self._pool = pool
        self._owns_pool = pool is None
        self._ensure_schema = ensure_schema
        self._command_timeout = command_timeout
        self._query = build_upsert_query(table, COLUMNS, CONFLICT_COLUMNS)

    @property
    def query(self) -> str:
        return self._query

    async def open(self) -> None:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self._dsn,
                min_size=1,
                max_size=5,
                command_timeout=self._command_timeout,
            )
            logger.info("Postgres sink pool initialized (min=1, max=5)")
        if self._ensure_schema:
            async with self._pool.acquire() as conn:
                await conn.execute(build_schema_ddl(self._table))

    async def close(self) -> None:
        if self._pool is not None and self._owns_pool:
            await self._pool.close()
            self._pool = None
            logger.info("Postgres sink pool closed")

    async def _write(self, batch: list[Message]) -> WriteAck:
        if self._pool is None:
            raise WriteTransientError("Postgres sink is not open")

        rows = [_row(m) for m in batch]
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.executemany(self._query, rows)
        except _TRANSIENT_ERRORS as exc:
            raise WriteTransientError(
                f"Postgres unavailable: {exc}", context={"table": self._table}
            ) from exc
        except asyncpg.PostgresError as exc:
            raise WritePermanentError(
                f"Postgres rejected batch: {exc}", context={"table": self._table}
            ) from exc

        logger.info("[postgres] Upserted %d messages into %s", len(rows), self._table)
        return WriteAck(count=len(rows), sink=self.SINK_ID, detail=self._table)
