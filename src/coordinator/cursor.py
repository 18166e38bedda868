"""Per-scope cursor persistence.

The cursor is the watermark up to which a scope has been durably synced.
It lives in the shared store under ``cursor:{scope}`` as JSON so any process
that later wins the scope lock resumes from the same point.

Writes never move a cursor backwards, and only the current lock holder
can write.
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace

from src.coordinator.base import LockLease, SyncScope, utc_now
from src.coordinator.errors import LockLostError
from src.coordinator.lock import lock_key
from src.coordinator.store import KeyValueStore

logger = logging.getLogger("gatewaysync.coordinator.cursor")


def cursor_key(scope: str) -> str:
    return f"cursor:{scope}"


class CursorStore:
    """Load and advance ``SyncScope`` records.

    Only the holder of the scope lock may call the mutating methods.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def load(self, scope: str) -> SyncScope:
        """Return the scope record, creating it (cursor 0) on first use."""
        raw = await self._store.get(cursor_key(scope))
        if raw is None:
            record = SyncScope(scope_id=scope, updated_at=utc_now())
            await self._save(record)
            logger.info("Initialized cursor for new scope %s", scope)
            return record
        try:
            return SyncScope.from_json(json.loads(raw))
        except (ValueError, KeyError) as exc:
            # Replay from 0 is absorbed by the dedup cache.
            logger.error("Corrupt cursor record for %s, restarting from 0: %s", scope, exc)
            return SyncScope(scope_id=scope)

    async def advance(
        self, record: SyncScope, cursor: int, written: int, lease: LockLease
    ) -> SyncScope:
        """Move the cursor forward after a durable write acknowledgement.

        The store applies the write only while ``lease`` still owns the scope
        lock and the stored cursor is not ahead of ``cursor``, so a process
        whose lease expired mid-pass cannot rewind a newer holder's progress.

        Args:
            record:  The scope record loaded at the start of the pass.
            cursor:  Cursor of the last message in the acknowledged batch.
            written: Messages the sink acknowledged in that batch.
            lease:   The pass's lock lease.

        Returns:
            The updated record (same object).

        Raises:
            LockLostError: If the store refused the write.
        """
        if cursor < record.cursor:
            logger.warning(
                "Refusing to move cursor for %s backwards (%d -> %d)",
                record.scope_id, record.cursor, cursor,
            )
            return record
        updated = replace(
            record,
            cursor=cursor,
            total_synced=record.total_synced + written,
            updated_at=utc_now(),
        )
        if not await self._fenced_save(updated, lease):
            raise LockLostError(
                "Cursor write refused: scope lock lost or stored cursor ahead",
                context={"scope": record.scope_id, "cursor": cursor, "token": lease.token},
            )
        record.cursor = updated.cursor
        record.total_synced = updated.total_synced
        record.updated_at = updated.updated_at
        return record

    async def record_outcome(
        self, record: SyncScope, lease: LockLease, status: str, error: str | None = None
    ) -> bool:
        """Persist the outcome of a pass without touching the cursor.

        Status fields are applied to the stored record, not to ``record``,
        so a pass that never advanced cannot write back a stale cursor.

        Returns:
            False if the store refused the write (lock no longer held).
        """
        raw = await self._store.get(cursor_key(record.scope_id))
        current = record
        if raw is not None:
            try:
                current = SyncScope.from_json(json.loads(raw))
            except (ValueError, KeyError):
                # Corrupt record, already reported by load().
                pass
        updated = replace(current, last_status=status, last_error=error, updated_at=utc_now())
        saved = await self._fenced_save(updated, lease)
        if saved:
            record.last_status = status
            record.last_error = error
        else:
            logger.warning(
                "Pass outcome for %s not recorded: scope lock no longer held", record.scope_id
            )
        return saved

    async def _save(self, record: SyncScope) -> None:
        await self._store.set(cursor_key(record.scope_id), json.dumps(record.to_json()))

    async def _fenced_save(self, record: SyncScope, lease: LockLease) -> bool:
        return await self._store.set_cursor_if_owner(
            cursor_key(record.scope_id),
            json.dumps(record.to_json()),
            record.cursor,
            lock_key(record.scope_id),
            lease.token,
        )
