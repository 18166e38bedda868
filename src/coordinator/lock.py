"""Distributed lock guarding one sync scope.

A scope lock is the key ``lock:{scope}`` holding an owner token, written with
set-if-absent and a lease expiry.  Ownership is proven only by the token:
renew and release are compare-by-token, so a process whose lease expired can
never extend or delete a lock that another holder has since acquired.

The store being unreachable makes ``acquire`` fail closed (Busy).  Missing a
tick is preferred over two processes syncing the same scope.
"""

from __future__ import annotations

import logging
import os
import socket
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

from src.coordinator import metrics
from src.coordinator.base import Clock, LockLease, system_clock
from src.coordinator.errors import LockUnavailableError, StoreUnavailableError
from src.coordinator.store import KeyValueStore

logger = logging.getLogger("gatewaysync.coordinator.lock")


def lock_key(scope: str) -> str:
    return f"lock:{scope}"


def new_owner_token() -> str:
    """Opaque token unique per process and per acquisition attempt."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex}"


class LockCoordinator:
    """Acquire, renew and release scope locks.

    Usage::

        locks = LockCoordinator(store)
        lease = await locks.acquire("dev-1", 300_000)
        if lease is None:
            return  # Busy: another process owns this scope
        try:
            ...
            if lease.needs_renewal(time.time()) and not await locks.renew(lease):
                ...  # Lost: abandon the pass, do not release
        finally:
            await locks.release(lease)
    """

    def __init__(self, store: KeyValueStore, clock: Clock = system_clock) -> None:
        self._store = store
        self._clock = clock

    async def acquire(self, scope: str, lease_ms: int) -> LockLease | None:
        """Try to take the scope lock.

        Args:
            scope:    Scope identifier.
            lease_ms: Lease duration in milliseconds.

        Returns:
            A LockLease on success, or None when the lock is Busy (held by
            another owner, or the store is unreachable).  Never blocks.
        """
        token = new_owner_token()
        try:
            acquired = await self._store.set_if_absent(lock_key(scope), token, lease_ms)
        except StoreUnavailableError as exc:
            logger.warning("Lock store unreachable acquiring %s, skipping tick: %s", scope, exc)
            metrics.LOCK_EVENTS.labels(scope=scope, event="store_unavailable").inc()
            return None

        if not acquired:
            logger.debug("Lock for %s is held by another worker", scope)
            metrics.LOCK_EVENTS.labels(scope=scope, event="busy").inc()
            return None

        now = self._clock()
        logger.debug("Lock for %s acquired by %s", scope, token)
        metrics.LOCK_EVENTS.labels(scope=scope, event="acquired").inc()
        return LockLease(
            scope=scope, token=token, lease_ms=lease_ms, acquired_at=now, renewed_at=now
        )

    async def renew(self, lease: LockLease, lease_ms: int | None = None) -> bool:
        """Extend the lease if this owner still holds it.

        Returns:
            True on success; False if the lock was Lost (expired and possibly
            taken over).  An unreachable store is reported as Lost — we can no
            longer prove ownership.
        """
        duration = lease_ms or lease.lease_ms
        try:
            ok = await self._store.compare_and_expire(
                lock_key(lease.scope), lease.token, duration
            )
        except StoreUnavailableError as exc:
            logger.warning("Lock store unreachable renewing %s: %s", lease.scope, exc)
            ok = False

        if not ok:
            logger.warning("Lock for %s lost before renewal (token %s)", lease.scope, lease.token)
            metrics.LOCK_EVENTS.labels(scope=lease.scope, event="lost").inc()
            return False

        lease.lease_ms = duration
        lease.renewed_at = self._clock()
        logger.debug("Lock for %s renewed for %d ms", lease.scope, duration)
        metrics.LOCK_EVENTS.labels(scope=lease.scope, event="renewed").inc()
        return True

    async def release(self, lease: LockLease) -> bool:
        """Compare-and-delete the scope lock.

        Returns:
            True if this owner's lock was deleted; False (Lost) on token
            mismatch or an unreachable store.  Lost is not an error: the
            lease has already passed to someone else or will expire.
        """
        try:
            released = await self._store.compare_and_delete(lock_key(lease.scope), lease.token)
        except StoreUnavailableError as exc:
            logger.warning(
                "Lock store unreachable releasing %s; lease will expire: %s",
                lease.scope, exc,
            )
            released = False

        if released:
            logger.debug("Lock for %s released by %s", lease.scope, lease.token)
            metrics.LOCK_EVENTS.labels(scope=lease.scope, event="released").inc()
        else:
            logger.warning("Lock for %s was no longer ours at release", lease.scope)
            metrics.LOCK_EVENTS.labels(scope=lease.scope, event="lost").inc()
        return released

    async def holder(self, scope: str) -> str | None:
        """Return the current owner token for ``scope`` (None if free)."""
        return await self._store.get(lock_key(scope))

    @asynccontextmanager
    async def hold(self, scope: str, lease_ms: int) -> AsyncIterator[LockLease]:
        """Context manager for scoped acquisition.

        Raises:
            LockUnavailableError: If the lock is Busy.
        """
        lease = await self.acquire(scope, lease_ms)
        if lease is None:
            raise LockUnavailableError("Scope is locked", context={"scope": scope})
        try:
            yield lease
        finally:
            await self.release(lease)
