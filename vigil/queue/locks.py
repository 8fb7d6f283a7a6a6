"""
Distributed lock manager.

Named locks with a TTL, stored in ``job_locks``. All expiry handling lives
here: an expired row counts as absent on acquire, and ``sweep_expired`` is
housekeeping only.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vigil.clock import utcnow
from vigil.db.connection import session_scope
from vigil.db.locks import LockRepository
from vigil.observability.metrics import MetricsCollector, get_metrics

logger = logging.getLogger(__name__)


class LockManager:
    """Acquire/release named locks; contention returns False and never waits."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        metrics: MetricsCollector | None = None,
    ):
        self._session_factory = session_factory
        self._metrics = metrics or get_metrics()

    async def acquire(self, lock_key: str, owner: str, ttl_seconds: int) -> bool:
        """
        Try to take ``lock_key`` for ``ttl_seconds``.

        Returns:
            True if ``owner`` now holds the lock.
        """
        now = utcnow()
        async with session_scope(self._session_factory) as session:
            acquired = await LockRepository(session).acquire(
                lock_key=lock_key,
                owner=owner,
                now=now,
                expires_at=now + timedelta(seconds=ttl_seconds),
            )

        self._metrics.record_lock_attempt(lock_key, acquired)
        if acquired:
            logger.info("Lock acquired", extra={"lock_key": lock_key, "owner": owner})
        else:
            logger.info("Lock held elsewhere", extra={"lock_key": lock_key, "owner": owner})
        return acquired

    async def release(self, lock_key: str, owner: str) -> bool:
        """Release ``lock_key`` if ``owner`` still holds it."""
        async with session_scope(self._session_factory) as session:
            released = await LockRepository(session).release(lock_key, owner)
        if not released:
            logger.warning(
                "Lock was not held at release",
                extra={"lock_key": lock_key, "owner": owner},
            )
        return released

    async def sweep_expired(self) -> int:
        """Delete lock rows past their expiry."""
        async with session_scope(self._session_factory) as session:
            return await LockRepository(session).sweep_expired(utcnow())

    @asynccontextmanager
    async def hold(self, lock_key: str, owner: str, ttl_seconds: int) -> AsyncIterator[bool]:
        """
        Hold ``lock_key`` for the duration of the block.

        Yields whether the lock was acquired; the block decides what to do
        when it was not. Release happens only if acquired.
        """
        acquired = await self.acquire(lock_key, owner, ttl_seconds)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release(lock_key, owner)
