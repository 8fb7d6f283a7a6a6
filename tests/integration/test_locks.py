"""
Integration tests for the distributed lock manager.
"""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import update

from vigil.clock import utcnow
from vigil.db.locks import LockRepository
from vigil.db.models import JobLock
from vigil.queue.locks import LockManager


class TestLockManager:
    """Tests for acquire, release, expiry and hold."""

    @pytest_asyncio.fixture
    async def locks(self, session_factory, metrics) -> LockManager:
        return LockManager(session_factory, metrics)

    async def _expire(self, session_factory, lock_key: str) -> None:
        async with session_factory() as session:
            await session.execute(
                update(JobLock)
                .where(JobLock.lock_key == lock_key)
                .values(expires_at=utcnow() - timedelta(seconds=1))
            )
            await session.commit()

    @pytest.mark.asyncio
    async def test_acquire_is_exclusive(self, locks: LockManager):
        """A live lock cannot be taken by another owner."""
        assert await locks.acquire("cron:test", "a", 60) is True
        assert await locks.acquire("cron:test", "b", 60) is False

    @pytest.mark.asyncio
    async def test_owner_cannot_reacquire_live_lock(self, locks: LockManager):
        """Acquire is not reentrant."""
        assert await locks.acquire("cron:test", "a", 60) is True
        assert await locks.acquire("cron:test", "a", 60) is False

    @pytest.mark.asyncio
    async def test_expired_lock_taken_over(self, locks: LockManager, session_factory):
        """An expired lock is treated as absent."""
        await locks.acquire("cron:test", "a", 60)
        await self._expire(session_factory, "cron:test")

        assert await locks.acquire("cron:test", "b", 60) is True
        async with session_factory() as session:
            lock = await LockRepository(session).get("cron:test")
        assert lock.owner == "b"

    @pytest.mark.asyncio
    async def test_release_by_owner_only(self, locks: LockManager):
        """Only the holder releases; a stale owner's release is a no-op."""
        await locks.acquire("cron:test", "a", 60)

        assert await locks.release("cron:test", "b") is False
        assert await locks.acquire("cron:test", "b", 60) is False
        assert await locks.release("cron:test", "a") is True
        assert await locks.acquire("cron:test", "b", 60) is True

    @pytest.mark.asyncio
    async def test_stale_owner_release_after_takeover(self, locks: LockManager, session_factory):
        """The original owner cannot release a lock someone took over."""
        await locks.acquire("cron:test", "a", 60)
        await self._expire(session_factory, "cron:test")
        await locks.acquire("cron:test", "b", 60)

        assert await locks.release("cron:test", "a") is False
        assert await locks.acquire("cron:test", "c", 60) is False

    @pytest.mark.asyncio
    async def test_concurrent_acquire_single_winner(self, locks: LockManager):
        """Exactly one of many concurrent acquirers wins."""
        results = await asyncio.gather(
            *(locks.acquire("cron:race", f"owner-{i}", 60) for i in range(5))
        )

        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_independent_keys(self, locks: LockManager):
        """Different keys never contend."""
        assert await locks.acquire("cron:one", "a", 60) is True
        assert await locks.acquire("cron:two", "b", 60) is True

    @pytest.mark.asyncio
    async def test_hold_releases_on_exit(self, locks: LockManager):
        """hold releases the lock when the block ends, even on error."""
        with pytest.raises(RuntimeError):
            async with locks.hold("cron:test", "a", 60) as acquired:
                assert acquired is True
                raise RuntimeError("task failed")

        assert await locks.acquire("cron:test", "b", 60) is True

    @pytest.mark.asyncio
    async def test_hold_does_not_release_others_lock(self, locks: LockManager):
        """A losing hold leaves the winner's lock in place."""
        await locks.acquire("cron:test", "a", 60)

        async with locks.hold("cron:test", "b", 60) as acquired:
            assert acquired is False

        assert await locks.acquire("cron:test", "c", 60) is False

    @pytest.mark.asyncio
    async def test_sweep_expired(self, locks: LockManager, session_factory):
        """Sweeping removes only expired rows."""
        await locks.acquire("cron:old", "a", 60)
        await locks.acquire("cron:live", "a", 60)
        await self._expire(session_factory, "cron:old")

        assert await locks.sweep_expired() == 1
        assert await locks.acquire("cron:live", "b", 60) is False
