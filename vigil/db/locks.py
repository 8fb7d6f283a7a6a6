"""
Lock table data access.
"""

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from vigil.db.models import JobLock
from vigil.db.repository import dialect_insert


class LockRepository:
    """
    Conditional writes against ``job_locks``.

    ``acquire`` is a single upsert: insert the row, or take over an existing
    row only when it has expired. Whichever statement commits first wins;
    the loser sees a live row and gets nothing back.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def acquire(self, lock_key: str, owner: str, now: datetime, expires_at: datetime) -> bool:
        stmt = dialect_insert(self._session, JobLock).values(
            lock_key=lock_key,
            owner=owner,
            acquired_at=now,
            expires_at=expires_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["lock_key"],
            set_={
                "owner": stmt.excluded.owner,
                "acquired_at": stmt.excluded.acquired_at,
                "expires_at": stmt.excluded.expires_at,
            },
            where=JobLock.expires_at <= now,
        ).returning(JobLock.lock_key)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def release(self, lock_key: str, owner: str) -> bool:
        stmt = delete(JobLock).where(JobLock.lock_key == lock_key, JobLock.owner == owner)
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def sweep_expired(self, now: datetime) -> int:
        stmt = delete(JobLock).where(JobLock.expires_at <= now)
        result = await self._session.execute(stmt)
        return result.rowcount

    async def get(self, lock_key: str) -> JobLock | None:
        stmt = (
            select(JobLock)
            .where(JobLock.lock_key == lock_key)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()
