"""
Queue repositories for database operations.
Implements the data access patterns shared by the job queue and the
ingestion queue. Repositories never commit; the caller owns the transaction.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Generic, Sequence, TypeVar
from uuid import UUID, uuid4

from sqlalchemy import and_, case, delete, exists, func, or_, select, text, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from vigil.clock import ensure_utc, utcnow
from vigil.constants import (
    ACTIVE_STATUSES,
    PRIORITY_RANKS,
    PURGEABLE_STATUSES,
    ErrorCategory,
    EventKind,
    JobPriority,
    JobStatus,
)
from vigil.db.models import ACTIVE_PREDICATE, IngestedEvent, Job
from vigil.types.job import QueueStats

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", Job, IngestedEvent)


def dialect_insert(session: AsyncSession, model: Any):
    """
    INSERT construct for the session's dialect.

    Both PostgreSQL and SQLite support ``ON CONFLICT``; the generic
    ``sqlalchemy.insert`` does not expose it.
    """
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert(model)
    return sqlite.insert(model)


class LeasedRepository(Generic[RecordT]):
    """
    Lease-based queue operations over one table.

    Implements atomic operations for:
    - Claiming with FOR UPDATE SKIP LOCKED (no double-claim)
    - Conditional state transitions guarded by lease owner and attempts
    - Stale lease reclaim
    - Dead-letter listing and re-enqueue
    - Retention purge
    """

    model: type[RecordT]

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    def _claim_order(self) -> list[Any]:
        return [self.model.scheduled_at.asc(), self.model.created_at.asc()]

    def _sort_key(self, record: RecordT) -> tuple:
        return (ensure_utc(record.scheduled_at), ensure_utc(record.created_at))

    def _requeue_guards(self) -> list[Any]:
        return []

    async def get(self, record_id: UUID) -> RecordT | None:
        """
        Get a record by ID, always reading the current row.

        Args:
            record_id: The record UUID.

        Returns:
            The record or None if not found.
        """
        stmt = (
            select(self.model)
            .where(self.model.id == record_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def claim(
        self,
        worker_id: str,
        batch_size: int,
        lease_seconds: int,
        now: datetime | None = None,
    ) -> list[RecordT]:
        """
        Lease up to ``batch_size`` due records in one statement.

        The inner SELECT locks candidate rows with SKIP LOCKED so concurrent
        claimers partition the queue instead of waiting on each other. The
        outer UPDATE re-checks ``status`` so a row can only move to
        processing once.

        Args:
            worker_id: The claiming worker.
            batch_size: Maximum number of records.
            lease_seconds: Lease duration.
            now: Claim time.

        Returns:
            Claimed records in claim order.
        """
        now = now or utcnow()
        lease_expires_at = now + timedelta(seconds=lease_seconds)

        eligible = (
            select(self.model.id)
            .where(
                self.model.status == JobStatus.PENDING,
                self.model.scheduled_at <= now,
            )
            .order_by(*self._claim_order())
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(self.model)
            .where(
                self.model.id.in_(eligible),
                self.model.status == JobStatus.PENDING,
            )
            .values(
                status=JobStatus.PROCESSING,
                lease_owner=worker_id,
                lease_expires_at=lease_expires_at,
                updated_at=now,
            )
            .returning(self.model)
            .execution_options(synchronize_session=False, populate_existing=True)
        )

        result = await self._session.execute(stmt)
        records = sorted(result.scalars().all(), key=self._sort_key)

        if records:
            logger.info(
                f"Claimed {len(records)} records",
                extra={
                    "table": self.model.__tablename__,
                    "worker_id": worker_id,
                    "count": len(records),
                },
            )
        return records

    async def transition(
        self,
        record_id: UUID,
        worker_id: str,
        expected_attempts: int,
        values: dict[str, Any],
        now: datetime | None = None,
    ) -> RecordT | None:
        """
        Apply an outcome transition if the caller still owns the lease.

        The guard on ``attempts`` rejects a report from a previous lease of
        the same worker after the record was reclaimed and re-claimed.

        Returns:
            Updated record or None if the report is stale.
        """
        now = now or utcnow()
        stmt = (
            update(self.model)
            .where(
                self.model.id == record_id,
                self.model.status == JobStatus.PROCESSING,
                self.model.lease_owner == worker_id,
                self.model.attempts == expected_attempts,
            )
            .values(**values, updated_at=now)
            .returning(self.model)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def reclaim_stale(
        self,
        now: datetime | None = None,
        charge_attempt: bool = False,
    ) -> int:
        """
        Return processing records with expired leases to pending.

        With ``charge_attempt`` the expiry counts as a timeout failure, and
        records that run out of attempts go to the dead-letter state.

        Returns:
            Number of records reclaimed.
        """
        now = now or utcnow()
        expired = and_(
            self.model.status == JobStatus.PROCESSING,
            self.model.lease_expires_at < now,
        )
        cleared = {"lease_owner": None, "lease_expires_at": None, "updated_at": now}
        count = 0

        if charge_attempt:
            exhausted = (
                update(self.model)
                .where(expired, self.model.attempts + 1 >= self.model.max_attempts)
                .values(
                    status=JobStatus.DEAD_LETTER,
                    attempts=self.model.attempts + 1,
                    last_error="lease expired",
                    last_error_category=ErrorCategory.TIMEOUT,
                    completed_at=now,
                    **cleared,
                )
                .execution_options(synchronize_session=False)
            )
            result = await self._session.execute(exhausted)
            count += result.rowcount

        values: dict[str, Any] = {"status": JobStatus.PENDING, "scheduled_at": now, **cleared}
        if charge_attempt:
            values.update(
                attempts=self.model.attempts + 1,
                last_error="lease expired",
                last_error_category=ErrorCategory.TIMEOUT,
            )
        stmt = update(self.model).where(expired).values(**values).execution_options(
            synchronize_session=False
        )
        result = await self._session.execute(stmt)
        count += result.rowcount

        if count > 0:
            logger.info(
                f"Reclaimed {count} records with expired leases",
                extra={"table": self.model.__tablename__, "count": count},
            )
        return count

    async def cancel(
        self,
        record_id: UUID,
        tenant_id: str | None = None,
        now: datetime | None = None,
    ) -> RecordT | None:
        """
        Cancel a pending or processing record.

        An in-flight executor is not interrupted; its later report fails the
        lease guard and is dropped.
        """
        now = now or utcnow()
        filters = [self.model.id == record_id, self.model.status.in_(ACTIVE_STATUSES)]
        if tenant_id is not None:
            filters.append(self.model.tenant_id == tenant_id)

        stmt = (
            update(self.model)
            .where(*filters)
            .values(
                status=JobStatus.CANCELLED,
                lease_owner=None,
                lease_expires_at=None,
                completed_at=now,
                updated_at=now,
            )
            .returning(self.model)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def stats(
        self,
        recent_since: datetime,
        tenant_id: str | None = None,
    ) -> QueueStats:
        """
        Count records by status.

        Args:
            recent_since: Lower bound for ``completed_recent``.
            tenant_id: Optional tenant filter.
        """
        filters = []
        if tenant_id is not None:
            filters.append(self.model.tenant_id == tenant_id)

        stmt = select(self.model.status, func.count()).group_by(self.model.status)
        if filters:
            stmt = stmt.where(*filters)
        result = await self._session.execute(stmt)
        counts = {JobStatus(status): count for status, count in result.all()}

        recent_stmt = select(func.count()).select_from(self.model).where(
            self.model.status == JobStatus.COMPLETED,
            self.model.completed_at >= recent_since,
            *filters,
        )
        recent = (await self._session.execute(recent_stmt)).scalar() or 0

        return QueueStats(
            pending=counts.get(JobStatus.PENDING, 0),
            processing=counts.get(JobStatus.PROCESSING, 0),
            dead_letter=counts.get(JobStatus.DEAD_LETTER, 0),
            completed_recent=recent,
            by_category=await self.dead_letter_counts(tenant_id),
        )

    async def dead_letter_counts(self, tenant_id: str | None = None) -> dict[str, int]:
        """Dead-letter counts keyed by error category."""
        stmt = (
            select(self.model.last_error_category, func.count())
            .where(self.model.status == JobStatus.DEAD_LETTER)
            .group_by(self.model.last_error_category)
        )
        if tenant_id is not None:
            stmt = stmt.where(self.model.tenant_id == tenant_id)
        result = await self._session.execute(stmt)
        return {
            str(category or ErrorCategory.OTHER): count
            for category, count in result.all()
        }

    async def list_dead_letters(
        self,
        tenant_id: str | None = None,
        category: ErrorCategory | None = None,
        limit: int = 100,
    ) -> Sequence[RecordT]:
        """List dead-lettered records, most recent first."""
        stmt = select(self.model).where(self.model.status == JobStatus.DEAD_LETTER)
        if tenant_id is not None:
            stmt = stmt.where(self.model.tenant_id == tenant_id)
        if category is not None:
            stmt = stmt.where(self.model.last_error_category == category)
        stmt = stmt.order_by(self.model.updated_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def requeue_dead_letter(
        self,
        record_id: UUID,
        scheduled_at: datetime,
        max_requeues: int,
        tenant_id: str | None = None,
        now: datetime | None = None,
    ) -> RecordT | None:
        """
        Move a dead-lettered record back to pending once.

        ``attempts`` is left as is and ``max_attempts`` becomes
        ``attempts + 1``, so the record gets exactly one more execution
        before it dead-letters again, whatever category put it there.
        Credential failures are never requeued.

        Returns:
            Updated record or None if it is not eligible.
        """
        now = now or utcnow()
        filters = [
            self.model.id == record_id,
            self.model.status == JobStatus.DEAD_LETTER,
            self.model.requeue_count < max_requeues,
            or_(
                self.model.last_error_category.is_(None),
                self.model.last_error_category != ErrorCategory.CREDENTIAL_INVALID,
            ),
        ]
        filters.extend(self._requeue_guards())
        if tenant_id is not None:
            filters.append(self.model.tenant_id == tenant_id)

        stmt = (
            update(self.model)
            .where(*filters)
            .values(
                status=JobStatus.PENDING,
                scheduled_at=scheduled_at,
                max_attempts=self.model.attempts + 1,
                requeue_count=self.model.requeue_count + 1,
                completed_at=None,
                lease_owner=None,
                lease_expires_at=None,
                updated_at=now,
            )
            .returning(self.model)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        result = await self._session.execute(stmt)
        record = result.scalar_one_or_none()

        if record:
            logger.info(
                "Dead letter requeued",
                extra={"table": self.model.__tablename__, "record_id": str(record_id)},
            )
        return record

    async def purge_terminal(self, before: datetime) -> int:
        """
        Delete completed and cancelled records finished before ``before``.

        Dead letters are kept for triage.
        """
        stmt = (
            delete(self.model)
            .where(
                self.model.status.in_(PURGEABLE_STATUSES),
                func.coalesce(self.model.completed_at, self.model.updated_at) < before,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount


class JobRepository(LeasedRepository[Job]):
    """Job table: priority tiers and active-only dedupe."""

    model = Job

    def _claim_order(self) -> list[Any]:
        rank = case(PRIORITY_RANKS, value=Job.priority, else_=0)
        return [rank.desc(), Job.scheduled_at.asc(), Job.created_at.asc()]

    def _sort_key(self, record: Job) -> tuple:
        return (-record.priority_rank, *super()._sort_key(record))

    def _requeue_guards(self) -> list[Any]:
        # A newer active job for the same key holds the partial unique index
        active = aliased(Job)
        return [
            ~exists().where(
                active.dedupe_key == Job.dedupe_key,
                active.status.in_(ACTIVE_STATUSES),
            )
        ]

    async def insert(
        self,
        tenant_id: str,
        subject_id: str,
        job_type: str,
        dedupe_key: str,
        payload: dict[str, Any],
        priority: JobPriority,
        max_attempts: int,
        scheduled_at: datetime,
        now: datetime | None = None,
    ) -> tuple[Job | None, bool]:
        """
        Insert a job unless an active job with the same dedupe key exists.

        Uses INSERT ... ON CONFLICT DO NOTHING against the partial unique
        index on active jobs.

        Returns:
            Tuple of (Job, created). On conflict the active job is returned
            with created False.
        """
        now = now or utcnow()
        stmt = (
            dialect_insert(self._session, Job)
            .values(
                id=uuid4(),
                tenant_id=tenant_id,
                subject_id=subject_id,
                job_type=job_type,
                dedupe_key=dedupe_key,
                payload=payload,
                priority=priority,
                max_attempts=max_attempts,
                scheduled_at=scheduled_at,
                status=JobStatus.PENDING,
                attempts=0,
                requeue_count=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(
                index_elements=["dedupe_key"],
                index_where=text(ACTIVE_PREDICATE),
            )
            .returning(Job)
        )
        result = await self._session.execute(stmt)
        job = result.scalar_one_or_none()

        if job is not None:
            logger.info(
                "Created new job",
                extra={"job_id": str(job.id), "job_type": job_type, "subject_id": subject_id},
            )
            return job, True

        return await self.find_active(dedupe_key), False

    async def find_active(self, dedupe_key: str) -> Job | None:
        """Get the pending or processing job for a dedupe key."""
        stmt = (
            select(Job)
            .where(Job.dedupe_key == dedupe_key, Job.status.in_(ACTIVE_STATUSES))
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def latest_statuses(self, dedupe_keys: list[str]) -> dict[str, JobStatus]:
        """
        Status of the most recent job for each dedupe key.

        Keys that never had a job (or whose jobs were purged) are absent.
        """
        if not dedupe_keys:
            return {}
        stmt = (
            select(Job.dedupe_key, Job.status)
            .where(Job.dedupe_key.in_(dedupe_keys))
            .order_by(Job.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return {key: JobStatus(status) for key, status in result.all()}

    async def escalate(
        self,
        job_id: UUID,
        priority: JobPriority,
        scheduled_at: datetime,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Raise priority and/or pull scheduled_at earlier on a pending job.

        Callers pass the already-merged values; the update only applies
        while the job is still pending.
        """
        now = now or utcnow()
        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.PENDING)
            .values(priority=priority, scheduled_at=scheduled_at, updated_at=now)
            .returning(Job)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


class EventRepository(LeasedRepository[IngestedEvent]):
    """Ingested notification table: no priority, lifetime dedupe."""

    model = IngestedEvent

    async def insert(
        self,
        tenant_id: str,
        store_id: str,
        source: str,
        topic: str,
        kind: EventKind,
        resource: str,
        external_account_id: str,
        raw_payload: dict[str, Any],
        dedupe_key: str,
        max_attempts: int,
        now: datetime | None = None,
    ) -> tuple[IngestedEvent | None, bool]:
        """
        Insert-or-ignore by dedupe key.

        Returns:
            Tuple of (event, created). A duplicate returns the stored event
            with created False.
        """
        now = now or utcnow()
        stmt = (
            dialect_insert(self._session, IngestedEvent)
            .values(
                id=uuid4(),
                tenant_id=tenant_id,
                store_id=store_id,
                source=source,
                topic=topic,
                kind=kind,
                resource=resource,
                external_account_id=external_account_id,
                raw_payload=raw_payload,
                dedupe_key=dedupe_key,
                max_attempts=max_attempts,
                status=JobStatus.PENDING,
                attempts=0,
                requeue_count=0,
                scheduled_at=now,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["dedupe_key"])
            .returning(IngestedEvent)
        )
        result = await self._session.execute(stmt)
        event = result.scalar_one_or_none()
        if event is not None:
            return event, True
        return await self.find_by_dedupe_key(dedupe_key), False

    async def find_by_dedupe_key(self, dedupe_key: str) -> IngestedEvent | None:
        stmt = select(IngestedEvent).where(IngestedEvent.dedupe_key == dedupe_key)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()
