"""
Leased queue service.

Wraps a ``LeasedRepository`` with transaction handling, the retry policy,
metrics and tracing. Every state transition runs in its own transaction,
so progress already made survives a later failure in the same batch.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any, Generic, Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vigil.clock import utcnow
from vigil.config import Settings, get_settings
from vigil.constants import (
    SPAN_CLAIM,
    SPAN_REPORT,
    ErrorCategory,
    JobStatus,
)
from vigil.db.connection import session_scope
from vigil.db.repository import LeasedRepository, RecordT
from vigil.errors import InvalidTransitionError, JobNotFoundError
from vigil.observability.metrics import MetricsCollector, get_metrics
from vigil.observability.tracing import get_tracer
from vigil.queue.retry import RetryDecision, RetryPolicy
from vigil.types.job import ExecutionOutcome, JobContext, QueueStats

logger = logging.getLogger(__name__)

# Called inside the outcome transaction when a subject must be flagged
SubjectFlagger = Callable[[AsyncSession, Any], Awaitable[None]]


class LeasedQueue(Generic[RecordT]):
    """
    Claim / report / triage operations for one leased table.

    Subclasses set ``name`` and ``repository_cls`` and add their own
    ``enqueue``.
    """

    name: str
    repository_cls: type[LeasedRepository]

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy: RetryPolicy | None = None,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
        on_credential_invalid: SubjectFlagger | None = None,
    ):
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._policy = policy or RetryPolicy(self._settings)
        self._metrics = metrics or get_metrics()
        self._on_credential_invalid = on_credential_invalid

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def get(self, record_id: UUID, tenant_id: str | None = None) -> RecordT | None:
        async with session_scope(self._session_factory) as session:
            record = await self.repository_cls(session).get(record_id)
        if record is not None and tenant_id is not None and record.tenant_id != tenant_id:
            return None
        return record

    async def claim_batch(
        self,
        worker_id: str,
        size: int,
        lease_seconds: int | None = None,
    ) -> list[JobContext]:
        """
        Lease up to ``size`` due records for ``worker_id``.

        Returns:
            Job contexts in claim order (priority, then schedule time).
        """
        lease_seconds = lease_seconds or self._settings.worker_lease_seconds
        with get_tracer().start_as_current_span(SPAN_CLAIM) as span:
            span.set_attribute("queue", self.name)
            span.set_attribute("worker_id", worker_id)
            async with session_scope(self._session_factory) as session:
                records = await self.repository_cls(session).claim(
                    worker_id=worker_id,
                    batch_size=size,
                    lease_seconds=lease_seconds,
                )
            span.set_attribute("claimed", len(records))

        self._metrics.record_claimed(self.name, len(records))
        return [record.to_context() for record in records]

    async def reclaim_stale(self, now: datetime | None = None) -> int:
        """Return expired leases to pending."""
        async with session_scope(self._session_factory) as session:
            count = await self.repository_cls(session).reclaim_stale(
                now=now,
                charge_attempt=self._settings.reclaim_charges_attempt,
            )
        self._metrics.record_reclaimed(self.name, count)
        return count

    async def report_outcome(
        self,
        record_id: UUID,
        outcome: ExecutionOutcome,
        worker_id: str,
        expected_attempts: int | None = None,
        job_type: str = "",
    ) -> RetryDecision | None:
        """
        Apply the retry policy to an execution outcome.

        Reports from a worker that no longer holds the lease (reclaimed,
        cancelled, re-claimed by someone else) are dropped.

        Args:
            record_id: The claimed record.
            outcome: The execution outcome.
            worker_id: The reporting worker; must own the lease.
            expected_attempts: Attempts at claim time, if known.
            job_type: Executor key, for metrics.

        Returns:
            The applied decision, or None for a stale report.
        """
        now = utcnow()
        with get_tracer().start_as_current_span(SPAN_REPORT) as span:
            span.set_attribute("queue", self.name)
            span.set_attribute("record_id", str(record_id))
            span.set_attribute("success", outcome.success)

            async with session_scope(self._session_factory) as session:
                repo = self.repository_cls(session)
                record = await repo.get(record_id)

                if record is None or not self._owns_lease(record, worker_id, expected_attempts):
                    logger.warning(
                        "Ignoring stale outcome report",
                        extra={
                            "queue": self.name,
                            "record_id": str(record_id),
                            "worker_id": worker_id,
                            "status": str(record.status) if record else None,
                        },
                    )
                    return None

                decision = self._policy.decide(
                    attempts=record.attempts,
                    max_attempts=record.max_attempts,
                    outcome=outcome,
                    now=now,
                    previous_category=record.last_error_category,
                )
                updated = await repo.transition(
                    record_id=record_id,
                    worker_id=worker_id,
                    expected_attempts=record.attempts,
                    values=decision.as_values(now),
                    now=now,
                )
                if updated is None:
                    logger.warning(
                        "Lost lease before outcome was applied",
                        extra={"queue": self.name, "record_id": str(record_id)},
                    )
                    return None

                if decision.flag_subject and self._on_credential_invalid is not None:
                    await self._on_credential_invalid(session, updated)

            span.set_attribute("status", str(decision.status))

        self._log_decision(record_id, decision)
        self._metrics.record_outcome(
            queue=self.name,
            job_type=job_type,
            status=str(decision.status),
            category=str(decision.category) if decision.category else None,
            duration_seconds=(outcome.duration_ms or 0.0) / 1000,
        )
        return decision

    @staticmethod
    def _owns_lease(record: Any, worker_id: str, expected_attempts: int | None) -> bool:
        if record.status != JobStatus.PROCESSING or record.lease_owner != worker_id:
            return False
        return expected_attempts is None or record.attempts == expected_attempts

    def _log_decision(self, record_id: UUID, decision: RetryDecision) -> None:
        extra = {
            "queue": self.name,
            "record_id": str(record_id),
            "attempts": decision.attempts,
            "category": str(decision.category) if decision.category else None,
        }
        if decision.status == JobStatus.COMPLETED:
            logger.info("Record completed", extra=extra)
        elif decision.status == JobStatus.PENDING:
            logger.warning(
                "Record scheduled for retry",
                extra={**extra, "scheduled_at": decision.scheduled_at.isoformat()},
            )
        else:
            logger.error("Record moved to dead letter", extra={**extra, "error": decision.error})

    async def cancel(self, record_id: UUID, tenant_id: str | None = None) -> RecordT:
        """
        Cancel a pending or processing record.

        Raises:
            JobNotFoundError: No such record for the tenant.
            InvalidTransitionError: The record is already terminal.
        """
        async with session_scope(self._session_factory) as session:
            repo = self.repository_cls(session)
            record = await repo.cancel(record_id, tenant_id=tenant_id)
            if record is None:
                existing = await repo.get(record_id)
                if existing is None or (tenant_id is not None and existing.tenant_id != tenant_id):
                    raise JobNotFoundError(record_id)
                raise InvalidTransitionError(existing.status, JobStatus.CANCELLED)

        logger.info("Record cancelled", extra={"queue": self.name, "record_id": str(record_id)})
        return record

    async def stats(self, tenant_id: str | None = None) -> QueueStats:
        """Counts of pending, processing, dead-lettered and recently completed records."""
        since = utcnow() - timedelta(hours=self._settings.stats_recent_window_hours)
        async with session_scope(self._session_factory) as session:
            stats = await self.repository_cls(session).stats(recent_since=since, tenant_id=tenant_id)
        if tenant_id is None:
            self._metrics.update_queue_stats(self.name, stats)
        return stats

    async def dead_letter_counts(self, tenant_id: str | None = None) -> dict[str, int]:
        async with session_scope(self._session_factory) as session:
            return await self.repository_cls(session).dead_letter_counts(tenant_id)

    async def list_dead_letters(
        self,
        tenant_id: str | None = None,
        category: ErrorCategory | None = None,
        limit: int = 100,
    ) -> Sequence[RecordT]:
        async with session_scope(self._session_factory) as session:
            return await self.repository_cls(session).list_dead_letters(
                tenant_id=tenant_id,
                category=category,
                limit=limit,
            )

    async def requeue_dead_letter(
        self,
        record_id: UUID,
        tenant_id: str | None = None,
        delay_seconds: float = 0,
        reason: str = "operator",
    ) -> RecordT:
        """
        Give a dead-lettered record one more execution.

        Raises:
            JobNotFoundError: No such record for the tenant.
            InvalidTransitionError: Not dead-lettered, credential failure,
                or already requeued.
        """
        now = utcnow()
        async with session_scope(self._session_factory) as session:
            repo = self.repository_cls(session)
            record = await repo.requeue_dead_letter(
                record_id,
                scheduled_at=now + timedelta(seconds=delay_seconds),
                max_requeues=self._settings.dead_letter_max_requeues,
                tenant_id=tenant_id,
                now=now,
            )
            if record is None:
                existing = await repo.get(record_id)
                if existing is None or (tenant_id is not None and existing.tenant_id != tenant_id):
                    raise JobNotFoundError(record_id)
                raise InvalidTransitionError(existing.status, JobStatus.PENDING)

        self._metrics.record_requeue(self.name, reason)
        return record

    async def purge_terminal(self, older_than: timedelta, now: datetime | None = None) -> int:
        """Delete completed and cancelled records older than the retention window."""
        before = (now or utcnow()) - older_than
        async with session_scope(self._session_factory) as session:
            count = await self.repository_cls(session).purge_terminal(before)
        if count:
            logger.info(
                f"Purged {count} finished records",
                extra={"queue": self.name, "count": count},
            )
        return count
