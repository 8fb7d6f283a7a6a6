"""
Scheduled work queue (credential refresh, order backfill).
"""

import logging

from vigil.clock import ensure_utc, utcnow
from vigil.constants import PRIORITY_RANKS, JobStatus
from vigil.db.connection import session_scope
from vigil.db.models import Job
from vigil.db.repository import JobRepository
from vigil.queue.base import LeasedQueue
from vigil.types.job import EnqueueResult, JobSpec

logger = logging.getLogger(__name__)


class JobQueue(LeasedQueue[Job]):
    """
    Priority-tiered job queue.

    ``enqueue`` is an upsert keyed on ``dedupe_key``: while an active job
    exists a second enqueue creates nothing, but may escalate a pending
    job's priority or pull its schedule earlier. It never demotes.
    """

    name = "jobs"
    repository_cls = JobRepository

    async def enqueue(self, spec: JobSpec) -> EnqueueResult:
        now = utcnow()
        scheduled_at = spec.scheduled_at or now
        max_attempts = spec.max_attempts or self._policy.max_attempts_for(spec.priority)

        async with session_scope(self._session_factory) as session:
            repo = JobRepository(session)
            # A conflicting job can finish between the insert and the lookup
            for _ in range(2):
                job, created = await repo.insert(
                    tenant_id=spec.tenant_id,
                    subject_id=spec.subject_id,
                    job_type=spec.job_type,
                    dedupe_key=spec.dedupe_key,
                    payload=spec.payload,
                    priority=spec.priority,
                    max_attempts=max_attempts,
                    scheduled_at=scheduled_at,
                    now=now,
                )
                if job is not None:
                    break
            else:
                raise RuntimeError("Job should exist after conflict")

            escalated = False
            if not created and job.status == JobStatus.PENDING:
                escalated = await self._escalate(repo, job, spec, scheduled_at)

        self._metrics.record_enqueue(self.name, created)
        if not created:
            logger.debug(
                "Returned existing job (idempotent)",
                extra={"job_id": str(job.id), "dedupe_key": spec.dedupe_key, "escalated": escalated},
            )
        return EnqueueResult(id=job.id, created=created, escalated=escalated)

    async def _escalate(self, repo: JobRepository, job: Job, spec: JobSpec, scheduled_at) -> bool:
        priority = job.priority
        if PRIORITY_RANKS[spec.priority] > PRIORITY_RANKS[job.priority]:
            priority = spec.priority
        current = ensure_utc(job.scheduled_at)
        earliest = min(current, ensure_utc(scheduled_at))

        if priority == job.priority and earliest == current:
            return False

        updated = await repo.escalate(job.id, priority=priority, scheduled_at=earliest)
        if updated is not None:
            logger.info(
                "Escalated pending job",
                extra={
                    "job_id": str(job.id),
                    "priority": str(priority),
                    "scheduled_at": earliest.isoformat(),
                },
            )
        return updated is not None
