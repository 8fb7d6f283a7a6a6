"""
Integration tests for the job queue: enqueue, claim, outcomes, reclaim,
cancellation and dead-letter handling against a real database.
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vigil.clock import ensure_utc, utcnow
from vigil.config import Settings
from vigil.constants import ErrorCategory, JobPriority, JobStatus, JobType
from vigil.db.models import Job
from vigil.errors import InvalidTransitionError, JobNotFoundError
from vigil.observability.metrics import MetricsCollector
from vigil.queue.jobs import JobQueue
from vigil.types.job import ExecutionOutcome, JobSpec


def make_spec(subject_id: str | None = None, **kwargs) -> JobSpec:
    subject_id = subject_id or f"store-{uuid4().hex[:8]}"
    return JobSpec(
        tenant_id=kwargs.pop("tenant_id", "tenant-a"),
        subject_id=subject_id,
        job_type=kwargs.pop("job_type", JobType.CREDENTIAL_REFRESH),
        dedupe_key=kwargs.pop("dedupe_key", f"credential_refresh:{subject_id}"),
        **kwargs,
    )


async def set_columns(session_factory: async_sessionmaker[AsyncSession], job_id, **values) -> None:
    async with session_factory() as session:
        await session.execute(update(Job).where(Job.id == job_id).values(**values))
        await session.commit()


class TestEnqueue:
    """Tests for idempotent enqueue and escalation."""

    @pytest_asyncio.fixture
    async def queue(self, session_factory, test_settings: Settings, metrics: MetricsCollector) -> JobQueue:
        return JobQueue(session_factory, settings=test_settings, metrics=metrics)

    @pytest.mark.asyncio
    async def test_enqueue_creates_pending_job(self, queue: JobQueue):
        """A new dedupe key creates a pending job with the tier's attempt budget."""
        result = await queue.enqueue(make_spec(priority=JobPriority.URGENT))

        assert result.created is True
        job = await queue.get(result.id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.max_attempts == 6

    @pytest.mark.asyncio
    async def test_duplicate_enqueue_reports_not_created(self, queue: JobQueue):
        """A second enqueue with the same key returns the existing job."""
        spec = make_spec("store-1")
        first = await queue.enqueue(spec)
        second = await queue.enqueue(spec)

        assert first.created is True
        assert second.created is False
        assert second.id == first.id

    @pytest.mark.asyncio
    async def test_finished_job_does_not_block_new_one(self, queue: JobQueue):
        """Dedupe only covers active jobs."""
        first = await queue.enqueue(make_spec("store-1"))
        [claimed] = await queue.claim_batch("w1", 1)
        await queue.report_outcome(claimed.id, ExecutionOutcome.ok(), worker_id="w1")

        second = await queue.enqueue(make_spec("store-1"))

        assert second.created is True
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_rescan_escalates_priority(self, queue: JobQueue):
        """A pending job moves up to a higher priority and an earlier schedule."""
        later = utcnow() + timedelta(minutes=30)
        first = await queue.enqueue(make_spec("store-1", scheduled_at=later))

        result = await queue.enqueue(make_spec("store-1", priority=JobPriority.CRITICAL))

        assert result.created is False
        assert result.escalated is True
        job = await queue.get(first.id)
        assert job.priority == JobPriority.CRITICAL
        assert ensure_utc(job.scheduled_at) < later

    @pytest.mark.asyncio
    async def test_rescan_never_demotes(self, queue: JobQueue):
        """A lower priority or later schedule leaves the job alone."""
        first = await queue.enqueue(make_spec("store-1", priority=JobPriority.CRITICAL))
        original = await queue.get(first.id)

        result = await queue.enqueue(
            make_spec(
                "store-1",
                priority=JobPriority.SCHEDULED,
                scheduled_at=utcnow() + timedelta(hours=1),
            )
        )

        assert result.escalated is False
        job = await queue.get(first.id)
        assert job.priority == JobPriority.CRITICAL
        assert ensure_utc(job.scheduled_at) == ensure_utc(original.scheduled_at)


class TestClaim:
    """Tests for the atomic claim."""

    @pytest_asyncio.fixture
    async def queue(self, session_factory, test_settings: Settings, metrics: MetricsCollector) -> JobQueue:
        return JobQueue(session_factory, settings=test_settings, metrics=metrics)

    @pytest.mark.asyncio
    async def test_claim_sets_lease(self, queue: JobQueue):
        """Claimed jobs are processing with owner and expiry set."""
        result = await queue.enqueue(make_spec())

        [job] = await queue.claim_batch("worker-1", 10, lease_seconds=30)

        assert job.id == result.id
        assert job.lease_owner == "worker-1"
        assert job.lease_expires_at > utcnow()
        stored = await queue.get(result.id)
        assert stored.status == JobStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_priority_ordering(self, queue: JobQueue):
        """Critical jobs are claimed before urgent and scheduled ones."""
        scheduled = await queue.enqueue(make_spec(priority=JobPriority.SCHEDULED))
        critical = await queue.enqueue(make_spec(priority=JobPriority.CRITICAL))
        urgent = await queue.enqueue(make_spec(priority=JobPriority.URGENT))

        jobs = await queue.claim_batch("worker-1", 10)

        assert [j.id for j in jobs] == [critical.id, urgent.id, scheduled.id]

    @pytest.mark.asyncio
    async def test_priority_wins_within_batch_limit(self, queue: JobQueue):
        """With a batch of one, the critical job is the one claimed."""
        await queue.enqueue(make_spec(priority=JobPriority.SCHEDULED))
        critical = await queue.enqueue(make_spec(priority=JobPriority.CRITICAL))

        [job] = await queue.claim_batch("worker-1", 1)

        assert job.id == critical.id

    @pytest.mark.asyncio
    async def test_future_jobs_not_claimed(self, queue: JobQueue):
        """Jobs scheduled in the future are not eligible yet."""
        await queue.enqueue(make_spec(scheduled_at=utcnow() + timedelta(minutes=10)))

        assert await queue.claim_batch("worker-1", 10) == []

    @pytest.mark.asyncio
    async def test_no_double_claim_under_concurrency(self, queue: JobQueue):
        """Concurrent claimers never receive the same job."""
        for _ in range(12):
            await queue.enqueue(make_spec())

        batches = await asyncio.gather(
            *(queue.claim_batch(f"worker-{i}", 5) for i in range(4))
        )

        ids = [job.id for batch in batches for job in batch]
        assert len(ids) == len(set(ids))
        assert len(ids) == 12


class TestOutcomes:
    """Tests for reporting execution outcomes."""

    @pytest_asyncio.fixture
    async def queue(self, session_factory, test_settings: Settings, metrics: MetricsCollector) -> JobQueue:
        return JobQueue(session_factory, settings=test_settings, metrics=metrics)

    @pytest.mark.asyncio
    async def test_success_completes(self, queue: JobQueue):
        """Success clears the lease and sets completed_at."""
        await queue.enqueue(make_spec())
        [job] = await queue.claim_batch("w1", 1)

        decision = await queue.report_outcome(job.id, ExecutionOutcome.ok(), worker_id="w1")

        assert decision.status == JobStatus.COMPLETED
        stored = await queue.get(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.lease_owner is None
        assert stored.completed_at is not None
        assert stored.attempts == 0

    @pytest.mark.asyncio
    async def test_transient_failure_schedules_retry(self, queue: JobQueue):
        """A transient failure returns the job to pending in the future."""
        await queue.enqueue(make_spec())
        [job] = await queue.claim_batch("w1", 1)

        await queue.report_outcome(
            job.id,
            ExecutionOutcome.failed("503", ErrorCategory.TRANSIENT_NETWORK),
            worker_id="w1",
        )

        stored = await queue.get(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.attempts == 1
        assert stored.lease_owner is None
        assert stored.last_error_category == ErrorCategory.TRANSIENT_NETWORK
        assert ensure_utc(stored.scheduled_at) > utcnow()
        assert await queue.claim_batch("w1", 1) == []

    @pytest.mark.asyncio
    async def test_exhausted_job_dead_letters_and_is_never_claimed(
        self,
        queue: JobQueue,
        session_factory,
    ):
        """The last failed attempt dead-letters the job."""
        await queue.enqueue(make_spec(max_attempts=2))
        failure = ExecutionOutcome.failed("503", ErrorCategory.TRANSIENT_NETWORK)

        [job] = await queue.claim_batch("w1", 1)
        await queue.report_outcome(job.id, failure, worker_id="w1")
        await set_columns(session_factory, job.id, scheduled_at=utcnow() - timedelta(seconds=1))
        [job] = await queue.claim_batch("w1", 1)
        decision = await queue.report_outcome(job.id, failure, worker_id="w1")

        assert decision.status == JobStatus.DEAD_LETTER
        stored = await queue.get(job.id)
        assert stored.status == JobStatus.DEAD_LETTER
        assert stored.attempts == 2
        assert stored.lease_owner is None
        assert await queue.claim_batch("w1", 10) == []

    @pytest.mark.asyncio
    async def test_credential_invalid_short_circuits(
        self,
        session_factory,
        test_settings: Settings,
        metrics: MetricsCollector,
    ):
        """credential_invalid on attempt 1 of 5 dead-letters and flags the subject."""
        flagged = []

        async def flagger(session, record):
            flagged.append(record.subject_id)

        queue = JobQueue(
            session_factory,
            settings=test_settings,
            metrics=metrics,
            on_credential_invalid=flagger,
        )
        await queue.enqueue(make_spec("store-9", max_attempts=5))
        [job] = await queue.claim_batch("w1", 1)

        decision = await queue.report_outcome(
            job.id,
            ExecutionOutcome.failed("invalid_grant", ErrorCategory.CREDENTIAL_INVALID),
            worker_id="w1",
        )

        assert decision.status == JobStatus.DEAD_LETTER
        assert decision.attempts == 1
        assert flagged == ["store-9"]

    @pytest.mark.asyncio
    async def test_report_from_non_owner_is_dropped(self, queue: JobQueue):
        """Only the lease owner can report."""
        await queue.enqueue(make_spec())
        [job] = await queue.claim_batch("w1", 1)

        decision = await queue.report_outcome(job.id, ExecutionOutcome.ok(), worker_id="intruder")

        assert decision is None
        stored = await queue.get(job.id)
        assert stored.status == JobStatus.PROCESSING


class TestReclaim:
    """Tests for stale lease recovery."""

    @pytest_asyncio.fixture
    async def queue(self, session_factory, test_settings: Settings, metrics: MetricsCollector) -> JobQueue:
        return JobQueue(session_factory, settings=test_settings, metrics=metrics)

    @pytest.mark.asyncio
    async def test_expired_lease_reclaimed_without_charge(self, queue: JobQueue, session_factory):
        """An expired lease returns the job to pending with attempts unchanged."""
        await queue.enqueue(make_spec())
        [job] = await queue.claim_batch("w1", 1)
        await set_columns(session_factory, job.id, lease_expires_at=utcnow() - timedelta(seconds=1))

        reclaimed = await queue.reclaim_stale()

        assert reclaimed == 1
        stored = await queue.get(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.attempts == 0
        assert stored.lease_owner is None

        [again] = await queue.claim_batch("w2", 1)
        assert again.id == job.id
        assert await queue.reclaim_stale() == 0

    @pytest.mark.asyncio
    async def test_live_lease_not_reclaimed(self, queue: JobQueue):
        """Unexpired leases are left alone."""
        await queue.enqueue(make_spec())
        await queue.claim_batch("w1", 1, lease_seconds=60)

        assert await queue.reclaim_stale() == 0

    @pytest.mark.asyncio
    async def test_late_report_after_reclaim_is_dropped(self, queue: JobQueue, session_factory):
        """The original worker's report is ignored once another worker holds the job."""
        await queue.enqueue(make_spec())
        [job] = await queue.claim_batch("w1", 1)
        await set_columns(session_factory, job.id, lease_expires_at=utcnow() - timedelta(seconds=1))
        await queue.reclaim_stale()
        await queue.claim_batch("w2", 1)

        stale = await queue.report_outcome(job.id, ExecutionOutcome.ok(), worker_id="w1")
        fresh = await queue.report_outcome(job.id, ExecutionOutcome.ok(), worker_id="w2")

        assert stale is None
        assert fresh.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_reclaim_penalty_charges_attempt(
        self,
        session_factory,
        test_settings: Settings,
        metrics: MetricsCollector,
    ):
        """With the penalty enabled, reclaim counts as a timeout attempt."""
        test_settings.reclaim_charges_attempt = True
        queue = JobQueue(session_factory, settings=test_settings, metrics=metrics)
        await queue.enqueue(make_spec(max_attempts=5))
        [job] = await queue.claim_batch("w1", 1)
        await set_columns(session_factory, job.id, lease_expires_at=utcnow() - timedelta(seconds=1))

        await queue.reclaim_stale()

        stored = await queue.get(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.attempts == 1
        assert stored.last_error_category == ErrorCategory.TIMEOUT


class TestCancelAndTriage:
    """Tests for cancellation, stats, requeue and retention."""

    @pytest_asyncio.fixture
    async def queue(self, session_factory, test_settings: Settings, metrics: MetricsCollector) -> JobQueue:
        return JobQueue(session_factory, settings=test_settings, metrics=metrics)

    async def _dead_letter(self, queue: JobQueue, category: ErrorCategory, **kwargs):
        await queue.enqueue(make_spec(max_attempts=1, priority=JobPriority.CRITICAL, **kwargs))
        [job] = await queue.claim_batch("w1", 1)
        await queue.report_outcome(job.id, ExecutionOutcome.failed("boom", category), worker_id="w1")
        return job

    @pytest.mark.asyncio
    async def test_cancel_pending(self, queue: JobQueue):
        """A pending job can be cancelled once."""
        result = await queue.enqueue(make_spec())

        cancelled = await queue.cancel(result.id, tenant_id="tenant-a")

        assert cancelled.status == JobStatus.CANCELLED
        with pytest.raises(InvalidTransitionError):
            await queue.cancel(result.id)

    @pytest.mark.asyncio
    async def test_cancel_other_tenant_not_found(self, queue: JobQueue):
        """Cancellation is tenant-scoped."""
        result = await queue.enqueue(make_spec())

        with pytest.raises(JobNotFoundError):
            await queue.cancel(result.id, tenant_id="tenant-b")

    @pytest.mark.asyncio
    async def test_cancel_in_flight_drops_late_report(self, queue: JobQueue):
        """Cancelling a processing job makes its later report stale."""
        await queue.enqueue(make_spec())
        [job] = await queue.claim_batch("w1", 1)

        await queue.cancel(job.id)
        decision = await queue.report_outcome(job.id, ExecutionOutcome.ok(), worker_id="w1")

        assert decision is None
        assert (await queue.get(job.id)).status == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_stats(self, queue: JobQueue):
        """Stats count pending, processing, dead letters and recent completions."""
        for _ in range(3):
            await queue.enqueue(make_spec())
        [done, working] = await queue.claim_batch("w1", 2)
        await queue.report_outcome(done.id, ExecutionOutcome.ok(), worker_id="w1")
        await self._dead_letter(queue, ErrorCategory.OTHER)

        stats = await queue.stats()

        assert stats.pending == 1
        assert stats.processing == 1
        assert stats.completed_recent == 1
        assert stats.dead_letter == 1
        assert stats.by_category == {"other": 1}

    @pytest.mark.asyncio
    async def test_requeue_dead_letter_once(self, queue: JobQueue):
        """A transient dead letter can be requeued exactly once."""
        job = await self._dead_letter(queue, ErrorCategory.TRANSIENT_NETWORK)

        record = await queue.requeue_dead_letter(job.id)

        assert record.status == JobStatus.PENDING
        assert record.requeue_count == 1
        assert record.attempts == 1

        [again] = await queue.claim_batch("w1", 1)
        await queue.report_outcome(
            again.id,
            ExecutionOutcome.failed("503", ErrorCategory.TRANSIENT_NETWORK),
            worker_id="w1",
        )
        with pytest.raises(InvalidTransitionError):
            await queue.requeue_dead_letter(job.id)

    @pytest.mark.asyncio
    async def test_credential_invalid_never_requeued(self, queue: JobQueue):
        """Credential failures stay dead-lettered."""
        job = await self._dead_letter(queue, ErrorCategory.CREDENTIAL_INVALID)

        with pytest.raises(InvalidTransitionError):
            await queue.requeue_dead_letter(job.id)

    @pytest.mark.asyncio
    async def test_requeue_grants_single_execution(self, queue: JobQueue, session_factory):
        """A job dead-lettered below its attempt budget still gets only one more run."""
        await queue.enqueue(make_spec(max_attempts=5, priority=JobPriority.CRITICAL))
        for _ in range(2):
            [job] = await queue.claim_batch("w1", 1)
            await queue.report_outcome(
                job.id,
                ExecutionOutcome.failed("lease exceeded", ErrorCategory.TIMEOUT),
                worker_id="w1",
            )
            await set_columns(session_factory, job.id, scheduled_at=utcnow() - timedelta(seconds=1))
        dead = await queue.get(job.id)
        assert dead.status == JobStatus.DEAD_LETTER
        assert dead.attempts == 2

        record = await queue.requeue_dead_letter(job.id)

        assert record.max_attempts == 3
        [again] = await queue.claim_batch("w1", 1)
        decision = await queue.report_outcome(
            again.id,
            ExecutionOutcome.failed("503", ErrorCategory.TRANSIENT_NETWORK),
            worker_id="w1",
        )
        assert decision.status == JobStatus.DEAD_LETTER
        assert (await queue.get(job.id)).attempts == 3

    @pytest.mark.asyncio
    async def test_requeue_refused_while_newer_job_active(self, queue: JobQueue):
        """A dead letter is not revived over a newer active job for the same key."""
        job = await self._dead_letter(queue, ErrorCategory.TRANSIENT_NETWORK, dedupe_key="credential_refresh:store-x")
        newer = await queue.enqueue(make_spec(dedupe_key="credential_refresh:store-x"))
        assert newer.created is True

        with pytest.raises(InvalidTransitionError):
            await queue.requeue_dead_letter(job.id)

        assert (await queue.get(job.id)).status == JobStatus.DEAD_LETTER

    @pytest.mark.asyncio
    async def test_purge_terminal_keeps_dead_letters(self, queue: JobQueue, session_factory):
        """Retention deletes old completed jobs and keeps dead letters."""
        await queue.enqueue(make_spec())
        [done] = await queue.claim_batch("w1", 1)
        await queue.report_outcome(done.id, ExecutionOutcome.ok(), worker_id="w1")
        dead = await self._dead_letter(queue, ErrorCategory.OTHER)
        old = utcnow() - timedelta(days=10)
        await set_columns(session_factory, done.id, completed_at=old, updated_at=old)
        await set_columns(session_factory, dead.id, completed_at=old, updated_at=old)

        purged = await queue.purge_terminal(timedelta(days=7))

        assert purged == 1
        assert await queue.get(done.id) is None
        assert (await queue.get(dead.id)).status == JobStatus.DEAD_LETTER
