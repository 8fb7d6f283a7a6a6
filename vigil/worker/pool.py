"""
Worker pool: claim a batch, run executors concurrently, report outcomes.

The pool never decides retry vs. terminal. It turns whatever the executor
did (returned, raised, timed out) into an ``ExecutionOutcome`` and hands
it to the queue, which applies the retry policy.
"""

import asyncio
import logging
import time

from vigil.clock import ensure_utc, utcnow
from vigil.config import Settings, get_settings
from vigil.constants import SPAN_EXECUTE, ErrorCategory, JobStatus
from vigil.context import RunContext
from vigil.observability.logging import bound_context
from vigil.observability.tracing import get_tracer
from vigil.queue.base import LeasedQueue
from vigil.queue.retry import RetryDecision, outcome_from_exception
from vigil.types.job import ExecutionOutcome, JobContext
from vigil.types.reports import BatchReport
from vigil.worker.registry import ExecutorRegistry

logger = logging.getLogger(__name__)


class WorkerPool:
    """
    Executes claimed records from one queue.

    Features:
    - Atomic batch claim (no double-claim across invocations)
    - Bounded concurrency per batch
    - Per-execution timeout bounded by the time left on the lease
    - Records whose lease ran out while queued are left for reclaim
    - Executors injected through an ``ExecutorRegistry``
    """

    def __init__(
        self,
        queue: LeasedQueue,
        registry: ExecutorRegistry,
        settings: Settings | None = None,
    ):
        self.queue = queue
        self.registry = registry
        self._settings = settings or get_settings()

    async def run_batch(
        self,
        worker_id: str,
        batch_size: int | None = None,
        max_concurrent: int | None = None,
        run: RunContext | None = None,
    ) -> BatchReport:
        """
        Claim up to ``batch_size`` records and execute them.

        Args:
            worker_id: Lease owner for this batch.
            batch_size: Records to claim.
            max_concurrent: Executors running at once.
            run: Invocation context passed to executors.

        Returns:
            BatchReport with per-outcome counts.
        """
        settings = self._settings
        batch_size = batch_size or settings.worker_batch_size
        max_concurrent = max_concurrent or settings.worker_max_concurrent
        lease_seconds = settings.worker_lease_seconds
        run = run or RunContext.new(f"{self.queue.name}-worker", settings, worker_id)

        report = BatchReport(worker_id=worker_id)
        if settings.worker_reclaim_before_claim:
            report.reclaimed = await self.queue.reclaim_stale()

        jobs = await self.queue.claim_batch(worker_id, batch_size, lease_seconds)
        report.claimed = len(jobs)
        if not jobs:
            return report

        logger.info(
            f"Executing {len(jobs)} records",
            extra={"queue": self.queue.name, "worker_id": worker_id, "max_concurrent": max_concurrent},
        )

        semaphore = asyncio.Semaphore(max_concurrent)

        async def guarded(job: JobContext) -> RetryDecision | None | bool:
            async with semaphore:
                remaining = lease_remaining(job)
                if remaining <= 0:
                    logger.warning(
                        "Lease expired before execution started",
                        extra={"job_id": str(job.id), "worker_id": worker_id},
                    )
                    return False
                return await self._execute(job, run, remaining)

        results = await asyncio.gather(*(guarded(job) for job in jobs), return_exceptions=True)

        errors: list[BaseException] = []
        for result in results:
            if isinstance(result, BaseException):
                errors.append(result)
            elif result is False:
                report.expired_before_start += 1
            elif result is None:
                report.stale_reports += 1
            else:
                self._tally(report, result)

        if errors:
            # Store failures while reporting; committed transitions stay committed
            raise errors[0]
        return report

    async def _execute(self, job: JobContext, run: RunContext, timeout: float) -> RetryDecision | None:
        """Run one executor and report its outcome."""
        with bound_context(job_id=str(job.id), job_type=job.job_type, attempt=job.attempt_number):
            start = time.monotonic()
            outcome = await self._invoke(job, run, timeout)
            outcome.duration_ms = (time.monotonic() - start) * 1000

            return await self.queue.report_outcome(
                job.id,
                outcome,
                worker_id=job.lease_owner,
                expected_attempts=job.attempts,
                job_type=job.job_type,
            )

    async def _invoke(self, job: JobContext, run: RunContext, timeout: float) -> ExecutionOutcome:
        executor = self.registry.get(job.job_type)
        if executor is None:
            logger.error(
                f"No executor for job type: {job.job_type}",
                extra={"job_id": str(job.id)},
            )
            return ExecutionOutcome.failed(
                f"No executor registered for job type: {job.job_type}",
                ErrorCategory.OTHER,
            )

        with get_tracer().start_as_current_span(SPAN_EXECUTE) as span:
            span.set_attribute("queue", self.queue.name)
            span.set_attribute("job_id", str(job.id))
            span.set_attribute("job_type", job.job_type)
            span.set_attribute("attempt", job.attempt_number)
            try:
                result = await asyncio.wait_for(executor(job, run), timeout=timeout)
            except TimeoutError:
                logger.warning(
                    "Execution exceeded lease",
                    extra={"job_id": str(job.id), "timeout_seconds": round(timeout, 3)},
                )
                return ExecutionOutcome.failed(
                    f"Execution exceeded lease ({timeout:.1f}s remaining at start)",
                    ErrorCategory.TIMEOUT,
                )
            except Exception as exc:
                outcome = outcome_from_exception(exc)
                logger.warning(
                    "Executor failed",
                    extra={
                        "job_id": str(job.id),
                        "category": str(outcome.error_category),
                        "error": outcome.error,
                    },
                )
                return outcome

        return result or ExecutionOutcome.ok()

    @staticmethod
    def _tally(report: BatchReport, decision: RetryDecision) -> None:
        if decision.status == JobStatus.COMPLETED:
            report.succeeded += 1
            return
        if decision.status == JobStatus.PENDING:
            report.retried += 1
        else:
            report.dead_lettered += 1
        key = str(decision.category)
        report.by_category[key] = report.by_category.get(key, 0) + 1


def lease_remaining(job: JobContext) -> float:
    """Seconds left on the lease taken when the record was claimed."""
    return (ensure_utc(job.lease_expires_at) - utcnow()).total_seconds()
