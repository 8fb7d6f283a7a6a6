"""
Dead-letter triage.

Runs on its own cadence, separate from the workers. Per category:
- credential_invalid: reported, never resurrected
- transient_network / rate_limited / timeout: one delayed re-enqueue when
  auto requeue is enabled and the record has not been requeued before
- other: reported only
"""

import logging
from collections.abc import Sequence

from vigil.config import Settings, get_settings
from vigil.constants import REQUEUEABLE_CATEGORIES, ErrorCategory
from vigil.context import RunContext
from vigil.errors import InvalidTransitionError, JobNotFoundError
from vigil.observability.metrics import MetricsCollector, get_metrics
from vigil.queue.base import LeasedQueue
from vigil.types.reports import DeadLetterReport

logger = logging.getLogger(__name__)


class DeadLetterProcessor:
    def __init__(
        self,
        queues: Sequence[LeasedQueue],
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._queues = list(queues)
        self._settings = settings or get_settings()
        self._metrics = metrics or get_metrics()

    async def process(self, run: RunContext) -> list[DeadLetterReport]:
        return [await self._process_queue(queue, run) for queue in self._queues]

    async def _process_queue(self, queue: LeasedQueue, run: RunContext) -> DeadLetterReport:
        report = DeadLetterReport(queue=queue.name)
        records = await queue.list_dead_letters(limit=self._settings.dead_letter_batch_limit)

        for record in records:
            category = record.last_error_category or ErrorCategory.OTHER

            if category == ErrorCategory.CREDENTIAL_INVALID:
                subject = getattr(record, "subject_id", None) or getattr(record, "store_id", "")
                if subject not in report.reauth_required:
                    report.reauth_required.append(subject)
                continue

            if not self._should_requeue(record, category):
                continue

            try:
                await queue.requeue_dead_letter(
                    record.id,
                    delay_seconds=self._settings.dead_letter_requeue_delay_seconds,
                    reason="auto",
                )
            except (InvalidTransitionError, JobNotFoundError):
                # Changed under us (operator requeue, purge); nothing to do
                continue
            report.requeued += 1
            logger.info(
                "Dead letter requeued for one more attempt",
                extra={
                    "queue": queue.name,
                    "record_id": str(record.id),
                    "category": str(category),
                    **run.log_fields(),
                },
            )

        report.by_category = await queue.dead_letter_counts()
        report.total = sum(report.by_category.values())
        self._metrics.update_dead_letters(queue.name, report.by_category)

        if report.reauth_required:
            logger.warning(
                "Subjects awaiting re-authorization",
                extra={"queue": queue.name, "count": len(report.reauth_required)},
            )
        return report

    def _should_requeue(self, record, category: ErrorCategory) -> bool:
        return (
            self._settings.dead_letter_auto_requeue
            and category in REQUEUEABLE_CATEGORIES
            and record.requeue_count < self._settings.dead_letter_max_requeues
        )
