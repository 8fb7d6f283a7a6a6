"""
Order history backfill scheduler.

A requested backfill ("the last 9 months") is a logical unit expanded into
one job per calendar month. Each scan re-examines the outstanding months of
every unfinished backfill: months already in the ledger are never enqueued
again, months with an active job are left alone by the dedupe key, months
whose latest job was dead-lettered wait for the dead-letter processor, and
months whose job was cancelled or purged get a fresh one.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vigil.clock import ensure_utc, utcnow
from vigil.config import Settings, get_settings
from vigil.constants import SPAN_SCAN, CredentialStatus, JobPriority, JobStatus, JobType
from vigil.context import RunContext
from vigil.db.accounts import BackfillLedgerRepository, CredentialRepository, StoreRepository
from vigil.db.connection import session_scope
from vigil.db.models import Store
from vigil.db.repository import JobRepository
from vigil.observability.metrics import MetricsCollector, get_metrics
from vigil.observability.tracing import get_tracer
from vigil.queue.jobs import JobQueue
from vigil.types.job import JobSpec
from vigil.types.reports import ScanReport

logger = logging.getLogger(__name__)

SCAN_NAME = "order_backfill"


@dataclass(frozen=True)
class MonthUnit:
    """One calendar month of a backfill, [date_from, date_to)."""

    key: str
    date_from: datetime
    date_to: datetime

    def payload(self) -> dict[str, str]:
        return {
            "unit": self.key,
            "date_from": self.date_from.isoformat(),
            "date_to": self.date_to.isoformat(),
        }


def _month_start(year: int, month: int) -> datetime:
    return datetime(year, month, 1, tzinfo=timezone.utc)


def month_units(anchor: datetime, months: int) -> list[MonthUnit]:
    """
    The ``months`` calendar months ending with the month of ``anchor``,
    oldest first.
    """
    anchor = ensure_utc(anchor)
    index = anchor.year * 12 + (anchor.month - 1)
    units = []
    for i in range(index - months + 1, index + 1):
        year, month = divmod(i, 12)
        next_year, next_month = divmod(i + 1, 12)
        units.append(
            MonthUnit(
                key=f"{year:04d}-{month + 1:02d}",
                date_from=_month_start(year, month + 1),
                date_to=_month_start(next_year, next_month + 1),
            )
        )
    return units


def backfill_dedupe_key(store_id: str, unit_key: str) -> str:
    return f"{JobType.ORDER_BACKFILL}:{store_id}:{unit_key}"


class BackfillScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        jobs: JobQueue,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._session_factory = session_factory
        self._jobs = jobs
        self._settings = settings or get_settings()
        self._metrics = metrics or get_metrics()

    async def scan(self, run: RunContext) -> ScanReport:
        """
        Enqueue the outstanding months of every unfinished backfill.

        ``scanned`` counts stores, ``created``/``unchanged`` count months.
        Stores waiting for re-authorization are skipped.
        """
        report = ScanReport()

        with get_tracer().start_as_current_span(SPAN_SCAN) as span:
            span.set_attribute("scan", SCAN_NAME)
            span.set_attribute("run_id", run.run_id)

            async with session_scope(self._session_factory) as session:
                stores = await StoreRepository(session).list_backfill_candidates()

            for store in stores:
                report.scanned += 1
                try:
                    await self._scan_store(store, report)
                except (OperationalError, InterfaceError):
                    raise
                except Exception as exc:
                    logger.exception(
                        "Backfill scan failed for store",
                        extra={"store_id": store.id, **run.log_fields()},
                    )
                    report.add_error(store.id, exc)
                    self._metrics.record_scan_subject(SCAN_NAME, "error")

        logger.info(
            "Backfill scan finished",
            extra={
                "stores": report.scanned,
                "created": report.created,
                "skipped": report.skipped,
                "dead_lettered": report.dead_lettered,
                "errors": len(report.errors),
                **run.log_fields(),
            },
        )
        return report

    async def _scan_store(self, store: Store, report: ScanReport) -> None:
        async with session_scope(self._session_factory) as session:
            credential = await CredentialRepository(session).get(store.id)
            completed = await BackfillLedgerRepository(session).completed_units(store.id)

        if credential is None or credential.status == CredentialStatus.REAUTH_REQUIRED:
            report.skipped += 1
            self._metrics.record_scan_subject(SCAN_NAME, "skipped")
            return

        units = month_units(store.backfill_requested_at, self._settings.backfill_months)
        outstanding = [unit for unit in units if unit.key not in completed]

        if not outstanding:
            async with session_scope(self._session_factory) as session:
                await StoreRepository(session).mark_backfill_completed(store.id, utcnow())
            logger.info("Backfill complete", extra={"store_id": store.id, "months": len(units)})
            self._metrics.record_scan_subject(SCAN_NAME, "completed")
            return

        keys = {unit.key: backfill_dedupe_key(store.id, unit.key) for unit in outstanding}
        async with session_scope(self._session_factory) as session:
            latest = await JobRepository(session).latest_statuses(list(keys.values()))

        for unit in outstanding:
            # Dead letters come back only through the dead-letter processor
            if latest.get(keys[unit.key]) == JobStatus.DEAD_LETTER:
                report.dead_lettered += 1
                self._metrics.record_scan_subject(SCAN_NAME, "dead_letter")
                continue

            result = await self._jobs.enqueue(
                JobSpec(
                    tenant_id=store.tenant_id,
                    subject_id=store.id,
                    job_type=JobType.ORDER_BACKFILL,
                    dedupe_key=keys[unit.key],
                    payload=unit.payload(),
                    priority=JobPriority.SCHEDULED,
                    max_attempts=self._settings.max_attempts_backfill,
                )
            )
            if result.created:
                report.created += 1
                self._metrics.record_scan_subject(SCAN_NAME, "created")
            else:
                report.unchanged += 1
                self._metrics.record_scan_subject(SCAN_NAME, "unchanged")
