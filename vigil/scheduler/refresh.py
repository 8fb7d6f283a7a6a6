"""
Credential refresh scheduler.

Decides which refresh jobs should exist. A scan looks at every active
credential expiring inside the horizon and upserts one job per store with a
priority derived from time-to-expiry. Re-scans are free: the job queue's
dedupe key makes the upsert idempotent, and a pending job only ever moves
to a higher priority or an earlier schedule.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vigil.clock import ensure_utc, utcnow
from vigil.config import Settings, get_settings
from vigil.constants import SPAN_SCAN, JobPriority, JobType
from vigil.context import RunContext
from vigil.db.accounts import CredentialRepository
from vigil.db.connection import session_scope
from vigil.observability.metrics import MetricsCollector, get_metrics
from vigil.observability.tracing import get_tracer
from vigil.queue.jobs import JobQueue
from vigil.types.job import JobSpec
from vigil.types.reports import ScanReport

logger = logging.getLogger(__name__)


def refresh_dedupe_key(store_id: str) -> str:
    return f"{JobType.CREDENTIAL_REFRESH}:{store_id}"


class CredentialRefreshScheduler:
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

    def priority_for(self, expires_at: datetime, now: datetime) -> JobPriority:
        """
        Map time-to-expiry to a priority tier.

        Already-expired credentials are critical.
        """
        remaining = ensure_utc(expires_at) - now
        if remaining < timedelta(minutes=self._settings.refresh_critical_minutes):
            return JobPriority.CRITICAL
        if remaining < timedelta(minutes=self._settings.refresh_urgent_minutes):
            return JobPriority.URGENT
        return JobPriority.SCHEDULED

    def scheduled_at_for(self, priority: JobPriority, expires_at: datetime, now: datetime) -> datetime:
        if priority != JobPriority.SCHEDULED:
            return now
        lead = timedelta(minutes=self._settings.refresh_lead_minutes)
        return max(now, ensure_utc(expires_at) - lead)

    async def scan(
        self,
        run: RunContext,
        horizon_minutes: int | None = None,
        scan_name: str = "credential_refresh",
    ) -> ScanReport:
        """
        Upsert refresh jobs for credentials expiring within the horizon.

        Args:
            run: Invocation context.
            horizon_minutes: Look-ahead window; defaults to the configured
                refresh horizon. The urgent scan passes the critical window.
            scan_name: Metric label for this scan.

        Returns:
            ScanReport with created / escalated / unchanged counts and any
            per-store errors.
        """
        now = utcnow()
        horizon = timedelta(minutes=horizon_minutes or self._settings.refresh_horizon_minutes)
        report = ScanReport()

        with get_tracer().start_as_current_span(SPAN_SCAN) as span:
            span.set_attribute("scan", scan_name)
            span.set_attribute("run_id", run.run_id)

            async with session_scope(self._session_factory) as session:
                credentials = await CredentialRepository(session).list_expiring(now + horizon)

            for credential in credentials:
                report.scanned += 1
                try:
                    priority = self.priority_for(credential.expires_at, now)
                    result = await self._jobs.enqueue(
                        JobSpec(
                            tenant_id=credential.tenant_id,
                            subject_id=credential.store_id,
                            job_type=JobType.CREDENTIAL_REFRESH,
                            dedupe_key=refresh_dedupe_key(credential.store_id),
                            payload={"expires_at": ensure_utc(credential.expires_at).isoformat()},
                            priority=priority,
                            scheduled_at=self.scheduled_at_for(priority, credential.expires_at, now),
                        )
                    )
                except (OperationalError, InterfaceError):
                    # Store connectivity; the whole scan fails
                    raise
                except Exception as exc:
                    logger.exception(
                        "Failed to schedule credential refresh",
                        extra={"store_id": credential.store_id, **run.log_fields()},
                    )
                    report.add_error(credential.store_id, exc)
                    self._metrics.record_scan_subject(scan_name, "error")
                    continue

                if result.created:
                    report.created += 1
                    outcome = "created"
                elif result.escalated:
                    report.escalated += 1
                    outcome = "escalated"
                else:
                    report.unchanged += 1
                    outcome = "unchanged"
                self._metrics.record_scan_subject(scan_name, outcome)

            span.set_attribute("created", report.created)

        logger.info(
            "Credential scan finished",
            extra={
                "scan": scan_name,
                "scanned": report.scanned,
                "created": report.created,
                "escalated": report.escalated,
                "errors": len(report.errors),
                **run.log_fields(),
            },
        )
        return report

    async def scan_urgent(self, run: RunContext) -> ScanReport:
        """Scan only credentials inside the critical window."""
        return await self.scan(
            run,
            horizon_minutes=self._settings.refresh_critical_minutes,
            scan_name="credential_urgent",
        )
