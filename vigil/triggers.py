"""
Trigger entry points.

Every periodic task runs through a trigger: the HTTP trigger routes and the
long-running processes both call ``TriggerRunner.dispatch``. Each call gets
its own ``RunContext``. Triggers for a job family that must not overlap run
under that family's distributed lock; losing the lock race is a normal
result reported as ``skipped``.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel

from vigil.config import Settings, get_settings
from vigil.constants import (
    LOCK_BACKFILL_SCAN,
    LOCK_CREDENTIAL_SCAN,
    LOCK_CREDENTIAL_URGENT,
    LOCK_DEAD_LETTERS,
    LOCK_MAINTENANCE,
    SPAN_TRIGGER,
    TriggerName,
)
from vigil.context import RunContext
from vigil.observability.logging import bound_context
from vigil.observability.tracing import get_tracer
from vigil.queue.dead_letter import DeadLetterProcessor
from vigil.queue.locks import LockManager
from vigil.reaper.maintenance import Maintenance
from vigil.scheduler.backfill import BackfillScheduler
from vigil.scheduler.refresh import CredentialRefreshScheduler
from vigil.types.reports import TriggerResult
from vigil.worker.pool import WorkerPool

logger = logging.getLogger(__name__)

Task = Callable[[RunContext], Awaitable[Any]]


def _serialize(report: Any) -> dict[str, Any] | list[dict[str, Any]] | None:
    if report is None:
        return None
    if isinstance(report, BaseModel):
        return report.model_dump(mode="json")
    return [item.model_dump(mode="json") for item in report]


class TriggerRunner:
    def __init__(
        self,
        locks: LockManager,
        jobs_pool: WorkerPool,
        events_pool: WorkerPool,
        refresh: CredentialRefreshScheduler,
        backfill: BackfillScheduler,
        dead_letters: DeadLetterProcessor,
        maintenance: Maintenance,
        settings: Settings | None = None,
    ):
        self._locks = locks
        self._jobs_pool = jobs_pool
        self._events_pool = events_pool
        self._refresh = refresh
        self._backfill = backfill
        self._dead_letters = dead_letters
        self._maintenance = maintenance
        self._settings = settings or get_settings()

    async def dispatch(self, trigger: TriggerName | str) -> TriggerResult:
        """
        Run a trigger by name.

        Raises:
            ValueError: Unknown trigger name.
        """
        name = TriggerName(trigger)
        handlers: dict[TriggerName, Callable[[], Awaitable[TriggerResult]]] = {
            TriggerName.CREDENTIAL_SCAN: self.scan_refresh,
            TriggerName.CREDENTIAL_URGENT: self.scan_urgent,
            TriggerName.BACKFILL_SCAN: self.scan_backfill,
            TriggerName.JOBS_WORKER: self.run_jobs,
            TriggerName.EVENTS_WORKER: self.run_events,
            TriggerName.DEAD_LETTERS: self.process_dead_letters,
            TriggerName.MAINTENANCE: self.maintenance,
        }
        return await handlers[name]()

    async def scan_refresh(self) -> TriggerResult:
        return await self._locked(
            TriggerName.CREDENTIAL_SCAN,
            LOCK_CREDENTIAL_SCAN,
            self._settings.lock_ttl_scan_seconds,
            self._refresh.scan,
        )

    async def scan_urgent(self) -> TriggerResult:
        return await self._locked(
            TriggerName.CREDENTIAL_URGENT,
            LOCK_CREDENTIAL_URGENT,
            self._settings.lock_ttl_scan_seconds,
            self._refresh.scan_urgent,
        )

    async def scan_backfill(self) -> TriggerResult:
        return await self._locked(
            TriggerName.BACKFILL_SCAN,
            LOCK_BACKFILL_SCAN,
            self._settings.lock_ttl_scan_seconds,
            self._backfill.scan,
        )

    async def process_dead_letters(self) -> TriggerResult:
        return await self._locked(
            TriggerName.DEAD_LETTERS,
            LOCK_DEAD_LETTERS,
            self._settings.lock_ttl_dead_letter_seconds,
            self._dead_letters.process,
        )

    async def maintenance(self) -> TriggerResult:
        return await self._locked(
            TriggerName.MAINTENANCE,
            LOCK_MAINTENANCE,
            self._settings.lock_ttl_maintenance_seconds,
            self._maintenance.run_once,
        )

    async def run_jobs(self) -> TriggerResult:
        """Claim and execute one batch of jobs; claims are atomic, so no lock."""

        async def task(run: RunContext):
            return await self._jobs_pool.run_batch(run.worker_id, run=run)

        return await self._unlocked(TriggerName.JOBS_WORKER, task)

    async def run_events(self) -> TriggerResult:
        async def task(run: RunContext):
            return await self._events_pool.run_batch(
                run.worker_id,
                batch_size=self._settings.events_batch_size,
                run=run,
            )

        return await self._unlocked(TriggerName.EVENTS_WORKER, task)

    def _new_run(self, trigger: TriggerName) -> RunContext:
        return RunContext.new(str(trigger), self._settings, worker_id=self._settings.worker_id)

    async def _unlocked(self, trigger: TriggerName, task: Task) -> TriggerResult:
        run = self._new_run(trigger)
        with bound_context(**run.log_fields()):
            with get_tracer().start_as_current_span(SPAN_TRIGGER) as span:
                span.set_attribute("trigger", str(trigger))
                span.set_attribute("run_id", run.run_id)
                report = await task(run)
        return TriggerResult(trigger=str(trigger), run_id=run.run_id, report=_serialize(report))

    async def _locked(
        self,
        trigger: TriggerName,
        lock_key: str,
        ttl_seconds: int,
        task: Task,
    ) -> TriggerResult:
        run = self._new_run(trigger)
        with bound_context(**run.log_fields()):
            with get_tracer().start_as_current_span(SPAN_TRIGGER) as span:
                span.set_attribute("trigger", str(trigger))
                span.set_attribute("run_id", run.run_id)

                async with self._locks.hold(lock_key, run.run_id, ttl_seconds) as acquired:
                    span.set_attribute("lock_acquired", acquired)
                    if not acquired:
                        logger.info("Trigger skipped, lock held", extra={"lock_key": lock_key})
                        return TriggerResult(
                            trigger=str(trigger),
                            run_id=run.run_id,
                            skipped=True,
                            reason="locked",
                        )
                    report = await task(run)

        return TriggerResult(trigger=str(trigger), run_id=run.run_id, report=_serialize(report))
