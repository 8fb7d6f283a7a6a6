"""
Component wiring.

Builds the queues, executors, schedulers and trigger runner around one
session factory. The API, the long-running processes and the tests all go
through ``build_runtime`` so they run the same graph.
"""

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vigil.clients.meli import MeliClient
from vigil.config import Settings, get_settings
from vigil.constants import REAUTH_MESSAGE, JobType
from vigil.db.accounts import CredentialRepository
from vigil.executors import CredentialRefreshExecutor, NotificationNormalizer, OrderBackfillExecutor
from vigil.ingest.intake import NotificationIntake
from vigil.observability.metrics import MetricsCollector, get_metrics
from vigil.queue.dead_letter import DeadLetterProcessor
from vigil.queue.events import EventQueue
from vigil.queue.jobs import JobQueue
from vigil.queue.locks import LockManager
from vigil.queue.retry import RetryPolicy
from vigil.reaper.maintenance import Maintenance
from vigil.scheduler.backfill import BackfillScheduler
from vigil.scheduler.refresh import CredentialRefreshScheduler
from vigil.triggers import TriggerRunner
from vigil.worker.pool import WorkerPool
from vigil.worker.registry import ExecutorRegistry

logger = logging.getLogger(__name__)


async def flag_reauth_required(session: AsyncSession, job: Any) -> None:
    """Mark the job's store as needing re-authorization."""
    await CredentialRepository(session).mark_reauth_required(job.subject_id, REAUTH_MESSAGE)


@dataclass
class Runtime:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    metrics: MetricsCollector
    client: MeliClient
    locks: LockManager
    jobs: JobQueue
    events: EventQueue
    job_executors: ExecutorRegistry
    event_executors: ExecutorRegistry
    jobs_pool: WorkerPool
    events_pool: WorkerPool
    refresh_scheduler: CredentialRefreshScheduler
    backfill_scheduler: BackfillScheduler
    dead_letters: DeadLetterProcessor
    maintenance: Maintenance
    intake: NotificationIntake
    triggers: TriggerRunner

    async def close(self) -> None:
        await self.client.aclose()


def build_runtime(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings | None = None,
    client: MeliClient | None = None,
    metrics: MetricsCollector | None = None,
) -> Runtime:
    """
    Wire every component around ``session_factory``.

    Args:
        session_factory: Session factory for the store.
        settings: Settings; defaults to ``get_settings()``.
        client: Marketplace client; tests pass one over a mock transport.
        metrics: Metrics collector; defaults to the global one.

    Returns:
        Runtime holding the wired components.
    """
    settings = settings or get_settings()
    metrics = metrics or get_metrics()
    client = client or MeliClient(settings)
    policy = RetryPolicy(settings)

    locks = LockManager(session_factory, metrics)
    jobs = JobQueue(
        session_factory,
        policy=policy,
        settings=settings,
        metrics=metrics,
        on_credential_invalid=flag_reauth_required,
    )
    events = EventQueue(session_factory, policy=policy, settings=settings, metrics=metrics)

    job_executors = ExecutorRegistry()
    job_executors.register(
        JobType.CREDENTIAL_REFRESH,
        CredentialRefreshExecutor(session_factory, client, settings),
    )
    job_executors.register(
        JobType.ORDER_BACKFILL,
        OrderBackfillExecutor(session_factory, client, events, settings),
    )
    event_executors = ExecutorRegistry()
    event_executors.register(JobType.NORMALIZE_EVENT, NotificationNormalizer(session_factory))

    jobs_pool = WorkerPool(jobs, job_executors, settings)
    events_pool = WorkerPool(events, event_executors, settings)

    refresh_scheduler = CredentialRefreshScheduler(session_factory, jobs, settings, metrics)
    backfill_scheduler = BackfillScheduler(session_factory, jobs, settings, metrics)
    dead_letters = DeadLetterProcessor([jobs, events], settings, metrics)
    maintenance = Maintenance([jobs, events], locks, settings)

    triggers = TriggerRunner(
        locks=locks,
        jobs_pool=jobs_pool,
        events_pool=events_pool,
        refresh=refresh_scheduler,
        backfill=backfill_scheduler,
        dead_letters=dead_letters,
        maintenance=maintenance,
        settings=settings,
    )

    return Runtime(
        settings=settings,
        session_factory=session_factory,
        metrics=metrics,
        client=client,
        locks=locks,
        jobs=jobs,
        events=events,
        job_executors=job_executors,
        event_executors=event_executors,
        jobs_pool=jobs_pool,
        events_pool=events_pool,
        refresh_scheduler=refresh_scheduler,
        backfill_scheduler=backfill_scheduler,
        dead_letters=dead_letters,
        maintenance=maintenance,
        intake=NotificationIntake(session_factory, events, metrics),
        triggers=triggers,
    )
