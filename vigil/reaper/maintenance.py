"""
Periodic housekeeping for the leased tables.
"""

import logging
from collections.abc import Sequence
from datetime import timedelta

from vigil.clock import utcnow
from vigil.config import Settings, get_settings
from vigil.context import RunContext
from vigil.queue.base import LeasedQueue
from vigil.queue.locks import LockManager
from vigil.types.reports import MaintenanceReport

logger = logging.getLogger(__name__)


class Maintenance:
    """
    One maintenance pass:
    1. Return expired leases to pending in every queue
    2. Delete lock rows past their expiry
    3. Purge completed and cancelled records older than the retention window

    Dead letters are never purged here; they stay until triaged.
    """

    def __init__(
        self,
        queues: Sequence[LeasedQueue],
        locks: LockManager,
        settings: Settings | None = None,
    ):
        self._queues = list(queues)
        self._locks = locks
        self._settings = settings or get_settings()

    async def run_once(self, run: RunContext) -> MaintenanceReport:
        now = utcnow()
        retention = timedelta(days=self._settings.retention_days)
        report = MaintenanceReport()

        for queue in self._queues:
            report.reclaimed[queue.name] = await queue.reclaim_stale(now)

        report.locks_swept = await self._locks.sweep_expired()

        for queue in self._queues:
            report.purged[queue.name] = await queue.purge_terminal(retention, now)

        logger.info(
            "Maintenance pass finished",
            extra={
                "reclaimed": report.reclaimed,
                "locks_swept": report.locks_swept,
                "purged": report.purged,
                **run.log_fields(),
            },
        )
        return report
