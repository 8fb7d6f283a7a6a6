"""
Maintenance process.

Runs the maintenance trigger periodically: reclaims expired leases, sweeps
expired locks and purges finished records past retention. Several reapers
can run side by side; the maintenance lock lets one pass through per
interval and the others report ``skipped``.
"""

import asyncio
import logging
import signal

from vigil.config import get_settings
from vigil.db import close_db, init_db
from vigil.observability.logging import setup_logging
from vigil.observability.metrics import setup_metrics
from vigil.observability.tracing import setup_tracing
from vigil.runtime import Runtime, build_runtime
from vigil.types.reports import TriggerResult

logger = logging.getLogger(__name__)


class Reaper:
    def __init__(self, runtime: Runtime, interval_seconds: int | None = None):
        self.runtime = runtime
        self.interval = interval_seconds or runtime.settings.reaper_interval_seconds
        self._running = False

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(f"Reaper starting with interval {self.interval}s")
        self._running = True

        while self._running:
            try:
                result = await self.run_once()
                if not result.skipped:
                    reclaimed = sum(result.report["reclaimed"].values())
                    if reclaimed > 0:
                        logger.info(f"Recovered {reclaimed} expired leases")
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            await asyncio.sleep(self.interval)

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._running = False

    async def run_once(self) -> TriggerResult:
        """Run one maintenance pass (also usable cron-style)."""
        return await self.runtime.triggers.maintenance()


async def run_async() -> None:
    """Run the reaper asynchronously."""
    settings = get_settings()
    setup_logging(settings, component="reaper")
    setup_metrics()
    setup_tracing(settings)
    session_factory = await init_db()
    runtime = build_runtime(session_factory, settings)

    reaper = Reaper(runtime)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(reaper.stop()))

    try:
        await reaper.start()
    finally:
        await runtime.close()
        await close_db()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
