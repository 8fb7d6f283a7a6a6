"""
Scheduler process.

A tick loop standing in for an external cron: fires each periodic trigger
when its cadence has elapsed. Running several schedulers is safe because
every scan and triage trigger takes its family's lock.
"""

import asyncio
import logging
import signal
import time

from vigil.config import Settings, get_settings
from vigil.constants import TriggerName
from vigil.db import close_db, init_db
from vigil.observability.logging import setup_logging
from vigil.observability.metrics import setup_metrics
from vigil.observability.tracing import setup_tracing
from vigil.runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)


def cadences(settings: Settings) -> dict[TriggerName, int]:
    """Seconds between firings, per trigger."""
    return {
        TriggerName.CREDENTIAL_SCAN: settings.cadence_credential_scan_seconds,
        TriggerName.CREDENTIAL_URGENT: settings.cadence_credential_urgent_seconds,
        TriggerName.BACKFILL_SCAN: settings.cadence_backfill_scan_seconds,
        TriggerName.DEAD_LETTERS: settings.cadence_dead_letter_seconds,
        TriggerName.MAINTENANCE: settings.cadence_maintenance_seconds,
    }


class Scheduler:
    def __init__(self, runtime: Runtime):
        self.runtime = runtime
        self.tick = runtime.settings.scheduler_tick_seconds
        self._cadences = cadences(runtime.settings)
        self._last_fired: dict[TriggerName, float] = {}
        self._running = False

    def due(self, now: float) -> list[TriggerName]:
        """Triggers whose cadence has elapsed; everything is due on the first tick."""
        return [
            name
            for name, every in self._cadences.items()
            if now - self._last_fired.get(name, float("-inf")) >= every
        ]

    async def run_once(self, now: float | None = None) -> list[TriggerName]:
        """Fire every due trigger once. One failing trigger does not stop the others."""
        now = time.monotonic() if now is None else now
        fired = []
        for name in self.due(now):
            self._last_fired[name] = now
            try:
                result = await self.runtime.triggers.dispatch(name)
            except Exception as e:
                logger.exception(f"Trigger {name} failed: {e}")
                continue
            fired.append(name)
            logger.info(
                "Trigger fired",
                extra={"trigger": str(name), "run_id": result.run_id, "skipped": result.skipped},
            )
        return fired

    async def start(self) -> None:
        logger.info(f"Scheduler starting with tick {self.tick}s")
        self._running = True
        while self._running:
            await self.run_once()
            await asyncio.sleep(self.tick)
        logger.info("Scheduler stopped")

    async def stop(self) -> None:
        logger.info("Scheduler stopping")
        self._running = False


async def run_async() -> None:
    settings = get_settings()
    setup_logging(settings, component="scheduler")
    setup_metrics()
    setup_tracing(settings)
    session_factory = await init_db()
    runtime = build_runtime(session_factory, settings)

    scheduler = Scheduler(runtime)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(scheduler.stop()))

    try:
        await scheduler.start()
    finally:
        await runtime.close()
        await close_db()


def run() -> None:
    """Run the scheduler."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
