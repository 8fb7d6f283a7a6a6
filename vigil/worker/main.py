"""
Worker process.

Polls both queues through the trigger runner: each iteration runs one jobs
batch and one events batch, and sleeps when neither claimed anything.
Graceful shutdown on SIGTERM/SIGINT finishes the current batch first.
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

logger = logging.getLogger(__name__)


class Worker:
    """Poll loop over the jobs and events worker pools."""

    def __init__(self, runtime: Runtime, poll_interval: float | None = None):
        """
        Initialize the worker.

        Args:
            runtime: Wired components.
            poll_interval: Seconds between polls when both queues are empty.
        """
        self.runtime = runtime
        self.poll_interval = poll_interval or runtime.settings.worker_poll_interval_seconds
        self._running = False

    async def start(self) -> None:
        """Start the worker."""
        logger.info("Worker starting", extra={"poll_interval": self.poll_interval})
        self._running = True

        while self._running:
            try:
                claimed = await self.run_once()
                if claimed == 0:
                    await asyncio.sleep(self.poll_interval)
            except Exception as e:
                logger.exception(f"Error in worker loop: {e}")
                await asyncio.sleep(self.poll_interval)

        logger.info("Worker stopped")

    async def stop(self) -> None:
        """Stop the worker after the current batch."""
        logger.info("Worker stopping")
        self._running = False

    async def run_once(self) -> int:
        """
        Run one batch from each queue.

        Returns:
            Number of records claimed across both queues.
        """
        jobs = await self.runtime.triggers.run_jobs()
        events = await self.runtime.triggers.run_events()
        return jobs.report["claimed"] + events.report["claimed"]


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging(settings, component="worker")
    setup_metrics()
    setup_tracing(settings)
    session_factory = await init_db()
    runtime = build_runtime(session_factory, settings)

    worker = Worker(runtime)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(worker.stop()))

    try:
        await worker.start()
    finally:
        await runtime.close()
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
