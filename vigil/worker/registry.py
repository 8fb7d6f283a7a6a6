"""
Executor registry.

Executors must be idempotent - they may be executed multiple times for the
same job when a lease expires mid-flight or a report is lost.
"""

import logging
from collections.abc import Awaitable, Callable

from vigil.context import RunContext
from vigil.types.job import ExecutionOutcome, JobContext

logger = logging.getLogger(__name__)

# An executor may return an outcome, return None (success) or raise
Executor = Callable[[JobContext, RunContext], Awaitable[ExecutionOutcome | None]]


class ExecutorRegistry:
    """
    Maps job types to executors.

    One registry per worker pool, populated by whoever builds the pool, so
    tests can inject fakes without touching module state.
    """

    def __init__(self) -> None:
        self._executors: dict[str, Executor] = {}

    def register(self, job_type: str, executor: Executor | None = None):
        """
        Register an executor directly or as a decorator.

        Example:
            @registry.register("credential_refresh")
            async def refresh(job: JobContext, run: RunContext) -> ExecutionOutcome:
                ...
        """
        if executor is not None:
            self._executors[job_type] = executor
            logger.debug(f"Registered executor for job type: {job_type}")
            return executor

        def decorator(func: Executor) -> Executor:
            self._executors[job_type] = func
            logger.debug(f"Registered executor for job type: {job_type}")
            return func

        return decorator

    def get(self, job_type: str) -> Executor | None:
        return self._executors.get(job_type)

    def job_types(self) -> list[str]:
        return list(self._executors)

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._executors
