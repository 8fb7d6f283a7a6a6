"""
Worker pool and executor registry.
"""

from vigil.worker.pool import WorkerPool
from vigil.worker.registry import Executor, ExecutorRegistry

__all__ = ["WorkerPool", "ExecutorRegistry", "Executor"]
