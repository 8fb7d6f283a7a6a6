"""
Leased queues, retry policy and distributed locks.
"""

from vigil.queue.base import LeasedQueue
from vigil.queue.events import EventQueue
from vigil.queue.jobs import JobQueue
from vigil.queue.locks import LockManager
from vigil.queue.retry import RetryDecision, RetryPolicy, classify_error, compute_backoff

__all__ = [
    "LeasedQueue",
    "JobQueue",
    "EventQueue",
    "LockManager",
    "RetryPolicy",
    "RetryDecision",
    "classify_error",
    "compute_backoff",
]
