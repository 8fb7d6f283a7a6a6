"""
Type definitions shared across queues, schedulers and the API.
"""

from vigil.types.job import (
    EnqueueResult,
    EventSpec,
    ExecutionOutcome,
    JobContext,
    JobSpec,
    QueueStats,
)
from vigil.types.reports import (
    BatchReport,
    DeadLetterReport,
    MaintenanceReport,
    ScanReport,
    SubjectError,
    TriggerResult,
)

__all__ = [
    # Job types
    "ExecutionOutcome",
    "JobContext",
    "JobSpec",
    "EventSpec",
    "EnqueueResult",
    "QueueStats",
    # Reports
    "ScanReport",
    "SubjectError",
    "BatchReport",
    "DeadLetterReport",
    "MaintenanceReport",
    "TriggerResult",
]
