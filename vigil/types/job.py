"""
Job-related type definitions for internal use.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from vigil.constants import ErrorCategory, JobPriority


class ExecutionOutcome(BaseModel):
    """
    Result of one execution.
    Returned by executors (or built by the worker pool from a raised error)
    and handed to the retry policy.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    error_category: ErrorCategory | None = None
    retry_after: float | None = None
    duration_ms: float | None = None

    @classmethod
    def ok(cls, output: dict[str, Any] | None = None) -> "ExecutionOutcome":
        return cls(success=True, output=output)

    @classmethod
    def failed(
        cls,
        error: str,
        category: ErrorCategory = ErrorCategory.OTHER,
        retry_after: float | None = None,
    ) -> "ExecutionOutcome":
        return cls(
            success=False,
            error=error,
            error_category=category,
            retry_after=retry_after,
        )


@dataclass
class JobContext:
    """
    Snapshot of a claimed record passed to executors.

    ``attempts`` is the number of failed attempts recorded before this
    execution; reports are only accepted while it is unchanged.
    """

    id: UUID
    queue: str
    tenant_id: str
    subject_id: str
    job_type: str
    attempts: int
    max_attempts: int
    payload: dict[str, Any]
    lease_owner: str
    lease_expires_at: datetime
    priority: JobPriority | None = None

    @property
    def attempt_number(self) -> int:
        """1-based number of the execution in progress."""
        return self.attempts + 1

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt_number >= self.max_attempts


@dataclass
class JobSpec:
    """What a producer asks the job queue to hold."""

    tenant_id: str
    subject_id: str
    job_type: str
    dedupe_key: str
    payload: dict[str, Any] = field(default_factory=dict)
    priority: JobPriority = JobPriority.SCHEDULED
    scheduled_at: datetime | None = None
    max_attempts: int | None = None


@dataclass
class EventSpec:
    """An inbound record for the ingestion queue."""

    tenant_id: str
    store_id: str
    source: str
    topic: str
    kind: str
    resource: str
    external_account_id: str
    dedupe_key: str
    raw_payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class EnqueueResult:
    """Outcome of an idempotent enqueue."""

    id: UUID
    created: bool
    escalated: bool = False


@dataclass
class QueueStats:
    """Counts by lifecycle state."""

    pending: int = 0
    processing: int = 0
    dead_letter: int = 0
    completed_recent: int = 0
    by_category: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "processing": self.processing,
            "dead_letter": self.dead_letter,
            "completed_recent": self.completed_recent,
        }
