"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from vigil.constants import ErrorCategory, JobPriority, JobStatus


class JobResponse(BaseModel):
    """Full job details response."""

    id: UUID
    tenant_id: str
    subject_id: str
    job_type: str
    priority: JobPriority
    status: JobStatus
    attempts: int
    max_attempts: int
    requeue_count: int
    lease_owner: str | None
    lease_expires_at: datetime | None
    scheduled_at: datetime
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None
    last_error: str | None
    last_error_category: ErrorCategory | None


class QueueStatsResponse(BaseModel):
    """Counts for one queue."""

    pending: int
    processing: int
    dead_letter: int
    completed_recent: int
    dead_letter_by_category: dict[str, int] = Field(default_factory=dict)


class StatsResponse(BaseModel):
    """Per-queue statistics for the tenant."""

    jobs: QueueStatsResponse
    events: QueueStatsResponse
    window_hours: int


class DeadLetterItem(BaseModel):
    """A dead-lettered record as shown to operators."""

    id: UUID
    queue: str
    subject_id: str
    job_type: str
    attempts: int
    requeue_count: int
    error_category: ErrorCategory | None
    error: str | None
    requeueable: bool
    updated_at: datetime


class DeadLetterListResponse(BaseModel):
    items: list[DeadLetterItem]
    total: int


class RequeueResponse(BaseModel):
    """Response body after requeueing a dead letter."""

    id: UUID
    status: JobStatus
    attempts: int
    scheduled_at: datetime
    message: str = "Queued for one more attempt"


class CancelResponse(BaseModel):
    id: UUID
    status: JobStatus
    message: str = "Job cancelled"


class IngestAck(BaseModel):
    """Acknowledgement returned to the notification sender."""

    received: bool = True
    event_id: UUID
    duplicate: bool


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: Any = None
