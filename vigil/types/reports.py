"""
Reports returned by triggers.

These are what the HTTP layer serializes back to the cron caller, so they
are pydantic models rather than dataclasses.
"""

from typing import Any

from pydantic import BaseModel, Field


class SubjectError(BaseModel):
    """A failure isolated to one subject during a scan."""

    subject_id: str
    error: str


class ScanReport(BaseModel):
    """Result of a scheduler scan."""

    scanned: int = 0
    created: int = 0
    escalated: int = 0
    unchanged: int = 0
    skipped: int = 0
    dead_lettered: int = 0
    errors: list[SubjectError] = Field(default_factory=list)

    def add_error(self, subject_id: str, exc: BaseException) -> None:
        self.errors.append(SubjectError(subject_id=subject_id, error=str(exc) or type(exc).__name__))


class BatchReport(BaseModel):
    """Result of one worker-pool batch."""

    worker_id: str
    reclaimed: int = 0
    claimed: int = 0
    succeeded: int = 0
    retried: int = 0
    dead_lettered: int = 0
    stale_reports: int = 0
    expired_before_start: int = 0
    by_category: dict[str, int] = Field(default_factory=dict)


class DeadLetterReport(BaseModel):
    """Triage summary for one queue's dead letters."""

    queue: str
    total: int = 0
    by_category: dict[str, int] = Field(default_factory=dict)
    requeued: int = 0
    reauth_required: list[str] = Field(default_factory=list)


class MaintenanceReport(BaseModel):
    """Result of a maintenance pass."""

    reclaimed: dict[str, int] = Field(default_factory=dict)
    locks_swept: int = 0
    purged: dict[str, int] = Field(default_factory=dict)


class TriggerResult(BaseModel):
    """Envelope returned for every trigger invocation."""

    ok: bool = True
    trigger: str
    run_id: str
    skipped: bool = False
    reason: str | None = None
    report: dict[str, Any] | list[dict[str, Any]] | None = None
