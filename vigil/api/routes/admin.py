"""
Tenant-scoped operator routes: stats, dead-letter triage, cancellation.
"""

import logging
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from vigil.api.auth import CurrentUser
from vigil.api.deps import RuntimeDep
from vigil.constants import API_V1_PREFIX, REAUTH_MESSAGE, ErrorCategory
from vigil.errors import InvalidTransitionError, JobNotFoundError
from vigil.queue.base import LeasedQueue
from vigil.runtime import Runtime
from vigil.types.api import (
    CancelResponse,
    DeadLetterItem,
    DeadLetterListResponse,
    JobResponse,
    QueueStatsResponse,
    RequeueResponse,
    StatsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/admin", tags=["Admin"])

QueueName = Literal["jobs", "events"]


def _queue(runtime: Runtime, name: QueueName) -> LeasedQueue:
    return runtime.jobs if name == "jobs" else runtime.events


def _dead_letter_item(queue: LeasedQueue, record, max_requeues: int) -> DeadLetterItem:
    """Build the operator view; credential failures only show the generic message."""
    context = record.to_context()
    category = record.last_error_category
    credential_failure = category == ErrorCategory.CREDENTIAL_INVALID
    return DeadLetterItem(
        id=record.id,
        queue=queue.name,
        subject_id=context.subject_id,
        job_type=context.job_type,
        attempts=record.attempts,
        requeue_count=record.requeue_count,
        error_category=category,
        error=REAUTH_MESSAGE if credential_failure else record.last_error,
        requeueable=not credential_failure and record.requeue_count < max_requeues,
        updated_at=record.updated_at,
    )


@router.get(
    "/stats",
    response_model=StatsResponse,
    summary="Queue statistics",
    description="Pending, processing, dead-lettered and recently completed counts per queue.",
)
async def get_stats(current_user: CurrentUser, runtime: RuntimeDep) -> StatsResponse:
    sections = {}
    for queue in (runtime.jobs, runtime.events):
        stats = await queue.stats(tenant_id=current_user.tenant_id)
        sections[queue.name] = QueueStatsResponse(
            pending=stats.pending,
            processing=stats.processing,
            dead_letter=stats.dead_letter,
            completed_recent=stats.completed_recent,
            dead_letter_by_category=stats.by_category,
        )
    return StatsResponse(
        jobs=sections["jobs"],
        events=sections["events"],
        window_hours=runtime.settings.stats_recent_window_hours,
    )


@router.get(
    "/dead-letters",
    response_model=DeadLetterListResponse,
    summary="List dead letters",
    description="Dead-lettered records for the tenant, most recent first.",
)
async def list_dead_letters(
    current_user: CurrentUser,
    runtime: RuntimeDep,
    queue: QueueName | None = Query(default=None),
    category: ErrorCategory | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
) -> DeadLetterListResponse:
    """
    List dead letters.

    Args:
        current_user: Authenticated operator.
        runtime: Wired components.
        queue: Restrict to one queue.
        category: Restrict to one error category.
        limit: Maximum items per queue.
    """
    queues = [_queue(runtime, queue)] if queue else [runtime.jobs, runtime.events]
    max_requeues = runtime.settings.dead_letter_max_requeues

    items: list[DeadLetterItem] = []
    for leased_queue in queues:
        records = await leased_queue.list_dead_letters(
            tenant_id=current_user.tenant_id,
            category=category,
            limit=limit,
        )
        items.extend(_dead_letter_item(leased_queue, record, max_requeues) for record in records)

    items.sort(key=lambda item: item.updated_at, reverse=True)
    return DeadLetterListResponse(items=items, total=len(items))


@router.get(
    "/jobs/{job_id}",
    response_model=JobResponse,
    summary="Get job details",
)
async def get_job(job_id: UUID, current_user: CurrentUser, runtime: RuntimeDep) -> JobResponse:
    job = await runtime.jobs.get(job_id, tenant_id=current_user.tenant_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )

    response = JobResponse.model_validate(job, from_attributes=True)
    if job.last_error_category == ErrorCategory.CREDENTIAL_INVALID:
        response.last_error = REAUTH_MESSAGE
    return response


@router.post(
    "/{queue}/{record_id}/requeue",
    response_model=RequeueResponse,
    summary="Requeue a dead letter",
    description="Give a dead-lettered record one more attempt. Refused for credential failures.",
)
async def requeue_dead_letter(
    queue: QueueName,
    record_id: UUID,
    current_user: CurrentUser,
    runtime: RuntimeDep,
) -> RequeueResponse:
    """
    Requeue one dead letter.

    Raises:
        HTTPException: 404 if not found for the tenant, 409 if the record
            is not eligible.
    """
    try:
        record = await _queue(runtime, queue).requeue_dead_letter(
            record_id,
            tenant_id=current_user.tenant_id,
            reason="operator",
        )
    except JobNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Record not found")
    except InvalidTransitionError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Record cannot be requeued (status: {e.current_status})",
        )

    logger.info(
        "Dead letter requeued by operator",
        extra={"queue": queue, "record_id": str(record_id), "tenant_id": current_user.tenant_id},
    )
    return RequeueResponse(
        id=record.id,
        status=record.status,
        attempts=record.attempts,
        scheduled_at=record.scheduled_at,
    )


@router.post(
    "/{queue}/{record_id}/cancel",
    response_model=CancelResponse,
    summary="Cancel a record",
    description="Cancel a pending or processing record. An in-flight execution is not interrupted.",
)
async def cancel_record(
    queue: QueueName,
    record_id: UUID,
    current_user: CurrentUser,
    runtime: RuntimeDep,
) -> CancelResponse:
    try:
        record = await _queue(runtime, queue).cancel(record_id, tenant_id=current_user.tenant_id)
    except JobNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Record not found")
    except InvalidTransitionError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Record is already {e.current_status}",
        )

    return CancelResponse(id=record.id, status=record.status)
