"""
Marketplace notification intake.

The handler only validates and enqueues, then acknowledges. Normalization
happens later in the events worker.
"""

from typing import Any

from fastapi import APIRouter, Body, HTTPException

from vigil.api.deps import RuntimeDep
from vigil.constants import API_V1_PREFIX
from vigil.errors import NotificationRejected, UnknownAccountError
from vigil.types.api import IngestAck

router = APIRouter(prefix=f"{API_V1_PREFIX}/ingest", tags=["Ingest"])


@router.post(
    "/meli",
    response_model=IngestAck,
    summary="Receive a marketplace notification",
    description="Validate, deduplicate and enqueue a notification; returns as soon as it is stored.",
)
async def receive_notification(
    runtime: RuntimeDep,
    payload: dict[str, Any] = Body(...),
) -> IngestAck:
    """
    Accept one notification.

    Raises:
        HTTPException: 422 for malformed payloads or unknown topics,
            404 for an unknown seller account.
    """
    try:
        result = await runtime.intake.accept(payload)
    except (NotificationRejected, UnknownAccountError) as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))

    return IngestAck(event_id=result.id, duplicate=not result.created)
