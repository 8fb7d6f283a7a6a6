"""
Trigger routes, called by an external cron.

Lock contention is a normal outcome: the response is 200 with
``skipped: true``. Only store connectivity failures surface as errors.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from vigil.api.auth import require_trigger_secret
from vigil.api.deps import RuntimeDep
from vigil.constants import API_V1_PREFIX, TriggerName
from vigil.types.reports import TriggerResult

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix=f"{API_V1_PREFIX}/triggers",
    tags=["Triggers"],
    dependencies=[Depends(require_trigger_secret)],
)


@router.post(
    "/{name}",
    response_model=TriggerResult,
    summary="Run a trigger",
    description="Run one scan, worker batch, dead-letter triage or maintenance pass.",
)
async def run_trigger(name: str, runtime: RuntimeDep) -> TriggerResult:
    try:
        trigger = TriggerName(name)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown trigger: {name}",
        )

    result = await runtime.triggers.dispatch(trigger)
    logger.info(
        "Trigger completed",
        extra={"trigger": name, "run_id": result.run_id, "skipped": result.skipped},
    )
    return result
