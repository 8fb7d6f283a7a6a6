"""
Health check routes.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from vigil import __version__
from vigil.api.deps import RuntimeDep
from vigil.clock import utcnow
from vigil.db.connection import session_scope
from vigil.types.api import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


async def _database_ok(runtime) -> bool:
    try:
        async with session_scope(runtime.session_factory) as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.warning("Database health check failed", exc_info=True)
        return False
    return True


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the API and database connection.",
)
async def health_check(runtime: RuntimeDep) -> HealthResponse:
    """
    Perform a health check.

    Checks database connectivity and returns service status.
    """
    db_ok = await _database_ok(runtime)
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=__version__,
        database="healthy" if db_ok else "unhealthy",
        timestamp=utcnow(),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Check if the service is ready to receive traffic.",
)
async def readiness_check(runtime: RuntimeDep) -> dict:
    """Kubernetes readiness probe endpoint."""
    return {"ready": await _database_ok(runtime)}


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    """Kubernetes liveness probe endpoint."""
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics(runtime: RuntimeDep) -> Response:
    """Expose Prometheus metrics."""
    collector = runtime.metrics
    return Response(
        content=collector.get_metrics(),
        media_type=collector.get_content_type(),
    )
