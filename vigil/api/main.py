"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from vigil import __version__
from vigil.api.routes import admin_router, health_router, ingest_router, triggers_router
from vigil.config import get_settings
from vigil.db import close_db, create_schema, get_engine, init_db
from vigil.observability.logging import setup_logging
from vigil.observability.metrics import setup_metrics
from vigil.observability.tracing import instrument_fastapi, instrument_sqlalchemy, setup_tracing
from vigil.runtime import Runtime, build_runtime
from vigil.types.api import ErrorResponse

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Builds the runtime unless one was injected (tests inject theirs).
    """
    owns_runtime = getattr(app.state, "runtime", None) is None
    if owns_runtime:
        settings = get_settings()
        setup_logging(settings, component="api")
        setup_metrics()
        setup_tracing(settings)
        session_factory = await init_db()
        await create_schema()
        instrument_sqlalchemy(get_engine())
        app.state.runtime = build_runtime(session_factory, settings)

    logger.info("Application started")

    yield

    if owns_runtime:
        await app.state.runtime.close()
        app.state.runtime = None
        await close_db()
    logger.info("Application shutdown")


async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Store failures are the only errors surfaced to trigger callers."""
    logger.error(
        "Database error",
        extra={"path": request.url.path, "error": type(exc).__name__},
    )
    body = ErrorResponse(error="store_unavailable", detail="Database unavailable")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=body.model_dump(),
    )


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        runtime: Pre-built runtime; when omitted the lifespan builds one.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="Vigil Jobs API",
        description="Leased job queues for credential refresh, backfill and notification ingestion",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.runtime = runtime

    app.add_exception_handler(SQLAlchemyError, database_error_handler)

    app.include_router(health_router)
    app.include_router(triggers_router)
    app.include_router(ingest_router)
    app.include_router(admin_router)

    # Instrument with OpenTelemetry
    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()
    uvicorn.run(
        "vigil.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    run()
