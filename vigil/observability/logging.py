"""
Structured logging setup using structlog.

Every process (api, worker, scheduler, reaper) calls ``setup_logging`` once
with its component name. Modules log through ``logging.getLogger(__name__)``
and pass structured fields via ``extra``.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from opentelemetry import trace

from vigil.config import Settings, get_settings

# Keys whose values must never reach a log sink.
SECRET_KEYS = frozenset(
    {
        "access_token",
        "refresh_token",
        "client_secret",
        "authorization",
        "api_key",
    }
)

REDACTED = "[redacted]"


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Attach the current OpenTelemetry trace and span ids, if any."""
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Mask credential material in log records.

    Marketplace grants and API keys travel through executors and request
    handlers; a stray ``extra={"refresh_token": ...}`` must not leak them.

    Args:
        logger: The logger instance.
        method_name: The method name being called.
        event_dict: The event dictionary.

    Returns:
        The event dictionary with secret values replaced.
    """
    for key in event_dict.keys() & SECRET_KEYS:
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def setup_logging(settings: Settings | None = None, component: str | None = None) -> None:
    """
    Configure structured logging for one vigil process.

    Sets up structlog with JSON or console output based on configuration
    and routes standard library records through the same processors.

    Args:
        settings: Settings to read level and format from.
        component: Process role, bound to every record as ``component``.
    """
    settings = settings or get_settings()

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
        redact_secrets,
    ]

    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpx", "aiosqlite"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.contextvars.clear_contextvars()
    if component:
        structlog.contextvars.bind_contextvars(
            component=component,
            service=settings.otel_service_name,
        )


@contextmanager
def bound_context(**kwargs: Any) -> Iterator[None]:
    """Bind context for the duration of a block, then restore the previous values."""
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield
