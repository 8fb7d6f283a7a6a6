"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from vigil.observability.logging import bound_context, setup_logging
from vigil.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from vigil.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "bound_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
]
