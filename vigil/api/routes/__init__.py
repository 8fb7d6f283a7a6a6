"""
API routes module.
"""

from vigil.api.routes.admin import router as admin_router
from vigil.api.routes.health import router as health_router
from vigil.api.routes.ingest import router as ingest_router
from vigil.api.routes.triggers import router as triggers_router

__all__ = ["admin_router", "health_router", "ingest_router", "triggers_router"]
