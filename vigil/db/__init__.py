"""
Database module.
Contains database connection, models, and repository implementations.
"""

from vigil.db.connection import (
    build_session_factory,
    close_db,
    create_engine_for,
    create_schema,
    get_engine,
    init_db,
    session_scope,
)
from vigil.db.models import (
    BackfillLedger,
    Base,
    Credential,
    DomainEvent,
    IngestedEvent,
    Job,
    JobLock,
    Store,
)

__all__ = [
    "build_session_factory",
    "create_engine_for",
    "create_schema",
    "get_engine",
    "session_scope",
    "init_db",
    "close_db",
    "Base",
    "Job",
    "IngestedEvent",
    "JobLock",
    "Store",
    "Credential",
    "BackfillLedger",
    "DomainEvent",
]
