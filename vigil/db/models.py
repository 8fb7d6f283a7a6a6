"""
SQLAlchemy database models.
Defines the leased queue tables, the lock table and the account records
the executors read and write.
"""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from vigil.clock import ensure_utc, utcnow
from vigil.constants import (
    PRIORITY_RANKS,
    ConnectionStatus,
    CredentialStatus,
    ErrorCategory,
    EventKind,
    JobPriority,
    JobStatus,
    JobType,
    PROVIDER_MERCADOLIBRE,
)
from vigil.types.job import JobContext

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

ACTIVE_PREDICATE = "status IN ('pending', 'processing')"


def _enum(enum_cls, name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=32,
        values_callable=lambda x: [e.value for e in x],
    )


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class LeasedRecordMixin:
    """
    Columns shared by every leased queue table.

    Invariants maintained by the repositories:
    - status = processing implies lease_owner and lease_expires_at are set
    - terminal statuses imply lease_owner is null
    - attempts never decreases
    """

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    status: Mapped[JobStatus] = mapped_column(
        _enum(JobStatus, "job_status"),
        nullable=False,
        default=JobStatus.PENDING,
        index=True,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    requeue_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_category: Mapped[ErrorCategory | None] = mapped_column(
        _enum(ErrorCategory, "error_category"),
        nullable=True,
    )

    # Scheduling and lease management
    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    lease_owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    @property
    def is_lease_expired(self) -> bool:
        """Check if the record's lease has expired."""
        if self.lease_expires_at is None:
            return True
        return utcnow() > ensure_utc(self.lease_expires_at)


class Job(LeasedRecordMixin, Base):
    """
    Unit of scheduled work (credential refresh, order backfill month).

    ``dedupe_key`` is unique among active jobs only, so a re-scan cannot
    create a second pending job for the same subject while a finished one
    does not block new work.
    """

    __tablename__ = "jobs"
    queue_name = "jobs"

    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    job_type: Mapped[str] = mapped_column(String(64), nullable=False)
    priority: Mapped[JobPriority] = mapped_column(
        _enum(JobPriority, "job_priority"),
        nullable=False,
        default=JobPriority.SCHEDULED,
    )
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    dedupe_key: Mapped[str] = mapped_column(String(512), nullable=False)

    __table_args__ = (
        Index(
            "uq_jobs_active_dedupe",
            "dedupe_key",
            unique=True,
            postgresql_where=text(ACTIVE_PREDICATE),
            sqlite_where=text(ACTIVE_PREDICATE),
        ),
        Index("ix_jobs_claim", "status", "scheduled_at"),
        Index("ix_jobs_lease_expiry", "status", "lease_expires_at"),
    )

    @property
    def priority_rank(self) -> int:
        return PRIORITY_RANKS.get(self.priority, 0)

    def to_context(self) -> JobContext:
        return JobContext(
            id=self.id,
            queue=self.queue_name,
            tenant_id=self.tenant_id,
            subject_id=self.subject_id,
            job_type=self.job_type,
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            payload=dict(self.payload or {}),
            lease_owner=self.lease_owner,
            lease_expires_at=ensure_utc(self.lease_expires_at),
            priority=self.priority,
        )

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, type={self.job_type}, subject={self.subject_id}, "
            f"status={self.status}, attempts={self.attempts}/{self.max_attempts})"
        )


class IngestedEvent(LeasedRecordMixin, Base):
    """
    Inbound notification awaiting normalization.

    ``dedupe_key`` is unique for the lifetime of the row: a redelivered
    notification is a no-op until retention removes the original.
    """

    __tablename__ = "ingested_events"
    queue_name = "events"

    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    store_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    topic: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[EventKind] = mapped_column(_enum(EventKind, "event_kind"), nullable=False)
    resource: Mapped[str] = mapped_column(String(512), nullable=False)
    external_account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    raw_payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    dedupe_key: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)

    __table_args__ = (
        Index("ix_ingested_events_claim", "status", "scheduled_at"),
        Index("ix_ingested_events_lease_expiry", "status", "lease_expires_at"),
    )

    def to_context(self) -> JobContext:
        return JobContext(
            id=self.id,
            queue=self.queue_name,
            tenant_id=self.tenant_id,
            subject_id=self.store_id,
            job_type=JobType.NORMALIZE_EVENT,
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            payload={
                "source": self.source,
                "topic": self.topic,
                "kind": str(self.kind),
                "resource": self.resource,
                "external_account_id": self.external_account_id,
                "dedupe_key": self.dedupe_key,
                "raw_payload": dict(self.raw_payload or {}),
                "received_at": ensure_utc(self.created_at).isoformat(),
            },
            lease_owner=self.lease_owner,
            lease_expires_at=ensure_utc(self.lease_expires_at),
        )

    def __repr__(self) -> str:
        return (
            f"IngestedEvent(id={self.id}, topic={self.topic}, "
            f"status={self.status}, attempts={self.attempts}/{self.max_attempts})"
        )


class JobLock(Base):
    """Named mutual-exclusion lease for periodic tasks."""

    __tablename__ = "job_locks"

    lock_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    owner: Mapped[str] = mapped_column(String(255), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"JobLock(key={self.lock_key}, owner={self.owner}, expires_at={self.expires_at})"


class Store(Base):
    """A seller account connected to a marketplace."""

    __tablename__ = "stores"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    provider_key: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default=PROVIDER_MERCADOLIBRE,
    )
    external_account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    connection_status: Mapped[ConnectionStatus] = mapped_column(
        _enum(ConnectionStatus, "connection_status"),
        nullable=False,
        default=ConnectionStatus.ACTIVE,
    )
    backfill_requested_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    backfill_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("provider_key", "external_account_id", name="uq_store_account"),
    )


class Credential(Base):
    """OAuth token pair for a store."""

    __tablename__ = "credentials"

    store_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("stores.id", ondelete="CASCADE"),
        primary_key=True,
    )
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    status: Mapped[CredentialStatus] = mapped_column(
        _enum(CredentialStatus, "credential_status"),
        nullable=False,
        default=CredentialStatus.ACTIVE,
    )
    reauth_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_refreshed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )


class BackfillLedger(Base):
    """Months of order history already imported for a store."""

    __tablename__ = "backfill_ledger"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[str] = mapped_column(String(255), nullable=False)
    unit_key: Mapped[str] = mapped_column(String(32), nullable=False)
    orders_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        UniqueConstraint("store_id", "unit_key", name="uq_backfill_unit"),
    )


class DomainEvent(Base):
    """Normalized event consumed by downstream signal evaluation."""

    __tablename__ = "domain_events"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    store_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    source_event_id: Mapped[str] = mapped_column(String(512), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("source_event_id", "event_type", name="uq_domain_event_source"),
    )
