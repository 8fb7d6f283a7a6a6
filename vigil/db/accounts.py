"""
Account-side data access: stores, credentials, the backfill ledger and
normalized domain events.
"""

import logging
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vigil.clock import utcnow
from vigil.constants import ConnectionStatus, CredentialStatus
from vigil.db.models import BackfillLedger, Credential, DomainEvent, Store
from vigil.db.repository import dialect_insert

logger = logging.getLogger(__name__)


class StoreRepository:
    """Connected seller stores."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, store_id: str) -> Store | None:
        return await self._session.get(Store, store_id)

    async def find_by_account(self, provider_key: str, external_account_id: str) -> Store | None:
        """Resolve a store from the provider's account id."""
        stmt = select(Store).where(
            Store.provider_key == provider_key,
            Store.external_account_id == external_account_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_backfill_candidates(self) -> Sequence[Store]:
        """Active stores with a requested, unfinished backfill."""
        stmt = (
            select(Store)
            .where(
                Store.backfill_requested_at.is_not(None),
                Store.backfill_completed_at.is_(None),
                Store.connection_status == ConnectionStatus.ACTIVE,
            )
            .order_by(Store.backfill_requested_at.asc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def mark_backfill_completed(self, store_id: str, now: datetime) -> None:
        await self._session.execute(
            update(Store).where(Store.id == store_id).values(backfill_completed_at=now)
        )


class CredentialRepository:
    """
    OAuth credentials.

    ``mark_reauth_required`` is what the retry policy's subject flag
    resolves to: the credential stops being scanned and the store shows as
    needing re-authorization.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, store_id: str) -> Credential | None:
        stmt = (
            select(Credential)
            .where(Credential.store_id == store_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_expiring(self, before: datetime, limit: int = 500) -> Sequence[Credential]:
        """Active credentials of active stores expiring before ``before``."""
        stmt = (
            select(Credential)
            .join(Store, Store.id == Credential.store_id)
            .where(
                Credential.status == CredentialStatus.ACTIVE,
                Credential.expires_at <= before,
                Store.connection_status == ConnectionStatus.ACTIVE,
            )
            .order_by(Credential.expires_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def store_grant(
        self,
        store_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        now: datetime | None = None,
    ) -> bool:
        """Persist a refreshed token pair."""
        now = now or utcnow()
        stmt = (
            update(Credential)
            .where(Credential.store_id == store_id)
            .values(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
                status=CredentialStatus.ACTIVE,
                reauth_reason=None,
                last_refreshed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def mark_reauth_required(self, store_id: str, reason: str | None = None) -> None:
        now = utcnow()
        await self._session.execute(
            update(Credential)
            .where(Credential.store_id == store_id)
            .values(
                status=CredentialStatus.REAUTH_REQUIRED,
                reauth_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(
            update(Store)
            .where(Store.id == store_id)
            .values(connection_status=ConnectionStatus.REAUTH_REQUIRED)
            .execution_options(synchronize_session=False)
        )
        logger.warning(
            "Store flagged for re-authorization",
            extra={"store_id": store_id},
        )


class BackfillLedgerRepository:
    """Durable record of completed backfill months."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def completed_units(self, store_id: str) -> set[str]:
        stmt = select(BackfillLedger.unit_key).where(BackfillLedger.store_id == store_id)
        result = await self._session.execute(stmt)
        return set(result.scalars().all())

    async def record(self, store_id: str, unit_key: str, orders_count: int, now: datetime) -> bool:
        """Record a completed unit; repeat calls are no-ops."""
        stmt = (
            dialect_insert(self._session, BackfillLedger)
            .values(
                store_id=store_id,
                unit_key=unit_key,
                orders_count=orders_count,
                completed_at=now,
            )
            .on_conflict_do_nothing(index_elements=["store_id", "unit_key"])
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0


class DomainEventRepository:
    """Normalized events, idempotent on (source_event_id, event_type)."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def insert(self, **values: Any) -> tuple[DomainEvent | None, bool]:
        stmt = (
            dialect_insert(self._session, DomainEvent)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["source_event_id", "event_type"])
            .returning(DomainEvent)
        )
        result = await self._session.execute(stmt)
        event = result.scalar_one_or_none()
        return event, event is not None

    async def list_for_store(self, store_id: str) -> Sequence[DomainEvent]:
        stmt = (
            select(DomainEvent)
            .where(DomainEvent.store_id == store_id)
            .order_by(DomainEvent.occurred_at.asc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()
