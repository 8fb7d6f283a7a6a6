"""
Credential refresh executor.
"""

import logging
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vigil.clients.meli import MeliClient
from vigil.clock import ensure_utc, utcnow
from vigil.config import Settings, get_settings
from vigil.constants import CredentialStatus
from vigil.context import RunContext
from vigil.db.accounts import CredentialRepository
from vigil.db.connection import session_scope
from vigil.errors import CredentialInvalidError, ExecutorError
from vigil.types.job import ExecutionOutcome, JobContext

logger = logging.getLogger(__name__)


class CredentialRefreshExecutor:
    """
    Exchange the stored refresh token for a new pair.

    Idempotent: if the credential already outlives the refresh horizon
    (another run refreshed it) the job succeeds without calling the
    provider.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: MeliClient,
        settings: Settings | None = None,
    ):
        self._session_factory = session_factory
        self._client = client
        self._settings = settings or get_settings()

    async def __call__(self, job: JobContext, run: RunContext) -> ExecutionOutcome:
        store_id = job.subject_id
        async with session_scope(self._session_factory) as session:
            credential = await CredentialRepository(session).get(store_id)

        if credential is None:
            raise ExecutorError(f"No credential for store {store_id}")
        if credential.status == CredentialStatus.REAUTH_REQUIRED:
            raise CredentialInvalidError(subject_id=store_id)

        now = utcnow()
        expires_at = ensure_utc(credential.expires_at)
        horizon = timedelta(minutes=self._settings.refresh_horizon_minutes)
        if expires_at - now > horizon:
            logger.info(
                "Credential already fresh",
                extra={"store_id": store_id, "expires_at": expires_at.isoformat()},
            )
            return ExecutionOutcome.ok({"skipped": True, "expires_at": expires_at.isoformat()})

        grant = await self._client.refresh_token(credential.refresh_token, subject_id=store_id)

        refreshed_at = utcnow()
        new_expires_at = refreshed_at + timedelta(seconds=grant.expires_in)
        async with session_scope(self._session_factory) as session:
            await CredentialRepository(session).store_grant(
                store_id,
                access_token=grant.access_token,
                refresh_token=grant.refresh_token,
                expires_at=new_expires_at,
                now=refreshed_at,
            )

        logger.info(
            "Credential refreshed",
            extra={"store_id": store_id, "expires_at": new_expires_at.isoformat(), **run.log_fields()},
        )
        return ExecutionOutcome.ok({"expires_at": new_expires_at.isoformat()})
