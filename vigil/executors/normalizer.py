"""
Ingested notification -> domain event.
"""

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vigil.clock import utcnow
from vigil.context import RunContext
from vigil.db.accounts import DomainEventRepository
from vigil.db.connection import session_scope
from vigil.ingest.topics import entity_id_from_resource, occurred_at_from_payload, resolve_topic
from vigil.types.job import ExecutionOutcome, JobContext

logger = logging.getLogger(__name__)


class NotificationNormalizer:
    """
    Persist one domain event per ingested record.

    The insert is idempotent on (source_event_id, event_type); a replay
    after a lost report completes without writing a second row.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def __call__(self, job: JobContext, run: RunContext) -> ExecutionOutcome:
        payload = job.payload
        route = resolve_topic(payload["topic"])
        raw = payload.get("raw_payload") or {}
        received_at = datetime.fromisoformat(payload["received_at"]) if payload.get("received_at") else utcnow()

        async with session_scope(self._session_factory) as session:
            event, created = await DomainEventRepository(session).insert(
                tenant_id=job.tenant_id,
                store_id=job.subject_id,
                event_type=route.event_type,
                entity_type=str(route.kind),
                entity_id=entity_id_from_resource(payload["resource"]),
                source_event_id=payload["dedupe_key"],
                occurred_at=occurred_at_from_payload(raw, fallback=received_at),
                payload={
                    "topic": route.topic,
                    "resource": payload["resource"],
                    "source": payload.get("source"),
                    "raw": raw,
                },
            )

        if not created:
            logger.info(
                "Domain event already recorded",
                extra={"record_id": str(job.id), "event_type": route.event_type},
            )
            return ExecutionOutcome.ok({"duplicate": True})

        return ExecutionOutcome.ok({"domain_event_id": str(event.id), "event_type": route.event_type})
