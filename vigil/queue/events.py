"""
Ingestion queue for inbound notifications.
"""

from collections.abc import Iterable

from vigil.constants import EventKind
from vigil.db.connection import session_scope
from vigil.db.models import IngestedEvent
from vigil.db.repository import EventRepository
from vigil.queue.base import LeasedQueue
from vigil.types.job import EnqueueResult, EventSpec


class EventQueue(LeasedQueue[IngestedEvent]):
    """
    Same claim/retry machinery as the job queue, without priority tiers.

    Enqueue is insert-or-ignore on ``dedupe_key`` and reports whether the
    record was new.
    """

    name = "events"
    repository_cls = EventRepository

    async def enqueue(self, spec: EventSpec) -> EnqueueResult:
        results = await self.enqueue_many([spec])
        return results[0]

    async def enqueue_many(self, specs: Iterable[EventSpec]) -> list[EnqueueResult]:
        """Enqueue several records in one transaction."""
        results: list[EnqueueResult] = []
        async with session_scope(self._session_factory) as session:
            repo = EventRepository(session)
            for spec in specs:
                event, created = await repo.insert(
                    tenant_id=spec.tenant_id,
                    store_id=spec.store_id,
                    source=spec.source,
                    topic=spec.topic,
                    kind=EventKind(spec.kind),
                    resource=spec.resource,
                    external_account_id=spec.external_account_id,
                    raw_payload=spec.raw_payload,
                    dedupe_key=spec.dedupe_key,
                    max_attempts=self._settings.max_attempts_events,
                )
                results.append(EnqueueResult(id=event.id, created=created))

        for result in results:
            self._metrics.record_enqueue(self.name, result.created)
        return results
