"""
Order history backfill executor.

Imports one month of a store's orders into the ingestion queue, then marks
the month complete in the ledger. Re-running a month is harmless: order
events are keyed by id and status, and the ledger insert is idempotent.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vigil.clients.meli import MeliClient
from vigil.clock import ensure_utc, utcnow
from vigil.config import Settings, get_settings
from vigil.constants import SOURCE_SYNC, CredentialStatus
from vigil.context import RunContext
from vigil.db.accounts import BackfillLedgerRepository, CredentialRepository, StoreRepository
from vigil.db.connection import session_scope
from vigil.errors import CredentialInvalidError, ExecutorError, TransientNetworkError
from vigil.ingest.topics import resolve_topic
from vigil.queue.events import EventQueue
from vigil.types.job import EventSpec, ExecutionOutcome, JobContext

logger = logging.getLogger(__name__)

ORDER_TOPIC = "orders_v2"


def order_event_key(order: dict) -> str:
    return f"sync:order:{order['id']}:{order.get('status', 'unknown')}"


class OrderBackfillExecutor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: MeliClient,
        events: EventQueue,
        settings: Settings | None = None,
    ):
        self._session_factory = session_factory
        self._client = client
        self._events = events
        self._settings = settings or get_settings()

    async def __call__(self, job: JobContext, run: RunContext) -> ExecutionOutcome:
        store_id = job.subject_id
        unit = job.payload["unit"]
        date_from = datetime.fromisoformat(job.payload["date_from"])
        date_to = datetime.fromisoformat(job.payload["date_to"])

        async with session_scope(self._session_factory) as session:
            store = await StoreRepository(session).get(store_id)
            credential = await CredentialRepository(session).get(store_id)

        if store is None or credential is None:
            raise ExecutorError(f"Store {store_id} has no credential")
        if credential.status == CredentialStatus.REAUTH_REQUIRED:
            raise CredentialInvalidError(subject_id=store_id)

        min_ttl = timedelta(seconds=self._settings.access_token_min_ttl_seconds)
        if ensure_utc(credential.expires_at) - utcnow() < min_ttl:
            # The refresh job owns the token; retry after it has run
            raise TransientNetworkError("access token expiring, waiting for refresh")

        access_token = credential.access_token
        seller_id = await self._seller_id(run, store, access_token)
        route = resolve_topic(ORDER_TOPIC)

        fetched = 0
        new_events = 0
        offset = 0
        for _ in range(self._settings.backfill_max_pages):
            page = await self._client.search_orders(
                access_token,
                seller_id,
                date_from=date_from,
                date_to=date_to,
                offset=offset,
                limit=self._settings.backfill_page_size,
                subject_id=store_id,
            )
            fetched_at = utcnow().isoformat()
            specs = [
                EventSpec(
                    tenant_id=store.tenant_id,
                    store_id=store_id,
                    source=SOURCE_SYNC,
                    topic=route.topic,
                    kind=route.kind,
                    resource=f"/orders/{order['id']}",
                    external_account_id=store.external_account_id,
                    dedupe_key=order_event_key(order),
                    raw_payload={"order": order, "fetched_at": fetched_at, "kind": SOURCE_SYNC},
                )
                for order in page.results
            ]
            if specs:
                results = await self._events.enqueue_many(specs)
                new_events += sum(1 for r in results if r.created)
            fetched += len(page.results)
            if not page.has_more:
                break
            offset += len(page.results)
        else:
            logger.warning(
                "Backfill page limit reached",
                extra={"store_id": store_id, "unit": unit, "fetched": fetched},
            )

        async with session_scope(self._session_factory) as session:
            await BackfillLedgerRepository(session).record(store_id, unit, fetched, utcnow())

        logger.info(
            "Backfill month imported",
            extra={"store_id": store_id, "unit": unit, "orders": fetched, "new_events": new_events},
        )
        return ExecutionOutcome.ok({"unit": unit, "orders": fetched, "new_events": new_events})

    async def _seller_id(self, run: RunContext, store, access_token: str) -> str:
        """Seller id, memoized for the rest of this run."""
        cache_key = f"seller_id:{store.id}"
        if cache_key in run.cache:
            return run.cache[cache_key]
        seller_id = await self._client.get_seller_id(access_token, subject_id=store.id)
        run.cache[cache_key] = seller_id
        return seller_id
