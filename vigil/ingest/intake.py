"""
Webhook intake.

Validate, resolve the store, enqueue, acknowledge. Normalization happens
later in the events worker; nothing here runs after the response.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vigil.constants import PROVIDER_MERCADOLIBRE, SOURCE_WEBHOOK
from vigil.db.accounts import StoreRepository
from vigil.db.connection import session_scope
from vigil.errors import NotificationRejected, UnknownAccountError, UnknownTopicError
from vigil.ingest.topics import resolve_topic
from vigil.observability.metrics import MetricsCollector, get_metrics
from vigil.queue.events import EventQueue
from vigil.types.job import EventSpec

logger = logging.getLogger(__name__)


class InboundNotification(BaseModel):
    """Marketplace notification body. Unknown fields are kept."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    resource: str = Field(..., min_length=1)
    topic: str = Field(..., min_length=1)
    user_id: int | str
    notification_id: str | None = Field(default=None, alias="_id")
    application_id: int | str | None = None
    sent: str | None = None
    attempts: int | None = None


@dataclass
class IntakeResult:
    id: UUID
    created: bool
    dedupe_key: str
    store_id: str


def notification_dedupe_key(source: str, account_id: str, note: InboundNotification) -> str:
    """
    Content address for a delivery.

    The provider's notification id identifies redeliveries; without it the
    topic, resource and send time do.
    """
    identity = note.notification_id or f"{note.topic}:{note.resource}:{note.sent or ''}"
    digest = hashlib.sha256(f"{source}:{account_id}:{identity}".encode()).hexdigest()
    return f"{source}:{digest}"


class NotificationIntake:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        events: EventQueue,
        metrics: MetricsCollector | None = None,
        provider_key: str = PROVIDER_MERCADOLIBRE,
    ):
        self._session_factory = session_factory
        self._events = events
        self._metrics = metrics or get_metrics()
        self._provider_key = provider_key

    async def accept(self, payload: dict[str, Any]) -> IntakeResult:
        """
        Validate and enqueue one notification.

        Raises:
            NotificationRejected: Missing/invalid fields or unknown topic.
            UnknownAccountError: No store for the notification's user_id.
        """
        try:
            note = InboundNotification.model_validate(payload)
        except ValidationError as exc:
            self._metrics.record_ingested("invalid", "rejected")
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
            raise NotificationRejected(f"Invalid notification: {fields}") from exc

        try:
            route = resolve_topic(note.topic)
        except UnknownTopicError:
            self._metrics.record_ingested("unknown", "rejected")
            raise

        account_id = str(note.user_id)
        async with session_scope(self._session_factory) as session:
            store = await StoreRepository(session).find_by_account(self._provider_key, account_id)
        if store is None:
            self._metrics.record_ingested(route.topic, "unknown_account")
            raise UnknownAccountError(account_id)

        dedupe_key = notification_dedupe_key(SOURCE_WEBHOOK, account_id, note)
        result = await self._events.enqueue(
            EventSpec(
                tenant_id=store.tenant_id,
                store_id=store.id,
                source=SOURCE_WEBHOOK,
                topic=route.topic,
                kind=route.kind,
                resource=note.resource,
                external_account_id=account_id,
                dedupe_key=dedupe_key,
                raw_payload=note.model_dump(by_alias=True, exclude_none=True),
            )
        )

        self._metrics.record_ingested(route.topic, "accepted" if result.created else "duplicate")
        logger.info(
            "Notification accepted",
            extra={
                "event_id": str(result.id),
                "topic": route.topic,
                "store_id": store.id,
                "duplicate": not result.created,
            },
        )
        return IntakeResult(
            id=result.id,
            created=result.created,
            dedupe_key=dedupe_key,
            store_id=store.id,
        )
