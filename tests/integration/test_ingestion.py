"""
Integration tests for webhook intake and the ingestion queue.
"""

import pytest

from vigil.constants import JobStatus
from vigil.errors import NotificationRejected, UnknownAccountError, UnknownTopicError
from vigil.runtime import Runtime


def notification(**overrides) -> dict:
    body = {
        "_id": "5f1e2d3c",
        "resource": "/orders/2000777",
        "topic": "orders_v2",
        "user_id": 123456,
        "application_id": 42,
        "attempts": 1,
        "sent": "2026-03-01T10:00:00.000Z",
    }
    body.update(overrides)
    return body


class TestNotificationIntake:
    """Tests for validation, store resolution and dedupe."""

    @pytest.mark.asyncio
    async def test_accept_enqueues_pending_event(self, runtime: Runtime, make_store):
        """A valid notification becomes one pending ingested event."""
        store = await make_store(external_account_id="123456")

        result = await runtime.intake.accept(notification())

        assert result.created is True
        assert result.store_id == store.id
        event = await runtime.events.get(result.id)
        assert event.status == JobStatus.PENDING
        assert event.tenant_id == store.tenant_id
        assert event.source == "webhook"
        assert event.raw_payload["_id"] == "5f1e2d3c"

    @pytest.mark.asyncio
    async def test_redelivery_is_deduplicated(self, runtime: Runtime, make_store):
        """The provider retrying a delivery does not create a second event."""
        await make_store(external_account_id="123456")

        first = await runtime.intake.accept(notification())
        again = await runtime.intake.accept(notification(attempts=2))

        assert again.created is False
        assert again.id == first.id
        stats = await runtime.events.stats()
        assert stats.pending == 1

    @pytest.mark.asyncio
    async def test_duplicate_after_processing_still_ignored(self, runtime: Runtime, make_store):
        """Event dedupe outlives the record's active life."""
        await make_store(external_account_id="123456")
        first = await runtime.intake.accept(notification())
        await runtime.events_pool.run_batch("worker-1")

        again = await runtime.intake.accept(notification())

        assert again.created is False
        assert again.id == first.id
        assert (await runtime.events.get(first.id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_distinct_notifications_both_enqueued(self, runtime: Runtime, make_store):
        """Different provider ids are different events."""
        await make_store(external_account_id="123456")

        a = await runtime.intake.accept(notification(_id="a"))
        b = await runtime.intake.accept(notification(_id="b"))

        assert a.id != b.id
        assert b.created is True

    @pytest.mark.asyncio
    async def test_string_user_id(self, runtime: Runtime, make_store):
        """Account ids are matched as strings."""
        store = await make_store(external_account_id="123456")

        result = await runtime.intake.accept(notification(user_id="123456"))

        assert result.store_id == store.id

    @pytest.mark.asyncio
    async def test_unknown_topic_rejected(self, runtime: Runtime, make_store):
        """Topics outside the mapping are rejected before touching the queue."""
        await make_store(external_account_id="123456")

        with pytest.raises(UnknownTopicError):
            await runtime.intake.accept(notification(topic="items"))

        assert (await runtime.events.stats()).pending == 0

    @pytest.mark.asyncio
    async def test_missing_fields_rejected(self, runtime: Runtime):
        """A body without resource or user_id is invalid."""
        body = notification()
        del body["resource"]
        del body["user_id"]

        with pytest.raises(NotificationRejected) as exc_info:
            await runtime.intake.accept(body)

        assert "resource" in str(exc_info.value)
        assert "user_id" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unknown_account(self, runtime: Runtime):
        """Notifications for unconnected accounts are refused."""
        with pytest.raises(UnknownAccountError):
            await runtime.intake.accept(notification(user_id=999))
