"""
Integration tests for the API endpoints.
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from httpx import AsyncClient

from vigil.api.auth import create_access_token
from vigil.constants import LOCK_CREDENTIAL_SCAN, REAUTH_MESSAGE, ErrorCategory, JobPriority, JobType
from vigil.runtime import Runtime
from vigil.types.job import ExecutionOutcome, JobSpec


def notification(user_id: int, **overrides) -> dict:
    body = {
        "_id": f"note-{uuid4().hex[:8]}",
        "resource": "/orders/2000999",
        "topic": "orders_v2",
        "user_id": user_id,
        "application_id": 1,
        "sent": "2026-03-01T10:00:00.000Z",
    }
    body.update(overrides)
    return body


async def dead_letter_job(runtime: Runtime, tenant_id: str, category: ErrorCategory):
    subject_id = f"store-{uuid4().hex[:8]}"
    await runtime.jobs.enqueue(
        JobSpec(
            tenant_id=tenant_id,
            subject_id=subject_id,
            job_type=JobType.CREDENTIAL_REFRESH,
            dedupe_key=f"credential_refresh:{subject_id}",
            priority=JobPriority.CRITICAL,
            max_attempts=1,
        )
    )
    [job] = await runtime.jobs.claim_batch("w1", 1)
    await runtime.jobs.report_outcome(
        job.id,
        ExecutionOutcome.failed("provider said: invalid_grant token=abc", category),
        worker_id="w1",
    )
    return job


class TestTriggerAPI:
    """Tests for the cron trigger routes."""

    @pytest.mark.asyncio
    async def test_missing_secret_rejected(self, client: AsyncClient):
        """Triggers require the shared secret."""
        response = await client.post("/v1/triggers/credential-scan")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, client: AsyncClient):
        """A wrong secret is rejected the same way."""
        response = await client.post(
            "/v1/triggers/credential-scan",
            headers={"X-Trigger-Secret": "nope"},
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_trigger(self, client: AsyncClient, trigger_headers: dict[str, str]):
        """Unknown trigger names are 404."""
        response = await client.post("/v1/triggers/reindex", headers=trigger_headers)

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_credential_scan(self, client: AsyncClient, trigger_headers: dict[str, str], make_store):
        """A scan returns its report."""
        await make_store(expires_in=timedelta(minutes=3))

        response = await client.post("/v1/triggers/credential-scan", headers=trigger_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["skipped"] is False
        assert data["trigger"] == "credential-scan"
        assert data["report"]["created"] == 1

    @pytest.mark.asyncio
    async def test_locked_trigger_skipped(
        self,
        client: AsyncClient,
        trigger_headers: dict[str, str],
        runtime: Runtime,
    ):
        """A trigger whose lock is held elsewhere reports skipped."""
        await runtime.locks.acquire(LOCK_CREDENTIAL_SCAN, "another-run", 60)

        response = await client.post("/v1/triggers/credential-scan", headers=trigger_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["skipped"] is True
        assert data["reason"] == "locked"
        assert data["report"] is None

    @pytest.mark.asyncio
    async def test_lock_released_after_run(self, client: AsyncClient, trigger_headers: dict[str, str]):
        """Back-to-back calls both run."""
        first = await client.post("/v1/triggers/backfill-scan", headers=trigger_headers)
        second = await client.post("/v1/triggers/backfill-scan", headers=trigger_headers)

        assert first.json()["skipped"] is False
        assert second.json()["skipped"] is False

    @pytest.mark.asyncio
    async def test_jobs_worker(
        self,
        client: AsyncClient,
        trigger_headers: dict[str, str],
        make_store,
        marketplace,
    ):
        """The jobs worker trigger executes scheduled refreshes."""
        await make_store(expires_in=timedelta(minutes=3))
        await client.post("/v1/triggers/credential-urgent", headers=trigger_headers)

        response = await client.post("/v1/triggers/jobs-worker", headers=trigger_headers)

        assert response.status_code == 200
        report = response.json()["report"]
        assert report["claimed"] == 1
        assert report["succeeded"] == 1
        assert len(marketplace.calls_to("/oauth/token")) == 1

    @pytest.mark.asyncio
    async def test_dead_letters_and_maintenance(self, client: AsyncClient, trigger_headers: dict[str, str]):
        """Triage and maintenance return per-queue reports."""
        dead = await client.post("/v1/triggers/dead-letters", headers=trigger_headers)
        maintenance = await client.post("/v1/triggers/maintenance", headers=trigger_headers)

        assert [r["queue"] for r in dead.json()["report"]] == ["jobs", "events"]
        assert maintenance.json()["report"]["reclaimed"] == {"jobs": 0, "events": 0}


class TestIngestAPI:
    """Tests for the notification webhook."""

    @pytest.mark.asyncio
    async def test_accepts_notification(self, client: AsyncClient, make_store):
        """A valid notification is acknowledged with its event id."""
        await make_store(external_account_id="777001")

        response = await client.post("/v1/ingest/meli", json=notification(777001))

        assert response.status_code == 200
        data = response.json()
        assert data["received"] is True
        assert data["duplicate"] is False
        assert "event_id" in data

    @pytest.mark.asyncio
    async def test_duplicate_acknowledged(self, client: AsyncClient, make_store):
        """Redeliveries are acknowledged as duplicates of the same event."""
        await make_store(external_account_id="777001")
        body = notification(777001)

        first = await client.post("/v1/ingest/meli", json=body)
        second = await client.post("/v1/ingest/meli", json=body)

        assert second.status_code == 200
        assert second.json()["duplicate"] is True
        assert second.json()["event_id"] == first.json()["event_id"]

    @pytest.mark.asyncio
    async def test_unknown_topic(self, client: AsyncClient, make_store):
        """Unsupported topics are 422."""
        await make_store(external_account_id="777001")

        response = await client.post("/v1/ingest/meli", json=notification(777001, topic="items"))

        assert response.status_code == 422
        assert "items" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_malformed_body(self, client: AsyncClient):
        """A body missing required fields is 422."""
        response = await client.post("/v1/ingest/meli", json={"topic": "orders_v2"})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_account(self, client: AsyncClient):
        """Notifications for unconnected accounts are 404."""
        response = await client.post("/v1/ingest/meli", json=notification(1))

        assert response.status_code == 404


class TestAdminAPI:
    """Tests for operator routes."""

    @pytest.mark.asyncio
    async def test_requires_auth(self, client: AsyncClient):
        """Admin routes need a bearer token."""
        response = await client.get("/v1/admin/stats")

        assert response.status_code in (401, 403)

    @pytest.mark.asyncio
    async def test_invalid_token(self, client: AsyncClient):
        """A malformed token is 401."""
        response = await client.get(
            "/v1/admin/stats",
            headers={"Authorization": "Bearer invalid-token"},
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_stats_are_tenant_scoped(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        runtime: Runtime,
        test_tenant_id: str,
    ):
        """Stats only count the caller's records."""
        await dead_letter_job(runtime, test_tenant_id, ErrorCategory.OTHER)
        await dead_letter_job(runtime, "someone-else", ErrorCategory.OTHER)

        response = await client.get("/v1/admin/stats", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["jobs"]["dead_letter"] == 1
        assert data["jobs"]["dead_letter_by_category"] == {"other": 1}
        assert data["events"]["pending"] == 0
        assert data["window_hours"] == 24

    @pytest.mark.asyncio
    async def test_dead_letters_mask_credential_errors(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        runtime: Runtime,
        test_tenant_id: str,
    ):
        """Credential failure detail is replaced by the re-authorization message."""
        await dead_letter_job(runtime, test_tenant_id, ErrorCategory.CREDENTIAL_INVALID)
        await dead_letter_job(runtime, test_tenant_id, ErrorCategory.TRANSIENT_NETWORK)

        response = await client.get("/v1/admin/dead-letters", headers=auth_headers)

        assert response.status_code == 200
        items = {item["error_category"]: item for item in response.json()["items"]}
        assert items["credential_invalid"]["error"] == REAUTH_MESSAGE
        assert items["credential_invalid"]["requeueable"] is False
        assert "token=abc" in items["transient_network"]["error"]
        assert items["transient_network"]["requeueable"] is True

    @pytest.mark.asyncio
    async def test_dead_letters_filter_by_category(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        runtime: Runtime,
        test_tenant_id: str,
    ):
        """The category filter narrows the list."""
        await dead_letter_job(runtime, test_tenant_id, ErrorCategory.CREDENTIAL_INVALID)
        await dead_letter_job(runtime, test_tenant_id, ErrorCategory.OTHER)

        response = await client.get(
            "/v1/admin/dead-letters",
            params={"category": "other", "queue": "jobs"},
            headers=auth_headers,
        )

        data = response.json()
        assert data["total"] == 1
        assert data["items"][0]["error_category"] == "other"

    @pytest.mark.asyncio
    async def test_get_job_masks_credential_error(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        runtime: Runtime,
        test_tenant_id: str,
    ):
        """Job details never expose provider credential errors."""
        job = await dead_letter_job(runtime, test_tenant_id, ErrorCategory.CREDENTIAL_INVALID)

        response = await client.get(f"/v1/admin/jobs/{job.id}", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "dead_letter"
        assert data["last_error"] == REAUTH_MESSAGE

    @pytest.mark.asyncio
    async def test_get_job_other_tenant(self, client: AsyncClient, runtime: Runtime):
        """Another tenant's job is 404."""
        job = await dead_letter_job(runtime, "tenant-a", ErrorCategory.OTHER)
        headers = {"Authorization": f"Bearer {create_access_token(tenant_id='tenant-b')}"}

        response = await client.get(f"/v1/admin/jobs/{job.id}", headers=headers)

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_requeue_once(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        runtime: Runtime,
        test_tenant_id: str,
    ):
        """A dead letter can be requeued; requeueing a pending record conflicts."""
        job = await dead_letter_job(runtime, test_tenant_id, ErrorCategory.TRANSIENT_NETWORK)

        first = await client.post(f"/v1/admin/jobs/{job.id}/requeue", headers=auth_headers)
        second = await client.post(f"/v1/admin/jobs/{job.id}/requeue", headers=auth_headers)

        assert first.status_code == 200
        assert first.json()["status"] == "pending"
        assert second.status_code == 409

    @pytest.mark.asyncio
    async def test_requeue_credential_failure_refused(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        runtime: Runtime,
        test_tenant_id: str,
    ):
        """Credential failures cannot be requeued."""
        job = await dead_letter_job(runtime, test_tenant_id, ErrorCategory.CREDENTIAL_INVALID)

        response = await client.post(f"/v1/admin/jobs/{job.id}/requeue", headers=auth_headers)

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_requeue_unknown_record(self, client: AsyncClient, auth_headers: dict[str, str]):
        """Unknown records are 404."""
        response = await client.post(f"/v1/admin/jobs/{uuid4()}/requeue", headers=auth_headers)

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_cancel(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        runtime: Runtime,
        test_tenant_id: str,
    ):
        """Pending jobs can be cancelled once."""
        result = await runtime.jobs.enqueue(
            JobSpec(
                tenant_id=test_tenant_id,
                subject_id="store-1",
                job_type=JobType.CREDENTIAL_REFRESH,
                dedupe_key="credential_refresh:store-1",
            )
        )

        first = await client.post(f"/v1/admin/jobs/{result.id}/cancel", headers=auth_headers)
        second = await client.post(f"/v1/admin/jobs/{result.id}/cancel", headers=auth_headers)

        assert first.status_code == 200
        assert first.json()["status"] == "cancelled"
        assert second.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_queue(self, client: AsyncClient, auth_headers: dict[str, str]):
        """Only the jobs and events queues exist."""
        response = await client.post(f"/v1/admin/widgets/{uuid4()}/cancel", headers=auth_headers)

        assert response.status_code == 422


class TestHealthAPI:
    """Tests for health endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient):
        """Health reports the database state."""
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"

    @pytest.mark.asyncio
    async def test_ready_and_live(self, client: AsyncClient):
        """Probes answer without auth."""
        assert (await client.get("/ready")).json() == {"ready": True}
        assert (await client.get("/live")).json() == {"alive": True}

    @pytest.mark.asyncio
    async def test_metrics(self, client: AsyncClient, runtime: Runtime):
        """Metrics are exposed in Prometheus format."""
        await runtime.jobs.stats()

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "vigil_queue_depth" in response.text
