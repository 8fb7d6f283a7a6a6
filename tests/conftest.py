"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from prometheus_client import CollectorRegistry
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from vigil.api.auth import create_access_token
from vigil.api.main import create_app
from vigil.clients.meli import MeliClient
from vigil.clock import utcnow
from vigil.config import Settings
from vigil.constants import TRIGGER_SECRET_HEADER
from vigil.db import Base, Credential, Store, build_session_factory, create_engine_for
from vigil.observability.metrics import MetricsCollector
from vigil.runtime import Runtime, build_runtime

# PostgreSQL when provided, otherwise a throwaway SQLite file per test
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

TRIGGER_SECRET = "test-trigger-secret"


class FakeMarketplace:
    """
    In-process stand-in for the marketplace API, served through
    ``httpx.MockTransport``. Tests set the status codes and data they need.
    """

    def __init__(self) -> None:
        self.seller_id = "9001"
        self.token_status = 200
        self.token_error: str | None = None
        self.orders_status = 200
        self.retry_after: str | None = None
        self.orders: list[dict[str, Any]] = []
        self.requests: list[httpx.Request] = []
        self._refresh_count = 0

    def calls_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/oauth/token":
            if self.token_status != 200:
                body = {"error": self.token_error} if self.token_error else {}
                return httpx.Response(self.token_status, json=body, headers=self._headers())
            self._refresh_count += 1
            return httpx.Response(
                200,
                json={
                    "access_token": f"access-{self._refresh_count}",
                    "refresh_token": f"refresh-{self._refresh_count}",
                    "expires_in": 21600,
                },
            )

        if path == "/users/me":
            return httpx.Response(200, json={"id": int(self.seller_id)})

        if path == "/orders/search":
            if self.orders_status != 200:
                return httpx.Response(self.orders_status, json={}, headers=self._headers())
            offset = int(request.url.params.get("offset", 0))
            limit = int(request.url.params.get("limit", 50))
            page = self.orders[offset : offset + limit]
            return httpx.Response(
                200,
                json={
                    "results": page,
                    "paging": {"total": len(self.orders), "offset": offset, "limit": limit},
                },
            )

        return httpx.Response(404, json={"message": "not found"})

    def _headers(self) -> dict[str, str]:
        return {"Retry-After": self.retry_after} if self.retry_after else {}


@pytest.fixture
def database_url(tmp_path) -> str:
    """Get the test database URL."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'vigil-test.db'}"


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=database_url,
        api_secret_key="test-secret-key",
        trigger_secret=TRIGGER_SECRET,
        log_level="INFO",
        log_format="console",
        worker_lease_seconds=5,
        worker_poll_interval_seconds=0.1,
        worker_max_concurrent=4,
        retry_base_delay_seconds=10,
        retry_rate_limited_base_delay_seconds=60,
        retry_max_delay_seconds=600,
        backfill_months=3,
        backfill_page_size=2,
        meli_api_base_url="https://marketplace.test",
    )


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics on a private registry so collectors can be created per test."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest_asyncio.fixture
async def async_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Create an async database engine with a fresh schema."""
    engine = create_engine_for(test_settings, use_null_pool=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(async_engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def marketplace() -> FakeMarketplace:
    return FakeMarketplace()


@pytest_asyncio.fixture
async def meli_client(
    test_settings: Settings,
    marketplace: FakeMarketplace,
) -> AsyncGenerator[MeliClient, None]:
    """Marketplace client over the fake transport."""
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(marketplace.handler),
        base_url=test_settings.meli_api_base_url,
    )
    yield MeliClient(test_settings, http_client=http_client)
    await http_client.aclose()


@pytest.fixture
def runtime(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
    meli_client: MeliClient,
    metrics: MetricsCollector,
) -> Runtime:
    return build_runtime(session_factory, test_settings, client=meli_client, metrics=metrics)


@pytest.fixture
def app(runtime: Runtime) -> FastAPI:
    """Create a FastAPI app around the test runtime."""
    return create_app(runtime)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def test_tenant_id() -> str:
    """Generate a test tenant ID."""
    return f"test-tenant-{uuid4().hex[:8]}"


@pytest.fixture
def auth_headers(test_tenant_id: str) -> dict[str, str]:
    """Create authentication headers for testing."""
    token = create_access_token(tenant_id=test_tenant_id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def trigger_headers() -> dict[str, str]:
    return {TRIGGER_SECRET_HEADER: TRIGGER_SECRET}


StoreFactory = Callable[..., Awaitable[Store]]


@pytest.fixture
def make_store(
    session_factory: async_sessionmaker[AsyncSession],
    test_tenant_id: str,
) -> StoreFactory:
    """
    Factory creating a connected store with a credential.

    Keyword args:
        expires_in: Credential lifetime from now.
        backfill_requested_at: Marks a backfill request.
    """

    async def factory(
        store_id: str | None = None,
        external_account_id: str | None = None,
        expires_in: timedelta = timedelta(hours=6),
        backfill_requested_at: datetime | None = None,
        tenant_id: str | None = None,
    ) -> Store:
        store_id = store_id or f"store-{uuid4().hex[:8]}"
        tenant = tenant_id or test_tenant_id
        store = Store(
            id=store_id,
            tenant_id=tenant,
            external_account_id=external_account_id or str(uuid4().int % 10**9),
            backfill_requested_at=backfill_requested_at,
        )
        credential = Credential(
            store_id=store_id,
            tenant_id=tenant,
            access_token="access-0",
            refresh_token="refresh-0",
            expires_at=utcnow() + expires_in,
        )
        async with session_factory() as session:
            session.add(store)
            await session.flush()
            session.add(credential)
            await session.commit()
        return store

    return factory
