"""
Mercado Libre API client.

Thin httpx wrapper that turns HTTP failures into categorized executor
errors, so executors can let them propagate to the worker pool.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from vigil.config import Settings, get_settings
from vigil.errors import (
    CredentialInvalidError,
    ExecutorError,
    RateLimitedError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: str
    expires_in: int


@dataclass
class OrderPage:
    results: list[dict[str, Any]]
    total: int
    offset: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.results) < self.total and bool(self.results)


def _parse_retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _error_code(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return ""
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or "")
    return ""


def raise_for_provider_status(
    response: httpx.Response,
    subject_id: str | None = None,
    auth_endpoint: bool = False,
) -> None:
    """
    Raise a categorized error for a failed response.

    - 401/403 (and invalid_grant on the token endpoint): credential invalid
    - 429: rate limited, honouring Retry-After
    - 5xx: transient
    - other 4xx: other
    """
    if response.is_success:
        return

    code = response.status_code
    error = _error_code(response)
    detail = f"HTTP {code} from {response.request.url.path}" + (f": {error}" if error else "")

    if code in (401, 403) or (auth_endpoint and error == "invalid_grant"):
        raise CredentialInvalidError(subject_id=subject_id)
    if code == 429:
        raise RateLimitedError(detail, retry_after=_parse_retry_after(response))
    if code >= 500:
        raise TransientNetworkError(detail)
    raise ExecutorError(detail)


class MeliClient:
    """Async client for the endpoints the executors need."""

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._settings = settings or get_settings()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=self._settings.meli_api_base_url,
            timeout=self._settings.meli_http_timeout_seconds,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def refresh_token(self, refresh_token: str, subject_id: str | None = None) -> TokenGrant:
        """Exchange a refresh token for a new token pair."""
        response = await self._client.post(
            "/oauth/token",
            data={
                "grant_type": "refresh_token",
                "client_id": self._settings.meli_app_id,
                "client_secret": self._settings.meli_client_secret,
                "refresh_token": refresh_token,
            },
            headers={"Accept": "application/json"},
        )
        raise_for_provider_status(response, subject_id=subject_id, auth_endpoint=True)
        body = response.json()
        return TokenGrant(
            access_token=body["access_token"],
            refresh_token=body["refresh_token"],
            expires_in=int(body["expires_in"]),
        )

    async def get_seller_id(self, access_token: str, subject_id: str | None = None) -> str:
        response = await self._client.get("/users/me", headers=self._auth(access_token))
        raise_for_provider_status(response, subject_id=subject_id)
        return str(response.json()["id"])

    async def search_orders(
        self,
        access_token: str,
        seller_id: str,
        date_from: datetime,
        date_to: datetime,
        offset: int = 0,
        limit: int = 50,
        subject_id: str | None = None,
    ) -> OrderPage:
        """One page of the seller's orders created in [date_from, date_to)."""
        response = await self._client.get(
            "/orders/search",
            params={
                "seller": seller_id,
                "order.date_created.from": date_from.strftime("%Y-%m-%dT%H:%M:%S.000-00:00"),
                "order.date_created.to": date_to.strftime("%Y-%m-%dT%H:%M:%S.000-00:00"),
                "sort": "date_asc",
                "offset": offset,
                "limit": limit,
            },
            headers=self._auth(access_token),
        )
        raise_for_provider_status(response, subject_id=subject_id)
        body = response.json()
        paging = body.get("paging") or {}
        return OrderPage(
            results=list(body.get("results") or []),
            total=int(paging.get("total", 0)),
            offset=int(paging.get("offset", offset)),
            limit=int(paging.get("limit", limit)),
        )

    @staticmethod
    def _auth(access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}
