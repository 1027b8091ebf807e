"""
OKX public REST client used as the circuit breaker's market-data probe.

Only unauthenticated market endpoints are touched, so no credentials or
request signing are involved.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from exchanges.base_client import MarketDataProbe

logger = logging.getLogger(__name__)

OKX_BASE_URL = "https://www.okx.com"


class OkxClientError(RuntimeError):
    """Raised when OKX returns a non-success response."""

    def __init__(self, message: str, payload: Optional[dict] = None) -> None:
        super().__init__(message)
        self.payload = payload or {}


class OkxPublicClient(MarketDataProbe):
    """Async client for OKX public market endpoints."""

    name = "okx-public"

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float = 10.0,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url or OKX_BASE_URL
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def fetch_candles(self, instrument_id: str, bar: str = "1H", limit: int = 5) -> List[Sequence[str]]:
        response = await self._request(
            "/api/v5/market/candles",
            params={"instId": instrument_id, "bar": bar, "limit": str(limit)},
        )
        return list(response.get("data") or [])

    async def fetch_funding_rate(self, instrument_id: str) -> float:
        response = await self._request("/api/v5/public/funding-rate", params={"instId": instrument_id})
        data = _single_item(response)
        try:
            return float(data.get("fundingRate") or 0)
        except (TypeError, ValueError) as exc:
            raise OkxClientError(f"Invalid funding rate for {instrument_id}", payload=response) from exc

    async def fetch_server_time(self) -> int:
        response = await self._request("/api/v5/public/time")
        data = _single_item(response)
        return int(data.get("ts") or 0)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url, timeout=self._timeout, transport=self._transport
            )
        return self._client

    async def _request(self, path: str, params: Optional[Dict[str, Any]] = None) -> dict:
        response = await self._http().get(path, params=params)
        response.raise_for_status()
        payload = response.json()
        if payload.get("code") != "0":
            raise OkxClientError(
                f"OKX error {payload.get('code')}: {payload.get('msg')}",
                payload=payload,
            )
        return payload


def _single_item(response: dict) -> dict:
    data = response.get("data") or []
    if not data:
        raise OkxClientError("OKX returned empty data payload", payload=response)
    return data[0]
