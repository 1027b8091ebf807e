"""
Abstract client definitions for exchange market-data probes.

The circuit breaker only needs read-only public data, so concrete adapters
implement `MarketDataProbe` without any credential handling.
"""

from __future__ import annotations

from typing import List, Protocol, Sequence, runtime_checkable


@runtime_checkable
class MarketDataProbe(Protocol):
    """Protocol describing the public market data used by the risk gates."""

    name: str

    async def fetch_candles(self, instrument_id: str, bar: str = "1H", limit: int = 5) -> List[Sequence[str]]:
        """Return raw OHLCV rows `[ts, open, high, low, close, volume, ...]`."""

    async def fetch_funding_rate(self, instrument_id: str) -> float:
        """Return the current per-period funding rate as a decimal."""

    async def fetch_server_time(self) -> int:
        """Return exchange server time in epoch milliseconds (lightweight health probe)."""

    async def aclose(self) -> None:
        """Release network resources."""
