"""
Per-symbol risk features (ATR% and funding) fetched through a market-data probe.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Mapping

from data_pipeline.indicators import atr_percent
from exchanges.base_client import MarketDataProbe

logger = logging.getLogger(__name__)

ATR_BAR = "1H"
ATR_CANDLES = 15


async def symbol_features(probe: MarketDataProbe, symbol: str, *, bar: str = ATR_BAR, limit: int = ATR_CANDLES) -> Dict[str, float]:
    """Return whichever of `atr_percent` and `funding_rate` could be computed for `symbol`."""
    features: Dict[str, float] = {}
    try:
        candles = await probe.fetch_candles(symbol, bar=bar, limit=limit)
    except Exception as exc:
        logger.warning("Candle fetch failed for %s: %s", symbol, exc)
    else:
        atr = atr_percent(candles or [], period=limit - 1)
        if atr is not None:
            features["atr_percent"] = atr
    try:
        features["funding_rate"] = float(await probe.fetch_funding_rate(symbol))
    except Exception as exc:
        logger.warning("Funding fetch failed for %s: %s", symbol, exc)
    return features


def market_symbols(market_data: Iterable[Any]) -> List[str]:
    symbols = []
    for item in market_data:
        symbol = item.get("symbol") if isinstance(item, Mapping) else None
        if isinstance(symbol, str) and symbol and symbol not in symbols:
            symbols.append(symbol)
    return symbols


async def fill_indicators(
    indicators: Dict[str, Dict[str, Any]],
    probe: MarketDataProbe,
    symbols: Iterable[str],
) -> Dict[str, Dict[str, Any]]:
    """
    Add probe-derived features for symbols that lack them.

    Values already present in `indicators` win over fetched ones, so a
    caller-supplied context is never overwritten.
    """
    pending = [
        symbol
        for symbol in symbols
        if not {"atr_percent", "funding_rate"} <= set(indicators.get(symbol) or {})
    ]
    if not pending:
        return indicators
    fetched = await asyncio.gather(*(symbol_features(probe, symbol) for symbol in pending))
    for symbol, features in zip(pending, fetched):
        merged = dict(features)
        merged.update(indicators.get(symbol) or {})
        indicators[symbol] = merged
        logger.debug("Risk features for %s: %s", symbol, merged)
    return indicators
