"""
Indicator calculation utilities for the risk gates.

Candles follow the OKX REST layout: `[ts, open, high, low, close, volume, ...]`
with every field encoded as a string.
"""

from __future__ import annotations

from typing import Iterable, Sequence

import numpy as np
import pandas as pd

CANDLE_COLUMNS = ("timestamp", "open", "high", "low", "close", "volume")


def candles_to_frame(candles: Iterable[Sequence[str]]) -> pd.DataFrame:
    """Return an oldest-first OHLCV frame; malformed rows are skipped."""
    rows = []
    for candle in candles:
        if len(candle) < 6:
            continue
        try:
            ts, op, hi, lo, cl, vol = (float(value) for value in candle[:6])
        except (TypeError, ValueError):
            continue
        rows.append(
            {
                "timestamp": pd.to_datetime(int(ts), unit="ms"),
                "open": op,
                "high": hi,
                "low": lo,
                "close": cl,
                "volume": vol,
            }
        )
    if not rows:
        return pd.DataFrame(columns=list(CANDLE_COLUMNS))
    df = pd.DataFrame(rows).sort_values("timestamp").reset_index(drop=True)
    return df


def window_change_pct(candles: Iterable[Sequence[str]], *, min_candles: int = 4) -> float | None:
    """
    Percentage change from the oldest candle's open to the newest close.

    Returns None with fewer than `min_candles` usable rows or when either price
    is non-finite or the opening price is not positive.
    """
    df = candles_to_frame(candles)
    if len(df) < min_candles:
        return None
    start = float(df["open"].iloc[0])
    end = float(df["close"].iloc[-1])
    if not np.isfinite(start) or not np.isfinite(end) or start <= 0:
        return None
    return (end - start) / start * 100


def atr_percent(candles: Iterable[Sequence[str]], *, period: int = 14) -> float | None:
    """Average true range over `period` bars as a percentage of the last close."""
    df = candles_to_frame(candles)
    if len(df) < 2:
        return None
    prev_close = df["close"].shift(1)
    true_range = pd.concat(
        [
            df["high"] - df["low"],
            (df["high"] - prev_close).abs(),
            (df["low"] - prev_close).abs(),
        ],
        axis=1,
    ).max(axis=1)
    atr = true_range.iloc[1:].rolling(window=min(period, len(df) - 1)).mean().iloc[-1]
    last_close = float(df["close"].iloc[-1])
    if not np.isfinite(atr) or last_close <= 0:
        return None
    return float(atr / last_close * 100)
