"""
Market data feature helpers consumed by the risk gates.
"""

from .features import fill_indicators, market_symbols, symbol_features  # noqa: F401
from .indicators import atr_percent, candles_to_frame, window_change_pct  # noqa: F401
