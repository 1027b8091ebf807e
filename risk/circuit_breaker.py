"""
Market circuit breaker with YELLOW / ORANGE / RED escalation.

Levels come from a reference-asset drawdown over a short window, funding-rate
extremes across a small instrument basket, and exchange API health. The
computed status is cached briefly and refreshed through a single-flight group
so concurrent readers share one probe run.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Mapping

from data_pipeline.indicators import window_change_pct
from exchanges.base_client import MarketDataProbe
from models.cache import BoundedTTLCache
from models.errors import ConfigError
from models.singleflight import SingleFlight
from risk.schemas import CircuitBreakerStatus, RiskLevel

logger = logging.getLogger(__name__)

_STATUS_KEY = "status"

RECOMMENDED_ACTIONS = {
    RiskLevel.RED: "Close ALL leveraged positions immediately, convert to stablecoins",
    RiskLevel.ORANGE: "Reduce all leverage to 2x max, close all positions with size <5",
    RiskLevel.YELLOW: "Reduce all leverage to 3x max, close speculative positions",
    RiskLevel.NONE: "Normal trading operations",
}


@dataclass(slots=True)
class CircuitBreakerConfig:
    """Thresholds for the market circuit breaker; percentages are whole-number percents."""

    cache_duration_seconds: float = 60.0
    reference_symbol: str = "BTC-USDT-SWAP"
    funding_symbols: List[str] = field(default_factory=lambda: ["BTC-USDT-SWAP", "ETH-USDT-SWAP"])
    drop_window_bar: str = "1H"
    drop_window_candles: int = 5
    yellow_drop_pct: float = 10.0
    orange_drop_pct: float = 15.0
    red_drop_pct: float = 20.0
    yellow_funding_pct: float = 0.25
    orange_funding_pct: float = 0.4
    latency_threshold_ms: float = 5000.0
    max_safe_leverage: int = 5
    yellow_max_leverage: int = 3
    orange_max_leverage: int = 2
    red_max_leverage: int = 1

    def __post_init__(self) -> None:
        numbers = (
            "cache_duration_seconds",
            "yellow_drop_pct",
            "orange_drop_pct",
            "red_drop_pct",
            "yellow_funding_pct",
            "orange_funding_pct",
            "latency_threshold_ms",
        )
        for name in numbers:
            value = getattr(self, name)
            if not math.isfinite(value) or value <= 0:
                raise ConfigError(f"Invalid circuit breaker setting {name}: {value}")
        if not self.yellow_drop_pct <= self.orange_drop_pct <= self.red_drop_pct:
            raise ConfigError("Drop thresholds must satisfy yellow <= orange <= red")
        if self.yellow_funding_pct > self.orange_funding_pct:
            raise ConfigError("Funding thresholds must satisfy yellow <= orange")
        if not 1 <= self.red_max_leverage <= self.orange_max_leverage <= self.yellow_max_leverage <= self.max_safe_leverage:
            raise ConfigError("Leverage caps must satisfy 1 <= red <= orange <= yellow <= max_safe")
        if self.drop_window_candles < 4:
            raise ConfigError("drop_window_candles must be at least 4")

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any]) -> "CircuitBreakerConfig":
        values = {name: settings[name] for name in cls.__dataclass_fields__ if name in settings}
        if "funding_symbols" in values:
            values["funding_symbols"] = list(values["funding_symbols"])
        return cls(**values)


class MarketCircuitBreaker:
    """Computes and caches the global market risk level."""

    def __init__(
        self,
        probe: MarketDataProbe,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.probe = probe
        self.config = config or CircuitBreakerConfig()
        self._timer = timer
        self._cache: BoundedTTLCache[CircuitBreakerStatus] = BoundedTTLCache(
            1, self.config.cache_duration_seconds, clock=clock
        )
        self._flight: SingleFlight[CircuitBreakerStatus] = SingleFlight()

    async def check(self) -> CircuitBreakerStatus:
        """Return the cached status or run one coalesced fresh check."""
        cached = self._cache.get(_STATUS_KEY)
        if cached is not None:
            return cached
        if self._flight.in_flight(_STATUS_KEY):
            logger.debug("Circuit breaker check already in progress, waiting")
        return await self._flight.run(_STATUS_KEY, self._refresh)

    async def _refresh(self) -> CircuitBreakerStatus:
        try:
            status = await self._perform_check()
        except Exception as exc:
            logger.exception("Circuit breaker check failed")
            status = CircuitBreakerStatus(
                level=RiskLevel.YELLOW,
                reason=f"Circuit breaker check error: {str(exc) or exc.__class__.__name__}",
            )
        self._cache.set(_STATUS_KEY, status)
        if status.level is not RiskLevel.NONE:
            logger.warning("Circuit breaker %s: %s", status.level.value, status.reason)
        return status

    async def _perform_check(self) -> CircuitBreakerStatus:
        drop = await self._check_reference_drop()
        if drop.level is RiskLevel.RED:
            return drop

        funding, drawdown, exchange = await asyncio.gather(
            self._check_funding_extremes(),
            self._check_portfolio_drawdown(),
            self._check_exchange_health(),
        )
        worst = drop
        for status in (funding, drawdown, exchange):
            if status.level.severity > worst.level.severity:
                worst = status
        if worst.level is RiskLevel.NONE:
            return CircuitBreakerStatus(level=RiskLevel.NONE, reason="All systems normal")
        return worst

    async def _check_reference_drop(self) -> CircuitBreakerStatus:
        cfg = self.config
        try:
            candles = await self.probe.fetch_candles(
                cfg.reference_symbol, bar=cfg.drop_window_bar, limit=cfg.drop_window_candles
            )
        except Exception:
            logger.exception("Reference drop check failed")
            return _normal()
        change = window_change_pct(candles or [], min_candles=4)
        if change is None:
            logger.warning("Insufficient or invalid %s candle data for circuit breaker check", cfg.reference_symbol)
            return _normal()

        drop = abs(change)
        if change <= -cfg.red_drop_pct:
            level, note = RiskLevel.RED, "RED ALERT: liquidation cascade risk"
        elif change <= -cfg.orange_drop_pct:
            level, note = RiskLevel.ORANGE, "ORANGE ALERT: major risk reduction"
        elif change <= -cfg.yellow_drop_pct:
            level, note = RiskLevel.YELLOW, "YELLOW ALERT: reduce risk"
        else:
            return _normal()
        return CircuitBreakerStatus(
            level=level,
            reason=f"BTC dropped {drop:.1f}% in 4 hours ({note})",
            btc_drop_4h=change,
        )

    async def _check_funding_extremes(self) -> CircuitBreakerStatus:
        symbols = self.config.funding_symbols
        if not symbols:
            return _normal()
        rates = await asyncio.gather(*(self._abs_funding(symbol) for symbol in symbols))
        max_rate = max(rates)
        if not math.isfinite(max_rate) or max_rate < 0:
            return _normal()

        rate_pct = max_rate * 100
        if rate_pct >= self.config.orange_funding_pct:
            return CircuitBreakerStatus(
                level=RiskLevel.ORANGE,
                reason=f"Extreme funding rate: {rate_pct:.3f}% (ORANGE ALERT: crowd positioning extreme)",
                funding_rate_extreme=max_rate,
            )
        if rate_pct >= self.config.yellow_funding_pct:
            return CircuitBreakerStatus(
                level=RiskLevel.YELLOW,
                reason=f"High funding rate: {rate_pct:.3f}% (YELLOW ALERT: crowded positioning)",
                funding_rate_extreme=max_rate,
            )
        return _normal()

    async def _abs_funding(self, symbol: str) -> float:
        try:
            rate = float(await self.probe.fetch_funding_rate(symbol))
        except Exception as exc:
            logger.warning("Funding rate fetch failed for %s: %s", symbol, exc)
            return 0.0
        return abs(rate) if math.isfinite(rate) else 0.0

    async def _check_portfolio_drawdown(self) -> CircuitBreakerStatus:
        # Capital deployed into open positions is not a loss; this check stays at NONE.
        return _normal()

    async def _check_exchange_health(self) -> CircuitBreakerStatus:
        started = self._timer()
        try:
            await self.probe.fetch_server_time()
        except Exception as exc:
            return CircuitBreakerStatus(
                level=RiskLevel.ORANGE,
                reason=f"Exchange API error: {exc}",
                exchange_issue=True,
            )
        elapsed_ms = (self._timer() - started) * 1000
        if elapsed_ms > self.config.latency_threshold_ms:
            return CircuitBreakerStatus(
                level=RiskLevel.YELLOW,
                reason=f"Exchange API slow ({elapsed_ms:.0f}ms response time)",
                exchange_issue=True,
            )
        return _normal()

    def get_max_leverage(self, level: RiskLevel) -> int:
        cfg = self.config
        caps = {
            RiskLevel.RED: cfg.red_max_leverage,
            RiskLevel.ORANGE: cfg.orange_max_leverage,
            RiskLevel.YELLOW: cfg.yellow_max_leverage,
        }
        return caps.get(level, cfg.max_safe_leverage)

    @staticmethod
    def get_recommended_action(level: RiskLevel) -> str:
        return RECOMMENDED_ACTIONS.get(level, RECOMMENDED_ACTIONS[RiskLevel.NONE])

    def clear_cache(self) -> None:
        self._cache.clear()

    async def aclose(self) -> None:
        self.clear_cache()
        await self.probe.aclose()


def _normal() -> CircuitBreakerStatus:
    return CircuitBreakerStatus(level=RiskLevel.NONE, reason="")
