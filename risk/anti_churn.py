"""
Anti-churn gate: per-symbol cooldowns, direction-flip delays, trade-rate caps,
close hysteresis and funding-versus-volatility checks.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Callable, Dict, List, Mapping, Optional

from models.errors import ConfigError
from models.utils import as_finite_float
from risk.schemas import DIRECTIONS, CloseCheck, CooldownState, Direction, FundingCheck, TradeCheck

logger = logging.getLogger(__name__)

HOUR_SECONDS = 3600.0
MAX_DAILY_TRADES_CEILING = 1000
DEFAULT_MAX_DAILY_TRADES = 20


@dataclass(slots=True)
class AntiChurnConfig:
    """Cooldown windows (seconds), trade caps and hysteresis settings."""

    cooldown_after_trade_seconds: float = 900.0
    cooldown_before_flip_seconds: float = 1800.0
    hysteresis_multiplier: float = 1.2
    max_daily_trades: int = DEFAULT_MAX_DAILY_TRADES
    funding_periods_per_day: int = 3
    funding_threshold_atr: float = 0.25
    max_trades_per_symbol_per_hour: int = 3
    max_state_entries: int = 100

    def __post_init__(self) -> None:
        raw = self.max_daily_trades
        if not isinstance(raw, (int, float)) or not math.isfinite(raw) or raw < 1:
            logger.warning(
                "Invalid MAX_DAILY_TRADES value: %r. Must be a finite number >= 1. Falling back to %d.",
                raw,
                DEFAULT_MAX_DAILY_TRADES,
            )
            self.max_daily_trades = DEFAULT_MAX_DAILY_TRADES
        elif raw > MAX_DAILY_TRADES_CEILING:
            logger.warning(
                "MAX_DAILY_TRADES value too high: %r. Clamping to %d.", raw, MAX_DAILY_TRADES_CEILING
            )
            self.max_daily_trades = MAX_DAILY_TRADES_CEILING
        elif int(raw) != raw:
            logger.warning("MAX_DAILY_TRADES value was non-integer: %r. Rounded down to %d.", raw, int(raw))
            self.max_daily_trades = int(raw)
        else:
            self.max_daily_trades = int(raw)

        for name in ("cooldown_after_trade_seconds", "cooldown_before_flip_seconds", "funding_threshold_atr"):
            value = getattr(self, name)
            if not math.isfinite(value) or value < 0:
                raise ConfigError(f"Invalid anti-churn setting {name}: {value}")
        if not math.isfinite(self.hysteresis_multiplier) or self.hysteresis_multiplier < 1:
            raise ConfigError(f"Hysteresis multiplier must be >= 1, got {self.hysteresis_multiplier}")
        for name in ("funding_periods_per_day", "max_trades_per_symbol_per_hour", "max_state_entries"):
            if getattr(self, name) < 1:
                raise ConfigError(f"Invalid anti-churn setting {name}: {getattr(self, name)}")

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any]) -> "AntiChurnConfig":
        return cls(
            cooldown_after_trade_seconds=float(settings.get("cooldown_after_trade_seconds", 900.0)),
            cooldown_before_flip_seconds=float(settings.get("cooldown_before_flip_seconds", 1800.0)),
            hysteresis_multiplier=float(settings.get("hysteresis_multiplier", 1.2)),
            max_daily_trades=settings.get("max_daily_trades", DEFAULT_MAX_DAILY_TRADES),
            funding_periods_per_day=int(settings.get("funding_periods_per_day", 3)),
            funding_threshold_atr=float(settings.get("funding_threshold_atr", 0.25)),
            max_trades_per_symbol_per_hour=int(settings.get("max_trades_per_symbol_per_hour", 3)),
            max_state_entries=int(settings.get("max_state_entries", 100)),
        )


class AntiChurnGate:
    """
    Per-symbol trade gating state machine.

    All state lives on the instance and every public method takes the gate's
    lock, so `check_and_record` is an atomic check-then-act even when several
    workers share one gate. The clock returns epoch seconds; the daily counter
    rolls over at the UTC date boundary.
    """

    def __init__(
        self,
        config: AntiChurnConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or AntiChurnConfig()
        self._clock = clock
        self._lock = RLock()
        self._cooldowns: Dict[str, CooldownState] = {}
        self._history: Dict[str, List[float]] = {}
        self._trades_today = 0
        self._last_reset_date: Optional[str] = None
        logger.info(
            "Anti-churn gate initialised: cooldown=%ss, flip=%ss, hysteresis=%sx, max_trades=%d, "
            "max_per_symbol_hour=%d, funding_periods=%d",
            self.config.cooldown_after_trade_seconds,
            self.config.cooldown_before_flip_seconds,
            self.config.hysteresis_multiplier,
            self.config.max_daily_trades,
            self.config.max_trades_per_symbol_per_hour,
            self.config.funding_periods_per_day,
        )

    # ------------------------------------------------------------------ gating
    def can_trade(self, symbol: str) -> TradeCheck:
        with self._lock:
            self._reset_daily_counter_if_needed()
            if self._trades_today >= self.config.max_daily_trades:
                return TradeCheck(False, f"Daily trade limit reached ({self.config.max_daily_trades})")

            hourly = self._can_trade_symbol_this_hour(symbol)
            if not hourly.allowed:
                return hourly

            state = self._cooldowns.get(symbol)
            if state is None:
                return TradeCheck(True)
            now = self._clock()
            if now < state.cooldown_until:
                return TradeCheck(False, f"Cooldown active for {symbol}", state.cooldown_until - now)
            return TradeCheck(True)

    def _can_trade_symbol_this_hour(self, symbol: str) -> TradeCheck:
        history = self._history.get(symbol)
        if not history:
            return TradeCheck(True)
        cutoff = self._clock() - HOUR_SECONDS
        recent = sum(1 for stamp in history if stamp > cutoff)
        limit = self.config.max_trades_per_symbol_per_hour
        if recent >= limit:
            return TradeCheck(False, f"Per-symbol hourly limit reached for {symbol} ({limit} trades/hour)")
        return TradeCheck(True)

    def can_flip_direction(self, symbol: str, new_direction: Direction) -> TradeCheck:
        with self._lock:
            state = self._cooldowns.get(symbol)
            if state is None or state.last_direction == new_direction:
                return TradeCheck(True)
            now = self._clock()
            if now < state.flip_cooldown_until:
                return TradeCheck(
                    False,
                    f"Cannot flip direction on {symbol} yet (was {state.last_direction}, want {new_direction})",
                    state.flip_cooldown_until - now,
                )
            return TradeCheck(True)

    def check(self, symbol: str, direction: Direction) -> TradeCheck:
        """Combined daily, hourly, cooldown and flip check for an entry."""
        with self._lock:
            result = self.can_trade(symbol)
            if not result.allowed:
                return result
            return self.can_flip_direction(symbol, direction)

    def check_and_record(self, symbol: str, direction: Direction) -> TradeCheck:
        """Check and, when allowed, record the trade under a single lock acquisition."""
        with self._lock:
            result = self.check(symbol, direction)
            if not result.allowed:
                return result
            if not self.record_trade(symbol, direction):
                return TradeCheck(False, f"Trade for {symbol} could not be recorded")
            return result

    # --------------------------------------------------------------- recording
    def record_trade(self, symbol: str, direction: Direction) -> bool:
        """
        Record an executed trade and start its cooldowns.

        Returns False without touching any state when the inputs are invalid or
        the daily limit is already exhausted. Callers gate with `can_trade`
        first, or use `check_and_record`.
        """
        if not isinstance(symbol, str) or not symbol.strip():
            logger.warning("record_trade: invalid symbol %r", symbol)
            return False
        if direction not in DIRECTIONS:
            logger.warning("record_trade: invalid direction %r", direction)
            return False

        with self._lock:
            self._reset_daily_counter_if_needed()
            if self._trades_today >= self.config.max_daily_trades:
                logger.warning(
                    "record_trade: daily limit (%d) already reached, refusing to record trade",
                    self.config.max_daily_trades,
                )
                return False

            now = self._clock()
            if symbol not in self._cooldowns and len(self._cooldowns) >= self.config.max_state_entries:
                self._make_room(now)

            self._cooldowns[symbol] = CooldownState(
                last_trade_time=now,
                last_direction=direction,
                cooldown_until=now + self.config.cooldown_after_trade_seconds,
                flip_cooldown_until=now + self.config.cooldown_before_flip_seconds,
            )
            self._record_symbol_trade(symbol, now)
            self._trades_today += 1

        logger.info(
            "Trade recorded: %s %s, cooldown %ss, flip cooldown %ss",
            symbol,
            direction,
            self.config.cooldown_after_trade_seconds,
            self.config.cooldown_before_flip_seconds,
        )
        logger.info("Trades today: %d/%d", self._trades_today, self.config.max_daily_trades)
        return True

    def _make_room(self, now: float) -> None:
        pruned = self._prune_expired_cooldowns(now)
        if pruned or len(self._cooldowns) < self.config.max_state_entries:
            return
        oldest = min(self._cooldowns, key=lambda sym: self._cooldowns[sym].last_trade_time)
        del self._cooldowns[oldest]
        logger.debug("Evicted oldest cooldown entry: %s", oldest)

    def _prune_expired_cooldowns(self, now: float) -> int:
        expired = [
            symbol
            for symbol, state in self._cooldowns.items()
            if now >= state.cooldown_until and now >= state.flip_cooldown_until
        ]
        for symbol in expired:
            del self._cooldowns[symbol]
        if expired:
            logger.debug("Pruned %d expired cooldowns", len(expired))
        return len(expired)

    def _record_symbol_trade(self, symbol: str, timestamp: float) -> None:
        cutoff = timestamp - HOUR_SECONDS
        history = [stamp for stamp in self._history.get(symbol, []) if stamp > cutoff]
        history.append(timestamp)
        self._history[symbol] = history

        if len(self._history) > self.config.max_state_entries:
            for sym in [sym for sym, stamps in self._history.items() if not stamps]:
                del self._history[sym]
            if len(self._history) > self.config.max_state_entries:
                oldest = min(self._history, key=lambda sym: self._history[sym][-1])
                del self._history[oldest]
                logger.debug("Evicted oldest symbol history entry: %s", oldest)

    # ------------------------------------------------------------- hysteresis
    def should_close(self, entry_confidence: Any, close_confidence: Any) -> CloseCheck:
        entry = as_finite_float(entry_confidence)
        if entry is None or entry < 0:
            logger.warning("should_close: invalid entry confidence %r, using 50", entry_confidence)
            entry = 50.0
        close = as_finite_float(close_confidence)
        if close is None or close < 0:
            logger.warning("should_close: invalid close confidence %r, using 0", close_confidence)
            close = 0.0

        required = entry * self.config.hysteresis_multiplier
        if close < required:
            logger.debug(
                "Hysteresis: close confidence (%s%%) below threshold (%.1f%%), keeping position",
                close,
                required,
            )
            return CloseCheck(False, required)
        return CloseCheck(True, required)

    def should_act_on_funding(self, funding_rate: Any, atr: Any, current_price: Any) -> FundingCheck:
        rate = as_finite_float(funding_rate)
        atr_value = as_finite_float(atr)
        price = as_finite_float(current_price)
        if rate is None or atr_value is None or price is None or price <= 0 or atr_value <= 0:
            return FundingCheck(False, 0.0, 0.0)

        daily_pct = abs(rate) * self.config.funding_periods_per_day * 100
        if daily_pct > 100:
            logger.warning("Extremely high funding rate detected: %.2f%% daily, capping at 100%%", daily_pct)
        capped = min(daily_pct, 100.0)
        threshold = (atr_value / price) * 100 * self.config.funding_threshold_atr
        should_act = capped > threshold
        if should_act:
            logger.debug("Funding warrants action: %.3f%% > %.3f%%", capped, threshold)
        return FundingCheck(should_act, capped, threshold)

    # ------------------------------------------------------------------- reads
    def can_trade_today(self) -> bool:
        with self._lock:
            self._reset_daily_counter_if_needed()
            return self._trades_today < self.config.max_daily_trades

    def get_remaining_trades_today(self) -> int:
        with self._lock:
            self._reset_daily_counter_if_needed()
            return max(0, self.config.max_daily_trades - self._trades_today)

    def get_cooldown_state(self, symbol: str) -> Optional[CooldownState]:
        with self._lock:
            state = self._cooldowns.get(symbol)
            return state.copy() if state else None

    def get_all_cooldowns(self) -> Dict[str, CooldownState]:
        with self._lock:
            return {symbol: state.copy() for symbol, state in self._cooldowns.items()}

    def clear_cooldown(self, symbol: str) -> None:
        with self._lock:
            self._cooldowns.pop(symbol, None)
        logger.debug("Cleared cooldown for %s", symbol)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            self._reset_daily_counter_if_needed()
            now = self._clock()
            active = [
                symbol
                for symbol, state in self._cooldowns.items()
                if now < state.cooldown_until or now < state.flip_cooldown_until
            ]
            return {
                "trades_executed_today": self._trades_today,
                "max_trades_per_day": self.config.max_daily_trades,
                "remaining_trades": max(0, self.config.max_daily_trades - self._trades_today),
                "active_cooldowns": len(active),
                "cooldown_symbols": active,
            }

    def format_cooldown_info(self, symbol: str) -> str:
        with self._lock:
            state = self._cooldowns.get(symbol)
            if state is None:
                return f"{symbol}: No cooldown"
            now = self._clock()
            trade_left = max(0.0, state.cooldown_until - now)
            flip_left = max(0.0, state.flip_cooldown_until - now)
        if trade_left == 0 and flip_left == 0:
            return f"{symbol}: Cooldown expired"
        parts = []
        if trade_left > 0:
            parts.append(f"trade: {math.ceil(trade_left)}s")
        if flip_left > 0:
            parts.append(f"flip: {math.ceil(flip_left)}s")
        return f"{symbol}: {', '.join(parts)} (last: {state.last_direction})"

    def reset(self) -> None:
        """Forget every cooldown, history entry and the daily counter."""
        with self._lock:
            self._cooldowns.clear()
            self._history.clear()
            self._trades_today = 0
            self._last_reset_date = None

    def _reset_daily_counter_if_needed(self) -> None:
        today = datetime.fromtimestamp(self._clock(), tz=timezone.utc).date().isoformat()
        if self._last_reset_date != today:
            self._trades_today = 0
            self._last_reset_date = today
            logger.info("New day (UTC): reset daily trade counter")
