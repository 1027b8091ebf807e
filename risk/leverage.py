"""
Dynamic leverage sizing from confidence, volatility and funding conditions.

Every helper here is pure: inputs are validated and defaulted up front, so no
combination of arguments can produce a non-finite leverage.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple

from models.errors import ConfigError
from models.utils import as_finite_float
from risk.schemas import LeverageAdjustment, LeverageRecommendation, VolatilityLevel

logger = logging.getLogger(__name__)


def _fmt(value: float) -> str:
    return f"{value:g}"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(slots=True)
class LeverageConfig:
    """Leverage band and the thresholds that move a recommendation inside it."""

    min_leverage: int = 3
    max_leverage: int = 10
    base_leverage: int = 5
    atr_low_threshold: float = 2.0
    atr_high_threshold: float = 5.0
    funding_moderate_threshold: float = 0.0005
    funding_high_threshold: float = 0.001
    maintenance_margin_rate: float = 0.005
    config_max_leverage: Optional[float] = None

    def __post_init__(self) -> None:
        for name in (
            "min_leverage",
            "max_leverage",
            "base_leverage",
            "atr_low_threshold",
            "atr_high_threshold",
            "funding_moderate_threshold",
            "funding_high_threshold",
            "maintenance_margin_rate",
        ):
            value = getattr(self, name)
            if not math.isfinite(value) or value < 0:
                raise ConfigError(f"Invalid leverage setting {name}: {value}")
        if self.min_leverage < 1 or self.min_leverage > self.max_leverage:
            raise ConfigError(
                f"Invalid leverage bounds: min={self.min_leverage}, max={self.max_leverage}"
            )
        if not self.min_leverage <= self.base_leverage <= self.max_leverage:
            raise ConfigError(f"Base leverage {self.base_leverage} outside [{self.min_leverage}, {self.max_leverage}]")
        if self.atr_low_threshold > self.atr_high_threshold:
            raise ConfigError("atr_low_threshold must not exceed atr_high_threshold")
        if self.funding_moderate_threshold > self.funding_high_threshold:
            raise ConfigError("funding_moderate_threshold must not exceed funding_high_threshold")
        if self.config_max_leverage is not None and not math.isfinite(self.config_max_leverage):
            raise ConfigError(f"Invalid config_max_leverage: {self.config_max_leverage}")

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any]) -> "LeverageConfig":
        config_max = settings.get("config_max_leverage")
        return cls(
            min_leverage=int(settings.get("min_leverage", 3)),
            max_leverage=int(settings.get("max_leverage", 10)),
            base_leverage=int(settings.get("base_leverage", 5)),
            atr_low_threshold=float(settings.get("atr_low_threshold", 2.0)),
            atr_high_threshold=float(settings.get("atr_high_threshold", 5.0)),
            funding_moderate_threshold=float(settings.get("funding_moderate_threshold", 0.0005)),
            funding_high_threshold=float(settings.get("funding_high_threshold", 0.001)),
            maintenance_margin_rate=float(settings.get("maintenance_margin_rate", 0.005)),
            config_max_leverage=float(config_max) if config_max is not None else None,
        )


class LeverageCalculator:
    """Computes a leverage recommendation in `[min_leverage, max_leverage]`."""

    def __init__(self, config: LeverageConfig | None = None) -> None:
        self.config = config or LeverageConfig()
        logger.info(
            "Leverage calculator initialised: range=%sx-%sx, base=%sx",
            self.config.min_leverage,
            self.config.max_leverage,
            self.config.base_leverage,
        )

    def calculate(
        self,
        confidence: Any,
        atr_percent: Any,
        funding_rate: Any = 0.0,
        is_against_funding: Any = False,
        *,
        trend_strength: Any = None,
        volatility: Optional[VolatilityLevel] = None,
    ) -> LeverageRecommendation:
        cfg = self.config
        confidence_value = as_finite_float(confidence)
        if confidence_value is None or not 0 <= confidence_value <= 100:
            logger.warning("Invalid confidence %r, using 50", confidence)
            confidence_value = 50.0
        atr = as_finite_float(atr_percent)
        if atr is None or atr < 0:
            logger.warning("Invalid atr_percent %r, using 3", atr_percent)
            atr = 3.0
        funding = as_finite_float(funding_rate)
        if funding is None:
            logger.warning("Invalid funding_rate %r, using 0", funding_rate)
            funding = 0.0
        against_funding = is_against_funding if isinstance(is_against_funding, bool) else False
        trend: Optional[float] = None
        if trend_strength is not None:
            trend = as_finite_float(trend_strength)
            if trend is None or not 0 <= trend <= 100:
                logger.warning("Invalid trend_strength %r, ignoring", trend_strength)
                trend = None
        if volatility not in (None, "low", "medium", "high"):
            volatility = None

        leverage = float(cfg.base_leverage)
        adjustments = []
        reasoning = [f"Base leverage: {cfg.base_leverage}x"]

        def adjust(change: int, factor: str, note: str) -> None:
            nonlocal leverage
            leverage += change
            adjustments.append(LeverageAdjustment(factor=factor, change=change))
            reasoning.append(note)

        if confidence_value >= 95:
            adjust(2, "Very high confidence (95%+)", f"+2x for very high confidence ({_fmt(confidence_value)}%)")
        elif confidence_value >= 85:
            adjust(1, "High confidence (85%+)", f"+1x for high confidence ({_fmt(confidence_value)}%)")
        elif confidence_value < 60:
            adjust(-1, "Low confidence (<60%)", f"-1x for low confidence ({_fmt(confidence_value)}%)")

        effective = volatility or self.classify_volatility(atr)
        if effective == "high":
            adjust(-2, "High volatility", f"-2x for high volatility (ATR: {atr:.2f}%)")
        elif effective == "medium":
            adjust(-1, "Medium volatility", f"-1x for medium volatility (ATR: {atr:.2f}%)")

        if atr > 8:
            adjust(-1, "Extreme ATR (>8%)", f"-1x for extreme ATR ({atr:.2f}%)")
        if atr > 15:
            adjust(-1, "Very extreme ATR (>15%)", f"-1x for very extreme ATR ({atr:.2f}%)")

        if against_funding:
            abs_funding = abs(funding)
            if abs_funding > cfg.funding_high_threshold:
                adjust(
                    -2,
                    "High adverse funding (>0.1%)",
                    f"-2x for high adverse funding ({abs_funding * 100:.3f}%)",
                )
            elif abs_funding > cfg.funding_moderate_threshold:
                adjust(
                    -1,
                    "Moderate adverse funding (>0.05%)",
                    f"-1x for moderate adverse funding ({abs_funding * 100:.3f}%)",
                )

        if trend is not None and trend > 80:
            adjust(1, "Strong trend alignment", f"+1x for strong trend alignment ({_fmt(trend)}%)")

        rounded = _round_half_up(leverage)
        final = max(cfg.min_leverage, min(cfg.max_leverage, rounded))
        if final != rounded:
            reasoning.append(
                f"Clamped from {rounded}x to {final}x (range: {cfg.min_leverage}x-{cfg.max_leverage}x)"
            )
        reasoning.append(f"Final leverage: {final}x")
        return LeverageRecommendation(leverage=final, reasoning=reasoning, adjustments=adjustments)

    def classify_volatility(self, atr_percent: float) -> VolatilityLevel:
        if atr_percent < self.config.atr_low_threshold:
            return "low"
        if atr_percent > self.config.atr_high_threshold:
            return "high"
        return "medium"

    def format_recommendation(self, recommendation: LeverageRecommendation) -> str:
        lines = ["Leverage Calculation:"]
        lines.extend(f"  - {line}" for line in recommendation.reasoning)
        return "\n".join(lines)

    def validate_leverage(self, leverage: Any) -> Tuple[bool, float, Optional[str]]:
        """Return `(valid, adjusted, reason)` for a proposed leverage value."""
        cfg = self.config
        value = as_finite_float(leverage)
        if value is None or value <= 0:
            return (
                False,
                cfg.min_leverage,
                f"Invalid leverage value: {leverage}, using minimum ({cfg.min_leverage}x)",
            )
        if value < cfg.min_leverage:
            return False, cfg.min_leverage, f"Leverage {_fmt(value)}x below minimum ({cfg.min_leverage}x)"
        if value > cfg.max_leverage:
            return False, cfg.max_leverage, f"Leverage {_fmt(value)}x above maximum ({cfg.max_leverage}x)"
        if cfg.config_max_leverage is not None:
            effective_max = max(cfg.min_leverage, cfg.config_max_leverage)
            if value > effective_max:
                return (
                    False,
                    effective_max,
                    f"Leverage {_fmt(value)}x exceeds config max ({_fmt(effective_max)}x)",
                )
        return True, value, None

    def _safe_leverage(self, leverage: Any, helper: str) -> float:
        value = as_finite_float(leverage)
        if value is None or value <= 0:
            logger.warning("%s: invalid leverage %r, using minimum", helper, leverage)
            return float(self.config.min_leverage)
        return value

    def margin_required(self, notional_usd: Any, leverage: Any) -> float:
        lev = self._safe_leverage(leverage, "margin_required")
        notional = as_finite_float(notional_usd)
        if notional is None or notional < 0:
            return 0.0
        return notional / lev

    def notional_exposure(self, margin_usd: Any, leverage: Any) -> float:
        margin = as_finite_float(margin_usd)
        if margin is None or margin < 0:
            return 0.0
        return margin * self._safe_leverage(leverage, "notional_exposure")

    def estimate_liquidation_price(
        self,
        entry_price: Any,
        leverage: Any,
        is_long: bool,
        maintenance_margin_rate: Any = None,
    ) -> float:
        """Approximate liquidation price; the exchange's own rules are authoritative."""
        price = as_finite_float(entry_price)
        if price is None or price <= 0:
            return 0.0
        lev = self._safe_leverage(leverage, "estimate_liquidation_price")
        rate = as_finite_float(maintenance_margin_rate)
        if rate is None:
            rate = self.config.maintenance_margin_rate
        if is_long:
            return price * (1 - (1 / lev) + rate)
        return price * (1 + (1 / lev) - rate)

    def safe_distance_percent(self, leverage: Any) -> float:
        """Half of the ~100/leverage percent move that would liquidate the position."""
        return (100 / self._safe_leverage(leverage, "safe_distance_percent")) * 0.5
