"""
Dataclasses and helper structures used by the risk gates and the risk engine.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional


Direction = Literal["LONG", "SHORT"]
DIRECTIONS: tuple[Direction, ...] = ("LONG", "SHORT")
VolatilityLevel = Literal["low", "medium", "high"]


class RiskLevel(str, Enum):
    """Circuit breaker levels ordered by severity."""

    NONE = "NONE"
    YELLOW = "YELLOW"
    ORANGE = "ORANGE"
    RED = "RED"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {RiskLevel.NONE: 0, RiskLevel.YELLOW: 1, RiskLevel.ORANGE: 2, RiskLevel.RED: 3}


@dataclass(slots=True)
class CircuitBreakerStatus:
    """Global market risk level with the reason that produced it."""

    level: RiskLevel
    reason: str
    btc_drop_4h: Optional[float] = None
    portfolio_drawdown_24h: Optional[float] = None
    funding_rate_extreme: Optional[float] = None
    exchange_issue: Optional[bool] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(slots=True)
class TradeCheck:
    """Outcome of an anti-churn gate query; a denial is a normal result, not an error."""

    allowed: bool
    reason: Optional[str] = None
    remaining_seconds: Optional[float] = None


@dataclass(slots=True)
class CloseCheck:
    should_close: bool
    required_confidence: float


@dataclass(slots=True)
class FundingCheck:
    should_act: bool
    funding_impact: float
    threshold: float


@dataclass(slots=True)
class CooldownState:
    """Per-symbol anti-churn state; timestamps are clock seconds."""

    last_trade_time: float
    last_direction: Direction
    cooldown_until: float
    flip_cooldown_until: float

    def copy(self) -> "CooldownState":
        return CooldownState(
            last_trade_time=self.last_trade_time,
            last_direction=self.last_direction,
            cooldown_until=self.cooldown_until,
            flip_cooldown_until=self.flip_cooldown_until,
        )


@dataclass(slots=True)
class LeverageAdjustment:
    factor: str
    change: int


@dataclass(slots=True)
class LeverageRecommendation:
    """Leverage chosen by the calculator and the audit trail explaining it."""

    leverage: int
    reasoning: List[str] = field(default_factory=list)
    adjustments: List[LeverageAdjustment] = field(default_factory=list)


@dataclass(slots=True)
class RiskViolation:
    """Represents a single broken risk rule."""

    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RiskEvaluation:
    """Aggregate result of a risk evaluation run."""

    approved: bool
    violations: List[RiskViolation] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    max_leverage: Optional[float] = None
    circuit_breaker: Optional[CircuitBreakerStatus] = None
    flatten_all: bool = False

    def add_violation(self, code: str, message: str, **details: Any) -> None:
        self.violations.append(RiskViolation(code=code, message=message, details=details))
        self.approved = False

    def cap_leverage(self, limit: float, note: str) -> None:
        if self.max_leverage is None or limit < self.max_leverage:
            self.max_leverage = limit
        self.notes.append(note)
