"""
Risk management package supplying the leverage, anti-churn and circuit breaker gates.
"""

from .schemas import (  # noqa: F401
    CircuitBreakerStatus,
    RiskEvaluation,
    RiskLevel,
    RiskViolation,
    TradeCheck,
)
from .leverage import LeverageCalculator, LeverageConfig  # noqa: F401
from .anti_churn import AntiChurnConfig, AntiChurnGate  # noqa: F401
from .circuit_breaker import CircuitBreakerConfig, MarketCircuitBreaker  # noqa: F401
from .engine import RiskEngine  # noqa: F401
