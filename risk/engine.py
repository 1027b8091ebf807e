"""
Composable risk engine chaining the circuit breaker, anti-churn and leverage gates.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Callable, List, Mapping, Optional, Tuple

from decision.schemas import MAX_WARNINGS, FinalDecision, capped_warnings
from models.utils import as_finite_float
from risk.anti_churn import AntiChurnGate
from risk.circuit_breaker import MarketCircuitBreaker
from risk.leverage import LeverageCalculator
from risk.schemas import RiskEvaluation, RiskLevel

logger = logging.getLogger(__name__)

RiskHook = Callable[[RiskEvaluation, FinalDecision, Mapping[str, Any]], None]


def is_against_funding(direction: Optional[str], funding_rate: float) -> bool:
    """Longs pay positive funding and shorts pay negative funding."""
    if direction == "LONG":
        return funding_rate > 0
    if direction == "SHORT":
        return funding_rate < 0
    return False


class RiskEngine:
    """High-level gate applied to a `FinalDecision` before it reaches execution."""

    def __init__(
        self,
        *,
        circuit_breaker: MarketCircuitBreaker | None = None,
        anti_churn: AntiChurnGate | None = None,
        leverage_calculator: LeverageCalculator | None = None,
        max_warnings: int = MAX_WARNINGS,
    ) -> None:
        self.circuit_breaker = circuit_breaker
        self.anti_churn = anti_churn
        self.leverage_calculator = leverage_calculator
        self.max_warnings = max_warnings
        self._hooks: List[RiskHook] = []

    def add_hook(self, hook: RiskHook) -> None:
        """Register custom hook callable(evaluation, decision, market)."""
        self._hooks.append(hook)

    async def evaluate(
        self,
        decision: FinalDecision,
        market: Mapping[str, Any] | None = None,
    ) -> RiskEvaluation:
        """
        Run every configured gate against a decision.

        The circuit breaker is consulted for every decision: RED marks the
        evaluation `flatten_all` and denies entries. The remaining gates apply
        to entries only. `market` may carry `atr_percent`, `funding_rate` and
        `trend_strength` for the decision's symbol; without an ATR the leverage
        calculator is skipped.
        """
        evaluation = RiskEvaluation(approved=True)
        market = market or {}

        if self.circuit_breaker is not None:
            status = await self.circuit_breaker.check()
            evaluation.circuit_breaker = status
            if status.level is RiskLevel.RED:
                evaluation.flatten_all = True
                if decision.is_entry:
                    evaluation.add_violation(
                        "CIRCUIT_BREAKER_RED",
                        f"Circuit breaker RED: {status.reason}",
                        action=self.circuit_breaker.get_recommended_action(status.level),
                    )
            elif status.level is not RiskLevel.NONE and decision.is_entry:
                cap = self.circuit_breaker.get_max_leverage(status.level)
                evaluation.cap_leverage(cap, f"Circuit breaker {status.level.value} caps leverage at {cap}x")

        if not decision.is_entry:
            return evaluation

        if self.anti_churn is not None and decision.direction is not None:
            check = self.anti_churn.check(decision.symbol, decision.direction)
            if not check.allowed:
                evaluation.add_violation(
                    "ANTI_CHURN_DENIED",
                    check.reason or "Anti-churn gate denied the trade",
                    remaining_seconds=check.remaining_seconds,
                )

        atr = as_finite_float(market.get("atr_percent"))
        if self.leverage_calculator is not None and atr is not None:
            funding = as_finite_float(market.get("funding_rate")) or 0.0
            recommendation = self.leverage_calculator.calculate(
                decision.confidence,
                atr,
                funding,
                is_against_funding(decision.direction, funding),
                trend_strength=as_finite_float(market.get("trend_strength")),
            )
            evaluation.cap_leverage(
                recommendation.leverage,
                f"Leverage calculator recommends {recommendation.leverage}x",
            )

        for hook in self._hooks:
            hook(evaluation, decision, market)
        return evaluation

    def apply(self, decision: FinalDecision, evaluation: RiskEvaluation) -> FinalDecision:
        """Downgrade denied entries to HOLD, flag RED for flattening and lower leverage to the tightest cap."""
        if not evaluation.approved:
            messages = [violation.message for violation in evaluation.violations]
            logger.warning("Risk engine denied %s %s: %s", decision.action, decision.symbol, "; ".join(messages))
            return FinalDecision.hold(
                f"Risk check failed: {'; '.join(messages)}",
                capped_warnings(decision.warnings, messages, self.max_warnings),
                symbol=decision.symbol,
                winner=decision.winner,
                analysis=decision.analysis,
                verdict=decision.verdict,
                flatten_all=evaluation.flatten_all,
            )
        if evaluation.flatten_all:
            reason = evaluation.circuit_breaker.reason if evaluation.circuit_breaker else "RED"
            logger.error("Circuit breaker RED, flatten all positions: %s", reason)
            return replace(
                decision,
                flatten_all=True,
                warnings=capped_warnings(
                    decision.warnings, [f"Circuit breaker RED: {reason}; flatten all positions"], self.max_warnings
                ),
            )
        cap = evaluation.max_leverage
        if decision.is_entry and cap is not None and decision.leverage > cap:
            logger.info("Risk engine lowers %s leverage from %sx to %sx", decision.symbol, decision.leverage, cap)
            note = "; ".join(evaluation.notes)
            return replace(
                decision,
                leverage=float(cap),
                warnings=capped_warnings(
                    decision.warnings,
                    [f"Leverage reduced from {decision.leverage:g}x to {cap:g}x ({note})"],
                    self.max_warnings,
                ),
            )
        return decision

    async def gate(
        self,
        decision: FinalDecision,
        market: Mapping[str, Any] | None = None,
    ) -> Tuple[FinalDecision, RiskEvaluation]:
        evaluation = await self.evaluate(decision, market)
        return self.apply(decision, evaluation), evaluation
