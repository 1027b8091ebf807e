"""
Demonstrates the risk gates on a BUY decision against a canned market probe.
"""

from __future__ import annotations

import asyncio
import json
import sys
import time
from pathlib import Path
from typing import List, Sequence

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from decision.schemas import FinalDecision
from risk.anti_churn import AntiChurnConfig, AntiChurnGate
from risk.circuit_breaker import CircuitBreakerConfig, MarketCircuitBreaker
from risk.engine import RiskEngine
from risk.leverage import LeverageCalculator


class StaticProbe:
    """Market probe serving a 16% four-hour BTC drop and elevated funding."""

    name = "static"

    async def fetch_candles(self, instrument_id: str, bar: str = "1H", limit: int = 5) -> List[Sequence[str]]:
        now = int(time.time() * 1000)
        closes = [84000, 86000, 90000, 95000, 100000]
        # newest first, like the exchange
        return [
            [str(now - i * 3_600_000), str(close), str(close * 1.01), str(close * 0.99), str(close), "1"]
            for i, close in enumerate(closes)
        ]

    async def fetch_funding_rate(self, instrument_id: str) -> float:
        return 0.003

    async def fetch_server_time(self) -> int:
        return int(time.time() * 1000)

    async def aclose(self) -> None:
        return None


async def main() -> None:
    breaker = MarketCircuitBreaker(StaticProbe(), CircuitBreakerConfig())
    gate = AntiChurnGate(AntiChurnConfig(max_daily_trades=5))
    calculator = LeverageCalculator()
    engine = RiskEngine(circuit_breaker=breaker, anti_churn=gate, leverage_calculator=calculator)

    decision = FinalDecision(
        action="BUY",
        symbol="BTC-USDT-SWAP",
        allocation_usd=500.0,
        leverage=8.0,
        tp_price=92000.0,
        sl_price=81000.0,
        exit_plan="Trail stop below the 4h low",
        confidence=88.0,
        rationale="Bounce off liquidation cluster",
        winner="jim",
    )
    gated, evaluation = await engine.gate(decision, {"atr_percent": 4.2, "funding_rate": 0.003})
    status = evaluation.circuit_breaker

    recommendation = calculator.calculate(88.0, 4.2, 0.003, True)
    print(json.dumps(
        {
            "circuit_breaker": {
                "level": status.level.value if status else None,
                "reason": status.reason if status else None,
                "action": breaker.get_recommended_action(status.level) if status else None,
            },
            "approved": evaluation.approved,
            "violations": [
                {"code": v.code, "message": v.message, "details": v.details}
                for v in evaluation.violations
            ],
            "notes": evaluation.notes,
            "decision": gated.to_dict(),
            "leverage": calculator.format_recommendation(recommendation),
            "anti_churn": gate.get_stats(),
        },
        indent=2,
    ))
    await breaker.aclose()


if __name__ == "__main__":
    asyncio.run(main())
