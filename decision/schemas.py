"""
Data structures exchanged between the analysts, the judge and the execution layer.
"""

from __future__ import annotations

import json
import math
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple


TradeAction = Literal["BUY", "SELL", "HOLD", "CLOSE", "REDUCE"]
TRADE_ACTIONS: Tuple[TradeAction, ...] = ("BUY", "SELL", "HOLD", "CLOSE", "REDUCE")
ENTRY_ACTIONS = frozenset({"BUY", "SELL"})
EXIT_ACTIONS = frozenset({"CLOSE", "REDUCE"})

AnalystId = Literal["jim", "ray", "karen", "quant"]
ANALYST_IDS: Tuple[AnalystId, ...] = ("jim", "ray", "karen", "quant")
NO_WINNER = "NONE"
MAX_WARNINGS = 20


def capped_warnings(
    existing: Tuple[str, ...] | List[str], additions: Tuple[str, ...] | List[str] = (), limit: int = MAX_WARNINGS
) -> Tuple[str, ...]:
    """Append warnings in order; anything past `limit` is dropped without a marker."""
    return tuple([*existing, *additions][:limit])


@dataclass(slots=True, frozen=True)
class AnalystRecommendation:
    """A single trade recommendation as produced by an analyst or the judge."""

    action: TradeAction
    symbol: Optional[str]
    allocation_usd: float
    leverage: float
    tp_price: Optional[float]
    sl_price: Optional[float]
    exit_plan: str
    confidence: float
    rationale: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class AnalystOutput:
    """Validated output of one analyst for one cycle."""

    analyst_id: str
    reasoning: str
    recommendation: AnalystRecommendation
    scores: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "reasoning": self.reasoning,
            "recommendation": self.recommendation.to_dict(),
        }
        if self.scores:
            payload["scores"] = dict(self.scores)
        return payload


@dataclass(slots=True)
class AnalystError:
    analyst: str
    error: str
    kind: Optional[str] = None


@dataclass(slots=True)
class AnalysisResult:
    """Per-analyst outputs for a cycle plus every recorded failure."""

    outputs: Dict[str, AnalystOutput] = field(default_factory=dict)
    errors: List[AnalystError] = field(default_factory=list)
    strategy: str = "parallel"
    timestamp: float = field(default_factory=time.time)

    def get(self, analyst_id: str) -> Optional[AnalystOutput]:
        return self.outputs.get(analyst_id)

    def missing(self, analyst_ids: Tuple[str, ...] = ANALYST_IDS) -> List[str]:
        return [analyst_id for analyst_id in analyst_ids if analyst_id not in self.outputs]

    def record_error(self, analyst: str, error: str, kind: Optional[str] = None) -> None:
        self.errors.append(AnalystError(analyst=analyst, error=error, kind=kind))


@dataclass(slots=True, frozen=True)
class VerdictAdjustments:
    """Fields the judge explicitly overrode; None means "not overridden"."""

    leverage: Optional[float] = None
    allocation_usd: Optional[float] = None
    sl_price: Optional[float] = None
    tp_price: Optional[float] = None

    def overrides(self) -> Dict[str, float]:
        return {
            name: value
            for name, value in (
                ("leverage", self.leverage),
                ("allocation_usd", self.allocation_usd),
                ("sl_price", self.sl_price),
                ("tp_price", self.tp_price),
            )
            if value is not None
        }


@dataclass(slots=True)
class Verdict:
    """The judge's decision after comparing the analyst outputs."""

    winner: str
    reasoning: str
    final_action: TradeAction
    adjustments: Optional[VerdictAdjustments] = None
    warnings: List[str] = field(default_factory=list)
    final_recommendation: Optional[AnalystRecommendation] = None


@dataclass(slots=True, frozen=True)
class FinalDecision:
    """The single instruction handed to the execution layer for a cycle."""

    action: TradeAction
    symbol: str
    allocation_usd: float
    leverage: float
    tp_price: Optional[float]
    sl_price: Optional[float]
    exit_plan: str
    confidence: float
    rationale: str
    winner: str
    warnings: Tuple[str, ...] = ()
    flatten_all: bool = False
    analysis: Optional[AnalysisResult] = field(default=None, compare=False, repr=False)
    verdict: Optional[Verdict] = field(default=None, compare=False, repr=False)
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc), compare=False)

    @property
    def is_entry(self) -> bool:
        return self.action in ENTRY_ACTIONS

    @property
    def is_exit(self) -> bool:
        return self.action in EXIT_ACTIONS

    @property
    def direction(self) -> Optional[str]:
        if self.action == "BUY":
            return "LONG"
        if self.action == "SELL":
            return "SHORT"
        return None

    @classmethod
    def hold(
        cls,
        rationale: str,
        warnings: Tuple[str, ...] | List[str] = (),
        *,
        symbol: str = "",
        winner: str = NO_WINNER,
        analysis: Optional[AnalysisResult] = None,
        verdict: Optional[Verdict] = None,
        flatten_all: bool = False,
    ) -> "FinalDecision":
        return cls(
            action="HOLD",
            symbol=symbol,
            allocation_usd=0.0,
            leverage=0.0,
            tp_price=None,
            sl_price=None,
            exit_plan="",
            confidence=0.0,
            rationale=rationale,
            winner=winner,
            warnings=tuple(warnings),
            flatten_all=flatten_all,
            analysis=analysis,
            verdict=verdict,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "symbol": self.symbol,
            "allocation_usd": self.allocation_usd,
            "leverage": self.leverage,
            "tp_price": self.tp_price,
            "sl_price": self.sl_price,
            "exit_plan": self.exit_plan,
            "confidence": self.confidence,
            "rationale": self.rationale,
            "winner": self.winner,
            "warnings": list(self.warnings),
            "flatten_all": self.flatten_all,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(slots=True)
class DecisionContext:
    """
    Serialized market and account snapshot shared by every analyst.

    `signals` maps symbol to technical signal flags; `indicators` may carry
    per-symbol `atr_percent`, `funding_rate` and `price` used by the risk engine.
    """

    account_balance: float
    market_data: List[Dict[str, Any]] = field(default_factory=list)
    positions: List[Dict[str, Any]] = field(default_factory=list)
    signals: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    indicators: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "DecisionContext":
        account = payload.get("account") or {}
        balance = payload.get("account_balance", account.get("balance"))
        try:
            balance_value = float(balance)
        except (TypeError, ValueError):
            balance_value = math.nan
        positions = payload.get("positions", account.get("positions"))
        return cls(
            account_balance=balance_value,
            market_data=list(payload.get("market_data") or []),
            positions=list(positions) if isinstance(positions, list) else [],
            signals=dict(payload.get("signals") or {}),
            indicators=dict(payload.get("indicators") or {}),
            metadata=dict(payload.get("metadata") or {}),
        )

    def has_valid_balance(self) -> bool:
        return math.isfinite(self.account_balance) and self.account_balance >= 0

    def to_prompt_json(self) -> str:
        document = {
            "account": {"balance": self.account_balance, "positions": self.positions},
            "market_data": self.market_data,
            "signals": self.signals,
            "metadata": self.metadata,
        }
        return json.dumps(document, indent=2, default=str)
