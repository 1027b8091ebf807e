"""
Normalisation and domain validation of analyst and judge JSON payloads.

Model output is first normalised into the expected shape (upper-case actions,
numeric strings coerced, object exit plans serialised) and then checked field
by field. Validation collects every problem rather than stopping at the first
one so that retry logs explain the whole failure.
"""

from __future__ import annotations

import json
import math
from typing import Any, Dict, List, Mapping, Optional

from decision.schemas import (
    ANALYST_IDS,
    ENTRY_ACTIONS,
    EXIT_ACTIONS,
    NO_WINNER,
    TRADE_ACTIONS,
    AnalystOutput,
    AnalystRecommendation,
    Verdict,
    VerdictAdjustments,
)
from models.errors import ValidationError

MAX_ANALYST_LEVERAGE = 20.0
_NUMERIC_FIELDS = ("allocation_usd", "leverage", "tp_price", "sl_price", "confidence")
_ADJUSTMENT_FIELDS = ("leverage", "allocation_usd", "sl_price", "tp_price")


def _coerce_number(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return value
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_finite(value: Any) -> bool:
    return _is_number(value) and math.isfinite(value)


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _optional_price_ok(value: Any) -> bool:
    return value is None or (_is_finite(value) and value > 0)


def normalize_recommendation(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a copy of `raw` in the canonical recommendation shape."""
    rec = dict(raw)
    action = rec.get("action")
    if isinstance(action, str):
        rec["action"] = action.strip().upper()
    exit_plan = rec.get("exit_plan")
    if isinstance(exit_plan, Mapping):
        rec["exit_plan"] = json.dumps(exit_plan)
    for name in _NUMERIC_FIELDS:
        if name in rec:
            rec[name] = _coerce_number(rec[name])
    return rec


def normalize_analyst_payload(payload: Any) -> Any:
    """Normalise a raw analyst payload; non-mapping input is returned untouched."""
    if not isinstance(payload, Mapping):
        return payload
    normalized = dict(payload)
    recommendation = normalized.get("recommendation")
    if isinstance(recommendation, Mapping):
        normalized["recommendation"] = normalize_recommendation(recommendation)
    return normalized


def analyst_problems(payload: Any) -> List[str]:
    """List every reason why `payload` is not a valid analyst output."""
    if not isinstance(payload, Mapping):
        return ["output is not an object"]
    problems: List[str] = []
    if not _non_empty_str(payload.get("reasoning")):
        problems.append("reasoning must be a non-empty string")
    rec = payload.get("recommendation")
    if not isinstance(rec, Mapping):
        problems.append("recommendation must be an object")
        return problems

    action = rec.get("action")
    if action not in TRADE_ACTIONS:
        problems.append(f"invalid action: {action!r}")
        return problems

    if action == "HOLD":
        symbol = rec.get("symbol")
        if symbol is not None and not isinstance(symbol, str):
            problems.append("symbol must be a string or null")
        for name in ("allocation_usd", "leverage"):
            value = rec.get(name)
            if value is not None and value != 0:
                problems.append(f"{name} must be 0 or null for HOLD")
        exit_plan = rec.get("exit_plan")
        if exit_plan is not None and not isinstance(exit_plan, str):
            problems.append("exit_plan must be a string or null")
    else:
        if not _non_empty_str(rec.get("symbol")):
            problems.append("symbol is required for non-HOLD actions")
        allocation = rec.get("allocation_usd")
        if not _is_finite(allocation) or allocation <= 0:
            problems.append(f"allocation_usd must be positive, got {allocation!r}")
        leverage = rec.get("leverage")
        if not _is_finite(leverage) or not 1 <= leverage <= MAX_ANALYST_LEVERAGE:
            problems.append(f"leverage must be between 1 and 20, got {leverage!r}")
        if not _non_empty_str(rec.get("exit_plan")):
            problems.append("exit_plan is required for non-HOLD actions")

    for name in ("tp_price", "sl_price"):
        if not _optional_price_ok(rec.get(name)):
            problems.append(f"{name} must be null or a positive number")
    confidence = rec.get("confidence")
    if not _is_finite(confidence) or not 0 <= confidence <= 100:
        problems.append(f"confidence must be between 0 and 100, got {confidence!r}")
    if not _non_empty_str(rec.get("rationale")):
        problems.append("rationale must be a non-empty string")
    return problems


def build_recommendation(rec: Mapping[str, Any]) -> AnalystRecommendation:
    """Build a recommendation from an already validated mapping."""
    symbol = rec.get("symbol")
    return AnalystRecommendation(
        action=rec["action"],
        symbol=symbol.strip() if isinstance(symbol, str) and symbol.strip() else None,
        allocation_usd=float(rec.get("allocation_usd") or 0.0),
        leverage=float(rec.get("leverage") or 0.0),
        tp_price=None if rec.get("tp_price") is None else float(rec["tp_price"]),
        sl_price=None if rec.get("sl_price") is None else float(rec["sl_price"]),
        exit_plan=rec.get("exit_plan") or "",
        confidence=float(rec["confidence"]),
        rationale=rec["rationale"],
    )


def parse_analyst_output(analyst_id: str, payload: Any) -> AnalystOutput:
    """Normalise and validate one analyst payload, raising ValidationError on failure."""
    normalized = normalize_analyst_payload(payload)
    problems = analyst_problems(normalized)
    if problems:
        raise ValidationError(
            f"Invalid output from {analyst_id}: {'; '.join(problems)}",
            problems=problems,
        )
    scores = normalized.get("scores")
    return AnalystOutput(
        analyst_id=analyst_id,
        reasoning=normalized["reasoning"],
        recommendation=build_recommendation(normalized["recommendation"]),
        scores=dict(scores) if isinstance(scores, Mapping) else {},
    )


def normalize_judge_payload(payload: Any) -> Any:
    """
    Bring a judge payload into a consistent shape before validation.

    Missing warnings become an empty list. A NONE winner cannot open a
    position, so BUY/SELL collapse to HOLD, and HOLD with a NONE winner
    carries no recommendation.
    """
    if not isinstance(payload, Mapping):
        return payload
    normalized = dict(payload)
    action = normalized.get("final_action")
    if isinstance(action, str):
        normalized["final_action"] = action.strip().upper()
    if normalized.get("warnings") is None:
        normalized["warnings"] = []
    adjustments = normalized.get("adjustments")
    if isinstance(adjustments, Mapping):
        normalized["adjustments"] = {key: _coerce_number(value) for key, value in adjustments.items()}
    rec = normalized.get("final_recommendation")
    if isinstance(rec, Mapping):
        normalized["final_recommendation"] = normalize_recommendation(rec)

    if normalized.get("winner") == NO_WINNER:
        if normalized.get("final_action") in ENTRY_ACTIONS:
            normalized["final_action"] = "HOLD"
        if normalized.get("final_action") == "HOLD":
            normalized["final_recommendation"] = None
    return normalized


def _judge_recommendation_problems(rec: Mapping[str, Any], final_action: Any) -> List[str]:
    problems: List[str] = []
    action = rec.get("action")
    if action not in TRADE_ACTIONS:
        return [f"final_recommendation has invalid action: {action!r}"]
    if action != final_action:
        problems.append(f"final_recommendation action {action} does not match final_action {final_action}")
    if not _non_empty_str(rec.get("symbol")):
        problems.append("final_recommendation symbol is required")
    allocation = rec.get("allocation_usd")
    if not _is_finite(allocation) or allocation < 0 or (action != "HOLD" and allocation == 0):
        problems.append(f"final_recommendation allocation_usd invalid: {allocation!r}")
    leverage = rec.get("leverage")
    if not _is_finite(leverage):
        problems.append(f"final_recommendation leverage invalid: {leverage!r}")
    elif action == "HOLD" and leverage != 0:
        problems.append("final_recommendation leverage must be 0 for HOLD")
    elif action in ENTRY_ACTIONS and not 1 <= leverage <= MAX_ANALYST_LEVERAGE:
        problems.append(f"final_recommendation leverage must be between 1 and 20, got {leverage}")
    elif action in EXIT_ACTIONS and not 0 <= leverage <= MAX_ANALYST_LEVERAGE:
        problems.append(f"final_recommendation leverage must be between 0 and 20, got {leverage}")
    for name in ("tp_price", "sl_price"):
        if not _optional_price_ok(rec.get(name)):
            problems.append(f"final_recommendation {name} must be null or a positive number")
    exit_plan = rec.get("exit_plan")
    if not isinstance(exit_plan, str) or (action != "HOLD" and not exit_plan.strip()):
        problems.append("final_recommendation exit_plan is required")
    confidence = rec.get("confidence")
    if not _is_finite(confidence) or not 0 <= confidence <= 100:
        problems.append(f"final_recommendation confidence invalid: {confidence!r}")
    if not _non_empty_str(rec.get("rationale")):
        problems.append("final_recommendation rationale is required")
    return problems


def judge_problems(payload: Any) -> List[str]:
    """List every reason why `payload` is not a valid judge verdict."""
    if not isinstance(payload, Mapping):
        return ["output is not an object"]
    problems: List[str] = []
    winner = payload.get("winner")
    if winner not in ANALYST_IDS and winner != NO_WINNER:
        problems.append(f"invalid winner: {winner!r}")
    if not _non_empty_str(payload.get("reasoning")):
        problems.append("reasoning must be a non-empty string")

    adjustments = payload.get("adjustments")
    if adjustments is not None:
        if not isinstance(adjustments, Mapping):
            problems.append("adjustments must be an object or null")
        else:
            for name in _ADJUSTMENT_FIELDS:
                value = adjustments.get(name)
                if value is not None and (not _is_finite(value) or value < 0):
                    problems.append(f"adjustments.{name} must be a non-negative number")

    warnings = payload.get("warnings")
    if not isinstance(warnings, list) or not all(isinstance(item, str) for item in warnings):
        problems.append("warnings must be a list of strings")

    final_action = payload.get("final_action")
    if final_action not in TRADE_ACTIONS:
        problems.append(f"invalid final_action: {final_action!r}")
        return problems

    rec = payload.get("final_recommendation")
    if rec is None:
        if winner != NO_WINNER:
            problems.append("final_recommendation is required when a winner is chosen")
        elif final_action in EXIT_ACTIONS:
            problems.append(f"final_recommendation is required for {final_action}")
    elif not isinstance(rec, Mapping):
        problems.append("final_recommendation must be an object or null")
    else:
        problems.extend(_judge_recommendation_problems(rec, final_action))
    return problems


def parse_verdict(payload: Any) -> Verdict:
    """Normalise and validate a judge payload into a `Verdict`."""
    normalized = normalize_judge_payload(payload)
    problems = judge_problems(normalized)
    if problems:
        raise ValidationError(f"Invalid judge output: {'; '.join(problems)}", problems=problems)

    adjustments: Optional[VerdictAdjustments] = None
    raw_adjustments = normalized.get("adjustments")
    if isinstance(raw_adjustments, Mapping):
        adjustments = VerdictAdjustments(
            **{
                name: float(raw_adjustments[name])
                for name in _ADJUSTMENT_FIELDS
                if raw_adjustments.get(name) is not None
            }
        )
    rec = normalized.get("final_recommendation")
    return Verdict(
        winner=normalized["winner"],
        reasoning=normalized["reasoning"],
        final_action=normalized["final_action"],
        adjustments=adjustments,
        warnings=list(normalized["warnings"]),
        final_recommendation=build_recommendation(rec) if isinstance(rec, Mapping) else None,
    )
