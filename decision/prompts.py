"""
Persona prompt book for the analysts and the judge.

Each persona body can be overridden by dropping `<analyst_id>.txt` (or
`judge.txt`) into the configured template directory.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Final, Mapping, Optional, Sequence

from decision.schemas import ANALYST_IDS, AnalystOutput, DecisionContext

logger = logging.getLogger(__name__)

ANALYST_PROFILES: Final = {
    "jim": (
        "You are Jim, a crypto technical analyst. You read price action, support and resistance, "
        "EMA structure, RSI/MACD momentum, volume, liquidation levels and funding extremes."
    ),
    "ray": (
        "You are Ray, a crypto macro strategist. You weigh Fed policy, the dollar index, "
        "BTC dominance and the prevailing risk-on / risk-off regime."
    ),
    "karen": (
        "You are Karen, a crypto risk manager. You focus on volatility and ATR, liquidation cascades, "
        "funding cost and position sizing, and you veto trades whose risk is not justified."
    ),
    "quant": (
        "You are Quant, a crypto quantitative analyst. You look for funding arbitrage, basis, "
        "volatility regime shifts, z-score extremes and order-flow imbalance."
    ),
}

ANALYST_INSTRUCTIONS: Final = (
    "Analyse the trading context below and return one recommendation as JSON.\n"
    "Actions: BUY or SELL open a position, CLOSE or REDUCE manage an open one, HOLD does nothing.\n"
    "For HOLD set allocation_usd and leverage to 0. For any other action give a symbol, "
    "a positive allocation_usd, leverage between 1 and 20 and an exit plan.\n"
    "Confidence is a number from 0 to 100."
)

JUDGE_PROFILE: Final = (
    "You are the head of the trading desk. Compare the analyst recommendations, pick the single "
    "best one (or NONE) and decide the final action. Prefer capital preservation when the analysts "
    "disagree or the evidence is weak."
)

JUDGE_INSTRUCTIONS: Final = (
    "Return JSON with winner, reasoning, adjustments, warnings, final_action and final_recommendation.\n"
    "Only fill adjustments for fields you deliberately override. Use winner NONE with final_action "
    "HOLD when no recommendation is good enough. CLOSE and REDUCE never carry leverage adjustments."
)


def _load_override(template_dir: Optional[Path], name: str) -> Optional[str]:
    if template_dir is None:
        return None
    path = Path(template_dir) / f"{name}.txt"
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.warning("Unable to read prompt template %s: %s", path, exc)
        return None
    return text.strip() or None


def persona_for(analyst_id: str, template_dir: Optional[Path] = None) -> str:
    override = _load_override(template_dir, analyst_id)
    if override:
        return override
    try:
        return ANALYST_PROFILES[analyst_id]
    except KeyError:
        raise ValueError(f"Unknown analyst: {analyst_id}") from None


def build_analyst_prompt(
    analyst_id: str,
    context: DecisionContext,
    template_dir: Optional[Path] = None,
) -> str:
    return "\n\n".join(
        [
            persona_for(analyst_id, template_dir),
            ANALYST_INSTRUCTIONS,
            "TRADING CONTEXT:\n" + context.to_prompt_json(),
        ]
    )


def build_combined_prompt(
    context: DecisionContext,
    analyst_ids: Sequence[str] = ANALYST_IDS,
    template_dir: Optional[Path] = None,
) -> str:
    """One prompt asking every persona for its recommendation at once."""
    personas = "\n".join(f"- {analyst_id}: {persona_for(analyst_id, template_dir)}" for analyst_id in analyst_ids)
    return "\n\n".join(
        [
            "You will answer as each of the following analysts independently. "
            "Do not let one analyst's view influence another.",
            personas,
            ANALYST_INSTRUCTIONS,
            "Return an object keyed by analyst id (" + ", ".join(analyst_ids) + ").",
            "TRADING CONTEXT:\n" + context.to_prompt_json(),
        ]
    )


def format_weights_section(weights: Mapping[str, float]) -> str:
    """Render persisted analyst weights; empty when every weight is the default 1.0."""
    if not weights or all(weight == 1.0 for weight in weights.values()):
        return ""
    lines = ["ANALYST WEIGHT ADJUSTMENTS (from trade journal performance):"]
    for analyst_id, weight in weights.items():
        if weight > 1:
            label = "(outperforming)"
        elif weight < 1:
            label = "(underperforming)"
        else:
            label = "(average)"
        lines.append(f"  - {analyst_id}: {weight:.2f}x {label}")
    lines.append("Use these weights when evaluating analyst recommendations - prefer analysts with higher weights.")
    return "\n".join(lines)


def build_judge_prompt(
    context: DecisionContext,
    outputs: Mapping[str, AnalystOutput],
    *,
    tournament: Optional[Mapping[str, object]] = None,
    weights: Optional[Mapping[str, float]] = None,
    analyst_ids: Sequence[str] = ANALYST_IDS,
    template_dir: Optional[Path] = None,
) -> str:
    sections = [
        _load_override(template_dir, "judge") or JUDGE_PROFILE,
        JUDGE_INSTRUCTIONS,
        "TRADING CONTEXT:\n" + context.to_prompt_json(),
    ]
    for analyst_id in analyst_ids:
        output = outputs.get(analyst_id)
        body = json.dumps(output.to_dict(), indent=2) if output is not None else "No output (analyst failed)"
        sections.append(f"{analyst_id.upper()} ANALYSIS:\n{body}")
    if tournament:
        sections.append("DEBATE TOURNAMENT RESULT:\n" + json.dumps(tournament, indent=2, default=str))
    weights_section = format_weights_section(weights or {})
    if weights_section:
        sections.append(weights_section)
    return "\n\n".join(sections)
