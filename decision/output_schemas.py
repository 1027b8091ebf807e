"""
Canonical response schemas requested from the generation gateway.
"""

from __future__ import annotations

from typing import Any, Dict, Sequence

from decision.schemas import ANALYST_IDS, NO_WINNER, TRADE_ACTIONS


RECOMMENDATION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "action": {"type": "string", "enum": list(TRADE_ACTIONS)},
        "symbol": {"type": "string", "nullable": True},
        "allocation_usd": {"type": "number"},
        "leverage": {"type": "number"},
        "tp_price": {"type": "number", "nullable": True},
        "sl_price": {"type": "number", "nullable": True},
        "exit_plan": {"type": "string"},
        "confidence": {"type": "number", "description": "0 to 100"},
        "rationale": {"type": "string"},
    },
    "required": [
        "action",
        "symbol",
        "allocation_usd",
        "leverage",
        "tp_price",
        "sl_price",
        "exit_plan",
        "confidence",
        "rationale",
    ],
}

ANALYST_OUTPUT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "reasoning": {"type": "string"},
        "recommendation": RECOMMENDATION_SCHEMA,
    },
    "required": ["reasoning", "recommendation"],
}

JUDGE_OUTPUT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "winner": {"type": "string", "enum": [*ANALYST_IDS, NO_WINNER]},
        "reasoning": {"type": "string"},
        "adjustments": {
            "type": "object",
            "nullable": True,
            "properties": {
                "leverage": {"type": "number", "nullable": True},
                "allocation_usd": {"type": "number", "nullable": True},
                "sl_price": {"type": "number", "nullable": True},
                "tp_price": {"type": "number", "nullable": True},
            },
        },
        "warnings": {"type": "array", "items": {"type": "string"}},
        "final_action": {"type": "string", "enum": list(TRADE_ACTIONS)},
        "final_recommendation": {**RECOMMENDATION_SCHEMA, "nullable": True},
    },
    "required": ["winner", "reasoning", "adjustments", "warnings", "final_action", "final_recommendation"],
}


def combined_output_schema(analyst_ids: Sequence[str] = ANALYST_IDS) -> Dict[str, Any]:
    """Schema asking for every analyst's output in a single response."""
    return {
        "type": "object",
        "properties": {analyst_id: ANALYST_OUTPUT_SCHEMA for analyst_id in analyst_ids},
        "required": list(analyst_ids),
    }
