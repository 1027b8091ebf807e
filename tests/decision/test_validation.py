import json

import pytest

from decision.validation import (
    analyst_problems,
    judge_problems,
    normalize_judge_payload,
    normalize_recommendation,
    parse_analyst_output,
    parse_verdict,
)
from models.errors import ValidationError


def _recommendation(**overrides):
    rec = {
        "action": "BUY",
        "symbol": "BTC-USDT-SWAP",
        "allocation_usd": 200,
        "leverage": 5,
        "tp_price": 104_000,
        "sl_price": 96_500,
        "exit_plan": "Take profit at range high, stop under 4h low",
        "confidence": 78,
        "rationale": "Higher low on rising volume",
    }
    rec.update(overrides)
    return rec


def _analyst(**overrides):
    return {"reasoning": "Momentum is turning up", "recommendation": _recommendation(**overrides)}


def _verdict(**overrides):
    payload = {
        "winner": "jim",
        "reasoning": "Jim's setup has the cleanest invalidation",
        "adjustments": None,
        "final_action": "BUY",
        "final_recommendation": _recommendation(),
        "warnings": [],
    }
    payload.update(overrides)
    return payload


def test_normalize_recommendation_coerces_shape():
    rec = normalize_recommendation(
        _recommendation(action=" buy ", leverage="7", confidence="81.5", exit_plan={"tp": 1, "sl": 2})
    )
    assert rec["action"] == "BUY"
    assert rec["leverage"] == 7.0
    assert rec["confidence"] == 81.5
    assert json.loads(rec["exit_plan"]) == {"tp": 1, "sl": 2}


def test_parse_valid_entry():
    output = parse_analyst_output("jim", _analyst(action="sell", leverage="3"))
    assert output.analyst_id == "jim"
    rec = output.recommendation
    assert rec.action == "SELL"
    assert rec.leverage == 3.0
    assert rec.allocation_usd == 200.0
    assert rec.tp_price == 104_000.0
    assert output.scores == {}


def test_parse_hold_allows_nulls():
    output = parse_analyst_output(
        "karen",
        _analyst(action="HOLD", symbol=None, allocation_usd=0, leverage=None, exit_plan=None, tp_price=None, sl_price=None),
    )
    rec = output.recommendation
    assert rec.action == "HOLD"
    assert rec.symbol is None
    assert rec.allocation_usd == 0.0
    assert rec.leverage == 0.0
    assert rec.exit_plan == ""


def test_hold_with_exposure_is_invalid():
    problems = analyst_problems(_analyst(action="HOLD", allocation_usd=50, leverage=2))
    assert "allocation_usd must be 0 or null for HOLD" in problems
    assert "leverage must be 0 or null for HOLD" in problems


def test_all_problems_are_collected():
    with pytest.raises(ValidationError) as excinfo:
        parse_analyst_output(
            "ray",
            _analyst(allocation_usd=0, leverage=25, exit_plan="", confidence=120, sl_price=-1),
        )
    problems = excinfo.value.problems
    assert problems == [
        "allocation_usd must be positive, got 0",
        "leverage must be between 1 and 20, got 25",
        "exit_plan is required for non-HOLD actions",
        "sl_price must be null or a positive number",
        "confidence must be between 0 and 100, got 120",
    ]
    assert str(excinfo.value).startswith("Invalid output from ray: ")


def test_unknown_action_stops_validation():
    assert analyst_problems(_analyst(action="YOLO")) == ["invalid action: 'YOLO'"]


def test_non_object_outputs():
    assert analyst_problems(["BUY"]) == ["output is not an object"]
    assert analyst_problems({"reasoning": "x", "recommendation": "BUY"}) == ["recommendation must be an object"]
    assert judge_problems("HOLD") == ["output is not an object"]


def test_boolean_is_not_a_number():
    assert "leverage must be between 1 and 20, got True" in analyst_problems(_analyst(leverage=True))


def test_parse_verdict_with_adjustments():
    verdict = parse_verdict(_verdict(adjustments={"leverage": "3", "allocation_usd": 150, "tp_price": None}))
    assert verdict.winner == "jim"
    assert verdict.final_action == "BUY"
    assert verdict.adjustments.leverage == 3.0
    assert verdict.adjustments.allocation_usd == 150.0
    assert verdict.adjustments.overrides() == {"leverage": 3.0, "allocation_usd": 150.0}
    assert verdict.final_recommendation.symbol == "BTC-USDT-SWAP"


def test_missing_warnings_become_empty_list():
    verdict = parse_verdict(_verdict(warnings=None))
    assert verdict.warnings == []


def test_no_winner_cannot_open_positions():
    normalized = normalize_judge_payload(_verdict(winner="NONE", final_action="buy"))
    assert normalized["final_action"] == "HOLD"
    assert normalized["final_recommendation"] is None

    verdict = parse_verdict(_verdict(winner="NONE", final_action="SELL"))
    assert verdict.final_action == "HOLD"
    assert verdict.final_recommendation is None


def test_no_winner_exit_requires_recommendation():
    problems = judge_problems(normalize_judge_payload(_verdict(winner="NONE", final_action="CLOSE", final_recommendation=None)))
    assert problems == ["final_recommendation is required for CLOSE"]

    verdict = parse_verdict(
        _verdict(winner="NONE", final_action="CLOSE", final_recommendation=_recommendation(action="CLOSE", leverage=0))
    )
    assert verdict.final_action == "CLOSE"
    assert verdict.final_recommendation.leverage == 0.0


def test_winner_requires_recommendation():
    problems = judge_problems(_verdict(final_recommendation=None))
    assert problems == ["final_recommendation is required when a winner is chosen"]


@pytest.mark.parametrize(
    "overrides, problem",
    [
        ({"winner": "bob"}, "invalid winner: 'bob'"),
        ({"reasoning": " "}, "reasoning must be a non-empty string"),
        ({"warnings": "careful"}, "warnings must be a list of strings"),
        ({"adjustments": {"leverage": -2}}, "adjustments.leverage must be a non-negative number"),
        ({"adjustments": [1, 2]}, "adjustments must be an object or null"),
        ({"final_action": "WAIT"}, "invalid final_action: 'WAIT'"),
        (
            {"final_recommendation": _recommendation(action="SELL")},
            "final_recommendation action SELL does not match final_action BUY",
        ),
        (
            {"final_recommendation": _recommendation(leverage=0)},
            "final_recommendation leverage must be between 1 and 20, got 0",
        ),
    ],
)
def test_judge_problems(overrides, problem):
    assert problem in judge_problems(normalize_judge_payload(_verdict(**overrides)))


def test_hold_recommendation_must_have_zero_leverage():
    payload = _verdict(final_action="HOLD", final_recommendation=_recommendation(action="HOLD", allocation_usd=0, leverage=2))
    assert "final_recommendation leverage must be 0 for HOLD" in judge_problems(payload)


def test_exit_recommendation_may_carry_leverage():
    verdict = parse_verdict(_verdict(final_action="REDUCE", final_recommendation=_recommendation(action="REDUCE", leverage=4)))
    assert verdict.final_recommendation.leverage == 4.0


def test_parse_verdict_raises_with_problems():
    with pytest.raises(ValidationError) as excinfo:
        parse_verdict(_verdict(winner="bob", reasoning=""))
    assert excinfo.value.problems[:2] == ["invalid winner: 'bob'", "reasoning must be a non-empty string"]
