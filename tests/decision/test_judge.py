import json

import pytest

from decision.judge import Judge, JudgeConfig, default_verdict
from decision.schemas import (
    AnalysisResult,
    AnalystOutput,
    AnalystRecommendation,
    DecisionContext,
    Verdict,
    VerdictAdjustments,
)
from models.errors import ConfigError, GenerationErrorKind, ProviderError
from models.schemas import GenerationResult


class FakeGateway:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    async def generate(self, request):
        self.requests.append(request)
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return GenerationResult(text=outcome, finish_reason="STOP", provider="gemini", request_id="req_1")

    def reset(self):
        pass


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _rec(action="BUY", **overrides):
    fields = {
        "action": action,
        "symbol": "ETH-USDT-SWAP",
        "allocation_usd": 300.0,
        "leverage": 6.0,
        "tp_price": 4_200.0,
        "sl_price": 3_700.0,
        "exit_plan": "Trail below the 1h EMA",
        "confidence": 82.0,
        "rationale": "Reclaimed VWAP with funding neutral",
    }
    fields.update(overrides)
    return AnalystRecommendation(**fields)


def _analysis(**recs):
    result = AnalysisResult()
    for analyst_id, rec in recs.items():
        result.outputs[analyst_id] = AnalystOutput(analyst_id=analyst_id, reasoning="...", recommendation=rec)
    return result


def _verdict(winner="jim", final_action="BUY", adjustments=None, warnings=None, final_recommendation=None):
    return Verdict(
        winner=winner,
        reasoning="Jim has the better risk/reward",
        final_action=final_action,
        adjustments=adjustments,
        warnings=list(warnings or []),
        final_recommendation=final_recommendation,
    )


def _verdict_json(**overrides):
    payload = {
        "winner": "jim",
        "reasoning": "Clean breakout",
        "adjustments": {"leverage": 4},
        "final_action": "BUY",
        "final_recommendation": _rec().to_dict(),
        "warnings": ["Funding turning positive"],
    }
    payload.update(overrides)
    return json.dumps(payload)


@pytest.fixture
def context():
    return DecisionContext(account_balance=10_000.0, market_data=[{"symbol": "ETH-USDT-SWAP", "price": 3_900}])


@pytest.fixture
def judge():
    return Judge(FakeGateway([]))


# ---------------------------------------------------------------- arbitrate
@pytest.mark.asyncio
async def test_arbitrate_returns_parsed_verdict(context):
    gateway = FakeGateway([_verdict_json()])
    verdict = await Judge(gateway).arbitrate(context, _analysis(jim=_rec()))
    assert verdict.winner == "jim"
    assert verdict.adjustments == VerdictAdjustments(leverage=4.0)
    assert verdict.warnings == ["Funding turning positive"]
    [request] = gateway.requests
    assert request.label == "Judge"
    assert request.temperature == 0.3
    assert request.bypass_cache is False
    assert "JIM ANALYSIS:" in request.prompt
    assert "RAY ANALYSIS:\nNo output (analyst failed)" in request.prompt


@pytest.mark.asyncio
async def test_arbitrate_retries_invalid_output(context):
    sleep = SleepRecorder()
    gateway = FakeGateway([_verdict_json(winner="bob"), _verdict_json()])
    verdict = await Judge(gateway, sleep=sleep).arbitrate(context, _analysis(jim=_rec()))
    assert verdict.winner == "jim"
    assert [request.bypass_cache for request in gateway.requests] == [False, True]
    assert sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_arbitrate_falls_back_to_default_verdict(context):
    sleep = SleepRecorder()
    gateway = FakeGateway(["not json", ProviderError("upstream 500"), RuntimeError("boom")])
    verdict = await Judge(gateway, sleep=sleep).arbitrate(context, _analysis())
    assert verdict == default_verdict()
    assert verdict.final_action == "HOLD"
    assert verdict.warnings == ["Judge analysis failed"]
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_rate_limit_retry_after_raises_delay(context):
    sleep = SleepRecorder()
    limited = ProviderError("quota", kind=GenerationErrorKind.RATE_LIMIT, retry_after=7.0)
    gateway = FakeGateway([limited, _verdict_json()])
    await Judge(gateway, sleep=sleep).arbitrate(context, _analysis(jim=_rec()))
    assert sleep.delays == [7.0]


@pytest.mark.asyncio
async def test_weights_and_tournament_reach_prompt(context):
    gateway = FakeGateway([_verdict_json()])
    judge = Judge(gateway, weights_provider=lambda: {"jim": 1.3, "ray": 0.8})
    await judge.arbitrate(context, _analysis(jim=_rec()), {"champion": "jim"})
    prompt = gateway.requests[0].prompt
    assert "  - jim: 1.30x (outperforming)" in prompt
    assert "  - ray: 0.80x (underperforming)" in prompt
    assert "DEBATE TOURNAMENT RESULT:" in prompt


@pytest.mark.asyncio
async def test_broken_weights_provider_is_ignored(context):
    def broken():
        raise OSError("disk gone")

    gateway = FakeGateway([_verdict_json()])
    verdict = await Judge(gateway, weights_provider=broken).arbitrate(context, _analysis(jim=_rec()))
    assert verdict.winner == "jim"
    assert "ANALYST WEIGHT ADJUSTMENTS" not in gateway.requests[0].prompt


@pytest.mark.asyncio
async def test_arbitrate_normalizes_exit_verdicts(context):
    payload = _verdict_json(
        final_action="CLOSE",
        adjustments={"leverage": 3},
        final_recommendation=_rec("CLOSE", leverage=5.0).to_dict(),
    )
    verdict = await Judge(FakeGateway([payload])).arbitrate(context, _analysis(jim=_rec("CLOSE")))
    assert verdict.adjustments is None
    assert verdict.final_recommendation.leverage == 0.0


# ---------------------------------------------------------------- normalize
def test_normalize_hold_drops_adjustments():
    verdict = Judge.normalize_verdict(_verdict(final_action="HOLD", adjustments=VerdictAdjustments(leverage=2.0)))
    assert verdict.adjustments is None


def test_normalize_leaves_entries_alone():
    verdict = _verdict(adjustments=VerdictAdjustments(leverage=2.0))
    assert Judge.normalize_verdict(verdict) is verdict


# ----------------------------------------------------------------- assemble
def test_entry_merges_adjustments(judge):
    verdict = _verdict(adjustments=VerdictAdjustments(leverage=3.0, allocation_usd=150.0), warnings=["Thin book"])
    decision = judge.assemble(_analysis(jim=_rec()), verdict)
    assert decision.action == "BUY"
    assert decision.symbol == "ETH-USDT-SWAP"
    assert decision.leverage == 3.0
    assert decision.allocation_usd == 150.0
    assert decision.tp_price == 4_200.0
    assert decision.winner == "jim"
    assert decision.warnings == ("Thin book",)
    assert decision.verdict is verdict


def test_entry_leverage_clamped_with_high_leverage_warning(judge):
    verdict = _verdict(adjustments=VerdictAdjustments(leverage=25.0))
    decision = judge.assemble(_analysis(jim=_rec()), verdict)
    assert decision.leverage == 20.0
    assert decision.warnings == (
        "Leverage 25x clamped to 20x",
        "High leverage (20x) - ensure stop loss is within 4.0% of entry to avoid liquidation",
    )


def test_high_leverage_threshold_boundary(judge):
    decision = judge.assemble(_analysis(jim=_rec(leverage=15.0)), _verdict())
    assert decision.leverage == 15.0
    assert decision.warnings == (
        "High leverage (15x) - ensure stop loss is within 5.3% of entry to avoid liquidation",
    )
    calm = judge.assemble(_analysis(jim=_rec(leverage=14.0)), _verdict())
    assert calm.warnings == ()


def test_invalid_leverage_downgrades_to_hold(judge):
    decision = judge.assemble(_analysis(jim=_rec()), _verdict(adjustments=VerdictAdjustments(leverage=0.0)))
    assert decision.action == "HOLD"
    assert decision.rationale == "Invalid leverage value: 0.0"
    assert decision.warnings == ("AI returned invalid leverage: 0.0",)
    assert decision.leverage == 0.0


def test_invalid_allocation_downgrades_to_hold(judge):
    decision = judge.assemble(_analysis(jim=_rec()), _verdict(adjustments=VerdictAdjustments(allocation_usd=0.0)))
    assert decision.action == "HOLD"
    assert decision.rationale == "Invalid allocation value: 0.0"
    assert decision.allocation_usd == 0.0


def test_missing_winner_output(judge):
    decision = judge.assemble(_analysis(ray=_rec()), _verdict(winner="jim"))
    assert decision.action == "HOLD"
    assert decision.rationale == "Winner output not found"
    assert decision.warnings == ("Winner output missing",)


def test_winner_with_hold_action(judge):
    decision = judge.assemble(_analysis(karen=_rec()), _verdict(winner="karen", final_action="HOLD", warnings=["Chop"]))
    assert decision.action == "HOLD"
    assert decision.winner == "karen"
    assert decision.symbol == "ETH-USDT-SWAP"
    assert decision.allocation_usd == 0.0
    assert decision.leverage == 0.0
    assert decision.rationale == "Reclaimed VWAP with funding neutral"
    assert decision.warnings == ("Chop",)


def test_exit_decision_discards_leverage_and_targets(judge):
    decision = judge.assemble(_analysis(ray=_rec("CLOSE", leverage=3.0)), _verdict(winner="ray", final_action="CLOSE"))
    assert decision.action == "CLOSE"
    assert decision.leverage == 0.0
    assert decision.tp_price is None
    assert decision.sl_price is None
    assert decision.allocation_usd == 300.0
    assert decision.warnings == ("Discarded leverage 3x for CLOSE action",)


def test_no_winner_hold(judge):
    decision = judge.assemble(_analysis(jim=_rec()), _verdict(winner="NONE", final_action="HOLD", warnings=["Conflicting"]))
    assert decision.action == "HOLD"
    assert decision.winner == "NONE"
    assert decision.rationale == "Jim has the better risk/reward"
    assert decision.warnings == ("Conflicting",)


def test_no_winner_exit_uses_judge_recommendation(judge):
    verdict = _verdict(winner="NONE", final_action="REDUCE", final_recommendation=_rec("REDUCE", leverage=0.0))
    decision = judge.assemble(_analysis(), verdict)
    assert decision.action == "REDUCE"
    assert decision.symbol == "ETH-USDT-SWAP"
    assert decision.winner == "NONE"
    assert decision.leverage == 0.0
    assert decision.warnings == ()


def test_warnings_capped():
    judge = Judge(FakeGateway([]), JudgeConfig(max_warnings=2))
    verdict = _verdict(adjustments=VerdictAdjustments(leverage=30.0), warnings=["a", "b", "c"])
    decision = judge.assemble(_analysis(jim=_rec()), verdict)
    assert decision.leverage == 20.0
    assert decision.warnings == ("a", "b")


# ------------------------------------------------------------------- config
@pytest.mark.parametrize(
    "overrides",
    [{"max_retries": 0}, {"min_leverage": 0}, {"min_leverage": 30.0}, {"max_warnings": 0}],
)
def test_invalid_config_rejected(overrides):
    with pytest.raises(ConfigError):
        JudgeConfig(**overrides)


def test_config_from_settings(tmp_path):
    config = JudgeConfig.from_settings({"max_retries": "2", "template_dir": str(tmp_path)}, max_output_tokens=4096)
    assert config.max_retries == 2
    assert config.template_dir == tmp_path
    assert config.max_output_tokens == 4096
