"""
Judge / arbiter: picks a winning analyst and assembles the final decision.

`arbitrate` never raises; after the retry budget is spent it falls back to a
HOLD verdict. `assemble` enforces the action-specific invariants on the
merged recommendation so no malformed trade leaves this module.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Mapping, Optional

from decision.orchestrator import load_json, retry_delay
from decision.output_schemas import JUDGE_OUTPUT_SCHEMA
from decision.prompts import build_judge_prompt
from decision.schemas import (
    EXIT_ACTIONS,
    MAX_WARNINGS,
    NO_WINNER,
    AnalysisResult,
    AnalystRecommendation,
    DecisionContext,
    FinalDecision,
    Verdict,
)
from decision.validation import parse_verdict
from models.errors import ConfigError, GenerationError, ValidationError
from models.gateway import GenerationGateway
from models.schemas import GenerationRequest

logger = logging.getLogger(__name__)

WeightsProvider = Callable[[], Mapping[str, float]]


@dataclass(slots=True)
class JudgeConfig:
    temperature: Optional[float] = 0.3
    max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    min_leverage: float = 1.0
    absolute_max_leverage: float = 20.0
    high_leverage_threshold: float = 15.0
    stop_margin_ratio: float = 0.8
    max_warnings: int = MAX_WARNINGS
    max_output_tokens: Optional[int] = None
    template_dir: Optional[Path] = None

    def __post_init__(self) -> None:
        if not isinstance(self.max_retries, int) or self.max_retries < 1:
            raise ConfigError(f"max_retries must be a positive integer, got {self.max_retries}")
        for name in ("min_leverage", "absolute_max_leverage", "high_leverage_threshold", "stop_margin_ratio"):
            value = getattr(self, name)
            if not math.isfinite(value) or value <= 0:
                raise ConfigError(f"Invalid {name}: {value}")
        if self.min_leverage > self.absolute_max_leverage:
            raise ConfigError(
                f"min_leverage ({self.min_leverage}) exceeds absolute_max_leverage ({self.absolute_max_leverage})"
            )
        if not isinstance(self.max_warnings, int) or self.max_warnings < 1:
            raise ConfigError(f"max_warnings must be a positive integer, got {self.max_warnings}")

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any], *, max_output_tokens: Optional[int] = None) -> "JudgeConfig":
        template_dir = settings.get("template_dir")
        return cls(
            temperature=settings.get("temperature", 0.3),
            max_retries=int(settings.get("max_retries", 3)),
            retry_base_delay_seconds=float(settings.get("retry_base_delay_seconds", 1.0)),
            absolute_max_leverage=float(settings.get("absolute_max_leverage", 20.0)),
            high_leverage_threshold=float(settings.get("high_leverage_threshold", 15.0)),
            stop_margin_ratio=float(settings.get("stop_margin_ratio", 0.8)),
            max_warnings=int(settings.get("max_warnings", MAX_WARNINGS)),
            max_output_tokens=max_output_tokens,
            template_dir=Path(template_dir) if template_dir else None,
        )


def default_verdict() -> Verdict:
    return Verdict(
        winner=NO_WINNER,
        reasoning="Judge failed to produce valid output",
        final_action="HOLD",
        adjustments=None,
        warnings=["Judge analysis failed"],
        final_recommendation=None,
    )


class _Warnings:
    """Ordered warning list that silently drops entries once full."""

    def __init__(self, limit: int, initial: List[str] | None = None) -> None:
        self.limit = limit
        self.items: List[str] = list(initial or [])[:limit]

    def add(self, message: str) -> None:
        if len(self.items) < self.limit:
            self.items.append(message)


class Judge:
    def __init__(
        self,
        gateway: GenerationGateway,
        config: JudgeConfig | None = None,
        *,
        weights_provider: WeightsProvider | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.gateway = gateway
        self.config = config or JudgeConfig()
        self._weights_provider = weights_provider
        self._sleep = sleep

    def _weights(self) -> Mapping[str, float]:
        if self._weights_provider is None:
            return {}
        try:
            return self._weights_provider()
        except Exception:
            logger.exception("Unable to load analyst weights; using defaults")
            return {}

    async def arbitrate(
        self,
        context: DecisionContext,
        analysis: AnalysisResult,
        tournament: Optional[Mapping[str, Any]] = None,
    ) -> Verdict:
        """Ask the judge model for a verdict; the default HOLD verdict replaces terminal failures."""
        started = time.perf_counter()
        prompt = build_judge_prompt(
            context,
            analysis.outputs,
            tournament=tournament,
            weights=self._weights(),
            template_dir=self.config.template_dir,
        )
        max_retries = self.config.max_retries
        verdict: Verdict | None = None
        for attempt in range(1, max_retries + 1):
            request = GenerationRequest(
                prompt=prompt,
                schema=JUDGE_OUTPUT_SCHEMA,
                temperature=self.config.temperature,
                max_output_tokens=self.config.max_output_tokens,
                bypass_cache=attempt > 1,
                label="Judge",
            )
            error: Exception | None = None
            try:
                generated = await self.gateway.generate(request)
                verdict = parse_verdict(load_json(generated.text, provider=generated.provider))
                break
            except ValidationError as exc:
                error = exc
                logger.warning("Judge output validation failed on attempt %d: %s", attempt, exc)
            except GenerationError as exc:
                error = exc
                logger.error("Judge attempt %d failed: %s", attempt, exc)
            except Exception as exc:
                error = exc
                logger.exception("Judge attempt %d raised unexpectedly", attempt)
            if attempt < max_retries:
                await self._sleep(retry_delay(self.config.retry_base_delay_seconds, attempt, error))

        if verdict is None:
            logger.error("Judge exhausted %d attempts; defaulting to HOLD", max_retries)
            verdict = default_verdict()
        verdict = self.normalize_verdict(verdict)
        logger.info(
            "Judge decision in %.0fms: winner=%s, action=%s",
            (time.perf_counter() - started) * 1000,
            verdict.winner,
            verdict.final_action,
        )
        return verdict

    @staticmethod
    def normalize_verdict(verdict: Verdict) -> Verdict:
        """
        Drop adjustments that cannot apply to the final action.

        Exit actions keep their recommendation but never carry leverage;
        HOLD carries no adjustments at all.
        """
        if verdict.final_action in EXIT_ACTIONS:
            recommendation = verdict.final_recommendation
            if recommendation is not None and recommendation.leverage != 0:
                recommendation = replace(recommendation, leverage=0.0)
            return replace(verdict, adjustments=None, final_recommendation=recommendation)
        if verdict.final_action == "HOLD":
            return replace(verdict, adjustments=None)
        return verdict

    def assemble(self, analysis: AnalysisResult, verdict: Verdict) -> FinalDecision:
        """Merge the winner's recommendation with the verdict into one decision."""
        warnings = _Warnings(self.config.max_warnings, verdict.warnings)

        if verdict.winner == NO_WINNER:
            recommendation = verdict.final_recommendation
            if verdict.final_action in EXIT_ACTIONS and recommendation is not None:
                return self._exit_decision(verdict, recommendation, recommendation.leverage, warnings, analysis)
            return FinalDecision.hold(
                verdict.reasoning, warnings.items, analysis=analysis, verdict=verdict
            )

        winner_output = analysis.get(verdict.winner)
        if winner_output is None:
            logger.error("Winner %s has no output", verdict.winner)
            return FinalDecision.hold(
                "Winner output not found", ["Winner output missing"], analysis=analysis, verdict=verdict
            )

        rec = winner_output.recommendation
        overrides = verdict.adjustments.overrides() if verdict.adjustments is not None else {}
        merged = replace(rec, **overrides)
        symbol = merged.symbol or (verdict.final_recommendation.symbol if verdict.final_recommendation else None) or ""

        if verdict.final_action == "HOLD":
            return FinalDecision.hold(
                rec.rationale or verdict.reasoning,
                warnings.items,
                symbol=symbol,
                winner=verdict.winner,
                analysis=analysis,
                verdict=verdict,
            )
        if verdict.final_action in EXIT_ACTIONS:
            return self._exit_decision(verdict, replace(merged, symbol=symbol), merged.leverage, warnings, analysis)
        return self._entry_decision(verdict, replace(merged, symbol=symbol), warnings, analysis)

    def _exit_decision(
        self,
        verdict: Verdict,
        rec: AnalystRecommendation,
        leverage: float,
        warnings: _Warnings,
        analysis: AnalysisResult,
    ) -> FinalDecision:
        if leverage:
            warnings.add(f"Discarded leverage {leverage:g}x for {verdict.final_action} action")
        allocation = rec.allocation_usd
        if not math.isfinite(allocation) or allocation < 0:
            warnings.add(f"Invalid allocation {allocation} for {verdict.final_action} action; using 0")
            allocation = 0.0
        return FinalDecision(
            action=verdict.final_action,
            symbol=rec.symbol or "",
            allocation_usd=allocation,
            leverage=0.0,
            tp_price=None,
            sl_price=None,
            exit_plan=rec.exit_plan,
            confidence=rec.confidence,
            rationale=rec.rationale,
            winner=verdict.winner,
            warnings=tuple(warnings.items),
            analysis=analysis,
            verdict=verdict,
        )

    def _entry_decision(
        self,
        verdict: Verdict,
        rec: AnalystRecommendation,
        warnings: _Warnings,
        analysis: AnalysisResult,
    ) -> FinalDecision:
        cfg = self.config
        leverage = rec.leverage
        if not math.isfinite(leverage) or leverage <= 0:
            logger.error("Invalid leverage from judge/analyst: %s; returning HOLD", leverage)
            return FinalDecision.hold(
                f"Invalid leverage value: {leverage}",
                [f"AI returned invalid leverage: {leverage}"],
                symbol=rec.symbol or "",
                analysis=analysis,
                verdict=verdict,
            )
        allocation = rec.allocation_usd
        if not math.isfinite(allocation) or allocation <= 0:
            logger.error("Invalid allocation for %s: %s; returning HOLD", verdict.final_action, allocation)
            return FinalDecision.hold(
                f"Invalid allocation value: {allocation}",
                [f"AI returned invalid allocation: {allocation}"],
                symbol=rec.symbol or "",
                analysis=analysis,
                verdict=verdict,
            )

        clamped = min(max(leverage, cfg.min_leverage), cfg.absolute_max_leverage)
        if clamped != leverage:
            logger.warning(
                "Leverage %sx outside [%s, %s]; clamping to %sx",
                leverage,
                cfg.min_leverage,
                cfg.absolute_max_leverage,
                clamped,
            )
            warnings.add(f"Leverage {leverage:g}x clamped to {clamped:g}x")
            leverage = clamped

        if leverage >= cfg.high_leverage_threshold:
            liquidation_distance = 100 / leverage
            max_safe_stop = liquidation_distance * cfg.stop_margin_ratio
            warnings.add(
                f"High leverage ({leverage:g}x) - ensure stop loss is within "
                f"{max_safe_stop:.1f}% of entry to avoid liquidation"
            )

        return FinalDecision(
            action=verdict.final_action,
            symbol=rec.symbol or "",
            allocation_usd=allocation,
            leverage=leverage,
            tp_price=rec.tp_price,
            sl_price=rec.sl_price,
            exit_plan=rec.exit_plan,
            confidence=rec.confidence,
            rationale=rec.rationale,
            winner=verdict.winner,
            warnings=tuple(warnings.items),
            analysis=analysis,
            verdict=verdict,
        )
