"""
Analyst orchestration: fan out one call per persona or ask for all of them at once.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence

from decision.output_schemas import ANALYST_OUTPUT_SCHEMA, combined_output_schema
from decision.prompts import build_analyst_prompt, build_combined_prompt
from decision.schemas import ANALYST_IDS, AnalysisResult, AnalystOutput, DecisionContext
from decision.validation import parse_analyst_output
from models.errors import ConfigError, GenerationError, ParseError, ValidationError
from models.gateway import GenerationGateway
from models.schemas import GenerationRequest

logger = logging.getLogger(__name__)

STRATEGIES = ("parallel", "combined")


@dataclass(slots=True)
class OrchestratorConfig:
    strategy: str = "combined"
    max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    analysis_timeout_seconds: float = 90.0
    individual_retry_timeout_seconds: float = 60.0
    temperature: Optional[float] = 0.8
    max_output_tokens: Optional[int] = None
    template_dir: Optional[Path] = None

    def __post_init__(self) -> None:
        if self.strategy not in STRATEGIES:
            raise ConfigError(f"Unknown analyst strategy: {self.strategy}")
        if not isinstance(self.max_retries, int) or self.max_retries < 1:
            raise ConfigError(f"max_retries must be a positive integer, got {self.max_retries}")
        for name in ("retry_base_delay_seconds", "analysis_timeout_seconds", "individual_retry_timeout_seconds"):
            value = getattr(self, name)
            if not math.isfinite(value) or value < 0:
                raise ConfigError(f"Invalid {name}: {value}")

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any], *, max_output_tokens: Optional[int] = None) -> "OrchestratorConfig":
        template_dir = settings.get("template_dir")
        return cls(
            strategy=settings.get("strategy", "combined"),
            max_retries=int(settings.get("max_retries", 3)),
            retry_base_delay_seconds=float(settings.get("retry_base_delay_seconds", 1.0)),
            analysis_timeout_seconds=float(settings.get("analysis_timeout_seconds", 90.0)),
            individual_retry_timeout_seconds=float(settings.get("individual_retry_timeout_seconds", 60.0)),
            temperature=settings.get("temperature"),
            max_output_tokens=max_output_tokens,
            template_dir=Path(template_dir) if template_dir else None,
        )


def retry_delay(base: float, attempt: int, exc: BaseException | None = None) -> float:
    """Linear backoff; a rate-limit `retry_after` raises the floor."""
    delay = base * attempt
    if isinstance(exc, GenerationError) and exc.is_rate_limit and exc.retry_after:
        delay = max(delay, exc.retry_after)
    return delay


def load_json(text: str, *, provider: Optional[str] = None) -> Any:
    try:
        return json.loads(text)
    except (TypeError, json.JSONDecodeError) as exc:
        raise ParseError(f"Response is not valid JSON: {exc}", provider=provider) from exc


class AnalystOrchestrator:
    """
    Runs the analyst personas against a shared `DecisionContext`.

    Failures never escape `run_analysts`: each one is recorded on the
    returned `AnalysisResult` so the judge can still work with whatever
    analysts succeeded.
    """

    def __init__(
        self,
        gateway: GenerationGateway,
        config: OrchestratorConfig | None = None,
        *,
        analyst_ids: Sequence[str] = ANALYST_IDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.gateway = gateway
        self.config = config or OrchestratorConfig()
        self.analyst_ids = tuple(analyst_ids)
        self._sleep = sleep

    async def run_analysts(self, context: DecisionContext) -> AnalysisResult:
        started = time.perf_counter()
        if self.config.strategy == "combined":
            result = await self.run_combined(context)
        else:
            result = await self.run_parallel(context)
        logger.info(
            "Analysis finished in %.0fms (%s): %d ok, %d failed",
            (time.perf_counter() - started) * 1000,
            result.strategy,
            len(result.outputs),
            len(result.errors),
        )
        return result

    async def run_parallel(
        self,
        context: DecisionContext,
        analyst_ids: Sequence[str] | None = None,
        *,
        timeout: float | None = None,
        result: AnalysisResult | None = None,
    ) -> AnalysisResult:
        """Run one call per analyst; one failure never cancels the others."""
        ids = tuple(analyst_ids or self.analyst_ids)
        result = result or AnalysisResult(strategy="parallel")
        limit = timeout if timeout is not None else self.config.analysis_timeout_seconds
        outcomes = await asyncio.gather(
            *(asyncio.wait_for(self.run_single_analyst(analyst_id, context), timeout=limit) for analyst_id in ids),
            return_exceptions=True,
        )
        for analyst_id, outcome in zip(ids, outcomes):
            if isinstance(outcome, AnalystOutput):
                result.outputs[analyst_id] = outcome
            elif isinstance(outcome, asyncio.TimeoutError):
                logger.error("%s timed out after %.0fs", analyst_id, limit)
                result.record_error(analyst_id, f"Timed out after {limit:.0f}s", "timeout")
            elif isinstance(outcome, asyncio.CancelledError):
                # only this analyst was cancelled; a cancelled cycle raises out of gather instead
                logger.error("%s was cancelled", analyst_id)
                result.record_error(analyst_id, "Cancelled", "cancelled")
            elif isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                kind = outcome.kind.value if isinstance(outcome, GenerationError) else None
                result.record_error(analyst_id, str(outcome) or outcome.__class__.__name__, kind)
        return result

    async def run_combined(self, context: DecisionContext) -> AnalysisResult:
        """
        Ask for every analyst in one call, then retry only the analysts whose
        section was missing or invalid.
        """
        result = AnalysisResult(strategy="combined")
        invalid: Dict[str, str] = {}
        request = GenerationRequest(
            prompt=build_combined_prompt(context, self.analyst_ids, self.config.template_dir),
            schema=combined_output_schema(self.analyst_ids),
            temperature=self.config.temperature,
            max_output_tokens=self.config.max_output_tokens,
            label="Analysts-combined",
        )
        try:
            generated = await asyncio.wait_for(
                self.gateway.generate(request), timeout=self.config.analysis_timeout_seconds
            )
            payload = load_json(generated.text, provider=generated.provider)
        except (GenerationError, asyncio.TimeoutError) as exc:
            logger.warning("Combined analysis call failed, retrying analysts individually: %s", str(exc) or "timeout")
            payload = {}

        if not isinstance(payload, Mapping):
            logger.warning("Combined analysis returned %s instead of an object", type(payload).__name__)
            payload = {}
        for analyst_id in self.analyst_ids:
            section = payload.get(analyst_id)
            if section is None:
                invalid[analyst_id] = "missing from combined output"
                continue
            try:
                result.outputs[analyst_id] = parse_analyst_output(analyst_id, section)
            except ValidationError as exc:
                invalid[analyst_id] = str(exc)

        if invalid:
            logger.warning("Combined analysis incomplete for %s; retrying individually", ", ".join(invalid))
            await self.run_parallel(
                context,
                list(invalid),
                timeout=self.config.individual_retry_timeout_seconds,
                result=result,
            )
        return result

    async def run_single_analyst(self, analyst_id: str, context: DecisionContext) -> AnalystOutput:
        """
        Call one analyst with linear backoff between attempts.

        Retries cover provider failures, unparseable responses and outputs
        that fail validation. The last failure is raised once the attempts
        are exhausted.
        """
        prompt = build_analyst_prompt(analyst_id, context, self.config.template_dir)
        max_retries = self.config.max_retries
        last_error: Exception = ValidationError(f"{analyst_id} produced no output")
        for attempt in range(1, max_retries + 1):
            request = GenerationRequest(
                prompt=prompt,
                schema=ANALYST_OUTPUT_SCHEMA,
                temperature=self.config.temperature,
                max_output_tokens=self.config.max_output_tokens,
                bypass_cache=attempt > 1,
                label=f"Analyst-{analyst_id}",
            )
            text = ""
            try:
                generated = await self.gateway.generate(request)
                text = generated.text
                output = parse_analyst_output(analyst_id, load_json(text, provider=generated.provider))
                logger.debug("%s completed via %s", analyst_id, generated.provider)
                return output
            except ValidationError as exc:
                last_error = exc
                logger.warning("%s output validation failed on attempt %d: %s", analyst_id, attempt, exc)
                logger.warning("%s raw response (first 500 chars): %s", analyst_id, text[:500])
            except GenerationError as exc:
                last_error = exc
                logger.error("%s attempt %d failed: %s", analyst_id, attempt, exc)
            if attempt < max_retries:
                await self._sleep(retry_delay(self.config.retry_base_delay_seconds, attempt, last_error))
        raise last_error
