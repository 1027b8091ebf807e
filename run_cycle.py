"""
Run one decision cycle against a context document.

    python run_cycle.py data/context.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import logging.config
from dataclasses import dataclass
from pathlib import Path

import config
from decision.judge import Judge, JudgeConfig
from decision.orchestrator import AnalystOrchestrator, OrchestratorConfig
from decision.pipeline import DecisionPipeline
from data_pipeline.features import fill_indicators, market_symbols
from decision.schemas import DecisionContext
from exchanges.okx.public import OkxPublicClient
from models.bootstrap import build_default_gateway
from models.gateway import GenerationGateway
from risk.anti_churn import AntiChurnConfig, AntiChurnGate
from risk.circuit_breaker import CircuitBreakerConfig, MarketCircuitBreaker
from risk.engine import RiskEngine
from risk.leverage import LeverageCalculator, LeverageConfig
from services.storage import settings_store

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {"format": config.LOGGING_FORMAT, "datefmt": config.LOGGING_DATEFMT},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "default", "stream": "ext://sys.stderr"},
    },
    "root": {"level": config.LOG_LEVEL, "handlers": ["console"]},
    "loggers": {
        "httpx": {"level": "WARNING"},
        "httpcore": {"level": "WARNING"},
    },
}


@dataclass(slots=True)
class Services:
    gateway: GenerationGateway
    circuit_breaker: MarketCircuitBreaker
    anti_churn: AntiChurnGate
    pipeline: DecisionPipeline

    async def aclose(self) -> None:
        await self.pipeline.drain()
        await self.circuit_breaker.aclose()
        await self.gateway.aclose()


def build_services() -> Services:
    """Assemble every collaborator from the values in `config.py`."""
    store_path = Path(config.SETTINGS_STORE_PATH)
    max_tokens = int(config.GENERATION_SETTINGS.get("max_output_tokens", 8192))

    gateway = build_default_gateway()
    circuit_breaker = MarketCircuitBreaker(
        OkxPublicClient(base_url=config.OKX_BASE_URL),
        CircuitBreakerConfig.from_settings(config.CIRCUIT_BREAKER_SETTINGS),
    )
    anti_churn = AntiChurnGate(AntiChurnConfig.from_settings(config.ANTI_CHURN_SETTINGS))
    judge_config = JudgeConfig.from_settings(config.JUDGE_SETTINGS, max_output_tokens=max_tokens)
    risk_engine = RiskEngine(
        circuit_breaker=circuit_breaker,
        anti_churn=anti_churn,
        leverage_calculator=LeverageCalculator(LeverageConfig.from_settings(config.LEVERAGE_SETTINGS)),
        max_warnings=judge_config.max_warnings,
    )
    orchestrator = AnalystOrchestrator(
        gateway, OrchestratorConfig.from_settings(config.ANALYST_SETTINGS, max_output_tokens=max_tokens)
    )
    judge = Judge(
        gateway,
        judge_config,
        weights_provider=lambda: settings_store.load_analyst_weights(store_path),
    )

    def journal(decision) -> None:
        settings_store.append_decision(decision.to_dict(), store_path)

    pipeline = DecisionPipeline(
        orchestrator,
        judge,
        risk_engine=risk_engine,
        anti_churn=anti_churn,
        journal=lambda decision: asyncio.to_thread(journal, decision),
        tournament_timeout_seconds=float(config.JUDGE_SETTINGS.get("tournament_timeout_seconds", 45.0)),
    )
    return Services(gateway=gateway, circuit_breaker=circuit_breaker, anti_churn=anti_churn, pipeline=pipeline)


async def run(context_path: Path) -> dict:
    payload = json.loads(context_path.read_text(encoding="utf-8"))
    context = DecisionContext.from_dict(payload)
    context.metadata.setdefault("tradable_instruments", list(config.TRADABLE_INSTRUMENTS))

    services = build_services()
    services.gateway.start_sweeper()
    try:
        await fill_indicators(context.indicators, services.circuit_breaker.probe, market_symbols(context.market_data))
        decision = await services.pipeline.run_cycle(context)
    finally:
        await services.aclose()
    return decision.to_dict()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one analysis cycle against a context document.")
    parser.add_argument("context", type=Path, help="Path to a JSON context (account, market_data, indicators).")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.config.dictConfig(LOGGING_CONFIG)
    result = asyncio.run(run(args.context))
    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
