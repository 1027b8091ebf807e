"""
One full analysis cycle: context checks, analysts, optional debate, judge, risk gate, journal.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Optional, Protocol, Set, Union, runtime_checkable

from decision.judge import Judge
from decision.orchestrator import AnalystOrchestrator
from decision.schemas import AnalysisResult, DecisionContext, FinalDecision
from risk.schemas import Direction, TradeCheck

if TYPE_CHECKING:
    # risk.engine imports decision.schemas
    from risk.anti_churn import AntiChurnGate
    from risk.engine import RiskEngine

logger = logging.getLogger(__name__)

TournamentRunner = Callable[[DecisionContext, AnalysisResult], Awaitable[Optional[Mapping[str, Any]]]]
JournalWriter = Callable[[FinalDecision], Any]


@runtime_checkable
class MarketCalendar(Protocol):
    """Market-hours collaborator consulted before each cycle."""

    def is_open(self, now: Optional[datetime] = None) -> bool:
        ...

    def next_transition(self, now: Optional[datetime] = None) -> Optional[datetime]:
        ...


class DecisionPipeline:
    """Runs analysis cycles and owns the collaborators around them."""

    def __init__(
        self,
        orchestrator: AnalystOrchestrator,
        judge: Judge,
        *,
        risk_engine: RiskEngine | None = None,
        anti_churn: AntiChurnGate | None = None,
        calendar: MarketCalendar | None = None,
        tournament: TournamentRunner | None = None,
        journal: JournalWriter | None = None,
        tournament_timeout_seconds: float = 45.0,
    ) -> None:
        self.orchestrator = orchestrator
        self.judge = judge
        self.risk_engine = risk_engine
        self.anti_churn = anti_churn or (risk_engine.anti_churn if risk_engine else None)
        self.calendar = calendar
        self.tournament = tournament
        self.journal = journal
        self.tournament_timeout_seconds = tournament_timeout_seconds
        self._active_cycles = 0
        self._journal_tasks: Set[asyncio.Task] = set()

    @property
    def active_cycles(self) -> int:
        return self._active_cycles

    async def run_cycle(self, context: Union[DecisionContext, Mapping[str, Any]]) -> FinalDecision:
        """Produce one risk-checked decision; failures degrade to HOLD instead of raising."""
        if not isinstance(context, DecisionContext):
            context = DecisionContext.from_dict(context)
        started = time.perf_counter()
        self._active_cycles += 1
        try:
            decision = await self._run(context)
        finally:
            self._active_cycles -= 1
        logger.info(
            "Cycle finished in %.0fms: %s %s (winner=%s)",
            (time.perf_counter() - started) * 1000,
            decision.action,
            decision.symbol or "-",
            decision.winner,
        )
        self._journal(decision)
        return decision

    async def _run(self, context: DecisionContext) -> FinalDecision:
        decision = await self._decide(context)
        if self.risk_engine is None:
            return decision
        decision, evaluation = await self.risk_engine.gate(decision, context.indicators.get(decision.symbol))
        if not evaluation.approved:
            logger.warning("Decision downgraded to HOLD by risk engine")
        return decision

    async def _decide(self, context: DecisionContext) -> FinalDecision:
        if not context.has_valid_balance():
            logger.error("Invalid account balance: %s", context.account_balance)
            return FinalDecision.hold(
                "Account balance invalid or unavailable - trading suspended",
                ["Account balance invalid or unavailable - trading suspended"],
            )
        if not context.market_data:
            logger.error("No market data in context")
            return FinalDecision.hold("Market data unavailable", ["Market data unavailable"])
        if self.calendar is not None and not self.calendar.is_open():
            next_open = self.calendar.next_transition()
            reason = f"Market closed; next open at {next_open.isoformat() if next_open else 'unknown'}"
            logger.info("%s", reason)
            return FinalDecision.hold(reason, [reason])

        analysis = await self.orchestrator.run_analysts(context)
        tournament = await self._run_tournament(context, analysis)
        verdict = await self.judge.arbitrate(context, analysis, tournament)
        return self.judge.assemble(analysis, verdict)

    async def _run_tournament(
        self, context: DecisionContext, analysis: AnalysisResult
    ) -> Optional[Mapping[str, Any]]:
        if self.tournament is None or len(analysis.outputs) < 2:
            return None
        try:
            return await asyncio.wait_for(
                self.tournament(context, analysis), timeout=self.tournament_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning("Debate tournament exceeded %.0fs; skipping", self.tournament_timeout_seconds)
        except Exception:
            logger.exception("Debate tournament failed; skipping")
        return None

    def _journal(self, decision: FinalDecision) -> None:
        if self.journal is None:
            return
        task = asyncio.get_running_loop().create_task(self._write_journal(decision))
        self._journal_tasks.add(task)
        task.add_done_callback(self._journal_tasks.discard)

    async def _write_journal(self, decision: FinalDecision) -> None:
        try:
            outcome = self.journal(decision)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("Failed to journal decision for %s", decision.symbol or "-")

    def check_anti_churn(self, symbol: str, direction: Direction) -> TradeCheck:
        if self.anti_churn is None:
            return TradeCheck(True)
        return self.anti_churn.check(symbol, direction)

    def record_trade(self, symbol: str, direction: Direction) -> bool:
        if self.anti_churn is None:
            return False
        return self.anti_churn.record_trade(symbol, direction)

    def reset(self, force: bool = False) -> bool:
        """Clear gate state and caches; refused while cycles are running unless forced."""
        if self._active_cycles and not force:
            logger.warning("Reset refused: %d cycle(s) in progress", self._active_cycles)
            return False
        if self._active_cycles:
            logger.warning("Forcing reset with %d cycle(s) in progress", self._active_cycles)
        if self.anti_churn is not None:
            self.anti_churn.reset()
        if self.risk_engine is not None and self.risk_engine.circuit_breaker is not None:
            self.risk_engine.circuit_breaker.clear_cache()
        self.orchestrator.gateway.reset()
        return True

    async def drain(self) -> None:
        """Wait for pending journal writes."""
        if self._journal_tasks:
            await asyncio.gather(*list(self._journal_tasks), return_exceptions=True)
