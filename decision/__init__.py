"""
Decision package: analyst orchestration, judge arbitration and the analysis cycle.
"""

from .schemas import (  # noqa: F401
    AnalysisResult,
    AnalystOutput,
    AnalystRecommendation,
    DecisionContext,
    FinalDecision,
    Verdict,
    VerdictAdjustments,
)
from .orchestrator import AnalystOrchestrator, OrchestratorConfig  # noqa: F401
from .judge import Judge, JudgeConfig  # noqa: F401
from .pipeline import DecisionPipeline  # noqa: F401
