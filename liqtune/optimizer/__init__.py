"""liqtune parameter optimizer."""

from .analysis import (
    analyze_rolling_windows,
    detect_cascades,
    rank_symbol_profitability,
    summarize_cascades,
    threshold_sweep,
)
from .candidates import CandidateGenerator, ThresholdCandidates
from .models import (
    CapitalAllocation,
    LiquidationAnalytics,
    OptimizationReport,
    OptimizationSummary,
    SymbolRecommendation,
)
from .progress import CancellationToken, ProgressReporter
from .runner import OptimizationRunner
from .scenarios import ScenarioOutcome, ScenarioStressTester
from .scoring import ScoreBreakdown, ScoringEngine
from .search import SearchDiagnostics, SearchOrchestrator, SymbolOptimization

__all__ = [
    # Search
    "CandidateGenerator",
    "ThresholdCandidates",
    "ScoringEngine",
    "ScoreBreakdown",
    "ScenarioStressTester",
    "ScenarioOutcome",
    "SearchOrchestrator",
    "SearchDiagnostics",
    "SymbolOptimization",
    # Run
    "OptimizationRunner",
    "ProgressReporter",
    "CancellationToken",
    # Analytics
    "analyze_rolling_windows",
    "threshold_sweep",
    "rank_symbol_profitability",
    "detect_cascades",
    "summarize_cascades",
    # Reports
    "SymbolRecommendation",
    "OptimizationReport",
    "OptimizationSummary",
    "CapitalAllocation",
    "LiquidationAnalytics",
]
