"""
liqtune Report Models

Pydantic models for everything the optimizer hands back to a caller: one
SymbolRecommendation per symbol plus the run-level summary, capital check and
liquidation flow analytics.

JSON goes through the standard library encoder so unbounded ratios (a profit
factor with no losing trades) survive as `Infinity` and load back unchanged.
"""

import json
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from liqtune.backtest.trade_simulator import BacktestResult
from liqtune.config.optimizer_config import SymbolConfig
from liqtune.core.enums import LiquidationSide, OptimizerMode
from liqtune.core.models import ParameterSet, SymbolDataset
from liqtune.optimizer.analysis import (
    detect_cascades,
    rank_symbol_profitability,
    summarize_cascades,
    threshold_sweep,
)
from liqtune.optimizer.search import Candidate, SymbolOptimization


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class PerformanceLeg(BaseModel):
    """Backtest summary for one side."""

    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    total_pnl: float = 0.0
    daily_pnl: float = 0.0
    win_rate: float = Field(default=0.0, description="Percent")
    avg_win: float = 0.0
    avg_loss: float = 0.0
    avg_duration_min: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    max_drawdown_percent: float = 0.0
    profit_factor: float = 0.0
    payoff_ratio: float = 0.0
    cvar: float = 0.0
    exit_reasons: Dict[str, int] = Field(default_factory=dict)
    t_statistic: float = 0.0
    p_value: float = 1.0

    @classmethod
    def from_result(cls, result: BacktestResult, daily_factor: float = 1.0) -> "PerformanceLeg":
        return cls(
            total_trades=result.total_trades,
            wins=result.wins,
            losses=result.losses,
            total_pnl=result.total_pnl,
            daily_pnl=result.total_pnl * daily_factor,
            win_rate=result.win_rate,
            avg_win=result.avg_win,
            avg_loss=result.avg_loss,
            avg_duration_min=result.avg_duration,
            sharpe_ratio=result.sharpe_ratio,
            max_drawdown=result.max_drawdown,
            max_drawdown_percent=result.max_drawdown_percent,
            profit_factor=result.profit_factor,
            payoff_ratio=result.payoff_ratio,
            cvar=result.cvar,
            exit_reasons=dict(result.exit_reasons),
            t_statistic=result.t_statistic,
            p_value=result.p_value,
        )


class ParameterSnapshot(BaseModel):
    """Parameters one side was simulated with."""

    threshold: float
    max_positions: int
    trade_size: float
    leverage: float
    tp_percent: float
    sl_percent: float
    window_ms: int
    cooldown_ms: int

    @classmethod
    def from_params(cls, params: ParameterSet) -> "ParameterSnapshot":
        return cls(
            threshold=params.threshold,
            max_positions=params.max_positions,
            trade_size=params.trade_size,
            leverage=params.leverage,
            tp_percent=params.tp_percent,
            sl_percent=params.sl_percent,
            window_ms=params.window_ms,
            cooldown_ms=params.cooldown_ms,
        )


class SideReport(BaseModel):
    params: ParameterSnapshot
    performance: PerformanceLeg


class StrategySnapshot(BaseModel):
    """A (long, short) configuration with its simulated performance and score."""

    leverage: float
    margin: float
    tp_percent: float
    sl_percent: float
    score: float
    long: SideReport
    short: SideReport

    @classmethod
    def from_candidate(cls, candidate: Candidate, daily_factor: float = 1.0) -> "StrategySnapshot":
        return cls(
            leverage=candidate.leverage,
            margin=candidate.margin,
            tp_percent=candidate.tp_percent,
            sl_percent=candidate.sl_percent,
            score=candidate.final_score,
            long=SideReport(
                params=ParameterSnapshot.from_params(candidate.long.params),
                performance=PerformanceLeg.from_result(candidate.long.result, daily_factor),
            ),
            short=SideReport(
                params=ParameterSnapshot.from_params(candidate.short.params),
                performance=PerformanceLeg.from_result(candidate.short.result, daily_factor),
            ),
        )

    @property
    def total_pnl(self) -> float:
        return self.long.performance.total_pnl + self.short.performance.total_pnl


class TierWarningReport(BaseModel):
    has_warning: bool = True
    max_long_positions: int
    wanted_long_positions: int
    max_short_positions: int
    wanted_short_positions: int
    message: str


class ScenarioSummary(BaseModel):
    name: str
    total_pnl: float
    max_drawdown: float
    sharpe_ratio: float


class SymbolRecommendation(BaseModel):
    """
    Current vs optimized configuration for one symbol.

    A degraded recommendation (data missing, search failed) carries no
    `optimized` block and zero improvement, so applying it changes nothing.
    """

    symbol: str
    current: Optional[StrategySnapshot] = None
    optimized: Optional[StrategySnapshot] = None
    optimized_config: Optional[SymbolConfig] = None

    span_days: float = 0.0
    capital_budget: float = 0.0
    current_daily_pnl: float = 0.0
    optimized_daily_pnl: float = 0.0
    long_improvement: float = 0.0
    short_improvement: float = 0.0
    daily_improvement: float = 0.0

    scenarios: List[ScenarioSummary] = Field(default_factory=list)
    scenario_penalty: float = 0.0
    tier_warning: Optional[TierWarningReport] = None
    diagnostics: Optional[dict] = None

    warnings: List[str] = Field(default_factory=list)
    degraded: bool = False
    error: Optional[str] = None

    @classmethod
    def from_optimization(cls, opt: SymbolOptimization, include_diagnostics: bool = False) -> "SymbolRecommendation":
        factor = opt.daily_factor
        tier_warning = None
        if opt.tier_warning is not None:
            w = opt.tier_warning
            tier_warning = TierWarningReport(
                max_long_positions=w.max_long_positions,
                wanted_long_positions=w.wanted_long_positions,
                max_short_positions=w.max_short_positions,
                wanted_short_positions=w.wanted_short_positions,
                message=w.message,
            )
        diagnostics = None
        if include_diagnostics:
            diagnostics = opt.diagnostics.to_dict()
            diagnostics["stage"] = opt.stage.value
        return cls(
            symbol=opt.symbol,
            current=StrategySnapshot.from_candidate(opt.baseline, factor),
            optimized=StrategySnapshot.from_candidate(opt.best, factor),
            optimized_config=opt.optimized_config(),
            span_days=opt.span_days,
            capital_budget=opt.capital_budget,
            current_daily_pnl=opt.current_daily_pnl,
            optimized_daily_pnl=opt.optimized_daily_pnl,
            long_improvement=opt.long_improvement,
            short_improvement=opt.short_improvement,
            daily_improvement=opt.daily_improvement,
            scenarios=[ScenarioSummary(**r.to_dict()) for r in opt.scenarios.results],
            scenario_penalty=opt.scenarios.penalty,
            tier_warning=tier_warning,
            diagnostics=diagnostics,
            degraded=opt.degraded,
            error="; ".join(opt.diagnostics.errors) or None,
        )

    @classmethod
    def zero_effect(cls, symbol: str, config: Optional[SymbolConfig], error: str) -> "SymbolRecommendation":
        """Placeholder for a symbol that could not be optimized."""
        return cls(symbol=symbol, optimized_config=config, degraded=True, error=error)

    @property
    def margin(self) -> float:
        if self.optimized is not None:
            return self.optimized.margin
        if self.optimized_config is not None and self.optimized_config.max_position_margin:
            return self.optimized_config.max_position_margin
        return 0.0

    def to_json(self, indent: Optional[int] = None) -> str:
        return json.dumps(self.model_dump(), indent=indent)

    @classmethod
    def from_json(cls, raw: str) -> "SymbolRecommendation":
        return cls.model_validate(json.loads(raw))


class SweepLevel(BaseModel):
    threshold: float
    daily_triggers: float
    daily_profit: float
    is_current: bool = False


class SymbolRanking(BaseModel):
    symbol: str
    total_triggers: int
    daily_triggers: float
    daily_profit: float
    profit_per_trade: float
    capture_rate: float = Field(description="Percent of prints at or above the configured threshold")


class CascadeStats(BaseModel):
    cascade_minutes: int
    avg_volume_per_minute: float
    max_liquidations_per_minute: int


class LiquidationAnalytics(BaseModel):
    """Simulator-free view of the liquidation flow behind the recommendations.

    `threshold_sweeps` is keyed by symbol, then by the position side the
    liquidations open ("long" for SELL prints, "short" for BUY prints).
    """

    threshold_sweeps: Dict[str, Dict[str, List[SweepLevel]]] = Field(default_factory=dict)
    profitability: List[SymbolRanking] = Field(default_factory=list)
    cascades: Dict[str, CascadeStats] = Field(default_factory=dict)

    @classmethod
    def from_datasets(
        cls, datasets: Mapping[str, SymbolDataset], configs: Mapping[str, SymbolConfig]
    ) -> "LiquidationAnalytics":
        sweeps: Dict[str, Dict[str, List[SweepLevel]]] = {}
        for symbol, dataset in datasets.items():
            config = configs.get(symbol)
            if config is None:
                continue
            sweeps[symbol] = {
                ("long" if side.opens_long else "short"): [
                    SweepLevel(**asdict(row)) for row in threshold_sweep(dataset, side, config)
                ]
                for side in LiquidationSide
            }

        ranking = [
            SymbolRanking(
                symbol=p.symbol,
                total_triggers=p.total_triggers,
                daily_triggers=p.daily_triggers,
                daily_profit=p.daily_profit,
                profit_per_trade=p.profit_per_trade,
                capture_rate=p.capture_rate,
            )
            for p in rank_symbol_profitability(datasets, configs)
        ]

        summaries = summarize_cascades(detect_cascades(datasets.values()), datasets.keys())
        cascades = {
            symbol: CascadeStats(
                cascade_minutes=s.cascade_minutes,
                avg_volume_per_minute=s.avg_volume_per_minute,
                max_liquidations_per_minute=s.max_liquidations_per_minute,
            )
            for symbol, s in summaries.items()
        }
        return cls(threshold_sweeps=sweeps, profitability=ranking, cascades=cascades)


class CapitalAllocation(BaseModel):
    """Whether the optimized margins fit the wallet at the target utilization."""

    wallet_balance: float
    target_utilization: float
    current_allocation: float
    max_safe_allocation: float
    is_overallocated: bool
    ranked_symbols: List[str] = Field(default_factory=list)
    suggested_margin_per_symbol: Optional[float] = None


class OptimizationSummary(BaseModel):
    symbols_optimized: int = 0
    symbols_degraded: int = 0
    current_daily_pnl: float = 0.0
    optimized_daily_pnl: float = 0.0
    daily_improvement: float = 0.0
    monthly_improvement: float = 0.0
    improvement_percent: Optional[float] = None
    recommended_max_open_positions: int = 1


class OptimizationReport(BaseModel):
    """Aggregate output of one optimization run."""

    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    mode: OptimizerMode = OptimizerMode.QUICK
    deployable_capital: float = 0.0
    recommendations: List[SymbolRecommendation] = Field(default_factory=list)
    summary: OptimizationSummary = Field(default_factory=OptimizationSummary)
    allocation: Optional[CapitalAllocation] = None
    analytics: Optional[LiquidationAnalytics] = None
    cancelled: bool = False

    model_config = ConfigDict(use_enum_values=True)

    def recommendation_for(self, symbol: str) -> Optional[SymbolRecommendation]:
        for rec in self.recommendations:
            if rec.symbol == symbol:
                return rec
        return None

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.model_dump(), indent=indent, default=_json_default)

    @classmethod
    def from_json(cls, raw: str) -> "OptimizationReport":
        return cls.model_validate(json.loads(raw))

    def write(self, path: Union[str, Path]) -> Path:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.to_json(), encoding="utf-8")
        return target
