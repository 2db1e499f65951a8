"""
Scores a (long, short) pair of backtest results for one parameter combination.

score = w_pnl * pnl + w_sharpe * sharpe + w_dd * pnl / (drawdown + 1)
        - volatility penalty - CVaR penalty [- scenario penalty]

Feasibility filters run before a combination may compete; failures are
returned as a RejectionReason, never raised.
"""

import logging
import math
from dataclasses import dataclass, replace
from typing import Optional

from liqtune.backtest.statistics import RangeStats
from liqtune.backtest.trade_simulator import BacktestResult
from liqtune.config.optimizer_config import RunConfig
from liqtune.core.enums import RejectionReason

logger = logging.getLogger(__name__)

SHARPE_CAP = 5.0
MIN_PROFIT_FACTOR = 1.05
MAX_STOP_RATE = 0.65
MIN_RISK_REWARD = 0.33
WIN_RATE_SAFETY_MARGIN = 0.05

# Volatility penalty kicks in above this hourly range (%) ...
RANGE_BASELINE_PCT = 4.0
# ... and when drawdown exceeds this fraction of allocated margin
DRAWDOWN_TO_MARGIN_TOLERANCE = 0.75


def _capped_sharpe(value: float) -> float:
    if value is None or not math.isfinite(value):
        return 0.0
    return min(max(value, -SHARPE_CAP), SHARPE_CAP)


def liquidation_distance(leverage: float) -> float:
    """Largest safe stop distance (%) at this leverage, with a 10% buffer."""
    if leverage <= 0:
        return 0.0
    return (100.0 / leverage) * 0.9


def volatility_penalty(range95: float, combined_drawdown: float, margin: float, combined_pnl: float) -> float:
    """Penalty for deep drawdowns relative to margin on symbols with wide hourly ranges."""
    values = (range95, combined_drawdown, margin, combined_pnl)
    if not all(v is not None and math.isfinite(v) for v in values):
        return 0.0
    if margin <= 0 or combined_drawdown <= 0:
        return 0.0

    excess = max(0.0, range95 - RANGE_BASELINE_PCT)
    factor = max(0.0, combined_drawdown / margin - DRAWDOWN_TO_MARGIN_TOLERANCE)
    if excess <= 0 or factor <= 0:
        return 0.0
    return excess * factor * (max(combined_pnl, margin) * 0.1)


@dataclass(frozen=True)
class CombinedMetrics:
    """Long and short results folded into portfolio-level figures."""

    combined_pnl: float
    combined_sharpe: float
    combined_drawdown: float
    drawdown_score: float
    profit_factor: float
    win_rate: float  # fraction
    stop_rate: float  # fraction of exits that were stops
    cvar: float  # magnitude
    payoff_ratio: float
    total_trades: int


@dataclass(frozen=True)
class ScoreBreakdown:
    """Score and the penalties that were subtracted from it."""

    base_score: float
    volatility_penalty: float
    cvar_penalty: float
    metrics: CombinedMetrics
    scenario_penalty: float = 0.0

    @property
    def final_score(self) -> float:
        return self.base_score - self.volatility_penalty - self.cvar_penalty - self.scenario_penalty

    @property
    def is_finite(self) -> bool:
        return math.isfinite(self.final_score)

    def with_scenario_penalty(self, penalty: float) -> "ScoreBreakdown":
        return replace(self, scenario_penalty=penalty)


class ScoringEngine:
    """Weighted scoring plus feasibility filters for one symbol."""

    def __init__(self, run_config: Optional[RunConfig] = None, range_stats: Optional[RangeStats] = None):
        self.run_config = run_config or RunConfig()
        self.range_stats = range_stats or RangeStats()
        self.weights = self.run_config.weights.normalized()

    @staticmethod
    def combine(long: BacktestResult, short: BacktestResult) -> CombinedMetrics:
        combined_pnl = long.total_pnl + short.total_pnl
        combined_sharpe = (_capped_sharpe(long.sharpe_ratio) + _capped_sharpe(short.sharpe_ratio)) / 2
        # A side with no drawdown counts as 1 so the ratio below stays bounded
        combined_drawdown = max(long.max_drawdown or 1.0, short.max_drawdown or 1.0)
        total_trades = long.total_trades + short.total_trades
        stops = long.stop_exits + short.stop_exits
        return CombinedMetrics(
            combined_pnl=combined_pnl,
            combined_sharpe=combined_sharpe,
            combined_drawdown=combined_drawdown,
            drawdown_score=combined_pnl / (combined_drawdown + 1),
            profit_factor=(long.profit_factor + short.profit_factor) / 2,
            win_rate=(long.win_rate + short.win_rate) / 2 / 100,
            stop_rate=stops / total_trades if total_trades > 0 else 0.0,
            cvar=abs((long.cvar + short.cvar) / 2),
            payoff_ratio=(long.payoff_ratio + short.payoff_ratio) / 2,
            total_trades=total_trades,
        )

    # ------------------------------------------------------------------
    # Feasibility
    # ------------------------------------------------------------------

    @staticmethod
    def check_parameters(tp_percent: float, sl_percent: float, leverage: float) -> Optional[RejectionReason]:
        """Filters that depend only on the parameters."""
        if sl_percent >= liquidation_distance(leverage):
            return RejectionReason.LIQUIDATION_SAFETY
        if sl_percent <= 0 or tp_percent / sl_percent < MIN_RISK_REWARD:
            return RejectionReason.RISK_REWARD
        return None

    @staticmethod
    def check_results(tp_percent: float, sl_percent: float, metrics: CombinedMetrics) -> Optional[RejectionReason]:
        """Filters that need the simulated outcome."""
        if metrics.profit_factor < MIN_PROFIT_FACTOR:
            return RejectionReason.PROFIT_FACTOR
        if metrics.stop_rate > MAX_STOP_RATE:
            return RejectionReason.STOP_RATE
        required_win_rate = sl_percent / (tp_percent + sl_percent)
        if metrics.win_rate < required_win_rate + WIN_RATE_SAFETY_MARGIN:
            return RejectionReason.WIN_RATE
        return None

    def check_feasibility(
        self,
        tp_percent: float,
        sl_percent: float,
        leverage: float,
        long: BacktestResult,
        short: BacktestResult,
    ) -> Optional[RejectionReason]:
        reason = self.check_parameters(tp_percent, sl_percent, leverage)
        if reason is not None:
            return reason
        return self.check_results(tp_percent, sl_percent, self.combine(long, short))

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def volatility_penalty(self, metrics: CombinedMetrics, margin: float) -> float:
        factor = self.run_config.volatility_penalty_factor
        if factor <= 0:
            return 0.0
        raw = volatility_penalty(self.range_stats.range95, metrics.combined_drawdown, margin, metrics.combined_pnl)
        return raw * factor

    def score(self, long: BacktestResult, short: BacktestResult, margin: float) -> ScoreBreakdown:
        metrics = self.combine(long, short)
        base = (
            metrics.combined_pnl * self.weights["pnl"]
            + metrics.combined_sharpe * self.weights["sharpe"]
            + metrics.drawdown_score * self.weights["drawdown"]
        )
        return ScoreBreakdown(
            base_score=base,
            volatility_penalty=self.volatility_penalty(metrics, margin),
            cvar_penalty=metrics.cvar * self.run_config.cvar_penalty,
            metrics=metrics,
        )
