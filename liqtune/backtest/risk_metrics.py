"""
Risk metrics over an ordered trade ledger.

Key metrics:
- Sharpe ratio (per trade, zero risk-free rate, population stddev)
- Max drawdown, absolute and as % of the running peak
- Profit factor and payoff ratio (same formula)
- CVaR: mean of the worst 5% of trade PnLs
- Statistical significance of mean PnL (t-test)
"""

import math
from dataclasses import asdict, dataclass
from typing import Sequence, Tuple

import numpy as np
from scipy import stats as sp_stats

# Sentinel for "wins with no losses"
UNBOUNDED_RATIO = math.inf

CVAR_TAIL = 0.05


@dataclass(frozen=True)
class RiskMetrics:
    """Risk summary for one simulator run."""

    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    max_drawdown_percent: float = 0.0
    profit_factor: float = 0.0
    cvar: float = 0.0
    payoff_ratio: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


def max_drawdown(pnls: Sequence[float]) -> Tuple[float, float]:
    """Largest peak-to-trough drop of cumulative PnL, and the highest peak reached.

    The peak starts at zero, so an initial losing streak counts as drawdown.
    """
    peak = 0.0
    worst = 0.0
    running = 0.0
    for pnl in pnls:
        running += pnl
        if running > peak:
            peak = running
        drawdown = peak - running
        if drawdown > worst:
            worst = drawdown
    return worst, peak


def win_loss_ratio(pnls: Sequence[float]) -> float:
    wins = sum(p for p in pnls if p > 0)
    losses = abs(sum(p for p in pnls if p < 0))
    if losses > 0:
        return wins / losses
    return UNBOUNDED_RATIO if wins > 0 else 0.0


def calculate_risk_metrics(pnls: Sequence[float]) -> RiskMetrics:
    """Compute all risk metrics from net trade PnLs in execution order."""
    if len(pnls) == 0:
        return RiskMetrics()

    returns = np.asarray(pnls, dtype=float)
    mean = float(returns.mean())
    std = float(returns.std())  # population
    sharpe = mean / std if std > 0 else 0.0

    drawdown, peak = max_drawdown(returns.tolist())
    drawdown_pct = drawdown / peak * 100 if peak > 0 else 0.0

    tail_count = max(1, int(math.floor(returns.size * CVAR_TAIL)))
    cvar = float(np.sort(returns)[:tail_count].mean())

    ratio = win_loss_ratio(returns.tolist())
    return RiskMetrics(
        sharpe_ratio=sharpe,
        max_drawdown=drawdown,
        max_drawdown_percent=drawdown_pct,
        profit_factor=ratio,
        cvar=cvar,
        payoff_ratio=ratio,
    )


def pnl_significance(pnls: Sequence[float]) -> Tuple[float, float]:
    """One-sample t-test of mean trade PnL against zero.

    Returns (t_statistic, p_value); (0.0, 1.0) when undefined.
    """
    if len(pnls) < 2:
        return 0.0, 1.0
    returns = np.asarray(pnls, dtype=float)
    if float(returns.std()) == 0.0:
        return 0.0, 1.0
    t_stat, p_value = sp_stats.ttest_1samp(returns, 0.0)
    if not (math.isfinite(t_stat) and math.isfinite(p_value)):
        return 0.0, 1.0
    return float(t_stat), float(p_value)
