"""Tests for risk metrics over a trade ledger."""

import math

import pytest

from liqtune.backtest.risk_metrics import (
    RiskMetrics,
    calculate_risk_metrics,
    max_drawdown,
    pnl_significance,
    win_loss_ratio,
)

LEDGER = [10.0, -5.0, 20.0, -15.0, 5.0]


class TestDrawdown:
    """Peak-to-trough drop of cumulative PnL."""

    def test_known_ledger(self):
        drawdown, peak = max_drawdown(LEDGER)
        assert drawdown == 15.0
        assert peak == 25.0

    def test_initial_losses_count(self):
        drawdown, peak = max_drawdown([-3.0, -2.0, 4.0])
        assert drawdown == 5.0
        assert peak == 0.0

    def test_order_changes_drawdown_only(self):
        reordered = [20.0, 10.0, 5.0, -5.0, -15.0]
        assert sum(reordered) == sum(LEDGER)
        assert max_drawdown(reordered)[0] == 20.0
        assert max_drawdown(reordered)[0] != max_drawdown(LEDGER)[0]


class TestWinLossRatio:
    """Profit factor and payoff ratio share one formula."""

    def test_ratio(self):
        assert win_loss_ratio(LEDGER) == pytest.approx(35 / 20)

    def test_no_losses_is_unbounded(self):
        assert math.isinf(win_loss_ratio([1.0, 2.0]))

    def test_nothing_is_zero(self):
        assert win_loss_ratio([0.0, -1.0]) == 0.0


class TestCalculateRiskMetrics:
    """Full metric set."""

    def test_empty_ledger(self):
        assert calculate_risk_metrics([]) == RiskMetrics()

    def test_known_ledger(self):
        metrics = calculate_risk_metrics(LEDGER)
        mean = 3.0
        std = math.sqrt(sum((p - mean) ** 2 for p in LEDGER) / len(LEDGER))
        assert metrics.sharpe_ratio == pytest.approx(mean / std)
        assert metrics.max_drawdown == 15.0
        assert metrics.max_drawdown_percent == pytest.approx(60.0)
        assert metrics.profit_factor == metrics.payoff_ratio
        # One trade is the 5% tail floor
        assert metrics.cvar == -15.0

    def test_constant_ledger_has_zero_sharpe(self):
        assert calculate_risk_metrics([2.0, 2.0, 2.0]).sharpe_ratio == 0.0


class TestSignificance:
    """One-sample t-test against zero."""

    def test_undefined_cases(self):
        assert pnl_significance([1.0]) == (0.0, 1.0)
        assert pnl_significance([3.0, 3.0, 3.0]) == (0.0, 1.0)

    def test_positive_mean(self):
        t_stat, p_value = pnl_significance([1.0, 2.0, 1.5, 2.5, 1.8, 2.2])
        assert t_stat > 0
        assert 0.0 < p_value < 0.05
