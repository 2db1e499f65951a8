"""Tests for the multi-symbol optimization runner."""

import pytest

from liqtune.backtest.data_loader import InMemoryDataProvider
from liqtune.config.optimizer_config import RunConfig, SymbolConfig
from liqtune.core.enums import OptimizerMode
from liqtune.optimizer.analysis import THRESHOLD_LEVELS
from liqtune.optimizer.models import LiquidationAnalytics, OptimizationReport, SymbolRecommendation
from liqtune.optimizer.progress import CancellationToken
from liqtune.optimizer.runner import (
    MAX_SCALE,
    MIN_SCALE,
    OptimizationRunner,
    capital_budget,
    capital_scale,
    check_allocation,
    summarize,
)
from conftest import oscillating_dataset

RUN_CONFIG = RunConfig(mode=OptimizerMode.QUICK, seed=11, enable_scenarios=False)
BTC = SymbolConfig(volume_threshold=3000, trade_size=10, max_position_margin=100, leverage=10)
DOGE = SymbolConfig(volume_threshold=1000, trade_size=10, max_position_margin=100, leverage=10)


@pytest.fixture
def provider():
    return InMemoryDataProvider.from_datasets([oscillating_dataset("BTCUSDT", minutes=120)])


# =============================================================================
# Capital helpers
# =============================================================================


class TestCapital:
    """Budget scaling from deployable capital."""

    def test_scale_clamped(self):
        configs = {"BTCUSDT": BTC, "DOGEUSDT": DOGE}
        assert capital_scale(configs, 1000) == MAX_SCALE
        assert capital_scale(configs, 50) == MIN_SCALE
        assert capital_scale(configs, 200) == pytest.approx(0.5)

    def test_no_capital_keeps_scale(self):
        assert capital_scale({"BTCUSDT": BTC}, 0) == 1.0

    def test_budget(self):
        assert capital_budget(BTC, 1000, 2.5) == 250
        assert capital_budget(BTC, 0, 1.0) == 100
        assert capital_budget(SymbolConfig(trade_size=0.5), 1.0, 0.25) == 5.0


class TestAggregation:
    """Run-level summary and capital check."""

    def _rec(self, symbol, current, improvement, margin=100.0):
        return SymbolRecommendation(
            symbol=symbol,
            current_daily_pnl=current,
            optimized_daily_pnl=current + improvement,
            daily_improvement=improvement,
            optimized_config=SymbolConfig(max_position_margin=margin),
        )

    def test_summary(self):
        summary = summarize([self._rec("A", 10, 5), self._rec("B", 10, -1)])
        assert summary.current_daily_pnl == 20
        assert summary.optimized_daily_pnl == 24
        assert summary.monthly_improvement == 120
        assert summary.improvement_percent == pytest.approx(20.0)
        assert summary.recommended_max_open_positions == 2

    def test_zero_baseline_has_no_percent(self):
        assert summarize([self._rec("A", 0, 5)]).improvement_percent is None

    def test_empty_summary(self):
        assert summarize([]).recommended_max_open_positions == 1

    def test_overallocation(self):
        recs = [self._rec("A", 1, 1, margin=600), self._rec("B", 1, 3, margin=600)]
        allocation = check_allocation(recs, wallet_balance=1000, target_utilization=0.8)
        assert allocation.is_overallocated
        assert allocation.max_safe_allocation == pytest.approx(800)
        assert allocation.suggested_margin_per_symbol == 400
        assert allocation.ranked_symbols == ["B", "A"]

    def test_within_budget(self):
        allocation = check_allocation([self._rec("A", 1, 1, margin=100)], 1000, 0.8)
        assert not allocation.is_overallocated
        assert allocation.suggested_margin_per_symbol is None


# =============================================================================
# Runner
# =============================================================================


class TestOptimizationRunner:
    """End-to-end runs over an in-memory provider."""

    @pytest.mark.asyncio
    async def test_missing_data_is_degraded_zero_effect(self, provider):
        runner = OptimizationRunner(provider, run_config=RUN_CONFIG)
        report = await runner.run({"BTCUSDT": BTC, "DOGEUSDT": DOGE}, deployable_capital=400)

        btc = report.recommendation_for("BTCUSDT")
        doge = report.recommendation_for("DOGEUSDT")
        assert not btc.degraded
        assert btc.optimized is not None
        assert doge.degraded
        assert doge.daily_improvement == 0.0
        assert "no liquidation history" in doge.error
        assert report.summary.symbols_degraded == 1
        assert report.summary.recommended_max_open_positions == 2
        assert not report.cancelled

    @pytest.mark.asyncio
    async def test_progress_and_allocation(self, provider):
        seen = []
        runner = OptimizationRunner(provider, run_config=RUN_CONFIG)
        report = await runner.run(
            {"BTCUSDT": BTC},
            deployable_capital=200,
            wallet_balance=1000,
            progress_callback=lambda p, s: seen.append(p),
        )
        assert seen[-1] == 100.0
        assert seen == sorted(seen)
        assert report.allocation is not None
        assert report.allocation.wallet_balance == 1000

    @pytest.mark.asyncio
    async def test_symbol_filter(self, provider):
        runner = OptimizationRunner(provider, run_config=RUN_CONFIG)
        report = await runner.run({"BTCUSDT": BTC, "DOGEUSDT": DOGE}, 400, symbols=["dogeusdt"])
        assert [r.symbol for r in report.recommendations] == ["DOGEUSDT"]

    @pytest.mark.asyncio
    async def test_cancelled_run_is_partial(self, provider):
        token = CancellationToken()
        token.cancel()
        runner = OptimizationRunner(provider, run_config=RUN_CONFIG)
        report = await runner.run({"BTCUSDT": BTC}, 400, cancel=token)
        assert report.cancelled
        assert report.recommendations == []

    @pytest.mark.asyncio
    async def test_report_carries_liquidation_analytics(self, provider):
        runner = OptimizationRunner(provider, run_config=RUN_CONFIG)
        report = await runner.run({"BTCUSDT": BTC, "DOGEUSDT": DOGE}, deployable_capital=400)

        analytics = report.analytics
        assert analytics is not None
        # DOGEUSDT has no history and stays out of the analytics
        assert list(analytics.threshold_sweeps) == ["BTCUSDT"]
        long_sweep = analytics.threshold_sweeps["BTCUSDT"]["long"]
        assert len(long_sweep) == len(THRESHOLD_LEVELS)
        assert [row.threshold for row in long_sweep if row.is_current] == [3000.0]
        assert [r.symbol for r in analytics.profitability] == ["BTCUSDT"]
        assert analytics.profitability[0].total_triggers > 0

        restored = OptimizationReport.from_json(report.to_json())
        assert restored.analytics == analytics

    @pytest.mark.asyncio
    async def test_analytics_failure_leaves_report_intact(self, provider, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("bad frame")

        monkeypatch.setattr(LiquidationAnalytics, "from_datasets", explode)
        runner = OptimizationRunner(provider, run_config=RUN_CONFIG)
        report = await runner.run({"BTCUSDT": BTC}, deployable_capital=400)

        assert report.analytics is None
        assert report.recommendation_for("BTCUSDT").optimized is not None

    @pytest.mark.asyncio
    async def test_no_symbols(self, provider):
        runner = OptimizationRunner(provider, run_config=RUN_CONFIG)
        report = await runner.run({}, 400)
        assert report.recommendations == []
        assert report.summary.symbols_optimized == 0
