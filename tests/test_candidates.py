"""Tests for candidate generation."""

import pytest

from liqtune.backtest.statistics import AtrStats, GapStats, VolatilityStats, gap_stats
from liqtune.config.optimizer_config import DEFAULT_THRESHOLD, MODE_LIMITS, RunConfig
from liqtune.core.enums import OptimizerMode
from liqtune.optimizer.candidates import (
    MAX_LEVERAGE,
    CandidateGenerator,
    min_dca_slots,
    prune_to_extremes,
)

QUICK = RunConfig(mode=OptimizerMode.QUICK)
THOROUGH = RunConfig(mode=OptimizerMode.THOROUGH)


def _volumes(n: int = 400):
    return [500.0 + (i * 97) % 20_000 for i in range(n)]


class TestHelpers:
    """DCA depth and list pruning."""

    @pytest.mark.parametrize(
        "range95,expected",
        [(None, 6), (0.0, 6), (1.5, 6), (2.0, 8), (4.5, 12), (6.0, 18), (9.0, 24)],
    )
    def test_min_dca_slots(self, range95, expected):
        assert min_dca_slots(range95) == expected

    def test_prune_keeps_short_lists(self):
        assert prune_to_extremes([1, 2, 3]) == [1, 2, 3]

    def test_prune_to_extremes(self):
        values = list(range(1, 21))
        assert prune_to_extremes(values) == [1, 2, 3, 4, 5, 16, 17, 18, 19, 20]


class TestEmptyData:
    """Every generator returns at least one value without any history."""

    def test_all_generators_non_empty(self):
        gen = CandidateGenerator(QUICK)
        vol = VolatilityStats()
        gaps = GapStats()

        thresholds = gen.thresholds([], 0)
        assert thresholds.candidates == [DEFAULT_THRESHOLD]
        assert gen.take_profits(vol, 0)
        assert gen.stop_losses(vol, 0)
        assert gen.leverages(10)
        assert gen.margins(100, 0)
        windows = gen.time_windows(gaps, 0, vol)
        assert windows
        assert gen.cooldowns(gaps, 0, windows, vol)

    def test_empty_thresholds_keep_current(self):
        result = CandidateGenerator(QUICK).thresholds([], 2500)
        assert result.candidates == [2500]
        assert result.min_allowed == 2500


class TestThresholds:
    """Thresholds come from the liquidation size distribution."""

    def test_quick_caps_and_floor(self):
        result = CandidateGenerator(QUICK).thresholds(_volumes(), 3000)
        assert 0 < len(result.candidates) <= MODE_LIMITS[OptimizerMode.QUICK].threshold_max
        assert all(c >= result.min_allowed for c in result.candidates)
        assert result.candidates == sorted(result.candidates)

    def test_rounded_to_tens(self):
        result = CandidateGenerator(QUICK).thresholds(_volumes(), 0)
        assert all(c % 10 == 0 for c in result.candidates)

    def test_thorough_keeps_more(self):
        quick = CandidateGenerator(QUICK).thresholds(_volumes(), 3000)
        thorough = CandidateGenerator(THOROUGH).thresholds(_volumes(), 3000)
        assert len(thorough.candidates) > len(quick.candidates)
        assert 3000 in thorough.candidates

    def test_deterministic(self):
        gen = CandidateGenerator(QUICK)
        assert gen.thresholds(_volumes(), 3000) == gen.thresholds(list(reversed(_volumes())), 3000)


class TestExits:
    """TP and SL candidates."""

    def test_tp_bounds_and_cap(self):
        vol = VolatilityStats(avg_abs_return=0.4, perc90=0.9, perc95=1.4)
        atr = AtrStats(atr=0.5, median=0.4, p90=0.8, max=1.6)
        tps = CandidateGenerator(QUICK).take_profits(vol, 1.0, atr)
        assert 0 < len(tps) <= MODE_LIMITS[OptimizerMode.QUICK].tp_max
        assert all(0.1 <= v <= 30 for v in tps)

    def test_sl_bounds(self):
        vol = VolatilityStats(avg_abs_return=0.4, perc90=0.9, perc95=1.4)
        sls = CandidateGenerator(THOROUGH).stop_losses(vol, 5.0)
        assert all(0.1 <= v <= 40 for v in sls)
        assert 5.0 in sls


class TestSizing:
    """Leverage and margin candidates."""

    def test_leverage_capped(self):
        levs = CandidateGenerator(THOROUGH).leverages(50)
        assert max(levs) <= MAX_LEVERAGE
        assert 5 in levs

    def test_margins_within_budget(self):
        margins = CandidateGenerator(QUICK).margins(500, 200, min_margin=120, min_required=160)
        assert margins
        assert all(m <= 500 + 1e-6 for m in margins)
        assert max(margins) == 500
        assert len(margins) <= MODE_LIMITS[OptimizerMode.QUICK].margin_max


class TestTimers:
    """Window and cooldown candidates from gap timing."""

    def test_windows_within_bounds(self):
        gaps = gap_stats([i * 45_000 for i in range(50)])
        windows = CandidateGenerator(THOROUGH).time_windows(gaps, 60_000, VolatilityStats())
        assert all(10_000 <= w <= 600_000 for w in windows)
        assert 60_000 in windows

    def test_cooldowns_within_bounds(self):
        gaps = gap_stats([i * 45_000 for i in range(50)])
        gen = CandidateGenerator(QUICK)
        windows = gen.time_windows(gaps, 60_000, VolatilityStats())
        cooldowns = gen.cooldowns(gaps, 30_000, windows, VolatilityStats())
        assert 0 < len(cooldowns) <= MODE_LIMITS[OptimizerMode.QUICK].cooldown_max
        assert all(5_000 <= c <= 900_000 for c in cooldowns)
