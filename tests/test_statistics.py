"""Tests for the numeric helpers in liqtune.backtest.statistics."""

import math

import numpy as np
import pytest

from liqtune.backtest.statistics import (
    VolatilityStats,
    atr_stats,
    compute_percentiles,
    dedupe_and_sort,
    gap_stats,
    price_volatility,
    range_stats,
    rolling_window_sums,
    round_half_up,
    round_to_step,
    sample_evenly,
    volatility_factors,
)
from conftest import BASE_TS, MINUTE, make_bar


# =============================================================================
# Rounding and candidate-set helpers
# =============================================================================


class TestRounding:
    """Half-up rounding used for every candidate value."""

    def test_half_rounds_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(0.125, 2) == 0.13

    def test_round_to_step(self):
        assert round_to_step(1234, 10) == 1230
        assert round_to_step(1235, 10) == 1240


class TestDedupeAndSample:
    """Candidate lists are finite, positive, unique and ascending."""

    def test_dedupe_drops_invalid(self):
        assert dedupe_and_sort([3, 1, 1, -2, 0, float("nan"), float("inf"), None, 2]) == [1, 2, 3]

    def test_sample_keeps_extremes(self):
        values = list(range(1, 101))
        sampled = sample_evenly(values, 5)
        assert sampled[0] == 1
        assert sampled[-1] == 100
        assert len(sampled) == 5

    def test_sample_short_list_unchanged(self):
        assert sample_evenly([5, 1, 3], 10) == [1, 3, 5]

    def test_keep_all_ignores_cap(self):
        assert len(sample_evenly(range(1, 51), 5, keep_all=True)) == 50

    def test_sample_is_deterministic(self):
        values = [v * 1.7 for v in range(1, 80)]
        assert sample_evenly(values, 7) == sample_evenly(list(reversed(values)), 7)


class TestPercentiles:
    """Linear-interpolated percentiles."""

    def test_empty(self):
        assert compute_percentiles([], (0.5,)) == {}

    def test_bounds_and_median(self):
        pct = compute_percentiles([4, 1, 3, 2, 5], (0, 0.5, 1))
        assert pct[0] == 1
        assert pct[0.5] == 3
        assert pct[1] == 5

    def test_interpolates(self):
        pct = compute_percentiles([10, 20], (0.25,))
        assert pct[0.25] == pytest.approx(12.5)


# =============================================================================
# Price statistics
# =============================================================================


class TestPriceStats:
    """Volatility, ATR and range over one-minute bars."""

    def test_volatility_needs_two_bars(self):
        assert price_volatility([make_bar(BASE_TS, 100)]) == VolatilityStats()

    def test_volatility_mean_abs_return(self):
        bars = [make_bar(BASE_TS + i * MINUTE, c) for i, c in enumerate((100, 101, 100, 101))]
        vol = price_volatility(bars)
        expected = np.mean([1.0, abs(-1 / 101 * 100), 1.0])
        assert vol.avg_abs_return == pytest.approx(expected)
        assert vol.perc95 >= vol.perc90 > 0

    def test_atr_requires_more_than_period(self):
        bars = [make_bar(BASE_TS + i * MINUTE, 100) for i in range(14)]
        assert atr_stats(bars).atr == 0.0

    def test_atr_constant_true_range(self):
        bars = [make_bar(BASE_TS + i * MINUTE, 100, high=101, low=99) for i in range(40)]
        stats = atr_stats(bars)
        assert stats.atr == pytest.approx(2.0)
        assert stats.median == pytest.approx(2.0)

    def test_range_stats_percent_of_low(self):
        bars = [make_bar(BASE_TS + i * MINUTE, 100, high=102, low=100) for i in range(10)]
        stats = range_stats(bars, window=5)
        assert stats.median == pytest.approx(2.0)
        assert stats.range95 == pytest.approx(2.0)

    def test_range_stats_empty(self):
        assert range_stats([], 60).range95 == 0.0


class TestVolatilityFactors:
    """Short-lookback factor used for stop slippage."""

    def test_flat_prices_clamp_to_floor(self):
        factors = volatility_factors([100.0] * 10)
        assert factors[0] == 1.0
        assert all(f == 0.5 for f in factors[1:])

    def test_large_moves_clamp_to_ceiling(self):
        closes = [100.0 if i % 2 == 0 else 110.0 for i in range(10)]
        factors = volatility_factors(closes)
        assert factors[-1] == 3.0

    def test_single_price(self):
        assert volatility_factors([100.0]).tolist() == [1.0]


# =============================================================================
# Liquidation timing
# =============================================================================


class TestGapStats:
    """Inter-liquidation gaps."""

    def test_ignores_bursts_and_downtime(self):
        ts = [0, 100, 10_000, 20_000, 20_000 + 13 * 3600 * 1000]
        stats = gap_stats(ts)
        assert stats.gaps == [pytest.approx(9.9), pytest.approx(10.0)]

    def test_defaults_without_gaps(self):
        stats = gap_stats([5])
        assert not stats.has_gaps
        assert stats.avg_gap_sec == 60.0


class TestRollingWindowSums:
    """Trailing-window volume at each event."""

    def test_window_inclusive_of_left_edge(self):
        sums = rolling_window_sums([0, 30_000, 60_000, 61_000], [1, 2, 3, 4], 60_000)
        assert sums == [1, 3, 6, 9]

    def test_isolated_events(self):
        sums = rolling_window_sums([0, 120_000, 240_000], [5, 5, 5], 60_000)
        assert sums == [5, 5, 5]

    def test_all_finite(self):
        sums = rolling_window_sums(list(range(0, 10_000, 500)), [1.0] * 20, 1_000)
        assert all(math.isfinite(s) for s in sums)
