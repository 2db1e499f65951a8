"""Tests for the per-symbol backtest cache."""

from dataclasses import replace

from liqtune.backtest.trade_simulator import BacktestResult, SimulationOverrides
from liqtune.core.enums import LiquidationSide
from liqtune.core.models import ParameterSet
from liqtune.optimizer.cache import BacktestCache

PARAMS = ParameterSet(
    side=LiquidationSide.SELL,
    threshold=5000,
    max_positions=5,
    trade_size=10,
    leverage=10,
    tp_percent=1.0,
    sl_percent=5.0,
)


class TestBacktestCache:
    """Memoization by parameters and overrides."""

    def test_hit_after_first_run(self):
        cache = BacktestCache("BTCUSDT")
        calls = []

        def run():
            calls.append(1)
            return BacktestResult(total_trades=3)

        first = cache.get_or_run(PARAMS, None, run)
        second = cache.get_or_run(PARAMS, None, run)
        assert first is second
        assert len(calls) == 1
        assert cache.stats.to_dict() == {"executed": 1, "cacheHits": 1}

    def test_default_overrides_share_key(self):
        assert BacktestCache.make_key(PARAMS) == BacktestCache.make_key(PARAMS, SimulationOverrides())

    def test_tiny_float_noise_shares_key(self):
        noisy = replace(PARAMS, tp_percent=1.0000000001)
        assert BacktestCache.make_key(noisy) == BacktestCache.make_key(PARAMS)

    def test_different_inputs_do_not_collide(self):
        cache = BacktestCache("BTCUSDT")
        cache.get_or_run(PARAMS, None, BacktestResult)
        cache.get_or_run(replace(PARAMS, cooldown_ms=0), None, BacktestResult)
        cache.get_or_run(PARAMS, SimulationOverrides(slippage_multiplier=1.6), BacktestResult)
        assert len(cache) == 3
        assert (PARAMS, None) in cache
        assert cache.stats.hits == 0
