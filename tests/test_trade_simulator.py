"""Tests for the single-side liquidation hunter simulator."""

import pytest

from liqtune.backtest.trade_simulator import (
    AVG_FILLS_PER_TRADE,
    MAKER_FEE,
    SL_EXIT_SLIPPAGE,
    SL_VOLATILE_EXIT_SLIPPAGE,
    TAKER_FEE,
    TP_EXIT_SLIPPAGE,
    BacktestResult,
    SimulationOverrides,
    TradeSimulator,
)
from liqtune.core.enums import ExitReason, LiquidationSide, PositionSide
from liqtune.core.models import ParameterSet, SymbolDataset
from conftest import BASE_TS, MINUTE, ScriptedRng, make_bar, make_event

ALWAYS_FILL = SimulationOverrides(limit_fill_rate=1.0, market_fallback_rate=0.0)


def _params(side=LiquidationSide.SELL, **overrides) -> ParameterSet:
    values = dict(
        side=side,
        threshold=5000,
        max_positions=50,
        trade_size=10,
        leverage=10,
        tp_percent=1.0,
        sl_percent=5.0,
        cooldown_ms=0,
        hunter_cooldown_ms=0,
        window_ms=60_000,
    )
    values.update(overrides)
    return ParameterSet(**values)


# =============================================================================
# Entry gating
# =============================================================================


class TestEntries:
    """Threshold, capacity and cooldown gating of entries."""

    def test_events_without_bars_close_at_end_of_data(self):
        events = [make_event(BASE_TS + i * 2 * MINUTE, volume=6000, price=50_000) for i in range(10)]
        dataset = SymbolDataset("BTCUSDT", tuple(events))
        result = TradeSimulator(seed=1).simulate(dataset, _params(), overrides=ALWAYS_FILL)

        assert result.total_trades == 10
        assert result.exit_reasons == {ExitReason.END_OF_DATA.value: 10}

    def test_hunter_cooldown_of_two_minutes_allows_two_minute_spacing(self):
        events = [make_event(BASE_TS + i * 2 * MINUTE, volume=6000, price=50_000) for i in range(10)]
        dataset = SymbolDataset("BTCUSDT", tuple(events))
        params = _params(hunter_cooldown_ms=120_000)
        result = TradeSimulator(seed=1).simulate(dataset, params, overrides=ALWAYS_FILL)
        assert result.total_trades == 10

    def test_below_threshold_never_enters(self):
        events = [make_event(BASE_TS + i * 2 * MINUTE, volume=1000) for i in range(5)]
        dataset = SymbolDataset("BTCUSDT", tuple(events))
        assert TradeSimulator(seed=1).run(dataset, _params(), overrides=ALWAYS_FILL) == []

    def test_window_accumulates_small_prints(self):
        events = [make_event(BASE_TS + i * 10_000, volume=2000) for i in range(3)]
        dataset = SymbolDataset("BTCUSDT", tuple(events))
        trades = TradeSimulator(seed=1).run(dataset, _params(), overrides=ALWAYS_FILL)
        # Only the third print brings the window to 6000
        assert len(trades) == 1
        assert trades[0].entry_time == BASE_TS + 20_000

    def test_max_positions_caps_open_trades(self):
        events = [make_event(BASE_TS + i * MINUTE) for i in range(6)]
        dataset = SymbolDataset("BTCUSDT", tuple(events))
        trades = TradeSimulator(seed=1).run(dataset, _params(max_positions=2), overrides=ALWAYS_FILL)
        assert len(trades) == 2

    def test_cooldown_blocks_close_entries(self):
        events = [make_event(BASE_TS + i * MINUTE) for i in range(6)]
        dataset = SymbolDataset("BTCUSDT", tuple(events))
        trades = TradeSimulator(seed=1).run(dataset, _params(cooldown_ms=150_000), overrides=ALWAYS_FILL)
        assert [t.entry_time for t in trades] == [BASE_TS, BASE_TS + 3 * MINUTE]

    def test_other_side_events_ignored(self):
        events = [make_event(BASE_TS + i * MINUTE, side=LiquidationSide.BUY) for i in range(3)]
        dataset = SymbolDataset("BTCUSDT", tuple(events))
        assert TradeSimulator(seed=1).run(dataset, _params(), overrides=ALWAYS_FILL) == []

    def test_unfilled_limit_order_skips_entry(self):
        events = [make_event(BASE_TS + i * 2 * MINUTE) for i in range(2)]
        dataset = SymbolDataset("BTCUSDT", tuple(events))
        # First entry: fill draw 0.99 > 0.85 fails; second: fill 0.1, fallback 0.9
        rng = ScriptedRng([0.99, 0.1, 0.9])
        trades = TradeSimulator().run(dataset, _params(), rng=rng)
        assert len(trades) == 1
        assert trades[0].entry_time == BASE_TS + 2 * MINUTE

    def test_market_fallback_pays_entry_slippage(self):
        dataset = SymbolDataset("BTCUSDT", (make_event(BASE_TS, price=100.0),))
        rng = ScriptedRng([0.0, 0.0])
        trades = TradeSimulator().run(dataset, _params(), rng=rng)
        assert trades[0].entry_price == pytest.approx(100.2)


# =============================================================================
# Exits
# =============================================================================


class TestExits:
    """TP/SL resolution on bar extremes."""

    def _dataset(self, bars, side=LiquidationSide.SELL, price=100.0):
        return SymbolDataset("BTCUSDT", (make_event(BASE_TS + 1, side=side, price=price),), tuple(bars))

    def test_long_take_profit(self):
        bars = [make_bar(BASE_TS, 100), make_bar(BASE_TS + MINUTE, 100.5, high=101.5, low=100)]
        trades = TradeSimulator(seed=1).run(self._dataset(bars), _params(), overrides=ALWAYS_FILL)

        trade = trades[0]
        assert trade.side == PositionSide.LONG
        assert trade.exit_reason == ExitReason.TAKE_PROFIT
        assert trade.trigger_price == pytest.approx(101.0)
        assert trade.exit_price == pytest.approx(101.0 * (1 - TP_EXIT_SLIPPAGE))

        notional = 10 * 10
        entry_fee = notional * (MAKER_FEE * 0.9 + TAKER_FEE * 0.1)
        commission = (entry_fee + notional * TAKER_FEE) * AVG_FILLS_PER_TRADE
        assert trade.commission == pytest.approx(commission)
        size = notional / 100.0
        assert trade.net_pnl == pytest.approx((trade.exit_price - 100.0) * size - commission)

    def test_short_stop_loss(self):
        bars = [make_bar(BASE_TS, 100), make_bar(BASE_TS + MINUTE, 104, high=106, low=100)]
        dataset = self._dataset(bars, side=LiquidationSide.BUY)
        trades = TradeSimulator(seed=1).run(dataset, _params(side=LiquidationSide.BUY), overrides=ALWAYS_FILL)

        trade = trades[0]
        assert trade.side == PositionSide.SHORT
        assert trade.exit_reason == ExitReason.STOP_LOSS
        assert trade.exit_price > trade.trigger_price
        assert trade.net_pnl < 0

    def test_same_bar_tie_nearer_level_first(self):
        bars = [make_bar(BASE_TS, 100), make_bar(BASE_TS + MINUTE, 100, high=102, low=94)]
        dataset = self._dataset(bars)
        # fill, fallback, then tie draw below 0.70 -> nearer level (TP at 1%) wins
        rng = ScriptedRng([0.0, 0.5, 0.1])
        trades = TradeSimulator().run(dataset, _params(), rng=rng)
        assert trades[0].exit_reason == ExitReason.TAKE_PROFIT

    def test_same_bar_tie_farther_level_first(self):
        bars = [make_bar(BASE_TS, 100), make_bar(BASE_TS + MINUTE, 100, high=102, low=94)]
        dataset = self._dataset(bars)
        rng = ScriptedRng([0.0, 0.5, 0.9])
        trades = TradeSimulator().run(dataset, _params(), rng=rng)
        assert trades[0].exit_reason == ExitReason.STOP_LOSS

    def _stop_out_after(self, closes):
        bars = [make_bar(BASE_TS, 100)]
        bars += [make_bar(BASE_TS + (i + 1) * MINUTE, c) for i, c in enumerate(closes)]
        bars.append(make_bar(BASE_TS + (len(closes) + 1) * MINUTE, 96, high=96, low=90))
        params = _params(tp_percent=10.0, sl_percent=5.0)
        return TradeSimulator(seed=1).run(self._dataset(bars), params, overrides=ALWAYS_FILL)[0]

    def test_stop_in_volatile_bars_slips_further(self):
        trade = self._stop_out_after([103, 100] * 5)

        assert trade.exit_reason == ExitReason.STOP_LOSS
        assert trade.volatility_factor == pytest.approx(3.0)
        assert trade.trigger_price == pytest.approx(95.0)
        assert trade.exit_price == pytest.approx(95.0 * (1 - SL_VOLATILE_EXIT_SLIPPAGE))

    def test_stop_in_calm_bars_uses_normal_slippage(self):
        trade = self._stop_out_after([100] * 10)

        assert trade.exit_reason == ExitReason.STOP_LOSS
        assert trade.volatility_factor == pytest.approx(0.5)
        assert trade.exit_price == pytest.approx(95.0 * (1 - SL_EXIT_SLIPPAGE))

    def test_end_of_data_uses_last_close_and_maker_fee(self):
        bars = [make_bar(BASE_TS, 100), make_bar(BASE_TS + MINUTE, 100.4)]
        trades = TradeSimulator(seed=1).run(self._dataset(bars), _params(), overrides=ALWAYS_FILL)

        trade = trades[0]
        assert trade.exit_reason == ExitReason.END_OF_DATA
        assert trade.exit_price == pytest.approx(100.4)
        assert trade.slippage == 0.0
        notional = 100.0
        entry_fee = notional * (MAKER_FEE * 0.9 + TAKER_FEE * 0.1)
        assert trade.commission == pytest.approx((entry_fee + notional * MAKER_FEE) * AVG_FILLS_PER_TRADE)


# =============================================================================
# Determinism and summaries
# =============================================================================


class TestDeterminism:
    """Seeded runs are reproducible."""

    def test_same_seed_same_result(self, synthetic_dataset):
        params = _params(threshold=3000, tp_percent=0.8, sl_percent=2.0, hunter_cooldown_ms=120_000)
        first = TradeSimulator(seed=42).simulate(synthetic_dataset, params)
        second = TradeSimulator(seed=42).simulate(synthetic_dataset, params)
        assert first == second
        assert first.total_trades > 0

    def test_empty_side_is_empty_result(self):
        dataset = SymbolDataset("BTCUSDT", ())
        assert TradeSimulator(seed=1).simulate(dataset, _params()) == BacktestResult()

    def test_time_range_limits_events(self, synthetic_dataset):
        params = _params(threshold=1, hunter_cooldown_ms=0)
        start = BASE_TS
        end = BASE_TS + 30 * MINUTE
        trades = TradeSimulator(seed=3).run(
            synthetic_dataset,
            params,
            overrides=SimulationOverrides(limit_fill_rate=1.0, market_fallback_rate=0.0, time_range=(start, end)),
        )
        assert trades
        assert all(start <= t.entry_time <= end for t in trades)

    def test_runs_leave_dataset_unchanged(self, synthetic_dataset):
        events_before = list(synthetic_dataset.events)
        bars_before = list(synthetic_dataset.bars)
        simulator = TradeSimulator(seed=5)

        first = simulator.simulate(synthetic_dataset, _params(threshold=3000))
        simulator.simulate(synthetic_dataset, _params(side=LiquidationSide.BUY, threshold=1, sl_percent=0.5))
        again = simulator.simulate(synthetic_dataset, _params(threshold=3000))

        assert list(synthetic_dataset.events) == events_before
        assert list(synthetic_dataset.bars) == bars_before
        assert synthetic_dataset.price_series == tuple(bars_before)
        assert again == first


class TestBacktestResult:
    """Ledger summaries."""

    def test_from_trades_counts(self):
        events = [make_event(BASE_TS + i * 2 * MINUTE, volume=6000, price=50_000) for i in range(4)]
        dataset = SymbolDataset("BTCUSDT", tuple(events))
        trades = TradeSimulator(seed=1).run(dataset, _params(), overrides=ALWAYS_FILL)
        result = BacktestResult.from_trades(trades)

        assert result.total_trades == 4
        assert result.wins + result.losses <= 4
        assert result.total_pnl == pytest.approx(sum(t.net_pnl for t in trades))
        assert len(result.recent_trades) == 3
        assert result.stop_exits == 0
