"""
Simulates the liquidation hunter for one (symbol, side) over historical data.

Replays liquidation events in time order and, between events, walks the
one-minute candles to resolve open positions:
- Entry when trailing-window liquidation volume crosses the threshold
- LIMIT entries that sometimes don't fill, occasional MARKET fallback
- TP/SL resolved on bar high/low, same-bar ties settled probabilistically
- Exit slippage (worse on stops, worse still in volatile bars)
- Maker/taker commission per round trip
- Anything still open at the end of the data closes at the last price
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from liqtune.backtest.risk_metrics import calculate_risk_metrics, pnl_significance
from liqtune.backtest.statistics import rolling_window_sums, volatility_factors
from liqtune.core.enums import ExitReason, PositionSide
from liqtune.core.models import ParameterSet, PriceBar, SymbolDataset

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Execution cost model (calibrated to the live bot, not to order-book depth)
# ---------------------------------------------------------------------------

TP_EXIT_SLIPPAGE = 0.0010  # TAKE_PROFIT_MARKET fills slightly past the trigger
SL_EXIT_SLIPPAGE = 0.0050  # STOP_MARKET
SL_VOLATILE_EXIT_SLIPPAGE = 0.0080  # STOP_MARKET when volatility factor > 1.5
MARKET_ENTRY_SLIPPAGE = 0.0020

LIMIT_FILL_RATE = 0.85
MARKET_FALLBACK_RATE = 0.10

MAKER_FEE = 0.0002
TAKER_FEE = 0.0004
ENTRY_MAKER_SHARE = 0.9
AVG_FILLS_PER_TRADE = 1.5  # order chunking

# Heuristic: when one bar touches both TP and SL, the nearer level is assumed
# to print first this often. Not derived from order-book data.
NEARER_LEVEL_FIRST_PROB = 0.70
VOLATILE_FACTOR_THRESHOLD = 1.5

MIN_WINDOW_MS = 1_000
RECENT_TRADES = 3


class RandomSource(Protocol):
    """Anything with a `random()` returning a float in [0, 1)."""

    def random(self) -> float:
        ...


@dataclass(frozen=True)
class SimulationOverrides:
    """Fill/slippage model knobs; stress scenarios replace these."""

    slippage_multiplier: float = 1.0
    limit_fill_rate: float = LIMIT_FILL_RATE
    market_fallback_rate: float = MARKET_FALLBACK_RATE
    time_range: Optional[Tuple[int, int]] = None

    def normalized(self) -> "SimulationOverrides":
        """Clamp to the supported ranges; drop an empty time range."""
        time_range = self.time_range
        if time_range is not None and time_range[1] <= time_range[0]:
            time_range = None
        return SimulationOverrides(
            slippage_multiplier=max(0.25, self.slippage_multiplier),
            limit_fill_rate=min(max(self.limit_fill_rate, 0.1), 1.0),
            market_fallback_rate=min(max(self.market_fallback_rate, 0.0), 0.5),
            time_range=time_range,
        )

    def key(self) -> Tuple:
        norm = self.normalized()
        return (
            round(norm.slippage_multiplier, 6),
            round(norm.limit_fill_rate, 6),
            round(norm.market_fallback_rate, 6),
            norm.time_range,
        )


@dataclass
class OpenPosition:
    """Position owned by a single simulator run."""

    entry_price: float
    entry_time: int
    tp_price: float
    sl_price: float
    is_long: bool
    size: float  # base units


@dataclass(frozen=True)
class CompletedTrade:
    """Closed position, net of slippage and commission."""

    side: PositionSide
    entry_price: float
    exit_price: float
    trigger_price: float
    slippage: float  # |exit - trigger|
    gross_pnl: float
    commission: float
    net_pnl: float
    exit_reason: ExitReason
    entry_time: int
    exit_time: int
    margin: float
    volatility_factor: Optional[float] = None

    @property
    def duration_ms(self) -> int:
        return self.exit_time - self.entry_time

    @property
    def pnl(self) -> float:
        return self.net_pnl


@dataclass(frozen=True)
class BacktestResult:
    """Summary of one simulator run. Pure function of its inputs."""

    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    total_pnl: float = 0.0
    win_rate: float = 0.0  # Percentage
    avg_win: float = 0.0
    avg_loss: float = 0.0
    avg_duration: float = 0.0  # Minutes
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    max_drawdown_percent: float = 0.0
    profit_factor: float = 0.0
    cvar: float = 0.0
    payoff_ratio: float = 0.0
    exit_reasons: Dict[str, int] = field(default_factory=dict)
    recent_trades: Tuple[CompletedTrade, ...] = ()
    t_statistic: float = 0.0
    p_value: float = 1.0

    @property
    def stop_exits(self) -> int:
        return self.exit_reasons.get(ExitReason.STOP_LOSS.value, 0)

    @classmethod
    def from_trades(cls, trades: Sequence[CompletedTrade]) -> "BacktestResult":
        if not trades:
            return cls()

        pnls = [t.net_pnl for t in trades]
        winners = [p for p in pnls if p > 0]
        losers = [p for p in pnls if p < 0]
        reasons: Dict[str, int] = {}
        for t in trades:
            reasons[t.exit_reason.value] = reasons.get(t.exit_reason.value, 0) + 1

        risk = calculate_risk_metrics(pnls)
        t_stat, p_value = pnl_significance(pnls)
        return cls(
            total_trades=len(trades),
            wins=len(winners),
            losses=len(losers),
            total_pnl=sum(pnls),
            win_rate=len(winners) / len(trades) * 100,
            avg_win=sum(winners) / len(winners) if winners else 0.0,
            avg_loss=sum(losers) / len(losers) if losers else 0.0,
            avg_duration=sum(t.duration_ms for t in trades) / len(trades) / 1000 / 60,
            sharpe_ratio=risk.sharpe_ratio,
            max_drawdown=risk.max_drawdown,
            max_drawdown_percent=risk.max_drawdown_percent,
            profit_factor=risk.profit_factor,
            cvar=risk.cvar,
            payoff_ratio=risk.payoff_ratio,
            exit_reasons=reasons,
            recent_trades=tuple(trades[-RECENT_TRADES:]),
            t_statistic=t_stat,
            p_value=p_value,
        )


@dataclass
class TradeSimulator:
    """
    Replays one side of a symbol under one ParameterSet.

    Randomness (LIMIT non-fills, MARKET fallback, same-bar TP/SL ties) comes
    from an injectable source. With `seed` set, every run starts from the same
    stream, so identical inputs always give identical results regardless of
    evaluation order. With `seed=None` each run draws fresh entropy.
    """

    seed: Optional[int] = None

    def make_rng(self) -> RandomSource:
        return np.random.default_rng(self.seed)

    def simulate(
        self,
        dataset: SymbolDataset,
        params: ParameterSet,
        overrides: Optional[SimulationOverrides] = None,
        rng: Optional[RandomSource] = None,
    ) -> BacktestResult:
        """Run the simulation and summarize the ledger."""
        trades = self.run(dataset, params, overrides=overrides, rng=rng)
        return BacktestResult.from_trades(trades)

    def run(
        self,
        dataset: SymbolDataset,
        params: ParameterSet,
        overrides: Optional[SimulationOverrides] = None,
        rng: Optional[RandomSource] = None,
    ) -> List[CompletedTrade]:
        """Run the simulation and return the full trade ledger in exit order."""
        opts = (overrides or SimulationOverrides()).normalized()
        rng = rng if rng is not None else self.make_rng()

        events = dataset.events_for(params.side)
        bars: Sequence[PriceBar] = dataset.price_series
        if opts.time_range is not None:
            start, end = opts.time_range
            events = [e for e in events if start <= e.timestamp <= end]
            bars = [b for b in bars if start <= b.timestamp <= end]

        if not events:
            return []

        is_long = params.side.opens_long
        window_ms = max(MIN_WINDOW_MS, int(params.window_ms))
        cooldown_ms = max(0, int(params.cooldown_ms))
        hunter_cooldown_ms = max(0, int(params.hunter_cooldown_ms))

        slip = opts.slippage_multiplier
        tp_slippage = TP_EXIT_SLIPPAGE * slip
        sl_slippage = SL_EXIT_SLIPPAGE * slip
        sl_volatile_slippage = SL_VOLATILE_EXIT_SLIPPAGE * slip
        entry_slippage = MARKET_ENTRY_SLIPPAGE * slip

        notional = params.trade_size * params.leverage
        entry_fee = notional * (MAKER_FEE * ENTRY_MAKER_SHARE + TAKER_FEE * (1 - ENTRY_MAKER_SHARE))

        bar_times = [b.timestamp for b in bars]
        factors = volatility_factors([b.close for b in bars])
        window_volumes = rolling_window_sums(
            [e.timestamp for e in events], [e.volume for e in events], window_ms
        )

        open_positions: List[OpenPosition] = []
        ledger: List[CompletedTrade] = []

        def close(pos: OpenPosition, trigger: float, reason: ExitReason, when: int, vol_factor: float = 1.0):
            if reason == ExitReason.TAKE_PROFIT:
                rate = tp_slippage
            elif reason == ExitReason.STOP_LOSS:
                rate = sl_volatile_slippage if vol_factor > VOLATILE_FACTOR_THRESHOLD else sl_slippage
            else:
                rate = 0.0
            # Slippage always works against the position
            fill = trigger * (1 - rate) if pos.is_long else trigger * (1 + rate)

            if pos.is_long:
                gross = (fill - pos.entry_price) * pos.size
            else:
                gross = (pos.entry_price - fill) * pos.size

            exit_fee = notional * (MAKER_FEE if reason == ExitReason.END_OF_DATA else TAKER_FEE)
            commission = (entry_fee + exit_fee) * AVG_FILLS_PER_TRADE

            ledger.append(
                CompletedTrade(
                    side=PositionSide.LONG if pos.is_long else PositionSide.SHORT,
                    entry_price=pos.entry_price,
                    exit_price=fill,
                    trigger_price=trigger,
                    slippage=abs(fill - trigger),
                    gross_pnl=gross,
                    commission=commission,
                    net_pnl=gross - commission,
                    exit_reason=reason,
                    entry_time=pos.entry_time,
                    exit_time=when,
                    margin=params.trade_size,
                    volatility_factor=vol_factor if reason == ExitReason.STOP_LOSS else None,
                )
            )

        def evaluate_bar(idx: int):
            bar = bars[idx]
            still_open = []
            for pos in open_positions:
                if pos.is_long:
                    tp_hit = bar.high >= pos.tp_price
                    sl_hit = bar.low <= pos.sl_price
                else:
                    tp_hit = bar.low <= pos.tp_price
                    sl_hit = bar.high >= pos.sl_price

                if tp_hit and sl_hit:
                    sl_nearer = abs(pos.sl_price - pos.entry_price) < abs(pos.tp_price - pos.entry_price)
                    nearer_first = rng.random() < NEARER_LEVEL_FIRST_PROB
                    stop_first = sl_nearer if nearer_first else not sl_nearer
                    reason = ExitReason.STOP_LOSS if stop_first else ExitReason.TAKE_PROFIT
                elif tp_hit:
                    reason = ExitReason.TAKE_PROFIT
                elif sl_hit:
                    reason = ExitReason.STOP_LOSS
                else:
                    still_open.append(pos)
                    continue

                trigger = pos.sl_price if reason == ExitReason.STOP_LOSS else pos.tp_price
                close(pos, trigger, reason, bar.timestamp, float(factors[idx]))
            open_positions[:] = still_open

        bar_idx = 0
        last_entry = None
        last_hunter_entry = None

        for event, window_volume in zip(events, window_volumes):
            now = event.timestamp

            while bar_idx < len(bars) and bar_times[bar_idx] <= now:
                if open_positions:
                    evaluate_bar(bar_idx)
                bar_idx += 1

            if window_volume < params.threshold:
                continue
            if len(open_positions) >= params.max_positions:
                continue
            if last_entry is not None and now - last_entry < cooldown_ms:
                continue
            if last_hunter_entry is not None and now - last_hunter_entry < hunter_cooldown_ms:
                continue

            # LIMIT order may not fill
            if rng.random() > opts.limit_fill_rate:
                continue

            entry_price = event.price
            if rng.random() < opts.market_fallback_rate:
                entry_price = entry_price * (1 + entry_slippage) if is_long else entry_price * (1 - entry_slippage)

            if entry_price <= 0:
                continue

            tp_move = params.tp_percent / 100
            sl_move = params.sl_percent / 100
            open_positions.append(
                OpenPosition(
                    entry_price=entry_price,
                    entry_time=now,
                    tp_price=entry_price * (1 + tp_move) if is_long else entry_price * (1 - tp_move),
                    sl_price=entry_price * (1 - sl_move) if is_long else entry_price * (1 + sl_move),
                    is_long=is_long,
                    size=notional / entry_price,
                )
            )
            last_entry = now
            last_hunter_entry = now

        while bar_idx < len(bars):
            if open_positions:
                evaluate_bar(bar_idx)
            bar_idx += 1

        if open_positions:
            if bars:
                last_price, last_time = bars[-1].close, bars[-1].timestamp
            else:
                last_price, last_time = events[-1].price, events[-1].timestamp
            for pos in open_positions:
                price = last_price if last_price and last_price > 0 else pos.entry_price
                close(pos, price, ExitReason.END_OF_DATA, last_time)
            open_positions.clear()

        return ledger
