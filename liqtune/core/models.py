"""
liqtune Core Data Models

Immutable dataclasses for the historical inputs of a backtest and for the
parameter tuple that fully determines one simulator run.
"""

from dataclasses import dataclass, field, replace
from functools import cached_property
from typing import Dict, Optional, Tuple

from .enums import LiquidationSide

DAY_MS = 24 * 60 * 60 * 1000
MIN_SPAN_DAYS = 1 / 24


@dataclass(frozen=True)
class LiquidationEvent:
    """One forced liquidation printed by the exchange."""

    symbol: str
    side: LiquidationSide
    timestamp: int  # ms
    volume: float  # quote currency
    price: float


@dataclass(frozen=True)
class PriceBar:
    """One-minute OHLCV candle."""

    timestamp: int  # ms
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @classmethod
    def from_price(cls, timestamp: int, price: float) -> "PriceBar":
        """Degenerate bar used when only a trade price is known."""
        return cls(timestamp=timestamp, open=price, high=price, low=price, close=price)


@dataclass(frozen=True)
class LeverageBracket:
    """Exchange leverage tier: leverage ceiling for notional in [floor, cap)."""

    notional_floor: float
    notional_cap: float
    initial_leverage: float


@dataclass(frozen=True)
class ParameterSet:
    """Everything that determines a single (symbol, side) simulator run."""

    side: LiquidationSide
    threshold: float
    max_positions: int
    trade_size: float
    leverage: float
    tp_percent: float
    sl_percent: float
    cooldown_ms: int = 30_000
    hunter_cooldown_ms: int = 120_000
    window_ms: int = 60_000

    def with_timers(self, window_ms: int, cooldown_ms: int) -> "ParameterSet":
        return replace(self, window_ms=window_ms, cooldown_ms=cooldown_ms)

    def key(self) -> Tuple:
        """Hashable tuple with floats normalized to 6 decimals."""
        return (
            self.side.value,
            round(float(self.threshold), 6),
            int(self.max_positions),
            round(float(self.trade_size), 6),
            round(float(self.leverage), 6),
            round(float(self.tp_percent), 6),
            round(float(self.sl_percent), 6),
            int(self.cooldown_ms),
            int(self.hunter_cooldown_ms),
            int(self.window_ms),
        )


@dataclass(frozen=True)
class SymbolDataset:
    """Historical snapshot for one symbol, fetched once before the search.

    Never mutated after construction; simulator runs only read from it.
    """

    symbol: str
    events: Tuple[LiquidationEvent, ...]
    bars: Tuple[PriceBar, ...] = ()
    _by_side: Dict[LiquidationSide, Tuple[LiquidationEvent, ...]] = field(
        init=False, repr=False, compare=False, default_factory=dict
    )

    def __post_init__(self):
        ordered = tuple(sorted(self.events, key=lambda e: e.timestamp))
        object.__setattr__(self, "events", ordered)
        object.__setattr__(self, "bars", tuple(sorted(self.bars, key=lambda b: b.timestamp)))
        by_side = {
            side: tuple(e for e in ordered if e.side == side)
            for side in LiquidationSide
        }
        object.__setattr__(self, "_by_side", by_side)

    def events_for(self, side: LiquidationSide) -> Tuple[LiquidationEvent, ...]:
        return self._by_side.get(side, ())

    @property
    def has_price_bars(self) -> bool:
        return len(self.bars) > 0

    @cached_property
    def price_series(self) -> Tuple[PriceBar, ...]:
        """Candles, or the liquidation prints of both sides when no candles exist."""
        if self.bars:
            return self.bars
        return tuple(PriceBar.from_price(e.timestamp, e.price) for e in self.events)

    @cached_property
    def span_days(self) -> float:
        """Days between first and last liquidation, floored at one hour."""
        if len(self.events) < 2:
            return MIN_SPAN_DAYS
        span = (self.events[-1].timestamp - self.events[0].timestamp) / DAY_MS
        return max(span, MIN_SPAN_DAYS)

    def volumes(self, side: LiquidationSide) -> Tuple[float, ...]:
        return tuple(e.volume for e in self.events_for(side) if e.volume > 0)

    @property
    def last_close(self) -> Optional[float]:
        if not self.bars:
            return None
        return self.bars[-1].close
