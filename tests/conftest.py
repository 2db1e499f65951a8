"""Shared builders for liqtune tests."""

import sys
from pathlib import Path
from typing import Iterable, List

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from liqtune.core.enums import LiquidationSide
from liqtune.core.models import LiquidationEvent, PriceBar, SymbolDataset

BASE_TS = 1_700_000_000_000
MINUTE = 60_000


class ScriptedRng:
    """Returns queued values from random(), then `default` once exhausted."""

    def __init__(self, values: Iterable[float] = (), default: float = 0.0):
        self.values = list(values)
        self.default = default
        self.calls = 0

    def random(self) -> float:
        self.calls += 1
        if self.values:
            return self.values.pop(0)
        return self.default


def make_event(
    ts: int,
    side: LiquidationSide = LiquidationSide.SELL,
    volume: float = 6000.0,
    price: float = 100.0,
    symbol: str = "BTCUSDT",
) -> LiquidationEvent:
    return LiquidationEvent(symbol=symbol, side=side, timestamp=ts, volume=volume, price=price)


def make_bar(ts: int, close: float, high: float = None, low: float = None, open_: float = None) -> PriceBar:
    return PriceBar(
        timestamp=ts,
        open=close if open_ is None else open_,
        high=close if high is None else high,
        low=close if low is None else low,
        close=close,
    )


def oscillating_dataset(symbol: str = "BTCUSDT", minutes: int = 600, price: float = 100.0) -> SymbolDataset:
    """Bars swinging +-1.5% around `price` with liquidations on both sides every few minutes."""
    bars: List[PriceBar] = []
    for i in range(minutes):
        phase = (i % 20) - 10
        close = price * (1 + phase * 0.0015)
        bars.append(make_bar(BASE_TS + i * MINUTE, close, high=close * 1.002, low=close * 0.998))

    events: List[LiquidationEvent] = []
    for i in range(0, minutes - 5, 3):
        side = LiquidationSide.SELL if (i // 3) % 2 == 0 else LiquidationSide.BUY
        volume = 2000.0 + (i * 37) % 9000
        events.append(
            make_event(BASE_TS + i * MINUTE + 1_000, side=side, volume=volume, price=bars[i].close, symbol=symbol)
        )
    return SymbolDataset(symbol=symbol, events=tuple(events), bars=tuple(bars))


@pytest.fixture
def scripted_rng():
    return ScriptedRng


@pytest.fixture
def synthetic_dataset():
    return oscillating_dataset()
