"""
Liquidation Flow Analytics

Simulator-free views of the liquidation history, used alongside the search to
sanity-check thresholds:

- rolling-window trigger counts for a (symbol, side, threshold, window)
- a threshold sweep over fixed USDT levels
- per-symbol profitability ranking from raw trigger counts
- cascade detection: one-minute buckets with clustered liquidations
"""

import logging
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import pandas as pd

from liqtune.backtest.statistics import rolling_window_sums
from liqtune.config.optimizer_config import (
    DEFAULT_LEVERAGE,
    DEFAULT_THRESHOLD_WINDOW_MS,
    DEFAULT_TP_PERCENT,
    DEFAULT_TRADE_SIZE,
    SymbolConfig,
)
from liqtune.core.enums import LiquidationSide
from liqtune.core.models import DAY_MS, MIN_SPAN_DAYS, SymbolDataset

logger = logging.getLogger(__name__)

THRESHOLD_LEVELS = (1000, 2000, 3000, 5000, 8000, 10000, 15000, 20000, 25000, 50000)

CASCADE_MIN_COUNT = 3
CASCADE_MIN_VOLUME = 10_000.0
MINUTE_MS = 60_000

EVENT_COLUMNS = ["symbol", "side", "timestamp", "volume", "price"]


def profit_per_trade(config: SymbolConfig) -> float:
    """Gross profit of one take-profit exit at the configured size."""
    trade_size = config.trade_size or DEFAULT_TRADE_SIZE
    leverage = config.leverage or DEFAULT_LEVERAGE
    tp = config.tp_percent or DEFAULT_TP_PERCENT
    return trade_size * leverage * (tp / 100)


def events_frame(datasets: Iterable[SymbolDataset]) -> pd.DataFrame:
    rows = [
        {
            "symbol": e.symbol,
            "side": e.side.value,
            "timestamp": e.timestamp,
            "volume": e.volume,
            "price": e.price,
        }
        for ds in datasets
        for e in ds.events
    ]
    if not rows:
        return pd.DataFrame(columns=EVENT_COLUMNS)
    return pd.DataFrame(rows, columns=EVENT_COLUMNS)


# ---------------------------------------------------------------------------
# Rolling windows
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WindowAnalysis:
    total_triggers: int = 0
    avg_window_volume: float = 0.0
    max_window_volume: float = 0.0
    daily_triggers: float = 0.0
    span_days: float = MIN_SPAN_DAYS

    def to_dict(self) -> dict:
        return asdict(self)


def analyze_rolling_windows(
    dataset: SymbolDataset,
    side: LiquidationSide,
    threshold: float,
    window_ms: int = DEFAULT_THRESHOLD_WINDOW_MS,
) -> WindowAnalysis:
    """Count events whose trailing window volume reaches `threshold`."""
    events = dataset.events_for(side)
    if not events:
        return WindowAnalysis()

    timestamps = [e.timestamp for e in events]
    sums = rolling_window_sums(timestamps, [e.volume for e in events], window_ms)
    triggers = sum(1 for s in sums if s >= threshold)
    span_days = max((timestamps[-1] - timestamps[0]) / DAY_MS, MIN_SPAN_DAYS)

    return WindowAnalysis(
        total_triggers=triggers,
        avg_window_volume=sum(sums) / len(sums),
        max_window_volume=max(sums),
        daily_triggers=triggers / span_days,
        span_days=span_days,
    )


@dataclass(frozen=True)
class ThresholdSweepRow:
    threshold: float
    daily_triggers: float
    daily_profit: float
    is_current: bool = False


def threshold_sweep(
    dataset: SymbolDataset,
    side: LiquidationSide,
    config: SymbolConfig,
    levels: Sequence[float] = THRESHOLD_LEVELS,
) -> List[ThresholdSweepRow]:
    """Daily triggers and naive daily profit at each fixed threshold level."""
    window_ms = config.resolved_window_ms
    per_trade = profit_per_trade(config)
    current = config.resolved_long_threshold if side.opens_long else config.resolved_short_threshold

    rows = []
    for level in levels:
        analysis = analyze_rolling_windows(dataset, side, level, window_ms)
        rows.append(
            ThresholdSweepRow(
                threshold=float(level),
                daily_triggers=analysis.daily_triggers,
                daily_profit=analysis.daily_triggers * per_trade,
                is_current=float(level) == current,
            )
        )
    return rows


# ---------------------------------------------------------------------------
# Profitability ranking
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SymbolProfitability:
    symbol: str
    total_triggers: int
    daily_triggers: float
    estimated_profit: float
    daily_profit: float
    profit_per_trade: float
    long_capture_rate: float  # percent
    short_capture_rate: float  # percent

    @property
    def capture_rate(self) -> float:
        return (self.long_capture_rate + self.short_capture_rate) / 2


def rank_symbol_profitability(
    datasets: Mapping[str, SymbolDataset],
    configs: Mapping[str, SymbolConfig],
) -> List[SymbolProfitability]:
    """Rank symbols by estimated daily profit from single-print triggers.

    Symbols without a config or without any trigger are left out.
    """
    ranking = []
    for symbol, config in configs.items():
        dataset = datasets.get(symbol)
        if dataset is None:
            continue
        frame = events_frame([dataset])
        if frame.empty:
            continue

        longs = frame[frame["side"] == LiquidationSide.SELL.value]
        shorts = frame[frame["side"] == LiquidationSide.BUY.value]
        long_triggers = int((longs["volume"] >= config.resolved_long_threshold).sum())
        short_triggers = int((shorts["volume"] >= config.resolved_short_threshold).sum())
        total = long_triggers + short_triggers
        if total == 0:
            continue

        per_trade = profit_per_trade(config)
        span_days = dataset.span_days
        estimated = total * per_trade
        ranking.append(
            SymbolProfitability(
                symbol=symbol,
                total_triggers=total,
                daily_triggers=total / span_days,
                estimated_profit=estimated,
                daily_profit=estimated / span_days,
                profit_per_trade=per_trade,
                long_capture_rate=long_triggers / len(longs) * 100 if len(longs) else 0.0,
                short_capture_rate=short_triggers / len(shorts) * 100 if len(shorts) else 0.0,
            )
        )

    ranking.sort(key=lambda s: s.daily_profit, reverse=True)
    return ranking


# ---------------------------------------------------------------------------
# Cascades
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CascadeSummary:
    symbol: str
    cascade_minutes: int
    avg_volume_per_minute: float
    max_liquidations_per_minute: int


def detect_cascades(
    datasets: Iterable[SymbolDataset],
    min_count: int = CASCADE_MIN_COUNT,
    min_volume: float = CASCADE_MIN_VOLUME,
) -> pd.DataFrame:
    """One row per (symbol, minute, side) bucket that qualifies as a cascade."""
    frame = events_frame(datasets)
    columns = ["symbol", "minute", "side", "liquidation_count", "total_volume"]
    if frame.empty:
        return pd.DataFrame(columns=columns)

    frame["minute"] = (frame["timestamp"] // MINUTE_MS) * MINUTE_MS
    buckets = (
        frame.groupby(["symbol", "minute", "side"], as_index=False)
        .agg(liquidation_count=("volume", "size"), total_volume=("volume", "sum"))
    )
    mask = (buckets["liquidation_count"] >= min_count) | (buckets["total_volume"] >= min_volume)
    return buckets.loc[mask, columns].sort_values(["symbol", "minute"]).reset_index(drop=True)


def summarize_cascades(
    cascades: pd.DataFrame, symbols: Optional[Iterable[str]] = None
) -> Dict[str, CascadeSummary]:
    if cascades.empty:
        return {}
    wanted = set(symbols) if symbols is not None else None
    summaries = {}
    for symbol, group in cascades.groupby("symbol"):
        if wanted is not None and symbol not in wanted:
            continue
        summaries[symbol] = CascadeSummary(
            symbol=symbol,
            cascade_minutes=len(group),
            avg_volume_per_minute=float(group["total_volume"].mean()),
            max_liquidations_per_minute=int(group["liquidation_count"].max()),
        )
    counts = {s: c.cascade_minutes for s, c in summaries.items()}
    logger.debug(f"Cascade minutes by symbol: {counts}")
    return summaries
