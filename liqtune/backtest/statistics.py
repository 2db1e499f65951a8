"""
Numeric helpers over price and liquidation series.

Everything here is a pure function of its inputs:
- Percentiles (linear interpolation between closest ranks)
- Absolute-return volatility of closes
- ATR with Wilder smoothing
- Rolling high/low range as a percent of the low
- Short-lookback volatility factor used for stop slippage
- Inter-event gap distribution
- Trailing-window volume sums
"""

import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence

import numpy as np
import pandas as pd

from liqtune.core.models import PriceBar

GAP_PERCENTILES = (0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 0.95, 0.98)
MIN_GAP_SECONDS = 0.5
MAX_GAP_SECONDS = 12 * 60 * 60
DEFAULT_AVG_GAP_SECONDS = 60.0

# Average absolute bar return that maps to a volatility factor of 1.0
NORMAL_BAR_RETURN = 0.005


# ---------------------------------------------------------------------------
# Rounding and candidate-set helpers
# ---------------------------------------------------------------------------


def round_half_up(value: float, ndigits: int = 0) -> float:
    """Round halves away from zero on the positive side (2.5 -> 3, not 2)."""
    scale = 10 ** ndigits
    return math.floor(value * scale + 0.5) / scale


def round_to_step(value: float, step: float) -> float:
    return round_half_up(value / step) * step


def dedupe_and_sort(values: Iterable[float]) -> List[float]:
    """Unique, finite, strictly positive values in ascending order."""
    clean = set()
    for v in values:
        if v is None:
            continue
        v = float(v)
        if math.isfinite(v) and v > 0:
            clean.add(v)
    return sorted(clean)


def sample_evenly(values: Iterable[float], max_count: int, keep_all: bool = False) -> List[float]:
    """Deterministic even-stride downsample that always keeps both extremes."""
    ordered = dedupe_and_sort(values)
    if keep_all or max_count <= 0 or len(ordered) <= max_count:
        return ordered
    if max_count == 1:
        return [ordered[0]]
    step = (len(ordered) - 1) / (max_count - 1)
    picked = [ordered[int(round_half_up(i * step))] for i in range(max_count)]
    return dedupe_and_sort(picked)


def compute_percentiles(values: Sequence[float], percentiles: Iterable[float]) -> Dict[float, float]:
    """Linear-interpolated percentiles keyed by the requested fraction.

    p <= 0 returns the minimum, p >= 1 the maximum. Empty input returns {}.
    """
    if len(values) == 0:
        return {}
    arr = np.sort(np.asarray(values, dtype=float))
    results = {}
    for p in percentiles:
        if p <= 0:
            results[p] = float(arr[0])
        elif p >= 1:
            results[p] = float(arr[-1])
        else:
            results[p] = float(np.quantile(arr, p, method="linear"))
    return results


# ---------------------------------------------------------------------------
# Price statistics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VolatilityStats:
    """Absolute close-to-close returns, in percent."""

    avg_abs_return: float = 0.5
    perc90: float = 1.0
    perc95: float = 1.5


@dataclass(frozen=True)
class AtrStats:
    """ATR series summary, in price units."""

    atr: float = 0.0
    median: float = 0.0
    p90: float = 0.0
    max: float = 0.0

    def as_percent_of(self, price: float, fallback: VolatilityStats) -> "AtrStats":
        """Convert to percent of price, substituting return stats where ATR is zero."""
        divisor = price if price and price > 0 else 1.0

        def pct(v: float) -> float:
            return v / divisor * 100

        return AtrStats(
            atr=pct(self.atr) if self.atr > 0 else fallback.perc90,
            median=pct(self.median) if self.median > 0 else fallback.avg_abs_return,
            p90=pct(self.p90) if self.p90 > 0 else fallback.perc95,
            max=pct(self.max) if self.max > 0 else fallback.perc95 * 1.5,
        )


@dataclass(frozen=True)
class RangeStats:
    """Percentiles of the rolling (max high - min low) / min low range, in percent."""

    median: float = 0.0
    range80: float = 0.0
    range90: float = 0.0
    range95: float = 0.0
    range98: float = 0.0


def _closes(bars: Sequence[PriceBar]) -> np.ndarray:
    return np.fromiter((b.close for b in bars), dtype=float, count=len(bars))


def price_volatility(bars: Sequence[PriceBar]) -> VolatilityStats:
    if len(bars) < 2:
        return VolatilityStats()

    closes = _closes(bars)
    prev, curr = closes[:-1], closes[1:]
    valid = prev > 0
    if not valid.any():
        return VolatilityStats()

    returns = np.abs((curr[valid] - prev[valid]) / prev[valid] * 100)
    returns = returns[np.isfinite(returns)]
    if returns.size == 0:
        return VolatilityStats()

    avg = float(returns.mean())
    pct = compute_percentiles(returns, (0.9, 0.95))
    perc90 = pct[0.9] or avg
    perc95 = pct[0.95] or perc90 or avg
    return VolatilityStats(avg_abs_return=avg, perc90=perc90, perc95=perc95)


def atr_stats(bars: Sequence[PriceBar], period: int = 14) -> AtrStats:
    """Wilder ATR seeded with the mean of the first `period` true ranges."""
    if len(bars) <= period:
        return AtrStats()

    trs = []
    for prev, curr in zip(bars[:-1], bars[1:]):
        high = curr.high if math.isfinite(curr.high) else curr.close
        low = curr.low if math.isfinite(curr.low) else curr.close
        prev_close = prev.close if math.isfinite(prev.close) else prev.open
        tr = max(high - low, abs(high - prev_close), abs(low - prev_close))
        if math.isfinite(tr):
            trs.append(tr)

    if not trs:
        return AtrStats()

    running = sum(trs[:period]) / period
    series = [running]
    for tr in trs[period:]:
        running = (running * (period - 1) + tr) / period
        series.append(running)

    ordered = sorted(series)
    median = ordered[len(ordered) // 2] or 0.0
    p90 = ordered[min(int(len(ordered) * 0.9), len(ordered) - 1)] or median
    return AtrStats(
        atr=series[-1] or median,
        median=median,
        p90=p90,
        max=ordered[-1] or p90,
    )


def range_stats(bars: Sequence[PriceBar], window: int = 60) -> RangeStats:
    if len(bars) == 0:
        return RangeStats()

    frame = pd.DataFrame(
        {
            "high": [b.high if math.isfinite(b.high) else b.close for b in bars],
            "low": [b.low if math.isfinite(b.low) else b.close for b in bars],
        }
    )
    invalid = frame["low"] <= 0
    frame.loc[invalid, ["high", "low"]] = np.nan

    window = max(1, int(round_half_up(window)))
    max_high = frame["high"].rolling(window, min_periods=1).max()
    min_low = frame["low"].rolling(window, min_periods=1).min()
    ranges = ((max_high - min_low) / min_low * 100).to_numpy()
    ranges = ranges[np.isfinite(ranges)]
    if ranges.size == 0:
        return RangeStats()

    pct = compute_percentiles(ranges, (0.5, 0.8, 0.9, 0.95, 0.98))
    return RangeStats(
        median=pct[0.5] or 0.0,
        range80=pct[0.8] or pct[0.5] or 0.0,
        range90=pct[0.9] or pct[0.8] or 0.0,
        range95=pct[0.95] or pct[0.9] or 0.0,
        range98=pct[0.98] or pct[0.95] or 0.0,
    )


def volatility_factors(closes: Sequence[float], lookback: int = 20) -> np.ndarray:
    """Per-bar factor = mean |return| over the trailing lookback / 0.5%, clamped [0.5, 3].

    Bars with fewer than two prices in their window, or no valid returns, get 1.0.
    """
    prices = np.asarray(closes, dtype=float)
    n = prices.size
    factors = np.ones(n, dtype=float)
    if n < 2:
        return factors

    prev, curr = prices[:-1], prices[1:]
    valid = prev > 0
    safe_prev = np.where(valid, prev, 1.0)
    rets = np.where(valid, np.abs((curr - prev) / safe_prev), 0.0)

    # returns[k-1] is the move from bar k-1 to bar k
    ret_cum = np.concatenate(([0.0], np.cumsum(rets)))
    cnt_cum = np.concatenate(([0], np.cumsum(valid.astype(int))))

    idx = np.arange(n)
    start = np.maximum(0, idx - lookback)
    # window [start, i] holds returns for bars start+1..i
    total = ret_cum[idx] - ret_cum[start]
    count = cnt_cum[idx] - cnt_cum[start]
    with np.errstate(divide="ignore", invalid="ignore"):
        avg = np.where(count > 0, total / np.maximum(count, 1), np.nan)
    scaled = np.clip(avg / NORMAL_BAR_RETURN, 0.5, 3.0)
    return np.where(np.isnan(scaled), 1.0, scaled)


# ---------------------------------------------------------------------------
# Liquidation timing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GapStats:
    """Distribution of seconds between consecutive liquidations of a symbol."""

    gaps: List[float] = field(default_factory=list)
    avg_gap_sec: float = DEFAULT_AVG_GAP_SECONDS
    percentiles: Dict[float, float] = field(default_factory=dict)

    @property
    def has_gaps(self) -> bool:
        return len(self.gaps) > 0


def gap_stats(timestamps: Sequence[int]) -> GapStats:
    """Gaps shorter than 0.5s (same burst) or longer than 12h (downtime) are ignored."""
    if len(timestamps) < 2:
        return GapStats()
    ts = np.sort(np.asarray(timestamps, dtype=float))
    diffs = np.diff(ts) / 1000.0
    keep = (diffs >= MIN_GAP_SECONDS) & (diffs <= MAX_GAP_SECONDS)
    gaps = diffs[keep]
    if gaps.size == 0:
        return GapStats()
    return GapStats(
        gaps=gaps.tolist(),
        avg_gap_sec=float(gaps.mean()),
        percentiles=compute_percentiles(gaps, GAP_PERCENTILES),
    )


def rolling_window_sums(
    timestamps: Sequence[int], volumes: Sequence[float], window_ms: int
) -> List[float]:
    """Volume in [t - window_ms, t] ending at each event, using a sliding left pointer.

    Timestamps must be ascending. Events sharing a timestamp with the current one
    but appearing later in the sequence are not yet counted.
    """
    sums = []
    left = 0
    running = 0.0
    for i, t in enumerate(timestamps):
        running += volumes[i]
        window_start = t - window_ms
        while timestamps[left] < window_start:
            running -= volumes[left]
            left += 1
        sums.append(running)
    return sums
