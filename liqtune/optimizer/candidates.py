"""
Candidate value generation per tunable parameter.

Each generator blends three sources:
- fixed ladders that cover the sensible range for any symbol
- values derived from the symbol's own data (percentiles, ATR, gap timing)
- the live configuration and simple multiples of it

and then downsamples with an even stride to the mode's cap. Every generator
returns at least one value.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from liqtune.backtest.statistics import (
    AtrStats,
    GapStats,
    VolatilityStats,
    compute_percentiles,
    dedupe_and_sort,
    round_half_up,
    round_to_step,
    sample_evenly,
)
from liqtune.config.optimizer_config import DEFAULT_THRESHOLD, RunConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Fixed ladders
# ---------------------------------------------------------------------------

LARGE_SAMPLE_PERCENTILES = (
    0.05, 0.08, 0.1, 0.12, 0.15, 0.18, 0.20, 0.25, 0.30, 0.35, 0.40, 0.45, 0.50,
    0.55, 0.60, 0.65, 0.70, 0.75, 0.80, 0.85, 0.90, 0.93, 0.95, 0.97, 0.98, 0.99,
)
MEDIUM_SAMPLE_PERCENTILES = (
    0.08, 0.1, 0.12, 0.15, 0.20, 0.25, 0.30, 0.35, 0.40, 0.45, 0.50,
    0.55, 0.60, 0.65, 0.70, 0.75, 0.80, 0.85, 0.90, 0.95, 0.97, 0.99,
)
SMALL_SAMPLE_PERCENTILES = (
    0.1, 0.15, 0.20, 0.25, 0.30, 0.35, 0.40, 0.45, 0.50, 0.60, 0.70, 0.80, 0.90, 0.95, 0.98,
)
LOW_TAIL_BUCKETS = 8
LOW_TAIL_SKEW = 1.8
THRESHOLD_STEP = 10.0

TP_LADDER = (0.1, 0.15, 0.2, 0.25, 0.35, 0.5, 0.75, 1, 1.25, 1.5, 2, 2.5, 3, 4, 5, 7.5, 10)
SL_LADDER = (0.5, 0.75, 1, 1.25, 1.5, 2, 2.5, 3, 4, 5, 6, 7.5, 10, 12.5, 15)
LEVERAGE_LADDER = (5, 7.5, 10, 12.5, 15, 17.5, 20, 25)
MAX_LEVERAGE = 25.0
MARGIN_MULTIPLES = (0.9, 1, 1.1, 1.25, 1.5, 1.75, 2, 2.5, 3)

WINDOW_DEFAULTS_SEC = (20, 30, 45, 60, 75, 90, 120, 150, 180, 240, 300)
COOLDOWN_DEFAULTS_SEC = (5, 10, 15, 20, 30, 45, 60, 90, 120, 180, 240, 300, 420, 600)

TP_BOUNDS = (0.1, 30.0)
SL_BOUNDS = (0.1, 40.0)
WINDOW_BOUNDS_SEC = (10, 600)
COOLDOWN_BOUNDS_SEC = (5, 900)

EXTREMES_LIMIT = 10


@dataclass(frozen=True)
class ThresholdCandidates:
    candidates: List[float]
    min_allowed: float


def min_dca_slots(range95: float) -> int:
    """Minimum DCA depth a symbol needs given its 95th-percentile hourly range."""
    if range95 is None or not range95 > 0:
        return 6
    if range95 >= 8:
        return 24
    if range95 >= 6:
        return 18
    if range95 >= 4:
        return 12
    if range95 >= 2:
        return 8
    return 6


def prune_to_extremes(values: Sequence[float], keep: int = 5) -> List[float]:
    """Keep the lowest and highest `keep` values of an over-long sorted list."""
    values = list(values)
    if len(values) <= EXTREMES_LIMIT:
        return values
    return values[:keep] + values[-keep:]


def _clamp_round(value: float, low: float, high: float) -> float:
    return max(low, min(round_half_up(value), high))


class CandidateGenerator:
    """Builds bounded, deterministic candidate sets for one symbol."""

    def __init__(self, run_config: Optional[RunConfig] = None):
        self.run_config = run_config or RunConfig()
        self.limits = self.run_config.limits
        self.keep_all = self.run_config.is_thorough

    def _sample(self, values, max_count: int) -> List[float]:
        return sample_evenly(values, max_count, keep_all=self.keep_all)

    # ------------------------------------------------------------------
    # Entry thresholds
    # ------------------------------------------------------------------

    def thresholds(self, volumes: Sequence[float], current: float) -> ThresholdCandidates:
        """Threshold candidates from the (symbol, side) liquidation size distribution."""
        volumes = [v for v in volumes if v > 0]
        if not volumes:
            fallback = current if current and current > 0 else DEFAULT_THRESHOLD
            return ThresholdCandidates(candidates=[fallback], min_allowed=current or 0.0)

        min_pctl = self.run_config.min_threshold_pctl
        if len(volumes) > 5000:
            targets = set(LARGE_SAMPLE_PERCENTILES)
        elif len(volumes) > 1500:
            targets = set(MEDIUM_SAMPLE_PERCENTILES)
        else:
            targets = set(SMALL_SAMPLE_PERCENTILES)
        targets.add(min(0.99, max(0.01, min_pctl)))

        # Denser sampling of the low tail, where most of the trigger frequency lives
        for i in range(1, LOW_TAIL_BUCKETS + 1):
            p = (i / (LOW_TAIL_BUCKETS + 1)) ** LOW_TAIL_SKEW
            targets.add(min(0.995, max(0.02, p)))

        pct = compute_percentiles(volumes, sorted(targets))
        candidates = [round_to_step(v, THRESHOLD_STEP) for v in pct.values() if v > 0]

        tenth = pct.get(0.1)
        min_threshold = round_to_step(tenth, THRESHOLD_STEP) if tenth else 0.0
        if min_threshold > 0:
            candidates.append(min_threshold)
        if current and current > 0:
            candidates.append(current)

        floor_raw = None
        for p in (min_pctl, 0.5, 0.45, 0.40, 0.35, 0.30, 0.25):
            value = pct.get(p)
            if value and value > 0:
                floor_raw = value
                break
        if not floor_raw:
            floor_raw = min_threshold or current or 0.0
        min_allowed = max(round_to_step(floor_raw, THRESHOLD_STEP), min_threshold)

        # Fill wide gaps between neighbours with a midpoint and a low-weighted point
        ordered = dedupe_and_sort(candidates)
        filled = list(ordered)
        for lo, hi in zip(ordered[:-1], ordered[1:]):
            gap = hi - lo
            if gap > lo * 0.5 and gap > 100:
                midpoint = round_to_step((lo + hi) / 2, THRESHOLD_STEP)
                if lo < midpoint < hi:
                    filled.append(midpoint)
                weighted = round_to_step(lo * 0.7 + hi * 0.3, THRESHOLD_STEP)
                if lo < weighted < hi:
                    filled.append(weighted)

        sampled = self._sample(filled, self.limits.threshold_max)
        if not self.keep_all:
            sampled = [v for v in sampled if v >= min_allowed]
        if not sampled:
            sampled = [min_allowed or current or min_threshold or DEFAULT_THRESHOLD]

        return ThresholdCandidates(candidates=sampled, min_allowed=min_allowed)

    # ------------------------------------------------------------------
    # Exits
    # ------------------------------------------------------------------

    def take_profits(
        self, vol: VolatilityStats, current: float, atr_pct: Optional[AtrStats] = None
    ) -> List[float]:
        base = max(vol.avg_abs_return or 0.3, 0.1)
        high_vol = max(vol.perc95 or base * 2, base)
        mid_vol = max(vol.perc90 or base, base)

        atr_base = (atr_pct.atr if atr_pct else 0) or base
        atr_median = (atr_pct.median if atr_pct else 0) or atr_base
        atr90 = (atr_pct.p90 if atr_pct else 0) or max(atr_median * 1.5, atr_base * 1.5)
        atr_max = (atr_pct.max if atr_pct else 0) or max(atr90 * 1.5, atr_base * 2)

        anchors = []
        if current and current > 0:
            anchors = [current * m for m in (1, 0.5, 0.75, 1.25, 1.5, 2)]

        dynamic = [
            base * 0.5, base * 0.75, base, base * 1.25, base * 1.5,
            mid_vol, high_vol, high_vol * 1.5, high_vol * 2,
            atr_base, atr_median, atr90, atr_max, atr_median * 0.75, atr_max * 1.25,
        ]
        raw = [round_half_up(v, 2) for v in (*TP_LADDER, *dynamic, *anchors)]
        raw = [v for v in raw if 0.05 < v <= 40]

        low, high = TP_BOUNDS
        result = [v for v in self._sample(raw, self.limits.tp_max) if low <= v <= high]
        return result or [min(max(current or 1.0, low), high)]

    def stop_losses(
        self, vol: VolatilityStats, current: float, atr_pct: Optional[AtrStats] = None
    ) -> List[float]:
        base = max(vol.perc95 or vol.avg_abs_return * 2 or current or 1, 0.5)
        atr_base = (atr_pct.atr if atr_pct else 0) or base
        atr_median = (atr_pct.median if atr_pct else 0) or atr_base
        atr90 = (atr_pct.p90 if atr_pct else 0) or max(atr_median * 1.5, base)
        atr_max = (atr_pct.max if atr_pct else 0) or max(atr90 * 1.5, base * 2)

        anchors = []
        if current and current > 0:
            anchors = [current * m for m in (1, 0.5, 0.75, 1.25, 1.5, 2, 3)]

        dynamic = [
            base * 0.5, base * 0.75, base, base * 1.25, base * 1.5, base * 2, base * 3,
            atr_base, atr_median, atr90, atr_max, atr_median * 0.5,
        ]
        raw = [round_half_up(v, 2) for v in (*SL_LADDER, *dynamic, *anchors)]
        raw = [v for v in raw if 0.1 < v <= 80]

        low, high = SL_BOUNDS
        result = [v for v in self._sample(raw, self.limits.sl_max) if low <= v <= high]
        return result or [min(max(current or 5.0, low), high)]

    # ------------------------------------------------------------------
    # Sizing
    # ------------------------------------------------------------------

    def leverages(self, current: float) -> List[float]:
        values = [v for v in dedupe_and_sort((current, *LEVERAGE_LADDER)) if v <= MAX_LEVERAGE]
        return self._sample(values, self.limits.leverage_max) or [current]

    def margins(
        self,
        capital_budget: float,
        current_margin: float,
        min_margin: float = 0.0,
        min_required: float = 0.0,
    ) -> List[float]:
        clamped_min = max(0.0, min(capital_budget, min_margin or 0.0))
        if current_margin and current_margin > 0:
            base = max(clamped_min, current_margin)
        else:
            base = max(clamped_min, min(capital_budget, min_required or capital_budget * 0.5))

        generated = [min(capital_budget, max(clamped_min, base * m)) for m in MARGIN_MULTIPLES]
        generated += [
            current_margin,
            min_required,
            capital_budget * 0.6,
            capital_budget * 0.85,
            capital_budget,
        ]
        values = [v for v in dedupe_and_sort(generated) if v <= capital_budget + 1e-6]
        result = self._sample(values, self.limits.margin_max)
        if result:
            return result
        return [clamped_min if clamped_min > 0 else max(current_margin or 0.0, 1.0)]

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def time_windows(self, gaps: GapStats, current_ms: int, vol: VolatilityStats) -> List[int]:
        """Rolling-window lengths (ms) from inter-liquidation timing."""
        low, high = WINDOW_BOUNDS_SEC
        seconds = set(WINDOW_DEFAULTS_SEC)

        if gaps.has_gaps:
            for sec in gaps.percentiles.values():
                seconds.add(_clamp_round(sec, low, high))
            for mult in (0.5, 0.75, 1, 1.25, 1.5, 2, 3):
                seconds.add(_clamp_round(gaps.avg_gap_sec * mult, low, high))

        if vol.perc95 and vol.perc95 > 0:
            if vol.perc95 >= 3:
                seconds.update((15, 20, 25, 30))
            elif vol.perc95 <= 1:
                seconds.update((150, 180, 210, 240, 300, 360))

        if current_ms and current_ms > 0:
            seconds.add(max(low, round_half_up(current_ms / 1000)))

        filtered = [s for s in dedupe_and_sort(seconds) if low <= s <= high]
        sampled = self._sample(filtered, self.limits.window_max)
        return [int(s * 1000) for s in sampled] or [int(current_ms or 60_000)]

    def cooldowns(
        self,
        gaps: GapStats,
        current_ms: int,
        window_candidates_ms: Sequence[int],
        vol: VolatilityStats,
    ) -> List[int]:
        """Per-side cooldowns (ms); also scaled from the longest window candidate."""
        low, high = COOLDOWN_BOUNDS_SEC
        seconds = set(COOLDOWN_DEFAULTS_SEC)

        if gaps.has_gaps:
            for sec in gaps.percentiles.values():
                seconds.add(_clamp_round(sec, low, high))
            for mult in (1, 1.25, 1.5, 2, 3, 4):
                seconds.add(_clamp_round(gaps.avg_gap_sec * mult, low, high))

        if vol.perc95 and vol.perc95 > 0:
            if vol.perc95 >= 3:
                seconds.update((5, 10, 15, 20, 25))
            elif vol.perc95 <= 1:
                seconds.update((120, 180, 240, 300, 360, 420))

        window_sec = [max(low, round_half_up(ms / 1000)) for ms in window_candidates_ms]
        if window_sec:
            max_window, min_window = max(window_sec), min(window_sec)
            for mult in (0.5, 0.75, 1, 1.5, 2, 3):
                seconds.add(max(min_window, min(round_half_up(max_window * mult), high)))

        if current_ms and current_ms > 0:
            seconds.add(max(low, round_half_up(current_ms / 1000)))

        filtered = [s for s in dedupe_and_sort(seconds) if low <= s <= high]
        sampled = self._sample(filtered, self.limits.cooldown_max)
        return [int(s * 1000) for s in sampled] or [int(current_ms or 30_000)]
