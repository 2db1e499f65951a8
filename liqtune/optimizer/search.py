"""
Per-symbol parameter search.

Stages (forward only):

    IDLE -> GENERATING_CANDIDATES -> COARSE_SEARCH -> REFINEMENT
         -> SCENARIO_STRESS_TEST -> DONE

1. The live configuration is simulated first and seeds the running best.
2. Coarse search walks leverage x margin x TP x SL (a SearchSpace), picking
   the best-PnL entry threshold per side for each combination.
3. Refinement sweeps rolling-window x cooldown around the winner.
4. The winner is stress-tested under harsher fill/slippage assumptions.

The running best is folded immutably: each step returns either the old best
or the challenger, never a mutated object. A failure after the baseline
degrades to the best found so far instead of aborting.

Usage:
    orchestrator = SearchOrchestrator(dataset, SymbolConfig(leverage=10), capital_budget=500)
    optimization = orchestrator.run()
    print(optimization.best.final_score, optimization.optimized_config())
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from liqtune.backtest.statistics import (
    AtrStats,
    RangeStats,
    VolatilityStats,
    atr_stats,
    gap_stats,
    price_volatility,
    range_stats,
    round_half_up,
)
from liqtune.backtest.trade_simulator import BacktestResult, SimulationOverrides, TradeSimulator
from liqtune.config.optimizer_config import HUNTER_COOLDOWN_MS, RunConfig, SymbolConfig
from liqtune.core.enums import LiquidationSide, RejectionReason, SearchStage
from liqtune.core.exceptions import OptimizationCancelled
from liqtune.core.models import LeverageBracket, ParameterSet, SymbolDataset
from liqtune.optimizer.cache import BacktestCache
from liqtune.optimizer.candidates import (
    CandidateGenerator,
    ThresholdCandidates,
    min_dca_slots,
    prune_to_extremes,
)
from liqtune.optimizer.progress import CancellationToken, ProgressReporter
from liqtune.optimizer.scenarios import ScenarioOutcome, ScenarioStressTester
from liqtune.optimizer.scoring import ScoreBreakdown, ScoringEngine
from liqtune.optimizer.tiers import max_positions_for_leverage

logger = logging.getLogger(__name__)

REFINEMENT_TOLERANCE = 1e-6
MIN_SIM_WINDOW_MS = 5_000
VWAP_THRESHOLD_DROP = 0.7

_STAGE_ORDER = list(SearchStage)

# Progress share of each stage within one symbol (percent)
_PROGRESS = {
    SearchStage.GENERATING_CANDIDATES: (0.0, 5.0),
    SearchStage.COARSE_SEARCH: (5.0, 80.0),
    SearchStage.REFINEMENT: (80.0, 95.0),
    SearchStage.SCENARIO_STRESS_TEST: (95.0, 100.0),
}


# ---------------------------------------------------------------------------
# Search bookkeeping
# ---------------------------------------------------------------------------


@dataclass
class SearchDiagnostics:
    """Counters describing one symbol's search."""

    symbol: str
    candidate_counts: Dict[str, int] = field(default_factory=dict)
    rejections: Dict[str, int] = field(default_factory=lambda: {r.value: 0 for r in RejectionReason})
    combinations_evaluated: int = 0
    combinations_accepted: int = 0
    scenarios_evaluated: int = 0
    tier_adjustments: int = 0
    backtests: Dict[str, int] = field(default_factory=lambda: {"executed": 0, "cacheHits": 0})
    duration_ms: Optional[float] = None
    scenario_reverted: bool = False
    errors: List[str] = field(default_factory=list)

    def reject(self, reason: RejectionReason) -> None:
        self.rejections[reason.value] = self.rejections.get(reason.value, 0) + 1

    @property
    def total_rejections(self) -> int:
        return sum(self.rejections.values())

    def to_dict(self) -> dict:
        return {
            "candidateCounts": dict(self.candidate_counts),
            "rejections": dict(self.rejections),
            "combinationsEvaluated": self.combinations_evaluated,
            "combinationsAccepted": self.combinations_accepted,
            "scenariosEvaluated": self.scenarios_evaluated,
            "tierAdjustments": self.tier_adjustments,
            "backtests": dict(self.backtests),
            "durationMs": self.duration_ms,
            "scenarioReverted": self.scenario_reverted,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class SideChoice:
    """Parameters and result chosen for one side."""

    params: ParameterSet
    result: BacktestResult


@dataclass(frozen=True)
class Candidate:
    """A fully simulated (long, short) combination and its score."""

    leverage: float
    margin: float
    tp_percent: float
    sl_percent: float
    long: SideChoice
    short: SideChoice
    score: ScoreBreakdown
    is_baseline: bool = False

    @property
    def final_score(self) -> float:
        return self.score.final_score

    @property
    def total_pnl(self) -> float:
        return self.long.result.total_pnl + self.short.result.total_pnl

    @property
    def window_ms(self) -> int:
        return self.long.params.window_ms

    @property
    def cooldown_ms(self) -> int:
        return self.long.params.cooldown_ms


def fold_best(best: Candidate, challenger: Optional[Candidate], tolerance: float = 0.0) -> Candidate:
    """Return the challenger only if it beats the best by more than `tolerance`."""
    if challenger is None or not challenger.score.is_finite:
        return best
    if challenger.final_score > best.final_score + tolerance:
        return challenger
    return best


@dataclass(frozen=True)
class SizingPoint:
    """Tier-checked leverage/margin pair with the DCA depth it allows per side."""

    leverage: float
    margin: float
    long_positions: int
    short_positions: int


class SearchSpace:
    """Leverage x margin x TP x SL with early-exit filters on sizing.

    Rejected sizing points are counted on the diagnostics and never yielded.
    """

    def __init__(
        self,
        leverages: Sequence[float],
        margins: Sequence[float],
        take_profits: Sequence[float],
        stop_losses: Sequence[float],
        long_trade_size: float,
        short_trade_size: float,
        required_long_slots: int,
        required_short_slots: int,
        brackets: Optional[Sequence[LeverageBracket]],
        diagnostics: SearchDiagnostics,
    ):
        self.leverages = list(leverages)
        self.margins = list(margins)
        self.take_profits = list(take_profits)
        self.stop_losses = list(stop_losses)
        self.long_trade_size = long_trade_size
        self.short_trade_size = short_trade_size
        self.required_long_slots = required_long_slots
        self.required_short_slots = required_short_slots
        self.brackets = brackets
        self.diagnostics = diagnostics

    @property
    def sizing_count(self) -> int:
        return len(self.leverages) * len(self.margins)

    def sizing_points(self) -> Iterator[SizingPoint]:
        for leverage in self.leverages:
            for margin in self.margins:
                point = self._check_sizing(leverage, margin)
                if point is not None:
                    yield point

    def _check_sizing(self, leverage: float, margin: float) -> Optional[SizingPoint]:
        diag = self.diagnostics
        if not (math.isfinite(margin) and margin > 0):
            diag.reject(RejectionReason.INVALID_MARGIN)
            return None
        if not (self.long_trade_size > 0 and self.short_trade_size > 0):
            diag.reject(RejectionReason.INVALID_TRADE_SIZE)
            return None

        long_slots = max(1, int(margin // self.long_trade_size))
        short_slots = max(1, int(margin // self.short_trade_size))

        tier_long = max_positions_for_leverage(self.long_trade_size, leverage, margin, self.brackets)
        tier_short = max_positions_for_leverage(self.short_trade_size, leverage, margin, self.brackets)
        if tier_long <= 0 or tier_short <= 0:
            diag.reject(RejectionReason.TIER_LIMIT)
            return None

        if tier_long < self.required_long_slots or tier_short < self.required_short_slots:
            diag.tier_adjustments += 1

        need_long = max(1, min(self.required_long_slots, tier_long))
        need_short = max(1, min(self.required_short_slots, tier_short))
        allowed_long = max(1, min(long_slots, tier_long))
        allowed_short = max(1, min(short_slots, tier_short))
        if allowed_long < need_long or allowed_short < need_short:
            diag.reject(RejectionReason.SLOT_DEPTH)
            return None

        return SizingPoint(leverage, margin, allowed_long, allowed_short)

    def combinations(self) -> Iterator[Tuple[SizingPoint, float, float]]:
        for point in self.sizing_points():
            for tp in self.take_profits:
                for sl in self.stop_losses:
                    yield point, tp, sl


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TierWarning:
    max_long_positions: int
    wanted_long_positions: int
    max_short_positions: int
    wanted_short_positions: int

    @property
    def message(self) -> str:
        return (
            f"Leverage tier limits will restrict DCA positions. "
            f"Max LONG: {self.max_long_positions} (wanted {self.wanted_long_positions}), "
            f"Max SHORT: {self.max_short_positions} (wanted {self.wanted_short_positions}). "
            f"Consider reducing leverage or trade size for more DCA room."
        )


@dataclass
class SymbolContext:
    """Inputs derived once per symbol during candidate generation."""

    long_trade_size: float
    short_trade_size: float
    current_margin: float
    current_leverage: float
    current_tp: float
    current_sl: float
    current_long_threshold: float
    current_short_threshold: float
    current_window_ms: int
    current_cooldown_ms: int
    base_long_positions: int
    base_short_positions: int
    volatility: VolatilityStats
    ranges: RangeStats
    atr_percent: AtrStats
    min_slots: int
    required_long_slots: int
    required_short_slots: int
    min_required_margin: float
    long_thresholds: ThresholdCandidates
    short_thresholds: ThresholdCandidates
    take_profits: List[float]
    stop_losses: List[float]
    leverages: List[float]
    margins: List[float]
    windows: List[int]
    cooldowns: List[int]

    @property
    def sim_window_ms(self) -> int:
        return max(MIN_SIM_WINDOW_MS, self.current_window_ms)


@dataclass
class SymbolOptimization:
    """Outcome of one symbol's search."""

    symbol: str
    current_config: SymbolConfig
    baseline: Candidate
    best: Candidate
    scenarios: ScenarioOutcome
    span_days: float
    capital_budget: float
    required_long_slots: int
    required_short_slots: int
    tier_warning: Optional[TierWarning]
    diagnostics: SearchDiagnostics
    stage: SearchStage
    degraded: bool = False

    @property
    def daily_factor(self) -> float:
        return 1 / self.span_days if self.span_days > 0 else 1.0

    @property
    def current_daily_pnl(self) -> float:
        return self.baseline.total_pnl * self.daily_factor

    @property
    def optimized_daily_pnl(self) -> float:
        return self.best.total_pnl * self.daily_factor

    @property
    def long_improvement(self) -> float:
        return (self.best.long.result.total_pnl - self.baseline.long.result.total_pnl) * self.daily_factor

    @property
    def short_improvement(self) -> float:
        return (self.best.short.result.total_pnl - self.baseline.short.result.total_pnl) * self.daily_factor

    @property
    def daily_improvement(self) -> float:
        return self.optimized_daily_pnl - self.current_daily_pnl

    def optimized_config(self) -> SymbolConfig:
        """Live config with the winning values, rounded for the exchange."""
        best = self.best
        current = self.current_config
        long_threshold = round_half_up(best.long.params.threshold)
        short_threshold = round_half_up(best.short.params.threshold)

        vwap = current.vwap_protection
        if vwap is not False:
            dropped = (
                best.long.params.threshold < max(1.0, current.resolved_long_threshold) * VWAP_THRESHOLD_DROP
                or best.short.params.threshold < max(1.0, current.resolved_short_threshold) * VWAP_THRESHOLD_DROP
            )
            if dropped:
                vwap = False

        return current.model_copy(
            update={
                "long_volume_threshold": float(long_threshold),
                "short_volume_threshold": float(short_threshold),
                "trade_size": round_half_up(best.long.params.trade_size, 2),
                "long_trade_size": round_half_up(best.long.params.trade_size, 2),
                "short_trade_size": round_half_up(best.short.params.trade_size, 2),
                "max_position_margin": round_half_up(best.margin, 2),
                "leverage": best.leverage,
                "tp_percent": round_half_up(best.tp_percent, 2),
                "sl_percent": round_half_up(best.sl_percent, 2),
                "vwap_protection": vwap,
                "threshold_time_window_ms": int(round(best.window_ms)),
                "threshold_cooldown_ms": int(round(best.cooldown_ms)),
            }
        )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class SearchOrchestrator:
    """Runs the staged search for one symbol over an immutable dataset."""

    def __init__(
        self,
        dataset: SymbolDataset,
        symbol_config: SymbolConfig,
        capital_budget: float,
        brackets: Optional[Sequence[LeverageBracket]] = None,
        run_config: Optional[RunConfig] = None,
        simulator: Optional[TradeSimulator] = None,
        progress: Optional[ProgressReporter] = None,
        cancel: Optional[CancellationToken] = None,
    ):
        self.dataset = dataset
        self.symbol = dataset.symbol
        self.symbol_config = symbol_config
        self.capital_budget = capital_budget
        self.brackets = list(brackets) if brackets else None
        self.run_config = run_config or RunConfig()
        self.simulator = simulator or TradeSimulator(seed=self.run_config.seed)
        self.progress = progress or ProgressReporter()
        self.cancel = cancel

        self.generator = CandidateGenerator(self.run_config)
        self.cache = BacktestCache(self.symbol)
        self.diagnostics = SearchDiagnostics(symbol=self.symbol)
        self.scoring: Optional[ScoringEngine] = None
        self._stage = SearchStage.IDLE

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @property
    def stage(self) -> SearchStage:
        return self._stage

    def _advance(self, stage: SearchStage) -> None:
        if _STAGE_ORDER.index(stage) < _STAGE_ORDER.index(self._stage):
            raise ValueError(f"Cannot move search from {self._stage.value} back to {stage.value}")
        if self.cancel is not None and stage != SearchStage.DONE:
            self.cancel.raise_if_cancelled(f"{stage.value} for {self.symbol}")
        self._stage = stage
        if stage in _PROGRESS:
            self.progress.emit(_PROGRESS[stage][0], f"{self.symbol}: {stage.value.replace('_', ' ')}")

    def _stage_progress(self, stage: SearchStage, fraction: float, label: str) -> None:
        start, end = _PROGRESS[stage]
        self.progress.emit(start + (end - start) * min(max(fraction, 0.0), 1.0), label)

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def _simulate(self, params: ParameterSet, overrides: Optional[SimulationOverrides] = None) -> BacktestResult:
        return self.cache.get_or_run(
            params,
            overrides,
            lambda: self.simulator.simulate(self.dataset, params, overrides=overrides),
        )

    def _side_params(
        self,
        ctx: SymbolContext,
        side: LiquidationSide,
        threshold: float,
        max_positions: int,
        leverage: float,
        tp: float,
        sl: float,
    ) -> ParameterSet:
        trade_size = ctx.long_trade_size if side == LiquidationSide.SELL else ctx.short_trade_size
        return ParameterSet(
            side=side,
            threshold=max(1.0, threshold),
            max_positions=max_positions,
            trade_size=trade_size,
            leverage=leverage,
            tp_percent=tp,
            sl_percent=sl,
            cooldown_ms=max(0, ctx.current_cooldown_ms),
            hunter_cooldown_ms=HUNTER_COOLDOWN_MS,
            window_ms=ctx.sim_window_ms,
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self) -> SymbolOptimization:
        started = time.perf_counter()
        degraded = False
        scenarios = ScenarioOutcome()

        self._advance(SearchStage.GENERATING_CANDIDATES)
        ctx = self._prepare()
        self.scoring = ScoringEngine(self.run_config, ctx.ranges)
        baseline = self._baseline(ctx)
        best = baseline

        try:
            self._advance(SearchStage.COARSE_SEARCH)
            best = self._coarse_search(ctx, best)

            self._advance(SearchStage.REFINEMENT)
            best = self._refine(ctx, best)

            if self.run_config.enable_scenarios:
                self._advance(SearchStage.SCENARIO_STRESS_TEST)
                best, scenarios = self._stress(best, baseline)
        except OptimizationCancelled:
            raise
        except Exception as e:
            degraded = True
            self.diagnostics.errors.append(f"{self._stage.value}: {e}")
            logger.exception(f"{self.symbol}: search failed during {self._stage.value}, keeping best so far")

        self._advance(SearchStage.DONE)
        self.progress.emit(100.0, f"{self.symbol}: done")

        self.diagnostics.backtests = self.cache.stats.to_dict()
        self.diagnostics.duration_ms = (time.perf_counter() - started) * 1000
        self._log_diagnostics()

        return SymbolOptimization(
            symbol=self.symbol,
            current_config=self.symbol_config,
            baseline=baseline,
            best=best,
            scenarios=scenarios,
            span_days=self.dataset.span_days,
            capital_budget=self.capital_budget,
            required_long_slots=ctx.required_long_slots,
            required_short_slots=ctx.required_short_slots,
            tier_warning=self._tier_warning(ctx, best),
            diagnostics=self.diagnostics,
            stage=self._stage,
            degraded=degraded,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _prepare(self) -> SymbolContext:
        cfg = self.symbol_config
        if not self.dataset.has_price_bars:
            logger.warning(f"{self.symbol}: no price candles, using liquidation prices")
        bars = self.dataset.price_series

        long_size = cfg.resolved_long_trade_size
        short_size = cfg.resolved_short_trade_size
        margin = cfg.resolved_margin
        base_long = max(1, int(margin // long_size))
        base_short = max(1, int(margin // short_size))

        vol = price_volatility(bars)
        ranges = range_stats(bars, 60)
        atr_pct = atr_stats(bars).as_percent_of(bars[-1].close if bars else 0.0, vol)

        min_slots = min_dca_slots(ranges.range95)
        required_long = max(base_long, min_slots)
        required_short = max(base_short, min_slots)
        base_slot_margin = max(base_long * long_size, base_short * short_size)
        min_required_margin = max(required_long * long_size, required_short * short_size)
        if self.capital_budget < min_required_margin:
            logger.warning(
                f"{self.symbol}: available capital ({self.capital_budget:.2f}) is below the "
                f"volatility-driven minimum margin ({min_required_margin:.2f}); search will be constrained"
            )

        current_window = cfg.resolved_window_ms
        current_cooldown = cfg.resolved_cooldown_ms
        if cfg.use_threshold:
            gaps = gap_stats([e.timestamp for e in self.dataset.events])
            windows = self.generator.time_windows(gaps, current_window, vol)
            cooldowns = self.generator.cooldowns(gaps, current_cooldown, windows, vol)
        else:
            windows, cooldowns = [current_window], [current_cooldown]

        current_long = cfg.resolved_long_threshold
        current_short = cfg.resolved_short_threshold
        long_thresholds = self.generator.thresholds(
            self.dataset.volumes(LiquidationSide.SELL), current_long or 1000.0
        )
        short_thresholds = self.generator.thresholds(
            self.dataset.volumes(LiquidationSide.BUY), current_short or 1000.0
        )

        tps = prune_to_extremes(self.generator.take_profits(vol, cfg.resolved_tp, atr_pct))
        sls = prune_to_extremes(self.generator.stop_losses(vol, cfg.resolved_sl, atr_pct))
        leverages = self.generator.leverages(cfg.resolved_leverage)
        margin_floor = min(self.capital_budget, max(min_required_margin, margin, base_slot_margin))
        margins = self.generator.margins(self.capital_budget, margin, margin_floor, min_required_margin)

        self.diagnostics.candidate_counts = {
            "longThreshold": len(long_thresholds.candidates),
            "shortThreshold": len(short_thresholds.candidates),
            "tp": len(tps),
            "sl": len(sls),
            "leverage": len(leverages),
            "margin": len(margins),
            "timeWindow": len(windows),
            "cooldown": len(cooldowns),
        }

        return SymbolContext(
            long_trade_size=long_size,
            short_trade_size=short_size,
            current_margin=margin,
            current_leverage=cfg.resolved_leverage,
            current_tp=cfg.resolved_tp,
            current_sl=cfg.resolved_sl,
            current_long_threshold=current_long,
            current_short_threshold=current_short,
            current_window_ms=current_window,
            current_cooldown_ms=current_cooldown,
            base_long_positions=base_long,
            base_short_positions=base_short,
            volatility=vol,
            ranges=ranges,
            atr_percent=atr_pct,
            min_slots=min_slots,
            required_long_slots=required_long,
            required_short_slots=required_short,
            min_required_margin=min_required_margin,
            long_thresholds=long_thresholds,
            short_thresholds=short_thresholds,
            take_profits=tps,
            stop_losses=sls,
            leverages=leverages,
            margins=margins,
            windows=windows,
            cooldowns=cooldowns,
        )

    def _baseline(self, ctx: SymbolContext) -> Candidate:
        """Simulate the live configuration exactly as configured."""
        long_params = self._side_params(
            ctx, LiquidationSide.SELL, ctx.current_long_threshold, ctx.base_long_positions,
            ctx.current_leverage, ctx.current_tp, ctx.current_sl,
        )
        short_params = self._side_params(
            ctx, LiquidationSide.BUY, ctx.current_short_threshold, ctx.base_short_positions,
            ctx.current_leverage, ctx.current_tp, ctx.current_sl,
        )
        long_result = self._simulate(long_params)
        short_result = self._simulate(short_params)
        return Candidate(
            leverage=ctx.current_leverage,
            margin=ctx.current_margin,
            tp_percent=ctx.current_tp,
            sl_percent=ctx.current_sl,
            long=SideChoice(long_params, long_result),
            short=SideChoice(short_params, short_result),
            score=self.scoring.score(long_result, short_result, ctx.current_margin),
            is_baseline=True,
        )

    def _best_threshold(
        self,
        ctx: SymbolContext,
        side: LiquidationSide,
        thresholds: ThresholdCandidates,
        point: SizingPoint,
        tp: float,
        sl: float,
    ) -> Optional[SideChoice]:
        """Best-PnL threshold for one side; earlier candidates win ties."""
        positions = point.long_positions if side == LiquidationSide.SELL else point.short_positions
        chosen: Optional[SideChoice] = None
        for threshold in thresholds.candidates:
            if not self.run_config.is_thorough and threshold < thresholds.min_allowed:
                continue
            params = self._side_params(ctx, side, threshold, positions, point.leverage, tp, sl)
            result = self._simulate(params)
            if chosen is None or result.total_pnl > chosen.result.total_pnl:
                chosen = SideChoice(params, result)
        return chosen

    def _evaluate(self, ctx: SymbolContext, point: SizingPoint, tp: float, sl: float) -> Optional[Candidate]:
        diag = self.diagnostics
        reason = self.scoring.check_parameters(tp, sl, point.leverage)
        if reason is not None:
            diag.reject(reason)
            return None

        long_choice = self._best_threshold(ctx, LiquidationSide.SELL, ctx.long_thresholds, point, tp, sl)
        short_choice = self._best_threshold(ctx, LiquidationSide.BUY, ctx.short_thresholds, point, tp, sl)
        if long_choice is None or short_choice is None:
            if long_choice is None:
                diag.reject(RejectionReason.MISSING_LONG_SIDE)
            if short_choice is None:
                diag.reject(RejectionReason.MISSING_SHORT_SIDE)
            return None

        metrics = self.scoring.combine(long_choice.result, short_choice.result)
        reason = self.scoring.check_results(tp, sl, metrics)
        if reason is not None:
            diag.reject(reason)
            return None

        score = self.scoring.score(long_choice.result, short_choice.result, point.margin)
        diag.combinations_evaluated += 1
        if not score.is_finite:
            diag.reject(RejectionReason.NON_FINITE_SCORE)
            return None

        return Candidate(
            leverage=point.leverage,
            margin=point.margin,
            tp_percent=tp,
            sl_percent=sl,
            long=long_choice,
            short=short_choice,
            score=score,
        )

    def _coarse_search(self, ctx: SymbolContext, best: Candidate) -> Candidate:
        space = SearchSpace(
            leverages=ctx.leverages,
            margins=ctx.margins,
            take_profits=ctx.take_profits,
            stop_losses=ctx.stop_losses,
            long_trade_size=ctx.long_trade_size,
            short_trade_size=ctx.short_trade_size,
            required_long_slots=ctx.required_long_slots,
            required_short_slots=ctx.required_short_slots,
            brackets=self.brackets,
            diagnostics=self.diagnostics,
        )
        per_point = max(1, len(ctx.take_profits) * len(ctx.stop_losses))
        total = max(1, space.sizing_count * per_point)

        for done, (point, tp, sl) in enumerate(space.combinations(), start=1):
            challenger = self._evaluate(ctx, point, tp, sl)
            folded = fold_best(best, challenger)
            if folded is not best:
                self.diagnostics.combinations_accepted += 1
            best = folded
            if done % per_point == 0:
                self._stage_progress(
                    SearchStage.COARSE_SEARCH,
                    done / total,
                    f"{self.symbol}: {point.leverage:g}x / margin {point.margin:.2f}",
                )
        return best

    def _refine(self, ctx: SymbolContext, best: Candidate) -> Candidate:
        """Sweep window x cooldown with everything else fixed."""
        start = best
        total = max(1, len(ctx.windows) * len(ctx.cooldowns))
        done = 0
        for window_ms in ctx.windows:
            for cooldown_ms in ctx.cooldowns:
                done += 1
                long_params = start.long.params.with_timers(window_ms, cooldown_ms)
                short_params = start.short.params.with_timers(window_ms, cooldown_ms)
                long_result = self._simulate(long_params)
                short_result = self._simulate(short_params)

                reason = self.scoring.check_feasibility(
                    start.tp_percent, start.sl_percent, start.leverage, long_result, short_result
                )
                if reason is not None:
                    self.diagnostics.reject(reason)
                    continue

                score = self.scoring.score(long_result, short_result, start.margin)
                if not score.is_finite:
                    self.diagnostics.reject(RejectionReason.NON_FINITE_SCORE)
                    continue

                challenger = Candidate(
                    leverage=start.leverage,
                    margin=start.margin,
                    tp_percent=start.tp_percent,
                    sl_percent=start.sl_percent,
                    long=SideChoice(long_params, long_result),
                    short=SideChoice(short_params, short_result),
                    score=score,
                )
                best = fold_best(best, challenger, tolerance=REFINEMENT_TOLERANCE)
            self._stage_progress(SearchStage.REFINEMENT, done / total, f"{self.symbol}: refining timers")
        return best

    def _stress(self, best: Candidate, baseline: Candidate) -> Tuple[Candidate, ScenarioOutcome]:
        """Apply the scenario penalty to the winner; fall back to the baseline if it no longer wins."""
        tester = ScenarioStressTester(self._simulate, weight=self.run_config.scenario_penalty)

        def stressed(candidate: Candidate) -> Tuple[Candidate, ScenarioOutcome]:
            outcome = tester.stress(candidate.long.params, candidate.short.params, candidate.total_pnl)
            self.diagnostics.scenarios_evaluated += len(tester.profiles)
            penalized = Candidate(
                leverage=candidate.leverage,
                margin=candidate.margin,
                tp_percent=candidate.tp_percent,
                sl_percent=candidate.sl_percent,
                long=candidate.long,
                short=candidate.short,
                score=candidate.score.with_scenario_penalty(outcome.penalty),
                is_baseline=candidate.is_baseline,
            )
            return penalized, outcome

        winner, outcome = stressed(best)
        if winner.is_baseline or winner.final_score >= baseline.final_score:
            return winner, outcome

        base_penalized, base_outcome = stressed(baseline)
        if base_penalized.final_score >= winner.final_score:
            self.diagnostics.scenario_reverted = True
            logger.info(f"{self.symbol}: optimized candidate lost its edge under stress, keeping live config")
            return base_penalized, base_outcome
        return winner, outcome

    # ------------------------------------------------------------------
    # Reporting helpers
    # ------------------------------------------------------------------

    def _tier_warning(self, ctx: SymbolContext, best: Candidate) -> Optional[TierWarning]:
        if not self.brackets:
            return None
        wanted_long = max(ctx.required_long_slots, ctx.min_slots)
        wanted_short = max(ctx.required_short_slots, ctx.min_slots)
        max_long = max_positions_for_leverage(best.long.params.trade_size, best.leverage, best.margin, self.brackets)
        max_short = max_positions_for_leverage(best.short.params.trade_size, best.leverage, best.margin, self.brackets)
        if max_long >= wanted_long and max_short >= wanted_short:
            return None
        warning = TierWarning(max_long, wanted_long, max_short, wanted_short)
        logger.warning(f"{self.symbol}: {warning.message}")
        return warning

    def _log_diagnostics(self) -> None:
        diag = self.diagnostics
        counts = diag.candidate_counts
        logger.debug(
            f"{self.symbol} candidate grids -> "
            + " | ".join(f"{k}:{v}" for k, v in counts.items())
        )
        logger.debug(
            f"{self.symbol} combos evaluated:{diag.combinations_evaluated} "
            f"accepted:{diag.combinations_accepted} "
            f"backtests(executed:{diag.backtests['executed']}, cacheHits:{diag.backtests['cacheHits']}) "
            f"scenarios:{diag.scenarios_evaluated} duration:{diag.duration_ms:.1f}ms"
        )
        rejected = [f"{k}={v}" for k, v in diag.rejections.items() if v > 0]
        logger.debug(f"{self.symbol} rejection summary -> {', '.join(rejected) or 'none'}")
