"""
Optimization runner - the entry point for a full optimization run.

For each configured symbol:
1. Size its capital budget from the deployable capital
2. Fetch its history once (liquidations, candles, brackets)
3. Run the staged search off the event loop
4. Turn the outcome into a SymbolRecommendation

then aggregate into an OptimizationReport with the daily PnL summary,
liquidation flow analytics over the loaded histories,
recommended global position cap and, given a wallet balance, a capital
allocation check. One symbol failing never stops the others.

Usage:
    runner = OptimizationRunner(CsvDataProvider("data"))
    report = await runner.run({"BTCUSDT": SymbolConfig(leverage=10)}, deployable_capital=1000)
    report.write("optimizer-report.json")
"""

import asyncio
import logging
import math
from typing import Dict, List, Mapping, Optional, Sequence

from liqtune.backtest.data_loader import HistoricalDataProvider, load_symbol_dataset
from liqtune.backtest.trade_simulator import TradeSimulator
from liqtune.config.optimizer_config import RunConfig, SymbolConfig
from liqtune.config.settings import get_settings
from liqtune.core.exceptions import DataUnavailableError, OptimizationCancelled
from liqtune.core.models import SymbolDataset
from liqtune.optimizer.models import (
    CapitalAllocation,
    LiquidationAnalytics,
    OptimizationReport,
    OptimizationSummary,
    SymbolRecommendation,
)
from liqtune.optimizer.progress import CancellationToken, ProgressCallback, ProgressReporter
from liqtune.optimizer.search import SearchOrchestrator

logger = logging.getLogger(__name__)

MIN_SCALE = 0.25
MAX_SCALE = 2.5
MIN_CAPITAL_BUDGET = 5.0
DAYS_PER_MONTH = 30

# Share of each symbol's progress slice spent loading data
LOAD_SHARE = 10.0


def capital_scale(symbol_configs: Mapping[str, SymbolConfig], deployable_capital: float) -> float:
    """Ratio of deployable capital to the configured margin (both sides), clamped."""
    baseline = sum(max(cfg.budget_margin, 0.0) * 2 for cfg in symbol_configs.values())
    if baseline <= 0 or deployable_capital <= 0:
        return 1.0
    return min(MAX_SCALE, max(MIN_SCALE, deployable_capital / baseline))


def capital_budget(cfg: SymbolConfig, deployable_capital: float, scale: float) -> float:
    base_margin = cfg.budget_margin
    return max(MIN_CAPITAL_BUDGET, min(deployable_capital or base_margin, base_margin * scale))


def summarize(recommendations: Sequence[SymbolRecommendation]) -> OptimizationSummary:
    current = sum(r.current_daily_pnl for r in recommendations)
    improvement = sum(r.daily_improvement for r in recommendations)
    percent = None
    if abs(current) > 1e-6:
        percent = improvement / abs(current) * 100
    return OptimizationSummary(
        symbols_optimized=sum(1 for r in recommendations if not r.degraded),
        symbols_degraded=sum(1 for r in recommendations if r.degraded),
        current_daily_pnl=current,
        optimized_daily_pnl=current + improvement,
        daily_improvement=improvement,
        monthly_improvement=improvement * DAYS_PER_MONTH,
        improvement_percent=percent,
        # Hedge mode: long and short on one symbol share a single slot
        recommended_max_open_positions=max(1, len(recommendations)),
    )


def check_allocation(
    recommendations: Sequence[SymbolRecommendation],
    wallet_balance: float,
    target_utilization: float,
    symbol_count: Optional[int] = None,
) -> CapitalAllocation:
    current = sum(r.margin for r in recommendations)
    max_safe = wallet_balance * target_utilization
    overallocated = current > max_safe
    ranked = sorted(recommendations, key=lambda r: r.daily_improvement, reverse=True)
    suggested = None
    if overallocated:
        count = max(symbol_count or len(recommendations), 1)
        suggested = float(math.floor(max_safe / count))
        logger.warning(
            f"Optimized margins (${current:,.2f}) exceed {target_utilization:.0%} of wallet "
            f"(${max_safe:,.2f}); equal split would be ${suggested:,.0f} per symbol"
        )
    return CapitalAllocation(
        wallet_balance=wallet_balance,
        target_utilization=target_utilization,
        current_allocation=current,
        max_safe_allocation=max_safe,
        is_overallocated=overallocated,
        ranked_symbols=[r.symbol for r in ranked],
        suggested_margin_per_symbol=suggested,
    )


class OptimizationRunner:
    """Optimizes every configured symbol and aggregates the results."""

    def __init__(
        self,
        provider: HistoricalDataProvider,
        run_config: Optional[RunConfig] = None,
        simulator: Optional[TradeSimulator] = None,
    ):
        self.provider = provider
        self.run_config = run_config or get_settings().to_run_config()
        self.simulator = simulator or TradeSimulator(seed=self.run_config.seed)

    def _select(self, symbol_configs: Mapping[str, SymbolConfig], symbols: Optional[Sequence[str]]) -> Dict[str, SymbolConfig]:
        if symbols is None:
            symbols = get_settings().symbol_filter
        wanted = {s.upper() for s in symbols or []}
        if not wanted:
            return dict(symbol_configs)
        return {s: cfg for s, cfg in symbol_configs.items() if s.upper() in wanted}

    async def run(
        self,
        symbol_configs: Mapping[str, SymbolConfig],
        deployable_capital: float,
        wallet_balance: Optional[float] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
        symbols: Optional[Sequence[str]] = None,
    ) -> OptimizationReport:
        progress = ProgressReporter(progress_callback)
        selected = self._select(symbol_configs, symbols)
        capital = deployable_capital if deployable_capital and math.isfinite(deployable_capital) and deployable_capital > 0 else 0.0
        report = OptimizationReport(mode=self.run_config.mode, deployable_capital=capital)

        if not selected:
            progress.emit(100, "No symbols configured for optimization")
            return report

        scale = capital_scale(selected, capital)
        logger.info(
            f"Optimizing {len(selected)} symbols in {self.run_config.mode.value} mode "
            f"(capital ${capital:,.2f}, scale {scale:.2f})"
        )

        recommendations: List[SymbolRecommendation] = []
        datasets: Dict[str, SymbolDataset] = {}
        total = len(selected)
        try:
            for index, (symbol, cfg) in enumerate(selected.items()):
                if cancel is not None:
                    cancel.raise_if_cancelled(f"optimizing {symbol}")
                span = progress.span(index / total * 100, (index + 1) / total * 100)
                span.emit(0, f"Optimizing {symbol} ({index + 1}/{total})")
                rec = await self._optimize_symbol(
                    symbol, cfg, capital_budget(cfg, capital, scale), span, cancel, datasets
                )
                recommendations.append(rec)
        except OptimizationCancelled as e:
            logger.info(f"Optimization cancelled: {e}")
            report.cancelled = True

        report.recommendations = recommendations
        report.summary = summarize(recommendations)
        if wallet_balance is not None and wallet_balance > 0:
            report.allocation = check_allocation(
                recommendations, wallet_balance, self.run_config.target_utilization, len(selected)
            )
        if datasets:
            report.analytics = self._analytics(datasets, selected)

        summary = report.summary
        logger.info(
            f"Daily PnL ${summary.current_daily_pnl:.2f} -> ${summary.optimized_daily_pnl:.2f} "
            f"({summary.daily_improvement:+.2f}/day); recommended global max open positions: "
            f"{summary.recommended_max_open_positions}"
        )
        if not report.cancelled:
            progress.emit(100, "Optimization complete")
        return report

    def _analytics(
        self, datasets: Mapping[str, SymbolDataset], configs: Mapping[str, SymbolConfig]
    ) -> Optional[LiquidationAnalytics]:
        """Threshold sweeps, profitability ranking and cascades over the loaded histories."""
        try:
            analytics = LiquidationAnalytics.from_datasets(datasets, configs)
        except Exception:
            logger.exception("Liquidation analytics failed, report carries none")
            return None
        if analytics.profitability:
            top = analytics.profitability[0]
            logger.info(f"Most active symbol by naive trigger profit: {top.symbol} (${top.daily_profit:.2f}/day)")
        return analytics

    async def _optimize_symbol(
        self,
        symbol: str,
        cfg: SymbolConfig,
        budget: float,
        progress: ProgressReporter,
        cancel: Optional[CancellationToken],
        datasets: Optional[Dict[str, SymbolDataset]] = None,
    ) -> SymbolRecommendation:
        try:
            loaded = await load_symbol_dataset(self.provider, symbol)
        except DataUnavailableError as e:
            logger.warning(f"{symbol}: skipped, {e}")
            return SymbolRecommendation.zero_effect(symbol, cfg, str(e))
        except Exception as e:
            logger.exception(f"{symbol}: failed to load history")
            return SymbolRecommendation.zero_effect(symbol, cfg, f"load failed: {e}")
        if datasets is not None:
            datasets[symbol] = loaded.dataset

        progress.emit(LOAD_SHARE, f"{symbol}: history loaded")
        orchestrator = SearchOrchestrator(
            dataset=loaded.dataset,
            symbol_config=cfg,
            capital_budget=budget,
            brackets=loaded.brackets,
            run_config=self.run_config,
            simulator=self.simulator,
            progress=progress.span(LOAD_SHARE, 100),
            cancel=cancel,
        )
        try:
            optimization = await asyncio.to_thread(orchestrator.run)
        except OptimizationCancelled:
            raise
        except Exception as e:
            logger.exception(f"{symbol}: optimization failed")
            return SymbolRecommendation.zero_effect(symbol, cfg, f"optimization failed: {e}")

        rec = SymbolRecommendation.from_optimization(optimization, include_diagnostics=self.run_config.diagnostics)
        rec.warnings.extend(loaded.warnings)
        logger.info(
            f"SUMMARY {symbol}: current ${rec.current_daily_pnl:.2f} -> ${rec.optimized_daily_pnl:.2f} "
            f"({rec.daily_improvement:+.2f}/day)"
        )
        return rec
