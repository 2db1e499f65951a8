"""
Optimize the bot's per-symbol parameters against recorded liquidation history.

Reads the bot config (``{"symbols": {...}, "global": {...}}``), runs the
search for every selected symbol and prints current vs optimized daily PnL.

Usage::

    python -m liqtune.scripts.optimize --config config.user.json --capital 1000
    python -m liqtune.scripts.optimize --mode thorough --symbols BTCUSDT,ETHUSDT --output report.json
    python -m liqtune.scripts.optimize --exchange --wallet 2500 --write-config config.optimized.json
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Dict

logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s  %(name)-30s  %(levelname)-7s  %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="liqtune - backtest-driven parameter optimization",
    )
    parser.add_argument("--config", type=str, default="config.user.json",
                        help="Bot config file with a 'symbols' section")
    parser.add_argument("--data-dir", type=str, default=None,
                        help="Directory with liquidations.csv, candles/ and brackets.json")
    parser.add_argument("--capital", type=float, default=0.0,
                        help="Deployable capital (USDT) used to scale per-symbol budgets")
    parser.add_argument("--wallet", type=float, default=None,
                        help="Wallet balance for the capital allocation check")
    parser.add_argument("--mode", type=str, default=None, help="quick | thorough")
    parser.add_argument("--symbols", type=str, default=None, help="Comma separated symbol filter")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--diagnostics", action="store_true", default=False)
    parser.add_argument("--exchange", action="store_true", default=False,
                        help="Fetch candles and leverage brackets from the exchange API")
    parser.add_argument("--output", type=str, default=None, help="Write the JSON report here")
    parser.add_argument("--write-config", type=str, default=None,
                        help="Write the bot config with optimized symbols here")
    parser.add_argument("-v", "--verbose", action="store_true", default=False)
    return parser.parse_args()


def _load_symbol_configs(path: Path) -> Dict[str, "SymbolConfig"]:
    from liqtune.config.optimizer_config import SymbolConfig
    from liqtune.core.exceptions import LiqtuneConfigError

    if not path.exists():
        raise LiqtuneConfigError(f"Config file not found: {path}")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise LiqtuneConfigError(f"Config file {path} is not valid JSON: {e}") from e

    symbols = raw.get("symbols")
    if not isinstance(symbols, dict) or not symbols:
        raise LiqtuneConfigError(f"No 'symbols' section in {path}")
    return {symbol: SymbolConfig.model_validate(cfg) for symbol, cfg in symbols.items()}


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

def _print_progress(percent: float, stage: str) -> None:
    print(f"\r  [{percent:5.1f}%] {stage[:70]:<70}", end="", flush=True)


def _print_report(report) -> None:
    print("\n\n" + "=" * 96)
    print("  OPTIMIZATION RESULTS")
    print("=" * 96)
    print(f"  {'Symbol':<12} {'Current/day':>12} {'Optimized/day':>14} {'Change':>10}  "
          f"{'Lev':>5} {'TP%':>6} {'SL%':>6} {'Margin':>9}  Notes")
    print("-" * 96)

    for rec in report.recommendations:
        if rec.degraded or rec.optimized is None:
            print(f"  {rec.symbol:<12} {'-':>12} {'-':>14} {'-':>10}  {rec.error or 'skipped'}")
            continue
        opt = rec.optimized
        notes = []
        if rec.tier_warning is not None:
            notes.append("tier limit")
        if rec.warnings:
            notes.append("partial data")
        print(
            f"  {rec.symbol:<12} ${rec.current_daily_pnl:>11.2f} ${rec.optimized_daily_pnl:>13.2f} "
            f"{rec.daily_improvement:>+10.2f}  {opt.leverage:>5g} {opt.tp_percent:>6.2f} "
            f"{opt.sl_percent:>6.2f} ${opt.margin:>8.2f}  {', '.join(notes)}"
        )

    s = report.summary
    print("-" * 96)
    pct = f"{s.improvement_percent:+.1f}%" if s.improvement_percent is not None else "n/a (baseline ~ 0)"
    print(f"  Current daily PnL:    ${s.current_daily_pnl:.2f}")
    print(f"  Optimized daily PnL:  ${s.optimized_daily_pnl:.2f}")
    print(f"  Improvement:          ${s.daily_improvement:+.2f}/day, ${s.monthly_improvement:+.2f}/month ({pct})")
    print(f"  Recommended global max open positions: {s.recommended_max_open_positions}")

    if report.allocation is not None:
        a = report.allocation
        state = "OVERALLOCATED" if a.is_overallocated else "within safe range"
        print(f"  Capital: ${a.current_allocation:,.2f} of ${a.max_safe_allocation:,.2f} safe ({state})")
        if a.suggested_margin_per_symbol is not None:
            print(f"  Equal split suggestion: ${a.suggested_margin_per_symbol:,.0f} per symbol")
    if report.cancelled:
        print("  Run was cancelled; results are partial.")
    if report.analytics is not None:
        _print_analytics(report.analytics)


def _print_analytics(analytics) -> None:
    print("\n" + "=" * 96)
    print("  LIQUIDATION FLOW")
    print("=" * 96)

    if analytics.profitability:
        print(f"  {'Symbol':<12} {'Triggers':>9} {'Per day':>9} {'Naive $/day':>12} {'Capture%':>9}")
        for row in analytics.profitability:
            print(
                f"  {row.symbol:<12} {row.total_triggers:>9} {row.daily_triggers:>9.1f} "
                f"${row.daily_profit:>11.2f} {row.capture_rate:>9.1f}"
            )

    for symbol, sides in analytics.threshold_sweeps.items():
        print(f"\n  {symbol} threshold sweep (triggers/day long | short)")
        longs, shorts = sides.get("long", []), sides.get("short", [])
        for long_row, short_row in zip(longs, shorts):
            marker = " <- current" if long_row.is_current or short_row.is_current else ""
            print(
                f"    ${long_row.threshold:>8,.0f}  {long_row.daily_triggers:>8.1f} | "
                f"{short_row.daily_triggers:<8.1f}{marker}"
            )

    if analytics.cascades:
        print("\n  Cascades (clustered liquidation minutes)")
        for symbol, c in analytics.cascades.items():
            print(
                f"    {symbol:<12} {c.cascade_minutes:>5} min  avg ${c.avg_volume_per_minute:,.0f}/min  "
                f"peak {c.max_liquidations_per_minute}/min"
            )


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

async def _run(args: argparse.Namespace) -> int:
    from liqtune.backtest.data_loader import CsvDataProvider, ExchangeDataProvider
    from liqtune.config.optimizer_config import parse_mode
    from liqtune.config.settings import get_settings
    from liqtune.core.exceptions import LiqtuneConfigError
    from liqtune.optimizer.runner import OptimizationRunner

    settings = get_settings()
    try:
        configs = _load_symbol_configs(Path(args.config))
    except LiqtuneConfigError as e:
        print(f"Error: {e}")
        return 2

    run_config = settings.to_run_config()
    if args.mode:
        run_config = replace(run_config, mode=parse_mode(args.mode))
    if args.seed is not None:
        run_config = replace(run_config, seed=args.seed)
    if args.diagnostics:
        run_config = replace(run_config, diagnostics=True)

    provider = CsvDataProvider(args.data_dir)
    if args.exchange:
        provider = ExchangeDataProvider(provider)

    symbols = [s.strip() for s in args.symbols.split(",") if s.strip()] if args.symbols else None
    runner = OptimizationRunner(provider, run_config=run_config)
    report = await runner.run(
        configs,
        deployable_capital=args.capital,
        wallet_balance=args.wallet,
        progress_callback=_print_progress,
        symbols=symbols,
    )
    _print_report(report)

    if args.output:
        path = report.write(args.output)
        print(f"\n  Report written to {path}")

    if args.write_config:
        raw = json.loads(Path(args.config).read_text(encoding="utf-8"))
        for rec in report.recommendations:
            if rec.optimized_config is not None and not rec.degraded:
                raw["symbols"][rec.symbol] = {**raw["symbols"].get(rec.symbol, {}), **rec.optimized_config.to_bot_config()}
        raw.setdefault("global", {})["maxOpenPositions"] = report.summary.recommended_max_open_positions
        Path(args.write_config).write_text(json.dumps(raw, indent=2), encoding="utf-8")
        print(f"  Optimized config written to {args.write_config}")

    return 0


def main() -> None:
    args = _parse_args()
    if args.verbose:
        logging.getLogger("liqtune").setLevel(logging.INFO)
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
