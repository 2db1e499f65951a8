"""liqtune backtesting: statistics, risk metrics, trade simulation and data loading."""

from .data_loader import (
    CsvDataProvider,
    ExchangeDataProvider,
    HistoricalDataProvider,
    InMemoryDataProvider,
    LoadedSymbol,
    load_symbol_dataset,
)
from .risk_metrics import RiskMetrics, calculate_risk_metrics
from .statistics import AtrStats, GapStats, RangeStats, VolatilityStats
from .trade_simulator import BacktestResult, CompletedTrade, SimulationOverrides, TradeSimulator

__all__ = [
    # Simulation
    "BacktestResult",
    "CompletedTrade",
    "SimulationOverrides",
    "TradeSimulator",
    "RiskMetrics",
    "calculate_risk_metrics",
    # Statistics
    "AtrStats",
    "GapStats",
    "RangeStats",
    "VolatilityStats",
    # Data
    "CsvDataProvider",
    "ExchangeDataProvider",
    "HistoricalDataProvider",
    "InMemoryDataProvider",
    "LoadedSymbol",
    "load_symbol_dataset",
]
