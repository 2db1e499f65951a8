"""
Per-symbol memo of simulator results.

Keyed by everything that can change a simulation: the full ParameterSet and
the fill/slippage overrides. One cache lives for one symbol's search and is
discarded afterwards.
"""

import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from liqtune.backtest.trade_simulator import BacktestResult, SimulationOverrides
from liqtune.core.models import ParameterSet

CacheKey = Tuple[Tuple, Tuple]


@dataclass
class CacheStats:
    executed: int = 0
    hits: int = 0

    def to_dict(self) -> dict:
        return {"executed": self.executed, "cacheHits": self.hits}


class BacktestCache:
    """Thread-safe memo of BacktestResult by (ParameterSet, overrides)."""

    def __init__(self, symbol: str):
        self.symbol = symbol
        self.stats = CacheStats()
        self._results: Dict[CacheKey, BacktestResult] = {}
        self._lock = threading.Lock()

    @staticmethod
    def make_key(params: ParameterSet, overrides: Optional[SimulationOverrides] = None) -> CacheKey:
        return params.key(), (overrides or SimulationOverrides()).key()

    def get_or_run(
        self,
        params: ParameterSet,
        overrides: Optional[SimulationOverrides],
        run: Callable[[], BacktestResult],
    ) -> BacktestResult:
        key = self.make_key(params, overrides)
        with self._lock:
            cached = self._results.get(key)
            if cached is not None:
                self.stats.hits += 1
                return cached

        result = run()

        with self._lock:
            # Another worker may have filled the slot meanwhile; keep the first
            existing = self._results.setdefault(key, result)
            self.stats.executed += 1
        return existing

    def __len__(self) -> int:
        return len(self._results)

    def __contains__(self, item) -> bool:
        params, overrides = item
        return self.make_key(params, overrides) in self._results
