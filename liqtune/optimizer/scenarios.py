"""
Worst-case scenario stress test for the winning candidate.

Re-runs both sides under harsher and gentler execution assumptions and
penalizes the score by how far combined PnL falls in the worst profile.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Callable, List, Optional, Sequence

from liqtune.backtest.trade_simulator import BacktestResult, SimulationOverrides
from liqtune.core.models import ParameterSet

logger = logging.getLogger(__name__)

SideRunner = Callable[[ParameterSet, SimulationOverrides], BacktestResult]


@dataclass(frozen=True)
class ScenarioProfile:
    name: str
    overrides: SimulationOverrides


DEFAULT_PROFILES = (
    ScenarioProfile(
        name="stress_high",
        overrides=SimulationOverrides(
            slippage_multiplier=1.6,
            limit_fill_rate=0.6,
            market_fallback_rate=0.22,
        ),
    ),
    ScenarioProfile(
        name="calm",
        overrides=SimulationOverrides(
            slippage_multiplier=0.75,
            limit_fill_rate=0.92,
            market_fallback_rate=0.05,
        ),
    ),
)


@dataclass(frozen=True)
class ScenarioResult:
    name: str
    total_pnl: float
    max_drawdown: float
    sharpe_ratio: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ScenarioOutcome:
    results: List[ScenarioResult] = field(default_factory=list)
    penalty: float = 0.0

    @property
    def worst(self) -> Optional[ScenarioResult]:
        if not self.results:
            return None
        return min(self.results, key=lambda r: r.total_pnl)


class ScenarioStressTester:
    """Scores robustness of one (long, short) parameter pair."""

    def __init__(
        self,
        run_side: SideRunner,
        weight: float = 0.5,
        profiles: Sequence[ScenarioProfile] = DEFAULT_PROFILES,
    ):
        self.run_side = run_side
        self.weight = min(max(weight, 0.0), 2.0)
        self.profiles = tuple(profiles)

    def stress(self, long_params: ParameterSet, short_params: ParameterSet, baseline_pnl: float) -> ScenarioOutcome:
        """penalty = max(0, baseline PnL - worst scenario PnL) * weight."""
        results = []
        for profile in self.profiles:
            long_result = self.run_side(long_params, profile.overrides)
            short_result = self.run_side(short_params, profile.overrides)
            results.append(
                ScenarioResult(
                    name=profile.name,
                    total_pnl=long_result.total_pnl + short_result.total_pnl,
                    max_drawdown=max(long_result.max_drawdown or 1.0, short_result.max_drawdown or 1.0),
                    sharpe_ratio=(long_result.sharpe_ratio + short_result.sharpe_ratio) / 2,
                )
            )

        outcome = ScenarioOutcome(results=results)
        worst = outcome.worst
        if worst is None:
            return outcome

        penalty = max(0.0, (baseline_pnl - worst.total_pnl) * self.weight)
        logger.debug(
            f"Scenario stress: worst={worst.name} pnl={worst.total_pnl:.2f} "
            f"baseline={baseline_pnl:.2f} penalty={penalty:.2f}"
        )
        return ScenarioOutcome(results=results, penalty=penalty)
