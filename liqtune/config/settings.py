"""
liqtune configuration - loaded from environment (OPTIMIZER_*).
"""

import math
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from liqtune.config.optimizer_config import RunConfig, ScoringWeights, parse_mode


def _clamped(value, default: float, low: float, high: float) -> float:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(numeric):
        return default
    return min(max(numeric, low), high)


class OptimizerSettings(BaseSettings):
    """Optimizer settings from environment."""

    model_config = SettingsConfigDict(
        env_prefix="OPTIMIZER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Search breadth: quick | thorough
    mode: str = "quick"

    # Score weights (percent, normalized at use)
    weight_pnl: Optional[float] = None
    weight_sharpe: Optional[float] = None
    weight_drawdown: Optional[float] = None

    # Penalties and floors
    min_threshold_pctl: float = 0.35  # clamped to [0.15, 0.6]
    scenario_penalty: float = 0.5  # clamped to [0, 2]
    cvar_penalty: float = 0.15  # clamped to [0, 1]

    enable_scenarios: bool = True
    diagnostics: bool = False
    symbols: str = ""  # comma separated, empty = all configured symbols

    # Capital allocation check
    target_utilization: float = 0.80

    # Fixed RNG seed for reproducible runs (None = fresh entropy)
    seed: Optional[int] = None

    # Exchange REST API (candles are public, brackets need a signed request)
    exchange_base_url: str = "https://fapi.asterdex.com"
    exchange_api_key: str = ""
    exchange_api_secret: str = ""
    exchange_timeout_sec: float = 30.0
    candle_history: int = 10080  # 1m candles, one week

    # Local history files for CsvDataProvider
    data_dir: str = "data"

    @field_validator("weight_pnl", "weight_sharpe", "weight_drawdown", mode="before")
    @classmethod
    def _lenient_weight(cls, v):
        # Unparseable weights fall back to the default for that factor
        if v is None or v == "":
            return None
        try:
            return float(v)
        except (TypeError, ValueError):
            return None

    @field_validator("min_threshold_pctl", mode="before")
    @classmethod
    def _clamp_min_threshold_pctl(cls, v):
        return round(_clamped(v, 0.35, 0.15, 0.6), 4)

    @field_validator("scenario_penalty", mode="before")
    @classmethod
    def _clamp_scenario_penalty(cls, v):
        return _clamped(v, 0.5, 0.0, 2.0)

    @field_validator("cvar_penalty", mode="before")
    @classmethod
    def _clamp_cvar_penalty(cls, v):
        return _clamped(v, 0.15, 0.0, 1.0)

    @field_validator("target_utilization", mode="before")
    @classmethod
    def _clamp_target_utilization(cls, v):
        return _clamped(v, 0.80, 0.01, 1.0)

    @property
    def has_exchange_credentials(self) -> bool:
        return bool(self.exchange_api_key and self.exchange_api_secret)

    @property
    def symbol_filter(self) -> List[str]:
        return [s.strip().upper() for s in self.symbols.split(",") if s.strip()]

    def scoring_weights(self) -> ScoringWeights:
        return ScoringWeights.from_percent(
            pnl=self.weight_pnl,
            sharpe=self.weight_sharpe,
            drawdown=self.weight_drawdown,
        )

    def to_run_config(self) -> RunConfig:
        """Freeze the current settings for one optimization run."""
        return RunConfig(
            mode=parse_mode(self.mode),
            weights=self.scoring_weights(),
            min_threshold_pctl=self.min_threshold_pctl,
            scenario_penalty=self.scenario_penalty,
            cvar_penalty=self.cvar_penalty,
            enable_scenarios=self.enable_scenarios,
            diagnostics=self.diagnostics,
            target_utilization=self.target_utilization,
            seed=self.seed,
        )


settings = OptimizerSettings()


def get_settings() -> OptimizerSettings:
    """Return optimizer settings."""
    return settings
