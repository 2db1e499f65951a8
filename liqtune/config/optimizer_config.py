"""
Optimizer configuration - search breadth per mode, scoring weights, and the
per-symbol live configuration the optimizer starts from.

Mode caps bound how many candidates survive sampling per dimension:

    quick     threshold 12 | tp 5  | sl 5  | leverage 5  | margin 4  | window 4  | cooldown 4
    thorough  threshold 48 | tp 24 | sl 24 | leverage 10 | margin 10 | window 12 | cooldown 12
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from liqtune.core.enums import OptimizerMode

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_WINDOW_MS = 60 * 1000
DEFAULT_THRESHOLD_COOLDOWN_MS = 30 * 1000
HUNTER_COOLDOWN_MS = 2 * 60 * 1000
DEFAULT_TRADE_SIZE = 20.0
DEFAULT_LEVERAGE = 10.0
DEFAULT_TP_PERCENT = 1.0
DEFAULT_SL_PERCENT = 5.0
DEFAULT_THRESHOLD = 1000.0


@dataclass(frozen=True)
class ModeLimits:
    """Maximum candidates kept per dimension after sampling."""

    threshold_max: int
    tp_max: int
    sl_max: int
    leverage_max: int
    margin_max: int
    window_max: int
    cooldown_max: int


MODE_LIMITS: Dict[OptimizerMode, ModeLimits] = {
    OptimizerMode.QUICK: ModeLimits(
        threshold_max=12,
        tp_max=5,
        sl_max=5,
        leverage_max=5,
        margin_max=4,
        window_max=4,
        cooldown_max=4,
    ),
    OptimizerMode.THOROUGH: ModeLimits(
        threshold_max=48,
        tp_max=24,
        sl_max=24,
        leverage_max=10,
        margin_max=10,
        window_max=12,
        cooldown_max=12,
    ),
}


def parse_mode(raw: Optional[str]) -> OptimizerMode:
    """Lower-case and validate a mode name, falling back to quick."""
    value = (raw or "quick").strip().lower()
    try:
        return OptimizerMode(value)
    except ValueError:
        logger.warning(f"Optimizer mode '{value}' not recognized. Falling back to 'quick'.")
        return OptimizerMode.QUICK


@dataclass(frozen=True)
class ScoringWeights:
    """Relative weights (percent) of the three score factors."""

    pnl: float = 50.0
    sharpe: float = 30.0
    drawdown: float = 20.0

    @classmethod
    def from_percent(
        cls,
        pnl: Optional[float] = None,
        sharpe: Optional[float] = None,
        drawdown: Optional[float] = None,
    ) -> "ScoringWeights":
        """Build weights, replacing missing/negative/non-finite entries with defaults."""
        defaults = cls()

        def _clean(value, fallback):
            if value is None:
                return fallback
            try:
                numeric = float(value)
            except (TypeError, ValueError):
                return fallback
            if not math.isfinite(numeric) or numeric < 0:
                return fallback
            return numeric

        weights = cls(
            pnl=_clean(pnl, defaults.pnl),
            sharpe=_clean(sharpe, defaults.sharpe),
            drawdown=_clean(drawdown, defaults.drawdown),
        )
        if weights.total <= 0:
            return defaults
        return weights

    @property
    def total(self) -> float:
        return self.pnl + self.sharpe + self.drawdown

    @property
    def is_default(self) -> bool:
        return self == ScoringWeights()

    def normalized(self) -> Dict[str, float]:
        total = self.total
        if total <= 0:
            return ScoringWeights().normalized()
        return {
            "pnl": self.pnl / total,
            "sharpe": self.sharpe / total,
            "drawdown": self.drawdown / total,
        }


@dataclass(frozen=True)
class RunConfig:
    """Frozen view of the settings used for one optimization run."""

    mode: OptimizerMode = OptimizerMode.QUICK
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    min_threshold_pctl: float = 0.35
    scenario_penalty: float = 0.5
    cvar_penalty: float = 0.15
    enable_scenarios: bool = True
    diagnostics: bool = False
    target_utilization: float = 0.80
    seed: Optional[int] = None

    @property
    def limits(self) -> ModeLimits:
        return MODE_LIMITS.get(self.mode, MODE_LIMITS[OptimizerMode.QUICK])

    @property
    def is_thorough(self) -> bool:
        return self.mode == OptimizerMode.THOROUGH

    @property
    def volatility_penalty_factor(self) -> float:
        return 0.4 if self.is_thorough else 1.0


class SymbolConfig(BaseModel):
    """Live per-symbol configuration the optimizer starts from.

    Unset fields resolve to the same defaults the live bot uses.
    """

    # Aliases are the key names of the bot's own config file
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    volume_threshold: Optional[float] = Field(default=None, ge=0, alias="volumeThresholdUSDT")
    long_volume_threshold: Optional[float] = Field(default=None, ge=0, alias="longVolumeThresholdUSDT")
    short_volume_threshold: Optional[float] = Field(default=None, ge=0, alias="shortVolumeThresholdUSDT")
    trade_size: Optional[float] = Field(default=None, gt=0, alias="tradeSize")
    long_trade_size: Optional[float] = Field(default=None, gt=0, alias="longTradeSize")
    short_trade_size: Optional[float] = Field(default=None, gt=0, alias="shortTradeSize")
    max_position_margin: Optional[float] = Field(default=None, gt=0, alias="maxPositionMarginUSDT")
    leverage: Optional[float] = Field(default=None, gt=0, le=125)
    tp_percent: Optional[float] = Field(default=None, gt=0, alias="tpPercent")
    sl_percent: Optional[float] = Field(default=None, gt=0, alias="slPercent")
    threshold_time_window_ms: Optional[int] = Field(default=None, gt=0, alias="thresholdTimeWindow")
    threshold_cooldown_ms: Optional[int] = Field(default=None, ge=0, alias="thresholdCooldown")
    use_threshold: bool = Field(default=True, alias="useThreshold")
    vwap_protection: Optional[bool] = Field(default=None, alias="vwapProtection")

    @property
    def resolved_long_trade_size(self) -> float:
        return self.long_trade_size or self.trade_size or DEFAULT_TRADE_SIZE

    @property
    def resolved_short_trade_size(self) -> float:
        return self.short_trade_size or self.trade_size or self.resolved_long_trade_size

    @property
    def resolved_margin(self) -> float:
        if self.max_position_margin:
            return self.max_position_margin
        return max(self.resolved_long_trade_size * 5, 50.0)

    @property
    def resolved_leverage(self) -> float:
        return self.leverage or DEFAULT_LEVERAGE

    @property
    def resolved_long_threshold(self) -> float:
        return self.long_volume_threshold or self.volume_threshold or 0.0

    @property
    def resolved_short_threshold(self) -> float:
        return self.short_volume_threshold or self.volume_threshold or 0.0

    @property
    def resolved_tp(self) -> float:
        return self.tp_percent or DEFAULT_TP_PERCENT

    @property
    def resolved_sl(self) -> float:
        return self.sl_percent or DEFAULT_SL_PERCENT

    @property
    def resolved_window_ms(self) -> int:
        return self.threshold_time_window_ms or DEFAULT_THRESHOLD_WINDOW_MS

    @property
    def resolved_cooldown_ms(self) -> int:
        if self.threshold_cooldown_ms is None:
            return DEFAULT_THRESHOLD_COOLDOWN_MS
        return self.threshold_cooldown_ms

    @property
    def budget_margin(self) -> float:
        """Per-side margin used when scaling the deployable capital."""
        return self.max_position_margin or (self.trade_size or DEFAULT_TRADE_SIZE) * 5

    def to_bot_config(self) -> dict:
        """Keys and values as the bot's config file stores them."""
        return self.model_dump(by_alias=True, exclude_none=True)
