"""
liqtune enumerations.
"""

from enum import Enum


class LiquidationSide(str, Enum):
    """Side of the liquidated order as reported by the exchange.

    A SELL liquidation closes a long, so the hunter buys into it (opens LONG).
    A BUY liquidation closes a short, so the hunter sells into it (opens SHORT).
    """

    BUY = "BUY"
    SELL = "SELL"

    @property
    def opens_long(self) -> bool:
        return self is LiquidationSide.SELL


class PositionSide(str, Enum):
    """Direction of a simulated position."""

    LONG = "LONG"
    SHORT = "SHORT"


class ExitReason(str, Enum):
    """Why a simulated position was closed."""

    TAKE_PROFIT = "TP"
    STOP_LOSS = "SL"
    END_OF_DATA = "EOD"


class OptimizerMode(str, Enum):
    """Search breadth."""

    QUICK = "quick"
    THOROUGH = "thorough"


class SearchStage(str, Enum):
    """Per-symbol search state machine. Transitions only move forward."""

    IDLE = "idle"
    GENERATING_CANDIDATES = "generating_candidates"
    COARSE_SEARCH = "coarse_search"
    REFINEMENT = "refinement"
    SCENARIO_STRESS_TEST = "scenario_stress_test"
    DONE = "done"


class RejectionReason(str, Enum):
    """Counted reasons a parameter combination was excluded from the search."""

    INVALID_MARGIN = "invalidMargin"
    INVALID_TRADE_SIZE = "invalidTradeSize"
    INVALID_MAX_POSITIONS = "invalidMaxPositions"
    SLOT_DEPTH = "slotDepth"
    TIER_LIMIT = "tierLimit"
    MISSING_LONG_SIDE = "missingLongSide"
    MISSING_SHORT_SIDE = "missingShortSide"
    PROFIT_FACTOR = "profitFactor"
    STOP_RATE = "stopRate"
    LIQUIDATION_SAFETY = "liquidationSafety"
    RISK_REWARD = "riskReward"
    WIN_RATE = "winRate"
    NON_FINITE_SCORE = "nonFiniteScore"
