"""
Leverage tier (bracket) helpers.

Exchanges cap leverage by position notional. Without bracket data we assume a
single unbounded tier at 10x.
"""

import math
from typing import Optional, Sequence

from liqtune.core.models import LeverageBracket

DEFAULT_MAX_LEVERAGE = 10.0
MAX_SLOT_ITERATIONS = 1000

DEFAULT_BRACKETS = (LeverageBracket(0.0, math.inf, DEFAULT_MAX_LEVERAGE),)


def effective_brackets(brackets: Optional[Sequence[LeverageBracket]]) -> Sequence[LeverageBracket]:
    return brackets if brackets else DEFAULT_BRACKETS


def max_leverage_for_notional(notional: float, brackets: Optional[Sequence[LeverageBracket]]) -> float:
    """Leverage ceiling for the bracket containing `notional`."""
    brackets = effective_brackets(brackets)
    for bracket in brackets:
        floor = bracket.notional_floor or 0.0
        cap = bracket.notional_cap or math.inf
        if floor <= notional < cap:
            return bracket.initial_leverage or DEFAULT_MAX_LEVERAGE
    # Beyond the last tier
    return brackets[-1].initial_leverage or 1.0


def max_positions_for_leverage(
    trade_size: float,
    leverage: float,
    margin: float,
    brackets: Optional[Sequence[LeverageBracket]],
) -> int:
    """How many `trade_size` slots fit in `margin` before the tier ceiling drops below `leverage`."""
    if trade_size <= 0:
        return 0

    positions = 0
    remaining = margin
    cumulative = 0.0
    for _ in range(MAX_SLOT_ITERATIONS):
        next_notional = cumulative + trade_size * leverage
        if leverage > max_leverage_for_notional(next_notional, brackets):
            break
        if remaining < trade_size:
            break
        positions += 1
        cumulative = next_notional
        remaining -= trade_size
    return positions
