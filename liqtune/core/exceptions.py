"""
liqtune custom exceptions.
"""


class LiqtuneError(Exception):
    """Base exception for liqtune."""

    pass


class LiqtuneConfigError(LiqtuneError):
    """Configuration error."""

    pass


class DataUnavailableError(LiqtuneError):
    """No liquidation history (or no usable data at all) for a symbol."""

    pass


class ExternalServiceError(LiqtuneError):
    """A historical data collaborator (prices, brackets) failed."""

    pass


class OptimizationCancelled(LiqtuneError):
    """Cooperative cancellation was requested between stages."""

    pass
