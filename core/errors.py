"""
Exceptions raised by the trading core.

Sizing and signal validation failures are never raised: they come back as
invalid PositionSizingResult / failed SignalResult values. Exceptions are
reserved for the exchange boundary and for bad configuration.
"""


class PyramidBotError(Exception):
    """Base class for all bot errors."""


class ConfigError(PyramidBotError):
    """Configuration values are inconsistent or out of range."""


class ExchangeError(PyramidBotError):
    """Exchange unreachable, or a request was rejected."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation}: {message}")
        self.operation = operation


class ExchangeTimeout(ExchangeError):
    """An exchange call did not complete within its timeout."""

    def __init__(self, operation: str, timeout: float):
        super().__init__(operation, f"timed out after {timeout:.1f}s")
        self.timeout = timeout
