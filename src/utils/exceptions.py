"""Custom exceptions for the trading core."""


class TradingSystemError(Exception):
    """Base exception for the trading core."""
    pass


class DataError(TradingSystemError):
    """Market data related errors (upstream failures, malformed payloads)."""
    pass


class OrderError(TradingSystemError):
    """Trade execution related errors."""
    pass


class InsufficientMarginError(OrderError):
    """Raised when a write would leave an account with negative free margin."""
    pass


class StorageError(TradingSystemError):
    """Persistent store errors."""
    pass
