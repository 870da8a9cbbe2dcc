"""Utils module for shared helpers."""

from src.utils.exceptions import (
    TradingSystemError,
    DataError,
    OrderError,
    InsufficientMarginError,
    StorageError,
)

__all__ = [
    'TradingSystemError',
    'DataError',
    'OrderError',
    'InsufficientMarginError',
    'StorageError',
]
