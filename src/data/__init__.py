"""Data module: market data plumbing and persistence."""

from src.data.cache import DataCache
from src.data.rate_limiter import RateLimiter
from src.data.request_batcher import RequestBatcher
from src.data.fallback_provider import FallbackPriceProvider
from src.data.store import TradingStore

__all__ = [
    'DataCache',
    'RateLimiter',
    'RequestBatcher',
    'FallbackPriceProvider',
    'TradingStore',
]
