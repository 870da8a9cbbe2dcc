"""FX trading core - Configuration"""

from config.settings import (
    MarketDataConfig,
    TradingConfig,
    SwapConfig,
    DatabaseConfig,
    Settings,
    settings,
)
from config.logging_config import setup_logging, get_logger, get_trades_logger

__all__ = [
    'MarketDataConfig',
    'TradingConfig',
    'SwapConfig',
    'DatabaseConfig',
    'Settings',
    'settings',
    'setup_logging',
    'get_logger',
    'get_trades_logger',
]
