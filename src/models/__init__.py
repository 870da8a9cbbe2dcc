"""Models module for data structures."""

from .market_data import MarketPrice, PriceTick, SOURCE_SYNTHETIC, SOURCE_FALLBACK
from .position import TradePosition, TradeType, PositionStatus, CloseReason
from .account import TradingAccount, AccountMetrics
from .trade import TradeRequest, TradeValidation, TradeResult, SwapCharge

__all__ = [
    # Market data
    "MarketPrice",
    "PriceTick",
    "SOURCE_SYNTHETIC",
    "SOURCE_FALLBACK",

    # Positions
    "TradePosition",
    "TradeType",
    "PositionStatus",
    "CloseReason",

    # Accounts
    "TradingAccount",
    "AccountMetrics",

    # Trades
    "TradeRequest",
    "TradeValidation",
    "TradeResult",
    "SwapCharge",
]
