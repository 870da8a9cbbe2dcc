"""Market data models."""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

SOURCE_SYNTHETIC = "synthetic"
SOURCE_FALLBACK = "fallback"


@dataclass
class MarketPrice:
    """Point-in-time quote for an instrument."""
    symbol: str
    name: str
    price: float
    bid: float
    ask: float
    change: float
    change_percent: float
    high: float
    low: float
    volume: int
    timestamp: int  # epoch milliseconds
    category: str
    source: str

    def __post_init__(self):
        """Validate quote data."""
        if self.price <= 0 or self.bid <= 0 or self.ask <= 0:
            raise ValueError(f"Prices must be positive for {self.symbol}")
        if self.ask < self.bid:
            raise ValueError(f"Ask price ({self.ask}) cannot be less than bid price ({self.bid})")
        if self.volume < 0:
            raise ValueError("Volume cannot be negative")

    @property
    def spread(self) -> float:
        """Distance between ask and bid"""
        return self.ask - self.bid

    @property
    def is_synthetic(self) -> bool:
        """True when the quote was produced without a live fetch"""
        return self.source in (SOURCE_SYNTHETIC, SOURCE_FALLBACK)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return asdict(self)


@dataclass
class PriceTick:
    """A new price for one symbol, fed into position revaluation."""
    symbol: str
    price: float
    timestamp: Optional[int] = None

    def __post_init__(self):
        if self.price <= 0:
            raise ValueError(f"Price must be positive, got {self.price}")

    @classmethod
    def from_market_price(cls, market_price: MarketPrice) -> "PriceTick":
        return cls(
            symbol=market_price.symbol,
            price=market_price.price,
            timestamp=market_price.timestamp
        )
