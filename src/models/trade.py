"""Trade request, validation and result models."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from src.models.position import TradeType


@dataclass
class TradeRequest:
    """Intent to open a position."""
    symbol: str
    type: TradeType
    amount: float
    leverage: int
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    price: Optional[float] = None

    def __post_init__(self):
        """Normalize symbol and direction"""
        self.symbol = self.symbol.upper()
        if isinstance(self.type, str):
            self.type = TradeType(self.type.lower())


@dataclass
class TradeValidation:
    """Outcome of pre-trade checks. Errors block execution, warnings do not."""
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    required_margin: float = 0.0
    estimated_commission: float = 0.0
    risk_amount: float = 0.0
    risk_percent: float = 0.0
    price: Optional[float] = None  # price the checks ran at, used for execution

    @classmethod
    def rejected(cls, error: str) -> "TradeValidation":
        return cls(valid=False, errors=[error])


@dataclass
class TradeResult:
    """Outcome of a trade execution."""
    success: bool
    trade_id: Optional[str] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class SwapCharge:
    """Daily financing for one position."""
    symbol: str
    type: TradeType
    amount: float
    swap_rate: float
    swap_amount: float
    rollover_time: datetime
