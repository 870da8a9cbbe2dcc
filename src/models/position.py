"""Position model."""

from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class TradeType(Enum):
    """Trade direction."""
    BUY = "buy"
    SELL = "sell"


class PositionStatus(Enum):
    """Position lifecycle states. CLOSED is terminal."""
    PENDING = "pending"
    OPEN = "open"
    CLOSED = "closed"


class CloseReason(Enum):
    """Why a position was closed."""
    MANUAL = "manual"
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    MARGIN_CALL = "margin_call"


@dataclass
class TradePosition:
    """Represents a leveraged position on an instrument."""
    id: str
    account_id: str
    user_id: str
    symbol: str
    type: TradeType
    amount: float
    open_price: float
    current_price: float
    leverage: int
    margin: float
    commission: float
    pnl: float
    status: PositionStatus
    open_time: datetime
    swap: float = 0.0
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    close_time: Optional[datetime] = None
    close_reason: Optional[CloseReason] = None

    def __post_init__(self):
        """Convert string values to enums"""
        if isinstance(self.type, str):
            self.type = TradeType(self.type)
        if isinstance(self.status, str):
            self.status = PositionStatus(self.status)
        if isinstance(self.close_reason, str):
            self.close_reason = CloseReason(self.close_reason)

    @property
    def pnl_percent(self) -> float:
        """P&L relative to reserved margin."""
        if self.margin <= 0:
            return 0.0
        return (self.pnl / self.margin) * 100

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    @property
    def is_buy(self) -> bool:
        return self.type == TradeType.BUY

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        data = asdict(self)
        data['type'] = self.type.value
        data['status'] = self.status.value
        data['close_reason'] = self.close_reason.value if self.close_reason else None
        data['open_time'] = self.open_time.isoformat()
        data['close_time'] = self.close_time.isoformat() if self.close_time else None
        data['pnl_percent'] = self.pnl_percent
        return data
