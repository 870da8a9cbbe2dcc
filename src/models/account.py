"""Trading account models."""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class TradingAccount:
    """Persisted trading account row."""
    id: str
    user_id: str
    balance: float
    equity: float
    margin: float
    free_margin: float
    currency: str
    created_at: datetime
    updated_at: datetime

    @property
    def margin_level(self) -> Optional[float]:
        """Equity to margin ratio in percent, None while no margin is reserved."""
        if self.margin <= 0:
            return None
        return (self.equity / self.margin) * 100

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat()
        data['updated_at'] = self.updated_at.isoformat()
        data['margin_level'] = self.margin_level
        return data


@dataclass
class AccountMetrics:
    """Derived account figures for display and risk checks."""
    balance: float
    equity: float
    margin: float
    free_margin: float
    margin_level: Optional[float]
    total_pnl: float
    open_positions: int
    total_volume: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
