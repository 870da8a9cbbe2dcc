"""User-facing trading session binding one account to the engine and live prices."""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from src.models.account import AccountMetrics
from src.models.market_data import MarketPrice, PriceTick
from src.models.position import TradePosition, CloseReason
from src.models.trade import TradeRequest, TradeResult
from services.market_data_service import MarketDataService
from services.trading_engine import TradingEngine

logger = logging.getLogger(__name__)

# Value of one pip for one standard lot in account currency
STANDARD_PIP_VALUE = 10


class TradingSession:
    """
    Trading operations for one user and account.

    Opening a trade fetches the current price first so validation and
    execution see an up-to-date market price. While the price feed runs,
    every live price is fed into position revaluation.
    """

    def __init__(
        self,
        user_id: str,
        account_id: str,
        engine: TradingEngine,
        market_data: MarketDataService
    ):
        self.user_id = user_id
        self.account_id = account_id
        self.engine = engine
        self.market_data = market_data
        self._unsubscribe: Optional[Callable[[], None]] = None

    async def open_trade(self, request: TradeRequest) -> TradeResult:
        """
        Price, validate and execute a trade.

        Args:
            request: Trade request

        Returns:
            TradeResult; validation warnings are carried in the result
        """
        try:
            price = await self.market_data.get_market_price(request.symbol)
            self.engine.record_market_price(request.symbol, price.price, price.bid, price.ask)
        except Exception as e:
            logger.error(f"Could not price {request.symbol}: {e}")
            return TradeResult(success=False, error=f"Could not price {request.symbol}")

        result = self.engine.execute_trade(self.user_id, self.account_id, request)

        if result.success:
            logger.info(
                f"Trade executed: {request.type.value.upper()} {request.symbol} - {request.amount} lots"
            )
        else:
            logger.warning(f"Trade failed for {request.symbol}: {result.error}")

        return result

    def close_position(self, trade_id: str) -> bool:
        """Close a position manually."""
        return self.engine.close_position(trade_id, CloseReason.MANUAL)

    def _on_price(self, price: MarketPrice) -> None:
        self.engine.update_positions([PriceTick.from_market_price(price)])

    def start_price_feed(self, symbols: List[str]) -> None:
        """
        Follow live prices for symbols and revalue positions on every update.

        Must be called from a running event loop. Restarts the feed if one
        is already running.
        """
        self.stop_price_feed()
        self._unsubscribe = self.market_data.subscribe_to_real_time_updates(symbols, self._on_price)
        logger.info(f"Price feed started for {', '.join(symbols)}")

    def stop_price_feed(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
            logger.info("Price feed stopped")

    @property
    def is_feed_running(self) -> bool:
        return self._unsubscribe is not None

    def refresh(self) -> Tuple[List[TradePosition], Optional[AccountMetrics]]:
        """Current open positions and account metrics."""
        positions = self.engine.get_open_positions(self.account_id)
        metrics = self.engine.get_account_metrics(self.account_id)
        return positions, metrics

    @staticmethod
    def calculate_position_size(risk_percent: float, stop_loss_pips: float, balance: float) -> float:
        """
        Lot size risking risk_percent of balance over stop_loss_pips.

        Returns:
            Lots rounded to 2 decimals, 0 for non-positive inputs
        """
        if stop_loss_pips <= 0 or risk_percent <= 0:
            return 0.0

        risk_amount = balance * risk_percent / 100
        return round(risk_amount / (stop_loss_pips * STANDARD_PIP_VALUE), 2)

    def calculate_required_margin(self, lot_size: float, leverage: int, price: float) -> float:
        """
        Margin needed to open lot_size at price.

        Raises:
            ValueError: If leverage is not positive
        """
        if leverage <= 0:
            raise ValueError("Leverage must be positive")
        return lot_size * self.engine.config.contract_size * price / leverage

    def get_risk_metrics(self) -> Optional[Dict[str, Any]]:
        """
        Aggregate risk of the account's open positions.

        Returns:
            Dictionary of risk figures and flags, or None if the account is missing
        """
        positions, metrics = self.refresh()
        if metrics is None:
            return None

        contract_size = self.engine.config.contract_size
        total_risk = sum(
            abs(p.open_price - p.stop_loss) * p.amount * contract_size
            for p in positions
            if p.stop_loss is not None
        )
        risk_percent = (total_risk / metrics.balance * 100) if metrics.balance > 0 else 0.0

        margin_level = metrics.margin_level
        margin_used = (metrics.margin / metrics.equity * 100) if metrics.equity > 0 else None

        return {
            'total_risk': total_risk,
            'risk_percent': risk_percent,
            'margin_used_percent': margin_used,
            'leverage': (metrics.equity / metrics.margin) if metrics.margin > 0 else 0.0,
            'is_over_leveraged': margin_level is not None and margin_level < 100,
            'is_margin_call': margin_level is not None and margin_level < self.engine.config.min_margin_level,
            'is_stop_out': margin_level is not None and margin_level < self.engine.config.stop_out_level,
        }
