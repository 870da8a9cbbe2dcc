"""Leveraged position engine: validation, execution, closing and revaluation."""

import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Set

import pandas as pd

from config.logging_config import get_trades_logger
from config.settings import settings, TradingConfig
from src.data import instruments
from src.data.store import TradingStore
from src.models.account import AccountMetrics, TradingAccount
from src.models.market_data import PriceTick
from src.models.position import TradePosition, TradeType, PositionStatus, CloseReason
from src.models.trade import TradeRequest, TradeValidation, TradeResult
from src.utils.exceptions import StorageError, InsufficientMarginError

logger = logging.getLogger(__name__)
trades_logger = get_trades_logger()

HISTORY_COLUMNS = [
    'id', 'symbol', 'type', 'amount', 'open_price', 'current_price', 'leverage',
    'margin', 'commission', 'swap', 'pnl', 'open_time', 'close_time', 'close_reason'
]


class TradingEngine:
    """
    Trading engine over a durable store.

    Public operations never raise. Rejections come back as validation errors
    or failed results, and unexpected failures are logged and converted the
    same way. Multi-row writes that cannot be made atomic are paired with a
    compensating action: an execution whose account update fails deletes its
    position row, a close whose account update fails reopens the position.
    """

    def __init__(self, store: TradingStore, config: Optional[TradingConfig] = None):
        """
        Initialize trading engine.

        Args:
            store: Persistence for accounts, trades and market prices
            config: Trading limits (defaults to settings)
        """
        self.store = store
        self.config = config or settings.trading

    # ------------------------------------------------------------------
    # Calculations
    # ------------------------------------------------------------------

    def calculate_pnl(self, position: TradePosition, price: float) -> float:
        """
        Unrealized P&L of position at price, net of commission and swap.

        Args:
            position: Open position
            price: Valuation price

        Returns:
            P&L in account currency
        """
        direction = 1 if position.is_buy else -1
        gross = direction * (price - position.open_price) * position.amount * self.config.contract_size
        return gross - position.commission - position.swap

    def _check_exit(self, position: TradePosition, price: float) -> Optional[CloseReason]:
        # Stop loss wins when both levels are crossed by one tick
        if position.stop_loss is not None:
            if (position.is_buy and price <= position.stop_loss) or \
                    (not position.is_buy and price >= position.stop_loss):
                return CloseReason.STOP_LOSS

        if position.take_profit is not None:
            if (position.is_buy and price >= position.take_profit) or \
                    (not position.is_buy and price <= position.take_profit):
                return CloseReason.TAKE_PROFIT

        return None

    def _resolve_price(self, request: TradeRequest) -> Optional[float]:
        if request.price is not None and request.price > 0:
            return request.price
        market_price = self.store.get_market_price(request.symbol)
        if market_price and market_price > 0:
            return market_price
        return None

    # ------------------------------------------------------------------
    # Validation and execution
    # ------------------------------------------------------------------

    def validate_trade(self, user_id: str, account_id: str, request: TradeRequest) -> TradeValidation:
        """
        Check a trade request against the account and risk limits.

        Nothing is written. Errors make the request invalid, warnings do not.

        Args:
            user_id: Requesting user
            account_id: Account the trade would be booked on
            request: Trade request

        Returns:
            TradeValidation with margin, commission and risk estimates
        """
        try:
            account = self.store.get_account(account_id, user_id)
            if account is None:
                return TradeValidation.rejected('Invalid trading account')

            errors: List[str] = []
            warnings: List[str] = []
            cfg = self.config

            if request.price is not None and request.price <= 0:
                return TradeValidation.rejected(f"Invalid price {request.price} for {request.symbol}")

            current_price = self._resolve_price(request)
            if current_price is None:
                return TradeValidation.rejected(f"No market price available for {request.symbol}")

            if request.amount < cfg.min_lot_size:
                errors.append(f"Minimum lot size is {cfg.min_lot_size}")
            if request.amount > cfg.max_lot_size:
                errors.append(f"Maximum lot size is {cfg.max_lot_size}")

            if not 1 <= request.leverage <= cfg.max_leverage:
                errors.append(f"Leverage must be between 1 and {cfg.max_leverage}")
                return TradeValidation(valid=False, errors=errors, warnings=warnings)

            trade_value = request.amount * cfg.contract_size * current_price
            required_margin = trade_value / request.leverage

            if required_margin > account.free_margin:
                errors.append(
                    f"Insufficient margin. Required: ${required_margin:.2f}, "
                    f"Available: ${account.free_margin:.2f}"
                )

            estimated_commission = trade_value * cfg.commission_rate

            risk_amount = 0.0
            risk_percent = 0.0
            if request.stop_loss is not None:
                risk_amount = abs(current_price - request.stop_loss) * request.amount * cfg.contract_size
                risk_percent = (risk_amount / account.balance * 100) if account.balance > 0 else 100.0

                if risk_percent > cfg.max_risk_per_trade * 100:
                    warnings.append(f"Risk exceeds recommended {cfg.max_risk_per_trade * 100:g}% per trade")
            else:
                warnings.append('No stop loss set - high risk trade')

            new_margin = account.margin + required_margin
            if new_margin > 0:
                new_margin_level = account.equity / new_margin * 100
                if new_margin_level < 100:
                    warnings.append(f"Margin level will be {new_margin_level:.2f}% after trade")

            min_distance = current_price * cfg.min_stop_distance_pct
            is_buy = request.type == TradeType.BUY

            if request.stop_loss is not None:
                if is_buy and request.stop_loss > current_price - min_distance:
                    errors.append('Stop loss too close to current price for buy order')
                if not is_buy and request.stop_loss < current_price + min_distance:
                    errors.append('Stop loss too close to current price for sell order')

            if request.take_profit is not None:
                if is_buy and request.take_profit < current_price + min_distance:
                    errors.append('Take profit too close to current price for buy order')
                if not is_buy and request.take_profit > current_price - min_distance:
                    errors.append('Take profit too close to current price for sell order')

            return TradeValidation(
                valid=len(errors) == 0,
                errors=errors,
                warnings=warnings,
                required_margin=required_margin,
                estimated_commission=estimated_commission,
                risk_amount=risk_amount,
                risk_percent=risk_percent,
                price=current_price
            )

        except Exception as e:
            logger.error(f"Trade validation error for user {user_id} ({request}): {e}", exc_info=True)
            return TradeValidation.rejected('Validation error occurred')

    def execute_trade(self, user_id: str, account_id: str, request: TradeRequest) -> TradeResult:
        """
        Validate and open a position.

        Args:
            user_id: Requesting user
            account_id: Account to book the trade on
            request: Trade request

        Returns:
            TradeResult with the new trade id on success
        """
        try:
            validation = self.validate_trade(user_id, account_id, request)
            if not validation.valid:
                return TradeResult(
                    success=False,
                    error=', '.join(validation.errors),
                    warnings=validation.warnings
                )

            open_price = validation.price

            position_value = request.amount * self.config.contract_size * open_price
            margin = position_value / request.leverage
            commission = position_value * self.config.commission_rate

            position = TradePosition(
                id=str(uuid.uuid4()),
                account_id=account_id,
                user_id=user_id,
                symbol=request.symbol,
                type=request.type,
                amount=request.amount,
                open_price=open_price,
                current_price=open_price,
                leverage=request.leverage,
                margin=margin,
                commission=commission,
                pnl=-commission,
                status=PositionStatus.OPEN,
                open_time=datetime.now(timezone.utc),
                stop_loss=request.stop_loss,
                take_profit=request.take_profit
            )

            self.store.insert_trade(position)

            try:
                self.store.adjust_account(account_id, margin_delta=margin, require_free_margin=True)
            except (StorageError, InsufficientMarginError) as e:
                self.store.delete_trade(position.id)
                logger.error(f"Account update failed for trade {position.id}, rolled back: {e}")
                return TradeResult(success=False, error=str(e), warnings=validation.warnings)

            trades_logger.info(
                f"EXECUTED {position.id} user={user_id} account={account_id} "
                f"{request.type.value.upper()} {request.amount} {request.symbol} @ {open_price} "
                f"margin={margin:.2f} commission={commission:.2f}"
            )
            logger.info(f"Trade executed: {position.id} {request.type.value} {request.amount} {request.symbol}")

            return TradeResult(success=True, trade_id=position.id, warnings=validation.warnings)

        except Exception as e:
            logger.error(f"Trade execution error for user {user_id} ({request}): {e}", exc_info=True)
            return TradeResult(success=False, error=str(e) or 'Failed to execute trade')

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------

    def close_position(self, trade_id: str, close_reason: CloseReason = CloseReason.MANUAL) -> bool:
        """
        Close an open position at the market price and realize its P&L.

        Args:
            trade_id: Position to close
            close_reason: Why the position is closed

        Returns:
            True if the position was closed by this call
        """
        try:
            position = self.store.get_trade(trade_id)
            if position is None or not position.is_open:
                logger.info(f"Close skipped for {trade_id}: not found or not open")
                return False

            close_price = self.store.get_market_price(position.symbol) or position.current_price
            pnl = self.calculate_pnl(position, close_price)

            if not self.store.close_trade(trade_id, close_price, pnl, close_reason):
                logger.info(f"Close skipped for {trade_id}: already closed")
                return False

            try:
                self.store.adjust_account(
                    position.account_id,
                    margin_delta=-position.margin,
                    balance_delta=pnl
                )
            except StorageError as e:
                self.store.reopen_trade(trade_id, position.current_price, position.pnl)
                logger.error(f"Account update failed closing {trade_id}, position reopened: {e}")
                return False

            trades_logger.info(
                f"CLOSED {trade_id} account={position.account_id} {position.symbol} "
                f"@ {close_price} reason={close_reason.value} pnl={pnl:.2f}"
            )
            logger.info(f"Position closed: {trade_id} ({close_reason.value}) pnl={pnl:.2f}")
            return True

        except Exception as e:
            logger.error(f"Error closing position {trade_id}: {e}", exc_info=True)
            return False

    # ------------------------------------------------------------------
    # Revaluation
    # ------------------------------------------------------------------

    def record_market_price(
        self,
        symbol: str,
        price: float,
        bid: Optional[float] = None,
        ask: Optional[float] = None
    ) -> None:
        """Store the reference price used for validation and closing."""
        symbol = symbol.upper()
        self.store.upsert_market(
            symbol,
            price,
            name=instruments.get_symbol_name(symbol),
            category=instruments.get_symbol_category(symbol),
            bid=bid,
            ask=ask
        )

    def update_positions(self, ticks: Iterable[PriceTick]) -> None:
        """
        Revalue open positions on new prices and enforce exits.

        Each tick is recorded as the market price, then every open position
        on its symbol is checked for stop loss, then take profit, and
        otherwise marked to the new price. Afterwards all accounts with
        reserved margin are checked for stop out.

        Args:
            ticks: New prices, processed in order
        """
        try:
            for tick in ticks:
                try:
                    self._apply_tick(tick)
                except Exception as e:
                    logger.error(f"Error applying tick for {tick.symbol}: {e}", exc_info=True)

            self.check_margin_levels()
        except Exception as e:
            logger.error(f"Error updating positions: {e}", exc_info=True)

    def _apply_tick(self, tick: PriceTick) -> None:
        self.record_market_price(tick.symbol, tick.price)

        touched_accounts: Set[str] = set()
        for position in self.store.get_open_trades(symbol=tick.symbol.upper()):
            exit_reason = self._check_exit(position, tick.price)
            if exit_reason is not None:
                self.close_position(position.id, exit_reason)
                continue

            pnl = self.calculate_pnl(position, tick.price)
            self.store.update_trade_valuation(position.id, tick.price, pnl)
            touched_accounts.add(position.account_id)

        for account_id in touched_accounts:
            self.store.refresh_account(account_id)

    def check_margin_levels(self) -> None:
        """Stop out accounts at or below the stop-out level, warn at the margin call level."""
        for account in self.store.list_accounts_with_margin():
            margin_level = account.margin_level
            if margin_level is None:
                continue

            if margin_level <= self.config.stop_out_level:
                positions = self.store.get_open_trades(account_id=account.id)
                for position in positions:
                    self.close_position(position.id, CloseReason.MARGIN_CALL)

                logger.warning(f"Stop out triggered for account {account.id} at margin level {margin_level:.2f}%")
                trades_logger.warning(
                    f"STOP OUT account={account.id} margin_level={margin_level:.2f}% "
                    f"closed={len(positions)}"
                )
            elif margin_level <= self.config.min_margin_level:
                logger.warning(f"Margin call warning for account {account.id}: {margin_level:.2f}%")

    # ------------------------------------------------------------------
    # Accounts and queries
    # ------------------------------------------------------------------

    def create_account(self, user_id: str, initial_balance: float, currency: str = 'USD') -> TradingAccount:
        """
        Open a funded trading account.

        Raises:
            ValueError: If initial_balance is negative
            StorageError: If the account cannot be stored
        """
        if initial_balance < 0:
            raise ValueError("Initial balance cannot be negative")
        return self.store.create_account(user_id, initial_balance, currency)

    def get_account(self, account_id: str) -> Optional[TradingAccount]:
        return self.store.get_account(account_id)

    def get_account_metrics(self, account_id: str) -> Optional[AccountMetrics]:
        """
        Summarize an account.

        Returns:
            AccountMetrics, or None if the account does not exist
        """
        try:
            account = self.store.get_account(account_id)
            if account is None:
                return None

            trades = self.store.get_trades(account_id)
            open_positions = sum(1 for t in trades if t.is_open)

            return AccountMetrics(
                balance=account.balance,
                equity=account.equity,
                margin=account.margin,
                free_margin=account.free_margin,
                margin_level=account.margin_level,
                total_pnl=sum(t.pnl for t in trades),
                open_positions=open_positions,
                total_volume=sum(t.amount for t in trades)
            )
        except Exception as e:
            logger.error(f"Error getting account metrics for {account_id}: {e}")
            return None

    def get_open_positions(self, account_id: str) -> List[TradePosition]:
        """Open positions of an account, newest first."""
        return self.store.get_open_trades(account_id=account_id)

    def get_position(self, trade_id: str) -> Optional[TradePosition]:
        return self.store.get_trade(trade_id)

    def get_trade_history(self, account_id: str) -> pd.DataFrame:
        """
        Closed positions of an account as a DataFrame, newest first.

        Returns:
            DataFrame with one row per closed trade
        """
        closed = self.store.get_trades(account_id, status=PositionStatus.CLOSED)
        if not closed:
            return pd.DataFrame(columns=HISTORY_COLUMNS)

        df = pd.DataFrame([trade.to_dict() for trade in closed])
        return df[HISTORY_COLUMNS]
