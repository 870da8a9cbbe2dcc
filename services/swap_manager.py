"""Daily swap (overnight financing) for positions held through rollover."""

import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Dict, List, Optional

from config.settings import settings, SwapConfig
from src.data import instruments
from src.data.store import TradingStore
from src.models.position import TradeType
from src.models.trade import SwapCharge

logger = logging.getLogger(__name__)


class SwapManager:
    """
    Applies swap charges once per day at the rollover time.

    Swap accrues on the position itself and reduces its open P&L. Account
    equity is refreshed afterwards; the balance only changes when the
    position is closed and its P&L is realized.
    """

    def __init__(
        self,
        store: TradingStore,
        config: Optional[SwapConfig] = None,
        contract_size: Optional[float] = None,
        last_swap_date: Optional[date] = None
    ):
        """
        Initialize swap manager.

        Args:
            store: Trading store holding the positions
            config: Rollover time and rates (defaults to settings)
            contract_size: Units per lot (defaults to settings)
            last_swap_date: UTC date swaps were last applied, if known
        """
        self.store = store
        self.config = config or settings.swap
        self.contract_size = contract_size or settings.trading.contract_size
        self.last_swap_date = last_swap_date
        self._stop_event: Optional[asyncio.Event] = None

    def get_swap_rates(self, symbol: str) -> Dict[str, float]:
        return self.config.rates.get(symbol, instruments.get_swap_rates(symbol))

    def calculate_swap(
        self,
        symbol: str,
        trade_type: TradeType,
        amount: float,
        rollover_time: Optional[datetime] = None
    ) -> SwapCharge:
        """
        Daily swap for a position.

        Args:
            symbol: Instrument
            trade_type: Position direction
            amount: Lots
            rollover_time: Rollover the charge belongs to

        Returns:
            SwapCharge whose swap_amount is positive for a credit
        """
        rates = self.get_swap_rates(symbol)
        swap_rate = rates['long'] if trade_type == TradeType.BUY else rates['short']
        swap_amount = amount * self.contract_size * instruments.get_pip_value(symbol) * swap_rate

        return SwapCharge(
            symbol=symbol,
            type=trade_type,
            amount=amount,
            swap_rate=swap_rate,
            swap_amount=swap_amount,
            rollover_time=rollover_time or datetime.now(timezone.utc)
        )

    def rollover_time_for(self, now: datetime) -> datetime:
        """Rollover moment on the UTC date of now."""
        now = now.astimezone(timezone.utc)
        return now.replace(
            hour=self.config.rollover_hour,
            minute=self.config.rollover_minute,
            second=0,
            microsecond=0
        )

    def apply_daily_swaps(self, now: Optional[datetime] = None) -> List[SwapCharge]:
        """
        Charge swap to every open position opened before today's rollover.

        Args:
            now: Current time (defaults to now, UTC)

        Returns:
            Charges applied, one per position
        """
        now = now or datetime.now(timezone.utc)
        rollover = self.rollover_time_for(now)

        charges: List[SwapCharge] = []
        accounts = set()

        for position in self.store.get_open_trades(opened_before=rollover):
            charge = self.calculate_swap(position.symbol, position.type, position.amount, rollover)

            swap = position.swap - charge.swap_amount
            pnl = position.pnl + charge.swap_amount
            if self.store.update_trade_swap(position.id, swap, pnl):
                charges.append(charge)
                accounts.add(position.account_id)
                logger.info(f"Swap applied to {position.id} ({position.symbol}): {charge.swap_amount:.2f}")

        for account_id in accounts:
            self.store.refresh_account(account_id)

        logger.info(f"Daily swaps applied to {len(charges)} positions")
        return charges

    def check_for_rollover(self, now: Optional[datetime] = None) -> bool:
        """
        Apply swaps if the rollover time has passed and today is not done yet.

        Returns:
            True if swaps were applied by this call
        """
        now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)

        if now < self.rollover_time_for(now):
            return False
        if self.last_swap_date == now.date():
            return False

        try:
            self.apply_daily_swaps(now)
        except Exception as e:
            logger.error(f"Failed to apply daily swaps: {e}", exc_info=True)
            return False

        self.last_swap_date = now.date()
        return True

    async def run(self, check_interval: Optional[float] = None) -> None:
        """
        Check for rollover periodically until stop() is called.

        Args:
            check_interval: Seconds between checks (defaults to settings)
        """
        interval = check_interval if check_interval is not None else self.config.check_interval_seconds
        self._stop_event = asyncio.Event()
        logger.info(f"Swap manager started (rollover {self.config.swap_time} UTC)")

        while not self._stop_event.is_set():
            self.check_for_rollover()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Swap manager stopped")

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
