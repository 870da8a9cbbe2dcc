"""SQLite persistence for trading accounts, positions and market reference prices."""
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from src.models.account import TradingAccount
from src.models.position import TradePosition, PositionStatus, CloseReason
from src.utils.exceptions import InsufficientMarginError, StorageError

logger = logging.getLogger(__name__)

# Float residue left after releasing all margin
MARGIN_EPSILON = 1e-9


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TradingStore:
    """
    Durable store for the trading engine.

    Every public method runs in its own connection and transaction. Account
    numeric fields are changed through ``adjust_account`` only, which applies
    deltas and recomputes equity and free margin atomically.
    """

    def __init__(self, db_path: str = "data/database/trading.db"):
        """
        Initialize trading store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

        db_dir = Path(db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        self._init_database()

    def _init_database(self):
        """Initialize SQLite database with required tables"""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS trading_accounts (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                balance REAL NOT NULL,
                equity REAL NOT NULL,
                margin REAL NOT NULL DEFAULT 0,
                free_margin REAL NOT NULL,
                currency TEXT NOT NULL DEFAULT 'USD',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS trades (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                account_id TEXT NOT NULL,
                symbol TEXT NOT NULL,
                type TEXT NOT NULL,
                amount REAL NOT NULL,
                open_price REAL NOT NULL,
                current_price REAL NOT NULL,
                leverage INTEGER NOT NULL,
                margin REAL NOT NULL,
                commission REAL NOT NULL,
                swap REAL NOT NULL DEFAULT 0,
                stop_loss REAL,
                take_profit REAL,
                pnl REAL NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                closed_at TEXT,
                close_reason TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS markets (
                symbol TEXT PRIMARY KEY,
                name TEXT,
                category TEXT,
                current_price REAL NOT NULL,
                bid REAL,
                ask REAL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_trades_symbol_status
            ON trades(symbol, status)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_trades_account_status
            ON trades(account_id, status)
        """)

        conn.commit()
        conn.close()

        logger.info(f"Trading database initialized at {self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection"""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_account(row: sqlite3.Row) -> TradingAccount:
        return TradingAccount(
            id=row['id'],
            user_id=row['user_id'],
            balance=row['balance'],
            equity=row['equity'],
            margin=row['margin'],
            free_margin=row['free_margin'],
            currency=row['currency'],
            created_at=datetime.fromisoformat(row['created_at']),
            updated_at=datetime.fromisoformat(row['updated_at'])
        )

    def create_account(
        self,
        user_id: str,
        balance: float,
        currency: str = 'USD',
        account_id: Optional[str] = None
    ) -> TradingAccount:
        """
        Create a funded account with no open positions.

        Args:
            user_id: Owner of the account
            balance: Starting balance
            currency: Account currency
            account_id: Optional explicit id

        Returns:
            The created TradingAccount
        """
        account_id = account_id or str(uuid.uuid4())
        now = _utcnow().isoformat()

        conn = self._get_connection()
        try:
            conn.execute("""
                INSERT INTO trading_accounts
                (id, user_id, balance, equity, margin, free_margin, currency, created_at, updated_at)
                VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?)
            """, (account_id, user_id, balance, balance, balance, currency, now, now))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Failed to create account for {user_id}: {e}") from e
        finally:
            conn.close()

        logger.info(f"Created trading account {account_id} for user {user_id} with balance {balance:.2f}")
        return self.get_account(account_id)

    def get_account(self, account_id: str, user_id: Optional[str] = None) -> Optional[TradingAccount]:
        """
        Load an account, optionally requiring it to belong to user_id.

        Returns:
            TradingAccount or None if not found
        """
        conn = self._get_connection()
        try:
            if user_id is None:
                row = conn.execute(
                    "SELECT * FROM trading_accounts WHERE id = ?", (account_id,)
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM trading_accounts WHERE id = ? AND user_id = ?",
                    (account_id, user_id)
                ).fetchone()
        finally:
            conn.close()

        return self._row_to_account(row) if row else None

    def list_accounts_with_margin(self) -> List[TradingAccount]:
        """Accounts currently reserving margin against open positions."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM trading_accounts WHERE margin > 0"
            ).fetchall()
        finally:
            conn.close()

        return [self._row_to_account(row) for row in rows]

    def adjust_account(
        self,
        account_id: str,
        margin_delta: float = 0.0,
        balance_delta: float = 0.0,
        require_free_margin: bool = False
    ) -> TradingAccount:
        """
        Apply balance/margin deltas and recompute equity and free margin.

        Equity is balance plus the P&L of every open position on the account.
        Runs in a single transaction.

        Args:
            account_id: Account to adjust
            margin_delta: Change in reserved margin
            balance_delta: Change in realized balance
            require_free_margin: Roll back if free margin would go negative

        Returns:
            The updated TradingAccount

        Raises:
            InsufficientMarginError: If require_free_margin is set and the
                result would have negative free margin
            StorageError: If the account does not exist or the write fails
        """
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT balance, margin FROM trading_accounts WHERE id = ?", (account_id,)
            ).fetchone()
            if row is None:
                raise StorageError(f"Account not found: {account_id}")

            open_pnl = conn.execute(
                "SELECT COALESCE(SUM(pnl), 0) FROM trades WHERE account_id = ? AND status = ?",
                (account_id, PositionStatus.OPEN.value)
            ).fetchone()[0]

            balance = row['balance'] + balance_delta
            margin = row['margin'] + margin_delta
            if abs(margin) < MARGIN_EPSILON:
                margin = 0.0
            equity = balance + open_pnl
            free_margin = equity - margin

            if require_free_margin and free_margin < 0:
                raise InsufficientMarginError(
                    f"Free margin would be {free_margin:.2f} on account {account_id}"
                )

            conn.execute("""
                UPDATE trading_accounts
                SET balance = ?, margin = ?, equity = ?, free_margin = ?, updated_at = ?
                WHERE id = ?
            """, (balance, margin, equity, free_margin, _utcnow().isoformat(), account_id))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Failed to adjust account {account_id}: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        return self.get_account(account_id)

    def refresh_account(self, account_id: str) -> TradingAccount:
        """Recompute equity and free margin from current open positions."""
        return self.adjust_account(account_id)

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_position(row: sqlite3.Row) -> TradePosition:
        return TradePosition(
            id=row['id'],
            account_id=row['account_id'],
            user_id=row['user_id'],
            symbol=row['symbol'],
            type=row['type'],
            amount=row['amount'],
            open_price=row['open_price'],
            current_price=row['current_price'],
            leverage=row['leverage'],
            margin=row['margin'],
            commission=row['commission'],
            pnl=row['pnl'],
            status=row['status'],
            open_time=datetime.fromisoformat(row['created_at']),
            swap=row['swap'] or 0.0,
            stop_loss=row['stop_loss'],
            take_profit=row['take_profit'],
            close_time=datetime.fromisoformat(row['closed_at']) if row['closed_at'] else None,
            close_reason=row['close_reason']
        )

    def insert_trade(self, position: TradePosition) -> TradePosition:
        """
        Persist a new position.

        Raises:
            StorageError: If the insert fails
        """
        conn = self._get_connection()
        try:
            conn.execute("""
                INSERT INTO trades
                (id, user_id, account_id, symbol, type, amount, open_price, current_price,
                 leverage, margin, commission, swap, stop_loss, take_profit, pnl, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                position.id,
                position.user_id,
                position.account_id,
                position.symbol,
                position.type.value,
                position.amount,
                position.open_price,
                position.current_price,
                position.leverage,
                position.margin,
                position.commission,
                position.swap,
                position.stop_loss,
                position.take_profit,
                position.pnl,
                position.status.value,
                position.open_time.isoformat()
            ))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Failed to insert trade {position.id}: {e}") from e
        finally:
            conn.close()

        return position

    def get_trade(self, trade_id: str) -> Optional[TradePosition]:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT * FROM trades WHERE id = ?", (trade_id,)).fetchone()
        finally:
            conn.close()

        return self._row_to_position(row) if row else None

    def get_open_trades(
        self,
        symbol: Optional[str] = None,
        account_id: Optional[str] = None,
        opened_before: Optional[datetime] = None
    ) -> List[TradePosition]:
        """
        Open positions filtered by symbol, account and open time, newest first.
        """
        query = "SELECT * FROM trades WHERE status = ?"
        params: list = [PositionStatus.OPEN.value]

        if symbol is not None:
            query += " AND symbol = ?"
            params.append(symbol)
        if account_id is not None:
            query += " AND account_id = ?"
            params.append(account_id)
        if opened_before is not None:
            query += " AND created_at < ?"
            params.append(opened_before.isoformat())

        query += " ORDER BY created_at DESC"

        conn = self._get_connection()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()

        return [self._row_to_position(row) for row in rows]

    def get_trades(self, account_id: str, status: Optional[PositionStatus] = None) -> List[TradePosition]:
        """All positions of an account, optionally filtered by status, newest first."""
        query = "SELECT * FROM trades WHERE account_id = ?"
        params: list = [account_id]

        if status is not None:
            query += " AND status = ?"
            params.append(status.value)

        query += " ORDER BY created_at DESC"

        conn = self._get_connection()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()

        return [self._row_to_position(row) for row in rows]

    def _execute_update(self, query: str, params: tuple, description: str) -> bool:
        conn = self._get_connection()
        try:
            cursor = conn.execute(query, params)
            conn.commit()
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Failed to {description}: {e}") from e
        finally:
            conn.close()

    def update_trade_valuation(self, trade_id: str, current_price: float, pnl: float) -> bool:
        """Mark an open position to a new price."""
        return self._execute_update(
            "UPDATE trades SET current_price = ?, pnl = ? WHERE id = ? AND status = ?",
            (current_price, pnl, trade_id, PositionStatus.OPEN.value),
            f"revalue trade {trade_id}"
        )

    def update_trade_swap(self, trade_id: str, swap: float, pnl: float) -> bool:
        """Store accrued swap and the P&L that reflects it."""
        return self._execute_update(
            "UPDATE trades SET swap = ?, pnl = ? WHERE id = ? AND status = ?",
            (swap, pnl, trade_id, PositionStatus.OPEN.value),
            f"apply swap to trade {trade_id}"
        )

    def close_trade(
        self,
        trade_id: str,
        close_price: float,
        pnl: float,
        close_reason: CloseReason,
        closed_at: Optional[datetime] = None
    ) -> bool:
        """
        Move an open position to closed.

        Returns:
            False if the position was not open
        """
        closed_at = closed_at or _utcnow()
        return self._execute_update(
            """
            UPDATE trades
            SET status = ?, current_price = ?, pnl = ?, closed_at = ?, close_reason = ?
            WHERE id = ? AND status = ?
            """,
            (
                PositionStatus.CLOSED.value,
                close_price,
                pnl,
                closed_at.isoformat(),
                close_reason.value,
                trade_id,
                PositionStatus.OPEN.value
            ),
            f"close trade {trade_id}"
        )

    def reopen_trade(self, trade_id: str, current_price: float, pnl: float) -> bool:
        """Undo a close whose account update did not go through."""
        return self._execute_update(
            """
            UPDATE trades
            SET status = ?, current_price = ?, pnl = ?, closed_at = NULL, close_reason = NULL
            WHERE id = ? AND status = ?
            """,
            (
                PositionStatus.OPEN.value,
                current_price,
                pnl,
                trade_id,
                PositionStatus.CLOSED.value
            ),
            f"reopen trade {trade_id}"
        )

    def delete_trade(self, trade_id: str) -> bool:
        """
        Remove a position row. Deleting a missing row is not an error.

        Returns:
            True if a row was removed
        """
        return self._execute_update(
            "DELETE FROM trades WHERE id = ?",
            (trade_id,),
            f"delete trade {trade_id}"
        )

    # ------------------------------------------------------------------
    # Markets
    # ------------------------------------------------------------------

    def upsert_market(
        self,
        symbol: str,
        price: float,
        name: Optional[str] = None,
        category: Optional[str] = None,
        bid: Optional[float] = None,
        ask: Optional[float] = None
    ) -> None:
        """Insert or update the reference price for symbol."""
        conn = self._get_connection()
        try:
            conn.execute("""
                INSERT INTO markets (symbol, name, category, current_price, bid, ask, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(symbol) DO UPDATE SET
                    name = COALESCE(excluded.name, markets.name),
                    category = COALESCE(excluded.category, markets.category),
                    current_price = excluded.current_price,
                    bid = excluded.bid,
                    ask = excluded.ask,
                    updated_at = excluded.updated_at
            """, (symbol, name, category, price, bid, ask, _utcnow().isoformat()))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Failed to upsert market {symbol}: {e}") from e
        finally:
            conn.close()

    def get_market_price(self, symbol: str) -> Optional[float]:
        """Reference price for symbol, None when never recorded."""
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT current_price FROM markets WHERE symbol = ?", (symbol,)
            ).fetchone()
        finally:
            conn.close()

        return row['current_price'] if row else None
