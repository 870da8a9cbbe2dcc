"""Tests for the trading engine."""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pandas as pd
import pytest
from hypothesis import given, settings, strategies as st

from config.settings import TradingConfig
from services.trading_engine import TradingEngine
from src.data.store import TradingStore
from src.models.market_data import PriceTick
from src.models.position import TradePosition, TradeType, PositionStatus, CloseReason
from src.models.trade import TradeRequest
from src.utils.exceptions import StorageError

USER_ID = 'user-1'


@pytest.fixture
def temp_db():
    """Create temporary database for testing"""
    fd, path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    yield path
    # Cleanup
    if os.path.exists(path):
        os.unlink(path)


@pytest.fixture
def store(temp_db):
    """Create trading store"""
    return TradingStore(db_path=temp_db)


@pytest.fixture
def engine(store):
    """Create trading engine with default limits"""
    return TradingEngine(store, config=TradingConfig())


@pytest.fixture
def account(engine):
    """Create funded account with a EURUSD reference price"""
    engine.record_market_price('EURUSD', 1.1)
    return engine.create_account(USER_ID, 10000.0)


def buy(amount=0.1, leverage=100, stop_loss=None, take_profit=None, symbol='EURUSD'):
    return TradeRequest(symbol, TradeType.BUY, amount, leverage, stop_loss=stop_loss, take_profit=take_profit)


def sell(amount=0.1, leverage=100, stop_loss=None, take_profit=None, symbol='EURUSD'):
    return TradeRequest(symbol, TradeType.SELL, amount, leverage, stop_loss=stop_loss, take_profit=take_profit)


def assert_account_consistent(store, account_id):
    """Margin and equity must match the open positions"""
    account = store.get_account(account_id)
    open_positions = store.get_open_trades(account_id=account_id)

    assert account.margin == pytest.approx(sum(p.margin for p in open_positions), abs=1e-6)
    assert account.equity == pytest.approx(account.balance + sum(p.pnl for p in open_positions), abs=1e-6)
    assert account.free_margin == pytest.approx(account.equity - account.margin, abs=1e-6)


class TestValidation:
    """Test validate_trade"""

    def test_valid_trade_estimates(self, engine, account):
        """Test margin, commission and risk estimates"""
        validation = engine.validate_trade(USER_ID, account.id, buy(stop_loss=1.09, take_profit=1.12))

        assert validation.valid
        assert validation.errors == []
        assert validation.required_margin == pytest.approx(110.0)
        assert validation.estimated_commission == pytest.approx(7.7)
        assert validation.risk_amount == pytest.approx(100.0)
        assert validation.risk_percent == pytest.approx(1.0)
        assert validation.warnings == []

    def test_invalid_account(self, engine, account):
        """Test unknown accounts are rejected"""
        validation = engine.validate_trade(USER_ID, 'missing', buy())

        assert not validation.valid
        assert validation.errors == ['Invalid trading account']

    def test_account_of_other_user(self, engine, account):
        """Test accounts owned by another user are rejected"""
        validation = engine.validate_trade('someone-else', account.id, buy())

        assert validation.errors == ['Invalid trading account']

    def test_lot_size_limits(self, engine, account):
        """Test minimum and maximum lot size"""
        too_small = engine.validate_trade(USER_ID, account.id, buy(amount=0.001))
        too_large = engine.validate_trade(USER_ID, account.id, buy(amount=150))

        assert 'Minimum lot size is 0.01' in too_small.errors
        assert 'Maximum lot size is 100' in too_large.errors

    def test_leverage_limits(self, engine, account):
        """Test leverage outside the allowed range is rejected"""
        zero = engine.validate_trade(USER_ID, account.id, buy(leverage=0))
        huge = engine.validate_trade(USER_ID, account.id, buy(leverage=5000))

        assert not zero.valid
        assert not huge.valid
        assert any('Leverage' in e for e in zero.errors)

    def test_insufficient_margin(self, engine, account):
        """Test margin above free margin is an error"""
        validation = engine.validate_trade(USER_ID, account.id, buy(amount=10, leverage=100))

        assert not validation.valid
        assert validation.errors[0].startswith('Insufficient margin. Required: $11000.00')

    def test_no_stop_loss_warning(self, engine, account):
        """Test missing stop loss is a warning only"""
        validation = engine.validate_trade(USER_ID, account.id, buy())

        assert validation.valid
        assert 'No stop loss set - high risk trade' in validation.warnings

    def test_high_risk_warning(self, engine, account):
        """Test risk above 2% of balance warns"""
        validation = engine.validate_trade(USER_ID, account.id, buy(amount=1, stop_loss=1.09))

        assert validation.valid
        assert validation.risk_percent == pytest.approx(10.0)
        assert any('Risk exceeds recommended 2%' in w for w in validation.warnings)

    def test_low_margin_level_warning(self, engine, account):
        """Test projected margin level below 100% warns"""
        validation = engine.validate_trade(USER_ID, account.id, buy(amount=10, leverage=100, stop_loss=1.09))

        assert not validation.valid
        assert 'Margin level will be 90.91% after trade' in validation.warnings

    def test_stop_levels_too_close(self, engine, account):
        """Test SL/TP inside the minimum distance are errors"""
        validation = engine.validate_trade(USER_ID, account.id, buy(stop_loss=1.0995, take_profit=1.1005))

        assert 'Stop loss too close to current price for buy order' in validation.errors
        assert 'Take profit too close to current price for buy order' in validation.errors

    def test_stop_levels_wrong_side_for_sell(self, engine, account):
        """Test SL below price and TP above price are errors for sells"""
        validation = engine.validate_trade(USER_ID, account.id, sell(stop_loss=1.09, take_profit=1.12))

        assert 'Stop loss too close to current price for sell order' in validation.errors
        assert 'Take profit too close to current price for sell order' in validation.errors

    def test_no_price_available(self, engine, account):
        """Test symbols without market or request price are rejected"""
        validation = engine.validate_trade(USER_ID, account.id, buy(symbol='GBPUSD'))

        assert not validation.valid
        assert 'No market price available for GBPUSD' in validation.errors

    def test_request_price_used_without_market(self, engine, account):
        """Test the request price is used when no market row exists"""
        request = buy(symbol='GBPUSD')
        request.price = 1.25

        validation = engine.validate_trade(USER_ID, account.id, request)

        assert validation.valid
        assert validation.required_margin == pytest.approx(125.0)
        assert validation.price == 1.25

    def test_non_positive_request_price_rejected(self, engine, store, account):
        """Test a zero or negative request price is a validation error with no side effects"""
        for bad_price in (-1.0, 0.0):
            request = TradeRequest('EURUSD', TradeType.BUY, 1.0, 100, price=bad_price)

            validation = engine.validate_trade(USER_ID, account.id, request)
            result = engine.execute_trade(USER_ID, account.id, request)

            assert not validation.valid
            assert f"Invalid price {bad_price} for EURUSD" in validation.errors
            assert not result.success

        assert engine.get_open_positions(account.id) == []
        assert store.get_account(account.id).margin == 0

    def test_execution_uses_validated_price(self, engine, store, account):
        """Test a quoted request price is both checked and executed"""
        request = TradeRequest('EURUSD', TradeType.BUY, 1.0, 100, stop_loss=1.19, price=1.2)

        validation = engine.validate_trade(USER_ID, account.id, request)
        result = engine.execute_trade(USER_ID, account.id, request)

        assert validation.valid
        assert validation.price == 1.2
        assert validation.required_margin == pytest.approx(1200.0)
        position = engine.get_position(result.trade_id)
        assert position.open_price == validation.price
        assert position.margin == pytest.approx(validation.required_margin)
        assert position.commission == pytest.approx(validation.estimated_commission)
        assert_account_consistent(store, account.id)

    def test_unexpected_error(self, engine, store, account):
        """Test unexpected errors become a generic validation error"""
        with patch.object(store, 'get_account', side_effect=RuntimeError("db gone")):
            validation = engine.validate_trade(USER_ID, account.id, buy())

        assert not validation.valid
        assert validation.errors == ['Validation error occurred']


class TestExecution:
    """Test execute_trade"""

    def test_execute_opens_position(self, engine, store, account):
        """Test execution reserves margin and books commission in pnl"""
        result = engine.execute_trade(USER_ID, account.id, buy(stop_loss=1.09, take_profit=1.12))

        assert result.success
        position = engine.get_position(result.trade_id)
        assert position.status == PositionStatus.OPEN
        assert position.open_price == 1.1
        assert position.margin == pytest.approx(110.0)
        assert position.commission == pytest.approx(7.7)
        assert position.pnl == pytest.approx(-7.7)

        updated = store.get_account(account.id)
        assert updated.balance == 10000.0
        assert updated.margin == pytest.approx(110.0)
        assert updated.equity == pytest.approx(9992.3)
        assert updated.free_margin == pytest.approx(9882.3)
        assert_account_consistent(store, account.id)

    def test_warnings_returned(self, engine, account):
        """Test validation warnings are carried in the result"""
        result = engine.execute_trade(USER_ID, account.id, buy())

        assert result.success
        assert 'No stop loss set - high risk trade' in result.warnings

    def test_rejection_has_no_side_effects(self, engine, store, account):
        """Test a rejected trade writes nothing"""
        before = store.get_account(account.id)

        result = engine.execute_trade(USER_ID, account.id, buy(amount=0.001))

        assert not result.success
        assert 'Minimum lot size is 0.01' in result.error
        assert store.get_trades(account.id) == []
        after = store.get_account(account.id)
        assert (after.balance, after.equity, after.margin, after.free_margin) == \
            (before.balance, before.equity, before.margin, before.free_margin)

    def test_account_failure_rolls_back_trade(self, engine, store, account):
        """Test the position row is removed when the account update fails"""
        with patch.object(store, 'adjust_account', side_effect=StorageError("write failed")):
            result = engine.execute_trade(USER_ID, account.id, buy())

        assert not result.success
        assert 'write failed' in result.error
        assert store.get_trades(account.id) == []
        assert store.get_account(account.id).margin == 0

    def test_commission_exhausting_free_margin_rolls_back(self, engine, store):
        """Test execution fails when commission leaves negative free margin"""
        engine.record_market_price('EURUSD', 1.1)
        account = engine.create_account(USER_ID, 1100.0)

        result = engine.execute_trade(USER_ID, account.id, buy(amount=1, leverage=100))

        assert not result.success
        assert store.get_trades(account.id) == []
        assert store.get_account(account.id).margin == 0

    def test_execute_never_raises(self, engine, store, account):
        """Test unexpected store errors become a failed result"""
        with patch.object(store, 'insert_trade', side_effect=RuntimeError("disk full")):
            result = engine.execute_trade(USER_ID, account.id, buy())

        assert not result.success
        assert 'disk full' in result.error


class TestClosing:
    """Test close_position"""

    def test_buy_profit_scenario(self, engine, store, account):
        """Test a profitable buy realized into balance"""
        result = engine.execute_trade(USER_ID, account.id, buy(stop_loss=1.09, take_profit=1.12))

        engine.update_positions([PriceTick('EURUSD', 1.105)])

        position = engine.get_position(result.trade_id)
        assert position.current_price == 1.105
        assert position.pnl == pytest.approx(42.3)
        assert store.get_account(account.id).equity == pytest.approx(10042.3)

        assert engine.close_position(result.trade_id, CloseReason.MANUAL)

        closed = engine.get_position(result.trade_id)
        assert closed.status == PositionStatus.CLOSED
        assert closed.close_reason == CloseReason.MANUAL
        assert closed.close_time is not None
        assert closed.pnl == pytest.approx(42.3)

        final = store.get_account(account.id)
        assert final.balance == pytest.approx(10042.3)
        assert final.margin == 0
        assert final.equity == pytest.approx(10042.3)
        assert final.free_margin == pytest.approx(10042.3)

    def test_close_idempotent(self, engine, store, account):
        """Test closing twice only realizes once"""
        result = engine.execute_trade(USER_ID, account.id, buy())

        assert engine.close_position(result.trade_id) is True
        balance = store.get_account(account.id).balance

        assert engine.close_position(result.trade_id) is False
        assert store.get_account(account.id).balance == balance

    def test_close_missing_position(self, engine, account):
        """Test closing an unknown id returns False"""
        assert engine.close_position('does-not-exist') is False

    def test_close_uses_position_price_without_market(self, engine, store, account):
        """Test close falls back to the position's current price"""
        result = engine.execute_trade(USER_ID, account.id, buy())

        with patch.object(store, 'get_market_price', return_value=None):
            assert engine.close_position(result.trade_id)

        closed = engine.get_position(result.trade_id)
        assert closed.current_price == 1.1
        assert closed.pnl == pytest.approx(-7.7)

    def test_account_failure_reopens_position(self, engine, store, account):
        """Test a failed account update leaves the position open"""
        result = engine.execute_trade(USER_ID, account.id, buy())
        before = store.get_account(account.id)

        with patch.object(store, 'adjust_account', side_effect=StorageError("write failed")):
            assert engine.close_position(result.trade_id) is False

        position = engine.get_position(result.trade_id)
        assert position.status == PositionStatus.OPEN
        assert position.close_reason is None
        assert store.get_account(account.id).margin == before.margin
        assert_account_consistent(store, account.id)


class TestPositionUpdates:
    """Test update_positions"""

    def test_sell_stop_loss_scenario(self, engine, store, account):
        """Test a sell is stopped out when price rises through the stop"""
        result = engine.execute_trade(USER_ID, account.id, sell(stop_loss=1.11))

        engine.update_positions([PriceTick('EURUSD', 1.111)])

        position = engine.get_position(result.trade_id)
        assert position.status == PositionStatus.CLOSED
        assert position.close_reason == CloseReason.STOP_LOSS
        assert position.current_price == 1.111
        assert position.pnl == pytest.approx(-117.7)

        final = store.get_account(account.id)
        assert final.balance == pytest.approx(9882.3)
        assert final.margin == 0

    def test_take_profit_triggered(self, engine, account):
        """Test a buy closes at take profit"""
        result = engine.execute_trade(USER_ID, account.id, buy(take_profit=1.12))

        engine.update_positions([PriceTick('EURUSD', 1.12)])

        position = engine.get_position(result.trade_id)
        assert position.close_reason == CloseReason.TAKE_PROFIT

    def test_stop_loss_wins_over_take_profit(self, engine, store, account):
        """Test stop loss is checked first when one tick crosses both levels"""
        position = TradePosition(
            id='crossed',
            account_id=account.id,
            user_id=USER_ID,
            symbol='EURUSD',
            type=TradeType.BUY,
            amount=0.1,
            open_price=1.1,
            current_price=1.1,
            leverage=100,
            margin=110.0,
            commission=7.7,
            pnl=-7.7,
            status=PositionStatus.OPEN,
            open_time=datetime.now(timezone.utc),
            stop_loss=1.12,
            take_profit=1.10
        )
        store.insert_trade(position)
        store.adjust_account(account.id, margin_delta=110.0)

        engine.update_positions([PriceTick('EURUSD', 1.11)])

        assert engine.get_position('crossed').close_reason == CloseReason.STOP_LOSS

    def test_other_symbols_untouched(self, engine, account):
        """Test ticks only revalue positions on their symbol"""
        result = engine.execute_trade(USER_ID, account.id, buy())

        engine.update_positions([PriceTick('GBPUSD', 1.3)])

        position = engine.get_position(result.trade_id)
        assert position.current_price == 1.1
        assert engine.store.get_market_price('GBPUSD') == 1.3

    def test_stop_out_sweep(self, engine, store):
        """Test margin level at or below 20% closes every position"""
        engine.record_market_price('EURUSD', 1.1)
        account = engine.create_account(USER_ID, 1500.0)

        first = engine.execute_trade(USER_ID, account.id, buy(amount=0.5))
        second = engine.execute_trade(USER_ID, account.id, buy(amount=0.5))
        assert first.success and second.success

        engine.update_positions([PriceTick('EURUSD', 1.0875)])

        for trade_id in (first.trade_id, second.trade_id):
            position = engine.get_position(trade_id)
            assert position.status == PositionStatus.CLOSED
            assert position.close_reason == CloseReason.MARGIN_CALL

        final = store.get_account(account.id)
        assert final.margin == 0
        assert final.margin_level is None
        assert final.balance == pytest.approx(1500 - 2 * (625 + 38.5))
        assert_account_consistent(store, account.id)

    def test_margin_call_warning_only(self, engine, store):
        """Test margin level between stop out and margin call keeps positions"""
        engine.record_market_price('EURUSD', 1.1)
        account = engine.create_account(USER_ID, 1500.0)
        result = engine.execute_trade(USER_ID, account.id, buy(amount=1))

        engine.update_positions([PriceTick('EURUSD', 1.09)])

        level = store.get_account(account.id).margin_level
        assert 20 < level <= 50
        assert engine.get_position(result.trade_id).is_open

    def test_update_never_raises(self, engine, store, account):
        """Test store failures during revaluation are absorbed"""
        engine.execute_trade(USER_ID, account.id, buy())

        with patch.object(store, 'get_open_trades', side_effect=StorageError("locked")):
            engine.update_positions([PriceTick('EURUSD', 1.2)])


class TestQueries:
    """Test account and history queries"""

    def test_account_metrics(self, engine, account):
        """Test metrics aggregate all trades"""
        first = engine.execute_trade(USER_ID, account.id, buy(amount=0.1))
        engine.execute_trade(USER_ID, account.id, sell(amount=0.2))
        engine.close_position(first.trade_id)

        metrics = engine.get_account_metrics(account.id)

        assert metrics.open_positions == 1
        assert metrics.total_volume == pytest.approx(0.3)
        assert metrics.total_pnl == pytest.approx(-7.7 - 15.4)
        assert metrics.margin == pytest.approx(220.0)
        assert metrics.margin_level == pytest.approx(metrics.equity / 220.0 * 100)

    def test_account_metrics_missing(self, engine):
        """Test metrics of an unknown account"""
        assert engine.get_account_metrics('missing') is None

    def test_open_positions_newest_first(self, engine, store, account):
        """Test open positions are ordered by open time descending"""
        now = datetime.now(timezone.utc)
        for i, trade_id in enumerate(['older', 'newer']):
            store.insert_trade(TradePosition(
                id=trade_id, account_id=account.id, user_id=USER_ID, symbol='EURUSD',
                type=TradeType.BUY, amount=0.1, open_price=1.1, current_price=1.1,
                leverage=100, margin=110.0, commission=7.7, pnl=-7.7,
                status=PositionStatus.OPEN, open_time=now + timedelta(minutes=i)
            ))

        positions = engine.get_open_positions(account.id)

        assert [p.id for p in positions] == ['newer', 'older']

    def test_trade_history_dataframe(self, engine, account):
        """Test closed trades are returned as a DataFrame"""
        result = engine.execute_trade(USER_ID, account.id, buy())
        engine.execute_trade(USER_ID, account.id, buy())
        engine.close_position(result.trade_id)

        history = engine.get_trade_history(account.id)

        assert isinstance(history, pd.DataFrame)
        assert len(history) == 1
        assert history.iloc[0]['id'] == result.trade_id
        assert history.iloc[0]['close_reason'] == 'manual'

    def test_trade_history_empty(self, engine, account):
        """Test empty history still has the expected columns"""
        history = engine.get_trade_history(account.id)

        assert history.empty
        assert 'pnl' in history.columns

    def test_create_account_negative_balance(self, engine):
        """Test negative opening balance is rejected"""
        with pytest.raises(ValueError):
            engine.create_account(USER_ID, -1)


class TestMarginInvariant:
    """Property-based test of account consistency"""

    @given(
        ops=st.lists(
            st.tuples(
                st.sampled_from(['buy', 'sell', 'tick', 'close']),
                st.floats(min_value=1.0, max_value=1.2, allow_nan=False)
            ),
            min_size=1,
            max_size=12
        )
    )
    @settings(max_examples=50, deadline=None)
    def test_margin_matches_open_positions(self, ops):
        """Property: margin, equity and free margin always match open positions"""
        fd, path = tempfile.mkstemp(suffix='.db')
        os.close(fd)
        try:
            store = TradingStore(db_path=path)
            engine = TradingEngine(store, config=TradingConfig())
            engine.record_market_price('EURUSD', 1.1)
            account = engine.create_account(USER_ID, 20000.0)

            for op, price in ops:
                if op == 'buy':
                    engine.execute_trade(USER_ID, account.id, buy(amount=0.5))
                elif op == 'sell':
                    engine.execute_trade(USER_ID, account.id, sell(amount=0.5))
                elif op == 'tick':
                    engine.update_positions([PriceTick('EURUSD', price)])
                else:
                    open_positions = engine.get_open_positions(account.id)
                    if open_positions:
                        engine.close_position(open_positions[-1].id)

                assert_account_consistent(store, account.id)
        finally:
            os.unlink(path)
