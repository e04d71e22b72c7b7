"""Integration tests for the paper trading system.

These tests verify the interaction between multiple components:
- PaperTradingEngine with the SQLAlchemy ledger
- AdaptiveStrategyManager signal generation
- AutoTrader cycles feeding signals into the engine
- Trade outcomes flowing back into strategy performance
"""
import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio

from paper_trading.core.auto_trader import AutoTrader
from paper_trading.core.engine import create_engine
from paper_trading.core.models import ZERO, OrderStatus
from paper_trading.market.gateway import StaticMarketDataGateway
from paper_trading.notifications import RecordingNotificationSink, TradeEventKind
from paper_trading.storage import DatabaseLedger
from paper_trading.strategies import create_strategy_manager


# =============================================================================
# Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def db_ledger():
    """Database ledger on an in-memory SQLite database."""
    ledger = DatabaseLedger("sqlite+aiosqlite:///:memory:")
    await ledger.initialize()
    yield ledger
    await ledger.close()


@pytest.fixture
def market():
    return StaticMarketDataGateway(prices={"BTC/USD": "50000", "ETH/USD": "3000"})


@pytest_asyncio.fixture
async def system(market, db_ledger, paper_config, strategy_settings, auto_config):
    """Engine, manager and auto-trader wired the way a session wires them."""
    sink = RecordingNotificationSink()
    engine = create_engine(market, db_ledger, paper_config, sink=sink)
    await engine.initialize("integration")
    manager = create_strategy_manager(market, strategy_settings)
    trader = AutoTrader(engine, manager, auto_config)
    yield engine, manager, trader, sink
    await trader.stop()
    await engine.close()


async def assert_ledger_consistent(engine):
    """Cash is never negative and equity is cash plus marked positions."""
    account = await engine.get_account()
    positions = await engine.get_all_positions()
    metrics = (await engine.get_portfolio_metrics()).data

    assert account.cash_balance >= 0
    assert account.buying_power <= account.cash_balance * engine.config.max_leverage
    assert metrics.total_equity == account.cash_balance + sum(
        (p.quantity * p.mark_price for p in positions), ZERO
    )


# =============================================================================
# Manual Trading Flow
# =============================================================================

class TestManualTradingFlow:
    """Manual orders persisted through the database ledger."""

    @pytest.mark.asyncio
    async def test_round_trip_persists(self, system, market, db_ledger):
        engine, _, _, sink = system

        buy = await engine.execute_order("BTC/USD", "buy", "0.1")
        market.set_price("BTC/USD", "51000")
        sell = await engine.execute_order("BTC/USD", "sell", "0.1")

        assert buy.ok and sell.ok
        stored = await db_ledger.get_account(engine.account_id)
        assert stored.cash_balance == Decimal("50100")
        orders = await db_ledger.list_orders(engine.account_id)
        assert [o.side.value for o in orders] == ["sell", "buy"]
        assert all(o.status == OrderStatus.FILLED for o in orders)
        assert orders[0].realized_pnl == Decimal("100")
        await assert_ledger_consistent(engine)

        await engine.notifier.drain()
        assert sink.kinds() == [TradeEventKind.FILLED, TradeEventKind.FILLED]

    @pytest.mark.asyncio
    async def test_rejection_leaves_database_unchanged(self, system, db_ledger):
        engine, _, _, _ = system

        result = await engine.execute_order("BTC/USD", "buy", "1000")

        assert not result.ok
        assert (await db_ledger.get_account(engine.account_id)).cash_balance == Decimal("50000")
        assert await db_ledger.list_orders(engine.account_id) == []

    @pytest.mark.asyncio
    async def test_reload_after_restart(self, system, market, db_ledger, paper_config):
        engine, _, _, _ = system
        await engine.execute_order("ETH/USD", "buy", "2")

        restarted = create_engine(market, db_ledger, paper_config)
        result = await restarted.load_account("integration")

        assert result.ok
        position = await restarted.get_position("ETH/USD")
        assert position.quantity == Decimal("2")
        assert position.avg_cost == Decimal("3000")
        await assert_ledger_consistent(restarted)


# =============================================================================
# Automated Trading Flow
# =============================================================================

class TestAutomatedTradingFlow:
    """Signals from the strategy manager filled by the engine."""

    @pytest.mark.asyncio
    async def test_trend_cycle_opens_and_closes(self, system, market, series):
        engine, manager, trader, _ = system
        manager.activate_strategy("trend_following")

        market.set_series("BTC/USD", series["uptrend"])
        opened = await trader.run_cycle()
        await assert_ledger_consistent(engine)

        market.set_series("BTC/USD", series["downtrend"])
        closed = await trader.run_cycle()
        await assert_ledger_consistent(engine)

        assert opened.filled == 1
        assert closed.exits == 1
        assert closed.filled == 0
        assert await engine.get_all_positions() == []
        exit_order = (await engine.get_all_orders())[0]
        assert exit_order.reasoning == "Stop loss"
        assert exit_order.position_realized_pnl == exit_order.realized_pnl

        metrics = (await engine.get_portfolio_metrics()).data
        assert metrics.closed_trades == 1
        assert metrics.realized_pnl < 0
        assert metrics.total_equity < Decimal("50000")
        assert manager.get_strategy("trend_following").performance.trades == 1

    @pytest.mark.asyncio
    async def test_emergency_stop_halts_auto_trading(self, system, market, series):
        engine, manager, trader, sink = system
        manager.activate_strategy("trend_following")
        market.set_series("BTC/USD", series["uptrend"])
        engine.enable_auto_trading()
        await trader.run_cycle()

        result = await engine.emergency_stop("Integration halt")
        await trader.start()
        await asyncio.sleep(0.05)
        await trader.stop()

        assert result.ok
        assert not engine.is_auto_trading_enabled
        assert trader.cycles == 1
        assert await engine.get_all_positions() == []
        await engine.notifier.drain()
        assert TradeEventKind.EMERGENCY_STOP in sink.kinds()
