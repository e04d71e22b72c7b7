"""Integration tests for the CLI trading session.

These tests verify that state outlives a single process run:
- TradingSession wiring with a file-backed SQLite ledger
- Re-attaching to the stored account instead of resetting it
- Exit levels enforced by a later session
"""
from decimal import Decimal

import pytest

from main import TradingSession
from paper_trading.core.config import DatabaseConfig
from paper_trading.market.gateway import StaticMarketDataGateway


@pytest.fixture
def db_config(tmp_path):
    """Persistent ledger in a directory that does not exist yet."""
    return DatabaseConfig(
        _env_file=None,
        backend="database",
        url=f"sqlite+aiosqlite:///{tmp_path / 'data' / 'paper_trading.db'}",
    )


@pytest.fixture
def market():
    return StaticMarketDataGateway(prices={"BTC/USD": "50000"})


async def run_session(db_config, market, reset=False) -> TradingSession:
    session = TradingSession("cli-user", gateway=market, db_config=db_config)
    await session.initialize(reset=reset)
    return session


class TestSessionPersistence:
    """Each session is a separate CLI invocation over the same database."""

    @pytest.mark.asyncio
    async def test_fill_visible_to_next_session(self, db_config, market):
        first = await run_session(db_config, market)
        try:
            result = await first.engine.execute_order("BTC/USD", "buy", "0.1")
            assert result.ok
        finally:
            await first.shutdown()

        second = await run_session(db_config, market)
        try:
            position = await second.engine.get_position("BTC/USD")
            account = await second.engine.get_account()
            closed = await second.engine.close_position("BTC/USD")
        finally:
            await second.shutdown()

        assert position.quantity == Decimal("0.1")
        assert account.cash_balance == account.initial_balance - Decimal("5000")
        assert closed.ok

    @pytest.mark.asyncio
    async def test_reset_starts_fresh(self, db_config, market):
        first = await run_session(db_config, market)
        try:
            await first.engine.execute_order("BTC/USD", "buy", "0.1")
        finally:
            await first.shutdown()

        second = await run_session(db_config, market, reset=True)
        try:
            positions = await second.engine.get_all_positions()
            orders = await second.engine.get_all_orders()
        finally:
            await second.shutdown()

        assert positions == []
        assert orders == []

    @pytest.mark.asyncio
    async def test_exit_levels_enforced_after_restart(self, db_config, market):
        first = await run_session(db_config, market)
        try:
            await first.engine.execute_order(
                "BTC/USD", "buy", "0.1", stop_loss="47000", take_profit="55000"
            )
        finally:
            await first.shutdown()

        market.set_price("BTC/USD", "46000")
        second = await run_session(db_config, market)
        try:
            result = await second.engine.check_exit_levels()
            remaining = await second.engine.get_all_positions()
        finally:
            await second.shutdown()

        [closed] = result.data["closed"]
        assert closed["reason"] == "Stop loss"
        assert remaining == []
