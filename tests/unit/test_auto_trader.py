"""Unit tests for the auto-trading loop."""
import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from paper_trading.core.auto_trader import AutoTrader, CycleReport
from paper_trading.core.config import AutoTradingConfig
from paper_trading.core.engine import PaperTradingEngine
from paper_trading.core.errors import InvariantViolationError


@pytest.fixture
def trader(engine, manager, auto_config):
    return AutoTrader(engine, manager, auto_config)


class TestCycleReport:
    """Test the cycle summary."""

    def test_summary_counts_errors(self):
        report = CycleReport(signals=2, filled=1, errors=["BTC/USD: boom"])

        assert report.summary() == {
            "exits": 0,
            "signals": 2,
            "submitted": 0,
            "filled": 1,
            "rejected": 0,
            "skipped": 0,
            "errors": 1,
        }


class TestRunCycle:
    """Test a single auto-trading cycle."""

    @pytest.mark.asyncio
    async def test_uninitialized_engine(self, gateway, ledger, paper_config, manager, auto_config):
        engine = PaperTradingEngine(gateway, ledger, paper_config)
        trader = AutoTrader(engine, manager, auto_config)

        report = await trader.run_cycle()

        assert report.summary()["signals"] == 0
        assert trader.cycles == 0

    @pytest.mark.asyncio
    async def test_buy_signal_fills(self, trader, engine, manager, gateway, series):
        gateway.set_series("BTC/USD", series["uptrend"])
        manager.activate_strategy("trend_following")

        report = await trader.run_cycle()

        assert report.signals == 1
        assert report.submitted == 1
        assert report.filled == 1
        assert trader.cycles == 1
        position = await engine.get_position("BTC/USD")
        assert position.strategy == "trend_following"
        order = (await engine.get_all_orders())[0]
        assert order.reasoning.startswith("Selected Trend Following")
        assert order.confidence == pytest.approx(0.7151)

    @pytest.mark.asyncio
    async def test_buy_skipped_with_open_position(self, trader, engine, manager, gateway, series):
        gateway.set_series("BTC/USD", series["uptrend"])
        manager.activate_strategy("trend_following")
        await trader.run_cycle()

        report = await trader.run_cycle()

        assert report.skipped == 1
        assert report.submitted == 0
        assert len(await engine.get_all_orders()) == 1

    @pytest.mark.asyncio
    async def test_opened_position_carries_signal_levels(
        self, trader, engine, manager, gateway, series
    ):
        gateway.set_series("BTC/USD", series["uptrend"])
        manager.activate_strategy("trend_following")

        await trader.run_cycle()

        position = await engine.get_position("BTC/USD")
        assert position.stop_loss == Decimal("117.03")
        assert position.take_profit == Decimal("139.44")

    @pytest.mark.asyncio
    async def test_sell_closes_and_records_outcome(
        self, trader, engine, manager, gateway, series
    ):
        gateway.set_series("BTC/USD", series["uptrend"])
        manager.activate_strategy("trend_following")
        await engine.execute_order("BTC/USD", "buy", "1", strategy="trend_following")

        gateway.set_series("BTC/USD", series["downtrend"])
        report = await trader.run_cycle()

        assert report.exits == 0
        assert report.filled == 1
        sell = (await engine.get_all_orders())[0]
        assert sell.quantity == Decimal("1")
        assert sell.realized_pnl == Decimal("-24.5")
        assert await engine.get_position("BTC/USD") is None
        performance = manager.get_strategy("trend_following").performance
        assert performance.trades == 1
        assert performance.wins == 0

    @pytest.mark.asyncio
    async def test_stop_loss_exit(self, trader, engine, manager, gateway, series):
        gateway.set_series("BTC/USD", series["uptrend"])
        manager.activate_strategy("trend_following")
        await trader.run_cycle()
        manager.deactivate_strategy("trend_following")

        gateway.set_price("BTC/USD", "87")
        report = await trader.run_cycle()

        assert report.exits == 1
        assert report.signals == 0
        assert await engine.get_position("BTC/USD") is None
        exit_order = (await engine.get_all_orders())[0]
        assert exit_order.reasoning == "Stop loss"
        assert exit_order.realized_pnl < 0
        performance = manager.get_strategy("trend_following").performance
        assert performance.trades == 1
        assert performance.wins == 0

    @pytest.mark.asyncio
    async def test_take_profit_exit(self, trader, engine, manager, gateway, series):
        gateway.set_series("BTC/USD", series["uptrend"])
        manager.activate_strategy("trend_following")
        await trader.run_cycle()
        manager.deactivate_strategy("trend_following")

        gateway.set_price("BTC/USD", "140")
        report = await trader.run_cycle()

        assert report.exits == 1
        assert await engine.get_position("BTC/USD") is None
        exit_order = (await engine.get_all_orders())[0]
        assert exit_order.reasoning == "Take profit"
        assert exit_order.realized_pnl > 0
        assert manager.get_strategy("trend_following").performance.wins == 1

    @pytest.mark.asyncio
    async def test_exit_runs_before_signals(self, trader, engine, manager, gateway, series):
        gateway.set_series("BTC/USD", series["uptrend"])
        manager.activate_strategy("trend_following")
        await trader.run_cycle()

        gateway.set_series("BTC/USD", series["downtrend"])
        report = await trader.run_cycle()

        assert report.exits == 1
        assert report.signals == 1
        assert report.skipped == 1
        assert report.submitted == 0
        assert await engine.get_position("BTC/USD") is None

    @pytest.mark.asyncio
    async def test_sell_without_position_skipped(self, trader, manager, gateway, series):
        gateway.set_series("BTC/USD", series["downtrend"])
        manager.activate_strategy("trend_following")

        report = await trader.run_cycle()

        assert report.signals == 1
        assert report.skipped == 1
        assert report.submitted == 0

    @pytest.mark.asyncio
    async def test_low_confidence_skipped(self, engine, manager, gateway, series):
        trader = AutoTrader(
            engine, manager, AutoTradingConfig(symbols_str="BTC/USD", min_confidence=0.9)
        )
        gateway.set_series("BTC/USD", series["uptrend"])
        manager.activate_strategy("trend_following")

        report = await trader.run_cycle()

        assert report.skipped == 1
        assert await engine.get_all_orders() == []

    @pytest.mark.asyncio
    async def test_rejected_order_counted(self, trader, engine, manager, gateway, series):
        gateway.set_series("BTC/USD", series["uptrend"])
        manager.activate_strategy("trend_following")
        await engine.update_config({"maxPositionSize": "0.01"})

        report = await trader.run_cycle()

        assert report.submitted == 1
        assert report.rejected == 1
        assert report.filled == 0

    @pytest.mark.asyncio
    async def test_symbol_errors_do_not_stop_cycle(self, engine, manager, auto_config):
        manager.generate_signals = AsyncMock(side_effect=RuntimeError("boom"))
        trader = AutoTrader(
            engine, manager, auto_config.model_copy(update={"symbols_str": "BTC/USD,ETH/USD"})
        )

        report = await trader.run_cycle()

        assert report.errors == ["BTC/USD: boom", "ETH/USD: boom"]
        assert trader.cycles == 1

    @pytest.mark.asyncio
    async def test_invariant_violation_propagates(self, trader, manager):
        manager.generate_signals = AsyncMock(side_effect=InvariantViolationError("broken"))

        with pytest.raises(InvariantViolationError):
            await trader.run_cycle()


class TestLoop:
    """Test starting and stopping the background loop."""

    @pytest.mark.asyncio
    async def test_disabled_gate_runs_no_cycles(self, trader):
        await trader.start()
        assert trader.is_running
        await asyncio.sleep(0.05)
        await trader.stop()

        assert not trader.is_running
        assert trader.cycles == 0

    @pytest.mark.asyncio
    async def test_enabled_gate_trades(self, trader, engine, manager, gateway, series):
        gateway.set_series("BTC/USD", series["uptrend"])
        manager.activate_strategy("trend_following")
        engine.enable_auto_trading()

        await trader.start()
        await asyncio.sleep(0.1)
        await trader.stop()

        assert trader.cycles >= 1
        assert trader.last_report is not None
        assert await engine.get_position("BTC/USD") is not None

    @pytest.mark.asyncio
    async def test_enabled_on_start(self, engine, manager, auto_config):
        trader = AutoTrader(
            engine, manager, auto_config.model_copy(update={"enabled_on_start": True})
        )

        await trader.start()
        await trader.stop()

        assert engine.is_auto_trading_enabled

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, trader):
        await trader.start()
        task = trader._task
        await trader.start()

        assert trader._task is task
        await trader.stop()

    @pytest.mark.asyncio
    async def test_invariant_violation_stops_loop(self, trader, engine, manager):
        manager.generate_signals = AsyncMock(side_effect=InvariantViolationError("broken"))
        engine.enable_auto_trading()

        await trader.start()
        await asyncio.sleep(0.05)

        assert not trader.is_running
        assert not engine.is_auto_trading_enabled
        with pytest.raises(InvariantViolationError):
            await trader.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, trader):
        await trader.stop()

        assert not trader.is_running
