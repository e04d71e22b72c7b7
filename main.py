"""
Paper Trading Engine - Main Entry Point

Simulated brokerage with an adaptive strategy selector and an auto-trading loop.

Usage:
    # Check configuration
    python main.py --check

    # Initialize database tables
    python main.py --init-db

    # Reset the account to a fresh balance
    python main.py --reset --balance 50000

    # Place a manual market order / limit order
    python main.py --order BTC/USD buy 0.1
    python main.py --order BTC/USD buy 0.1 --type limit --price 48000

    # Buy with a stop loss and take profit, then enforce them later
    python main.py --order BTC/USD buy 0.1 --stop-loss 47000 --take-profit 55000
    python main.py --check-exits

    # Close a position
    python main.py --close BTC/USD

    # Run the auto-trader against live market data for 30 ticks
    python main.py --demo --ticks 30 --strategies trend_following,mean_reversion

    # Show account status
    python main.py --status
"""

import argparse
import asyncio
import signal
from typing import Dict, List, Optional

import structlog

from paper_trading.core.auto_trader import AutoTrader
from paper_trading.core.config import (
    DatabaseConfig,
    auto_trading_config,
    database_config,
    paper_trading_config,
    strategy_config,
    system_config,
    validate_configuration,
)
from paper_trading.core.engine import PaperTradingEngine
from paper_trading.core.models import OperationResult
from paper_trading.market.gateway import CcxtMarketDataGateway, MarketDataGateway
from paper_trading.notifications import LoggingNotificationSink
from paper_trading.storage import Ledger, create_ledger
from paper_trading.strategies.manager import create_strategy_manager
from paper_trading.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)


class TradingSession:
    """
    Wires the gateway, ledger, engine, strategy manager and auto-trader for
    one user and owns their shutdown.
    """

    def __init__(
        self,
        user_id: str,
        gateway: Optional[MarketDataGateway] = None,
        db_config: Optional[DatabaseConfig] = None,
    ):
        self.user_id = user_id
        self.db_config = db_config or database_config

        # Components
        self.gateway: MarketDataGateway = gateway or CcxtMarketDataGateway()
        self.ledger: Optional[Ledger] = None
        self.engine: Optional[PaperTradingEngine] = None
        self.auto_trader: Optional[AutoTrader] = None

        # State
        self._shutdown_event = asyncio.Event()

    async def initialize(self, reset: bool = False, balance: Optional[str] = None):
        """Open storage and attach to (or create) the user's account."""
        logger.info(
            "session.initializing",
            user_id=self.user_id,
            backend=self.db_config.backend,
            environment=system_config.environment,
        )

        self.ledger = create_ledger(self.db_config.backend, self.db_config.url)
        await self.ledger.initialize()

        self.engine = PaperTradingEngine(
            gateway=self.gateway,
            ledger=self.ledger,
            config=paper_trading_config,
            notifier=LoggingNotificationSink(),
        )
        manager = create_strategy_manager(self.gateway, strategy_config)
        self.auto_trader = AutoTrader(self.engine, manager, auto_trading_config)

        if not reset:
            result = await self.engine.load_account(self.user_id)
            if result.ok:
                return
        result = await self.engine.initialize(self.user_id, balance)
        if not result.ok:
            raise RuntimeError(result.error_reason)

    async def run_demo(self, ticks: int, strategy_ids: List[str]):
        """Run the auto-trader until ``ticks`` cycles complete or a signal arrives."""
        for strategy_id in strategy_ids:
            result = self.auto_trader.manager.activate_strategy(strategy_id)
            if not result.ok:
                print(f"✗ {result.error_reason}")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._signal_handler)

        self.engine.enable_auto_trading()
        await self.auto_trader.start()
        try:
            while not self._shutdown_event.is_set() and self.auto_trader.cycles < ticks:
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=1)
                except asyncio.TimeoutError:
                    continue
        finally:
            self.engine.disable_auto_trading()
            await self.auto_trader.stop()

    async def shutdown(self):
        """Perform graceful shutdown."""
        logger.info("session.shutting_down")

        if self.auto_trader:
            await self.auto_trader.stop()

        if self.engine:
            await self.engine.close()

        await self.gateway.close()

        if self.ledger:
            await self.ledger.close()

        logger.info("session.shutdown_complete")

    def _signal_handler(self):
        """Handle shutdown signals."""
        logger.info("session.shutdown_signal_received")
        self._shutdown_event.set()

    async def get_status(self) -> Dict:
        """Account, positions, metrics and recent orders."""
        await self.engine.refresh_marks()
        metrics = await self.engine.get_portfolio_metrics()
        return {
            "account": await self.engine.get_account(),
            "metrics": metrics.data if metrics.ok else None,
            "positions": await self.engine.get_all_positions(),
            "orders": await self.engine.get_all_orders(limit=10),
            "auto_trading": self.engine.is_auto_trading_enabled,
        }


def check_configuration() -> Dict:
    """
    Check if configuration is valid.

    Returns:
        Dictionary with validation results
    """
    validation = validate_configuration()
    warnings = []

    if paper_trading_config.max_leverage > 1:
        warnings.append(
            f"⚠️  Leverage {paper_trading_config.max_leverage}x raises buying power above cash"
        )
    if not strategy_config.active_strategies:
        warnings.append("No strategies active at start; use --strategies with --demo")

    return {
        "valid": validation["valid"],
        "issues": validation["issues"],
        "warnings": warnings,
        "backend": database_config.backend,
        "symbols": auto_trading_config.symbols,
    }


def print_result(result: OperationResult):
    """Print an operation result."""
    if result.ok:
        print("✓ OK")
        data = result.data
        order = getattr(data, "order", None)
        if order is not None:
            print(
                f"   {order.side.value.upper()} {order.quantity} {order.symbol} "
                f"@ {order.fill_price} (fee {order.fee})"
            )
            if data.realized_pnl is not None:
                print(f"   Realized PnL: {data.realized_pnl:,.2f}")
            print(f"   Cash: {data.account.cash_balance:,.2f}")
    else:
        kind = result.error_kind.value if result.error_kind else "error"
        print(f"✗ {kind}: {result.error_reason}")


def print_status(status: Dict):
    """Print formatted status output."""
    print("\n" + "=" * 60)
    print("           PAPER TRADING - ACCOUNT STATUS")
    print("=" * 60)

    account = status.get("account")
    if account is None:
        print("\nNo account")
        return
    print(f"\nAccount: {account.id} (user {account.user_id})")
    print(f"Auto-trading: {'ON' if status.get('auto_trading') else 'OFF'}")

    metrics = status.get("metrics")
    if metrics:
        print(f"\n💰 Portfolio:")
        print(f"   Cash: {metrics.cash_balance:,.2f}")
        print(f"   Buying power: {metrics.buying_power:,.2f}")
        print(f"   Equity: {metrics.total_equity:,.2f}")
        print(f"   Total PnL: {metrics.total_pnl:,.2f} ({metrics.total_pnl_pct:.2f}%)")
        print(f"   Realized: {metrics.realized_pnl:,.2f}  Fees: {metrics.fees_paid:,.2f}")
        print(f"   Win rate: {metrics.win_rate:.1%} over {metrics.closed_trades} closed positions")

    positions = status.get("positions", [])
    print(f"\n📈 Positions (Total: {len(positions)}):")
    if positions:
        for pos in positions:
            print(
                f"   - {pos.symbol}: {pos.quantity} @ {pos.avg_cost:,.2f} "
                f"(mark {pos.mark_price:,.2f}, uPnL {pos.unrealized_pnl:,.2f})"
            )
    else:
        print("   No open positions")

    orders = status.get("orders", [])
    if orders:
        print(f"\n📝 Recent Orders:")
        for order in orders:
            print(
                f"   {order.created_at:%Y-%m-%d %H:%M:%S} {order.side.value.upper()} "
                f"{order.quantity} {order.symbol} @ {order.fill_price} [{order.strategy}]"
            )

    print("\n" + "=" * 60)


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Paper Trading Engine - simulated trading with adaptive strategies"
    )

    parser.add_argument(
        "--user", default=system_config.default_user_id, help="User id owning the account"
    )
    parser.add_argument("--balance", help="Initial balance used with --reset")
    parser.add_argument("--reset", action="store_true", help="Reset the account and exit")

    # Actions
    parser.add_argument(
        "--check", action="store_true", help="Check configuration and exit"
    )
    parser.add_argument(
        "--init-db", action="store_true", help="Initialize database and exit"
    )
    parser.add_argument(
        "--status", action="store_true", help="Show account status and exit"
    )
    parser.add_argument(
        "--order",
        nargs=3,
        metavar=("SYMBOL", "SIDE", "QUANTITY"),
        help="Submit an order, e.g. --order BTC/USD buy 0.1",
    )
    parser.add_argument(
        "--type", choices=["market", "limit", "stop"], default="market", help="Order type"
    )
    parser.add_argument("--price", help="Limit/stop price")
    parser.add_argument("--stop-loss", help="Stop loss price stored on the opened position")
    parser.add_argument("--take-profit", help="Take profit price stored on the opened position")
    parser.add_argument("--close", metavar="SYMBOL", help="Close the position in SYMBOL")
    parser.add_argument(
        "--check-exits", action="store_true", help="Close positions past their stop loss or take profit"
    )
    parser.add_argument(
        "--emergency-stop", action="store_true", help="Disable auto-trading and close everything"
    )
    parser.add_argument(
        "--demo", action="store_true", help="Run the auto-trader against live market data"
    )
    parser.add_argument("--ticks", type=int, default=10, help="Cycles to run with --demo")
    parser.add_argument(
        "--strategies", default="", help="Comma separated strategy ids to activate for --demo"
    )

    args = parser.parse_args()

    # Setup logging
    setup_logging()

    # Check configuration
    config_check = check_configuration()

    # Handle --check
    if args.check:
        print("\n" + "=" * 60)
        print("           CONFIGURATION CHECK")
        print("=" * 60)

        if config_check["valid"]:
            print("\n✓ Configuration is valid")
        else:
            print("\n✗ Configuration errors:")
            for issue in config_check["issues"]:
                print(f"   - {issue}")

        for warning in config_check["warnings"]:
            print(warning)

        print(f"\nLedger backend: {config_check['backend']}")
        print(f"Auto-trading symbols: {', '.join(config_check['symbols'])}")
        print("\n" + "=" * 60)
        return

    # If config is invalid, exit early
    if not config_check["valid"]:
        print("\n✗ Configuration errors:")
        for issue in config_check["issues"]:
            print(f"   - {issue}")
        print("\nPlease check your .env file and try again.")
        return

    # Handle --init-db
    if args.init_db:
        print("\n📦 Initializing database...")
        ledger = create_ledger("database", database_config.url)
        await ledger.initialize()
        print("✓ Database initialized successfully")
        await ledger.close()
        return

    session = TradingSession(user_id=args.user)

    try:
        await session.initialize(reset=args.reset, balance=args.balance)

        if args.reset:
            account = await session.engine.get_account()
            print(f"✓ Account {account.id} reset to {account.cash_balance:,.2f}")
        elif args.order:
            symbol, side, quantity = args.order
            result = await session.engine.execute_order(
                symbol, side, quantity, order_type=args.type, price=args.price,
                stop_loss=args.stop_loss, take_profit=args.take_profit,
            )
            print_result(result)
        elif args.close:
            print_result(await session.engine.close_position(args.close))
        elif args.check_exits:
            result = await session.engine.check_exit_levels()
            for exit_ in result.data["closed"]:
                print(f"✓ {exit_['position'].symbol}: {exit_['reason']}")
                print_result(OperationResult.success(exit_["fill"]))
            for symbol, reason in result.data["failed"].items():
                print(f"✗ {symbol}: {reason}")
            if not result.data["closed"] and not result.data["failed"]:
                print("No exit levels crossed")
        elif args.emergency_stop:
            result = await session.engine.emergency_stop("Manual emergency stop")
            closed = len(result.data["closed"]) if result.data else 0
            print(f"🚨 Emergency stop: closed {closed} position(s)")
            if not result.ok:
                print(f"✗ {result.error_reason}")
        elif args.demo:
            strategy_ids = [s.strip() for s in args.strategies.split(",") if s.strip()]
            await session.run_demo(args.ticks, strategy_ids)
            print_status(await session.get_status())
        else:
            print_status(await session.get_status())

    except KeyboardInterrupt:
        print("\n\nShutdown requested by user...")
    except Exception as e:
        logger.error("main.error", error=str(e), exc_info=True)
        print(f"\n✗ Fatal error: {e}")
        raise
    finally:
        await session.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
