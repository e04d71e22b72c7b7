"""Paper trading engine - simulated brokerage for one account.

Responsibilities:
- Owns the account, its positions and its order history (through the ledger)
- Validates and fills orders at the gateway or supplied price
- Runs pre-trade risk rules
- Reports portfolio metrics
- Holds the auto-trading on/off gate read by the auto-trader
"""
import asyncio
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Union

import structlog
from pydantic import ValidationError as PydanticValidationError

from paper_trading.core.config import (
    PaperTradingConfig,
    PaperTradingConfigUpdate,
    paper_trading_config,
)
from paper_trading.core.errors import (
    ErrorKind,
    InvariantViolationError,
    NotFoundError,
    TradingError,
    UpstreamUnavailableError,
    ValidationError,
    error_for_kind,
)
from paper_trading.core.models import (
    ZERO,
    Account,
    FillReport,
    OperationResult,
    Order,
    OrderSide,
    OrderType,
    PortfolioMetrics,
    Position,
    utc_now,
)
from paper_trading.market.gateway import MarketDataGateway
from paper_trading.notifications import NotificationSink, Notifier, TradeEvent, TradeEventKind
from paper_trading.risk.risk_manager import OrderContext, OrderRiskManager
from paper_trading.storage.base import Ledger

logger = structlog.get_logger(__name__)

POSITION_CLOSE_STRATEGY = "Position Close"


class PaperTradingEngine:
    """
    Simulated brokerage engine.

    Every mutation of an account runs under the ledger's per-account lock and
    is written through ``Ledger.apply_fill`` as one unit. Business failures
    come back as ``OperationResult`` values; only ``InvariantViolationError``
    is raised.
    """

    def __init__(
        self,
        gateway: MarketDataGateway,
        ledger: Ledger,
        config: Optional[PaperTradingConfig] = None,
        notifier: Optional[Union[Notifier, NotificationSink]] = None,
        risk_manager: Optional[OrderRiskManager] = None,
    ):
        self.gateway = gateway
        self.ledger = ledger
        self.config = (config or paper_trading_config).model_copy()
        self.risk_manager = risk_manager or OrderRiskManager(self.config)
        self.risk_manager.config = self.config
        self.notifier = notifier if isinstance(notifier, Notifier) else Notifier(notifier)

        self.account_id: Optional[str] = None
        self._auto_trading_enabled = False
        self._log = logger

    @property
    def is_initialized(self) -> bool:
        return self.account_id is not None

    # =========================================================================
    # Account lifecycle
    # =========================================================================

    async def initialize(
        self, user_id: str, initial_balance: Optional[Any] = None
    ) -> OperationResult:
        """
        Create or reset the account for a user.

        Re-initialising replaces the account: positions and orders are dropped
        and cash is set to the initial balance.

        Args:
            user_id: Owning user
            initial_balance: Starting cash (defaults to the configured balance)
        """
        if not user_id:
            return OperationResult.failure(ErrorKind.VALIDATION, "User id is required")

        try:
            balance = (
                self.config.initial_balance
                if initial_balance is None
                else Decimal(str(initial_balance))
            )
        except InvalidOperation:
            return OperationResult.failure(
                ErrorKind.VALIDATION, f"Invalid initial balance: {initial_balance}"
            )
        if not balance.is_finite() or balance <= 0:
            return OperationResult.failure(
                ErrorKind.VALIDATION, "Initial balance must be positive",
                initial_balance=str(balance),
            )

        account_id = Account.id_for_user(user_id)
        async with self.ledger.account_lock(account_id):
            account = Account(
                id=account_id,
                user_id=user_id,
                cash_balance=balance,
                buying_power=balance * self.config.max_leverage,
                initial_balance=balance,
            )
            await self.ledger.reset_account(account)

        self.account_id = account_id
        self._log = logger.bind(account_id=account_id)
        self._log.info(
            "engine.initialized",
            user_id=user_id,
            initial_balance=str(balance),
            max_leverage=str(self.config.max_leverage),
        )
        return OperationResult.success(account)

    async def load_account(self, user_id: str) -> OperationResult:
        """Attach to a user's existing account without resetting it."""
        account_id = Account.id_for_user(user_id)
        account = await self.ledger.get_account(account_id)
        if account is None:
            return OperationResult.failure(
                ErrorKind.NOT_FOUND, f"No paper trading account for user {user_id}",
                user_id=user_id,
            )

        self.account_id = account_id
        self._log = logger.bind(account_id=account_id)
        self._log.info("engine.account_loaded", cash_balance=str(account.cash_balance))
        return OperationResult.success(account)

    # =========================================================================
    # Orders
    # =========================================================================

    async def execute_order(
        self,
        symbol: str,
        side: Union[OrderSide, str],
        quantity: Any,
        order_type: Union[OrderType, str] = OrderType.MARKET,
        price: Optional[Any] = None,
        strategy: str = "Manual Trade",
        reasoning: str = "Manual execution",
        confidence: float = 0.8,
        stop_loss: Optional[Any] = None,
        take_profit: Optional[Any] = None,
    ) -> OperationResult:
        """
        Validate and fill an order.

        Market orders fill at the gateway's current price; limit and stop
        orders fill immediately at the supplied price.
        ``stop_loss`` and ``take_profit`` are stored on a position the order
        opens and enforced by ``check_exit_levels``.

        Returns:
            OperationResult whose data is a FillReport on success and the
            rejected Order (when one could be built) on failure
        """
        if not self.is_initialized:
            return self._not_initialized()

        try:
            order = self._build_order(
                symbol, side, quantity, order_type, price, strategy, reasoning, confidence,
                stop_loss=stop_loss, take_profit=take_profit,
            )
        except ValidationError as e:
            self._log.warning("engine.order_invalid", symbol=symbol, reason=e.message)
            self._publish(TradeEvent(
                kind=TradeEventKind.REJECTED,
                account_id=self.account_id,
                symbol=symbol,
                strategy=strategy,
                reason=e.message,
            ))
            return OperationResult.from_error(e)

        return await self._submit(order, enforce_allow_list=True)

    async def close_position(self, symbol: str, reason: str = "Manual close") -> OperationResult:
        """Close the whole position in ``symbol`` with an opposite-side market order."""
        if not self.is_initialized:
            return self._not_initialized()

        position = await self.ledger.get_position(self.account_id, symbol)
        if position is None:
            return OperationResult.failure(
                ErrorKind.NOT_FOUND, f"No open position for {symbol}", symbol=symbol
            )

        side = OrderSide.SELL if position.quantity > 0 else OrderSide.BUY
        order = Order(
            account_id=self.account_id,
            symbol=symbol,
            side=side,
            quantity=abs(position.quantity),
            strategy=POSITION_CLOSE_STRATEGY,
            reasoning=reason,
            confidence=1.0,
        )
        # Closing must stay possible after a symbol leaves the allow-list
        result = await self._submit(order, enforce_allow_list=False)
        if result.ok:
            report: FillReport = result.data
            self._publish(TradeEvent(
                kind=TradeEventKind.POSITION_CLOSED,
                account_id=self.account_id,
                symbol=symbol,
                side=side.value,
                quantity=order.quantity,
                price=report.order.fill_price,
                strategy=POSITION_CLOSE_STRATEGY,
                reason=reason,
                realized_pnl=report.realized_pnl,
            ))
        return result

    async def close_all_positions(self, reason: str = "Close all positions") -> OperationResult:
        """Close every open position. Failures on one symbol do not stop the rest."""
        if not self.is_initialized:
            return self._not_initialized()

        closed: List[FillReport] = []
        failed: List[Dict[str, Any]] = []
        for position in await self.ledger.list_positions(self.account_id):
            result = await self.close_position(position.symbol, reason)
            if result.ok:
                closed.append(result.data)
            else:
                failed.append({
                    "symbol": position.symbol,
                    "reason": result.error_reason,
                    "error_kind": result.error_kind,
                })

        summary = {"closed": closed, "failed": failed}
        self._log.info("engine.positions_closed", closed=len(closed), failed=len(failed))
        if failed:
            return OperationResult.failure(
                failed[0]["error_kind"],
                f"Failed to close {len(failed)} position(s)",
                data=summary,
            )
        return OperationResult.success(summary)

    async def emergency_stop(self, reason: str = "Emergency stop") -> OperationResult:
        """Disable auto-trading and flatten the account."""
        self._log.critical("engine.emergency_stop", reason=reason)
        self.disable_auto_trading()
        self._publish(TradeEvent(
            kind=TradeEventKind.EMERGENCY_STOP, account_id=self.account_id or "", reason=reason
        ))
        return await self.close_all_positions(reason)

    async def check_exit_levels(self) -> OperationResult:
        """
        Close positions whose stop loss or take profit has been crossed.

        Positions without levels are ignored. A symbol whose price cannot be
        fetched is reported under ``failed`` and left open.

        Returns:
            OperationResult with ``closed`` (dicts of position, reason, fill)
            and ``failed`` (symbol -> reason)
        """
        if not self.is_initialized:
            return self._not_initialized()

        closed: List[Dict[str, Any]] = []
        failed: Dict[str, str] = {}
        for position in await self.ledger.list_positions(self.account_id):
            if position.stop_loss is None and position.take_profit is None:
                continue
            try:
                price = await self._current_price(position.symbol)
            except UpstreamUnavailableError as e:
                self._log.warning("engine.exit_check_failed", symbol=position.symbol, error=e.message)
                failed[position.symbol] = e.message
                continue

            trigger = position.exit_trigger(price)
            if trigger is None:
                continue

            self._log.info(
                "engine.exit_triggered",
                symbol=position.symbol,
                trigger=trigger,
                price=str(price),
                stop_loss=str(position.stop_loss) if position.stop_loss is not None else None,
                take_profit=str(position.take_profit) if position.take_profit is not None else None,
            )
            result = await self.close_position(position.symbol, trigger)
            if result.ok:
                closed.append({"position": position, "reason": trigger, "fill": result.data})
            else:
                failed[position.symbol] = result.error_reason

        return OperationResult.success({"closed": closed, "failed": failed})

    async def _submit(self, order: Order, enforce_allow_list: bool) -> OperationResult:
        try:
            self._validate_order(order, enforce_allow_list)
            async with self.ledger.account_lock(order.account_id):
                report = await self._fill(order)
        except InvariantViolationError:
            self._log.critical("engine.invariant_violation", order_id=order.id, symbol=order.symbol)
            raise
        except TradingError as e:
            return self._rejected(order, e)

        filled = report.order
        self._log.info(
            "engine.order_filled",
            order_id=filled.id,
            symbol=filled.symbol,
            side=filled.side.value,
            quantity=str(filled.quantity),
            price=str(filled.fill_price),
            fee=str(filled.fee),
            realized_pnl=str(filled.realized_pnl) if filled.realized_pnl is not None else None,
            strategy=filled.strategy,
            cash_balance=str(report.account.cash_balance),
        )
        self._publish(TradeEvent(
            kind=TradeEventKind.FILLED,
            account_id=filled.account_id,
            symbol=filled.symbol,
            side=filled.side.value,
            quantity=filled.quantity,
            price=filled.fill_price,
            strategy=filled.strategy,
            confidence=filled.confidence,
            reason=filled.reasoning,
            realized_pnl=filled.realized_pnl,
        ))
        return OperationResult.success(report)

    async def _fill(self, order: Order) -> FillReport:
        """Price, risk-check and book one order. Caller holds the account lock."""
        account = await self.ledger.get_account(order.account_id)
        if account is None:
            raise NotFoundError(f"Account {order.account_id} not found")

        fill_price = await self._resolve_price(order)
        notional = order.quantity * fill_price
        fee = self.config.fee_for(notional)

        positions = {p.symbol: p for p in await self.ledger.list_positions(account.id)}
        check = self.risk_manager.check_order(OrderContext(
            account=account,
            symbol=order.symbol,
            side=order.side,
            quantity=order.quantity,
            price=fill_price,
            fee=fee,
            positions=positions,
        ))
        if not check.passed:
            raise error_for_kind(check.error_kind, check.reason, check.metadata)

        existing = positions.get(order.symbol)
        realized: Optional[Decimal] = None
        position_realized: Optional[Decimal] = None
        if existing is None:
            position = Position.open(
                account.id, order.symbol, order.side, order.quantity, fill_price, order.strategy,
                stop_loss=order.stop_loss, take_profit=order.take_profit,
            )
        else:
            reducing = (existing.quantity > 0) != (order.side == OrderSide.BUY)
            position, booked = existing.apply_fill(order.side, order.quantity, fill_price)
            if reducing:
                realized = booked
                # Flat or flipped: the existing position is closed
                if position is None or (position.quantity > 0) != (existing.quantity > 0):
                    position_realized = existing.realized_pnl + booked

        cash = account.cash_balance - order.side.sign * notional - fee
        updated_account = account.model_copy(update={
            "cash_balance": cash,
            "buying_power": cash * self.config.max_leverage,
            "updated_at": utc_now(),
        })
        filled = order.fill(fill_price, fee, realized, position_realized)

        self._verify_fill(account, updated_account, filled)
        await self.ledger.apply_fill(
            updated_account,
            filled,
            position=position,
            removed_symbol=order.symbol if position is None else None,
        )
        return FillReport(
            order=filled, position=position, account=updated_account, realized_pnl=realized
        )

    def _verify_fill(self, before: Account, after: Account, order: Order):
        """Bookkeeping checks that must hold for every fill before it is written."""
        expected_cash = before.cash_balance - order.side.sign * order.notional - order.fee
        problems = []
        if after.cash_balance != expected_cash:
            problems.append(f"cash {after.cash_balance} != expected {expected_cash}")
        if after.cash_balance < 0:
            problems.append(f"negative cash {after.cash_balance}")
        if after.buying_power > after.cash_balance * self.config.max_leverage:
            problems.append(f"buying power {after.buying_power} exceeds leveraged cash")
        if problems:
            raise InvariantViolationError(
                f"Fill of order {order.id} breaks ledger invariants: {'; '.join(problems)}",
                {"order_id": order.id, "problems": problems},
            )

    async def _resolve_price(self, order: Order) -> Decimal:
        if order.order_type != OrderType.MARKET:
            return order.price
        return await self._current_price(order.symbol)

    async def _current_price(self, symbol: str) -> Decimal:
        try:
            price = await asyncio.wait_for(
                self.gateway.current_price(symbol), timeout=self.config.price_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailableError(
                f"Price request for {symbol} timed out after {self.config.price_timeout_seconds}s",
                {"symbol": symbol},
            ) from e
        except UpstreamUnavailableError:
            raise
        except Exception as e:
            raise UpstreamUnavailableError(
                f"Price request for {symbol} failed: {e}", {"symbol": symbol}
            ) from e

        if price is None or price <= 0:
            raise UpstreamUnavailableError(f"Invalid price for {symbol}: {price}", {"symbol": symbol})
        return Decimal(str(price))

    def _build_order(
        self, symbol, side, quantity, order_type, price, strategy, reasoning, confidence,
        stop_loss=None, take_profit=None,
    ) -> Order:
        """Parse raw inputs into a pending order.

        Raises:
            ValidationError: If the side, type, confidence or numbers cannot be parsed
        """
        try:
            side = side if isinstance(side, OrderSide) else OrderSide(str(side).lower())
        except ValueError as e:
            raise ValidationError(f"Invalid order side: {side}", {"side": str(side)}) from e
        try:
            order_type = (
                order_type if isinstance(order_type, OrderType)
                else OrderType(str(order_type).lower())
            )
        except ValueError as e:
            raise ValidationError(
                f"Invalid order type: {order_type}", {"order_type": str(order_type)}
            ) from e
        try:
            confidence = float(confidence)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid confidence: {confidence}") from e
        if not 0.0 <= confidence <= 1.0:
            raise ValidationError(
                "Confidence must be between 0 and 1", {"confidence": confidence}
            )
        try:
            quantity = Decimal(str(quantity))
            price = Decimal(str(price)) if price is not None else None
        except InvalidOperation as e:
            raise ValidationError(f"Invalid quantity or price: {quantity}, {price}") from e
        try:
            stop_loss = Decimal(str(stop_loss)) if stop_loss is not None else None
            take_profit = Decimal(str(take_profit)) if take_profit is not None else None
        except InvalidOperation as e:
            raise ValidationError(f"Invalid exit levels: {stop_loss}, {take_profit}") from e

        try:
            return Order(
                account_id=self.account_id,
                symbol=symbol,
                side=side,
                quantity=quantity,
                order_type=order_type,
                price=price,
                strategy=strategy,
                reasoning=reasoning,
                confidence=confidence,
                stop_loss=stop_loss,
                take_profit=take_profit,
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid order: {e.errors()[0]['msg']}") from e

    def _validate_order(self, order: Order, enforce_allow_list: bool):
        if not order.symbol:
            raise ValidationError("Symbol is required")
        if not order.quantity.is_finite() or order.quantity <= 0:
            raise ValidationError(
                "Quantity must be positive", {"quantity": str(order.quantity)}
            )
        if order.order_type != OrderType.MARKET:
            if order.price is None or not order.price.is_finite() or order.price <= 0:
                raise ValidationError(
                    f"{order.order_type.value.capitalize()} orders require a positive price",
                    {"price": str(order.price)},
                )
        for name, level in (("stop_loss", order.stop_loss), ("take_profit", order.take_profit)):
            if level is not None and (not level.is_finite() or level <= 0):
                raise ValidationError(
                    f"{name.replace('_', ' ').capitalize()} must be a positive price",
                    {name: str(level)},
                )
        if enforce_allow_list and not self.config.is_symbol_allowed(order.symbol):
            raise ValidationError(
                f"Symbol {order.symbol} is not tradable", {"symbol": order.symbol}
            )

    def _rejected(self, order: Order, error: TradingError) -> OperationResult:
        rejected = order.reject(error.message)
        self._log.warning(
            "engine.order_rejected",
            order_id=order.id,
            symbol=order.symbol,
            side=order.side.value,
            quantity=str(order.quantity),
            kind=error.kind.value,
            reason=error.message,
        )
        self._publish(TradeEvent(
            kind=TradeEventKind.REJECTED,
            account_id=order.account_id,
            symbol=order.symbol,
            side=order.side.value,
            quantity=order.quantity,
            strategy=order.strategy,
            confidence=order.confidence,
            reason=error.message,
        ))
        return OperationResult.from_error(error, data=rejected)

    # =========================================================================
    # Portfolio
    # =========================================================================

    async def get_portfolio_metrics(self) -> OperationResult:
        """Aggregate cash, positions and order history into PortfolioMetrics."""
        account = await self.get_account()
        if account is None:
            return self._not_initialized()

        positions = await self.ledger.list_positions(account.id)
        orders = await self.ledger.list_orders(account.id)

        positions_value = sum((p.market_value for p in positions), ZERO)
        unrealized = sum((p.unrealized_pnl for p in positions), ZERO)
        filled = [o for o in orders if o.is_filled]
        realized = sum((o.realized_pnl for o in filled if o.realized_pnl is not None), ZERO)
        fees = sum((o.fee for o in filled), ZERO)
        closing = [o for o in filled if o.position_realized_pnl is not None]
        wins = sum(1 for o in closing if o.position_realized_pnl > 0)

        total_equity = account.cash_balance + positions_value
        total_pnl = total_equity - account.initial_balance

        metrics = PortfolioMetrics(
            cash_balance=account.cash_balance,
            buying_power=account.buying_power,
            positions_value=positions_value,
            total_equity=total_equity,
            unrealized_pnl=unrealized,
            realized_pnl=realized,
            total_pnl=total_pnl,
            total_pnl_pct=total_pnl / account.initial_balance * 100,
            fees_paid=fees,
            win_rate=wins / len(closing) if closing else 0.0,
            closed_trades=len(closing),
            total_trades=len(filled),
            active_positions=len(positions),
        )
        return OperationResult.success(metrics)

    async def refresh_marks(self) -> OperationResult:
        """Mark every open position at the gateway's current price."""
        if not self.is_initialized:
            return self._not_initialized()

        updated: List[str] = []
        failed: Dict[str, str] = {}
        for position in await self.ledger.list_positions(self.account_id):
            try:
                price = await self._current_price(position.symbol)
            except UpstreamUnavailableError as e:
                self._log.warning("engine.mark_failed", symbol=position.symbol, error=e.message)
                failed[position.symbol] = e.message
                continue

            async with self.ledger.account_lock(self.account_id):
                current = await self.ledger.get_position(self.account_id, position.symbol)
                if current is None:
                    continue
                await self.ledger.upsert_position(current.with_mark(price))
            updated.append(position.symbol)

        return OperationResult.success({"updated": updated, "failed": failed})

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_account(self) -> Optional[Account]:
        if not self.is_initialized:
            return None
        return await self.ledger.get_account(self.account_id)

    async def get_position(self, symbol: str) -> Optional[Position]:
        if not self.is_initialized:
            return None
        return await self.ledger.get_position(self.account_id, symbol)

    async def get_all_positions(self) -> List[Position]:
        if not self.is_initialized:
            return []
        return await self.ledger.list_positions(self.account_id)

    async def get_all_orders(self, limit: Optional[int] = 50) -> List[Order]:
        """Order history, newest first."""
        if not self.is_initialized:
            return []
        return await self.ledger.list_orders(self.account_id, limit=limit)

    async def get_buying_power(self) -> Decimal:
        account = await self.get_account()
        return account.buying_power if account else ZERO

    # =========================================================================
    # Auto-trading gate
    # =========================================================================

    @property
    def is_auto_trading_enabled(self) -> bool:
        return self._auto_trading_enabled

    def enable_auto_trading(self):
        self._auto_trading_enabled = True
        self._log.info("engine.auto_trading_enabled")
        self._publish(TradeEvent(
            kind=TradeEventKind.AUTO_TRADING_ENABLED, account_id=self.account_id or ""
        ))

    def disable_auto_trading(self):
        self._auto_trading_enabled = False
        self._log.info("engine.auto_trading_disabled")
        self._publish(TradeEvent(
            kind=TradeEventKind.AUTO_TRADING_DISABLED, account_id=self.account_id or ""
        ))

    # =========================================================================
    # Configuration
    # =========================================================================

    async def update_config(self, partial: Mapping[str, Any]) -> OperationResult:
        """
        Merge recognised keys into the engine configuration.

        Accepts snake_case or camelCase keys and ignores unknown ones. A
        leverage change re-derives the account's buying power.
        """
        try:
            update = PaperTradingConfigUpdate.model_validate(dict(partial))
        except PydanticValidationError as e:
            return OperationResult.failure(
                ErrorKind.VALIDATION, f"Invalid configuration: {e.errors()[0]['msg']}"
            )

        changes = update.to_config_changes()
        self.config = self.config.model_copy(update=changes)
        self.risk_manager.config = self.config

        if "max_leverage" in changes and self.is_initialized:
            async with self.ledger.account_lock(self.account_id):
                account = await self.ledger.get_account(self.account_id)
                if account is not None:
                    await self.ledger.put_account(account.model_copy(update={
                        "buying_power": account.cash_balance * self.config.max_leverage,
                        "updated_at": utc_now(),
                    }))

        self._log.info("engine.config_updated", changes={k: str(v) for k, v in changes.items()})
        return OperationResult.success(self.get_config(), updated=sorted(changes))

    def get_config(self) -> PaperTradingConfig:
        return self.config.model_copy()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _not_initialized(self) -> OperationResult:
        return OperationResult.failure(
            ErrorKind.NOT_FOUND, "Paper trading account not initialized"
        )

    def _publish(self, event: TradeEvent):
        self.notifier.notify(event)

    async def close(self):
        """Flush pending notifications."""
        await self.notifier.drain()


def create_engine(
    gateway: MarketDataGateway,
    ledger: Ledger,
    config: Optional[PaperTradingConfig] = None,
    sink: Optional[NotificationSink] = None,
) -> PaperTradingEngine:
    """Factory function to create a paper trading engine."""
    return PaperTradingEngine(gateway=gateway, ledger=ledger, config=config, notifier=sink)
