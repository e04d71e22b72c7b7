"""Data models for the paper trading engine and adaptive strategy selector.

This module defines the structures shared by every component:
- Account / Position / Order: ledger state owned by the paper trading engine
- StrategyDefinition / MarketCondition: state owned by the strategy manager
- Signal: proposal flowing from the strategy manager to the engine
- OperationResult / FillReport / PortfolioMetrics: what public operations return

All monetary values and quantities use Decimal for precision.
All timestamps are timezone-aware UTC datetime objects.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from paper_trading.core.errors import ErrorKind, InvariantViolationError, TradingError

ZERO = Decimal("0")

EXIT_STOP_LOSS = "Stop loss"
EXIT_TAKE_PROFIT = "Take profit"


def utc_now() -> datetime:
    """Current timezone-aware UTC time."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class OrderSide(str, Enum):
    """Order side - buy or sell."""
    BUY = "buy"
    SELL = "sell"

    @property
    def sign(self) -> int:
        """+1 for buys, -1 for sells."""
        return 1 if self is OrderSide.BUY else -1

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderType(str, Enum):
    """Order kinds understood by the simulator."""
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"


class OrderStatus(str, Enum):
    """Order lifecycle status. Everything except PENDING is terminal."""
    PENDING = "pending"
    FILLED = "filled"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class PositionSide(str, Enum):
    """Position direction derived from the signed quantity."""
    LONG = "long"
    SHORT = "short"


class TrendLabel(str, Enum):
    UPTREND = "uptrend"
    DOWNTREND = "downtrend"
    SIDEWAYS = "sideways"


class VolatilityLabel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EXTREME = "extreme"


class VolumeLabel(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class StrategyFamily(str, Enum):
    """Strategy families scored by the compatibility matrix."""
    MOMENTUM = "momentum"
    MEAN_REVERSION = "mean_reversion"
    BREAKOUT = "breakout"
    VOLATILITY = "volatility"
    ADAPTIVE_COMPOSITE = "adaptive_composite"


class StrategyState(str, Enum):
    """Activation state of a catalog entry."""
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"


class RiskLevel(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"


_TERMINAL_STATUSES = (OrderStatus.FILLED, OrderStatus.REJECTED, OrderStatus.CANCELLED)


# =============================================================================
# Account Models
# =============================================================================

class Account(BaseModel):
    """Simulated trading account.

    Attributes:
        id: Account identifier (derived from the owning user id)
        user_id: Owning user
        cash_balance: Cash available after all fills
        buying_power: Cash scaled by the configured leverage
        initial_balance: Balance at the last initialization, reference for P&L %
        created_at: Account creation time
        updated_at: Last mutation time
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: str = Field(..., description="Account ID")
    user_id: str = Field(..., description="Owning user ID")
    cash_balance: Decimal = Field(..., ge=0, description="Cash balance")
    buying_power: Decimal = Field(..., ge=0, description="Buying power")
    initial_balance: Decimal = Field(..., gt=0, description="Initial balance")
    created_at: datetime = Field(default_factory=utc_now, description="Creation time")
    updated_at: datetime = Field(default_factory=utc_now, description="Last update")

    @staticmethod
    def id_for_user(user_id: str) -> str:
        """Stable account id for a user, so re-initialising replaces the same account."""
        return f"paper-{user_id}"


# =============================================================================
# Position Models
# =============================================================================

class Position(BaseModel):
    """Open position for one (account, symbol) pair.

    The quantity is signed: positive is long, negative is short. A position
    whose quantity reaches zero is removed from the ledger rather than kept.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    account_id: str = Field(..., description="Owning account")
    symbol: str = Field(..., description="Instrument symbol")
    quantity: Decimal = Field(..., description="Signed quantity")
    avg_cost: Decimal = Field(..., gt=0, description="Average cost basis")
    mark_price: Decimal = Field(..., gt=0, description="Last mark price")
    realized_pnl: Decimal = Field(default=ZERO, description="Realized PnL from partial closes")
    strategy: str = Field(default="", description="Strategy that opened the position")
    stop_loss: Optional[Decimal] = Field(default=None, gt=0, description="Exit price on loss")
    take_profit: Optional[Decimal] = Field(default=None, gt=0, description="Exit price on gain")
    opened_at: datetime = Field(default_factory=utc_now, description="Open time")
    updated_at: datetime = Field(default_factory=utc_now, description="Last update")

    @field_validator("quantity")
    @classmethod
    def quantity_non_zero(cls, v: Decimal) -> Decimal:
        """Zero-quantity positions must be removed, not stored."""
        if v == 0:
            raise ValueError("Position quantity must be non-zero")
        return v

    @property
    def side(self) -> PositionSide:
        return PositionSide.LONG if self.quantity > 0 else PositionSide.SHORT

    @property
    def market_value(self) -> Decimal:
        """Signed value at the mark price."""
        return self.quantity * self.mark_price

    @property
    def cost_basis(self) -> Decimal:
        return abs(self.quantity) * self.avg_cost

    @property
    def unrealized_pnl(self) -> Decimal:
        """Paper profit at the mark price: (mark - avg_cost) * quantity."""
        return (self.mark_price - self.avg_cost) * self.quantity

    @property
    def unrealized_pnl_pct(self) -> Decimal:
        if self.cost_basis == 0:
            return ZERO
        return self.unrealized_pnl / self.cost_basis * 100

    def with_mark(self, price: Decimal) -> "Position":
        """Copy of this position marked at a new price."""
        return self.model_copy(update={"mark_price": price, "updated_at": utc_now()})

    def exit_trigger(self, price: Decimal) -> Optional[str]:
        """Name of the protective level ``price`` has crossed, if any.

        Long positions stop out at or below the stop and take profit at or
        above the target; shorts mirror this.
        """
        long = self.quantity > 0
        if self.stop_loss is not None:
            if (long and price <= self.stop_loss) or (not long and price >= self.stop_loss):
                return EXIT_STOP_LOSS
        if self.take_profit is not None:
            if (long and price >= self.take_profit) or (not long and price <= self.take_profit):
                return EXIT_TAKE_PROFIT
        return None

    @classmethod
    def open(
        cls,
        account_id: str,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
        strategy: str = "",
        stop_loss: Optional[Decimal] = None,
        take_profit: Optional[Decimal] = None,
    ) -> "Position":
        return cls(
            account_id=account_id,
            symbol=symbol,
            quantity=quantity * side.sign,
            avg_cost=price,
            mark_price=price,
            strategy=strategy,
            stop_loss=stop_loss,
            take_profit=take_profit,
        )

    def apply_fill(
        self, side: OrderSide, quantity: Decimal, price: Decimal
    ) -> Tuple[Optional["Position"], Decimal]:
        """Apply a fill to this position.

        Same-direction fills update the weighted-average cost. Opposite
        fills book realized PnL on the closed quantity; a fill larger than the
        position flips it and opens the remainder at the fill price.

        Args:
            side: Side of the fill
            quantity: Unsigned fill quantity
            price: Fill price

        Returns:
            Tuple of (updated position or None when flat, realized PnL)
        """
        signed = quantity * side.sign
        now = utc_now()

        if (self.quantity > 0) == (signed > 0):
            new_quantity = self.quantity + signed
            total_cost = abs(self.quantity) * self.avg_cost + quantity * price
            return self.model_copy(update={
                "quantity": new_quantity,
                "avg_cost": total_cost / abs(new_quantity),
                "mark_price": price,
                "updated_at": now,
            }), ZERO

        closed = min(quantity, abs(self.quantity))
        direction = 1 if self.quantity > 0 else -1
        realized = (price - self.avg_cost) * closed * direction
        remaining = self.quantity + signed

        if remaining == 0:
            return None, realized

        if (remaining > 0) == (self.quantity > 0):
            return self.model_copy(update={
                "quantity": remaining,
                "mark_price": price,
                "realized_pnl": self.realized_pnl + realized,
                "updated_at": now,
            }), realized

        # Flipped through zero: the remainder is a fresh position at the fill price
        return self.model_copy(update={
            "quantity": remaining,
            "avg_cost": price,
            "mark_price": price,
            "realized_pnl": ZERO,
            "stop_loss": None,
            "take_profit": None,
            "opened_at": now,
            "updated_at": now,
        }), realized


# =============================================================================
# Order Models
# =============================================================================

class Order(BaseModel):
    """Simulated order and its fill.

    Orders start PENDING and move exactly once to a terminal status. Terminal
    orders are never mutated; ``transition`` returns a new object.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    # Required fields
    account_id: str = Field(..., description="Owning account")
    symbol: str = Field(..., description="Instrument symbol")
    side: OrderSide = Field(..., description="Order side")
    quantity: Decimal = Field(..., description="Requested quantity")
    order_type: OrderType = Field(default=OrderType.MARKET, description="Order kind")

    # Limit/stop price (None for market orders)
    price: Optional[Decimal] = Field(default=None, description="Limit or stop price")

    # Identification
    id: str = Field(default_factory=lambda: str(uuid4()), description="Order ID")

    # Status
    status: OrderStatus = Field(default=OrderStatus.PENDING, description="Order status")
    reject_reason: Optional[str] = Field(default=None, description="Rejection reason")

    # Protective levels for the position this order opens
    stop_loss: Optional[Decimal] = Field(default=None, description="Stop loss price")
    take_profit: Optional[Decimal] = Field(default=None, description="Take profit price")

    # Attribution
    strategy: str = Field(default="Manual Trade", description="Originating strategy")
    reasoning: str = Field(default="", description="Why the order was placed")
    confidence: float = Field(default=0.8, ge=0.0, le=1.0, description="Confidence 0-1")

    # Fill
    fill_price: Optional[Decimal] = Field(default=None, description="Fill price")
    fee: Decimal = Field(default=ZERO, ge=0, description="Fee charged")
    realized_pnl: Optional[Decimal] = Field(default=None, description="PnL booked by this fill")
    position_realized_pnl: Optional[Decimal] = Field(
        default=None, description="Total PnL of the position this fill closed"
    )

    # Timestamps
    created_at: datetime = Field(default_factory=utc_now, description="Creation time")
    filled_at: Optional[datetime] = Field(default=None, description="Fill time")

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL_STATUSES

    @property
    def is_filled(self) -> bool:
        return self.status == OrderStatus.FILLED

    @property
    def notional(self) -> Optional[Decimal]:
        """Fill value (price x quantity), None until a price is known."""
        price = self.fill_price if self.fill_price is not None else self.price
        if price is None:
            return None
        return price * self.quantity

    def transition(self, status: OrderStatus, **changes: Any) -> "Order":
        """Return a copy of this order moved to ``status``.

        Raises:
            InvariantViolationError: If the order is already terminal or the
                target status is PENDING.
        """
        if self.is_terminal:
            raise InvariantViolationError(
                f"Order {self.id} is {self.status.value}; terminal orders cannot change",
                {"order_id": self.id, "status": self.status.value, "target": status.value},
            )
        if status == OrderStatus.PENDING:
            raise InvariantViolationError(f"Order {self.id} cannot transition back to pending")
        return self.model_copy(update={"status": status, **changes})

    def fill(
        self,
        price: Decimal,
        fee: Decimal,
        realized_pnl: Optional[Decimal],
        position_realized_pnl: Optional[Decimal] = None,
    ) -> "Order":
        return self.transition(
            OrderStatus.FILLED,
            fill_price=price,
            fee=fee,
            realized_pnl=realized_pnl,
            position_realized_pnl=position_realized_pnl,
            filled_at=utc_now(),
        )

    def reject(self, reason: str) -> "Order":
        return self.transition(OrderStatus.REJECTED, reject_reason=reason)


# =============================================================================
# Strategy Models
# =============================================================================

class StrategyParameters(BaseModel):
    """Tunable parameters of a strategy definition."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    risk_level: RiskLevel = Field(default=RiskLevel.MODERATE, description="Risk level")
    max_position_size: Decimal = Field(
        default=Decimal("5000"), gt=0, description="Max signal notional in quote currency"
    )
    stop_loss_pct: Decimal = Field(default=Decimal("0.05"), gt=0, lt=1, description="Stop distance")
    take_profit_pct: Decimal = Field(default=Decimal("0.10"), gt=0, description="Target distance")
    timeframe: str = Field(default="1h", description="Analysis timeframe")
    symbols: List[str] = Field(default_factory=list, description="Eligible symbols (empty = all)")


class StrategyPerformance(BaseModel):
    """Rolling performance statistics used to weight strategy scores."""
    trades: int = Field(default=0, ge=0)
    wins: int = Field(default=0, ge=0)
    win_rate: float = Field(default=0.5, ge=0.0, le=1.0)
    avg_return: float = Field(default=0.0)
    sharpe_ratio: float = Field(default=1.0)
    max_drawdown: float = Field(default=0.05, ge=0.0)
    returns: List[float] = Field(default_factory=list, description="Per-trade returns")


class StrategyDefinition(BaseModel):
    """Catalog entry describing a strategy.

    Strategies are configuration objects, not running processes. The state
    only flags whether the strategy is eligible for signal generation.
    """
    id: str = Field(..., description="Strategy ID")
    name: str = Field(..., description="Display name")
    description: str = Field(default="", description="What the strategy trades")
    family: StrategyFamily = Field(..., description="Strategy family")
    parameters: StrategyParameters = Field(default_factory=StrategyParameters)
    state: StrategyState = Field(default=StrategyState.PAUSED, description="Activation state")
    confidence: float = Field(default=0.75, ge=0.0, le=1.0, description="Prior confidence")
    expected_return: float = Field(default=0.1, description="Expected return")
    max_drawdown: float = Field(default=0.05, ge=0.0, description="Expected max drawdown")
    performance: StrategyPerformance = Field(default_factory=StrategyPerformance)

    @property
    def is_active(self) -> bool:
        return self.state == StrategyState.ACTIVE

    def allows_symbol(self, symbol: str) -> bool:
        return not self.parameters.symbols or symbol in self.parameters.symbols


# =============================================================================
# Market Models
# =============================================================================

class PriceSample(BaseModel):
    """One observation of a symbol's price series."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    timestamp: datetime = Field(..., description="Sample time (UTC)")
    price: Decimal = Field(..., gt=0, description="Price")
    volume: Decimal = Field(default=ZERO, ge=0, description="Traded volume")


class MarketCondition(BaseModel):
    """Classified market state for one symbol. Derived, never persisted."""

    symbol: str
    timestamp: datetime = Field(default_factory=utc_now)
    trend: TrendLabel = TrendLabel.SIDEWAYS
    volatility: VolatilityLabel = VolatilityLabel.LOW
    volume: VolumeLabel = VolumeLabel.NORMAL

    # Supporting metrics
    last_price: float = 0.0
    short_ma: float = 0.0
    long_ma: float = 0.0
    ma_spread: float = 0.0
    realized_volatility: float = 0.0
    momentum_score: float = 0.0
    volume_ratio: float = 1.0
    sample_count: int = 0


class Signal(BaseModel):
    """Trade proposal produced by the strategy manager.

    A signal is not an order: the engine decides whether to fill it.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    symbol: str
    side: OrderSide
    quantity: Decimal = Field(..., gt=0, description="Suggested quantity")
    reference_price: Decimal = Field(..., gt=0, description="Price the size was computed at")
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None
    strategy_id: str
    strategy_name: str = ""
    account_id: str = ""
    confidence: float = Field(..., ge=0.0, le=1.0)
    explanation: str = ""
    condition: Optional[MarketCondition] = None
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def notional(self) -> Decimal:
        return self.quantity * self.reference_price


# =============================================================================
# Results
# =============================================================================

class OperationResult(BaseModel):
    """Transport-neutral outcome of a public operation."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    ok: bool
    data: Any = None
    error_reason: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def success(cls, data: Any = None, **details: Any) -> "OperationResult":
        return cls(ok=True, data=data, details=details)

    @classmethod
    def failure(
        cls, kind: ErrorKind, reason: str, data: Any = None, **details: Any
    ) -> "OperationResult":
        return cls(ok=False, data=data, error_reason=reason, error_kind=kind, details=details)

    @classmethod
    def from_error(cls, error: TradingError, data: Any = None) -> "OperationResult":
        return cls.failure(error.kind, error.message, data=data, **error.details)


class FillReport(BaseModel):
    """Payload of an execution result."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    order: Order
    position: Optional[Position] = None
    account: Optional[Account] = None
    realized_pnl: Optional[Decimal] = None


class PortfolioMetrics(BaseModel):
    """Aggregated account view."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    cash_balance: Decimal
    buying_power: Decimal
    positions_value: Decimal
    total_equity: Decimal
    unrealized_pnl: Decimal
    realized_pnl: Decimal
    total_pnl: Decimal
    total_pnl_pct: Decimal
    fees_paid: Decimal
    win_rate: float
    closed_trades: int
    total_trades: int
    active_positions: int
    timestamp: datetime = Field(default_factory=utc_now)
