"""Pre-trade risk checks for the paper trading engine.

Every order that passed input validation is run through an ordered list of
rules before it may fill:

1. buying_power      - buys must fit in buying power and keep cash >= 0
2. position_available - sells must be covered by an existing long position
3. max_positions     - a new symbol may not exceed the open position limit
4. max_position_size - the resulting position may not exceed a share of equity

Rules are evaluated in priority order and the first blocking failure wins, so
an unaffordable order is reported as insufficient funds even when it would
also break a size limit.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import structlog

from paper_trading.core.config import PaperTradingConfig, paper_trading_config
from paper_trading.core.errors import ErrorKind
from paper_trading.core.models import ZERO, Account, OrderSide, Position

logger = structlog.get_logger(__name__)


@dataclass
class OrderContext:
    """Everything a rule needs to judge one order.

    Attributes:
        account: Account snapshot before the fill
        symbol: Instrument symbol
        side: Order side
        quantity: Unsigned order quantity
        price: Price the order would fill at
        fee: Fee the fill would be charged
        positions: Open positions keyed by symbol
    """
    account: Account
    symbol: str
    side: OrderSide
    quantity: Decimal
    price: Decimal
    fee: Decimal = ZERO
    positions: Dict[str, Position] = field(default_factory=dict)

    @property
    def notional(self) -> Decimal:
        return self.quantity * self.price

    @property
    def existing(self) -> Optional[Position]:
        return self.positions.get(self.symbol)

    @property
    def equity(self) -> Decimal:
        """Cash plus the marked value of every open position."""
        return self.account.cash_balance + sum(
            (p.market_value for p in self.positions.values()), ZERO
        )

    @property
    def resulting_quantity(self) -> Decimal:
        current = self.existing.quantity if self.existing else ZERO
        return current + self.quantity * self.side.sign


@dataclass
class RiskCheck:
    """Result of a risk validation check.

    Attributes:
        passed: Whether the order passed all blocking rules
        reason: Human-readable explanation if the check failed
        error_kind: Failure category reported to the caller
        rule_triggered: Name of the rule that failed (if any)
        metadata: Additional diagnostic information
    """
    passed: bool
    reason: str = ""
    error_kind: Optional[ErrorKind] = None
    rule_triggered: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RiskRule:
    """Individual risk rule definition.

    Attributes:
        name: Unique identifier for the rule
        check_fn: Function that performs the validation
        priority: Lower numbers = higher priority (checked first)
        is_blocking: If True, failure stops all further checks
    """
    name: str
    check_fn: Callable[[OrderContext], RiskCheck]
    priority: int = 100
    is_blocking: bool = True


class OrderRiskManager:
    """Applies brokerage limits from ``PaperTradingConfig`` to orders."""

    def __init__(self, config: Optional[PaperTradingConfig] = None):
        self.config = config or paper_trading_config
        self._risk_rules: List[RiskRule] = []
        self._register_default_rules()

    def _register_default_rules(self):
        """Register the default set of risk rules in priority order."""
        self._risk_rules = [
            RiskRule(name="buying_power", check_fn=self._check_buying_power, priority=1),
            RiskRule(
                name="position_available", check_fn=self._check_position_available, priority=2
            ),
            RiskRule(name="max_positions", check_fn=self._check_max_positions, priority=3),
            RiskRule(
                name="max_position_size", check_fn=self._check_max_position_size, priority=4
            ),
        ]
        self._risk_rules.sort(key=lambda r: r.priority)

    @property
    def rules(self) -> List[RiskRule]:
        return list(self._risk_rules)

    def add_rule(self, rule: RiskRule):
        """Register an extra rule and keep priority order."""
        self._risk_rules.append(rule)
        self._risk_rules.sort(key=lambda r: r.priority)

    def check_order(self, context: OrderContext) -> RiskCheck:
        """
        Validate an order against all risk rules.

        Args:
            context: Order and account state to judge

        Returns:
            RiskCheck indicating if the order can fill
        """
        warnings = []
        for rule in self._risk_rules:
            result = rule.check_fn(context)
            if result.passed:
                continue

            if rule.is_blocking:
                logger.warning(
                    "risk_manager.order_rejected",
                    account_id=context.account.id,
                    symbol=context.symbol,
                    side=context.side.value,
                    rule=rule.name,
                    reason=result.reason,
                )
                return RiskCheck(
                    passed=False,
                    reason=result.reason,
                    error_kind=result.error_kind or ErrorKind.VALIDATION,
                    rule_triggered=rule.name,
                    metadata=result.metadata,
                )
            warnings.append({'rule': rule.name, 'reason': result.reason})

        return RiskCheck(
            passed=True,
            reason=f"Passed with {len(warnings)} warning(s)" if warnings else "",
            metadata={'warnings': warnings} if warnings else {},
        )

    # === Risk Rule Implementations ===

    def _check_buying_power(self, context: OrderContext) -> RiskCheck:
        """Buys must fit in buying power and leave cash non-negative."""
        if context.side != OrderSide.BUY:
            return RiskCheck(passed=True)

        account = context.account
        required = context.notional + context.fee
        cash_after = account.cash_balance - required
        if required > account.buying_power or cash_after < 0:
            return RiskCheck(
                passed=False,
                reason=(
                    f"Insufficient buying power: required ${required:,.2f}, "
                    f"available ${account.buying_power:,.2f}"
                ),
                error_kind=ErrorKind.INSUFFICIENT_FUNDS,
                metadata={
                    'required': str(required),
                    'buying_power': str(account.buying_power),
                    'cash_balance': str(account.cash_balance),
                },
            )
        return RiskCheck(passed=True)

    def _check_position_available(self, context: OrderContext) -> RiskCheck:
        """Sells may only reduce or close an existing long position."""
        if context.side != OrderSide.SELL:
            return RiskCheck(passed=True)

        held = context.existing.quantity if context.existing else ZERO
        if held < context.quantity:
            return RiskCheck(
                passed=False,
                reason=f"Insufficient position in {context.symbol}: holding {held}, selling {context.quantity}",
                error_kind=ErrorKind.VALIDATION,
                metadata={'held': str(held), 'requested': str(context.quantity)},
            )
        return RiskCheck(passed=True)

    def _check_max_positions(self, context: OrderContext) -> RiskCheck:
        """Opening a new symbol may not exceed the concurrent position limit."""
        if context.existing is not None or context.side != OrderSide.BUY:
            return RiskCheck(passed=True)

        open_count = len(context.positions)
        if open_count >= self.config.max_positions:
            return RiskCheck(
                passed=False,
                reason=f"Max positions reached: {open_count}/{self.config.max_positions}",
                error_kind=ErrorKind.VALIDATION,
                metadata={'open_positions': open_count, 'max_positions': self.config.max_positions},
            )
        return RiskCheck(passed=True)

    def _check_max_position_size(self, context: OrderContext) -> RiskCheck:
        """The resulting position value may not exceed max_position_size of equity."""
        if context.side != OrderSide.BUY:
            return RiskCheck(passed=True)

        resulting_value = abs(context.resulting_quantity) * context.price
        limit = context.equity * self.config.max_position_size
        if resulting_value > limit:
            return RiskCheck(
                passed=False,
                reason=(
                    f"Position size ${resulting_value:,.2f} exceeds limit ${limit:,.2f} "
                    f"({self.config.max_position_size:.0%} of equity)"
                ),
                error_kind=ErrorKind.VALIDATION,
                metadata={'position_value': str(resulting_value), 'limit': str(limit)},
            )
        return RiskCheck(passed=True)
