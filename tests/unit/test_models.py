"""Unit tests for core data models."""
from decimal import Decimal

import pytest

from paper_trading.core.errors import ErrorKind, InsufficientFundsError, InvariantViolationError
from paper_trading.core.models import (
    EXIT_STOP_LOSS,
    EXIT_TAKE_PROFIT,
    Account,
    OperationResult,
    Order,
    OrderSide,
    OrderStatus,
    Position,
    PositionSide,
    Signal,
)


def make_position(quantity="0.1", avg_cost="50000", mark="50000") -> Position:
    return Position(
        account_id="paper-u1",
        symbol="BTC/USD",
        quantity=Decimal(quantity),
        avg_cost=Decimal(avg_cost),
        mark_price=Decimal(mark),
    )


def make_order(**overrides) -> Order:
    fields = dict(
        account_id="paper-u1",
        symbol="BTC/USD",
        side=OrderSide.BUY,
        quantity=Decimal("0.1"),
    )
    fields.update(overrides)
    return Order(**fields)


class TestOrderSide:
    """Tests for OrderSide helpers."""

    def test_sign(self):
        assert OrderSide.BUY.sign == 1
        assert OrderSide.SELL.sign == -1

    def test_opposite(self):
        assert OrderSide.BUY.opposite is OrderSide.SELL
        assert OrderSide.SELL.opposite is OrderSide.BUY


class TestAccount:
    """Tests for Account model."""

    def test_id_is_derived_from_user(self):
        assert Account.id_for_user("alice") == "paper-alice"

    def test_negative_cash_rejected(self):
        with pytest.raises(ValueError):
            Account(
                id="paper-u1",
                user_id="u1",
                cash_balance=Decimal("-1"),
                buying_power=Decimal("0"),
                initial_balance=Decimal("100"),
            )


class TestPosition:
    """Tests for Position fill arithmetic."""

    def test_zero_quantity_rejected(self):
        with pytest.raises(ValueError):
            make_position(quantity="0")

    def test_derived_values(self):
        position = make_position(quantity="2", avg_cost="100", mark="110")

        assert position.side == PositionSide.LONG
        assert position.market_value == Decimal("220")
        assert position.cost_basis == Decimal("200")
        assert position.unrealized_pnl == Decimal("20")
        assert position.unrealized_pnl_pct == Decimal("10")

    def test_short_unrealized_pnl(self):
        position = make_position(quantity="-2", avg_cost="100", mark="90")

        assert position.side == PositionSide.SHORT
        assert position.unrealized_pnl == Decimal("20")

    def test_add_uses_weighted_average_cost(self):
        position = make_position(quantity="1", avg_cost="100")

        updated, realized = position.apply_fill(OrderSide.BUY, Decimal("1"), Decimal("200"))

        assert updated.quantity == Decimal("2")
        assert updated.avg_cost == Decimal("150")
        assert realized == Decimal("0")

    def test_partial_reduce_books_realized_pnl(self):
        position = make_position(quantity="2", avg_cost="100")

        updated, realized = position.apply_fill(OrderSide.SELL, Decimal("1"), Decimal("120"))

        assert updated.quantity == Decimal("1")
        assert updated.avg_cost == Decimal("100")
        assert realized == Decimal("20")
        assert updated.realized_pnl == Decimal("20")

    def test_full_close_returns_none(self):
        position = make_position(quantity="0.1", avg_cost="50000")

        updated, realized = position.apply_fill(OrderSide.SELL, Decimal("0.1"), Decimal("51000"))

        assert updated is None
        assert realized == Decimal("100")

    def test_flip_opens_remainder_at_fill_price(self):
        position = make_position(quantity="1", avg_cost="100")

        updated, realized = position.apply_fill(OrderSide.SELL, Decimal("3"), Decimal("90"))

        assert realized == Decimal("-10")
        assert updated.quantity == Decimal("-2")
        assert updated.avg_cost == Decimal("90")
        assert updated.realized_pnl == Decimal("0")

    def test_flip_clears_exit_levels(self):
        position = make_position(quantity="1", avg_cost="100").model_copy(
            update={"stop_loss": Decimal("95"), "take_profit": Decimal("120")}
        )

        updated, _ = position.apply_fill(OrderSide.SELL, Decimal("3"), Decimal("90"))

        assert updated.stop_loss is None
        assert updated.take_profit is None

    def test_long_exit_trigger(self):
        position = make_position(quantity="1", avg_cost="100").model_copy(
            update={"stop_loss": Decimal("95"), "take_profit": Decimal("120")}
        )

        assert position.exit_trigger(Decimal("100")) is None
        assert position.exit_trigger(Decimal("95")) == EXIT_STOP_LOSS
        assert position.exit_trigger(Decimal("80")) == EXIT_STOP_LOSS
        assert position.exit_trigger(Decimal("120")) == EXIT_TAKE_PROFIT

    def test_short_exit_trigger(self):
        position = make_position(quantity="-1", avg_cost="100").model_copy(
            update={"stop_loss": Decimal("105"), "take_profit": Decimal("90")}
        )

        assert position.exit_trigger(Decimal("100")) is None
        assert position.exit_trigger(Decimal("106")) == EXIT_STOP_LOSS
        assert position.exit_trigger(Decimal("89")) == EXIT_TAKE_PROFIT

    def test_no_levels_never_triggers(self):
        assert make_position().exit_trigger(Decimal("1")) is None

    def test_with_mark_returns_copy(self):
        position = make_position()
        marked = position.with_mark(Decimal("52000"))

        assert marked.mark_price == Decimal("52000")
        assert position.mark_price == Decimal("50000")


class TestOrder:
    """Tests for the order state machine."""

    def test_defaults(self):
        order = make_order()

        assert order.status == OrderStatus.PENDING
        assert order.strategy == "Manual Trade"
        assert order.confidence == 0.8
        assert not order.is_terminal

    def test_fill_returns_new_filled_order(self):
        order = make_order()
        filled = order.fill(Decimal("50000"), Decimal("5"), None)

        assert filled.status == OrderStatus.FILLED
        assert filled.fill_price == Decimal("50000")
        assert filled.fee == Decimal("5")
        assert filled.filled_at is not None
        assert filled.notional == Decimal("5000")
        assert order.status == OrderStatus.PENDING
        assert filled.position_realized_pnl is None

    def test_terminal_order_cannot_transition(self):
        rejected = make_order().reject("no funds")

        assert rejected.reject_reason == "no funds"
        with pytest.raises(InvariantViolationError):
            rejected.fill(Decimal("1"), Decimal("0"), None)

    def test_cannot_transition_back_to_pending(self):
        with pytest.raises(InvariantViolationError):
            make_order().transition(OrderStatus.PENDING)

    def test_confidence_bounds(self):
        with pytest.raises(ValueError):
            make_order(confidence=1.5)


class TestSignal:
    """Tests for Signal model."""

    def test_notional(self):
        signal = Signal(
            symbol="BTC/USD",
            side=OrderSide.BUY,
            quantity=Decimal("0.05"),
            reference_price=Decimal("50000"),
            strategy_id="trend_following",
            confidence=0.7,
        )
        assert signal.notional == Decimal("2500")


class TestOperationResult:
    """Tests for OperationResult constructors."""

    def test_success(self):
        result = OperationResult.success({"a": 1}, note="x")

        assert result.ok
        assert result.data == {"a": 1}
        assert result.details == {"note": "x"}
        assert result.error_kind is None

    def test_from_error(self):
        error = InsufficientFundsError("not enough", {"buying_power": "100"})
        result = OperationResult.from_error(error, data="order")

        assert not result.ok
        assert result.error_kind == ErrorKind.INSUFFICIENT_FUNDS
        assert result.error_reason == "not enough"
        assert result.details == {"buying_power": "100"}
        assert result.data == "order"
