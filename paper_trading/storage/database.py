"""Database-backed ledger."""
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

from sqlalchemy import Column, DateTime, Float, Integer, String, delete, select
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from paper_trading.core.config import database_config
from paper_trading.core.errors import InvariantViolationError
from paper_trading.core.models import Account, Order, OrderSide, OrderStatus, OrderType, Position
from paper_trading.storage.base import Ledger

Base = declarative_base()


class DecimalString(TypeDecorator):
    """Stores Decimal values as text so they round-trip exactly on every backend."""
    impl = String
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else Decimal(value)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AccountModel(Base):
    """SQLAlchemy model for accounts."""
    __tablename__ = 'accounts'

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    cash_balance = Column(DecimalString, nullable=False)
    buying_power = Column(DecimalString, nullable=False)
    initial_balance = Column(DecimalString, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class PositionModel(Base):
    """SQLAlchemy model for open positions."""
    __tablename__ = 'positions'

    account_id = Column(String, primary_key=True)
    symbol = Column(String, primary_key=True)
    quantity = Column(DecimalString, nullable=False)
    avg_cost = Column(DecimalString, nullable=False)
    mark_price = Column(DecimalString, nullable=False)
    realized_pnl = Column(DecimalString, nullable=False, default="0")
    strategy = Column(String, nullable=False, default="")
    stop_loss = Column(DecimalString, nullable=True)
    take_profit = Column(DecimalString, nullable=True)
    opened_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class OrderModel(Base):
    """SQLAlchemy model for order history."""
    __tablename__ = 'orders'

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False, unique=True, index=True)
    account_id = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    order_type = Column(String, nullable=False)
    quantity = Column(DecimalString, nullable=False)
    price = Column(DecimalString, nullable=True)
    status = Column(String, nullable=False)
    reject_reason = Column(String, nullable=True)
    strategy = Column(String, nullable=False, default="")
    reasoning = Column(String, nullable=False, default="")
    confidence = Column(Float, nullable=False)
    stop_loss = Column(DecimalString, nullable=True)
    take_profit = Column(DecimalString, nullable=True)
    fill_price = Column(DecimalString, nullable=True)
    fee = Column(DecimalString, nullable=False, default="0")
    realized_pnl = Column(DecimalString, nullable=True)
    position_realized_pnl = Column(DecimalString, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    filled_at = Column(DateTime(timezone=True), nullable=True)


class DatabaseLedger(Ledger):
    """Async SQLAlchemy ledger (SQLite via aiosqlite by default)."""

    def __init__(self, database_url: Optional[str] = None):
        super().__init__()
        # Convert SQLite URL to async version if needed
        db_url = database_url or database_config.url
        if db_url.startswith('sqlite:///'):
            db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        engine_kwargs = {"echo": False}
        if ":memory:" in db_url:
            # One shared connection, otherwise each session sees an empty database
            engine_kwargs["poolclass"] = StaticPool

        self.database_url = db_url
        self.engine: AsyncEngine = create_async_engine(db_url, **engine_kwargs)
        self.session_maker = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def initialize(self):
        """Create tables, and the directory of a file-backed SQLite database."""
        url = make_url(self.database_url)
        if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    # Account operations
    async def get_account(self, account_id: str) -> Optional[Account]:
        async with self.session_maker() as session:
            model = await session.get(AccountModel, account_id)
            return self._account_from_model(model) if model else None

    async def put_account(self, account: Account):
        async with self.session_maker() as session:
            await session.merge(self._account_to_model(account))
            await session.commit()

    async def reset_account(self, account: Account):
        async with self.session_maker() as session:
            await session.execute(delete(OrderModel).where(OrderModel.account_id == account.id))
            await session.execute(
                delete(PositionModel).where(PositionModel.account_id == account.id)
            )
            await session.merge(self._account_to_model(account))
            await session.commit()

    # Position operations
    async def get_position(self, account_id: str, symbol: str) -> Optional[Position]:
        async with self.session_maker() as session:
            model = await session.get(PositionModel, (account_id, symbol))
            return self._position_from_model(model) if model else None

    async def upsert_position(self, position: Position):
        async with self.session_maker() as session:
            await session.merge(self._position_to_model(position))
            await session.commit()

    async def remove_position(self, account_id: str, symbol: str) -> bool:
        async with self.session_maker() as session:
            model = await session.get(PositionModel, (account_id, symbol))
            if model is None:
                return False
            await session.delete(model)
            await session.commit()
            return True

    async def list_positions(self, account_id: str) -> List[Position]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(PositionModel)
                .where(PositionModel.account_id == account_id)
                .order_by(PositionModel.symbol)
            )
            return [self._position_from_model(p) for p in result.scalars().all()]

    # Order operations
    async def append_order(self, order: Order):
        async with self.session_maker() as session:
            await self._check_appendable(session, order)
            session.add(self._order_to_model(order))
            await session.commit()

    async def list_orders(self, account_id: str, limit: Optional[int] = None) -> List[Order]:
        async with self.session_maker() as session:
            query = (
                select(OrderModel)
                .where(OrderModel.account_id == account_id)
                .order_by(OrderModel.seq.desc())
            )
            if limit is not None:
                query = query.limit(limit)
            result = await session.execute(query)
            return [self._order_from_model(o) for o in result.scalars().all()]

    async def apply_fill(
        self,
        account: Account,
        order: Order,
        position: Optional[Position] = None,
        removed_symbol: Optional[str] = None,
    ):
        async with self.session_maker() as session:
            await self._check_appendable(session, order)
            await session.merge(self._account_to_model(account))
            if removed_symbol is not None:
                await session.execute(
                    delete(PositionModel).where(
                        PositionModel.account_id == account.id,
                        PositionModel.symbol == removed_symbol,
                    )
                )
            if position is not None:
                await session.merge(self._position_to_model(position))
            session.add(self._order_to_model(order))
            # Single commit: either every write lands or none does
            await session.commit()

    async def _check_appendable(self, session: AsyncSession, order: Order):
        if not order.is_terminal:
            raise InvariantViolationError(f"Order {order.id} is not terminal")
        result = await session.execute(select(OrderModel.seq).where(OrderModel.id == order.id))
        if result.first() is not None:
            raise InvariantViolationError(f"Order {order.id} already recorded")

    # Helpers
    def _account_to_model(self, account: Account) -> AccountModel:
        return AccountModel(
            id=account.id,
            user_id=account.user_id,
            cash_balance=account.cash_balance,
            buying_power=account.buying_power,
            initial_balance=account.initial_balance,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )

    def _account_from_model(self, model: AccountModel) -> Account:
        return Account(
            id=model.id,
            user_id=model.user_id,
            cash_balance=model.cash_balance,
            buying_power=model.buying_power,
            initial_balance=model.initial_balance,
            created_at=_as_utc(model.created_at),
            updated_at=_as_utc(model.updated_at),
        )

    def _position_to_model(self, position: Position) -> PositionModel:
        return PositionModel(
            account_id=position.account_id,
            symbol=position.symbol,
            quantity=position.quantity,
            avg_cost=position.avg_cost,
            mark_price=position.mark_price,
            realized_pnl=position.realized_pnl,
            strategy=position.strategy,
            stop_loss=position.stop_loss,
            take_profit=position.take_profit,
            opened_at=position.opened_at,
            updated_at=position.updated_at,
        )

    def _position_from_model(self, model: PositionModel) -> Position:
        return Position(
            account_id=model.account_id,
            symbol=model.symbol,
            quantity=model.quantity,
            avg_cost=model.avg_cost,
            mark_price=model.mark_price,
            realized_pnl=model.realized_pnl,
            strategy=model.strategy,
            stop_loss=model.stop_loss,
            take_profit=model.take_profit,
            opened_at=_as_utc(model.opened_at),
            updated_at=_as_utc(model.updated_at),
        )

    def _order_to_model(self, order: Order) -> OrderModel:
        return OrderModel(
            id=order.id,
            account_id=order.account_id,
            symbol=order.symbol,
            side=order.side.value,
            order_type=order.order_type.value,
            quantity=order.quantity,
            price=order.price,
            status=order.status.value,
            reject_reason=order.reject_reason,
            strategy=order.strategy,
            reasoning=order.reasoning,
            confidence=order.confidence,
            stop_loss=order.stop_loss,
            take_profit=order.take_profit,
            fill_price=order.fill_price,
            fee=order.fee,
            realized_pnl=order.realized_pnl,
            position_realized_pnl=order.position_realized_pnl,
            created_at=order.created_at,
            filled_at=order.filled_at,
        )

    def _order_from_model(self, model: OrderModel) -> Order:
        """Convert DB model to Order object."""
        return Order(
            id=model.id,
            account_id=model.account_id,
            symbol=model.symbol,
            side=OrderSide(model.side),
            order_type=OrderType(model.order_type),
            quantity=model.quantity,
            price=model.price,
            status=OrderStatus(model.status),
            reject_reason=model.reject_reason,
            strategy=model.strategy,
            reasoning=model.reasoning,
            confidence=model.confidence,
            stop_loss=model.stop_loss,
            take_profit=model.take_profit,
            fill_price=model.fill_price,
            fee=model.fee,
            realized_pnl=model.realized_pnl,
            position_realized_pnl=model.position_realized_pnl,
            created_at=_as_utc(model.created_at),
            filled_at=_as_utc(model.filled_at),
        )
