"""In-process ledger backed by dictionaries."""
from typing import Dict, List, Optional, Set

from paper_trading.core.errors import InvariantViolationError
from paper_trading.core.models import Account, Order, Position
from paper_trading.storage.base import Ledger


class InMemoryLedger(Ledger):
    """Ledger kept in memory. State is lost when the process exits.

    Reads and writes both copy, so callers never share objects with the ledger.
    """

    def __init__(self):
        super().__init__()
        self._accounts: Dict[str, Account] = {}
        self._positions: Dict[str, Dict[str, Position]] = {}
        self._orders: Dict[str, List[Order]] = {}
        self._order_ids: Set[str] = set()

    async def get_account(self, account_id: str) -> Optional[Account]:
        account = self._accounts.get(account_id)
        return account.model_copy() if account is not None else None

    async def put_account(self, account: Account):
        self._accounts[account.id] = account.model_copy()

    async def reset_account(self, account: Account):
        for order in self._orders.pop(account.id, []):
            self._order_ids.discard(order.id)
        self._positions.pop(account.id, None)
        self._accounts[account.id] = account.model_copy()

    async def get_position(self, account_id: str, symbol: str) -> Optional[Position]:
        position = self._positions.get(account_id, {}).get(symbol)
        return position.model_copy() if position is not None else None

    async def upsert_position(self, position: Position):
        self._positions.setdefault(position.account_id, {})[position.symbol] = position.model_copy()

    async def remove_position(self, account_id: str, symbol: str) -> bool:
        return self._positions.get(account_id, {}).pop(symbol, None) is not None

    async def list_positions(self, account_id: str) -> List[Position]:
        return [p.model_copy() for p in self._positions.get(account_id, {}).values()]

    async def append_order(self, order: Order):
        self._check_appendable(order)
        self._orders.setdefault(order.account_id, []).append(order.model_copy())
        self._order_ids.add(order.id)

    async def list_orders(self, account_id: str, limit: Optional[int] = None) -> List[Order]:
        orders = [o.model_copy() for o in reversed(self._orders.get(account_id, []))]
        return orders[:limit] if limit is not None else orders

    async def apply_fill(
        self,
        account: Account,
        order: Order,
        position: Optional[Position] = None,
        removed_symbol: Optional[str] = None,
    ):
        # Validate everything before the first write
        self._check_appendable(order)
        if order.account_id != account.id:
            raise InvariantViolationError(
                f"Order {order.id} belongs to {order.account_id}, not {account.id}"
            )
        if position is not None and position.account_id != account.id:
            raise InvariantViolationError(
                f"Position {position.symbol} belongs to {position.account_id}, not {account.id}"
            )

        self._accounts[account.id] = account.model_copy()
        if removed_symbol is not None:
            self._positions.get(account.id, {}).pop(removed_symbol, None)
        if position is not None:
            self._positions.setdefault(account.id, {})[position.symbol] = position.model_copy()
        self._orders.setdefault(account.id, []).append(order.model_copy())
        self._order_ids.add(order.id)

    def _check_appendable(self, order: Order):
        if order.id in self._order_ids:
            raise InvariantViolationError(f"Order {order.id} already recorded")
        if not order.is_terminal:
            raise InvariantViolationError(f"Order {order.id} is not terminal")
