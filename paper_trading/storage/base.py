"""Ledger interface for account, position and order bookkeeping."""
import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from paper_trading.core.models import Account, Order, Position


class Ledger(ABC):
    """
    Record of accounts, open positions and order history.

    Every operation is a keyed lookup scoped to one account. A missing
    account or position is a normal result (None / empty list), not an error.
    The ledger enforces bookkeeping invariants only; business rules live in
    the engine.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def account_lock(self, account_id: str) -> asyncio.Lock:
        """Mutual-exclusion scope for fills on one account."""
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    async def initialize(self):
        """Prepare backing storage."""

    async def close(self):
        """Release backing storage."""

    # Accounts
    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def put_account(self, account: Account):
        pass

    @abstractmethod
    async def reset_account(self, account: Account):
        """Replace the account and drop its positions and orders."""
        pass

    # Positions
    @abstractmethod
    async def get_position(self, account_id: str, symbol: str) -> Optional[Position]:
        pass

    @abstractmethod
    async def upsert_position(self, position: Position):
        pass

    @abstractmethod
    async def remove_position(self, account_id: str, symbol: str) -> bool:
        """Remove a position. Returns False if there was none."""
        pass

    @abstractmethod
    async def list_positions(self, account_id: str) -> List[Position]:
        pass

    # Orders
    @abstractmethod
    async def append_order(self, order: Order):
        """Append a terminal order to history.

        Raises:
            InvariantViolationError: If the order id is already recorded
                or the order is not terminal.
        """
        pass

    @abstractmethod
    async def list_orders(self, account_id: str, limit: Optional[int] = None) -> List[Order]:
        """Orders for an account, newest first."""
        pass

    # Fills
    @abstractmethod
    async def apply_fill(
        self,
        account: Account,
        order: Order,
        position: Optional[Position] = None,
        removed_symbol: Optional[str] = None,
    ):
        """Write the account, position change and filled order as one unit.

        Args:
            account: Updated account snapshot
            order: Filled order to append
            position: Updated position to upsert (None if unchanged or removed)
            removed_symbol: Symbol whose position was closed out
        """
        pass
