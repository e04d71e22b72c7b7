"""Ledger storage backends.

- Ledger: abstract keyed-lookup interface used by the engine
- InMemoryLedger: dictionaries, for tests and ephemeral sessions
- DatabaseLedger: SQLAlchemy async ORM (SQLite via aiosqlite by default)
"""

from paper_trading.storage.base import Ledger
from paper_trading.storage.database import DatabaseLedger
from paper_trading.storage.memory import InMemoryLedger


def create_ledger(backend: str = "memory", database_url=None) -> Ledger:
    """Factory function to create a ledger by backend name."""
    if backend == "memory":
        return InMemoryLedger()
    if backend == "database":
        return DatabaseLedger(database_url)
    raise ValueError(f"Unknown ledger backend: {backend}")


__all__ = [
    "Ledger",
    "InMemoryLedger",
    "DatabaseLedger",
    "create_ledger",
]
