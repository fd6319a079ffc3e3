"""Storage layer for persistent data."""

from zkpool.storage.database import (
    Base,
    DatabaseManager,
    InMemoryLeafStore,
    IntentRow,
    LeafRow,
    NullifierRow,
    SqlLeafStore,
    SqlLedgerStore,
    SqlNullifierStore,
    TxRow,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "InMemoryLeafStore",
    "IntentRow",
    "LeafRow",
    "NullifierRow",
    "SqlLeafStore",
    "SqlLedgerStore",
    "SqlNullifierStore",
    "TxRow",
]
