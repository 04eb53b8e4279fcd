"""
Durable relay state for bridgerelay.

This package provides:
- A SQLite backend with explicit immediate transactions
- The identity-keyed event ledger with compare-and-swap transitions
- Scan cursors and block-hash checkpoints for reorg detection
"""

from .database import QueryResult, SQLiteBackend
from .ledger import ALLOWED_TRANSITIONS, EventLedger, MintAttempt

__all__ = [
    "QueryResult",
    "SQLiteBackend",
    "ALLOWED_TRANSITIONS",
    "EventLedger",
    "MintAttempt",
]
