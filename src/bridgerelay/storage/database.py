"""SQLite backend for the bridgerelay event ledger.

This module provides connection management, schema creation, query
execution and explicit transactions for the durable relay state.
"""

import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from ..config import LedgerConfig
from ..errors import StorageError
from ..logging import get_logger

Params = Optional[Union[Dict[str, Any], Sequence[Any]]]

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS relay_records (
        record_id INTEGER PRIMARY KEY AUTOINCREMENT,
        source_chain_id INTEGER NOT NULL,
        tx_hash TEXT NOT NULL,
        log_index INTEGER NOT NULL,
        user TEXT NOT NULL,
        amount TEXT NOT NULL,  -- decimal string, uint256 does not fit INTEGER
        block_number INTEGER NOT NULL,
        block_hash TEXT NOT NULL,
        dest_chain_id INTEGER NOT NULL,
        status TEXT NOT NULL,
        dest_tx_hash TEXT,
        dest_nonce INTEGER,
        submit_count INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL,
        UNIQUE (source_chain_id, tx_hash, log_index)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mint_attempts (
        record_id INTEGER NOT NULL,
        dest_tx_hash TEXT NOT NULL,
        dest_nonce INTEGER NOT NULL,
        created_at REAL NOT NULL,
        PRIMARY KEY (record_id, dest_tx_hash),
        FOREIGN KEY (record_id) REFERENCES relay_records(record_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS record_transitions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        record_id INTEGER NOT NULL,
        from_status TEXT,
        to_status TEXT NOT NULL,
        dest_tx_hash TEXT,
        detail TEXT,
        created_at REAL NOT NULL,
        FOREIGN KEY (record_id) REFERENCES relay_records(record_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chain_cursors (
        chain_id INTEGER PRIMARY KEY,
        last_scanned_block INTEGER NOT NULL,
        last_scanned_block_hash TEXT,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scan_checkpoints (
        chain_id INTEGER NOT NULL,
        block_number INTEGER NOT NULL,
        block_hash TEXT NOT NULL,
        PRIMARY KEY (chain_id, block_number)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_records_pending
        ON relay_records(source_chain_id, status, block_number, log_index)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_transitions_record
        ON record_transitions(record_id)
    """,
]


@dataclass
class QueryResult:
    """Database query result."""

    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    last_row_id: Optional[int] = None
    execution_time: float = 0.0


class SQLiteBackend:
    """SQLite database backend.

    One connection guarded by a re-entrant lock. ``transaction()`` opens an
    immediate (write-locking) transaction; queries issued inside it on the
    same thread join it.
    """

    def __init__(self, config: LedgerConfig):
        self.config = config
        self._connection: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._in_transaction = False
        self._logger = get_logger(__name__)

        if config.database_path != ":memory:":
            Path(config.database_path).parent.mkdir(parents=True, exist_ok=True)

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    def connect(self) -> None:
        """Establish SQLite database connection."""
        with self._lock:
            if self._connection is not None:
                return

            try:
                self._connection = sqlite3.connect(
                    self.config.database_path,
                    timeout=self.config.connection_timeout,
                    isolation_level=None,  # transactions are explicit
                    check_same_thread=False,
                )
                self._connection.row_factory = sqlite3.Row
                self._configure_sqlite()
                self._create_tables()
            except sqlite3.Error as e:
                self._connection = None
                raise StorageError(
                    f"Failed to connect to database: {e}", operation="connect", cause=e
                ) from e

            self._logger.info(f"Connected to ledger database: {self.config.database_path}")

    def disconnect(self) -> None:
        """Close SQLite database connection."""
        with self._lock:
            if self._connection is not None:
                try:
                    self._connection.close()
                except sqlite3.Error as e:
                    self._logger.error(f"Error closing database connection: {e}")
                finally:
                    self._connection = None

    def _configure_sqlite(self) -> None:
        """Configure SQLite durability settings."""
        pragmas = [
            f"PRAGMA journal_mode = {self.config.journal_mode}",
            f"PRAGMA synchronous = {self.config.synchronous}",
            "PRAGMA foreign_keys = ON",
        ]
        for pragma in pragmas:
            self._connection.execute(pragma)

    def _create_tables(self) -> None:
        """Create database tables."""
        for statement in SCHEMA:
            self._connection.execute(statement)

    def _require_connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise StorageError("Database not connected", operation="query")
        return self._connection

    def execute_query(self, query: str, params: Params = None) -> QueryResult:
        """Execute a database query."""
        with self._lock:
            connection = self._require_connection()
            start_time = time.time()
            try:
                cursor = connection.execute(query, params or ())
                rows = [dict(row) for row in cursor.fetchall()]
            except sqlite3.Error as e:
                raise StorageError(
                    f"Query execution failed: {e}", operation="query", cause=e
                ) from e

            return QueryResult(
                rows=rows,
                row_count=cursor.rowcount if cursor.rowcount >= 0 else len(rows),
                last_row_id=cursor.lastrowid,
                execution_time=time.time() - start_time,
            )

    @contextmanager
    def transaction(self) -> Iterator["SQLiteBackend"]:
        """Run the enclosed queries atomically.

        Nested use joins the outer transaction.
        """
        with self._lock:
            connection = self._require_connection()
            if self._in_transaction:
                yield self
                return

            try:
                connection.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageError(
                    f"Could not begin transaction: {e}", operation="begin", cause=e
                ) from e

            self._in_transaction = True
            try:
                yield self
            except BaseException:
                connection.execute("ROLLBACK")
                raise
            else:
                connection.execute("COMMIT")
            finally:
                self._in_transaction = False

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()


__all__ = ["QueryResult", "SQLiteBackend", "SCHEMA"]
