"""Tests for database storage functionality."""

import pytest

from bridgerelay.config import LedgerConfig
from bridgerelay.errors import StorageError
from bridgerelay.storage import QueryResult, SQLiteBackend


@pytest.fixture
def backend(tmp_path):
    backend = SQLiteBackend(LedgerConfig(database_path=str(tmp_path / "db" / "test.db")))
    backend.connect()
    yield backend
    backend.disconnect()


class TestLedgerConfig:
    """Test ledger storage configuration."""

    def test_default_config(self):
        """Test default configuration values."""
        config = LedgerConfig()

        assert config.database_path == "bridgerelay.db"
        assert config.connection_timeout == 30.0
        assert config.synchronous == "FULL"
        assert config.journal_mode == "WAL"


class TestSQLiteBackend:
    """Test SQLite backend."""

    def test_connect_creates_directory_and_schema(self, backend, tmp_path):
        assert (tmp_path / "db").is_dir()
        assert backend.is_connected

        tables = backend.execute_query(
            "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name"
        ).rows
        names = {row["name"] for row in tables}
        assert {
            "relay_records",
            "mint_attempts",
            "record_transitions",
            "chain_cursors",
            "scan_checkpoints",
        } <= names

    def test_journal_mode(self, backend):
        mode = backend.execute_query("PRAGMA journal_mode").rows[0]
        assert list(mode.values()) == ["wal"]

    def test_connect_is_idempotent(self, backend):
        connection = backend._connection
        backend.connect()
        assert backend._connection is connection

    def test_execute_query_result(self, backend):
        result = backend.execute_query(
            "INSERT INTO chain_cursors (chain_id, last_scanned_block, updated_at) VALUES (?, ?, ?)",
            (1, 10, 0.0),
        )

        assert isinstance(result, QueryResult)
        assert result.row_count == 1
        assert result.last_row_id is not None

        rows = backend.execute_query("SELECT chain_id, last_scanned_block FROM chain_cursors").rows
        assert rows == [{"chain_id": 1, "last_scanned_block": 10}]

    def test_query_error_is_wrapped(self, backend):
        with pytest.raises(StorageError) as exc_info:
            backend.execute_query("SELECT * FROM missing_table")
        assert exc_info.value.operation == "query"

    def test_query_requires_connection(self, tmp_path):
        backend = SQLiteBackend(LedgerConfig(database_path=str(tmp_path / "x.db")))
        with pytest.raises(StorageError):
            backend.execute_query("SELECT 1")

    def test_transaction_commits(self, backend):
        with backend.transaction():
            backend.execute_query(
                "INSERT INTO scan_checkpoints (chain_id, block_number, block_hash) VALUES (1, 5, '0x5')"
            )
        assert backend.execute_query("SELECT COUNT(*) AS n FROM scan_checkpoints").rows[0]["n"] == 1

    def test_transaction_rolls_back(self, backend):
        with pytest.raises(RuntimeError):
            with backend.transaction():
                backend.execute_query(
                    "INSERT INTO scan_checkpoints (chain_id, block_number, block_hash) VALUES (1, 5, '0x5')"
                )
                raise RuntimeError("abort")

        assert backend.execute_query("SELECT COUNT(*) AS n FROM scan_checkpoints").rows[0]["n"] == 0

    def test_nested_transaction_joins_outer(self, backend):
        with pytest.raises(RuntimeError):
            with backend.transaction():
                with backend.transaction():
                    backend.execute_query(
                        "INSERT INTO scan_checkpoints (chain_id, block_number, block_hash) "
                        "VALUES (1, 6, '0x6')"
                    )
                raise RuntimeError("abort outer")

        assert backend.execute_query("SELECT COUNT(*) AS n FROM scan_checkpoints").rows[0]["n"] == 0

    def test_data_survives_reconnect(self, tmp_path):
        config = LedgerConfig(database_path=str(tmp_path / "durable.db"))
        with SQLiteBackend(config) as first:
            first.execute_query(
                "INSERT INTO scan_checkpoints (chain_id, block_number, block_hash) VALUES (2, 9, '0x9')"
            )
        with SQLiteBackend(config) as second:
            rows = second.execute_query("SELECT block_hash FROM scan_checkpoints").rows
        assert rows == [{"block_hash": "0x9"}]
