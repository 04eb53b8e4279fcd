"""
Shared fixtures for the bridgerelay test suite.
"""

import pytest

from bridgerelay.config import LedgerConfig, RelayConfig, WorkerConfig
from bridgerelay.errors import AlertManager
from bridgerelay.logging import LogConfig, LogLevel, MemoryHandler, setup_logging, shutdown_logging
from bridgerelay.storage.ledger import EventLedger
from tests.fakes import TOKEN_A, TOKEN_B, FakeChain


@pytest.fixture(autouse=True)
def quiet_logging():
    """Route log output to memory so tests can inspect it."""
    manager = setup_logging(LogConfig(level=LogLevel.DEBUG, handlers=[]))
    handler = MemoryHandler()
    manager.add_handler("memory", handler)
    yield handler
    shutdown_logging()


@pytest.fixture
def ledger_config(tmp_path):
    return LedgerConfig(database_path=str(tmp_path / "ledger.db"))


@pytest.fixture
def ledger(ledger_config):
    ledger = EventLedger(ledger_config, routes={1: 2, 2: 1})
    ledger.open()
    yield ledger
    ledger.close()


@pytest.fixture
def chain_a():
    return FakeChain(1, TOKEN_A, name="A")


@pytest.fixture
def chain_b():
    return FakeChain(2, TOKEN_B, name="B")


@pytest.fixture
def alerts():
    return AlertManager(reporters=[])


@pytest.fixture
def worker_config():
    return WorkerConfig(
        max_submit_attempts=3,
        min_confirmations=1,
        confirmation_timeout=2.0,
        confirmation_poll_interval=0.01,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        poll_interval=0.01,
    )


@pytest.fixture
def relay_config(tmp_path, monkeypatch, worker_config):
    for variable in (
        "BRIDGERELAY_DATABASE",
        "BRIDGERELAY_LOG_LEVEL",
        "BRIDGERELAY_KEY_FILE",
        "BRIDGERELAY_MIN_CONFIRMATIONS",
    ):
        monkeypatch.delenv(variable, raising=False)
    config = RelayConfig()
    config.chain_a.contract_address = TOKEN_A
    config.chain_b.contract_address = TOKEN_B
    config.chain_a.poll_interval = 0.01
    config.chain_b.poll_interval = 0.01
    config.chain_a.start_block = 1
    config.chain_b.start_block = 1
    config.ledger.database_path = str(tmp_path / "relay.db")
    config.worker = worker_config
    config.scanner.poll_interval = 0.01
    config.scanner.batch_size = 10
    config.scanner.max_reorg_depth = 8
    return config
