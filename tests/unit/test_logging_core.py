"""Tests for logging core module."""

import pytest

from bridgerelay.logging import (
    LogConfig,
    LogContext,
    LogEntry,
    LogLevel,
    LogManager,
    MemoryHandler,
    RelayLogger,
    get_logger,
    get_manager,
    setup_logging,
    shutdown_logging,
)


class TestLogLevel:
    """Test LogLevel enum."""

    def test_log_level_values(self):
        """Test log level values."""
        assert LogLevel.DEBUG.value == "debug"
        assert LogLevel.INFO.value == "info"
        assert LogLevel.WARNING.value == "warning"
        assert LogLevel.ERROR.value == "error"
        assert LogLevel.CRITICAL.value == "critical"


class TestLogContext:
    """Test LogContext functionality."""

    def test_to_dict_drops_unset_fields(self):
        context = LogContext(component="worker", chain_id=2, record_id=9)

        assert context.to_dict() == {"component": "worker", "chain_id": 2, "record_id": 9}

    def test_chain_id_zero_is_kept(self):
        assert LogContext(chain_id=0).to_dict() == {"chain_id": 0}

    def test_merged_with(self):
        base = LogContext(component="service", chain_id=1, metadata={"a": 1})
        merged = base.merged_with(LogContext(record_id=5, chain_id=2, metadata={"b": 2}))

        assert merged.component == "service"
        assert merged.chain_id == 2
        assert merged.record_id == 5
        assert merged.metadata == {"a": 1, "b": 2}
        assert base.merged_with(None) is base


class TestLogEntry:
    """Test LogEntry functionality."""

    def test_log_entry_to_dict(self):
        """Test log entry to dict conversion."""
        entry = LogEntry(
            timestamp=1234567890.123,
            level=LogLevel.INFO,
            message="Test message",
            logger_name="test.logger",
            context=LogContext(component="test"),
        )

        data = entry.to_dict()
        assert data["level"] == "info"
        assert data["message"] == "Test message"
        assert data["context"] == {"component": "test"}
        assert entry.thread_id is not None
        assert entry.process_id is not None


class TestLogManager:
    """Test LogManager functionality."""

    def test_default_console_handler(self):
        manager = LogManager()

        assert list(manager.handlers) == ["console"]
        manager.shutdown()

    def test_empty_handler_list(self):
        manager = LogManager(LogConfig(handlers=[]))

        assert manager.handlers == {}

    def test_file_handler_from_config(self, tmp_path):
        log_file = tmp_path / "relay.log"
        manager = LogManager(LogConfig(handlers=["file"], log_file=str(log_file)))
        manager.log(LogLevel.INFO, "hello", logger_name="t")
        manager.shutdown()

        assert "hello" in log_file.read_text()

    def test_global_context_is_merged(self):
        manager = LogManager(LogConfig(handlers=[]))
        handler = MemoryHandler()
        manager.add_handler("memory", handler)
        manager.set_context(LogContext(component="service"))

        manager.log(LogLevel.INFO, "msg", context=LogContext(chain_id=1))

        assert handler.get_logs()[0]["context"] == {"component": "service", "chain_id": 1}

    def test_failing_handler_does_not_raise(self, capsys):
        class Broken(MemoryHandler):
            def emit(self, entry):
                raise RuntimeError("disk full")

        manager = LogManager(LogConfig(handlers=[]))
        manager.add_handler("broken", Broken())
        manager.log(LogLevel.ERROR, "msg")

        assert "disk full" in capsys.readouterr().err


class TestRelayLogger:
    """Test RelayLogger functionality."""

    def test_levels_follow_manager_config(self, quiet_logging):
        setup_logging(LogConfig(level=LogLevel.WARNING, handlers=[]))
        handler = MemoryHandler()
        get_manager().add_handler("memory", handler)

        logger = get_logger("tests.levels")
        logger.info("dropped")
        logger.warning("kept")

        assert handler.messages() == ["kept"]

    def test_explicit_level(self, quiet_logging):
        logger = RelayLogger("tests.explicit")
        logger.set_level(LogLevel.ERROR)
        logger.warning("dropped")
        logger.error("kept")

        assert quiet_logging.messages() == ["kept"]

    def test_module_logger_survives_reconfiguration(self, quiet_logging):
        logger = get_logger("tests.rebind")
        shutdown_logging()
        manager = setup_logging(LogConfig(level=LogLevel.DEBUG, handlers=[]))
        handler = MemoryHandler()
        manager.add_handler("memory", handler)

        logger.debug("after")

        assert handler.messages() == ["after"]

    def test_exception_attaches_current_exception(self, quiet_logging):
        logger = get_logger("tests.exception")
        try:
            raise ValueError("bad")
        except ValueError:
            logger.exception("failed")

        entry = quiet_logging.get_logs(LogLevel.ERROR)[0]
        assert entry["exception"] == "bad"

    def test_get_logger_is_cached(self):
        assert get_logger("tests.same") is get_logger("tests.same")
