"""Tests for logging formatters module."""

import json

from bridgerelay.logging import JSONFormatter, LogContext, LogEntry, LogLevel, TextFormatter


def make_entry(**kwargs):
    defaults = dict(
        timestamp=0.5,
        level=LogLevel.WARNING,
        message="Mint reverted",
        logger_name="bridgerelay.relay.worker",
        context=LogContext(component="relay_worker", chain_id=2, record_id=7),
    )
    defaults.update(kwargs)
    return LogEntry(**defaults)


class TestJSONFormatter:
    """Test JSONFormatter functionality."""

    def test_format_basic_entry(self):
        data = json.loads(JSONFormatter().format(make_entry()))

        assert data["timestamp"] == "1970-01-01T00:00:00.500000Z"
        assert data["level"] == "warning"
        assert data["logger"] == "bridgerelay.relay.worker"
        assert data["message"] == "Mint reverted"
        assert data["context"] == {"component": "relay_worker", "chain_id": 2, "record_id": 7}

    def test_format_exception_and_extra(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError as e:
            entry = make_entry(exception=e, extra={"attempt": 2})

        data = json.loads(JSONFormatter().format(entry))

        assert data["exception"]["type"] == "RuntimeError"
        assert data["exception"]["message"] == "boom"
        assert "Traceback" in data["exception"]["traceback"]
        assert data["extra"] == {"attempt": 2}

    def test_optional_sections(self):
        formatter = JSONFormatter(include_context=False, include_process=True, timestamp_format="unix")
        data = json.loads(formatter.format(make_entry()))

        assert "context" not in data
        assert data["timestamp"] == "0.5"
        assert "process_id" in data


class TestTextFormatter:
    """Test TextFormatter functionality."""

    def test_format_with_context(self):
        line = TextFormatter().format(make_entry())

        assert line == (
            "1970-01-01 00:00:00 [WARNING] bridgerelay.relay.worker: Mint reverted "
            "component=relay_worker chain_id=2 record_id=7"
        )

    def test_format_without_context(self):
        line = TextFormatter(include_context=False).format(make_entry())

        assert line.endswith("Mint reverted")

    def test_format_with_exception(self):
        line = TextFormatter().format(make_entry(exception=ValueError("bad"), context=LogContext()))

        assert line.endswith("Mint reverted (ValueError: bad)")
