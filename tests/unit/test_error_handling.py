"""
Unit tests for the bridgerelay error handling system.
"""

from unittest.mock import patch

import pytest

from bridgerelay.errors import (
    Alert,
    AlertKind,
    AlertManager,
    AlertReporter,
    CallbackAlertReporter,
    ConfigurationError,
    ConflictError,
    ConnectionLost,
    ErrorCategory,
    ErrorContext,
    ErrorSeverity,
    LogAlertReporter,
    RecordNotFound,
    RelayError,
    ReorgDepthExceeded,
    ReorgDetected,
    RetryPolicy,
    StorageError,
    SubmissionError,
    TransportError,
    ValidationError,
    retry_async,
)
from bridgerelay.logging import LogLevel


class TestRelayError:
    """Test RelayError base class."""

    def test_base_error_creation(self):
        """Test creating a base error."""
        error = RelayError("Test error")

        assert error.message == "Test error"
        assert error.severity == ErrorSeverity.MEDIUM
        assert error.category == ErrorCategory.SYSTEM
        assert error.retryable is False
        assert isinstance(error.context, ErrorContext)

    def test_error_to_dict(self):
        """Test error to dict conversion."""
        error = RelayError(
            "Test error",
            error_code="E1",
            context=ErrorContext(chain_id=1, component="worker", record_id=7),
            metadata={"key": "value"},
        )

        data = error.to_dict()
        assert data["type"] == "RelayError"
        assert data["error_code"] == "E1"
        assert data["context"]["chain_id"] == 1
        assert data["context"]["record_id"] == 7
        assert data["metadata"] == {"key": "value"}

    def test_error_string_representation(self):
        """Test error string representation."""
        error = RelayError("boom", error_code="X", retryable=True)

        text = str(error)
        assert "RelayError: boom" in text
        assert "Code: X" in text
        assert "Retryable: Yes" in text


class TestErrorTaxonomy:
    """Test the relay exception types."""

    def test_transport_error_is_retryable(self):
        error = TransportError("timeout", endpoint="http://node")

        assert error.retryable is True
        assert error.category == ErrorCategory.NETWORK
        assert error.to_dict()["endpoint"] == "http://node"

    def test_connection_lost_is_terminal(self):
        error = ConnectionLost("gone", attempts=5, retryable=True)

        assert isinstance(error, TransportError)
        assert error.retryable is False
        assert error.error_code == "CONNECTION_LOST"
        assert error.attempts == 5

    def test_conflict_error_details(self):
        error = ConflictError("moved", record_id=3, expected_status="pending", actual_status="failed")

        data = error.to_dict()
        assert error.category == ErrorCategory.CONCURRENCY
        assert data["expected_status"] == "pending"
        assert data["actual_status"] == "failed"

    def test_submission_error_reverted_flag(self):
        error = SubmissionError("reverted", tx_hash="0xabc", reverted=True)

        assert error.retryable is True
        assert error.to_dict()["reverted"] is True

    def test_reorg_errors(self):
        detected = ReorgDetected("fork", chain_id=1, block_number=10, expected_hash="0x1", actual_hash="0x2")
        exceeded = ReorgDepthExceeded("too deep", chain_id=1, depth=80, max_depth=64)

        assert detected.to_dict()["block_number"] == 10
        assert exceeded.severity == ErrorSeverity.CRITICAL
        assert exceeded.retryable is False
        assert exceeded.to_dict()["depth"] == 80

    def test_storage_errors(self):
        error = RecordNotFound(12)

        assert isinstance(error, StorageError)
        assert error.record_id == 12
        assert "12" in error.message

    def test_validation_and_configuration_errors(self):
        validation = ValidationError("bad", field="amount", value=-1)
        configuration = ConfigurationError("bad key", config_key="worker.x")

        assert validation.to_dict()["field"] == "amount"
        assert configuration.to_dict()["config_key"] == "worker.x"


class TestRetryPolicy:
    """Test RetryPolicy functionality."""

    def test_retry_policy_delay_calculation(self):
        """Test exponential delay calculation."""
        policy = RetryPolicy(base_delay=1.0, exponential_base=2.0, jitter=False)

        assert policy.get_delay(0) == 0.0
        assert policy.get_delay(1) == 1.0
        assert policy.get_delay(2) == 2.0
        assert policy.get_delay(3) == 4.0

    def test_retry_policy_max_delay_cap(self):
        """Test delay is capped at max_delay."""
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=False)

        assert policy.get_delay(10) == 5.0

    def test_retry_policy_jitter_bounds(self):
        policy = RetryPolicy(base_delay=2.0, jitter=True)

        for _ in range(20):
            assert 1.0 <= policy.get_delay(1) <= 3.0

    def test_is_retryable(self):
        policy = RetryPolicy()

        assert policy.is_retryable(TransportError("x"))
        assert not policy.is_retryable(ConnectionLost("x"))
        assert not policy.is_retryable(ValueError("x"))


class TestRetryAsync:
    """Test retry_async."""

    @pytest.mark.asyncio
    async def test_returns_after_transient_failures(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TransportError("transient")
            return "ok"

        retries = []
        policy = RetryPolicy(max_retries=5, base_delay=0.0, jitter=False)
        result = await retry_async(
            flaky, policy=policy, on_retry=lambda e, attempt: retries.append(attempt)
        )

        assert result == "ok"
        assert len(calls) == 3
        assert retries == [1, 2]

    @pytest.mark.asyncio
    async def test_retries_go_through_relay_logging(self, quiet_logging):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 2:
                raise TransportError("transient")
            return "ok"

        policy = RetryPolicy(max_retries=2, base_delay=0.0, jitter=False)
        await retry_async(flaky, policy=policy, operation="eth_blockNumber")

        (entry,) = quiet_logging.get_logs(LogLevel.WARNING)
        assert "Retry attempt 1/2 for operation 'eth_blockNumber'" in entry["message"]
        assert entry["logger_name"] == "bridgerelay.errors.recovery"

    @pytest.mark.asyncio
    async def test_non_retryable_propagates_immediately(self):
        calls = []

        async def broken():
            calls.append(1)
            raise ValueError("bug")

        with pytest.raises(ValueError):
            await retry_async(broken, policy=RetryPolicy(base_delay=0.0))
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_exhaustion_builds_final_error(self):
        async def down():
            raise TransportError("down")

        policy = RetryPolicy(max_retries=2, base_delay=0.0, jitter=False)
        with pytest.raises(ConnectionLost) as exc_info:
            await retry_async(
                down,
                policy=policy,
                on_exhausted=lambda e, attempts: ConnectionLost(f"lost after {attempts}", attempts=attempts),
            )

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.__cause__, TransportError)

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_last_error(self):
        async def down():
            raise TransportError("down")

        with pytest.raises(TransportError):
            await retry_async(down, policy=RetryPolicy(max_retries=1, base_delay=0.0))

    @pytest.mark.asyncio
    async def test_sleeps_between_attempts(self):
        async def down():
            raise TransportError("down")

        policy = RetryPolicy(max_retries=2, base_delay=0.5, jitter=False)
        with patch("bridgerelay.errors.recovery.asyncio.sleep") as sleep:
            with pytest.raises(TransportError):
                await retry_async(down, policy=policy)

        assert [call.args[0] for call in sleep.call_args_list] == [0.5, 1.0]


class TestAlertManager:
    """Test alert fan-out."""

    def test_emit_records_history_and_reports(self):
        received = []
        manager = AlertManager(reporters=[CallbackAlertReporter(received.append)])
        alert = Alert(kind=AlertKind.RELAY_FAILED, message="gave up", record_id=4)

        manager.emit(alert)

        assert received == [alert]
        assert manager.history() == [alert]
        assert manager.history(AlertKind.SUBSCRIPTION_LOST) == []

    def test_failing_reporter_does_not_block_others(self):
        class Broken(AlertReporter):
            def report(self, alert):
                raise RuntimeError("pager down")

        received = []
        manager = AlertManager(reporters=[Broken(), CallbackAlertReporter(received.append)])
        manager.emit(Alert(kind=AlertKind.RELAY_FAILED, message="x"))

        assert len(received) == 1

    def test_history_is_bounded(self):
        manager = AlertManager(history_size=2, reporters=[])
        for i in range(5):
            manager.emit(Alert(kind=AlertKind.RELAY_FAILED, message=str(i)))

        assert [a.message for a in manager.history()] == ["3", "4"]

    def test_log_reporter_uses_severity(self, quiet_logging):
        reporter = LogAlertReporter()
        reporter.report(
            Alert(kind=AlertKind.REORG_DEPTH_EXCEEDED, message="deep", severity=ErrorSeverity.CRITICAL)
        )
        reporter.report(Alert(kind=AlertKind.RELAY_FAILED, message="failed"))

        assert len(quiet_logging.get_logs(LogLevel.CRITICAL)) == 1
        assert len(quiet_logging.get_logs(LogLevel.ERROR)) == 1
        assert "ALERT relay_failed: failed" in quiet_logging.messages()

    def test_alert_to_dict(self):
        alert = Alert(kind=AlertKind.ORPHANED_UNRESOLVED, message="m", chain_id=2, details={"a": 1})

        data = alert.to_dict()
        assert data["kind"] == "orphaned_unresolved"
        assert data["severity"] == "high"
        assert data["chain_id"] == 2
