"""Exception hierarchy for bridgerelay.

This module defines the exception hierarchy used by the relay, providing
structured error handling and categorization for transport failures,
ledger conflicts, transaction submission failures and reorganizations.
"""

import time
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(Enum):
    """Error severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories."""

    VALIDATION = "validation"
    NETWORK = "network"
    STORAGE = "storage"
    CONCURRENCY = "concurrency"
    TRANSACTION = "transaction"
    CHAIN = "chain"
    CONFIGURATION = "configuration"
    SYSTEM = "system"


@dataclass
class ErrorContext:
    """Context information for an error."""

    timestamp: float = field(default_factory=time.time)
    chain_id: Optional[int] = None
    component: Optional[str] = None
    operation: Optional[str] = None
    record_id: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert context to dictionary."""
        return {
            "timestamp": self.timestamp,
            "chain_id": self.chain_id,
            "component": self.component,
            "operation": self.operation,
            "record_id": self.record_id,
            "metadata": self.metadata,
        }


class RelayError(Exception):
    """Base exception for all relay errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        retryable: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.category = category
        self.context = context or ErrorContext()
        self.cause = cause
        self.retryable = retryable
        self.metadata = metadata or {}
        self.timestamp = time.time()
        self.traceback = traceback.format_exc()

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "severity": self.severity.value,
            "category": self.category.value,
            "context": self.context.to_dict(),
            "cause": str(self.cause) if self.cause else None,
            "retryable": self.retryable,
            "metadata": self.metadata,
            "timestamp": self.timestamp,
        }

    def __str__(self) -> str:
        """String representation of the error."""
        parts = [f"{self.__class__.__name__}: {self.message}"]

        if self.error_code:
            parts.append(f"Code: {self.error_code}")

        if self.severity != ErrorSeverity.MEDIUM:
            parts.append(f"Severity: {self.severity.value}")

        if self.retryable:
            parts.append("Retryable: Yes")

        return " | ".join(parts)


class ValidationError(RelayError):
    """Validation error."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        **kwargs,
    ):
        super().__init__(message, category=ErrorCategory.VALIDATION, **kwargs)
        self.field = field
        self.value = value

    def to_dict(self) -> Dict[str, Any]:
        """Convert validation error to dictionary."""
        data = super().to_dict()
        data.update(
            {
                "field": self.field,
                "value": str(self.value) if self.value is not None else None,
            }
        )
        return data


class TransportError(RelayError):
    """Network or JSON-RPC transport error."""

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        attempts: int = 0,
        **kwargs,
    ):
        kwargs.setdefault("retryable", True)
        super().__init__(message, category=ErrorCategory.NETWORK, **kwargs)
        self.endpoint = endpoint
        self.attempts = attempts

    def to_dict(self) -> Dict[str, Any]:
        """Convert transport error to dictionary."""
        data = super().to_dict()
        data.update({"endpoint": self.endpoint, "attempts": self.attempts})
        return data


class ConnectionLost(TransportError):
    """Transport retries exhausted; surfaced to the caller."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("error_code", "CONNECTION_LOST")
        kwargs["retryable"] = False
        super().__init__(message, **kwargs)


class ConflictError(RelayError):
    """Optimistic concurrency violation on a ledger transition."""

    def __init__(
        self,
        message: str,
        record_id: Optional[int] = None,
        expected_status: Optional[str] = None,
        actual_status: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(
            message,
            category=ErrorCategory.CONCURRENCY,
            error_code="LEDGER_CONFLICT",
            **kwargs,
        )
        self.record_id = record_id
        self.expected_status = expected_status
        self.actual_status = actual_status

    def to_dict(self) -> Dict[str, Any]:
        """Convert conflict error to dictionary."""
        data = super().to_dict()
        data.update(
            {
                "record_id": self.record_id,
                "expected_status": self.expected_status,
                "actual_status": self.actual_status,
            }
        )
        return data


class SubmissionError(RelayError):
    """Transaction rejected by the node or reverted on chain."""

    def __init__(
        self,
        message: str,
        tx_hash: Optional[str] = None,
        reverted: bool = False,
        **kwargs,
    ):
        kwargs.setdefault("retryable", True)
        super().__init__(message, category=ErrorCategory.TRANSACTION, **kwargs)
        self.tx_hash = tx_hash
        self.reverted = reverted

    def to_dict(self) -> Dict[str, Any]:
        """Convert submission error to dictionary."""
        data = super().to_dict()
        data.update({"tx_hash": self.tx_hash, "reverted": self.reverted})
        return data


class ReorgDetected(RelayError):
    """Block hash mismatch beneath a scan cursor."""

    def __init__(
        self,
        message: str,
        chain_id: Optional[int] = None,
        block_number: Optional[int] = None,
        expected_hash: Optional[str] = None,
        actual_hash: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(
            message,
            category=ErrorCategory.CHAIN,
            severity=ErrorSeverity.HIGH,
            **kwargs,
        )
        self.chain_id = chain_id
        self.block_number = block_number
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash

    def to_dict(self) -> Dict[str, Any]:
        """Convert reorg error to dictionary."""
        data = super().to_dict()
        data.update(
            {
                "chain_id": self.chain_id,
                "block_number": self.block_number,
                "expected_hash": self.expected_hash,
                "actual_hash": self.actual_hash,
            }
        )
        return data


class ReorgDepthExceeded(RelayError):
    """Reorganization deeper than the configured safety threshold."""

    def __init__(
        self,
        message: str,
        chain_id: Optional[int] = None,
        depth: Optional[int] = None,
        max_depth: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(
            message,
            category=ErrorCategory.CHAIN,
            severity=ErrorSeverity.CRITICAL,
            error_code="REORG_DEPTH_EXCEEDED",
            retryable=False,
            **kwargs,
        )
        self.chain_id = chain_id
        self.depth = depth
        self.max_depth = max_depth

    def to_dict(self) -> Dict[str, Any]:
        """Convert reorg depth error to dictionary."""
        data = super().to_dict()
        data.update(
            {"chain_id": self.chain_id, "depth": self.depth, "max_depth": self.max_depth}
        )
        return data


class StorageError(RelayError):
    """Ledger storage error."""

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.STORAGE,
            severity=ErrorSeverity.HIGH,
            **kwargs,
        )
        self.operation = operation


class RecordNotFound(StorageError):
    """Referenced relay record does not exist."""

    def __init__(self, record_id: int, **kwargs):
        super().__init__(f"Relay record {record_id} not found", **kwargs)
        self.record_id = record_id


class ConfigurationError(RelayError):
    """Configuration error."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Optional[Any] = None,
        **kwargs,
    ):
        super().__init__(message, category=ErrorCategory.CONFIGURATION, **kwargs)
        self.config_key = config_key
        self.config_value = config_value

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration error to dictionary."""
        data = super().to_dict()
        data.update(
            {
                "config_key": self.config_key,
                "config_value": str(self.config_value)
                if self.config_value is not None
                else None,
            }
        )
        return data
