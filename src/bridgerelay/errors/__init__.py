"""bridgerelay Error Handling System.

Exception hierarchy, retry policies and operator alerts.
"""

from .exceptions import (
    ConfigurationError,
    ConflictError,
    ConnectionLost,
    ErrorCategory,
    ErrorContext,
    ErrorSeverity,
    RecordNotFound,
    RelayError,
    ReorgDepthExceeded,
    ReorgDetected,
    StorageError,
    SubmissionError,
    TransportError,
    ValidationError,
)
from .recovery import RetryPolicy, retry_async
from .telemetry import (
    Alert,
    AlertKind,
    AlertManager,
    AlertReporter,
    CallbackAlertReporter,
    LogAlertReporter,
)

__all__ = [
    # Exceptions
    "RelayError",
    "ValidationError",
    "TransportError",
    "ConnectionLost",
    "ConflictError",
    "SubmissionError",
    "ReorgDetected",
    "ReorgDepthExceeded",
    "StorageError",
    "RecordNotFound",
    "ConfigurationError",
    "ErrorCategory",
    "ErrorContext",
    "ErrorSeverity",
    # Recovery
    "RetryPolicy",
    "retry_async",
    # Alerts
    "Alert",
    "AlertKind",
    "AlertManager",
    "AlertReporter",
    "CallbackAlertReporter",
    "LogAlertReporter",
]
