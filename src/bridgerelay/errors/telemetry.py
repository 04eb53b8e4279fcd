"""Operator alerts for bridgerelay.

Only conditions that need a human are raised as alerts: a relay record
that exhausted its retry budget, a reorganization deeper than the safety
threshold, a live subscription that could not be re-established, and
orphaned records whose event never reappeared on the canonical chain.
"""

import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..logging import LogContext, get_logger
from .exceptions import ErrorSeverity


class AlertKind(Enum):
    """Alert kinds."""

    RELAY_FAILED = "relay_failed"
    REORG_DEPTH_EXCEEDED = "reorg_depth_exceeded"
    SUBSCRIPTION_LOST = "subscription_lost"
    ORPHANED_UNRESOLVED = "orphaned_unresolved"


@dataclass
class Alert:
    """Operator-visible alert."""

    kind: AlertKind
    message: str
    severity: ErrorSeverity = ErrorSeverity.HIGH
    chain_id: Optional[int] = None
    record_id: Optional[int] = None
    timestamp: float = field(default_factory=time.time)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert alert to dictionary."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "severity": self.severity.value,
            "chain_id": self.chain_id,
            "record_id": self.record_id,
            "timestamp": self.timestamp,
            "details": self.details,
        }


class AlertReporter(ABC):
    """Abstract alert reporter."""

    @abstractmethod
    def report(self, alert: Alert) -> None:
        """Report an alert."""
        pass


class LogAlertReporter(AlertReporter):
    """Log-based alert reporter."""

    def __init__(self, logger_name: str = __name__):
        self.logger = get_logger(logger_name)

    def report(self, alert: Alert) -> None:
        """Report alert to logs."""
        context = LogContext(
            component="alerts", chain_id=alert.chain_id, record_id=alert.record_id
        )
        message = f"ALERT {alert.kind.value}: {alert.message}"
        if alert.severity == ErrorSeverity.CRITICAL:
            self.logger.critical(message, context=context, extra=alert.details)
        else:
            self.logger.error(message, context=context, extra=alert.details)


class CallbackAlertReporter(AlertReporter):
    """Forwards alerts to a callable (pager hook, webhook client, test probe)."""

    def __init__(self, callback: Callable[[Alert], None]):
        self.callback = callback

    def report(self, alert: Alert) -> None:
        self.callback(alert)


class AlertManager:
    """Fan-out of alerts to reporters, with a bounded history."""

    def __init__(self, history_size: int = 1000, reporters: List[AlertReporter] = None):
        self._history: deque = deque(maxlen=history_size)
        self.reporters: List[AlertReporter] = []
        self._lock = threading.RLock()
        self._logger = get_logger(__name__)

        if reporters is None:
            reporters = [LogAlertReporter()]
        for reporter in reporters:
            self.add_reporter(reporter)

    def add_reporter(self, reporter: AlertReporter) -> None:
        """Add an alert reporter."""
        with self._lock:
            self.reporters.append(reporter)

    def remove_reporter(self, reporter: AlertReporter) -> None:
        """Remove an alert reporter."""
        with self._lock:
            if reporter in self.reporters:
                self.reporters.remove(reporter)

    def emit(self, alert: Alert) -> None:
        """Record the alert and report it through every reporter."""
        with self._lock:
            self._history.append(alert)
            reporters = list(self.reporters)

        for reporter in reporters:
            try:
                reporter.report(alert)
            except Exception as e:
                self._logger.error(
                    f"Error in alert reporter {reporter.__class__.__name__}: {e}"
                )

    def history(self, kind: Optional[AlertKind] = None) -> List[Alert]:
        """Get alert history, optionally only one kind."""
        with self._lock:
            return [a for a in self._history if kind is None or a.kind == kind]

    def clear(self) -> None:
        """Clear alert history."""
        with self._lock:
            self._history.clear()
