"""Core logging interfaces and data structures for bridgerelay.

This module defines the structured logging entry, context and manager used
across the relay. Every entry carries a ``LogContext`` naming the chain,
direction and relay record it concerns, so a single record can be traced
from observation to confirmation.
"""

import json
import os
import sys
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class LogLevel(Enum):
    """Log levels."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


_LEVEL_ORDER = {level: index for index, level in enumerate(LogLevel)}


@dataclass
class LogContext:
    """Log context information."""

    component: Optional[str] = None
    chain_id: Optional[int] = None
    direction: Optional[str] = None
    record_id: Optional[int] = None
    tx_hash: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert context to dictionary, dropping unset fields."""
        data = {
            "component": self.component,
            "chain_id": self.chain_id,
            "direction": self.direction,
            "record_id": self.record_id,
            "tx_hash": self.tx_hash,
        }
        data = {key: value for key, value in data.items() if value is not None}
        if self.metadata:
            data["metadata"] = self.metadata
        return data

    def merged_with(self, other: Optional["LogContext"]) -> "LogContext":
        """Return a context where fields set on ``other`` win."""
        if other is None:
            return self
        return LogContext(
            component=other.component or self.component,
            chain_id=other.chain_id if other.chain_id is not None else self.chain_id,
            direction=other.direction or self.direction,
            record_id=other.record_id if other.record_id is not None else self.record_id,
            tx_hash=other.tx_hash or self.tx_hash,
            metadata={**self.metadata, **other.metadata},
        )


@dataclass
class LogEntry:
    """Log entry data structure."""

    timestamp: float
    level: LogLevel
    message: str
    logger_name: str
    context: LogContext
    exception: Optional[BaseException] = None
    extra: Dict[str, Any] = field(default_factory=dict)
    thread_id: Optional[int] = None
    process_id: Optional[int] = None

    def __post_init__(self):
        if self.thread_id is None:
            self.thread_id = threading.get_ident()
        if self.process_id is None:
            self.process_id = os.getpid()

    def to_dict(self) -> Dict[str, Any]:
        """Convert log entry to dictionary."""
        return {
            "timestamp": self.timestamp,
            "level": self.level.value,
            "message": self.message,
            "logger_name": self.logger_name,
            "context": self.context.to_dict(),
            "exception": str(self.exception) if self.exception else None,
            "extra": self.extra,
            "thread_id": self.thread_id,
            "process_id": self.process_id,
        }

    def to_json(self) -> str:
        """Convert log entry to JSON string."""
        return json.dumps(self.to_dict(), default=str)


class LogConfig:
    """Log configuration."""

    def __init__(
        self,
        name: str = "bridgerelay",
        level: LogLevel = LogLevel.INFO,
        format_type: str = "text",
        handlers: List[str] = None,
        log_file: Optional[str] = None,
    ):
        self.name = name
        self.level = level
        self.format_type = format_type
        self.handlers = ["console"] if handlers is None else handlers
        self.log_file = log_file


class LogFormatter(ABC):
    """Abstract log formatter."""

    @abstractmethod
    def format(self, entry: LogEntry) -> str:
        """Format log entry."""
        pass


class LogHandler(ABC):
    """Abstract log handler."""

    def __init__(self, name: str = None):
        self.name = name or self.__class__.__name__
        self.formatter: Optional[LogFormatter] = None
        self.level: LogLevel = LogLevel.DEBUG
        self._lock = threading.RLock()

    def set_formatter(self, formatter: LogFormatter) -> None:
        """Set formatter."""
        with self._lock:
            self.formatter = formatter

    def set_level(self, level: LogLevel) -> None:
        """Set log level."""
        with self._lock:
            self.level = level

    def should_handle(self, entry: LogEntry) -> bool:
        """Check if handler should handle the entry."""
        return _LEVEL_ORDER[entry.level] >= _LEVEL_ORDER[self.level]

    def render(self, entry: LogEntry) -> str:
        """Render entry with the configured formatter or a plain default."""
        if self.formatter:
            return self.formatter.format(entry)
        return (
            f"{entry.timestamp} [{entry.level.value.upper()}] "
            f"{entry.logger_name}: {entry.message}"
        )

    @abstractmethod
    def emit(self, entry: LogEntry) -> None:
        """Emit log entry."""
        pass

    def handle(self, entry: LogEntry) -> None:
        """Handle log entry."""
        if self.should_handle(entry):
            self.emit(entry)

    def close(self) -> None:
        """Release handler resources."""


class LogManager:
    """Log manager for orchestrating logging operations."""

    def __init__(self, config: LogConfig = None):
        self.config = config or LogConfig()
        self.loggers: Dict[str, "RelayLogger"] = {}
        self.handlers: Dict[str, LogHandler] = {}
        self._lock = threading.RLock()
        self._context = LogContext()

        self._setup_defaults()

    def _setup_defaults(self) -> None:
        """Setup handlers named by the configuration."""
        from .formatters import JSONFormatter, TextFormatter
        from .handlers import ConsoleHandler, FileHandler

        formatter = JSONFormatter() if self.config.format_type == "json" else TextFormatter()

        if "console" in self.config.handlers:
            handler = ConsoleHandler()
            handler.set_formatter(formatter)
            self.add_handler("console", handler)

        if "file" in self.config.handlers and self.config.log_file:
            handler = FileHandler(self.config.log_file)
            handler.set_formatter(JSONFormatter())
            self.add_handler("file", handler)

    def get_logger(self, name: str) -> "RelayLogger":
        """Get logger."""
        with self._lock:
            if name not in self.loggers:
                self.loggers[name] = RelayLogger(name, self)
            return self.loggers[name]

    def add_handler(self, name: str, handler: LogHandler) -> None:
        """Add handler."""
        with self._lock:
            self.handlers[name] = handler

    def remove_handler(self, name: str) -> None:
        """Remove handler."""
        with self._lock:
            handler = self.handlers.pop(name, None)
            if handler is not None:
                handler.close()

    def set_context(self, context: LogContext) -> None:
        """Set global context."""
        with self._lock:
            self._context = context

    def get_context(self) -> LogContext:
        """Get global context."""
        with self._lock:
            return self._context

    def log(
        self,
        level: LogLevel,
        message: str,
        logger_name: str = "root",
        context: LogContext = None,
        exception: BaseException = None,
        extra: Dict[str, Any] = None,
    ) -> None:
        """Log a message."""
        with self._lock:
            entry = LogEntry(
                timestamp=time.time(),
                level=level,
                message=message,
                logger_name=logger_name,
                context=self._context.merged_with(context),
                exception=exception,
                extra=extra or {},
            )

            for handler in list(self.handlers.values()):
                try:
                    handler.handle(entry)
                except Exception as e:
                    sys.stderr.write(f"Log handler {handler.name} failed: {e}\n")

    def shutdown(self) -> None:
        """Shutdown log manager."""
        with self._lock:
            for handler in self.handlers.values():
                handler.close()

            self.loggers.clear()
            self.handlers.clear()


class RelayLogger:
    """Named logger.

    A logger created through ``get_logger`` is not pinned to a manager: it
    resolves the global manager on every call, so module-level loggers keep
    working across ``setup_logging`` and ``shutdown_logging``.
    """

    def __init__(self, name: str, manager: Optional[LogManager] = None):
        self.name = name
        self._manager = manager
        self.level: Optional[LogLevel] = None
        self._lock = threading.RLock()

    @property
    def manager(self) -> LogManager:
        return self._manager if self._manager is not None else get_manager()

    def set_level(self, level: Optional[LogLevel]) -> None:
        """Set log level; ``None`` follows the manager configuration."""
        with self._lock:
            self.level = level

    def is_enabled_for(self, level: LogLevel) -> bool:
        """Check if logger is enabled for level."""
        with self._lock:
            threshold = self.level or self.manager.config.level
            return _LEVEL_ORDER[level] >= _LEVEL_ORDER[threshold]

    def log(
        self,
        level: LogLevel,
        message: str,
        context: LogContext = None,
        exception: BaseException = None,
        extra: Dict[str, Any] = None,
    ) -> None:
        """Log a message."""
        if self.is_enabled_for(level):
            self.manager.log(
                level=level,
                message=message,
                logger_name=self.name,
                context=context,
                exception=exception,
                extra=extra,
            )

    def debug(self, message: str, **kwargs) -> None:
        """Log debug message."""
        self.log(LogLevel.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs) -> None:
        """Log info message."""
        self.log(LogLevel.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs) -> None:
        """Log warning message."""
        self.log(LogLevel.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs) -> None:
        """Log error message."""
        self.log(LogLevel.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs) -> None:
        """Log critical message."""
        self.log(LogLevel.CRITICAL, message, **kwargs)

    def exception(self, message: str, **kwargs) -> None:
        """Log error message with the exception being handled."""
        exc_info = sys.exc_info()
        if exc_info[0] is not None:
            kwargs.setdefault("exception", exc_info[1])
        self.log(LogLevel.ERROR, message, **kwargs)


# Global log manager instance
_global_manager: Optional[LogManager] = None
_global_loggers: Dict[str, RelayLogger] = {}
_global_lock = threading.RLock()


def get_logger(name: str = "root") -> RelayLogger:
    """Get logger instance."""
    with _global_lock:
        if name not in _global_loggers:
            _global_loggers[name] = RelayLogger(name)
        return _global_loggers[name]


def get_manager() -> LogManager:
    """Get the global log manager, creating a default one if needed."""
    global _global_manager
    with _global_lock:
        if _global_manager is None:
            _global_manager = LogManager()
        return _global_manager


def setup_logging(config: LogConfig) -> LogManager:
    """Setup logging with configuration."""
    global _global_manager
    with _global_lock:
        if _global_manager is not None:
            _global_manager.shutdown()
        _global_manager = LogManager(config)
        return _global_manager


def shutdown_logging() -> None:
    """Shutdown logging."""
    global _global_manager
    with _global_lock:
        if _global_manager is not None:
            _global_manager.shutdown()
            _global_manager = None
