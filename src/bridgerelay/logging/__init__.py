"""bridgerelay Logging System.

Structured logging for the relay: entries carry the chain, direction and
relay record they concern, and render as text or JSON.
"""

from .core import (
    LogConfig,
    LogContext,
    LogEntry,
    LogFormatter,
    LogHandler,
    LogLevel,
    LogManager,
    RelayLogger,
    get_logger,
    get_manager,
    setup_logging,
    shutdown_logging,
)
from .formatters import JSONFormatter, TextFormatter
from .handlers import ConsoleHandler, FileHandler, MemoryHandler

__all__ = [
    # Core
    "LogLevel",
    "LogContext",
    "LogEntry",
    "LogConfig",
    "LogFormatter",
    "LogHandler",
    "LogManager",
    "RelayLogger",
    "get_logger",
    "get_manager",
    "setup_logging",
    "shutdown_logging",
    # Formatters
    "JSONFormatter",
    "TextFormatter",
    # Handlers
    "ConsoleHandler",
    "FileHandler",
    "MemoryHandler",
]
