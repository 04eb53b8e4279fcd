"""Log handlers for bridgerelay.

Console, file and in-memory handlers. The memory handler is what the test
suite attaches to assert on emitted records.
"""

import os
import sys
import threading
from collections import deque
from typing import Any, Dict, List, Optional, TextIO

from .core import LogEntry, LogHandler, LogLevel


class ConsoleHandler(LogHandler):
    """Console log handler."""

    def __init__(self, stream: Optional[TextIO] = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, entry: LogEntry) -> None:
        """Emit log entry to console."""
        with self._lock:
            self.stream.write(self.render(entry) + "\n")
            self.stream.flush()


class FileHandler(LogHandler):
    """Append-only file log handler."""

    def __init__(self, filename: str, mode: str = "a", encoding: str = "utf-8"):
        super().__init__()
        self.filename = filename
        self.mode = mode
        self.encoding = encoding
        self.stream: Optional[TextIO] = None

    def _open(self) -> None:
        """Open file stream."""
        if self.stream is None:
            directory = os.path.dirname(self.filename)
            if directory:
                os.makedirs(directory, exist_ok=True)
            self.stream = open(self.filename, self.mode, encoding=self.encoding)

    def emit(self, entry: LogEntry) -> None:
        """Emit log entry to file."""
        with self._lock:
            self._open()
            self.stream.write(self.render(entry) + "\n")
            self.stream.flush()

    def close(self) -> None:
        """Close handler."""
        with self._lock:
            if self.stream is not None:
                self.stream.close()
                self.stream = None


class MemoryHandler(LogHandler):
    """Bounded in-memory log handler."""

    def __init__(self, max_size: int = 1000):
        super().__init__()
        self.max_size = max_size
        self.entries: deque = deque(maxlen=max_size)

    def emit(self, entry: LogEntry) -> None:
        """Keep the entry in memory."""
        with self._lock:
            self.entries.append(entry)

    def get_logs(self, level: Optional[LogLevel] = None) -> List[Dict[str, Any]]:
        """Get logs from memory, optionally only those at ``level``."""
        with self._lock:
            return [
                entry.to_dict()
                for entry in self.entries
                if level is None or entry.level == level
            ]

    def messages(self) -> List[str]:
        """Return the plain messages kept in memory."""
        with self._lock:
            return [entry.message for entry in self.entries]

    def clear_logs(self) -> None:
        """Clear all logs from memory."""
        with self._lock:
            self.entries.clear()

    def close(self) -> None:
        """Close handler."""
        self.clear_logs()


__all__ = ["ConsoleHandler", "FileHandler", "MemoryHandler"]
