"""Structured diagnostic sink.

Services report through ``DiagnosticsService.log(level, category, message,
details)``. Entries go to the stdlib logging hierarchy under
``cryptotracker.diagnostics.<category>`` and into a bounded in-memory buffer
that the diagnostics endpoints expose. Logging never raises into the caller.
"""

import logging
from collections import Counter, deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class LogCategory(str, Enum):
    API_CALL = "api_call"
    DATABASE = "database"
    TRANSACTION = "transaction"
    USER_ACTION = "user_action"
    NAVIGATION = "navigation"
    ERROR = "error"
    AUTHENTICATION = "authentication"
    SYSTEM = "system"


_STDLIB_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.CRITICAL: logging.CRITICAL,
}


class DiagnosticsService:
    def __init__(self, max_entries: int = 1000):
        self._entries: Deque[Dict[str, Any]] = deque(maxlen=max_entries)
        self._counters: Counter = Counter()

    def log(
        self,
        level: LogLevel,
        category: LogCategory,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            entry = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "level": level.value,
                "category": category.value,
                "message": message,
                "details": details or {},
            }
            self._entries.append(entry)
            logging.getLogger(f"{__name__}.{category.value}").log(
                _STDLIB_LEVELS[level],
                f"{category.value.upper()}: {message}" + (f" {details}" if details else ""),
            )
        except Exception as e:
            logger.debug(f"Dropped diagnostic entry: {e}")

    def debug(self, category: LogCategory, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.log(LogLevel.DEBUG, category, message, details)

    def info(self, category: LogCategory, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.log(LogLevel.INFO, category, message, details)

    def warning(self, category: LogCategory, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.log(LogLevel.WARNING, category, message, details)

    def error(self, category: LogCategory, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.log(LogLevel.ERROR, category, message, details)

    def critical(self, category: LogCategory, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.log(LogLevel.CRITICAL, category, message, details)

    def increment(self, name: str, amount: int = 1) -> None:
        """Bump a named counter (e.g. ``pl.auto_correction``)."""
        self._counters[name] += amount

    def count(self, name: str) -> int:
        return self._counters[name]

    def counters(self) -> Dict[str, int]:
        return dict(self._counters)

    def recent(
        self,
        limit: int = 50,
        category: Optional[LogCategory] = None,
        min_level: Optional[LogLevel] = None,
    ) -> List[Dict[str, Any]]:
        entries = list(self._entries)
        if category is not None:
            entries = [e for e in entries if e["category"] == category.value]
        if min_level is not None:
            threshold = _STDLIB_LEVELS[min_level]
            entries = [e for e in entries if _STDLIB_LEVELS[LogLevel(e["level"])] >= threshold]
        return entries[-limit:]

    def clear(self) -> None:
        self._entries.clear()
        self._counters.clear()
