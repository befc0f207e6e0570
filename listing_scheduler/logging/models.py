"""Structured log records for scheduler runs."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class LogLevel(Enum):
    """Severity levels, numerically aligned with stdlib ``logging``.

    Integer values keep ``>=`` threshold checks correct and let a level be
    passed straight to ``logging.Logger.log``.
    """

    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50

    @property
    def name_str(self) -> str:
        return self.name.lower()


class LogComponent(Enum):
    """Scheduler components that write structured logs."""

    SLOT_GENERATOR = "slot_generator"
    VERIFICATION = "verification"
    DISPATCHER = "dispatcher"
    RUN_TRACKER = "run_tracker"
    SERVICE = "service"
    WORKER = "worker"


_READABLE_LEVEL = {
    LogLevel.DEBUG: "[DEBUG]",
    LogLevel.INFO: "[INFO]",
    LogLevel.WARNING: "[WARN]",
    LogLevel.ERROR: "[ERROR]",
    LogLevel.CRITICAL: "[CRIT]",
}


@dataclass
class LogEntry:
    """One log event, tagged with the batch run and listing it belongs to.

    Rows go to the ``scheduler_logs`` table via :meth:`to_dict` and to the
    JSON-lines files via :meth:`to_json`.
    """

    timestamp: datetime
    level: LogLevel
    component: LogComponent
    message: str

    run_id: Optional[str] = None
    listing_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    error_type: Optional[str] = None
    error_traceback: Optional[str] = None
    duration_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "level_name": self.level.name_str,
            "component": self.component.value,
            "message": self.message,
            "run_id": self.run_id,
            "listing_id": self.listing_id,
            "data": self.data,
            "error_type": self.error_type,
            "error_traceback": self.error_traceback,
            "duration_ms": self.duration_ms,
        }

    def to_json(self) -> str:
        # Run summaries carry datetimes and enums in ``data``.
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    def to_readable(self) -> str:
        """One-line console form, e.g. ``[WARN] [12:00:00] [worker] Slow cycle (1500ms)``."""
        indicator = _READABLE_LEVEL.get(self.level, "[???]")
        line = (
            f"{indicator} [{self.timestamp.strftime('%H:%M:%S')}] "
            f"[{self.component.value}] {self.message}"
        )
        if self.duration_ms:
            line += f" ({self.duration_ms}ms)"
        return line
