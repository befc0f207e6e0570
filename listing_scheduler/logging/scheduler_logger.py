"""JSON-lines run log with an optional Supabase sink.

Every entry is appended to ``<log_dir>/scheduler.log``; ERROR and above
are duplicated into ``errors.log`` so failed dispatches and verifications
can be grepped without the noise. When a sink is attached (``SchedulerDB``
in production) entries at or above ``min_level`` are also written to the
``scheduler_logs`` table in background tasks; :meth:`SchedulerLogger.flush`
waits for them.

The process-wide instance is managed with ``init_logger()``,
``get_logger()`` and ``is_initialized()``.
"""

import asyncio
import sys
import traceback
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Set

import aiofiles

from listing_scheduler.logging.models import LogComponent, LogEntry, LogLevel
from listing_scheduler.utils import utc_now

RECENT_BUFFER_SIZE = 1000


class SchedulerLogger:
    """Structured logger shared by the batch entrypoints.

    Parameters:
        log_dir: Directory for the JSON-lines files (created if missing).
        supabase_sink: Optional object with an async ``save_log_entry(dict)``.
        min_level: Lowest level forwarded to the sink. Files get everything.
    """

    def __init__(
        self,
        log_dir: str = "logs",
        supabase_sink: Any = None,
        min_level: LogLevel = LogLevel.INFO,
    ) -> None:
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.main_log_path = self.log_dir / "scheduler.log"
        self.error_log_path = self.log_dir / "errors.log"

        self.supabase = supabase_sink
        self.min_level = min_level

        # Stamped onto every entry until cleared; RunTracker sets run_id,
        # the dispatcher sets listing_id per entry.
        self._run_id: Optional[str] = None
        self._listing_id: Optional[str] = None

        self._recent: Deque[LogEntry] = deque(maxlen=RECENT_BUFFER_SIZE)
        self._handlers: List[Callable[[LogEntry], None]] = []
        self._sink_tasks: Set["asyncio.Task[None]"] = set()

    def set_context(
        self, run_id: Optional[str] = None, listing_id: Optional[str] = None
    ) -> None:
        if run_id is not None:
            self._run_id = run_id
        if listing_id is not None:
            self._listing_id = listing_id

    def clear_context(self) -> None:
        self._run_id = None
        self._listing_id = None

    def add_handler(self, handler: Callable[[LogEntry], None]) -> None:
        """Call *handler* synchronously with every entry (console echo, tests)."""
        self._handlers.append(handler)

    async def log(
        self,
        level: LogLevel,
        component: LogComponent,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[Exception] = None,
        duration_ms: Optional[int] = None,
    ) -> LogEntry:
        """Record one entry and return it."""
        entry = LogEntry(
            timestamp=utc_now(),
            level=level,
            component=component,
            message=message,
            run_id=self._run_id,
            listing_id=self._listing_id,
            data=data or {},
            duration_ms=duration_ms,
        )
        if error is not None:
            entry.error_type = type(error).__name__
            entry.error_traceback = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )

        self._recent.append(entry)
        await self._append(entry)

        if self.supabase is not None and level.value >= self.min_level.value:
            task = asyncio.create_task(self._send_to_sink(entry))
            self._sink_tasks.add(task)
            task.add_done_callback(self._sink_tasks.discard)

        for handler in self._handlers:
            try:
                handler(entry)
            except Exception as exc:
                print(f"[LOGGING] Handler {handler!r} failed: {exc}", file=sys.stderr)
        return entry

    async def debug(self, component: LogComponent, message: str, **kwargs: Any) -> LogEntry:
        return await self.log(LogLevel.DEBUG, component, message, **kwargs)

    async def info(self, component: LogComponent, message: str, **kwargs: Any) -> LogEntry:
        return await self.log(LogLevel.INFO, component, message, **kwargs)

    async def warning(self, component: LogComponent, message: str, **kwargs: Any) -> LogEntry:
        return await self.log(LogLevel.WARNING, component, message, **kwargs)

    async def error(self, component: LogComponent, message: str, **kwargs: Any) -> LogEntry:
        return await self.log(LogLevel.ERROR, component, message, **kwargs)

    async def critical(self, component: LogComponent, message: str, **kwargs: Any) -> LogEntry:
        return await self.log(LogLevel.CRITICAL, component, message, **kwargs)

    def get_recent(
        self,
        limit: int = 20,
        level: Optional[LogLevel] = None,
        component: Optional[LogComponent] = None,
        run_id: Optional[str] = None,
    ) -> List[LogEntry]:
        """Newest *limit* buffered entries matching every given filter, oldest first."""
        matches = [
            entry for entry in self._recent
            if (level is None or entry.level == level)
            and (component is None or entry.component == component)
            and (run_id is None or entry.run_id == run_id)
        ]
        return matches[-limit:]

    async def flush(self) -> None:
        """Wait for outstanding sink writes. Call before the process exits."""
        if self._sink_tasks:
            await asyncio.gather(*self._sink_tasks, return_exceptions=True)
            self._sink_tasks.clear()

    async def _append(self, entry: LogEntry) -> None:
        line = entry.to_json() + "\n"
        targets = [self.main_log_path]
        if entry.level.value >= LogLevel.ERROR.value:
            targets.append(self.error_log_path)
        for path in targets:
            async with aiofiles.open(path, "a", encoding="utf-8") as f:
                await f.write(line)

    async def _send_to_sink(self, entry: LogEntry) -> None:
        try:
            await self.supabase.save_log_entry(entry.to_dict())
        except Exception as exc:
            # The sink is the database; report on stderr instead of recursing.
            print(f"[LOGGING] scheduler_logs write failed: {exc}", file=sys.stderr)


_logger: Optional[SchedulerLogger] = None


def init_logger(
    log_dir: str = "logs",
    supabase_sink: Any = None,
    min_level: LogLevel = LogLevel.INFO,
) -> SchedulerLogger:
    """Create the process-wide logger, replacing any previous one."""
    global _logger
    _logger = SchedulerLogger(log_dir=log_dir, supabase_sink=supabase_sink, min_level=min_level)
    return _logger


def get_logger() -> SchedulerLogger:
    """Return the process-wide logger.

    Raises:
        RuntimeError: If ``init_logger()`` has not been called.
    """
    if _logger is None:
        raise RuntimeError("Logger not initialized. Call init_logger() first.")
    return _logger


def is_initialized() -> bool:
    return _logger is not None


__all__ = ["SchedulerLogger", "init_logger", "get_logger", "is_initialized", "RECENT_BUFFER_SIZE"]
