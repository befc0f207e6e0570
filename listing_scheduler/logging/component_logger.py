"""Component-bound logging facade.

A ``ComponentLogger`` always writes to the stdlib logger
``listing_scheduler.<component>`` and, once ``init_logger()`` has run,
also to the structured ``SchedulerLogger``. Library callers and tests that
never initialise structured logging still get ordinary log records.
"""

import logging
import time
from typing import Any, Optional

from listing_scheduler.logging.models import LogComponent, LogLevel
from listing_scheduler.logging.scheduler_logger import get_logger, is_initialized


class ComponentLogger:
    """Logger with a fixed :class:`LogComponent`::

        self.log = ComponentLogger(LogComponent.DISPATCHER)
        await self.log.info("[DISPATCH] run finished", data={"posted": 4})
    """

    def __init__(self, component: LogComponent) -> None:
        self.component = component
        self._stdlib = logging.getLogger(f"listing_scheduler.{component.value}")

    async def log(self, level: LogLevel, message: str, **kwargs: Any) -> None:
        self._stdlib.log(level.value, message)
        if is_initialized():
            await get_logger().log(level, self.component, message, **kwargs)

    async def debug(self, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.DEBUG, message, **kwargs)

    async def info(self, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.INFO, message, **kwargs)

    async def warning(self, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.WARNING, message, **kwargs)

    async def error(
        self, message: str, error: Optional[Exception] = None, **kwargs: Any
    ) -> None:
        await self.log(LogLevel.ERROR, message, error=error, **kwargs)

    def timed(self, message: str) -> "TimedOperation":
        """Time an ``async with`` block::

            async with self.log.timed("slot generation"):
                await service.generate_recurring_schedules()
        """
        return TimedOperation(self, message)


class TimedOperation:
    """Logs ``Starting:`` (DEBUG), then ``Completed:`` (INFO) or ``Failed:`` (ERROR).

    Exceptions raised in the block are logged with the elapsed time and
    propagate unchanged.
    """

    def __init__(self, logger: ComponentLogger, message: str) -> None:
        self.logger = logger
        self.message = message
        self.started: Optional[float] = None
        self.duration_ms: Optional[int] = None

    async def __aenter__(self) -> "TimedOperation":
        self.started = time.monotonic()
        await self.logger.debug(f"Starting: {self.message}")
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type],
        exc_val: Optional[BaseException],
        exc_tb: Any,
    ) -> bool:
        self.duration_ms = int((time.monotonic() - (self.started or 0.0)) * 1000)
        if exc_type is None:
            await self.logger.info(f"Completed: {self.message}", duration_ms=self.duration_ms)
        else:
            await self.logger.error(
                f"Failed: {self.message}",
                error=exc_val if isinstance(exc_val, Exception) else None,
                duration_ms=self.duration_ms,
            )
        return False


__all__ = ["ComponentLogger", "TimedOperation"]
