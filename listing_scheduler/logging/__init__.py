"""Structured logging system for the listing post scheduler."""
from listing_scheduler.logging.models import LogLevel, LogComponent, LogEntry
from listing_scheduler.logging.scheduler_logger import (
    SchedulerLogger,
    init_logger,
    get_logger,
    is_initialized,
)
from listing_scheduler.logging.component_logger import ComponentLogger, TimedOperation

__all__ = [
    "LogLevel", "LogComponent", "LogEntry",
    "SchedulerLogger", "init_logger", "get_logger", "is_initialized",
    "ComponentLogger", "TimedOperation",
]
