"""
Background worker that drives the scheduler's batch entrypoints.

``SchedulerWorker`` runs as an asyncio loop for deployments without an
external cron. Every cycle dispatches due posts and processes due status
verifications; slower jobs (stuck-entry recovery, slot generation,
listing housekeeping) run every N cycles. Each batch entrypoint is safe
under overlapping invocation, so several workers may run side by side.
"""

import asyncio
import logging
from typing import Any, Dict

from listing_scheduler.logging import ComponentLogger, LogComponent

logger = logging.getLogger(__name__)


class SchedulerWorker:
    """Periodic driver around :class:`~listing_scheduler.service.SchedulerService`.

    Args:
        service: The scheduler service facade.
        interval_seconds: Seconds between cycles (default: 60).
    """

    # Every N cycles
    RECOVERY_INTERVAL_CYCLES: int = 10
    GENERATION_INTERVAL_CYCLES: int = 60
    HOUSEKEEPING_INTERVAL_CYCLES: int = 1440

    def __init__(
        self,
        service: "SchedulerService",  # noqa: F821
        interval_seconds: int = 60,
    ) -> None:
        self.service = service
        self.interval_seconds = interval_seconds
        self._running: bool = False
        self._cycle_count: int = 0
        self.log = ComponentLogger(LogComponent.WORKER)

    # ================================================================
    # LIFECYCLE
    # ================================================================

    async def start(self) -> None:
        """Run cycles until :meth:`stop` is called or the task is cancelled.

        Generation runs on the first cycle so a fresh worker fills the
        horizon immediately.
        """
        self._running = True
        self._cycle_count = 0
        logger.info("[WORKER] Scheduler worker started (interval=%ds)", self.interval_seconds)

        while self._running:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                logger.info("[WORKER] Scheduler worker cancelled")
                break
            except Exception:
                logger.exception("[WORKER] Unexpected error in scheduler worker loop")

            if not self._running:
                break
            try:
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                logger.info("[WORKER] Scheduler worker sleep cancelled")
                break

        logger.info("[WORKER] Scheduler worker stopped")

    async def stop(self) -> None:
        """Ask the loop to exit after the current cycle."""
        self._running = False
        logger.info("[WORKER] Scheduler worker stop requested")

    @property
    def is_running(self) -> bool:
        return self._running

    # ================================================================
    # CYCLE
    # ================================================================

    async def run_cycle(self) -> Dict[str, Any]:
        """Run one cycle and return each job's result keyed by job name."""
        cycle = self._cycle_count
        self._cycle_count += 1
        results: Dict[str, Any] = {}

        if cycle % self.GENERATION_INTERVAL_CYCLES == 0:
            async with self.log.timed(f"slot generation (cycle {cycle})"):
                results["generate"] = await self.service.generate_recurring_schedules()
        if cycle % self.HOUSEKEEPING_INTERVAL_CYCLES == 0:
            async with self.log.timed("listing housekeeping"):
                results["archive"] = await self.service.auto_archive_sold_listings()
                results["expire"] = await self.service.auto_expire_new_status()
        if cycle and cycle % self.RECOVERY_INTERVAL_CYCLES == 0:
            results["recover"] = await self.service.recover_stuck_entries()

        results["verify"] = await self.service.process_due_status_verifications()
        results["dispatch"] = await self.service.invoke_process_scheduled_posts()

        logger.debug("[WORKER] Cycle %d ran %s", cycle, ", ".join(results))
        return results


__all__ = ["SchedulerWorker"]
