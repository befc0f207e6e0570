"""Batch run tracking with persisted audit rows.

``RunTracker`` records one batch invocation in its run table:

1. ``start()`` inserts the row with ``status='running'`` and sets the
   structured logger's run context.
2. ``increment()`` / ``record_error()`` accumulate counts and per-item
   errors; a per-item error never aborts the batch. ``checkpoint()``
   writes them to the still-running row after each item.
3. ``finish()`` writes the counts, ``run_completed_at`` and the final
   status (``completed`` or ``completed_with_errors``).
   ``fail()`` marks the run ``failed`` for infrastructure failures only.
4. The completion log line is ``get_summary_text()``.

Run rows are append-only; after creation only counts, errors and
completion fields change.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from listing_scheduler.logging import (
    ComponentLogger,
    LogComponent,
    get_logger,
    is_initialized,
)
from listing_scheduler.scheduling.models import ProcessingRun, RunStatus
from listing_scheduler.utils import generate_id, to_iso, utc_now

# Bound on stored per-item errors so one bad batch cannot bloat the row.
MAX_STORED_ERRORS = 100


class RunKind(Enum):
    """Batch run types and their audit tables."""

    POST_PROCESSING = "scheduled_post_processing_runs"
    VERIFICATION = "verification_runs"
    GENERATION = "schedule_generation_runs"

    @property
    def table(self) -> str:
        return self.value

    @property
    def count_prefix(self) -> str:
        """Column prefix for this table's count columns."""
        return {
            RunKind.POST_PROCESSING: "posts_",
            RunKind.VERIFICATION: "verifications_",
            RunKind.GENERATION: "templates_",
        }[self]


class RunTracker:
    """Track a single batch run and persist its audit row.

    Parameters:
        db: Database client (:class:`~listing_scheduler.database.SchedulerDB`).
        kind: Which run table to write.
    """

    def __init__(self, db: Any, kind: RunKind) -> None:
        self.db = db
        self.kind = kind
        self.log = ComponentLogger(LogComponent.RUN_TRACKER)
        self.run: Optional[ProcessingRun] = None
        self.counts: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> ProcessingRun:
        """Insert the run row with ``status='running'``."""
        self.run = ProcessingRun(id=generate_id(), run_started_at=utc_now())
        await self.db.insert_run(self.kind.table, {
            "id": self.run.id,
            "run_started_at": to_iso(self.run.run_started_at),
            "status": RunStatus.RUNNING.value,
        })
        if is_initialized():
            get_logger().set_context(run_id=self.run.id)
        await self.log.info(f"[RUNS] {self.kind.table} run {self.run.id} started")
        return self.run

    def increment(self, name: str, amount: int = 1) -> None:
        """Add *amount* to the named counter (``found``, ``processed``, ...)."""
        self.counts[name] = self.counts.get(name, 0) + amount

    def record_error(self, message: str) -> None:
        """Record a per-item error without aborting the run."""
        run = self._require_run()
        run.errors.append(message)

    async def checkpoint(self) -> None:
        """Write the counts and errors so far to the running row."""
        run = self._require_run()
        await self.db.update_run(self.kind.table, run.id, self._progress_fields(run))

    async def finish(
        self,
        message: Optional[str] = None,
        http_status: Optional[int] = None,
    ) -> ProcessingRun:
        """Complete the run.

        Final status is ``completed_with_errors`` when any per-item error
        was recorded, ``completed`` otherwise.
        """
        run = self._require_run()
        status = RunStatus.COMPLETED_WITH_ERRORS if run.errors else RunStatus.COMPLETED
        return await self._complete(status, message, http_status)

    async def fail(
        self,
        error: Exception,
        http_status: Optional[int] = 500,
    ) -> ProcessingRun:
        """Mark the run ``failed`` after an infrastructure failure."""
        run = self._require_run()
        run.errors.append(f"{type(error).__name__}: {error}")
        await self.log.error(
            f"[RUNS] {self.kind.table} run {run.id} failed: {error}", error=error
        )
        return await self._complete(RunStatus.FAILED, str(error), http_status)

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialisable snapshot of the run."""
        run = self._require_run()
        return {
            "run_id": run.id,
            "kind": self.kind.table,
            "status": run.status.value,
            "run_started_at": to_iso(run.run_started_at),
            "run_completed_at": to_iso(run.run_completed_at),
            "counts": dict(self.counts),
            "errors": list(run.errors),
            "message": run.message,
            "http_status": run.http_status,
        }

    def get_summary_text(self) -> str:
        """Return a human-readable summary of the run."""
        run = self._require_run()
        marker = {
            RunStatus.COMPLETED: "[OK]",
            RunStatus.COMPLETED_WITH_ERRORS: "[WARN]",
            RunStatus.FAILED: "[FAIL]",
            RunStatus.RUNNING: "[RUNNING]",
        }[run.status]

        lines: List[str] = [f"{marker} {self.kind.table} {run.id}"]
        for name in sorted(self.counts):
            lines.append(f"  {name}: {self.counts[name]}")
        if run.errors:
            lines.append(f"  errors: {len(run.errors)}")
            for err in run.errors[:5]:
                lines.append(f"    - {err}")
        if run.run_completed_at:
            duration = (run.run_completed_at - run.run_started_at).total_seconds()
            lines.append(f"  duration: {duration:.1f}s")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_run(self) -> ProcessingRun:
        if self.run is None:
            raise RuntimeError("RunTracker.start() has not been called")
        return self.run

    def _progress_fields(self, run: ProcessingRun) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "errors": run.errors[:MAX_STORED_ERRORS],
            "error_message": "; ".join(run.errors[:3]) or None,
        }
        for name, value in self.counts.items():
            fields[f"{self.kind.count_prefix}{name}"] = value
        return fields

    async def _complete(
        self,
        status: RunStatus,
        message: Optional[str],
        http_status: Optional[int],
    ) -> ProcessingRun:
        run = self._require_run()
        run.status = status
        run.run_completed_at = utc_now()
        run.message = message
        run.http_status = http_status
        run.found = self.counts.get("found", 0)
        run.processed = self.counts.get("processed", 0)
        run.failed = self.counts.get("failed", 0)
        run.cancelled = self.counts.get("cancelled", 0)

        fields = self._progress_fields(run)
        fields.update({
            "status": status.value,
            "run_completed_at": to_iso(run.run_completed_at),
            "message": message,
            "http_status": http_status,
        })
        await self.db.update_run(self.kind.table, run.id, fields)

        await self.log.info(self.get_summary_text(), data=self.to_dict())
        if is_initialized():
            get_logger().clear_context()
        return run


__all__ = ["RunKind", "RunTracker", "MAX_STORED_ERRORS"]
