"""
Scheduler service: the batch entrypoints and operator views.

``SchedulerService`` wires the scheduling components to one database
client and exposes what cron jobs, webhooks and operators call:

- ``generate_recurring_schedules()`` / ``generate_for_listing()``
- ``invoke_process_scheduled_posts()`` / ``recover_stuck_entries()``
- ``handle_listing_status_webhook()`` / ``process_due_status_verifications()``
- ``cancel_listing_automation()``
- ``auto_archive_sold_listings()`` / ``auto_expire_new_status()``
- ``get_recurring_schedule_summary()`` / ``get_unified_schedule_dashboard()``
- ``acquire_gemini_vision_slot()`` / ``release_gemini_vision_slot()``

Every entrypoint is a short batch that is safe to run concurrently with
itself; coordination happens in the database.
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from listing_scheduler.config import Settings, get_settings
from listing_scheduler.exceptions import (
    LockHeldError,
    TemplateConfigurationError,
    ValidationError,
)
from listing_scheduler.logging import ComponentLogger, LogComponent
from listing_scheduler.scheduling import (
    ContentRotation,
    GenerationResult,
    ListingStatus,
    PostDispatcher,
    PostEntryStore,
    PostStatus,
    RunKind,
    RunTracker,
    ScheduleTemplate,
    SchedulingLockManager,
    SlotGenerator,
    StatusVerificationEngine,
    VisionSlotLimiter,
)
from listing_scheduler.tools import UploadPostClient
from listing_scheduler.utils import to_iso, utc_now

logger = logging.getLogger(__name__)


class SchedulerService:
    """Facade over slot generation, verification and dispatch.

    Args:
        db: Database client (:class:`~listing_scheduler.database.SchedulerDB`).
        settings: Scheduler settings. Defaults to :func:`get_settings`.
        publisher: Upload client. Created from the environment on first
            dispatch when omitted.
        rng: Random source for jitter and content rotation.
    """

    def __init__(
        self,
        db: Any,
        settings: Optional[Settings] = None,
        publisher: Optional[Any] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.rng = rng or random.Random()
        self._publisher = publisher

        self.store = PostEntryStore(db, self.settings.retry)
        self.scheduling_locks = SchedulingLockManager(db, self.settings)
        self.vision_slots = VisionSlotLimiter(db, self.settings)
        self.rotation = ContentRotation(db, self.settings.content_type_weights, self.rng)
        self.generator = SlotGenerator(
            db, self.settings, lock=self.scheduling_locks, rng=self.rng
        )
        self.verification = StatusVerificationEngine(
            db, self.settings, store=self.store, generator=self.generator
        )
        self._dispatcher: Optional[PostDispatcher] = None
        self.log = ComponentLogger(LogComponent.SERVICE)

    @property
    def publisher(self) -> Any:
        if self._publisher is None:
            self._publisher = UploadPostClient()
        return self._publisher

    @property
    def dispatcher(self) -> PostDispatcher:
        if self._dispatcher is None:
            self._dispatcher = PostDispatcher(
                self.db, self.publisher, self.settings, rotation=self.rotation
            )
        return self._dispatcher

    # ================================================================
    # SLOT GENERATION
    # ================================================================

    async def generate_recurring_schedules(
        self,
        now: Optional[datetime] = None,
        organization_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Generate the horizon for every active template.

        A template that fails is recorded in the run's errors; the rest
        still run. A template whose listing is locked by another run is
        skipped for this cycle.

        Returns:
            ``{"run_id", "templates_found", "templates_processed",
            "entries_created", "success", "message"}``.
        """
        now = now or utc_now()
        tracker = RunTracker(self.db, RunKind.GENERATION)
        await tracker.start()

        try:
            rows = await self.db.get_active_templates(organization_id)
            tracker.increment("found", len(rows))
            for row in rows:
                await self._generate_one(row, now, tracker)
                await tracker.checkpoint()
        except Exception as exc:
            run = await tracker.fail(exc, http_status=500)
            return {
                "run_id": run.id,
                "templates_found": tracker.counts.get("found", 0),
                "templates_processed": tracker.counts.get("processed", 0),
                "entries_created": tracker.counts.get("entries_created", 0),
                "success": False,
                "message": f"Generation run failed: {exc}",
            }

        message = (
            f"{tracker.counts.get('processed', 0)} template(s) processed, "
            f"{tracker.counts.get('entries_created', 0)} entries created, "
            f"{tracker.counts.get('skipped', 0)} locked, "
            f"{tracker.counts.get('failed', 0)} failed"
        )
        run = await tracker.finish(message=message, http_status=200)
        return {
            "run_id": run.id,
            "templates_found": tracker.counts.get("found", 0),
            "templates_processed": tracker.counts.get("processed", 0),
            "entries_created": tracker.counts.get("entries_created", 0),
            "success": True,
            "message": message,
        }

    async def _generate_one(
        self, row: Dict[str, Any], now: datetime, tracker: RunTracker
    ) -> None:
        template_id = row.get("id", "?")
        try:
            template = ScheduleTemplate.from_row(row)
            result = await self.generator.generate(template, now=now, owner="cron")
        except LockHeldError as exc:
            tracker.increment("skipped")
            logger.info("[SLOTS] Template %s skipped: %s", template_id, exc)
            return
        except TemplateConfigurationError as exc:
            tracker.increment("failed")
            tracker.record_error(str(exc))
            await self.log.warning(f"[SLOTS] {exc}")
            return
        except Exception as exc:
            tracker.increment("failed")
            tracker.record_error(f"{template_id}: {type(exc).__name__}: {exc}")
            await self.log.error(f"[SLOTS] Template {template_id} failed", error=exc)
            return

        tracker.increment("processed")
        tracker.increment("entries_created", result.created_count)
        if result.deactivated:
            tracker.increment("deactivated")

    async def generate_for_listing(
        self, listing_id: str, now: Optional[datetime] = None
    ) -> GenerationResult:
        """Manually re-run generation for one listing's active template.

        Raises:
            ValidationError: If the listing has no active template.
            TemplateConfigurationError: If the template is unusable.
            LockHeldError: If another run holds the listing's lock.
        """
        row = await self.db.get_active_template_for_listing(listing_id)
        if not row:
            raise ValidationError(f"Listing {listing_id} has no active schedule template")
        template = ScheduleTemplate.from_row(row)
        return await self.generator.generate(template, now=now, owner="manual")

    # ================================================================
    # DISPATCH
    # ================================================================

    async def invoke_process_scheduled_posts(
        self, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Publish every due entry. See :class:`PostDispatcher`."""
        return await self.dispatcher.invoke_process_scheduled_posts(now)

    async def recover_stuck_entries(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Return entries stuck in ``processing`` to the queue or fail them."""
        return await self.store.recover_stuck(now)

    # ================================================================
    # STATUS CHANGES
    # ================================================================

    async def handle_listing_status_webhook(
        self, payload: Dict[str, Any], now: Optional[datetime] = None
    ) -> Optional[Dict[str, Any]]:
        """Record a listing status change event.

        Accepts either a flat payload (``listing_id``, ``organization_id``,
        ``old_status``, ``new_status``) or a database webhook payload with
        ``record`` / ``old_record``.

        Returns:
            The queued verification row, or ``None`` when the status did
            not change.

        Raises:
            ValidationError: If the payload lacks a listing or new status.
        """
        if "record" in payload:
            record = payload.get("record") or {}
            old_record = payload.get("old_record") or {}
            listing_id = record.get("id")
            organization_id = record.get("organization_id")
            old_status = old_record.get("status")
            new_status = record.get("status")
        else:
            listing_id = payload.get("listing_id")
            organization_id = payload.get("organization_id")
            old_status = payload.get("old_status")
            new_status = payload.get("new_status")

        if not listing_id or not new_status:
            raise ValidationError("Status webhook needs a listing id and a new status")

        verification = await self.verification.record_status_change(
            listing_id, organization_id or "", old_status, new_status, now
        )
        return verification.to_row() if verification else None

    async def process_due_status_verifications(
        self, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Confirm or cancel due verifications. See :class:`StatusVerificationEngine`."""
        return await self.verification.process_due_verifications(now)

    async def cancel_pending_verifications_for_listing(self, listing_id: str) -> int:
        return await self.verification.cancel_pending_verifications_for_listing(listing_id)

    async def retry_failed_verification(
        self, verification_id: str, now: Optional[datetime] = None
    ) -> str:
        """Manually re-run a failed verification; returns its new status."""
        status = await self.verification.retry_failed_verification(verification_id, now)
        return status.value

    # ================================================================
    # LISTING AUTOMATION
    # ================================================================

    async def cancel_listing_automation(
        self, listing_id: str, reason: str = "Automation cancelled"
    ) -> Dict[str, int]:
        """Stop all scheduling for a listing.

        Cancels pending entries and pending verifications, releases its
        scheduling locks and deactivates its templates. Posted, failed and
        in-flight entries are left alone.
        """
        summary = {
            "entries_cancelled": await self.store.cancel_pending_for_listing(
                listing_id, reason
            ),
            "verifications_cancelled": await self.db.cancel_pending_verifications_for_listing(
                listing_id
            ),
            "locks_released": await self.scheduling_locks.release_all_for(listing_id),
            "templates_deactivated": await self.db.deactivate_templates_for_listing(
                listing_id
            ),
        }
        await self.log.info(
            f"[SERVICE] Automation cancelled for listing {listing_id}", data=summary
        )
        return summary

    async def auto_archive_sold_listings(
        self, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Archive listings sold at least ``auto_archive_days`` ago.

        Returns:
            ``{"archived": n, "listing_ids": [...]}``.
        """
        now = now or utc_now()
        cutoff = (now - timedelta(days=self.settings.auto_archive_days)).date()
        rows = await self.db.get_sold_listings_before(cutoff)

        archived: List[str] = []
        for listing in rows:
            listing_id = listing["id"]
            await self.db.update_listing(listing_id, {
                "archived": True,
                "archived_at": to_iso(now),
            })
            await self.cancel_listing_automation(listing_id, reason="Listing archived")
            archived.append(listing_id)

        if archived:
            logger.info("[SERVICE] Archived %d sold listing(s)", len(archived))
        return {"archived": len(archived), "listing_ids": archived}

    async def auto_expire_new_status(
        self, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Move listings that have been ``New`` for too long to ``Published``.

        The change goes through status verification like any other.

        Returns:
            ``{"expired": n, "listing_ids": [...]}``.
        """
        now = now or utc_now()
        cutoff = (now - timedelta(days=self.settings.auto_expire_new_days)).date()
        rows = await self.db.get_new_listings_before(cutoff)

        expired: List[str] = []
        for listing in rows:
            listing_id = listing["id"]
            await self.db.update_listing(listing_id, {
                "status": ListingStatus.PUBLISHED.value,
                "new_status_set_date": None,
                "status_changed_date": now.date().isoformat(),
            })
            await self.verification.record_status_change(
                listing_id,
                listing.get("organization_id", ""),
                ListingStatus.NEW.value,
                ListingStatus.PUBLISHED.value,
                now,
            )
            expired.append(listing_id)

        if expired:
            logger.info("[SERVICE] Expired New status on %d listing(s)", len(expired))
        return {"expired": len(expired), "listing_ids": expired}

    # ================================================================
    # OPERATOR VIEWS
    # ================================================================

    async def get_recurring_schedule_summary(self, listing_id: str) -> Dict[str, Any]:
        """Schedule summary for one listing.

        Returns:
            Template settings (``None`` values when the listing has no
            active template) plus entry counts per status and the next
            pending post time.
        """
        row = await self.db.get_active_template_for_listing(listing_id)
        template = ScheduleTemplate.from_row(row) if row else None
        entries = await self.store.get_entries_for_listing(listing_id, include_cancelled=True)

        counts = {status.value: 0 for status in PostStatus}
        for entry in entries:
            counts[entry.status.value] += 1
        pending = [e for e in entries if e.status is PostStatus.PENDING]
        posted = [e.posted_at for e in entries if e.posted_at is not None]

        return {
            "listing_id": listing_id,
            "organization_id": template.organization_id if template else None,
            "template_id": template.id if template else None,
            "current_phase": template.current_phase.value if template else None,
            "frequency": template.frequency if template else None,
            "days_of_week": template.days_of_week if template else [],
            "is_active": template is not None,
            "total_entries": len(entries),
            "pending_count": counts[PostStatus.PENDING.value],
            "processing_count": counts[PostStatus.PROCESSING.value],
            "posted_count": counts[PostStatus.POSTED.value],
            "failed_count": counts[PostStatus.FAILED.value],
            "cancelled_count": counts[PostStatus.CANCELLED.value],
            "next_post_date": to_iso(min((e.scheduled_for for e in pending), default=None)),
            "last_posted_at": to_iso(max(posted, default=None)),
        }

    async def get_unified_schedule_dashboard(
        self, organization_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """One summary row per listing with an active template.

        Rows are ordered by next post date; listings with nothing pending
        come last.
        """
        rows = await self.db.get_active_templates(organization_id)
        listing_ids = sorted({row["listing_id"] for row in rows})
        summaries = [await self.get_recurring_schedule_summary(lid) for lid in listing_ids]
        summaries.sort(key=lambda s: (s["next_post_date"] is None, s["next_post_date"] or ""))
        return summaries

    # ================================================================
    # VISION SLOTS
    # ================================================================

    async def acquire_gemini_vision_slot(self, session_id: str, owner: str = "vision") -> str:
        """Take one of the pooled vision API slots.

        Raises:
            LockHeldError: If every slot is held.
        """
        return await self.vision_slots.acquire_gemini_vision_slot(session_id, owner)

    async def release_gemini_vision_slot(self, lock_id: str) -> bool:
        return await self.vision_slots.release_gemini_vision_slot(lock_id)


__all__ = ["SchedulerService"]
