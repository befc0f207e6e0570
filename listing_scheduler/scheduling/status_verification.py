"""
Status verification engine: debounced listing status changes.

A listing status change is not acted on immediately. It is recorded as a
``pending`` verification due ``verification_delay_minutes`` later; a newer
change for the same listing supersedes (cancels) the older one. When the
verification comes due the live listing is re-read:

    live status == recorded status  -> confirmed, phase transition applied
    live status differs / listing
    gone or archived                -> cancelled, nothing applied
    transition raised               -> failed (manual retry only)

The verification is claimed (moved to ``confirmed`` or ``cancelled``) with
a compare-and-swap before anything is applied, so overlapping sweeps
trigger each transition once.

Phase transitions on confirmation:
    New / Published        -> ensure an active launch template
    Sale Agreed / Sold     -> cancel pending posts, template -> banner_only
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from listing_scheduler.config import Settings, get_settings
from listing_scheduler.exceptions import LockHeldError, ValidationError, VerificationError
from listing_scheduler.logging import ComponentLogger, LogComponent
from listing_scheduler.scheduling.models import (
    ListingStatus,
    Platform,
    SchedulePhase,
    ScheduleTemplate,
    StatusVerification,
    VerificationStatus,
)
from listing_scheduler.scheduling.post_store import PostEntryStore
from listing_scheduler.scheduling.run_tracker import RunKind, RunTracker
from listing_scheduler.utils import generate_id, to_iso, utc_now

logger = logging.getLogger(__name__)


class StatusVerificationEngine:
    """Records, confirms and applies listing status changes.

    Args:
        db: Database client (:class:`~listing_scheduler.database.SchedulerDB`).
        settings: Scheduler settings. Defaults to :func:`get_settings`.
        store: Post entry store used to cancel pending posts.
        generator: Optional :class:`~listing_scheduler.scheduling.SlotGenerator`;
            when given, a freshly created template is expanded right away
            instead of waiting for the next generation run.
    """

    # Insert attempts when webhooks for one listing race
    INSERT_ATTEMPTS: int = 3

    def __init__(
        self,
        db: Any,
        settings: Optional[Settings] = None,
        store: Optional[PostEntryStore] = None,
        generator: Optional[Any] = None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.store = store or PostEntryStore(db, self.settings.retry)
        self.generator = generator
        self.log = ComponentLogger(LogComponent.VERIFICATION)

    # ================================================================
    # RECORDING
    # ================================================================

    async def record_status_change(
        self,
        listing_id: str,
        organization_id: str,
        old_status: Optional[str],
        new_status: str,
        now: Optional[datetime] = None,
    ) -> Optional[StatusVerification]:
        """Queue a status change for verification.

        Any pending verification of the listing is cancelled first.

        Returns:
            The new verification, or ``None`` when old and new are equal.

        Raises:
            ValidationError: If *new_status* is not a known listing status.
        """
        if old_status == new_status:
            logger.debug(
                "[VERIFY] Listing %s status unchanged (%s), ignoring",
                listing_id,
                new_status,
            )
            return None

        try:
            new = ListingStatus(new_status)
            old = ListingStatus(old_status) if old_status else None
        except ValueError as exc:
            raise ValidationError(f"Unknown listing status: {exc}") from exc

        now = now or utc_now()
        verification = StatusVerification(
            id=generate_id(),
            listing_id=listing_id,
            organization_id=organization_id,
            old_status=old,
            new_status=new,
            detected_at=now,
            verification_scheduled_for=now + timedelta(
                minutes=self.settings.verification_delay_minutes
            ),
        )
        # At most one pending row per listing (partial unique index); a
        # concurrent webhook that wins the insert is superseded in turn.
        for _ in range(self.INSERT_ATTEMPTS):
            superseded = await self.db.cancel_pending_verifications_for_listing(listing_id)
            if superseded:
                logger.info(
                    "[VERIFY] Listing %s: %d pending verification(s) superseded",
                    listing_id,
                    superseded,
                )
            if await self.db.insert_verification(verification.to_row()):
                break
            logger.info(
                "[VERIFY] Listing %s: concurrent status change recorded, retrying",
                listing_id,
            )
        else:
            raise VerificationError(
                f"Could not queue status change for listing {listing_id}: "
                f"a pending verification was recorded concurrently "
                f"{self.INSERT_ATTEMPTS} times"
            )

        await self.log.info(
            f"[VERIFY] Listing {listing_id}: {old_status} -> {new_status} "
            f"queued for {to_iso(verification.verification_scheduled_for)}"
        )
        return verification

    async def cancel_pending_verifications_for_listing(self, listing_id: str) -> int:
        """Cancel a listing's pending verifications.

        Returns:
            Number of verifications cancelled.
        """
        return await self.db.cancel_pending_verifications_for_listing(listing_id)

    # ================================================================
    # PROCESSING
    # ================================================================

    async def process_due_verifications(
        self, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Confirm or cancel every due verification.

        Returns:
            ``{"run_id", "verifications_found", "verifications_processed",
            "success", "message"}``.
        """
        now = now or utc_now()
        tracker = RunTracker(self.db, RunKind.VERIFICATION)
        await tracker.start()

        try:
            rows = await self.db.get_due_verifications(now, self.settings.dispatch_batch_size)
            tracker.increment("found", len(rows))
            for row in rows:
                verification = StatusVerification.from_row(row)
                outcome = await self.verify(verification, now)
                if outcome is None:
                    tracker.increment("skipped")
                else:
                    tracker.increment("processed")
                    tracker.increment(outcome.value)
                if outcome is VerificationStatus.FAILED:
                    tracker.record_error(
                        f"{verification.id}: {verification.automation_error}"
                    )
                await tracker.checkpoint()
        except Exception as exc:
            run = await tracker.fail(exc, http_status=500)
            return {
                "run_id": run.id,
                "verifications_found": tracker.counts.get("found", 0),
                "verifications_processed": tracker.counts.get("processed", 0),
                "success": False,
                "message": f"Verification run failed: {exc}",
            }

        message = (
            f"{tracker.counts.get('processed', 0)} verification(s): "
            f"{tracker.counts.get('confirmed', 0)} confirmed, "
            f"{tracker.counts.get('cancelled', 0)} cancelled, "
            f"{tracker.counts.get('failed', 0)} failed"
        )
        run = await tracker.finish(message=message, http_status=200)
        return {
            "run_id": run.id,
            "verifications_found": tracker.counts.get("found", 0),
            "verifications_processed": tracker.counts.get("processed", 0),
            "success": True,
            "message": message,
        }

    async def verify(
        self, verification: StatusVerification, now: Optional[datetime] = None
    ) -> Optional[VerificationStatus]:
        """Resolve one verification against the live listing.

        The row leaves its current status through a compare-and-swap before
        any transition is applied, so a verification picked up by two
        overlapping sweeps is applied once. A transition that raises after
        the claim moves the row on to ``failed``.

        Returns:
            The verification's resulting status, or ``None`` when another
            run resolved it first.
        """
        now = now or utc_now()
        expected = verification.verification_status
        listing = await self.db.get_listing(verification.listing_id)

        reason = self._mismatch_reason(verification, listing)
        if reason is not None:
            if not await self._finish(
                verification, VerificationStatus.CANCELLED, expected, now, error=reason
            ):
                return None
            logger.info("[VERIFY] Verification %s cancelled: %s", verification.id, reason)
            return VerificationStatus.CANCELLED

        if not await self._finish(verification, VerificationStatus.CONFIRMED, expected, now):
            return None

        try:
            await self.apply_transition(verification, now)
        except Exception as exc:
            await self._finish(
                verification,
                VerificationStatus.FAILED,
                VerificationStatus.CONFIRMED,
                now,
                error=f"{type(exc).__name__}: {exc}",
            )
            await self.log.error(
                f"[VERIFY] Transition for listing {verification.listing_id} "
                f"to {verification.new_status.value} failed",
                error=exc,
            )
            return VerificationStatus.FAILED

        await self.log.info(
            f"[VERIFY] Listing {verification.listing_id} confirmed "
            f"{verification.new_status.value}"
        )
        return VerificationStatus.CONFIRMED

    async def retry_failed_verification(
        self, verification_id: str, now: Optional[datetime] = None
    ) -> VerificationStatus:
        """Re-run a ``failed`` verification.

        Raises:
            VerificationError: If the verification does not exist or is not
                in ``failed``.
        """
        row = await self.db.get_verification(verification_id)
        if not row:
            raise VerificationError(f"Verification {verification_id} not found")
        verification = StatusVerification.from_row(row)
        if verification.verification_status is not VerificationStatus.FAILED:
            raise VerificationError(
                f"Verification {verification_id} is "
                f"{verification.verification_status.value}, not failed"
            )
        status = await self.verify(verification, now)
        if status is None:
            raise VerificationError(
                f"Verification {verification_id} was resolved by another run"
            )
        return status

    # ================================================================
    # PHASE TRANSITIONS
    # ================================================================

    async def apply_transition(
        self, verification: StatusVerification, now: datetime
    ) -> Optional[ScheduleTemplate]:
        """Apply the schedule consequences of a confirmed status.

        Returns:
            The affected template, or ``None`` when there was none.
        """
        status = verification.new_status
        if status.is_postable:
            return await self._ensure_launch_template(verification, now)

        cancelled = await self.store.cancel_pending_for_listing(
            verification.listing_id, reason=f"Listing {status.value}"
        )
        row = await self.db.get_active_template_for_listing(verification.listing_id)
        if not row:
            logger.info(
                "[VERIFY] Listing %s %s: no active template (%d posts cancelled)",
                verification.listing_id,
                status.value,
                cancelled,
            )
            return None

        template = ScheduleTemplate.from_row(row)
        template.banner_type = status.banner_type
        fields: Dict[str, Any] = {"banner_type": template.banner_type.value}  # type: ignore[union-attr]
        if template.current_phase.can_advance_to(SchedulePhase.BANNER_ONLY):
            template.current_phase = SchedulePhase.BANNER_ONLY
            template.phase_started_at = now
            template.show_new_banner = False
            fields.update({
                "current_phase": SchedulePhase.BANNER_ONLY.value,
                "phase_started_at": to_iso(now),
                "show_new_banner": False,
            })
        await self.db.update_template(template.id, fields)
        logger.info(
            "[VERIFY] Template %s -> %s (%s), %d pending posts cancelled",
            template.id,
            template.current_phase.value,
            status.value,
            cancelled,
        )
        await self._generate(template, now)
        return template

    async def _ensure_launch_template(
        self, verification: StatusVerification, now: datetime
    ) -> ScheduleTemplate:
        row = await self.db.get_active_template_for_listing(verification.listing_id)
        if row:
            current = ScheduleTemplate.from_row(row)
            if current.current_phase in (SchedulePhase.LAUNCH, SchedulePhase.ONGOING):
                logger.debug(
                    "[VERIFY] Listing %s already has active template %s",
                    verification.listing_id,
                    current.id,
                )
                return current
            # Pending posts of the replaced template carry its banner.
            cancelled = await self.store.cancel_pending_for_listing(
                verification.listing_id,
                reason=f"Listing {verification.new_status.value} again",
            )
            await self.db.update_template(current.id, {"is_active": False})
            logger.info(
                "[VERIFY] Template %s (%s) replaced by a fresh launch template, "
                "%d pending posts cancelled",
                current.id,
                current.current_phase.value,
                cancelled,
            )

        template = self.build_launch_template(
            verification.listing_id,
            verification.organization_id,
            now,
            show_new_banner=verification.new_status is ListingStatus.NEW,
        )
        await self.db.save_template(template.to_row())
        logger.info(
            "[VERIFY] Created template %s for listing %s",
            template.id,
            verification.listing_id,
        )
        await self._generate(template, now)
        return template

    def build_launch_template(
        self,
        listing_id: str,
        organization_id: str,
        now: datetime,
        show_new_banner: bool = False,
    ) -> ScheduleTemplate:
        """Build a launch-phase template from the configured phase defaults."""
        defaults = self.settings.phases
        return ScheduleTemplate(
            id=generate_id(),
            listing_id=listing_id,
            organization_id=organization_id,
            days_of_week=list(defaults.days_of_week),
            frequency=defaults.launch_frequency,
            current_phase=SchedulePhase.LAUNCH,
            launch_frequency=defaults.launch_frequency,
            ongoing_frequency=defaults.ongoing_frequency,
            launch_duration_weeks=defaults.launch_duration_weeks,
            ongoing_duration_weeks=defaults.ongoing_duration_weeks,
            banner_duration_weeks=defaults.banner_duration_weeks,
            started_at=now,
            phase_started_at=now,
            time_window_start=self.settings.default_window_start,
            time_window_end=self.settings.default_window_end,
            platforms=[Platform(p) for p in self.settings.default_platforms],
            show_new_banner=show_new_banner,
        )

    # ================================================================
    # INTERNAL HELPERS
    # ================================================================

    @staticmethod
    def _mismatch_reason(
        verification: StatusVerification, listing: Optional[Dict[str, Any]]
    ) -> Optional[str]:
        if not listing:
            return "Listing no longer exists"
        if listing.get("archived"):
            return "Listing archived"
        live = listing.get("status")
        if live != verification.new_status.value:
            return f"Status reverted to {live}"
        return None

    async def _finish(
        self,
        verification: StatusVerification,
        status: VerificationStatus,
        expected: VerificationStatus,
        now: datetime,
        error: Optional[str] = None,
    ) -> bool:
        fields: Dict[str, Any] = {
            "verification_status": status.value,
            "verified_at": to_iso(now),
            "automation_triggered": status is VerificationStatus.CONFIRMED,
            "automation_error": error,
        }
        updated = await self.db.update_verification(
            verification.id, fields, expected_status=expected.value
        )
        if updated:
            verification.verification_status = status
            verification.verified_at = now
            verification.automation_triggered = status is VerificationStatus.CONFIRMED
            verification.automation_error = error
        else:
            logger.info(
                "[VERIFY] Verification %s no longer %s, %s skipped",
                verification.id,
                expected.value,
                status.value,
            )
        return updated

    async def _generate(self, template: ScheduleTemplate, now: datetime) -> None:
        if self.generator is None:
            return
        try:
            await self.generator.generate(template, now=now, owner="status_verification")
        except LockHeldError as exc:
            logger.info(
                "[VERIFY] Generation for listing %s deferred: %s",
                template.listing_id,
                exc,
            )


__all__ = ["StatusVerificationEngine"]
