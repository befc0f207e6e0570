"""
Post entry store: the materialized ``listing_posting_schedule`` queue.

``PostEntryStore`` owns every status transition of a ``PostEntry``. Each
transition is a conditional update on the current status, so a row that
another run already moved is left alone and the call returns ``False``.

    pending -> processing -> posted
                          -> failed
                          -> pending   (retry, retry_count + 1)
    pending -> cancelled
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from listing_scheduler.config import RetryPolicyConfig
from listing_scheduler.exceptions import InvalidTransitionError
from listing_scheduler.scheduling.models import PostEntry, PostStatus
from listing_scheduler.utils import to_iso, utc_now

logger = logging.getLogger(__name__)


class PostEntryStore:
    """Conditional-update access to post entries.

    Args:
        db: Database client (:class:`~listing_scheduler.database.SchedulerDB`).
        retry_policy: Backoff and retry limits.
    """

    def __init__(self, db: Any, retry_policy: Optional[RetryPolicyConfig] = None) -> None:
        self.db = db
        self.retry_policy = retry_policy or RetryPolicyConfig()

    # ================================================================
    # READS
    # ================================================================

    async def get_entries_for_listing(
        self, listing_id: str, include_cancelled: bool = False
    ) -> List[PostEntry]:
        """Get a listing's entries ordered by ``scheduled_for``."""
        rows = await self.db.get_entries_for_listing(
            listing_id, include_cancelled=include_cancelled
        )
        return [PostEntry.from_row(row) for row in rows]

    async def get_due(self, now: datetime, limit: int) -> List[PostEntry]:
        """Get due ``pending`` entries, oldest first."""
        rows = await self.db.get_due_entries(now, limit)
        entries = [PostEntry.from_row(row) for row in rows]
        entries.sort(key=lambda e: e.scheduled_for)
        return entries

    # ================================================================
    # INSERTS
    # ================================================================

    async def insert_slots(self, entries: Iterable[PostEntry]) -> Tuple[List[PostEntry], int]:
        """Insert new entries, skipping slots that already exist.

        Returns:
            ``(inserted_entries, skipped_count)``.
        """
        inserted: List[PostEntry] = []
        skipped = 0
        for entry in entries:
            if await self.db.insert_entry(entry.to_row()):
                inserted.append(entry)
            else:
                skipped += 1
                logger.debug(
                    "[SLOTS] Slot %s#%d for listing %s already exists",
                    entry.slot_date,
                    entry.slot_index,
                    entry.listing_id,
                )
        return inserted, skipped

    # ================================================================
    # TRANSITIONS
    # ================================================================

    async def claim(self, entry: PostEntry, now: Optional[datetime] = None) -> bool:
        """Compare-and-swap ``pending -> processing``.

        Returns:
            ``True`` if this caller now owns the entry.
        """
        now = now or utc_now()
        claimed = await self.db.claim_entry(entry.id, now)
        if claimed:
            entry.status = PostStatus.PROCESSING
            entry.claimed_at = now
        return claimed

    async def save_progress(self, entry: PostEntry) -> bool:
        """Persist ``platform_results`` and ``content_type`` mid-dispatch."""
        return await self.db.update_entry(
            entry.id,
            {
                "platform_results": entry.platform_results,
                "content_type": entry.content_type,
            },
            expected_status=PostStatus.PROCESSING.value,
        )

    async def mark_posted(self, entry: PostEntry, now: Optional[datetime] = None) -> bool:
        """Move a processing entry to ``posted``."""
        now = now or utc_now()
        return await self._transition(
            entry,
            PostStatus.POSTED,
            {
                "posted_at": to_iso(now),
                "error_message": None,
                "platform_results": entry.platform_results,
                "content_type": entry.content_type,
            },
            posted_at=now,
            error_message=None,
        )

    async def mark_failed(self, entry: PostEntry, error: str) -> bool:
        """Move a processing entry to ``failed``. Never reclaimed."""
        return await self._transition(
            entry,
            PostStatus.FAILED,
            {
                "error_message": error,
                "platform_results": entry.platform_results,
                "content_type": entry.content_type,
            },
            error_message=error,
        )

    async def schedule_retry(
        self, entry: PostEntry, error: str, now: Optional[datetime] = None
    ) -> bool:
        """Return a processing entry to ``pending`` with backoff.

        ``retry_count`` is incremented and ``scheduled_for`` becomes
        ``now + base * 2^(retry_count - 1)``, capped.
        """
        now = now or utc_now()
        retry_count = entry.retry_count + 1
        next_at = now + timedelta(seconds=self.retry_policy.backoff_seconds(retry_count))
        updated = await self._transition(
            entry,
            PostStatus.PENDING,
            {
                "retry_count": retry_count,
                "scheduled_for": to_iso(next_at),
                "claimed_at": None,
                "error_message": error,
                "platform_results": entry.platform_results,
                "content_type": entry.content_type,
            },
            retry_count=retry_count,
            scheduled_for=next_at,
            claimed_at=None,
            error_message=error,
        )
        if updated:
            logger.info(
                "[DISPATCH] Entry %s retry %d/%d at %s: %s",
                entry.id,
                retry_count,
                self.retry_policy.max_retries,
                next_at.isoformat(),
                error,
            )
        return updated

    async def fail_attempt(
        self, entry: PostEntry, error: str, now: Optional[datetime] = None
    ) -> PostStatus:
        """Count a failed attempt: retry while retries remain, else fail.

        Returns:
            The status the entry ended in.
        """
        if entry.retry_count >= self.retry_policy.max_retries:
            await self.mark_failed(
                entry, f"{error} (gave up after {entry.retry_count} retries)"
            )
            return PostStatus.FAILED
        await self.schedule_retry(entry, error, now)
        return PostStatus.PENDING

    async def cancel_pending_for_listing(
        self, listing_id: str, reason: Optional[str] = None
    ) -> int:
        """Cancel every ``pending`` entry of a listing.

        Posted, failed and in-flight entries are untouched.
        """
        cancelled = await self.db.cancel_pending_entries_for_listing(listing_id, reason)
        if cancelled:
            logger.info(
                "[SLOTS] Cancelled %d pending entries for listing %s",
                cancelled,
                listing_id,
            )
        return cancelled

    async def cancel_entry(self, entry: PostEntry, reason: str) -> bool:
        """Cancel a single ``pending`` entry."""
        return await self._transition(
            entry, PostStatus.CANCELLED, {"error_message": reason}, error_message=reason
        )

    # ================================================================
    # RECOVERY
    # ================================================================

    async def recover_stuck(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Handle entries stuck in ``processing`` past the timeout.

        A stuck entry counts as one failed attempt: it goes back to
        ``pending`` while retries remain, otherwise to ``failed``.

        Returns:
            ``{"found": n, "requeued": n, "failed": n}``.
        """
        now = now or utc_now()
        timeout = self.retry_policy.processing_timeout_minutes
        cutoff = now - timedelta(minutes=timeout)

        rows = await self.db.get_stuck_entries(cutoff)
        summary = {"found": len(rows), "requeued": 0, "failed": 0}

        for row in rows:
            entry = PostEntry.from_row(row)
            status = await self.fail_attempt(
                entry, f"Processing stuck for >{timeout} minutes", now
            )
            if status is PostStatus.FAILED:
                summary["failed"] += 1
            else:
                summary["requeued"] += 1
            logger.warning(
                "[DISPATCH] Recovered stuck entry %s -> %s",
                entry.id,
                status.value,
            )

        if rows:
            logger.info(
                "[DISPATCH] Recovery complete: %d stuck entries (%d requeued, %d failed)",
                summary["found"],
                summary["requeued"],
                summary["failed"],
            )
        return summary

    # ================================================================
    # INTERNAL HELPERS
    # ================================================================

    async def _transition(
        self,
        entry: PostEntry,
        target: PostStatus,
        fields: Dict[str, Any],
        **local_updates: Any,
    ) -> bool:
        """Conditionally move *entry* to *target*, mirroring the update locally."""
        if not entry.status.can_transition_to(target):
            raise InvalidTransitionError(entry.status.value, target.value)

        updated = await self.db.update_entry(
            entry.id,
            {"status": target.value, **fields},
            expected_status=entry.status.value,
        )
        if not updated:
            logger.warning(
                "[DISPATCH] Entry %s no longer %s; %s skipped",
                entry.id,
                entry.status.value,
                target.value,
            )
            return False

        entry.status = target
        for name, value in local_updates.items():
            setattr(entry, name, value)
        return True


__all__ = ["PostEntryStore"]
