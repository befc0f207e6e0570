"""
Post dispatcher: publishes due entries through the upload-post service.

One dispatch run:
    1. Load due ``pending`` entries, oldest ``scheduled_for`` first.
    2. Claim each with a compare-and-swap ``pending -> processing``; an
       entry claimed by an overlapping run is skipped.
    3. Publish once per platform that has no recorded success yet, writing
       an ``upload_post_results`` row per call.
    4. Apply the aggregate policy:
         - every platform succeeded       -> ``posted``
         - any permanent platform error   -> ``failed``
         - transient errors only          -> retry with backoff, or
                                             ``failed`` once retries run out
    5. Bump the listing's post counter when the entry ends terminal with at
       least one published platform.

Per-entry failures never abort the run; they are recorded on the entry
and in the run's ``errors``.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from listing_scheduler.config import Settings, get_settings
from listing_scheduler.exceptions import PermanentPublishError, TransientPublishError
from listing_scheduler.logging import ComponentLogger, LogComponent, get_logger, is_initialized
from listing_scheduler.scheduling.content_rotation import ContentRotation
from listing_scheduler.scheduling.models import (
    AspectRatio,
    BannerType,
    Platform,
    PostEntry,
    PostStatus,
    PublishRequest,
)
from listing_scheduler.scheduling.post_store import PostEntryStore
from listing_scheduler.scheduling.run_tracker import RunKind, RunTracker
from listing_scheduler.utils import to_iso, utc_now

logger = logging.getLogger(__name__)

BANNER_TEXT = {
    BannerType.SALE_AGREED: "SALE AGREED",
    BannerType.SOLD: "SOLD",
}


class PostDispatcher:
    """Claims and publishes due post entries.

    Args:
        db: Database client (:class:`~listing_scheduler.database.SchedulerDB`).
        publisher: Object with ``async publish(PublishRequest) -> PublishResult``
            (normally :class:`~listing_scheduler.tools.UploadPostClient`).
        settings: Scheduler settings. Defaults to :func:`get_settings`.
        rotation: Content-type rotation. Built from settings when omitted.
    """

    def __init__(
        self,
        db: Any,
        publisher: Any,
        settings: Optional[Settings] = None,
        rotation: Optional[ContentRotation] = None,
    ) -> None:
        self.db = db
        self.publisher = publisher
        self.settings = settings or get_settings()
        self.store = PostEntryStore(db, self.settings.retry)
        self.rotation = rotation or ContentRotation(db, self.settings.content_type_weights)
        self.log = ComponentLogger(LogComponent.DISPATCHER)

    # ================================================================
    # ENTRY POINT
    # ================================================================

    async def invoke_process_scheduled_posts(
        self, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Run one dispatch batch.

        Returns:
            ``{"run_id", "success", "http_status", "message"}``. ``success``
            is ``False`` (HTTP 500) only when the run itself failed.
        """
        now = now or utc_now()
        tracker = RunTracker(self.db, RunKind.POST_PROCESSING)
        await tracker.start()

        try:
            await self.dispatch_due(now, tracker)
        except Exception as exc:
            run = await tracker.fail(exc, http_status=500)
            return {
                "run_id": run.id,
                "success": False,
                "http_status": 500,
                "message": f"Dispatch run failed: {exc}",
            }

        message = (
            f"Processed {tracker.counts.get('processed', 0)} of "
            f"{tracker.counts.get('found', 0)} due posts "
            f"({tracker.counts.get('failed', 0)} failed, "
            f"{tracker.counts.get('cancelled', 0)} cancelled)"
        )
        run = await tracker.finish(message=message, http_status=200)
        return {
            "run_id": run.id,
            "success": True,
            "http_status": 200,
            "message": message,
        }

    async def dispatch_due(self, now: datetime, tracker: RunTracker) -> None:
        """Dispatch every due entry, recording counts on *tracker*."""
        entries = await self.store.get_due(now, self.settings.dispatch_batch_size)
        tracker.increment("found", len(entries))
        if not entries:
            logger.debug("[DISPATCH] No due entries")
            return

        await self.log.info(f"[DISPATCH] {len(entries)} due entries")
        listings: Dict[str, Optional[Dict[str, Any]]] = {}

        for entry in entries:
            await self._dispatch_counted(entry, now, listings, tracker)
            await tracker.checkpoint()

    async def _dispatch_counted(
        self,
        entry: PostEntry,
        now: datetime,
        listings: Dict[str, Optional[Dict[str, Any]]],
        tracker: RunTracker,
    ) -> None:
        try:
            status = await self.dispatch_entry(entry, now, listings)
        except Exception as exc:
            tracker.record_error(f"{entry.id}: {type(exc).__name__}: {exc}")
            await self.log.error(
                f"[DISPATCH] Entry {entry.id} raised during dispatch", error=exc
            )
            if entry.status is not PostStatus.PROCESSING:
                return
            status = await self.store.fail_attempt(entry, str(exc), now)

        if status is None:
            return
        if status is PostStatus.CANCELLED:
            tracker.increment("cancelled")
            return
        tracker.increment("processed")
        if status is PostStatus.FAILED:
            tracker.increment("failed")
            tracker.record_error(f"{entry.id}: {entry.error_message}")
        elif status is PostStatus.PENDING:
            tracker.increment("retried")
        else:
            tracker.increment("posted")

    # ================================================================
    # SINGLE ENTRY
    # ================================================================

    async def dispatch_entry(
        self,
        entry: PostEntry,
        now: datetime,
        listings: Optional[Dict[str, Optional[Dict[str, Any]]]] = None,
    ) -> Optional[PostStatus]:
        """Claim and publish one entry.

        Args:
            entry: A due ``pending`` entry.
            now: Current time.
            listings: Per-run listing cache.

        Returns:
            The entry's resulting status, or ``None`` when another run
            claimed it first.
        """
        listings = listings if listings is not None else {}
        if entry.listing_id not in listings:
            listings[entry.listing_id] = await self.db.get_listing(entry.listing_id)
        listing = listings[entry.listing_id]

        if not listing or listing.get("archived"):
            reason = "Listing archived" if listing else "Listing no longer exists"
            if await self.store.cancel_entry(entry, reason):
                logger.info("[DISPATCH] Entry %s cancelled: %s", entry.id, reason)
                return PostStatus.CANCELLED
            return None

        if not await self.store.claim(entry, now):
            logger.info("[DISPATCH] Entry %s already claimed, skipping", entry.id)
            return None

        if is_initialized():
            get_logger().set_context(listing_id=entry.listing_id)

        if not entry.content_type:
            entry.content_type = await self.rotation.next_content_type(entry.listing_id)

        if not entry.platforms_to_post:
            await self.store.mark_failed(entry, "No platforms to publish to")
            return PostStatus.FAILED
        platforms = entry.pending_platforms

        transient: List[str] = []
        permanent: List[str] = []
        for platform in platforms:
            error, is_permanent = await self._publish_platform(entry, listing, platform)
            if error is None:
                continue
            if is_permanent:
                permanent.append(f"{platform.value}: {error}")
            else:
                transient.append(f"{platform.value}: {error}")
        await self.store.save_progress(entry)

        if permanent:
            status = PostStatus.FAILED
            await self.store.mark_failed(entry, "; ".join(permanent + transient))
        elif transient:
            status = await self.store.fail_attempt(entry, "; ".join(transient), now)
        else:
            status = PostStatus.POSTED
            await self.store.mark_posted(entry, now)

        if status.is_terminal and self._any_success(entry):
            await self.rotation.record_post(
                entry.listing_id, entry.organization_id, entry.content_type
            )

        logger.info(
            "[DISPATCH] Entry %s -> %s (%d platforms, %d permanent, %d transient)",
            entry.id,
            status.value,
            len(platforms),
            len(permanent),
            len(transient),
        )
        return status

    async def recover_stuck(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Treat entries stuck in ``processing`` as failed attempts."""
        return await self.store.recover_stuck(now)

    # ================================================================
    # PUBLISHING
    # ================================================================

    async def _publish_platform(
        self,
        entry: PostEntry,
        listing: Dict[str, Any],
        platform: Platform,
    ) -> Tuple[Optional[str], bool]:
        """Publish to one platform and record the outcome.

        Returns:
            ``(error_message, is_permanent)``; ``error_message`` is ``None``
            on success.
        """
        request = self.build_request(entry, listing, platform)
        outcome: Dict[str, Any] = {"success": False, "attempted_at": to_iso(utc_now())}
        row: Dict[str, Any] = {
            "platform": platform.value,
            "listing_id": entry.listing_id,
            "listing_schedule_id": entry.id,
            "organization_id": entry.organization_id,
            "success": False,
        }
        error: Optional[str] = None
        is_permanent = False

        try:
            result = await self.publisher.publish(request)
        except PermanentPublishError as exc:
            error, is_permanent = str(exc), True
            row["request_id"] = exc.request_id
        except TransientPublishError as exc:
            error = str(exc)
            row["request_id"] = exc.request_id
        else:
            outcome.update({
                "success": True,
                "platform_post_id": result.platform_post_id,
                "post_url": result.post_url,
            })
            row.update({
                "success": True,
                "request_id": result.request_id,
                "platform_post_id": result.platform_post_id,
                "post_url": result.post_url,
            })

        if error is not None:
            outcome.update({"error": error, "permanent": is_permanent})
            row["error_message"] = error
            logger.warning(
                "[DISPATCH] Entry %s %s failed (%s): %s",
                entry.id,
                platform.value,
                "permanent" if is_permanent else "transient",
                error,
            )

        entry.platform_results[platform.value] = outcome
        await self.db.save_upload_post_result(row)
        return error, is_permanent

    def build_request(
        self,
        entry: PostEntry,
        listing: Dict[str, Any],
        platform: Platform,
    ) -> PublishRequest:
        """Build the upload request for one platform.

        Video renders are picked by the platform's aspect ratio; listings
        without a matching render fall back to the hero photo.
        """
        aspect = AspectRatio(
            self.settings.platform_aspect_ratios.get(platform.value, AspectRatio.LANDSCAPE.value)
        )
        media_url = listing.get(f"video_url_{aspect.value}")
        is_video = bool(media_url)
        if not media_url:
            media_url = listing.get("hero_photo_url") or ""

        return PublishRequest(
            entry_id=entry.id,
            listing_id=entry.listing_id,
            organization_id=entry.organization_id,
            platform=platform,
            media_url=media_url,
            caption=self.build_caption(entry, listing),
            aspect_ratio=aspect,
            is_video=is_video,
            profile=listing.get("upload_post_profile"),
        )

    @staticmethod
    def build_caption(entry: PostEntry, listing: Dict[str, Any]) -> str:
        """Caption: banner marker, listing title and address."""
        parts: List[str] = []
        if entry.banner_type is not None:
            parts.append(BANNER_TEXT[entry.banner_type])
        elif entry.show_new_banner:
            parts.append("NEW")
        title = listing.get("title")
        if title:
            parts.append(str(title))
        address = listing.get("address")
        if address:
            parts.append(str(address))
        return " | ".join(parts)

    @staticmethod
    def _any_success(entry: PostEntry) -> bool:
        return any(r.get("success") for r in entry.platform_results.values())


__all__ = ["BANNER_TEXT", "PostDispatcher"]
