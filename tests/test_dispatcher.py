"""
Tests for listing_scheduler.scheduling.dispatcher.

Covers:
- happy path publishing and audit rows
- transient retry with backoff, retry exhaustion, permanent failure
- partial platform success without republishing
- archived / missing listings
- request and caption building
- run records and stuck-entry recovery
"""

import random
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from listing_scheduler.exceptions import PermanentPublishError, TransientPublishError
from listing_scheduler.scheduling.content_rotation import ContentRotation
from listing_scheduler.scheduling.dispatcher import PostDispatcher
from listing_scheduler.scheduling.models import (
    AspectRatio,
    BannerType,
    Platform,
    PostEntry,
    PostStatus,
)
from listing_scheduler.utils import parse_timestamp, to_iso


NOW = datetime(2025, 6, 16, 13, 45, tzinfo=timezone.utc)


async def seed_entry(fake_db, entry_id="e1", **kwargs):
    defaults = dict(
        id=entry_id,
        listing_id="listing-1",
        organization_id="org-1",
        scheduled_for=NOW - timedelta(minutes=15),
        platforms_to_post=[Platform.FACEBOOK, Platform.INSTAGRAM],
    )
    defaults.update(kwargs)
    entry = PostEntry(**defaults)
    await fake_db.insert_entry(entry.to_row())
    return entry


def make_dispatcher(fake_db, settings, publisher):
    rotation = ContentRotation(fake_db, settings.content_type_weights, rng=random.Random(4))
    return PostDispatcher(fake_db, publisher, settings=settings, rotation=rotation)


@pytest.fixture
def listing(fake_db):
    return fake_db.add_listing("listing-1")


# =========================================================================
# Happy path
# =========================================================================


class TestDispatchSuccess:
    @pytest.mark.asyncio
    async def test_posts_all_platforms(self, fake_db, settings, publisher, listing):
        await seed_entry(fake_db)
        dispatcher = make_dispatcher(fake_db, settings, publisher)

        result = await dispatcher.invoke_process_scheduled_posts(NOW)

        row = fake_db.entries["e1"]
        assert row["status"] == "posted"
        assert row["posted_at"] == to_iso(NOW)
        assert row["content_type"] in settings.content_type_weights
        assert row["platform_results"]["facebook"]["success"] is True
        assert row["platform_results"]["instagram"]["post_url"].startswith("https://")
        assert [r.platform for r in publisher.requests] == [Platform.FACEBOOK, Platform.INSTAGRAM]

        assert len(fake_db.upload_results) == 2
        assert all(r["success"] for r in fake_db.upload_results)
        assert {r["request_id"] for r in fake_db.upload_results} == {"req-1", "req-2"}
        assert fake_db.upload_results[0]["listing_schedule_id"] == "e1"

        assert fake_db.counters["listing-1"]["post_count"] == 1
        assert result["success"] is True
        assert result["http_status"] == 200
        run = fake_db.runs["scheduled_post_processing_runs"][result["run_id"]]
        assert run["status"] == "completed"
        assert run["posts_found"] == 1
        assert run["posts_posted"] == 1

    @pytest.mark.asyncio
    async def test_run_row_tracks_progress(self, fake_db, settings, publisher, listing):
        await seed_entry(fake_db, "e1")
        await seed_entry(fake_db, "e2", scheduled_for=NOW - timedelta(minutes=10))
        seen = []
        publish = publisher.publish

        async def publish_and_snapshot(request):
            (run,) = fake_db.runs["scheduled_post_processing_runs"].values()
            seen.append(dict(run))
            return await publish(request)

        publisher.publish = publish_and_snapshot
        dispatcher = make_dispatcher(fake_db, settings, publisher)
        await dispatcher.invoke_process_scheduled_posts(NOW)

        # Third request is e2's first platform; e1 is already counted.
        assert seen[2]["status"] == "running"
        assert seen[2]["posts_processed"] == 1
        assert seen[2]["posts_posted"] == 1
        assert "posts_processed" not in seen[0]

    @pytest.mark.asyncio
    async def test_nothing_due(self, fake_db, settings, publisher, listing):
        await seed_entry(fake_db, scheduled_for=NOW + timedelta(hours=1))
        dispatcher = make_dispatcher(fake_db, settings, publisher)
        result = await dispatcher.invoke_process_scheduled_posts(NOW)
        assert result["success"] is True
        assert publisher.requests == []
        assert fake_db.entries["e1"]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_entry_claimed_elsewhere_is_skipped(self, fake_db, settings, publisher, listing):
        entry = await seed_entry(fake_db)
        fake_db.entries["e1"]["status"] = "processing"
        dispatcher = make_dispatcher(fake_db, settings, publisher)
        assert await dispatcher.dispatch_entry(entry, NOW) is None
        assert publisher.requests == []


# =========================================================================
# Failures
# =========================================================================


class TestDispatchFailures:
    @pytest.mark.asyncio
    async def test_transient_failure_schedules_retry(self, fake_db, settings, listing, make_publisher):
        publisher = make_publisher({"instagram": [TransientPublishError("503 from upstream")]})
        await seed_entry(fake_db)
        dispatcher = make_dispatcher(fake_db, settings, publisher)

        await dispatcher.invoke_process_scheduled_posts(NOW)

        row = fake_db.entries["e1"]
        assert row["status"] == "pending"
        assert row["retry_count"] == 1
        assert parse_timestamp(row["scheduled_for"]) == NOW + timedelta(seconds=300)
        assert "instagram: 503 from upstream" in row["error_message"]
        assert row["platform_results"]["facebook"]["success"] is True
        assert row["platform_results"]["instagram"]["permanent"] is False
        assert "listing-1" not in fake_db.counters

    @pytest.mark.asyncio
    async def test_retry_only_republishes_failed_platform(self, fake_db, settings, listing, make_publisher):
        publisher = make_publisher({"instagram": [TransientPublishError("timeout")]})
        await seed_entry(fake_db)
        dispatcher = make_dispatcher(fake_db, settings, publisher)

        await dispatcher.invoke_process_scheduled_posts(NOW)
        later = NOW + timedelta(minutes=6)
        await dispatcher.invoke_process_scheduled_posts(later)

        platforms = [r.platform for r in publisher.requests]
        assert platforms == [Platform.FACEBOOK, Platform.INSTAGRAM, Platform.INSTAGRAM]
        row = fake_db.entries["e1"]
        assert row["status"] == "posted"
        assert row["platform_results"]["instagram"]["success"] is True
        assert fake_db.counters["listing-1"]["post_count"] == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted_fails(self, fake_db, settings, listing, make_publisher):
        publisher = make_publisher({"facebook": [TransientPublishError("still down")]})
        await seed_entry(fake_db, platforms_to_post=[Platform.FACEBOOK], retry_count=3)
        dispatcher = make_dispatcher(fake_db, settings, publisher)

        result = await dispatcher.invoke_process_scheduled_posts(NOW)

        row = fake_db.entries["e1"]
        assert row["status"] == "failed"
        assert "gave up after 3 retries" in row["error_message"]
        run = fake_db.runs["scheduled_post_processing_runs"][result["run_id"]]
        assert run["status"] == "completed_with_errors"
        assert run["posts_failed"] == 1

        await dispatcher.invoke_process_scheduled_posts(NOW + timedelta(days=1))
        assert len(publisher.requests) == 1

    @pytest.mark.asyncio
    async def test_permanent_failure_fails_immediately(self, fake_db, settings, listing, make_publisher):
        publisher = make_publisher({
            "instagram": [PermanentPublishError("media rejected", request_id="req-x")],
        })
        await seed_entry(fake_db)
        dispatcher = make_dispatcher(fake_db, settings, publisher)

        await dispatcher.invoke_process_scheduled_posts(NOW)

        row = fake_db.entries["e1"]
        assert row["status"] == "failed"
        assert row["retry_count"] == 0
        assert "instagram: media rejected" in row["error_message"]
        failed = [r for r in fake_db.upload_results if not r["success"]]
        assert failed[0]["request_id"] == "req-x"
        assert failed[0]["error_message"] == "media rejected"
        # facebook went out, so the entry still counts as a post
        assert fake_db.counters["listing-1"]["post_count"] == 1

    @pytest.mark.asyncio
    async def test_no_platforms_fails(self, fake_db, settings, publisher, listing):
        await seed_entry(fake_db, platforms_to_post=[])
        dispatcher = make_dispatcher(fake_db, settings, publisher)
        await dispatcher.invoke_process_scheduled_posts(NOW)
        assert fake_db.entries["e1"]["status"] == "failed"
        assert fake_db.entries["e1"]["error_message"] == "No platforms to publish to"

    @pytest.mark.asyncio
    async def test_unexpected_error_is_isolated(self, fake_db, settings, listing, make_publisher):
        publisher = make_publisher({"facebook": [KeyError("bad payload")]})
        await seed_entry(fake_db, "e1", platforms_to_post=[Platform.FACEBOOK])
        await seed_entry(
            fake_db, "e2",
            platforms_to_post=[Platform.FACEBOOK],
            scheduled_for=NOW - timedelta(minutes=5),
        )
        dispatcher = make_dispatcher(fake_db, settings, publisher)

        result = await dispatcher.invoke_process_scheduled_posts(NOW)

        assert result["success"] is True
        assert fake_db.entries["e1"]["status"] == "pending"
        assert fake_db.entries["e1"]["retry_count"] == 1
        assert fake_db.entries["e2"]["status"] == "posted"
        run = fake_db.runs["scheduled_post_processing_runs"][result["run_id"]]
        assert run["status"] == "completed_with_errors"

    @pytest.mark.asyncio
    async def test_infrastructure_failure_returns_500(self, fake_db, settings, publisher):
        dispatcher = make_dispatcher(fake_db, settings, publisher)
        with patch.object(fake_db, "get_due_entries", AsyncMock(side_effect=ConnectionError("down"))):
            result = await dispatcher.invoke_process_scheduled_posts(NOW)
        assert result["success"] is False
        assert result["http_status"] == 500
        run = fake_db.runs["scheduled_post_processing_runs"][result["run_id"]]
        assert run["status"] == "failed"


# =========================================================================
# Listing state
# =========================================================================


class TestListingState:
    @pytest.mark.asyncio
    async def test_archived_listing_cancels_entry(self, fake_db, settings, publisher):
        fake_db.add_listing("listing-1", archived=True)
        await seed_entry(fake_db)
        dispatcher = make_dispatcher(fake_db, settings, publisher)

        result = await dispatcher.invoke_process_scheduled_posts(NOW)

        assert fake_db.entries["e1"]["status"] == "cancelled"
        assert fake_db.entries["e1"]["error_message"] == "Listing archived"
        assert publisher.requests == []
        run = fake_db.runs["scheduled_post_processing_runs"][result["run_id"]]
        assert run["posts_cancelled"] == 1

    @pytest.mark.asyncio
    async def test_missing_listing_cancels_entry(self, fake_db, settings, publisher):
        await seed_entry(fake_db)
        dispatcher = make_dispatcher(fake_db, settings, publisher)
        await dispatcher.invoke_process_scheduled_posts(NOW)
        assert fake_db.entries["e1"]["error_message"] == "Listing no longer exists"


# =========================================================================
# Request building
# =========================================================================


class TestBuildRequest:
    def _entry(self, **kwargs):
        defaults = dict(
            id="e1", listing_id="listing-1", organization_id="org-1", scheduled_for=NOW,
        )
        defaults.update(kwargs)
        return PostEntry(**defaults)

    def test_video_by_platform_aspect(self, fake_db, settings, publisher, listing):
        dispatcher = make_dispatcher(fake_db, settings, publisher)
        request = dispatcher.build_request(self._entry(), listing, Platform.INSTAGRAM)
        assert request.aspect_ratio is AspectRatio.VERTICAL
        assert request.media_url.endswith("-9x16.mp4")
        assert request.is_video is True

    def test_falls_back_to_hero_photo(self, fake_db, settings, publisher):
        listing = fake_db.add_listing("listing-1", video_url_16x9=None)
        dispatcher = make_dispatcher(fake_db, settings, publisher)
        request = dispatcher.build_request(self._entry(), listing, Platform.FACEBOOK)
        assert request.media_url.endswith(".jpg")
        assert request.is_video is False

    def test_profile_passed_through(self, fake_db, settings, publisher):
        listing = fake_db.add_listing("listing-1", upload_post_profile="acme-estates")
        dispatcher = make_dispatcher(fake_db, settings, publisher)
        request = dispatcher.build_request(self._entry(), listing, Platform.FACEBOOK)
        assert request.profile == "acme-estates"

    @pytest.mark.parametrize(
        "kwargs, prefix",
        [
            ({"banner_type": BannerType.SOLD}, "SOLD | "),
            ({"banner_type": BannerType.SALE_AGREED}, "SALE AGREED | "),
            ({"show_new_banner": True}, "NEW | "),
            ({}, "3 Bed"),
        ],
    )
    def test_caption(self, listing, kwargs, prefix):
        caption = PostDispatcher.build_caption(self._entry(**kwargs), listing)
        assert caption.startswith(prefix)
        assert caption.endswith("12 Main Street")


# =========================================================================
# Recovery
# =========================================================================


@pytest.mark.asyncio
async def test_recover_stuck(fake_db, settings, publisher):
    await seed_entry(
        fake_db,
        status=PostStatus.PROCESSING,
        claimed_at=NOW - timedelta(hours=2),
    )
    dispatcher = make_dispatcher(fake_db, settings, publisher)
    summary = await dispatcher.recover_stuck(NOW)
    assert summary["requeued"] == 1
    assert fake_db.entries["e1"]["status"] == "pending"
