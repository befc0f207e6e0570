"""Tests for listing_scheduler.scheduling.content_rotation."""

import asyncio
import random
from typing import Optional, get_type_hints
from unittest.mock import AsyncMock, patch

import pytest

from listing_scheduler.exceptions import DatabaseError
from listing_scheduler.scheduling.content_rotation import ContentRotation


WEIGHTS = {"video_tour": 3, "photo_carousel": 2, "hero_image": 1}


class TestChoose:
    def test_never_repeats_last(self):
        rotation = ContentRotation(None, WEIGHTS, rng=random.Random(3))
        for _ in range(200):
            assert rotation.choose("video_tour") != "video_tour"

    def test_single_type_repeats(self):
        rotation = ContentRotation(None, {"video_tour": 1}, rng=random.Random(3))
        assert rotation.choose("video_tour") == "video_tour"

    def test_weights_bias_choice(self):
        rotation = ContentRotation(None, {"a": 99, "b": 1}, rng=random.Random(0))
        picks = [rotation.choose() for _ in range(500)]
        assert picks.count("a") > picks.count("b")

    def test_empty_weights_rejected(self):
        with pytest.raises(ValueError):
            ContentRotation(None, {})


class TestCounters:
    @pytest.mark.asyncio
    async def test_record_post_increments(self, fake_db):
        rotation = ContentRotation(fake_db, WEIGHTS, rng=random.Random(1))
        assert await rotation.record_post("listing-1", "org-1", "video_tour") == 1
        assert await rotation.record_post("listing-1", "org-1", "hero_image") == 2

        counter = fake_db.counters["listing-1"]
        assert counter["post_count"] == 2
        assert counter["last_content_type"] == "hero_image"
        assert counter["organization_id"] == "org-1"

    @pytest.mark.asyncio
    async def test_missing_content_type_keeps_previous(self, fake_db):
        rotation = ContentRotation(fake_db, WEIGHTS)
        await rotation.record_post("listing-1", "org-1", "video_tour")
        await rotation.record_post("listing-1", "org-1", None)
        assert fake_db.counters["listing-1"]["last_content_type"] == "video_tour"

    @pytest.mark.asyncio
    async def test_next_content_type_avoids_last_posted(self, fake_db):
        rotation = ContentRotation(fake_db, WEIGHTS, rng=random.Random(5))
        await rotation.record_post("listing-1", "org-1", "photo_carousel")
        for _ in range(50):
            assert await rotation.next_content_type("listing-1") != "photo_carousel"

    @pytest.mark.asyncio
    async def test_concurrent_first_posts_both_count(self, yielding_db):
        rotation = ContentRotation(yielding_db, WEIGHTS)
        counts = await asyncio.gather(
            rotation.record_post("listing-1", "org-1", "video_tour"),
            rotation.record_post("listing-1", "org-1", "hero_image"),
        )
        assert sorted(counts) == [1, 2]
        assert yielding_db.counters["listing-1"]["post_count"] == 2

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self, yielding_db):
        rotation = ContentRotation(yielding_db, WEIGHTS)
        await rotation.record_post("listing-1", "org-1", "video_tour")
        counts = await asyncio.gather(
            *(rotation.record_post("listing-1", "org-1", "hero_image") for _ in range(3))
        )
        assert sorted(counts) == [2, 3, 4]
        assert yielding_db.counters["listing-1"]["post_count"] == 4

    @pytest.mark.asyncio
    async def test_gives_up_after_repeated_conflicts(self, fake_db):
        rotation = ContentRotation(fake_db, WEIGHTS)
        await rotation.record_post("listing-1", "org-1", "video_tour")
        with patch.object(fake_db, "update_post_counter", AsyncMock(return_value=False)):
            with pytest.raises(DatabaseError, match="kept changing"):
                await rotation.record_post("listing-1", "org-1", "hero_image")
        assert fake_db.counters["listing-1"]["post_count"] == 1


def test_signatures_resolve():
    hints = get_type_hints(ContentRotation.record_post)
    assert hints["return"] is int
    assert hints["content_type"] == Optional[str]
