"""
Weighted content-type rotation backed by ``listing_post_counters``.

Each listing remembers the content type of its last published post; the
next pick is a weighted random choice among the other types so that two
consecutive posts never repeat a format (unless only one type exists).
"""

from __future__ import annotations

import logging
import random
from typing import Any, Dict, Optional

from listing_scheduler.exceptions import DatabaseError
from listing_scheduler.utils import to_iso, utc_now

logger = logging.getLogger(__name__)


class ContentRotation:
    """Chooses content types and maintains per-listing post counters.

    Args:
        db: Database client (:class:`~listing_scheduler.database.SchedulerDB`).
        weights: Content type -> relative weight.
        rng: Random source (seed it in tests).
    """

    UPDATE_ATTEMPTS: int = 5

    def __init__(
        self,
        db: Any,
        weights: Dict[str, int],
        rng: Optional[random.Random] = None,
    ) -> None:
        if not weights:
            raise ValueError("weights cannot be empty")
        self.db = db
        self.weights = dict(weights)
        self.rng = rng or random.Random()

    def choose(self, last_content_type: Optional[str] = None) -> str:
        """Weighted pick that avoids *last_content_type* when possible."""
        candidates = {
            name: weight for name, weight in self.weights.items()
            if name != last_content_type
        } or self.weights
        names = list(candidates)
        return self.rng.choices(names, weights=[candidates[n] for n in names], k=1)[0]

    async def next_content_type(self, listing_id: str) -> str:
        """Pick the content type for the listing's next post."""
        counter = await self.db.get_post_counter(listing_id)
        last = counter.get("last_content_type") if counter else None
        return self.choose(last)

    async def record_post(
        self,
        listing_id: str,
        organization_id: str,
        content_type: Optional[str],
    ) -> int:
        """Increment the listing's post counter.

        The increment is a compare-and-swap on ``post_count``; a write that
        lost to a concurrent dispatcher re-reads and tries again.

        Returns:
            The new ``post_count``.

        Raises:
            DatabaseError: If every attempt lost a race.
        """
        for _ in range(self.UPDATE_ATTEMPTS):
            counter = await self.db.get_post_counter(listing_id)
            current = int(counter.get("post_count") or 0) if counter else 0
            post_count = current + 1
            fields = {
                "post_count": post_count,
                "last_content_type": content_type
                or (counter.get("last_content_type") if counter else None),
                "updated_at": to_iso(utc_now()),
            }
            if counter is None:
                stored = await self.db.insert_post_counter({
                    "listing_id": listing_id,
                    "organization_id": organization_id,
                    **fields,
                })
            else:
                stored = await self.db.update_post_counter(
                    listing_id, fields, expected_count=current
                )
            if stored:
                logger.debug(
                    "[DISPATCH] Listing %s post count -> %d (last=%s)",
                    listing_id,
                    post_count,
                    content_type,
                )
                return post_count
            logger.debug("[DISPATCH] Listing %s post counter changed concurrently", listing_id)

        raise DatabaseError(
            f"Post counter for listing {listing_id} kept changing "
            f"({self.UPDATE_ATTEMPTS} attempts)"
        )


__all__ = ["ContentRotation"]
