"""
Advisory locks persisted in Supabase tables.

``NamedLock`` is one primitive used for two tables:

- ``recurring_scheduling_locks``: one slot-generation run per listing
  (capacity 1, unique on ``listing_id``).
- ``gemini_vision_slots``: at most N concurrent calls to the rate-limited
  vision API (capacity N, unique on ``slot_index``).

Uniqueness is enforced by the table, so two processes racing for the same
key cannot both insert. A row older than the TTL belongs to a crashed
holder and is force-released by the next acquirer, which then retries its
insert once.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from listing_scheduler.config import Settings, get_settings
from listing_scheduler.exceptions import LockHeldError
from listing_scheduler.scheduling.models import LockHandle
from listing_scheduler.utils import generate_id, parse_timestamp, to_iso, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockTable:
    """Column layout of a lock table.

    Attributes:
        name: Table name.
        id_column: Primary key column holding the lock/execution ID.
        key_column: Column carrying the unique constraint.
        resource_column: Column recording the requesting resource when
            the key is a pool slot index rather than the resource itself.
    """

    name: str
    id_column: str
    key_column: str
    resource_column: Optional[str] = None


SCHEDULING_LOCKS = LockTable(
    name="recurring_scheduling_locks",
    id_column="execution_id",
    key_column="listing_id",
)

VISION_SLOTS = LockTable(
    name="gemini_vision_slots",
    id_column="lock_id",
    key_column="slot_index",
    resource_column="session_id",
)


class NamedLock:
    """Table-backed advisory lock with a fixed capacity.

    Args:
        db: Database client (:class:`~listing_scheduler.database.SchedulerDB`).
        table: Lock table layout.
        ttl_minutes: Age after which a held row is considered stale.
        capacity: Number of concurrent holders. With capacity 1 the
            resource ID itself is the unique key; otherwise slot indices
            ``0..capacity-1`` are.
    """

    def __init__(
        self,
        db: Any,
        table: LockTable,
        ttl_minutes: int,
        capacity: int = 1,
    ) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        if capacity > 1 and table.resource_column is None:
            raise ValueError(f"{table.name} has no resource column for a pooled lock")
        self.db = db
        self.table = table
        self.ttl = timedelta(minutes=ttl_minutes)
        self.capacity = capacity

    # ================================================================
    # ACQUIRE / RELEASE
    # ================================================================

    async def acquire(
        self,
        resource_id: str,
        owner: str,
        template_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> LockHandle:
        """Acquire the lock for *resource_id*.

        Args:
            resource_id: Listing ID (scheduling) or session ID (vision).
            owner: Human-readable holder name, stored in ``locked_by``.
            template_id: Template being generated, when relevant.
            now: Override for the current time.

        Returns:
            Handle to pass to :meth:`release`.

        Raises:
            LockHeldError: If every key is held by a live holder.
        """
        now = now or utc_now()
        last_holder: Optional[Dict[str, Any]] = None

        for key in self._candidate_keys(resource_id):
            lock_id = generate_id()
            row: Dict[str, Any] = {
                self.table.id_column: lock_id,
                self.table.key_column: key,
                "locked_at": to_iso(now),
                "locked_by": owner,
            }
            if self.table.resource_column:
                row[self.table.resource_column] = resource_id
            if template_id is not None:
                row["template_id"] = template_id

            inserted, holder = await self._try_insert(row, key, now)
            if inserted:
                logger.debug(
                    "[LOCK] %s acquired %s key=%s by %s",
                    self.table.name,
                    lock_id,
                    key,
                    owner,
                )
                return LockHandle(
                    lock_id=lock_id,
                    resource_id=resource_id,
                    owner=owner,
                    locked_at=now,
                    slot_index=key if isinstance(key, int) else 0,
                    template_id=template_id,
                )
            last_holder = holder or last_holder

        raise LockHeldError(
            resource_id,
            holder=(last_holder or {}).get("locked_by"),
            locked_at=parse_timestamp((last_holder or {}).get("locked_at")),
        )

    async def release(self, handle: LockHandle) -> bool:
        """Release a held lock.

        Returns:
            ``True`` if the row existed and was deleted.
        """
        released = await self.db.delete_lock(
            self.table.name, self.table.id_column, handle.lock_id
        )
        if not released:
            logger.warning(
                "[LOCK] %s lock %s was already gone on release",
                self.table.name,
                handle.lock_id,
            )
        return released

    async def release_all_for(self, resource_id: str) -> int:
        """Delete every row held for *resource_id*, whatever its owner."""
        column = self.table.resource_column or self.table.key_column
        return await self.db.delete_locks_by(self.table.name, column, resource_id)

    @asynccontextmanager
    async def held(
        self,
        resource_id: str,
        owner: str,
        template_id: Optional[str] = None,
    ) -> AsyncIterator[LockHandle]:
        """Hold the lock for the duration of the block.

        Released on success and on failure.

        Usage::

            async with lock.held(listing_id, owner="cron") as handle:
                ...
        """
        handle = await self.acquire(resource_id, owner, template_id)
        try:
            yield handle
        finally:
            await self.release(handle)

    # ================================================================
    # STALENESS
    # ================================================================

    def is_stale(self, row: Dict[str, Any], now: Optional[datetime] = None) -> bool:
        """Check whether a lock row is older than the TTL.

        Rows without a readable ``locked_at`` are treated as stale.
        """
        locked_at = parse_timestamp(row.get("locked_at"))
        if locked_at is None:
            return True
        return (now or utc_now()) - locked_at >= self.ttl

    # ================================================================
    # INTERNAL HELPERS
    # ================================================================

    def _candidate_keys(self, resource_id: str) -> List[Any]:
        if self.table.resource_column is None:
            return [resource_id]
        return list(range(self.capacity))

    async def _try_insert(
        self, row: Dict[str, Any], key: Any, now: datetime
    ) -> Tuple[bool, Optional[Dict[str, Any]]]:
        """Insert *row*, force-releasing a stale holder of *key* once."""
        if await self.db.insert_lock(self.table.name, row):
            return True, None

        existing = await self.db.get_lock(self.table.name, self.table.key_column, key)
        if existing is None:
            # Holder released between our insert and read
            return await self.db.insert_lock(self.table.name, row), None

        if not self.is_stale(existing, now):
            return False, existing

        logger.warning(
            "[LOCK] Force-releasing stale %s lock %s (key=%s, by=%s, at=%s)",
            self.table.name,
            existing.get(self.table.id_column),
            key,
            existing.get("locked_by"),
            existing.get("locked_at"),
        )
        await self.db.delete_lock(
            self.table.name,
            self.table.id_column,
            existing[self.table.id_column],
            stale_before=now - self.ttl,
        )
        if await self.db.insert_lock(self.table.name, row):
            return True, None
        return False, await self.db.get_lock(self.table.name, self.table.key_column, key)


# =============================================================================
# PRESETS
# =============================================================================


class SchedulingLockManager(NamedLock):
    """Per-listing mutual exclusion for slot generation."""

    def __init__(self, db: Any, settings: Optional[Settings] = None) -> None:
        settings = settings or get_settings()
        super().__init__(db, SCHEDULING_LOCKS, settings.lock_ttl_minutes, capacity=1)


class VisionSlotLimiter(NamedLock):
    """Bounded pool of concurrent vision API calls."""

    def __init__(self, db: Any, settings: Optional[Settings] = None) -> None:
        settings = settings or get_settings()
        super().__init__(
            db,
            VISION_SLOTS,
            settings.lock_ttl_minutes,
            capacity=settings.vision_slot_capacity,
        )

    async def acquire_gemini_vision_slot(self, session_id: str, owner: str) -> str:
        """Take a vision slot.

        Returns:
            Lock ID to pass to :meth:`release_gemini_vision_slot`.

        Raises:
            LockHeldError: If all slots are held.
        """
        handle = await self.acquire(session_id, owner)
        return handle.lock_id

    async def release_gemini_vision_slot(self, lock_id: str) -> bool:
        """Give a vision slot back."""
        return await self.db.delete_lock(self.table.name, self.table.id_column, lock_id)


__all__ = [
    "LockTable",
    "SCHEDULING_LOCKS",
    "VISION_SLOTS",
    "NamedLock",
    "SchedulingLockManager",
    "VisionSlotLimiter",
]
