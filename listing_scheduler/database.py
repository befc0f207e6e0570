"""
Unified async database client for all scheduler operations.

ALL database operations go through the SchedulerDB class defined here.
No direct Supabase calls should appear anywhere else in the codebase.

Rows cross this boundary as plain dicts; the scheduling layer converts
them with the ``from_row()`` / ``to_row()`` helpers in
``listing_scheduler.scheduling.models``.

Usage::

    from listing_scheduler.database import SchedulerDB, get_db

    # In async context:
    db = await get_db()
    rows = await db.get_due_entries(utc_now(), limit=50)
"""

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Set, Union

from postgrest.exceptions import APIError
from supabase import AsyncClient, create_async_client

from listing_scheduler.exceptions import DatabaseError, ValidationError
from listing_scheduler.utils import to_iso

logger = logging.getLogger(__name__)

# Postgres SQLSTATE for unique_violation
UNIQUE_VIOLATION = "23505"

TEMPLATES_TABLE = "recurring_schedule_templates"
ENTRIES_TABLE = "listing_posting_schedule"
VERIFICATIONS_TABLE = "listing_status_verifications"
COUNTERS_TABLE = "listing_post_counters"


# =============================================================================
# VALIDATION HELPERS
# =============================================================================


def validate_not_empty(value: Any, name: str) -> None:
    """Validate that *value* is not ``None`` or an empty string.

    Args:
        value: The value to check.
        name: Human-readable field name used in error messages.

    Raises:
        ValidationError: If *value* is ``None`` or a blank string.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if isinstance(value, str) and not value.strip():
        raise ValidationError(f"{name} cannot be empty string")


def validate_positive(value: Union[int, float], name: str) -> None:
    """Validate that *value* is strictly positive (> 0).

    Args:
        value: The numeric value to check.
        name: Human-readable field name used in error messages.

    Raises:
        ValidationError: If *value* is ``None`` or not positive.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if value <= 0:
        raise ValidationError(f"{name} must be positive, got {value}")


def validate_fields(row: Dict[str, Any], required: Set[str], name: str) -> None:
    """Validate that *row* is non-empty and carries every *required* key.

    Raises:
        ValidationError: On an empty row or missing keys.
    """
    if not row:
        raise ValidationError(f"{name} cannot be None or empty")
    missing = required - set(row.keys())
    if missing:
        raise ValidationError(f"{name} missing required fields: {missing}")


def is_unique_violation(exc: APIError) -> bool:
    """Check whether a PostgREST error is a Postgres unique violation."""
    return str(getattr(exc, "code", "")) == UNIQUE_VIOLATION


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class SupabaseConfig:
    """Supabase configuration loaded from environment variables.

    Attributes:
        url: The Supabase project URL (``SUPABASE_URL``).
        key: The service-role key for full server-side access
            (``SUPABASE_SERVICE_KEY``).
    """

    url: str
    key: str  # service_role key for full server-side access

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        """Create a config instance from environment variables.

        Reads ``SUPABASE_URL`` and ``SUPABASE_SERVICE_KEY``.

        Raises:
            ValueError: If either variable is missing or empty.
        """
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_KEY")

        if not url or not key:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set"
            )

        return cls(url=url, key=key)


# =============================================================================
# SCHEDULER DATABASE CLIENT
# =============================================================================


class SchedulerDB:
    """Unified **async** database client for all scheduler operations.

    ALL database operations go through this class.
    No direct Supabase calls elsewhere in the codebase.

    Status transitions are conditional updates (``.eq("status", ...)``);
    an update that matched no row returns ``False`` instead of raising,
    so overlapping batch runs never double-process a row.

    **Important:** Use the :meth:`create` factory method instead of
    ``__init__`` directly -- the underlying async client requires an
    ``await`` during initialisation.
    """

    def __init__(self, client: AsyncClient) -> None:
        """Private constructor.  Use :meth:`create` factory method."""
        self.client = client

    @classmethod
    async def create(
        cls, config: Optional[SupabaseConfig] = None
    ) -> "SchedulerDB":
        """Factory method to create an async :class:`SchedulerDB` instance.

        Args:
            config: Optional configuration.  When ``None``,
                :meth:`SupabaseConfig.from_env` is used.

        Returns:
            A fully initialised :class:`SchedulerDB` instance.
        """
        config = config or SupabaseConfig.from_env()
        client = await create_async_client(config.url, config.key)
        return cls(client)

    # -----------------------------------------------------------------
    # LISTINGS
    # -----------------------------------------------------------------

    async def get_listing(self, listing_id: str) -> Optional[Dict[str, Any]]:
        """Get a listing by ID.

        Returns:
            Listing dict or ``None`` if not found.
        """
        validate_not_empty(listing_id, "listing_id")

        result = await (
            self.client.table("listings")
            .select("*")
            .eq("id", listing_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    async def update_listing(self, listing_id: str, fields: Dict[str, Any]) -> None:
        """Update listing columns.

        Raises:
            ValidationError: If *listing_id* or *fields* is empty.
        """
        validate_not_empty(listing_id, "listing_id")
        if not fields:
            raise ValidationError("fields cannot be None or empty")

        await (
            self.client.table("listings")
            .update(fields)
            .eq("id", listing_id)
            .execute()
        )

    async def get_sold_listings_before(self, cutoff: date) -> List[Dict[str, Any]]:
        """Get unarchived ``Sold`` listings whose status changed on or before *cutoff*."""
        result = await (
            self.client.table("listings")
            .select("id, title, status_changed_date, organization_id")
            .eq("status", "Sold")
            .eq("archived", False)
            .lte("status_changed_date", cutoff.isoformat())
            .execute()
        )
        return result.data

    async def get_new_listings_before(self, cutoff: date) -> List[Dict[str, Any]]:
        """Get ``New`` listings whose ``new_status_set_date`` is on or before *cutoff*."""
        result = await (
            self.client.table("listings")
            .select("id, title, status, new_status_set_date, organization_id")
            .eq("status", "New")
            .not_.is_("new_status_set_date", "null")
            .lte("new_status_set_date", cutoff.isoformat())
            .execute()
        )
        return result.data

    # -----------------------------------------------------------------
    # SCHEDULE TEMPLATES
    # -----------------------------------------------------------------

    async def save_template(self, template: Dict[str, Any]) -> str:
        """Insert a recurring schedule template.

        Args:
            template: Template row.  Must contain ``id``, ``listing_id``
                and ``days_of_week``.

        Returns:
            UUID of the inserted template.

        Raises:
            ValidationError: On missing / invalid fields.
            DatabaseError: When the insert returns no data.
        """
        validate_fields(template, {"id", "listing_id", "days_of_week"}, "template")

        result = await self.client.table(TEMPLATES_TABLE).insert(template).execute()
        if not result.data:
            raise DatabaseError("Insert succeeded but returned no data")
        return result.data[0]["id"]

    async def get_template(self, template_id: str) -> Optional[Dict[str, Any]]:
        """Get a template by ID."""
        validate_not_empty(template_id, "template_id")

        result = await (
            self.client.table(TEMPLATES_TABLE)
            .select("*")
            .eq("id", template_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    async def get_active_template_for_listing(
        self, listing_id: str
    ) -> Optional[Dict[str, Any]]:
        """Get the single active template of a listing, if any."""
        validate_not_empty(listing_id, "listing_id")

        result = await (
            self.client.table(TEMPLATES_TABLE)
            .select("*")
            .eq("listing_id", listing_id)
            .eq("is_active", True)
            .order("started_at", desc=True)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    async def get_active_templates(
        self, organization_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Get all active templates, optionally scoped to one organization."""
        query = self.client.table(TEMPLATES_TABLE).select("*").eq("is_active", True)
        if organization_id:
            query = query.eq("organization_id", organization_id)
        result = await query.order("started_at", desc=False).execute()
        return result.data

    async def update_template(self, template_id: str, fields: Dict[str, Any]) -> None:
        """Update template columns."""
        validate_not_empty(template_id, "template_id")
        if not fields:
            raise ValidationError("fields cannot be None or empty")

        await (
            self.client.table(TEMPLATES_TABLE)
            .update(fields)
            .eq("id", template_id)
            .execute()
        )

    async def deactivate_templates_for_listing(self, listing_id: str) -> int:
        """Soft-end every active template of a listing.

        Returns:
            Number of templates deactivated.
        """
        validate_not_empty(listing_id, "listing_id")

        result = await (
            self.client.table(TEMPLATES_TABLE)
            .update({"is_active": False})
            .eq("listing_id", listing_id)
            .eq("is_active", True)
            .execute()
        )
        return len(result.data or [])

    # -----------------------------------------------------------------
    # POST ENTRIES
    # -----------------------------------------------------------------

    async def insert_entry(self, entry: Dict[str, Any]) -> bool:
        """Insert a post entry.

        The table carries a partial unique index on
        ``(listing_id, slot_date, slot_index) WHERE status <> 'cancelled'``.

        Returns:
            ``True`` if inserted, ``False`` if the slot already exists.

        Raises:
            ValidationError: On missing fields.
            DatabaseError: On any other database failure.
        """
        validate_fields(entry, {"id", "listing_id", "scheduled_for", "status"}, "entry")

        try:
            result = await self.client.table(ENTRIES_TABLE).insert(entry).execute()
        except APIError as exc:
            if is_unique_violation(exc):
                return False
            raise DatabaseError(f"Failed to insert entry: {exc}") from exc
        return bool(result.data)

    async def get_entry(self, entry_id: str) -> Optional[Dict[str, Any]]:
        """Get a post entry by ID."""
        validate_not_empty(entry_id, "entry_id")

        result = await (
            self.client.table(ENTRIES_TABLE)
            .select("*")
            .eq("id", entry_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    async def get_entries_for_listing(
        self,
        listing_id: str,
        include_cancelled: bool = False,
    ) -> List[Dict[str, Any]]:
        """Get a listing's entries ordered by ``scheduled_for``."""
        validate_not_empty(listing_id, "listing_id")

        query = self.client.table(ENTRIES_TABLE).select("*").eq("listing_id", listing_id)
        if not include_cancelled:
            query = query.neq("status", "cancelled")
        result = await query.order("scheduled_for", desc=False).execute()
        return result.data

    async def get_due_entries(self, now: datetime, limit: int) -> List[Dict[str, Any]]:
        """Get ``pending`` entries due at *now*, oldest first."""
        validate_positive(limit, "limit")

        result = await (
            self.client.table(ENTRIES_TABLE)
            .select("*")
            .eq("status", "pending")
            .lte("scheduled_for", to_iso(now))
            .order("scheduled_for", desc=False)
            .limit(limit)
            .execute()
        )
        return result.data

    async def claim_entry(self, entry_id: str, claimed_at: datetime) -> bool:
        """Atomically claim a post entry for publishing.

        Transitions the entry from ``"pending"`` to ``"processing"``.
        Only succeeds if the entry currently has status ``"pending"``,
        preventing double-publishing.

        Returns:
            ``True`` if the claim succeeded, ``False`` if the entry was
            already claimed or in a different status.
        """
        validate_not_empty(entry_id, "entry_id")

        result = await (
            self.client.table(ENTRIES_TABLE)
            .update({
                "status": "processing",
                "claimed_at": to_iso(claimed_at),
            })
            .eq("id", entry_id)
            .eq("status", "pending")
            .execute()
        )
        # If data is returned, the update matched and the claim succeeded
        return bool(result.data)

    async def update_entry(
        self,
        entry_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> bool:
        """Update a post entry, optionally only while it has *expected_status*.

        Returns:
            ``True`` if a row was updated.
        """
        validate_not_empty(entry_id, "entry_id")
        if not fields:
            raise ValidationError("fields cannot be None or empty")

        query = self.client.table(ENTRIES_TABLE).update(fields).eq("id", entry_id)
        if expected_status is not None:
            query = query.eq("status", expected_status)
        result = await query.execute()
        return bool(result.data)

    async def get_stuck_entries(self, claimed_before: datetime) -> List[Dict[str, Any]]:
        """Get ``processing`` entries claimed before *claimed_before*."""
        result = await (
            self.client.table(ENTRIES_TABLE)
            .select("*")
            .eq("status", "processing")
            .lt("claimed_at", to_iso(claimed_before))
            .execute()
        )
        return result.data

    async def cancel_pending_entries_for_listing(
        self, listing_id: str, reason: Optional[str] = None
    ) -> int:
        """Cancel every ``pending`` entry of a listing.

        Entries in any other status are left untouched.

        Returns:
            Number of entries cancelled.
        """
        validate_not_empty(listing_id, "listing_id")

        fields: Dict[str, Any] = {"status": "cancelled"}
        if reason:
            fields["error_message"] = reason
        result = await (
            self.client.table(ENTRIES_TABLE)
            .update(fields)
            .eq("listing_id", listing_id)
            .eq("status", "pending")
            .execute()
        )
        return len(result.data or [])

    # -----------------------------------------------------------------
    # ADVISORY LOCKS
    # Used by NamedLock for recurring_scheduling_locks and
    # gemini_vision_slots. Uniqueness lives in the table.
    # -----------------------------------------------------------------

    async def insert_lock(self, table: str, row: Dict[str, Any]) -> bool:
        """Insert a lock row.

        Returns:
            ``True`` if inserted, ``False`` if the key is already held.
        """
        try:
            result = await self.client.table(table).insert(row).execute()
        except APIError as exc:
            if is_unique_violation(exc):
                return False
            raise DatabaseError(f"Failed to insert lock into {table}: {exc}") from exc
        return bool(result.data)

    async def get_lock(
        self, table: str, key_column: str, key: Any
    ) -> Optional[Dict[str, Any]]:
        """Get the lock row holding *key*, if any."""
        result = await (
            self.client.table(table)
            .select("*")
            .eq(key_column, key)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    async def delete_lock(
        self,
        table: str,
        id_column: str,
        lock_id: str,
        stale_before: Optional[datetime] = None,
    ) -> bool:
        """Delete a lock row.

        When *stale_before* is given the delete only matches if the row is
        still older than it, so a concurrently refreshed lock survives.

        Returns:
            ``True`` if a row was deleted.
        """
        validate_not_empty(lock_id, "lock_id")

        query = self.client.table(table).delete().eq(id_column, lock_id)
        if stale_before is not None:
            query = query.lt("locked_at", to_iso(stale_before))
        result = await query.execute()
        return bool(result.data)

    async def delete_locks_by(self, table: str, column: str, value: Any) -> int:
        """Delete every lock row where *column* equals *value*."""
        result = await self.client.table(table).delete().eq(column, value).execute()
        return len(result.data or [])

    # -----------------------------------------------------------------
    # STATUS VERIFICATIONS
    # -----------------------------------------------------------------

    async def insert_verification(self, verification: Dict[str, Any]) -> bool:
        """Insert a status verification row.

        The table carries a partial unique index on
        ``(listing_id) WHERE verification_status = 'pending'``.

        Returns:
            ``True`` if inserted, ``False`` if the listing already has a
            pending verification.

        Raises:
            ValidationError: On missing fields.
            DatabaseError: On any other database failure.
        """
        validate_fields(
            verification,
            {"id", "listing_id", "new_status", "verification_scheduled_for"},
            "verification",
        )

        try:
            result = await self.client.table(VERIFICATIONS_TABLE).insert(verification).execute()
        except APIError as exc:
            if is_unique_violation(exc):
                return False
            raise DatabaseError(f"Failed to insert verification: {exc}") from exc
        return bool(result.data)

    async def get_verification(self, verification_id: str) -> Optional[Dict[str, Any]]:
        """Get a verification by ID."""
        validate_not_empty(verification_id, "verification_id")

        result = await (
            self.client.table(VERIFICATIONS_TABLE)
            .select("*")
            .eq("id", verification_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    async def get_verifications_for_listing(
        self, listing_id: str, status: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Get a listing's verifications, newest first."""
        validate_not_empty(listing_id, "listing_id")

        query = self.client.table(VERIFICATIONS_TABLE).select("*").eq("listing_id", listing_id)
        if status:
            query = query.eq("verification_status", status)
        result = await query.order("detected_at", desc=True).execute()
        return result.data

    async def get_due_verifications(
        self, now: datetime, limit: int
    ) -> List[Dict[str, Any]]:
        """Get ``pending`` verifications due at *now*, oldest first."""
        validate_positive(limit, "limit")

        result = await (
            self.client.table(VERIFICATIONS_TABLE)
            .select("*")
            .eq("verification_status", "pending")
            .lte("verification_scheduled_for", to_iso(now))
            .order("verification_scheduled_for", desc=False)
            .limit(limit)
            .execute()
        )
        return result.data

    async def update_verification(
        self,
        verification_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> bool:
        """Update a verification, optionally only while in *expected_status*.

        Returns:
            ``True`` if a row was updated.
        """
        validate_not_empty(verification_id, "verification_id")
        if not fields:
            raise ValidationError("fields cannot be None or empty")

        query = self.client.table(VERIFICATIONS_TABLE).update(fields).eq("id", verification_id)
        if expected_status is not None:
            query = query.eq("verification_status", expected_status)
        result = await query.execute()
        return bool(result.data)

    async def cancel_pending_verifications_for_listing(self, listing_id: str) -> int:
        """Cancel every ``pending`` verification of a listing.

        Returns:
            Number of verifications cancelled.
        """
        validate_not_empty(listing_id, "listing_id")

        result = await (
            self.client.table(VERIFICATIONS_TABLE)
            .update({"verification_status": "cancelled"})
            .eq("listing_id", listing_id)
            .eq("verification_status", "pending")
            .execute()
        )
        return len(result.data or [])

    # -----------------------------------------------------------------
    # RUN RECORDS
    # scheduled_post_processing_runs, verification_runs,
    # schedule_generation_runs
    # -----------------------------------------------------------------

    async def insert_run(self, table: str, run: Dict[str, Any]) -> str:
        """Insert a run row.

        Returns:
            UUID of the inserted run.
        """
        validate_fields(run, {"id", "run_started_at", "status"}, "run")

        result = await self.client.table(table).insert(run).execute()
        if not result.data:
            raise DatabaseError("Insert succeeded but returned no data")
        return result.data[0]["id"]

    async def update_run(self, table: str, run_id: str, fields: Dict[str, Any]) -> None:
        """Update a run row."""
        validate_not_empty(run_id, "run_id")
        if not fields:
            raise ValidationError("fields cannot be None or empty")

        await self.client.table(table).update(fields).eq("id", run_id).execute()

    # -----------------------------------------------------------------
    # UPLOAD RESULTS & POST COUNTERS
    # -----------------------------------------------------------------

    async def save_upload_post_result(self, result_row: Dict[str, Any]) -> str:
        """Record one per-platform publish outcome.

        Returns:
            UUID of the inserted row.
        """
        validate_fields(
            result_row, {"platform", "success", "listing_schedule_id"}, "upload result"
        )

        result = await self.client.table("upload_post_results").insert(result_row).execute()
        if not result.data:
            raise DatabaseError("Insert succeeded but returned no data")
        return result.data[0]["id"]

    async def get_upload_post_results(self, entry_id: str) -> List[Dict[str, Any]]:
        """Get every publish outcome recorded for an entry."""
        validate_not_empty(entry_id, "entry_id")

        result = await (
            self.client.table("upload_post_results")
            .select("*")
            .eq("listing_schedule_id", entry_id)
            .order("created_at", desc=False)
            .execute()
        )
        return result.data

    async def get_post_counter(self, listing_id: str) -> Optional[Dict[str, Any]]:
        """Get the post counter of a listing."""
        validate_not_empty(listing_id, "listing_id")

        result = await (
            self.client.table(COUNTERS_TABLE)
            .select("*")
            .eq("listing_id", listing_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    async def insert_post_counter(self, counter: Dict[str, Any]) -> bool:
        """Create a listing's post counter.

        Returns:
            ``True`` if inserted, ``False`` if the listing already has one.
        """
        validate_fields(counter, {"listing_id", "post_count"}, "counter")

        try:
            result = await self.client.table(COUNTERS_TABLE).insert(counter).execute()
        except APIError as exc:
            if is_unique_violation(exc):
                return False
            raise DatabaseError(f"Failed to insert post counter: {exc}") from exc
        return bool(result.data)

    async def update_post_counter(
        self,
        listing_id: str,
        fields: Dict[str, Any],
        expected_count: int,
    ) -> bool:
        """Update a post counter only while ``post_count == expected_count``.

        Returns:
            ``True`` if the row matched and was updated.
        """
        validate_not_empty(listing_id, "listing_id")
        if not fields:
            raise ValidationError("fields cannot be None or empty")

        result = await (
            self.client.table(COUNTERS_TABLE)
            .update(fields)
            .eq("listing_id", listing_id)
            .eq("post_count", expected_count)
            .execute()
        )
        return bool(result.data)

    # -----------------------------------------------------------------
    # SCHEDULER LOGS
    # -----------------------------------------------------------------

    async def save_log_entry(self, log_entry: Dict[str, Any]) -> str:
        """Save a structured log entry.

        Args:
            log_entry: Log entry dict.  Must contain ``timestamp``
                and ``level``.

        Returns:
            UUID of the inserted log row.
        """
        if not log_entry:
            raise ValidationError("log_entry cannot be None or empty")
        if "timestamp" not in log_entry or "level" not in log_entry:
            raise ValidationError(
                "log_entry must have 'timestamp' and 'level'"
            )

        result = await (
            self.client.table("scheduler_logs").insert(log_entry).execute()
        )
        if not result.data:
            raise DatabaseError("Insert succeeded but returned no data")
        return result.data[0]["id"]


# =============================================================================
# GLOBAL DATABASE INSTANCE (Singleton)
# =============================================================================

# One async connection for the entire application.
_db_instance: Optional[SchedulerDB] = None
_db_lock: Optional[asyncio.Lock] = None

# Thread lock for safe initialisation of the async lock itself.
_init_lock = threading.Lock()


async def get_db() -> SchedulerDB:
    """Get the global async database instance.

    Thread-safe **and** async-safe.  The first call creates the
    :class:`SchedulerDB` singleton; subsequent calls return the same
    instance.

    Returns:
        The singleton :class:`SchedulerDB` instance.
    """
    global _db_instance, _db_lock

    # Thread-safe lazy initialisation of the async lock.
    if _db_lock is None:
        with _init_lock:
            # Double-check after acquiring thread lock.
            if _db_lock is None:
                _db_lock = asyncio.Lock()

    if _db_instance is None:
        async with _db_lock:
            # Double-check after acquiring async lock.
            if _db_instance is None:
                _db_instance = await SchedulerDB.create()

    return _db_instance


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "SchedulerDB",
    "SupabaseConfig",
    "get_db",
    "validate_not_empty",
    "validate_positive",
    "validate_fields",
    "is_unique_violation",
    "UNIQUE_VIOLATION",
]
