"""Shared fixtures for the listing scheduler test suite."""

import asyncio
import copy
import inspect
import random
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from listing_scheduler.config import Settings, reset_settings
from listing_scheduler.logging import scheduler_logger
from listing_scheduler.utils import generate_id, parse_timestamp, to_iso


# ---------------------------------------------------------------------------
# Ensure we don't hit real APIs during tests
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _block_env_keys(monkeypatch):
    """Clear all API keys and overrides so tests never hit real services."""
    keys = [
        "SUPABASE_URL",
        "SUPABASE_SERVICE_KEY",
        "UPLOAD_POST_API_KEY",
        "UPLOAD_POST_BASE_URL",
        "SCHEDULER_TIMEZONE",
        "LOG_LEVEL",
        "LOG_DIR",
        "SCHEDULE_HORIZON_DAYS",
        "MAX_JITTER_SECONDS",
        "LOCK_TTL_MINUTES",
        "VISION_SLOT_CAPACITY",
        "VERIFICATION_DELAY_MINUTES",
        "DISPATCH_BATCH_SIZE",
        "DISPATCH_MAX_RETRIES",
        "DISPATCH_RETRY_BASE_DELAY",
        "DISPATCH_RETRY_MAX_DELAY",
        "PROCESSING_TIMEOUT_MINUTES",
    ]
    for key in keys:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def _reset_globals():
    """Reset the settings and structured logger singletons around each test."""
    reset_settings()
    scheduler_logger._logger = None
    yield
    reset_settings()
    scheduler_logger._logger = None


# ---------------------------------------------------------------------------
# Common datetime fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def sample_utc_now():
    """A fixed UTC datetime for deterministic tests (a Sunday)."""
    return datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def monday_morning():
    """Monday 2025-06-16 06:00 UTC, before any posting window opens."""
    return datetime(2025, 6, 16, 6, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------
@pytest.fixture
def settings():
    """UTC settings without jitter, so slot times are exact midpoints."""
    return Settings(
        timezone="UTC",
        max_jitter_seconds=0,
        default_window_start=time(9, 0),
        default_window_end=time(18, 0),
    )


@pytest.fixture
def rng():
    return random.Random(1234)


# ---------------------------------------------------------------------------
# Mock Supabase client
# ---------------------------------------------------------------------------
@pytest.fixture
def mock_supabase_client():
    """A mock Supabase async client."""
    client = AsyncMock()
    # table().select().execute() chain
    table_mock = MagicMock()
    for name in (
        "select", "insert", "update", "upsert", "delete",
        "eq", "neq", "lt", "lte", "gte", "is_", "order", "limit",
    ):
        getattr(table_mock, name).return_value = table_mock
    table_mock.not_ = table_mock
    table_mock.execute = AsyncMock(return_value=MagicMock(data=[], count=0))
    client.table = MagicMock(return_value=table_mock)
    return client


# ---------------------------------------------------------------------------
# In-memory SchedulerDB
# ---------------------------------------------------------------------------
LOCK_KEYS = {
    "recurring_scheduling_locks": "listing_id",
    "gemini_vision_slots": "slot_index",
}


def _ts(value: Any) -> Optional[datetime]:
    return parse_timestamp(value)


class FakeSchedulerDB:
    """In-memory stand-in for :class:`listing_scheduler.database.SchedulerDB`.

    Mirrors the conditional-update and unique-insert semantics the
    scheduling layer relies on:
    - at most one non-cancelled entry per ``(listing_id, slot_date, slot_index)``
    - one lock row per unique key
    - ``expected_status`` updates only match rows still in that status
    """

    def __init__(self) -> None:
        self.listings: Dict[str, Dict[str, Any]] = {}
        self.templates: Dict[str, Dict[str, Any]] = {}
        self.entries: Dict[str, Dict[str, Any]] = {}
        self.verifications: Dict[str, Dict[str, Any]] = {}
        self.locks: Dict[str, List[Dict[str, Any]]] = {name: [] for name in LOCK_KEYS}
        self.runs: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.upload_results: List[Dict[str, Any]] = []
        self.counters: Dict[str, Dict[str, Any]] = {}
        self.logs: List[Dict[str, Any]] = []

    # -- listings ------------------------------------------------------
    def add_listing(self, listing_id: str, **fields: Any) -> Dict[str, Any]:
        row = {
            "id": listing_id,
            "organization_id": "org-1",
            "title": "3 Bed Semi-Detached",
            "address": "12 Main Street",
            "status": "Published",
            "archived": False,
            "video_url_16x9": f"https://cdn.example.com/{listing_id}-16x9.mp4",
            "video_url_9x16": f"https://cdn.example.com/{listing_id}-9x16.mp4",
            "hero_photo_url": f"https://cdn.example.com/{listing_id}.jpg",
        }
        row.update(fields)
        self.listings[listing_id] = row
        return row

    async def get_listing(self, listing_id):
        row = self.listings.get(listing_id)
        return copy.deepcopy(row) if row else None

    async def update_listing(self, listing_id, fields):
        if listing_id in self.listings:
            self.listings[listing_id].update(fields)

    async def get_sold_listings_before(self, cutoff: date):
        return [
            copy.deepcopy(row) for row in self.listings.values()
            if row.get("status") == "Sold"
            and not row.get("archived")
            and row.get("status_changed_date")
            and date.fromisoformat(row["status_changed_date"]) <= cutoff
        ]

    async def get_new_listings_before(self, cutoff: date):
        return [
            copy.deepcopy(row) for row in self.listings.values()
            if row.get("status") == "New"
            and row.get("new_status_set_date")
            and date.fromisoformat(row["new_status_set_date"]) <= cutoff
        ]

    # -- templates -----------------------------------------------------
    async def save_template(self, template):
        self.templates[template["id"]] = copy.deepcopy(template)
        return template["id"]

    async def get_template(self, template_id):
        row = self.templates.get(template_id)
        return copy.deepcopy(row) if row else None

    async def get_active_template_for_listing(self, listing_id):
        rows = [
            row for row in self.templates.values()
            if row["listing_id"] == listing_id and row.get("is_active", True)
        ]
        rows.sort(key=lambda r: r.get("started_at") or "", reverse=True)
        return copy.deepcopy(rows[0]) if rows else None

    async def get_active_templates(self, organization_id=None):
        rows = [
            copy.deepcopy(row) for row in self.templates.values()
            if row.get("is_active", True)
            and (organization_id is None or row.get("organization_id") == organization_id)
        ]
        rows.sort(key=lambda r: r.get("started_at") or "")
        return rows

    async def update_template(self, template_id, fields):
        if template_id in self.templates:
            self.templates[template_id].update(copy.deepcopy(fields))

    async def deactivate_templates_for_listing(self, listing_id):
        count = 0
        for row in self.templates.values():
            if row["listing_id"] == listing_id and row.get("is_active", True):
                row["is_active"] = False
                count += 1
        return count

    # -- entries -------------------------------------------------------
    async def insert_entry(self, entry):
        if entry.get("slot_date") is not None:
            for row in self.entries.values():
                if (
                    row["listing_id"] == entry["listing_id"]
                    and row.get("slot_date") == entry["slot_date"]
                    and row.get("slot_index") == entry.get("slot_index")
                    and row["status"] != "cancelled"
                ):
                    return False
        self.entries[entry["id"]] = copy.deepcopy(entry)
        return True

    async def get_entry(self, entry_id):
        row = self.entries.get(entry_id)
        return copy.deepcopy(row) if row else None

    async def get_entries_for_listing(self, listing_id, include_cancelled=False):
        rows = [
            copy.deepcopy(row) for row in self.entries.values()
            if row["listing_id"] == listing_id
            and (include_cancelled or row["status"] != "cancelled")
        ]
        rows.sort(key=lambda r: _ts(r["scheduled_for"]))
        return rows

    async def get_due_entries(self, now, limit):
        rows = [
            copy.deepcopy(row) for row in self.entries.values()
            if row["status"] == "pending" and _ts(row["scheduled_for"]) <= now
        ]
        rows.sort(key=lambda r: _ts(r["scheduled_for"]))
        return rows[:limit]

    async def claim_entry(self, entry_id, claimed_at):
        row = self.entries.get(entry_id)
        if not row or row["status"] != "pending":
            return False
        row.update({"status": "processing", "claimed_at": to_iso(claimed_at)})
        return True

    async def update_entry(self, entry_id, fields, expected_status=None):
        row = self.entries.get(entry_id)
        if not row:
            return False
        if expected_status is not None and row["status"] != expected_status:
            return False
        row.update(copy.deepcopy(fields))
        return True

    async def get_stuck_entries(self, claimed_before):
        return [
            copy.deepcopy(row) for row in self.entries.values()
            if row["status"] == "processing"
            and row.get("claimed_at")
            and _ts(row["claimed_at"]) < claimed_before
        ]

    async def cancel_pending_entries_for_listing(self, listing_id, reason=None):
        count = 0
        for row in self.entries.values():
            if row["listing_id"] == listing_id and row["status"] == "pending":
                row["status"] = "cancelled"
                if reason:
                    row["error_message"] = reason
                count += 1
        return count

    # -- locks ---------------------------------------------------------
    async def insert_lock(self, table, row):
        key_column = LOCK_KEYS[table]
        if any(r[key_column] == row[key_column] for r in self.locks[table]):
            return False
        self.locks[table].append(copy.deepcopy(row))
        return True

    async def get_lock(self, table, key_column, key):
        for row in self.locks[table]:
            if row[key_column] == key:
                return copy.deepcopy(row)
        return None

    async def delete_lock(self, table, id_column, lock_id, stale_before=None):
        for row in self.locks[table]:
            if row[id_column] != lock_id:
                continue
            if stale_before is not None and _ts(row["locked_at"]) >= stale_before:
                return False
            self.locks[table].remove(row)
            return True
        return False

    async def delete_locks_by(self, table, column, value):
        before = len(self.locks[table])
        self.locks[table] = [r for r in self.locks[table] if r.get(column) != value]
        return before - len(self.locks[table])

    # -- verifications ------------------------------------------------
    async def insert_verification(self, verification):
        if verification.get("verification_status", "pending") == "pending":
            for row in self.verifications.values():
                if (
                    row["listing_id"] == verification["listing_id"]
                    and row["verification_status"] == "pending"
                ):
                    return False
        self.verifications[verification["id"]] = copy.deepcopy(verification)
        return True

    async def get_verification(self, verification_id):
        row = self.verifications.get(verification_id)
        return copy.deepcopy(row) if row else None

    async def get_verifications_for_listing(self, listing_id, status=None):
        rows = [
            copy.deepcopy(row) for row in self.verifications.values()
            if row["listing_id"] == listing_id
            and (status is None or row["verification_status"] == status)
        ]
        rows.sort(key=lambda r: r["detected_at"], reverse=True)
        return rows

    async def get_due_verifications(self, now, limit):
        rows = [
            copy.deepcopy(row) for row in self.verifications.values()
            if row["verification_status"] == "pending"
            and _ts(row["verification_scheduled_for"]) <= now
        ]
        rows.sort(key=lambda r: _ts(r["verification_scheduled_for"]))
        return rows[:limit]

    async def update_verification(self, verification_id, fields, expected_status=None):
        row = self.verifications.get(verification_id)
        if not row:
            return False
        if expected_status is not None and row["verification_status"] != expected_status:
            return False
        row.update(copy.deepcopy(fields))
        return True

    async def cancel_pending_verifications_for_listing(self, listing_id):
        count = 0
        for row in self.verifications.values():
            if row["listing_id"] == listing_id and row["verification_status"] == "pending":
                row["verification_status"] = "cancelled"
                count += 1
        return count

    # -- runs ----------------------------------------------------------
    async def insert_run(self, table, run):
        self.runs.setdefault(table, {})[run["id"]] = copy.deepcopy(run)
        return run["id"]

    async def update_run(self, table, run_id, fields):
        self.runs.setdefault(table, {}).setdefault(run_id, {"id": run_id}).update(
            copy.deepcopy(fields)
        )

    # -- upload results & counters ------------------------------------
    async def save_upload_post_result(self, result_row):
        row = {"id": generate_id(), **copy.deepcopy(result_row)}
        self.upload_results.append(row)
        return row["id"]

    async def get_upload_post_results(self, entry_id):
        return [
            copy.deepcopy(r) for r in self.upload_results
            if r["listing_schedule_id"] == entry_id
        ]

    async def get_post_counter(self, listing_id):
        row = self.counters.get(listing_id)
        return copy.deepcopy(row) if row else None

    async def insert_post_counter(self, counter):
        if counter["listing_id"] in self.counters:
            return False
        self.counters[counter["listing_id"]] = copy.deepcopy(counter)
        return True

    async def update_post_counter(self, listing_id, fields, expected_count):
        row = self.counters.get(listing_id)
        if not row or row["post_count"] != expected_count:
            return False
        row.update(copy.deepcopy(fields))
        return True

    # -- logs ----------------------------------------------------------
    async def save_log_entry(self, log_entry):
        self.logs.append(copy.deepcopy(log_entry))
        return generate_id()


@pytest.fixture
def fake_db():
    """An empty in-memory database."""
    return FakeSchedulerDB()


@pytest.fixture
def yielding_db(fake_db, monkeypatch):
    """``fake_db`` whose calls suspend once before running.

    Concurrent tasks sharing it interleave at every database call, as
    separate workers would against Postgres. Each call stays atomic.
    """
    for name, method in inspect.getmembers(fake_db, inspect.iscoroutinefunction):
        if name.startswith("_"):
            continue

        async def suspended(*args, _method=method, **kwargs):
            await asyncio.sleep(0)
            return await _method(*args, **kwargs)

        monkeypatch.setattr(fake_db, name, suspended)
    return fake_db


# ---------------------------------------------------------------------------
# Publisher double
# ---------------------------------------------------------------------------
class FakePublisher:
    """Records publish requests; per-platform outcomes are scripted.

    ``outcomes[platform_value]`` is a list consumed one call at a time; each
    item is either an exception instance to raise or ``None`` for success.
    Platforms without a script always succeed.
    """

    def __init__(self, outcomes: Optional[Dict[str, List[Any]]] = None) -> None:
        self.outcomes = outcomes or {}
        self.requests: List[Any] = []

    async def publish(self, request):
        from listing_scheduler.scheduling.models import PublishResult

        self.requests.append(request)
        script = self.outcomes.get(request.platform.value)
        if script:
            outcome = script.pop(0)
            if outcome is not None:
                raise outcome
        return PublishResult(
            platform=request.platform,
            request_id=f"req-{len(self.requests)}",
            platform_post_id=f"{request.platform.value}-post-{len(self.requests)}",
            post_url=f"https://social.example.com/{request.platform.value}/{len(self.requests)}",
        )


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def make_publisher():
    """Factory for publishers with scripted per-platform outcomes."""
    return FakePublisher
