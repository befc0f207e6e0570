"""
Scheduling data models: phases, statuses, templates, post entries, runs.

Defines the core data structures used by the scheduling subsystem:
- ``SchedulePhase``: Lifecycle stage of a listing's recurring template.
- ``PostStatus``: Lifecycle status of a ``listing_posting_schedule`` row.
- ``VerificationStatus``: State of a debounced listing status change.
- ``RunStatus``: Outcome of a batch run.
- ``ListingStatus`` / ``BannerType``: Listing-side vocabulary.
- ``Platform`` / ``AspectRatio``: Publishing targets.
- ``ScheduleTemplate``, ``PostEntry``, ``StatusVerification``,
  ``ProcessingRun``, ``LockHandle``: Row-backed dataclasses.

Every dataclass converts to and from Supabase rows with ``from_row()`` /
``to_row()`` so the rest of the code never handles raw status strings.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, List, Optional

from listing_scheduler.utils import parse_timestamp, to_iso, utc_now


# =============================================================================
# ENUMS
# =============================================================================


class SchedulePhase(Enum):
    """Lifecycle phase of a recurring schedule template.

    Transitions only move forward:
        LAUNCH -> ONGOING -> BANNER_ONLY -> ENDED

    ``BANNER_ONLY`` can be entered from ``LAUNCH`` or ``ONGOING`` when a
    sale is confirmed; posts in that phase carry the sale banner overlay.
    """

    LAUNCH = "launch"
    ONGOING = "ongoing"
    BANNER_ONLY = "banner_only"
    ENDED = "ended"

    @property
    def rank(self) -> int:
        """Position in the forward-only phase order."""
        return _PHASE_ORDER.index(self)

    def can_advance_to(self, target: "SchedulePhase") -> bool:
        """Check whether moving to *target* keeps the phase monotonic."""
        return target.rank > self.rank


_PHASE_ORDER: List[SchedulePhase] = [
    SchedulePhase.LAUNCH,
    SchedulePhase.ONGOING,
    SchedulePhase.BANNER_ONLY,
    SchedulePhase.ENDED,
]


class PostStatus(Enum):
    """Lifecycle status of a scheduled listing post.

    Transitions:
        PENDING -> PROCESSING -> POSTED
                              -> FAILED
                              -> PENDING   (transient failure, retry)
        PENDING -> CANCELLED
    """

    PENDING = "pending"
    PROCESSING = "processing"
    POSTED = "posted"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Check if status is terminal (no further transitions allowed)."""
        return self in {PostStatus.POSTED, PostStatus.FAILED, PostStatus.CANCELLED}

    def can_transition_to(self, target: "PostStatus") -> bool:
        """Check whether *target* is a legal next status."""
        return target in _POST_TRANSITIONS[self]


_POST_TRANSITIONS: Dict[PostStatus, set] = {
    PostStatus.PENDING: {PostStatus.PROCESSING, PostStatus.CANCELLED},
    PostStatus.PROCESSING: {PostStatus.POSTED, PostStatus.FAILED, PostStatus.PENDING},
    PostStatus.POSTED: set(),
    PostStatus.FAILED: set(),
    PostStatus.CANCELLED: set(),
}


class VerificationStatus(Enum):
    """State of a listing status-change verification.

    Transitions:
        PENDING   -> CONFIRMED  (live status still matches; claimed before applying)
        PENDING   -> CANCELLED  (reverted, or superseded by a newer change)
        CONFIRMED -> FAILED     (phase transition raised; manual retry only)
        FAILED    -> CONFIRMED  (manual retry claimed the row)
        FAILED    -> CANCELLED  (manual retry found the status reverted)
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if status is terminal for the automatic sweep."""
        return self is not VerificationStatus.PENDING


class RunStatus(Enum):
    """Outcome of a batch run recorded by the run tracker."""

    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


class BannerType(Enum):
    """Banner overlay applied to posts once a sale is confirmed."""

    SALE_AGREED = "sale_agreed"
    SOLD = "sold"


class ListingStatus(Enum):
    """Listing status values as stored on the ``listings`` table."""

    NEW = "New"
    PUBLISHED = "Published"
    SALE_AGREED = "Sale Agreed"
    SOLD = "Sold"

    @property
    def is_postable(self) -> bool:
        """Listings in these statuses run the launch/ongoing schedule."""
        return self in {ListingStatus.NEW, ListingStatus.PUBLISHED}

    @property
    def banner_type(self) -> Optional[BannerType]:
        """Banner overlay for sale statuses, ``None`` otherwise."""
        return {
            ListingStatus.SALE_AGREED: BannerType.SALE_AGREED,
            ListingStatus.SOLD: BannerType.SOLD,
        }.get(self)


class Platform(Enum):
    """Social platforms supported by the upload-post service."""

    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"
    LINKEDIN = "linkedin"
    TIKTOK = "tiktok"
    YOUTUBE = "youtube"
    X = "x"


class AspectRatio(Enum):
    """Rendered media aspect ratios."""

    VERTICAL = "9x16"
    LANDSCAPE = "16x9"
    SQUARE = "1x1"


# =============================================================================
# ROW HELPERS
# =============================================================================


def _parse_time(value: Any, default: time) -> time:
    if value is None or value == "":
        return default
    if isinstance(value, time):
        return value
    return time.fromisoformat(str(value))


def _parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _parse_platforms(values: Any) -> List[Platform]:
    return [Platform(v) if not isinstance(v, Platform) else v for v in (values or [])]


# =============================================================================
# SCHEDULE TEMPLATE
# =============================================================================


@dataclass
class ScheduleTemplate:
    """Per-listing recurring posting policy (``recurring_schedule_templates``).

    Attributes:
        id: Template UUID.
        listing_id: Listing this policy belongs to (one active per listing).
        organization_id: Owning organization.
        days_of_week: Weekdays that may carry posts (0=Monday, 6=Sunday).
        frequency: Posts per week, as stored (``"3"``, ``"daily"``, ``"3x_week"``).
        current_phase: Current lifecycle phase.
        launch_frequency: Optional per-week override during launch.
        ongoing_frequency: Optional per-week override during ongoing.
        launch_duration_weeks: Length of the launch phase.
        ongoing_duration_weeks: Length of the ongoing phase.
        banner_duration_weeks: Length of the sale-banner phase.
        started_at: When the template started (launch phase start).
        phase_started_at: When the current phase was entered.
        ends_at: Hard stop for the template, if any.
        is_active: Soft-delete flag.
        is_recurring: ``False`` for one-off schedules of ``total_posts`` posts.
        total_posts: Post budget for one-off schedules.
        time_window_start: Earliest local posting time.
        time_window_end: Latest local posting time.
        platforms: Platforms every generated entry targets.
        show_new_banner: Overlay the "new" banner on launch posts.
        banner_type: Sale banner, set when entering ``BANNER_ONLY``.
    """

    id: str
    listing_id: str
    organization_id: str
    days_of_week: List[int]
    frequency: str

    current_phase: SchedulePhase = SchedulePhase.LAUNCH
    launch_frequency: Optional[str] = None
    ongoing_frequency: Optional[str] = None
    launch_duration_weeks: int = 2
    ongoing_duration_weeks: int = 10
    banner_duration_weeks: int = 2

    started_at: datetime = field(default_factory=utc_now)
    phase_started_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None

    is_active: bool = True
    is_recurring: bool = True
    total_posts: Optional[int] = None

    time_window_start: time = time(9, 0)
    time_window_end: time = time(18, 0)
    platforms: List[Platform] = field(default_factory=list)

    show_new_banner: bool = False
    banner_type: Optional[BannerType] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ScheduleTemplate":
        """Build a template from a Supabase row."""
        started_at = parse_timestamp(row.get("started_at")) or utc_now()
        banner = row.get("banner_type")
        total_posts = row.get("total_posts")
        return cls(
            id=row["id"],
            listing_id=row["listing_id"],
            organization_id=row.get("organization_id", ""),
            days_of_week=sorted(int(d) for d in (row.get("days_of_week") or [])),
            frequency=str(row.get("frequency", "")),
            current_phase=SchedulePhase(row.get("current_phase") or "launch"),
            launch_frequency=row.get("launch_frequency"),
            ongoing_frequency=row.get("ongoing_frequency"),
            launch_duration_weeks=int(row.get("launch_duration_weeks") or 0),
            ongoing_duration_weeks=int(row.get("ongoing_duration_weeks") or 0),
            banner_duration_weeks=int(row.get("banner_duration_weeks") or 0),
            started_at=started_at,
            phase_started_at=parse_timestamp(row.get("phase_started_at")),
            ends_at=parse_timestamp(row.get("ends_at")),
            is_active=bool(row.get("is_active", True)),
            is_recurring=row.get("is_recurring") is not False,
            total_posts=int(total_posts) if total_posts is not None else None,
            time_window_start=_parse_time(row.get("time_window_start"), time(9, 0)),
            time_window_end=_parse_time(row.get("time_window_end"), time(18, 0)),
            platforms=_parse_platforms(row.get("platforms")),
            show_new_banner=bool(row.get("show_new_banner", False)),
            banner_type=BannerType(banner) if banner else None,
        )

    def to_row(self) -> Dict[str, Any]:
        """Serialize to a Supabase row dict."""
        return {
            "id": self.id,
            "listing_id": self.listing_id,
            "organization_id": self.organization_id,
            "days_of_week": list(self.days_of_week),
            "frequency": self.frequency,
            "current_phase": self.current_phase.value,
            "launch_frequency": self.launch_frequency,
            "ongoing_frequency": self.ongoing_frequency,
            "launch_duration_weeks": self.launch_duration_weeks,
            "ongoing_duration_weeks": self.ongoing_duration_weeks,
            "banner_duration_weeks": self.banner_duration_weeks,
            "started_at": to_iso(self.started_at),
            "phase_started_at": to_iso(self.phase_started_at),
            "ends_at": to_iso(self.ends_at),
            "is_active": self.is_active,
            "is_recurring": self.is_recurring,
            "total_posts": self.total_posts,
            "time_window_start": self.time_window_start.isoformat(),
            "time_window_end": self.time_window_end.isoformat(),
            "platforms": [p.value for p in self.platforms],
            "show_new_banner": self.show_new_banner,
            "banner_type": self.banner_type.value if self.banner_type else None,
        }


# =============================================================================
# POST ENTRY
# =============================================================================


@dataclass
class PostEntry:
    """A materialized social post slot (``listing_posting_schedule``).

    ``slot_date`` + ``slot_index`` identify the slot within a listing's
    schedule; at most one non-cancelled entry exists per pair.
    ``platform_results`` maps platform value to its last outcome
    (``{"success": bool, "platform_post_id": ..., "post_url": ...,
    "error": ...}``).
    """

    id: str
    listing_id: str
    organization_id: str
    scheduled_for: datetime

    template_id: Optional[str] = None
    slot_date: Optional[date] = None
    slot_index: int = 0
    post_number: Optional[int] = None
    jitter_seconds: int = 0
    time_window_start: Optional[datetime] = None
    time_window_end: Optional[datetime] = None

    platforms_to_post: List[Platform] = field(default_factory=list)
    content_type: Optional[str] = None
    phase: Optional[SchedulePhase] = None
    is_recurring: bool = True
    show_new_banner: bool = False
    banner_type: Optional[BannerType] = None

    status: PostStatus = PostStatus.PENDING
    retry_count: int = 0
    claimed_at: Optional[datetime] = None
    platform_results: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    error_message: Optional[str] = None
    posted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)

    @property
    def pending_platforms(self) -> List[Platform]:
        """Platforms that have not yet been published successfully."""
        return [
            p for p in self.platforms_to_post
            if not self.platform_results.get(p.value, {}).get("success")
        ]

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PostEntry":
        """Build an entry from a Supabase row."""
        phase = row.get("phase")
        banner = row.get("banner_type")
        return cls(
            id=row["id"],
            listing_id=row["listing_id"],
            organization_id=row.get("organization_id", ""),
            scheduled_for=parse_timestamp(row["scheduled_for"]),  # type: ignore[arg-type]
            template_id=row.get("recurring_template_id"),
            slot_date=_parse_date(row.get("slot_date")),
            slot_index=int(row.get("slot_index") or 0),
            post_number=row.get("post_number"),
            jitter_seconds=int(row.get("jitter_seconds") or 0),
            time_window_start=parse_timestamp(row.get("time_window_start")),
            time_window_end=parse_timestamp(row.get("time_window_end")),
            platforms_to_post=_parse_platforms(row.get("platforms_to_post")),
            content_type=row.get("content_type"),
            phase=SchedulePhase(phase) if phase else None,
            is_recurring=row.get("is_recurring") is not False,
            show_new_banner=bool(row.get("show_new_banner", False)),
            banner_type=BannerType(banner) if banner else None,
            status=PostStatus(row.get("status") or "pending"),
            retry_count=int(row.get("retry_count") or 0),
            claimed_at=parse_timestamp(row.get("claimed_at")),
            platform_results=dict(row.get("platform_results") or {}),
            error_message=row.get("error_message"),
            posted_at=parse_timestamp(row.get("posted_at")),
            created_at=parse_timestamp(row.get("created_at")) or utc_now(),
        )

    def to_row(self) -> Dict[str, Any]:
        """Serialize to a Supabase row dict."""
        return {
            "id": self.id,
            "listing_id": self.listing_id,
            "organization_id": self.organization_id,
            "scheduled_for": to_iso(self.scheduled_for),
            "recurring_template_id": self.template_id,
            "slot_date": self.slot_date.isoformat() if self.slot_date else None,
            "slot_index": self.slot_index,
            "post_number": self.post_number,
            "jitter_seconds": self.jitter_seconds,
            "time_window_start": to_iso(self.time_window_start),
            "time_window_end": to_iso(self.time_window_end),
            "platforms_to_post": [p.value for p in self.platforms_to_post],
            "content_type": self.content_type,
            "phase": self.phase.value if self.phase else None,
            "is_recurring": self.is_recurring,
            "show_new_banner": self.show_new_banner,
            "banner_type": self.banner_type.value if self.banner_type else None,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "claimed_at": to_iso(self.claimed_at),
            "platform_results": self.platform_results,
            "error_message": self.error_message,
            "posted_at": to_iso(self.posted_at),
            "created_at": to_iso(self.created_at),
        }


# =============================================================================
# STATUS VERIFICATION
# =============================================================================


@dataclass
class StatusVerification:
    """A debounced listing status change (``listing_status_verifications``)."""

    id: str
    listing_id: str
    organization_id: str
    new_status: ListingStatus
    detected_at: datetime
    verification_scheduled_for: datetime

    old_status: Optional[ListingStatus] = None
    verification_status: VerificationStatus = VerificationStatus.PENDING
    automation_triggered: bool = False
    automation_error: Optional[str] = None
    verified_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "StatusVerification":
        """Build a verification from a Supabase row."""
        old = row.get("old_status")
        return cls(
            id=row["id"],
            listing_id=row["listing_id"],
            organization_id=row.get("organization_id", ""),
            new_status=ListingStatus(row["new_status"]),
            detected_at=parse_timestamp(row["detected_at"]),  # type: ignore[arg-type]
            verification_scheduled_for=parse_timestamp(  # type: ignore[arg-type]
                row["verification_scheduled_for"]
            ),
            old_status=ListingStatus(old) if old else None,
            verification_status=VerificationStatus(
                row.get("verification_status") or "pending"
            ),
            automation_triggered=bool(row.get("automation_triggered", False)),
            automation_error=row.get("automation_error"),
            verified_at=parse_timestamp(row.get("verified_at")),
        )

    def to_row(self) -> Dict[str, Any]:
        """Serialize to a Supabase row dict."""
        return {
            "id": self.id,
            "listing_id": self.listing_id,
            "organization_id": self.organization_id,
            "old_status": self.old_status.value if self.old_status else None,
            "new_status": self.new_status.value,
            "detected_at": to_iso(self.detected_at),
            "verification_scheduled_for": to_iso(self.verification_scheduled_for),
            "verification_status": self.verification_status.value,
            "automation_triggered": self.automation_triggered,
            "automation_error": self.automation_error,
            "verified_at": to_iso(self.verified_at),
        }


# =============================================================================
# PROCESSING RUN
# =============================================================================


@dataclass
class ProcessingRun:
    """Audit record of one batch invocation."""

    id: str
    run_started_at: datetime
    status: RunStatus = RunStatus.RUNNING
    run_completed_at: Optional[datetime] = None

    found: int = 0
    processed: int = 0
    failed: int = 0
    cancelled: int = 0
    errors: List[str] = field(default_factory=list)

    http_status: Optional[int] = None
    message: Optional[str] = None


# =============================================================================
# LOCK HANDLE
# =============================================================================


@dataclass
class LockHandle:
    """Proof of a held advisory lock, returned by ``NamedLock.acquire()``."""

    lock_id: str
    resource_id: str
    owner: str
    locked_at: datetime
    slot_index: int = 0
    template_id: Optional[str] = None


# =============================================================================
# PUBLISHING
# =============================================================================


@dataclass
class PublishRequest:
    """One platform publish call for one post entry."""

    entry_id: str
    listing_id: str
    organization_id: str
    platform: Platform
    media_url: str
    caption: str
    aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE
    is_video: bool = True
    profile: Optional[str] = None


@dataclass
class PublishResult:
    """Successful publish outcome for one platform."""

    platform: Platform
    request_id: Optional[str] = None
    platform_post_id: Optional[str] = None
    post_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "SchedulePhase",
    "PostStatus",
    "VerificationStatus",
    "RunStatus",
    "BannerType",
    "ListingStatus",
    "Platform",
    "AspectRatio",
    "ScheduleTemplate",
    "PostEntry",
    "StatusVerification",
    "ProcessingRun",
    "LockHandle",
    "PublishRequest",
    "PublishResult",
]
