"""Scheduling subsystem: slot generation, locking, verification, dispatch."""

from listing_scheduler.scheduling.models import (
    AspectRatio,
    BannerType,
    ListingStatus,
    LockHandle,
    Platform,
    PostEntry,
    PostStatus,
    ProcessingRun,
    PublishRequest,
    PublishResult,
    RunStatus,
    SchedulePhase,
    ScheduleTemplate,
    StatusVerification,
    VerificationStatus,
)
from listing_scheduler.scheduling.locks import (
    LockTable,
    NamedLock,
    SchedulingLockManager,
    VisionSlotLimiter,
)
from listing_scheduler.scheduling.post_store import PostEntryStore
from listing_scheduler.scheduling.slot_generator import (
    GenerationResult,
    SlotGenerator,
    allocate_weekly_posts,
)
from listing_scheduler.scheduling.content_rotation import ContentRotation
from listing_scheduler.scheduling.run_tracker import RunKind, RunTracker
from listing_scheduler.scheduling.dispatcher import PostDispatcher
from listing_scheduler.scheduling.status_verification import StatusVerificationEngine
from listing_scheduler.scheduling.worker import SchedulerWorker

__all__ = [
    "AspectRatio",
    "BannerType",
    "ListingStatus",
    "LockHandle",
    "Platform",
    "PostEntry",
    "PostStatus",
    "ProcessingRun",
    "PublishRequest",
    "PublishResult",
    "RunStatus",
    "SchedulePhase",
    "ScheduleTemplate",
    "StatusVerification",
    "VerificationStatus",
    "LockTable",
    "NamedLock",
    "SchedulingLockManager",
    "VisionSlotLimiter",
    "PostEntryStore",
    "GenerationResult",
    "SlotGenerator",
    "allocate_weekly_posts",
    "ContentRotation",
    "RunKind",
    "RunTracker",
    "PostDispatcher",
    "StatusVerificationEngine",
    "SchedulerWorker",
]
