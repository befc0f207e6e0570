"""
Slot generator: expands a schedule template into concrete post entries.

For each ISO week (Monday start) the phase's weekly frequency is spread
over the template's posting weekdays by cumulative flooring: day *i* of
*d* gets ``floor(f*(i+1)/d) - floor(f*i/d)`` posts. A full week therefore
receives exactly *f* posts, and a horizon that only covers part of a week
emits the in-horizon days of the same allocation, so overlapping runs
agree on every slot.

Each post of a day owns an equal sub-window of the template's local time
window. The slot sits at the sub-window midpoint plus a uniform jitter
that never leaves the sub-window.

Generation runs under the per-listing scheduling lock and is idempotent:
``(slot_date, slot_index)`` pairs that already have a non-cancelled entry
are skipped.
"""

import logging
import random
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from listing_scheduler.config import Settings, get_settings
from listing_scheduler.exceptions import ConfigurationError, TemplateConfigurationError
from listing_scheduler.logging import ComponentLogger, LogComponent
from listing_scheduler.scheduling.locks import NamedLock, SchedulingLockManager
from listing_scheduler.scheduling.models import (
    Platform,
    PostEntry,
    PostStatus,
    SchedulePhase,
    ScheduleTemplate,
)
from listing_scheduler.scheduling.phases import (
    PhaseWindows,
    advance_phase,
    frequency_for_phase,
    parse_frequency,
)
from listing_scheduler.scheduling.post_store import PostEntryStore
from listing_scheduler.utils import ensure_utc, generate_id, to_iso, utc_now

logger = logging.getLogger(__name__)


def allocate_weekly_posts(frequency: int, day_count: int) -> List[int]:
    """Spread *frequency* posts over *day_count* days by cumulative flooring.

    >>> allocate_weekly_posts(3, 3)
    [1, 1, 1]
    >>> allocate_weekly_posts(2, 3)
    [0, 1, 1]
    >>> allocate_weekly_posts(7, 3)
    [2, 2, 3]
    """
    if day_count <= 0 or frequency <= 0:
        return [0] * max(day_count, 0)
    return [
        (frequency * (i + 1)) // day_count - (frequency * i) // day_count
        for i in range(day_count)
    ]


@dataclass
class GenerationResult:
    """Outcome of one template's generation run."""

    template_id: str
    listing_id: str
    phase: SchedulePhase
    created: List[PostEntry] = field(default_factory=list)
    skipped: int = 0
    deactivated: bool = False

    @property
    def created_count(self) -> int:
        return len(self.created)


class SlotGenerator:
    """Materializes post entries for a rolling horizon.

    Args:
        db: Database client (:class:`~listing_scheduler.database.SchedulerDB`).
        settings: Scheduler settings. Defaults to :func:`get_settings`.
        lock: Per-listing lock. Defaults to a :class:`SchedulingLockManager`.
        rng: Random source for jitter (seed it in tests).
    """

    def __init__(
        self,
        db: Any,
        settings: Optional[Settings] = None,
        lock: Optional[NamedLock] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.lock = lock or SchedulingLockManager(db, self.settings)
        self.store = PostEntryStore(db, self.settings.retry)
        self.rng = rng or random.Random()
        self.log = ComponentLogger(LogComponent.SLOT_GENERATOR)
        try:
            self.tz = ZoneInfo(self.settings.timezone)
        except ZoneInfoNotFoundError as exc:
            raise ConfigurationError(
                f"Unknown timezone '{self.settings.timezone}'"
            ) from exc

    # ================================================================
    # ENTRY POINT
    # ================================================================

    async def generate(
        self,
        template: ScheduleTemplate,
        now: Optional[datetime] = None,
        horizon_days: Optional[int] = None,
        owner: str = "slot_generator",
    ) -> GenerationResult:
        """Generate missing entries for *template* over the horizon.

        Args:
            template: Template to expand.
            now: Override for the current time.
            horizon_days: Override for ``settings.horizon_days``.
            owner: Lock holder name.

        Returns:
            A :class:`GenerationResult`. Empty for inactive templates.

        Raises:
            TemplateConfigurationError: If the template cannot produce
                slots. Nothing is written.
            LockHeldError: If another run is generating for the listing.
        """
        now = now or utc_now()
        horizon_days = horizon_days or self.settings.horizon_days
        result = GenerationResult(
            template_id=template.id,
            listing_id=template.listing_id,
            phase=template.current_phase,
        )

        if not template.is_active:
            logger.debug("[SLOTS] Template %s inactive, nothing to do", template.id)
            return result

        self.validate_template(template)

        async with self.lock.held(template.listing_id, owner, template_id=template.id):
            phase, phase_started_at = advance_phase(template, now)
            if phase is not template.current_phase:
                template.current_phase = phase
                template.phase_started_at = phase_started_at
                await self.db.update_template(template.id, {
                    "current_phase": phase.value,
                    "phase_started_at": to_iso(phase_started_at),
                })
            result.phase = phase

            if phase is SchedulePhase.ENDED:
                await self._deactivate(template, "phases exhausted")
                result.deactivated = True
                return result

            existing = await self.store.get_entries_for_listing(template.listing_id)
            planned = self.plan_slots(template, existing, now, horizon_days)

            own = [e for e in existing if e.template_id == template.id]
            if not template.is_recurring:
                remaining = max((template.total_posts or 0) - len(own), 0)
                planned = planned[:remaining]

            result.created, result.skipped = await self.store.insert_slots(planned)

            if not template.is_recurring:
                total = len(own) + len(result.created)
                if total >= (template.total_posts or 0):
                    await self._deactivate(template, f"all {total} posts scheduled")
                    result.deactivated = True

        logger.info(
            "[SLOTS] Template %s (listing %s, %s): %d created, %d skipped",
            template.id,
            template.listing_id,
            result.phase.value,
            result.created_count,
            result.skipped,
        )
        return result

    # ================================================================
    # VALIDATION
    # ================================================================

    def validate_template(self, template: ScheduleTemplate) -> None:
        """Reject templates that cannot produce slots.

        Raises:
            TemplateConfigurationError: On empty or out-of-range weekdays,
                an empty time window, unparseable frequencies, or a one-off
                template without ``total_posts``.
        """
        if not template.days_of_week:
            raise TemplateConfigurationError(template.id, "days_of_week is empty")
        if any(d < 0 or d > 6 for d in template.days_of_week):
            raise TemplateConfigurationError(
                template.id, f"days_of_week out of range: {template.days_of_week}"
            )
        if template.time_window_end <= template.time_window_start:
            raise TemplateConfigurationError(
                template.id,
                f"time window {template.time_window_start}-{template.time_window_end} is empty",
            )
        overrides = [v for v in (template.launch_frequency, template.ongoing_frequency) if v]
        for value in [template.frequency] + overrides:
            try:
                parse_frequency(value)
            except ValueError as exc:
                raise TemplateConfigurationError(template.id, str(exc)) from exc
        if not template.is_recurring and not template.total_posts:
            raise TemplateConfigurationError(template.id, "one-off template needs total_posts")

    # ================================================================
    # PLANNING (pure)
    # ================================================================

    def plan_slots(
        self,
        template: ScheduleTemplate,
        existing: List[PostEntry],
        now: datetime,
        horizon_days: int,
    ) -> List[PostEntry]:
        """Compute the entries missing from the horizon, in time order.

        Past slots and slots already present in *existing* are omitted.
        """
        taken: Set[Tuple[date, int]] = {
            (e.slot_date, e.slot_index)
            for e in existing
            if e.slot_date is not None and e.status is not PostStatus.CANCELLED
        }
        next_number = max((e.post_number or 0 for e in existing), default=0) + 1
        windows = PhaseWindows.for_template(template)
        platforms = template.platforms or [
            Platform(p) for p in self.settings.default_platforms
        ]

        first_day = now.astimezone(self.tz).date()
        days = [first_day + timedelta(days=offset) for offset in range(horizon_days)]

        planned: List[PostEntry] = []
        for day in days:
            if day.weekday() not in template.days_of_week:
                continue

            day_start = self._local(day, template.time_window_start)
            phase = windows.phase_at(day_start, template.current_phase)
            if phase is None:
                continue

            posts_today = self._posts_on(template, day, phase)
            for slot_index, (start, end, scheduled, jitter) in enumerate(
                self._slot_times(template, day, posts_today)
            ):
                if (day, slot_index) in taken or scheduled <= now:
                    continue
                planned.append(PostEntry(
                    id=generate_id(),
                    listing_id=template.listing_id,
                    organization_id=template.organization_id,
                    scheduled_for=scheduled,
                    template_id=template.id,
                    slot_date=day,
                    slot_index=slot_index,
                    post_number=next_number,
                    jitter_seconds=jitter,
                    time_window_start=start,
                    time_window_end=end,
                    platforms_to_post=list(platforms),
                    phase=phase,
                    is_recurring=template.is_recurring,
                    show_new_banner=template.show_new_banner and phase is SchedulePhase.LAUNCH,
                    banner_type=template.banner_type if phase is SchedulePhase.BANNER_ONLY else None,
                    created_at=now,
                ))
                next_number += 1

        return planned

    def _posts_on(self, template: ScheduleTemplate, day: date, phase: SchedulePhase) -> int:
        """Posts allocated to *day* from its ISO week's allocation."""
        monday = day - timedelta(days=day.weekday())
        week_days = [
            monday + timedelta(days=d) for d in sorted(set(template.days_of_week))
        ]
        allocation = allocate_weekly_posts(
            frequency_for_phase(template, phase), len(week_days)
        )
        return allocation[week_days.index(day)]

    def _slot_times(
        self, template: ScheduleTemplate, day: date, count: int
    ) -> List[Tuple[datetime, datetime, datetime, int]]:
        """Sub-window bounds, jittered time and jitter for each post of *day*.

        All returned datetimes are UTC.
        """
        if count <= 0:
            return []

        window_start = self._local(day, template.time_window_start)
        window_end = self._local(day, template.time_window_end)
        width = (window_end - window_start) / count
        half_seconds = int(width.total_seconds() // 2)
        bound = max(min(self.settings.max_jitter_seconds, half_seconds - 1), 0)

        slots = []
        for i in range(count):
            sub_start = window_start + width * i
            sub_end = sub_start + width
            jitter = self.rng.randint(-bound, bound) if bound else 0
            scheduled = sub_start + width / 2 + timedelta(seconds=jitter)
            slots.append((
                ensure_utc(sub_start),
                ensure_utc(sub_end),
                ensure_utc(scheduled),
                jitter,
            ))
        return slots

    def _local(self, day: date, wall_time: Any) -> datetime:
        return datetime.combine(day, wall_time, tzinfo=self.tz)

    async def _deactivate(self, template: ScheduleTemplate, reason: str) -> None:
        template.is_active = False
        fields: Dict[str, Any] = {"is_active": False}
        if template.current_phase is SchedulePhase.ENDED:
            fields["current_phase"] = SchedulePhase.ENDED.value
        await self.db.update_template(template.id, fields)
        await self.log.info(f"[SLOTS] Template {template.id} deactivated: {reason}")


__all__ = [
    "allocate_weekly_posts",
    "GenerationResult",
    "SlotGenerator",
]
