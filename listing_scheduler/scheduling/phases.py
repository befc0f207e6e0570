"""
Phase windows and posting frequency for schedule templates.

A template moves forward through phases:

    launch (launch_duration_weeks from started_at)
      -> ongoing (ongoing_duration_weeks after launch)
      -> banner_only (banner_duration_weeks from phase_started_at,
                      entered on a confirmed sale)
      -> ended

``ends_at`` caps every phase.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple, Union

from listing_scheduler.scheduling.models import SchedulePhase, ScheduleTemplate

logger = logging.getLogger(__name__)

_NAMED_FREQUENCIES = {
    "daily": 7,
    "weekly": 1,
    "once_weekly": 1,
    "twice_weekly": 2,
}

_PER_WEEK_PATTERN = re.compile(
    r"^(\d+)(?:x|_per|_times)?[_\s-]*(?:per[_\s-]*|a[_\s-]*)?week(?:ly)?$"
)


def parse_frequency(value: Union[int, str, None]) -> int:
    """Parse a stored frequency into posts per week.

    Accepts integers, digit strings (``"3"``), named cadences
    (``"daily"``, ``"weekly"``, ``"twice_weekly"``) and per-week forms
    (``"3x_week"``, ``"3_per_week"``, ``"3 per week"``).

    Raises:
        ValueError: On empty, negative, or unrecognised values.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Invalid frequency: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"Frequency cannot be negative: {value}")
        return value

    text = str(value).strip().lower()
    if text.isdigit():
        return int(text)
    if text in _NAMED_FREQUENCIES:
        return _NAMED_FREQUENCIES[text]

    match = _PER_WEEK_PATTERN.match(text)
    if match:
        return int(match.group(1))

    raise ValueError(f"Unrecognised frequency: {value!r}")


def frequency_for_phase(template: ScheduleTemplate, phase: SchedulePhase) -> int:
    """Posts per week for *phase*, honouring per-phase overrides."""
    if phase is SchedulePhase.ENDED:
        return 0
    if phase is SchedulePhase.LAUNCH and template.launch_frequency:
        return parse_frequency(template.launch_frequency)
    if phase in (SchedulePhase.ONGOING, SchedulePhase.BANNER_ONLY) and template.ongoing_frequency:
        return parse_frequency(template.ongoing_frequency)
    return parse_frequency(template.frequency)


@dataclass
class PhaseWindows:
    """Absolute UTC boundaries of each phase of one template."""

    launch_start: datetime
    launch_end: datetime
    ongoing_end: datetime
    banner_start: Optional[datetime]
    banner_end: Optional[datetime]
    ends_at: Optional[datetime]

    @classmethod
    def for_template(cls, template: ScheduleTemplate) -> "PhaseWindows":
        launch_end = template.started_at + timedelta(weeks=template.launch_duration_weeks)
        ongoing_end = launch_end + timedelta(weeks=template.ongoing_duration_weeks)
        banner_start = banner_end = None
        if template.current_phase is SchedulePhase.BANNER_ONLY:
            banner_start = template.phase_started_at or template.started_at
            banner_end = banner_start + timedelta(weeks=template.banner_duration_weeks)
        return cls(
            launch_start=template.started_at,
            launch_end=launch_end,
            ongoing_end=ongoing_end,
            banner_start=banner_start,
            banner_end=banner_end,
            ends_at=template.ends_at,
        )

    def phase_at(
        self, instant: datetime, current: SchedulePhase
    ) -> Optional[SchedulePhase]:
        """Phase in effect at *instant*, never earlier than *current*.

        Returns ``None`` when no posting phase covers *instant* (before the
        template started, after it ended).
        """
        if self.ends_at is not None and instant >= self.ends_at:
            return None
        if current is SchedulePhase.ENDED:
            return None
        if current is SchedulePhase.BANNER_ONLY:
            assert self.banner_start is not None and self.banner_end is not None
            if self.banner_start <= instant < self.banner_end:
                return SchedulePhase.BANNER_ONLY
            return None
        if instant < self.launch_start:
            return None
        if instant < self.launch_end:
            return current
        if instant < self.ongoing_end:
            return SchedulePhase.ONGOING
        return None


def advance_phase(
    template: ScheduleTemplate, now: datetime
) -> Tuple[SchedulePhase, Optional[datetime]]:
    """Work out the phase *template* should be in at *now*.

    Only moves forward. ``banner_only`` is never entered here; that takes a
    confirmed sale.

    Returns:
        ``(phase, phase_started_at)``. Both equal the template's current
        values when nothing changed.
    """
    windows = PhaseWindows.for_template(template)
    phase = template.current_phase
    started = template.phase_started_at

    if windows.ends_at is not None and now >= windows.ends_at:
        return SchedulePhase.ENDED, windows.ends_at

    if phase is SchedulePhase.LAUNCH and now >= windows.launch_end:
        phase, started = SchedulePhase.ONGOING, windows.launch_end
    if phase is SchedulePhase.ONGOING and now >= windows.ongoing_end:
        phase, started = SchedulePhase.ENDED, windows.ongoing_end
    if phase is SchedulePhase.BANNER_ONLY:
        assert windows.banner_end is not None
        if now >= windows.banner_end:
            phase, started = SchedulePhase.ENDED, windows.banner_end

    if phase is not template.current_phase:
        logger.info(
            "[SLOTS] Template %s phase %s -> %s",
            template.id,
            template.current_phase.value,
            phase.value,
        )
    return phase, started


__all__ = [
    "parse_frequency",
    "frequency_for_phase",
    "PhaseWindows",
    "advance_phase",
]
