"""Recurrence expansion of medication schedules into dose instants."""

import calendar
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, List, Optional

from core.models import Frequency, PatientTimePreferences, Schedule
from core.preferences import local_instant, parse_time, slot_for_time

logger = logging.getLogger(__name__)


def resolve_times(schedule: Schedule, preferences: PatientTimePreferences) -> List[time]:
    """
    Local times of day a schedule fires at.

    With use_patient_time_preferences set, each literal time is mapped to
    its named slot and replaced by the patient's preferred time for it.
    """
    resolved = []
    for raw in schedule.times:
        at = parse_time(raw)
        if schedule.use_patient_time_preferences:
            slot = slot_for_time(at, preferences)
            preferred = preferences.slots.get(slot)
            if preferred is not None:
                at = parse_time(preferred.default_time)
        resolved.append(at)
    return sorted(set(resolved))


def _fires_on(schedule: Schedule, day: date) -> bool:
    if schedule.frequency == Frequency.WEEKLY:
        weekdays = schedule.days_of_week or [schedule.start_date.weekday()]
        return day.weekday() in weekdays
    if schedule.frequency == Frequency.MONTHLY:
        last_day = calendar.monthrange(day.year, day.month)[1]
        return day.day == min(schedule.start_date.day, last_day)
    return True


def _in_range(schedule: Schedule, day: date) -> bool:
    if day < schedule.start_date:
        return False
    if schedule.end_date is not None and not schedule.is_indefinite and day > schedule.end_date:
        return False
    return True


def expand(
    schedule: Schedule,
    window_start: date,
    window_end: date,
    preferences: PatientTimePreferences,
    existing: Optional[Iterable[datetime]] = None,
    not_before: Optional[datetime] = None
) -> List[datetime]:
    """
    Expected dose instants of a schedule inside [window_start, window_end].

    Args:
        schedule: Recurrence definition
        window_start: First patient-local day of the window (inclusive)
        window_end: Last patient-local day of the window (inclusive)
        preferences: Patient time-of-day preferences and zone
        existing: Instants that already have a DOSE_SCHEDULED event
        not_before: Drop instants earlier than this (no backfill)

    Returns:
        Ordered, de-duplicated UTC instants
    """
    if schedule.frequency == Frequency.AS_NEEDED:
        return []

    times = resolve_times(schedule, preferences)
    taken = {_normalize(instant) for instant in (existing or [])}
    floor = _normalize(not_before) if not_before is not None else None

    instants = set()
    day = window_start
    while day <= window_end:
        if _in_range(schedule, day) and _fires_on(schedule, day):
            for at in times:
                instant = _normalize(local_instant(day, at, preferences))
                if floor is not None and instant < floor:
                    continue
                if instant in taken:
                    continue
                instants.add(instant)
        day += timedelta(days=1)

    return sorted(instants)


def _normalize(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc).replace(microsecond=0)
