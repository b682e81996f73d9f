"""Grace period calculation for scheduled doses."""

import logging
import math
from datetime import date, datetime, timedelta
from functools import lru_cache
from typing import Iterable, Optional, Tuple, Union, FrozenSet

from core.models import MedicationCommand, MedicationType, PatientTimePreferences, TimeSlot
from core.preferences import patient_zone, slot_for_time

logger = logging.getLogger(__name__)

DEFAULT_GRACE_MINUTES = 30

SLOT_BASE_MINUTES = {
    TimeSlot.MORNING: 30,
    TimeSlot.NOON: 45,
    TimeSlot.EVENING: 30,
    TimeSlot.BEDTIME: 60,
}

# Type overrides replace the slot base; STANDARD keeps it
TYPE_OVERRIDE_MINUTES = {
    MedicationType.CRITICAL: 15,
    MedicationType.VITAMIN: 120,
    MedicationType.PRN: 0,
}

WEEKEND_MULTIPLIER = 1.5
HOLIDAY_MULTIPLIER = 2.0

CRITICAL_KEYWORDS = (
    "insulin", "warfarin", "heparin", "apixaban", "rivaroxaban", "digoxin",
    "levothyroxine", "metoprolol", "carvedilol", "amiodarone", "nitroglycerin",
    "anticoagulant", "blood thinner", "heart", "cardiac",
)

VITAMIN_KEYWORDS = (
    "vitamin", "supplement", "multivitamin", "calcium", "iron", "magnesium",
    "zinc", "omega", "fish oil", "coq10", "biotin", "folic acid", "b12",
)


def _nth_weekday(year: int, month: int, weekday: int, n: int) -> date:
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + timedelta(days=offset + 7 * (n - 1))


def _last_weekday(year: int, month: int, weekday: int) -> date:
    if month == 12:
        last = date(year, 12, 31)
    else:
        last = date(year, month + 1, 1) - timedelta(days=1)
    return last - timedelta(days=(last.weekday() - weekday) % 7)


@lru_cache(maxsize=64)
def us_federal_holidays(year: int) -> FrozenSet[date]:
    """Observed-on-the-day US federal holidays of a year."""
    return frozenset({
        date(year, 1, 1),  # New Year's Day
        _nth_weekday(year, 1, 0, 3),  # Martin Luther King Jr. Day
        _nth_weekday(year, 2, 0, 3),  # Presidents Day
        _last_weekday(year, 5, 0),  # Memorial Day
        date(year, 7, 4),  # Independence Day
        _nth_weekday(year, 9, 0, 1),  # Labor Day
        _nth_weekday(year, 10, 0, 2),  # Columbus Day
        date(year, 11, 11),  # Veterans Day
        _nth_weekday(year, 11, 3, 4),  # Thanksgiving
        date(year, 12, 25),  # Christmas Day
    })


def is_weekend(day: date) -> bool:
    return day.weekday() >= 5


def is_holiday(day: date, extra_holidays: Optional[Iterable[date]] = None) -> bool:
    if day in us_federal_holidays(day.year):
        return True
    return bool(extra_holidays) and day in set(extra_holidays)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _coerce(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return None


def _day_multiplier(day: date, extra_holidays: Optional[Iterable[date]]) -> float:
    multiplier = 1.0
    if is_weekend(day):
        multiplier *= WEEKEND_MULTIPLIER
    if is_holiday(day, extra_holidays):
        multiplier *= HOLIDAY_MULTIPLIER
    return multiplier


def compute_grace_period(
    medication_type: Union[MedicationType, str],
    time_slot: Union[TimeSlot, str],
    scheduled_date: Union[date, datetime],
    holidays: Optional[Iterable[date]] = None
) -> int:
    """
    Grace window in minutes for one dose.

    Slot base (morning 30, noon 45, evening 30, bedtime 60) is replaced by
    the type override (critical 15, vitamin 120, prn 0), then multiplied
    by 1.5 on weekends and 2.0 on holidays. Never raises; unknown slot or
    type values fall back to the 30 minute default.

    Args:
        medication_type: Criticality class of the medication
        time_slot: Named slot of the dose
        scheduled_date: Day (or instant) the dose is scheduled for
        holidays: Extra designated holidays on top of the US federal calendar

    Returns:
        Non-negative whole minutes
    """
    try:
        med_type = _coerce(MedicationType, medication_type)
        slot = _coerce(TimeSlot, time_slot)

        if med_type == MedicationType.PRN:
            return 0

        if med_type in TYPE_OVERRIDE_MINUTES:
            base = TYPE_OVERRIDE_MINUTES[med_type]
        elif slot is not None and med_type is not None:
            base = SLOT_BASE_MINUTES[slot]
        else:
            base = DEFAULT_GRACE_MINUTES

        day = scheduled_date.date() if isinstance(scheduled_date, datetime) else scheduled_date
        return max(0, _round_half_up(base * _day_multiplier(day, holidays)))
    except Exception as e:
        logger.warning(f"Grace period fallback for ({medication_type}, {time_slot}): {e}")
        return DEFAULT_GRACE_MINUTES


def classify_medication_type(name: str, is_prn: bool = False) -> MedicationType:
    """Derive the criticality class from a medication name."""
    if is_prn:
        return MedicationType.PRN
    lowered = (name or "").lower()
    if any(keyword in lowered for keyword in CRITICAL_KEYWORDS):
        return MedicationType.CRITICAL
    if any(keyword in lowered for keyword in VITAMIN_KEYWORDS):
        return MedicationType.VITAMIN
    return MedicationType.STANDARD


def grace_period_for_dose(
    command: MedicationCommand,
    scheduled_at: datetime,
    preferences: PatientTimePreferences,
    holidays: Optional[Iterable[date]] = None
) -> Tuple[int, datetime]:
    """
    Grace minutes and grace end of one dose of a command.

    A per-slot override configured on the command replaces the computed
    base, then the command's default_minutes does for the remaining slots;
    the weekend/holiday multiplier still applies on top of either.
    """
    local = scheduled_at.astimezone(patient_zone(preferences))
    slot = slot_for_time(local.time(), preferences)
    med_type = MedicationType.PRN if command.is_prn else command.grace_period.medication_type

    override = command.grace_period.slot_overrides.get(slot)
    if override is None:
        override = command.grace_period.default_minutes
    if override is not None and med_type != MedicationType.PRN:
        minutes = max(0, _round_half_up(override * _day_multiplier(local.date(), holidays)))
    else:
        minutes = compute_grace_period(med_type, slot, local.date(), holidays)

    return minutes, scheduled_at + timedelta(minutes=minutes)
