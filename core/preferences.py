"""Patient time-of-day preferences and HH:MM helpers."""

import logging
import re
from datetime import date, datetime, time
from typing import Dict, Optional, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from core.errors import ValidationError
from core.models import PatientTimePreferences, TimeSlot

logger = logging.getLogger(__name__)

TIME_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")


def is_valid_time(value: str) -> bool:
    """Check 24-hour HH:MM format."""
    return bool(TIME_PATTERN.match(value or ""))


def parse_time(value: str) -> time:
    """Parse HH:MM into a time, raising ValidationError on bad input."""
    if not is_valid_time(value):
        raise ValidationError(f"Invalid time format: {value!r} (expected HH:MM)")
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def to_minutes(value: str) -> int:
    t = parse_time(value)
    return t.hour * 60 + t.minute


def patient_zone(preferences: PatientTimePreferences) -> ZoneInfo:
    try:
        return ZoneInfo(preferences.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown time zone {preferences.timezone!r}, falling back to UTC")
        return ZoneInfo("UTC")


def local_instant(day: date, at: time, preferences: PatientTimePreferences) -> datetime:
    """Combine a patient-local day and time into an aware instant."""
    return datetime.combine(day, at, tzinfo=patient_zone(preferences))


def slot_for_time(at: time, preferences: Optional[PatientTimePreferences] = None) -> TimeSlot:
    """
    Classify a local time into a named slot.

    Uses the patient's slot boundaries (overnight ranges allowed); times
    that fall between configured ranges use fixed hour boundaries.
    """
    minutes = at.hour * 60 + at.minute
    if preferences is not None:
        for slot, pref in preferences.slots.items():
            start, end = to_minutes(pref.earliest), to_minutes(pref.latest)
            if start <= end:
                if start <= minutes <= end:
                    return slot
            elif minutes >= start or minutes <= end:
                return slot

    if 6 * 60 <= minutes < 11 * 60:
        return TimeSlot.MORNING
    if 11 * 60 <= minutes < 17 * 60:
        return TimeSlot.NOON
    if 17 * 60 <= minutes < 21 * 60:
        return TimeSlot.EVENING
    return TimeSlot.BEDTIME


def validate_preferences(preferences: PatientTimePreferences) -> None:
    """Reject malformed slot definitions."""
    errors = []
    for slot, pref in preferences.slots.items():
        for label, value in (
            ("default time", pref.default_time),
            ("earliest time", pref.earliest),
            ("latest time", pref.latest),
        ):
            if not is_valid_time(value):
                errors.append(f"Invalid {label} for {slot.value}: {value}")
    try:
        ZoneInfo(preferences.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        errors.append(f"Unknown time zone: {preferences.timezone}")
    if errors:
        raise ValidationError(errors)


class TimePreferencesStore(Protocol):
    """Supplies the named time-slot mapping of a patient."""

    async def get_preferences(self, patient_id: str) -> PatientTimePreferences:
        ...

    async def save_preferences(self, preferences: PatientTimePreferences) -> PatientTimePreferences:
        ...


class InMemoryTimePreferencesStore:
    """Process-local preferences; unknown patients get the standard slots."""

    def __init__(self, default_timezone: str = "UTC"):
        self.default_timezone = default_timezone
        self._preferences: Dict[str, PatientTimePreferences] = {}

    async def get_preferences(self, patient_id: str) -> PatientTimePreferences:
        stored = self._preferences.get(patient_id)
        if stored is not None:
            return stored
        return PatientTimePreferences(patient_id=patient_id, timezone=self.default_timezone)

    async def save_preferences(self, preferences: PatientTimePreferences) -> PatientTimePreferences:
        validate_preferences(preferences)
        self._preferences[preferences.patient_id] = preferences
        logger.info(f"Saved time preferences for patient {preferences.patient_id}")
        return preferences
