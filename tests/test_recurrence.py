"""Tests for schedule recurrence expansion."""

from datetime import date, datetime, timezone

from core.models import PatientTimePreferences, Schedule, SlotPreference, TimeSlot
from core.recurrence import expand, resolve_times


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def schedule(**overrides) -> Schedule:
    data = {
        "frequency": "daily",
        "times": ["08:00"],
        "start_date": date(2026, 3, 10),
        "dosage_amount": "1 tablet",
    }
    data.update(overrides)
    return Schedule(**data)


PREFS = PatientTimePreferences(patient_id="patient_1")


def test_daily_expansion():
    instants = expand(schedule(), date(2026, 3, 10), date(2026, 3, 12), PREFS)

    assert instants == [utc(2026, 3, 10, 8), utc(2026, 3, 11, 8), utc(2026, 3, 12, 8)]


def test_multiple_times_are_sorted():
    instants = expand(
        schedule(frequency="twice_daily", times=["20:00", "08:00"]),
        date(2026, 3, 10), date(2026, 3, 10), PREFS
    )

    assert instants == [utc(2026, 3, 10, 8), utc(2026, 3, 10, 20)]


def test_not_before_drops_past_instants():
    instants = expand(
        schedule(), date(2026, 3, 10), date(2026, 3, 11), PREFS, not_before=utc(2026, 3, 10, 9)
    )

    assert instants == [utc(2026, 3, 11, 8)]


def test_existing_instants_are_skipped():
    """Regenerating an already-covered window yields nothing new."""
    first = expand(schedule(), date(2026, 3, 10), date(2026, 3, 16), PREFS)
    second = expand(schedule(), date(2026, 3, 10), date(2026, 3, 16), PREFS, existing=first)

    assert len(first) == 7
    assert second == []


def test_start_and_end_dates_bound_the_window():
    bounded = schedule(start_date=date(2026, 3, 11), end_date=date(2026, 3, 12), is_indefinite=False)

    instants = expand(bounded, date(2026, 3, 10), date(2026, 3, 16), PREFS)

    assert instants == [utc(2026, 3, 11, 8), utc(2026, 3, 12, 8)]


def test_weekly_uses_start_weekday():
    instants = expand(schedule(frequency="weekly"), date(2026, 3, 10), date(2026, 3, 23), PREFS)

    assert instants == [utc(2026, 3, 10, 8), utc(2026, 3, 17, 8)]


def test_weekly_days_of_week():
    instants = expand(
        schedule(frequency="weekly", days_of_week=[0, 4]), date(2026, 3, 10), date(2026, 3, 16), PREFS
    )

    assert instants == [utc(2026, 3, 13, 8), utc(2026, 3, 16, 8)]


def test_monthly_clamps_to_month_end():
    monthly = schedule(frequency="monthly", start_date=date(2026, 1, 31))

    instants = expand(monthly, date(2026, 2, 1), date(2026, 3, 31), PREFS)

    assert instants == [utc(2026, 2, 28, 8), utc(2026, 3, 31, 8)]


def test_as_needed_never_expands():
    prn = schedule(frequency="as_needed", times=[])

    assert expand(prn, date(2026, 3, 10), date(2026, 3, 16), PREFS) == []


def test_patient_time_zone():
    prefs = PatientTimePreferences(patient_id="patient_1", timezone="America/New_York")

    instants = expand(schedule(), date(2026, 3, 10), date(2026, 3, 10), prefs)

    assert instants == [utc(2026, 3, 10, 12)]


def test_patient_time_preferences_replace_slot_times():
    prefs = PatientTimePreferences(patient_id="patient_1")
    prefs.slots[TimeSlot.MORNING] = SlotPreference(default_time="09:00", earliest="06:00", latest="10:59")
    mapped = schedule(times=["07:15"], use_patient_time_preferences=True)

    assert [t.strftime("%H:%M") for t in resolve_times(mapped, prefs)] == ["09:00"]
    assert expand(mapped, date(2026, 3, 10), date(2026, 3, 10), prefs) == [utc(2026, 3, 10, 9)]
