"""Tests for today's dose buckets."""

import pytest
from datetime import date, datetime, timezone

from core.models import EventType, MedicationStatus, PatientTimePreferences, TimeSlot


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def names(items):
    return [item.medication_name for item in items]


@pytest.fixture
async def day_of_medications(create_medication, daily_schedule):
    """One medication per bucket, created at 07:00."""
    created = {}
    for name, at in (
        ("Aspirin", "07:30"),
        ("Lisinopril", "08:00"),
        ("Metformin", "08:30"),
        ("Amlodipine", "12:00"),
        ("Atorvastatin", "18:00"),
        ("Melatonin", "22:00"),
    ):
        created[name] = await create_medication(name=name, schedule=daily_schedule(times=[at]))
    return created


def first_dose(result):
    return next(e for e in result.events if e.event_type == EventType.DOSE_SCHEDULED)


@pytest.mark.asyncio
async def test_doses_are_grouped_by_urgency_and_slot(day_of_medications, orchestrator, clock):
    clock.set(utc(2026, 3, 10, 7, 50))

    buckets = await orchestrator.get_today_buckets("patient_1")

    assert buckets.date == date(2026, 3, 10)
    assert names(buckets.overdue) == ["Aspirin"]
    assert names(buckets.due_now) == ["Lisinopril"]
    assert names(buckets.due_soon) == ["Metformin"]
    assert names(buckets.morning) == []
    assert names(buckets.noon) == ["Amlodipine"]
    assert names(buckets.evening) == ["Atorvastatin"]
    assert names(buckets.bedtime) == ["Melatonin"]
    assert buckets.completed == []

    overdue = buckets.overdue[0]
    assert overdue.minutes_until_due == -20
    assert overdue.grace_period_end == utc(2026, 3, 10, 8, 0)
    assert buckets.due_now[0].minutes_until_due == 10


@pytest.mark.asyncio
async def test_closed_doses_are_completed(day_of_medications, orchestrator, clock):
    clock.set(utc(2026, 3, 10, 7, 50))
    lisinopril = day_of_medications["Lisinopril"]
    await orchestrator.mark_taken(lisinopril.command.id, first_dose(lisinopril).id)
    await orchestrator.process_missed_medication_detection(now=utc(2026, 3, 10, 8, 1))

    buckets = await orchestrator.get_today_buckets("patient_1", now=utc(2026, 3, 10, 8, 2))

    assert buckets.due_now == []
    assert [(c.medication_name, c.status) for c in buckets.completed] == [
        ("Aspirin", EventType.DOSE_MISSED),
        ("Lisinopril", EventType.DOSE_TAKEN),
    ]


@pytest.mark.asyncio
async def test_snoozed_dose_moves_bucket(create_medication, orchestrator, clock):
    result = await create_medication()
    clock.set(utc(2026, 3, 10, 7, 50))
    await orchestrator.snooze_dose(result.command.id, first_dose(result).id, 60)

    buckets = await orchestrator.get_today_buckets("patient_1")

    assert buckets.due_now == []
    item = buckets.morning[0]
    assert item.is_snoozed is True
    assert item.effective_time == utc(2026, 3, 10, 9, 0)
    assert item.scheduled_time == utc(2026, 3, 10, 8, 0)
    assert item.minutes_until_due == 70


@pytest.mark.asyncio
async def test_paused_and_prn_medications_are_left_out(create_medication, orchestrator, daily_schedule, clock):
    paused = await create_medication(name="Lisinopril")
    await create_medication(name="Ibuprofen", schedule=daily_schedule(frequency="as_needed", times=[]))
    await orchestrator.change_status(paused.command.id, MedicationStatus.PAUSED)

    buckets = await orchestrator.get_today_buckets("patient_1")

    for bucket in ("overdue", "due_now", "due_soon", "morning", "noon", "evening", "bedtime", "completed"):
        assert getattr(buckets, bucket) == []


@pytest.mark.asyncio
async def test_buckets_use_patient_local_day(create_medication, orchestrator):
    await orchestrator.save_time_preferences(
        PatientTimePreferences(patient_id="patient_1", timezone="America/New_York")
    )
    await create_medication()

    # 03:00 in New York (daylight time began March 8th)
    buckets = await orchestrator.get_today_buckets("patient_1")

    item = buckets.morning[0]
    assert item.scheduled_time == utc(2026, 3, 10, 12, 0)
    assert item.time_slot == TimeSlot.MORNING
    assert item.minutes_until_due == 300
