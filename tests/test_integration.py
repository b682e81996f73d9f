"""Integration tests for full workflows."""

import pytest
import asyncio
import os
import uuid
from datetime import datetime, timezone

from core.container import build_engine
from core.event_store import EventQuery
from core.models import EventType, MedicationInfo, MedicationStatus, Schedule
from settings import Settings


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def doses_of(result):
    return [e for e in result.events if e.event_type == EventType.DOSE_SCHEDULED]


@pytest.mark.asyncio
async def test_full_day_workflow(create_medication, daily_schedule, orchestrator, clock):
    """Test complete workflow: create -> act on doses -> detect -> undo -> report."""
    patient_id = "patient_workflow_test"

    # Step 1: Morning and evening medications
    morning = await create_medication(name="Lisinopril", patient_id=patient_id)
    evening = await create_medication(
        name="Atorvastatin", patient_id=patient_id, schedule=daily_schedule(times=["18:00"])
    )
    morning_dose = doses_of(morning)[0]
    evening_dose = doses_of(evening)[0]

    # Step 2: Morning dose taken on time
    clock.set(utc(2026, 3, 10, 8, 20))
    taken = await orchestrator.mark_taken(morning.command.id, morning_dose.id, taken_by=patient_id)
    assert taken.event.timing.is_on_time is True

    # Step 3: Evening dose snoozed, then forgotten
    clock.set(utc(2026, 3, 10, 17, 55))
    await orchestrator.snooze_dose(evening.command.id, evening_dose.id, 30)
    detection = await orchestrator.process_missed_medication_detection(now=utc(2026, 3, 10, 19, 1))
    assert detection.missed == 1

    buckets = await orchestrator.get_today_buckets(patient_id, now=utc(2026, 3, 10, 19, 5))
    assert {(c.medication_name, c.status) for c in buckets.completed} == {
        ("Lisinopril", EventType.DOSE_TAKEN),
        ("Atorvastatin", EventType.DOSE_MISSED),
    }

    # Step 4: Caregiver corrects the record
    clock.set(utc(2026, 3, 10, 19, 10))
    missed = await orchestrator.get_missed_events(patient_id)
    await orchestrator.undo(evening.command.id, missed[0].id, reason="taken late", undone_by="caregiver_1")
    clock.set(utc(2026, 3, 10, 19, 11))
    late = await orchestrator.mark_taken(
        evening.command.id, evening_dose.id, taken_at=utc(2026, 3, 10, 19, 5), taken_by="caregiver_1"
    )
    assert late.event.timing.is_on_time is False

    # Step 5: Adherence for the day
    metrics = await orchestrator.get_adherence(patient_id, utc(2026, 3, 10), utc(2026, 3, 10, 23, 59))
    assert (metrics.scheduled, metrics.taken, metrics.missed) == (2, 2, 0)
    assert metrics.adherence_rate == 100.0


@pytest.mark.asyncio
async def test_twice_daily_take_then_miss(create_medication, daily_schedule, orchestrator, engine, clock):
    """Twice daily at 08:00 and 20:00: morning taken, evening forgotten."""
    # Step 1: Two doses today
    result = await create_medication(schedule=daily_schedule(frequency="twice_daily", times=["08:00", "20:00"]))
    today = [e for e in doses_of(result) if e.timing.scheduled_datetime.date() == utc(2026, 3, 10).date()]
    assert [e.timing.scheduled_datetime for e in today] == [utc(2026, 3, 10, 8), utc(2026, 3, 10, 20)]
    morning, evening = today

    # Step 2: Morning dose taken at 08:05
    clock.set(utc(2026, 3, 10, 8, 5))
    await orchestrator.mark_taken(result.command.id, morning.id)
    taken = await engine.event_store.query(EventQuery(event_types=[EventType.DOSE_TAKEN]))
    assert [e.context.scheduled_event_id for e in taken] == [morning.id]

    # Step 3: 08:00 is no longer overdue or due
    buckets = await orchestrator.get_today_buckets("patient_1", now=utc(2026, 3, 10, 8, 6))
    pending = buckets.overdue + buckets.due_now
    assert utc(2026, 3, 10, 8) not in [item.scheduled_time for item in pending]
    assert [c.status for c in buckets.completed] == [EventType.DOSE_TAKEN]

    # Step 4: Past 20:45 the evening dose is missed
    detection = await orchestrator.process_missed_medication_detection(now=utc(2026, 3, 10, 20, 46))
    missed = await engine.event_store.query(EventQuery(event_types=[EventType.DOSE_MISSED]))
    assert detection.missed == 1
    assert [e.context.scheduled_event_id for e in missed] == [evening.id]


@pytest.mark.asyncio
async def test_concurrent_takes(create_medication, orchestrator, engine, clock):
    """Several devices marking the same dose produce exactly one DOSE_TAKEN."""
    result = await create_medication()
    dose = doses_of(result)[0]
    clock.set(utc(2026, 3, 10, 8, 5))

    outcomes = await asyncio.gather(*[
        orchestrator.mark_taken(result.command.id, dose.id, taken_by=f"device_{i}")
        for i in range(5)
    ])

    assert sum(not o.already_handled for o in outcomes) == 1
    assert len({o.event.id for o in outcomes}) == 1
    taken = await engine.event_store.query(EventQuery(event_types=[EventType.DOSE_TAKEN]))
    assert len(taken) == 1


@pytest.mark.asyncio
async def test_take_races_missed_detection(create_medication, orchestrator, engine, clock):
    """Whoever wins, the dose ends with exactly one completion."""
    result = await create_medication()
    dose = doses_of(result)[0]
    clock.set(utc(2026, 3, 10, 9, 0))

    take, detection = await asyncio.gather(
        orchestrator.mark_taken(result.command.id, dose.id),
        orchestrator.process_missed_medication_detection(now=utc(2026, 3, 10, 9, 0)),
    )

    state = await engine.event_store.get_dose(dose.id)
    completions = [e for e in state.history if e.is_terminal]
    assert len(completions) == 1
    if take.already_handled:
        assert state.terminal.event_type == EventType.DOSE_MISSED
        assert detection.missed == 1
    else:
        assert state.terminal.event_type == EventType.DOSE_TAKEN
        assert detection.missed == 0


@pytest.mark.asyncio
async def test_pause_resume_cycle(create_medication, orchestrator, engine, clock):
    """Paused days are neither missed nor backfilled."""
    result = await create_medication()
    command_id = result.command.id

    # Step 1: Pause before the first dose
    clock.set(utc(2026, 3, 10, 7, 30))
    await orchestrator.change_status(command_id, MedicationStatus.PAUSED, reason="hospital stay")

    # Step 2: Nothing is missed while paused
    detection = await orchestrator.process_missed_medication_detection(now=utc(2026, 3, 11, 12, 0))
    assert detection.checked == 0

    # Step 3: Resume two days later
    clock.set(utc(2026, 3, 12, 9, 0))
    await orchestrator.change_status(command_id, MedicationStatus.ACTIVE)
    open_doses = await engine.event_store.list_open_doses(utc(2026, 3, 1), utc(2026, 3, 31), 100)
    assert open_doses[0].scheduled.timing.scheduled_datetime == utc(2026, 3, 13, 8)

    # Step 4: Adherence ignores the cancelled doses
    metrics = await orchestrator.get_adherence("patient_1", utc(2026, 3, 10), utc(2026, 3, 12, 23, 59))
    assert metrics.scheduled == 0
    assert metrics.missed == 0

    statuses = await engine.event_store.query(EventQuery(
        command_id=command_id, event_types=[EventType.STATUS_CHANGED]
    ))
    assert [(e.event_data["from"], e.event_data["to"]) for e in statuses] == [
        ("active", "paused"),
        ("paused", "active"),
    ]


@pytest.mark.asyncio
async def test_discontinue_then_recreate(create_medication, orchestrator):
    """A discontinued medication can be prescribed again as a new command."""
    original = await create_medication(name="Metformin")
    await orchestrator.change_status(original.command.id, MedicationStatus.DISCONTINUED, reason="switched")

    replacement = await create_medication(name="Metformin")

    assert replacement.command.id != original.command.id
    active = await orchestrator.list_active_commands("patient_1")
    assert [c.id for c in active] == [replacement.command.id]


@pytest.mark.skipif(not os.getenv("TEST_DATABASE_URL"), reason="TEST_DATABASE_URL not set")
@pytest.mark.asyncio
async def test_postgres_round_trip(clock, notifier):
    """Same workflow against PostgreSQL."""
    settings = Settings(
        storage_backend="postgres",
        database_url=os.environ["TEST_DATABASE_URL"],
        db_pool_min_size=1,
        db_pool_max_size=5,
        transaction_retry_backoff_seconds=0.0,
    )
    engine = build_engine(settings, notifier=notifier, clock=clock)
    await engine.startup()
    patient_id = f"patient_{uuid.uuid4().hex[:8]}"

    try:
        created = await engine.orchestrator.create_medication(
            patient_id=patient_id,
            medication=MedicationInfo(name="Lisinopril", dosage="10mg"),
            schedule=Schedule(frequency="daily", times=["08:00"], start_date=clock().date(), dosage_amount="1 tablet"),
        )
        dose = doses_of(created)[0]

        clock.set(utc(2026, 3, 10, 8, 5))
        first = await engine.orchestrator.mark_taken(created.command.id, dose.id)
        second = await engine.orchestrator.mark_taken(created.command.id, dose.id)
        assert second.already_handled is True
        assert second.event.id == first.event.id

        detection = await engine.orchestrator.process_missed_medication_detection(
            now=utc(2026, 3, 11, 9, 0), patient_id=patient_id
        )
        assert detection.missed == 1

        deleted = await engine.orchestrator.delete_medication(created.command.id, hard=True)
        assert deleted.events_removed == 10
    finally:
        await engine.shutdown()
