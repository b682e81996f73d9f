"""Tests for missed detection edge cases, the daily rollover and the sweep scheduler."""

import asyncio
import pytest
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock

from core.errors import FatalError
from core.event_store import EventQuery
from core.models import EventType, MedicationStatus
from core.sweeps import DailyRolloverJob, SweepScheduler, seconds_until_hour


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def doses_of(result):
    return [e for e in result.events if e.event_type == EventType.DOSE_SCHEDULED]


@pytest.fixture
def rollover(orchestrator) -> DailyRolloverJob:
    return DailyRolloverJob(orchestrator)


# ===== Missed detection =====


@pytest.mark.asyncio
async def test_dose_taken_during_sweep_counts_as_handled(create_medication, orchestrator, engine, clock, monkeypatch):
    """A dose closed between listing and marking is not marked missed."""
    result = await create_medication()
    stale = await engine.event_store.list_open_doses(utc(2026, 3, 10), utc(2026, 3, 10, 9), 10)

    clock.set(utc(2026, 3, 10, 8, 50))
    await orchestrator.mark_taken(result.command.id, doses_of(result)[0].id)
    monkeypatch.setattr(engine.event_store, "list_open_doses", AsyncMock(return_value=stale))

    detection = await orchestrator.process_missed_medication_detection(now=utc(2026, 3, 10, 9))

    assert detection.missed == 0
    assert detection.already_handled == 1
    assert await orchestrator.get_missed_events("patient_1") == []


@pytest.mark.asyncio
async def test_dose_snoozed_during_sweep_is_not_missed(create_medication, orchestrator, engine, clock, monkeypatch):
    """A snooze committed after listing moves the due time the sweep judged."""
    result = await create_medication()
    dose_id = doses_of(result)[0].id
    stale = await engine.event_store.list_open_doses(utc(2026, 3, 10), utc(2026, 3, 10, 9), 10)

    clock.set(utc(2026, 3, 10, 8, 20))
    await orchestrator.snooze_dose(result.command.id, dose_id, 60)
    monkeypatch.setattr(engine.event_store, "list_open_doses", AsyncMock(return_value=stale))

    detection = await orchestrator.process_missed_medication_detection(now=utc(2026, 3, 10, 8, 40))

    dose = await engine.event_store.get_dose(dose_id)
    assert detection.missed == 0
    assert detection.already_handled == 1
    assert dose.is_open
    assert dose.effective_time == utc(2026, 3, 10, 9, 20)


@pytest.mark.asyncio
async def test_failure_on_one_dose_does_not_stop_the_sweep(create_medication, orchestrator, monkeypatch):
    broken = await create_medication(name="Lisinopril")
    await create_medication(name="Metformin")
    run_atomic = orchestrator.coordinator.run_atomic

    async def flaky(ops, **kwargs):
        if kwargs.get("lock_key") == broken.command.id:
            raise FatalError("store unavailable", transaction_id="txn_test")
        return await run_atomic(ops, **kwargs)

    monkeypatch.setattr(orchestrator.coordinator, "run_atomic", flaky)

    detection = await orchestrator.process_missed_medication_detection(now=utc(2026, 3, 10, 9))

    assert detection.missed == 1
    assert len(detection.errors) == 1
    assert detection.errors[0].startswith(doses_of(broken)[0].id)


# ===== Daily rollover =====


@pytest.mark.asyncio
async def test_rollover_extends_windows_without_duplicates(create_medication, rollover, engine, clock):
    await create_medication(name="Lisinopril")
    await create_medication(name="Metformin")
    clock.set(utc(2026, 3, 11, 2, 0))

    first = await rollover.run()
    second = await rollover.run()

    assert (first.commands_processed, first.doses_generated) == (2, 2)
    assert (second.commands_processed, second.doses_generated) == (2, 0)
    scheduled = await engine.event_store.query(EventQuery(event_types=[EventType.DOSE_SCHEDULED]))
    assert len(scheduled) == 16
    assert len({(e.command_id, e.timing.scheduled_datetime) for e in scheduled}) == 16


@pytest.mark.asyncio
async def test_rollover_skips_prn(create_medication, rollover, daily_schedule, clock):
    await create_medication(name="Ibuprofen", schedule=daily_schedule(frequency="as_needed", times=[]))
    clock.set(utc(2026, 3, 11, 2, 0))

    result = await rollover.run()

    assert result.commands_processed == 0
    assert result.errors == []


@pytest.mark.asyncio
async def test_rollover_resumes_expired_pause(create_medication, orchestrator, rollover, engine, clock):
    result = await create_medication()
    clock.set(utc(2026, 3, 10, 7, 30))
    await orchestrator.change_status(
        result.command.id, MedicationStatus.PAUSED, reason="travel", paused_until=utc(2026, 3, 12, 6, 0)
    )

    clock.set(utc(2026, 3, 11, 7, 0))
    early = await rollover.run()
    clock.set(utc(2026, 3, 12, 7, 0))
    due = await rollover.run()

    command = await orchestrator.get_medication(result.command.id)
    open_doses = await engine.event_store.list_open_doses(utc(2026, 3, 10), utc(2026, 3, 20), 100)

    assert early.auto_resumed == 0
    assert due.auto_resumed == 1
    assert command.status.current == MedicationStatus.ACTIVE
    assert command.status.paused_until is None
    assert command.status.reason == "pause expired"
    assert [d.scheduled.timing.scheduled_datetime.day for d in open_doses] == [12, 13, 14, 15, 16, 17, 18]


@pytest.mark.asyncio
async def test_rollover_completes_ended_schedules(create_medication, orchestrator, rollover, daily_schedule, clock):
    ended = await create_medication(
        name="Amoxicillin",
        schedule=daily_schedule(end_date=date(2026, 3, 11), is_indefinite=False),
    )
    ongoing = await create_medication(name="Lisinopril")
    assert len(doses_of(ended)) == 2

    clock.set(utc(2026, 3, 12, 2, 0))
    result = await rollover.run()

    command = await orchestrator.get_medication(ended.command.id)
    assert result.auto_completed == 1
    assert command.status.current == MedicationStatus.DISCONTINUED
    assert command.status.reason == "completed"
    assert result.commands_processed == 1
    # The finished course's history moves to the archive
    assert result.events_archived == 3
    assert (await orchestrator.get_medication(ongoing.command.id)).status.current == MedicationStatus.ACTIVE


@pytest.mark.asyncio
async def test_rollover_isolates_failures(create_medication, orchestrator, rollover, clock, monkeypatch):
    broken = await create_medication(name="Lisinopril")
    await create_medication(name="Metformin")
    regenerate = orchestrator.regenerate_scheduled_events

    async def flaky(command_id, **kwargs):
        if command_id == broken.command.id:
            raise RuntimeError("store offline")
        return await regenerate(command_id, **kwargs)

    monkeypatch.setattr(orchestrator, "regenerate_scheduled_events", flaky)
    clock.set(utc(2026, 3, 11, 2, 0))

    result = await rollover.run()

    assert result.commands_processed == 1
    assert result.doses_generated == 1
    assert result.errors == [f"{broken.command.id}: store offline"]


@pytest.mark.asyncio
async def test_rollover_archives_old_events(create_medication, rollover, clock):
    await create_medication()
    clock.set(utc(2026, 4, 20, 2, 0))

    result = await rollover.run()

    assert result.events_archived == 8
    assert result.doses_generated == 7


# ===== Scheduler =====


def test_seconds_until_hour():
    assert seconds_until_hour(utc(2026, 3, 10, 7, 0), 2) == 19 * 3600
    assert seconds_until_hour(utc(2026, 3, 10, 1, 30), 2) == 1800
    assert seconds_until_hour(utc(2026, 3, 10, 2, 0), 2) == 24 * 3600


@pytest.mark.asyncio
async def test_scheduler_start_and_stop(orchestrator):
    scheduler = SweepScheduler(orchestrator, detection_interval_minutes=15, rollover_hour=2)

    scheduler.start()
    assert scheduler.running is True

    await scheduler.stop()
    assert scheduler.running is False


@pytest.mark.asyncio
async def test_scheduler_runs_detection_and_survives_errors(orchestrator, monkeypatch):
    calls = []

    async def detection():
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("boom")

    monkeypatch.setattr(orchestrator, "process_missed_medication_detection", detection)
    scheduler = SweepScheduler(orchestrator, detection_interval_minutes=0)

    scheduler.start()
    for _ in range(10):
        await asyncio.sleep(0)
    await scheduler.stop()

    assert len(calls) >= 2
