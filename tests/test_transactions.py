"""Tests for the transaction coordinator."""

import asyncio
import pytest
from datetime import datetime, timezone

from core.errors import FatalError, TransientStoreError, ValidationError
from core.event_store import EventQuery, InMemoryEventStore
from core.models import EventContext, EventTiming, EventType, MedicationEvent
from core.transactions import AppendEvent, StoreWrite, TransactionCoordinator


class RecordingWrite(StoreWrite):
    """Write that records apply/compensate calls and can fail on demand."""

    def __init__(self, name, log, failures=None, delay=0.0):
        self.name = name
        self.log = log
        self.failures = list(failures or [])
        self.delay = delay

    @property
    def description(self) -> str:
        return f"write {self.name}"

    async def apply(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        self.log.append(f"apply {self.name}")
        return self.name

    async def compensate(self):
        self.log.append(f"compensate {self.name}")


class BrokenCompensation(RecordingWrite):
    async def compensate(self):
        raise RuntimeError("cannot undo")


@pytest.fixture
def coordinator() -> TransactionCoordinator:
    return TransactionCoordinator(max_retries=2, backoff_seconds=0.0, timeout_seconds=1.0)


@pytest.mark.asyncio
async def test_commits_all_writes_in_order(coordinator):
    log = []

    result = await coordinator.run_atomic([RecordingWrite("a", log), RecordingWrite("b", log)])

    assert result.results == ["a", "b"]
    assert result.attempts == 1
    assert log == ["apply a", "apply b"]


@pytest.mark.asyncio
async def test_validation_error_rolls_back_without_retry(coordinator):
    log = []
    failing = RecordingWrite("b", log, failures=[ValidationError("bad input")])

    with pytest.raises(ValidationError):
        await coordinator.run_atomic([RecordingWrite("a", log), failing])

    assert log == ["apply a", "compensate a"]


@pytest.mark.asyncio
async def test_transient_error_retries_whole_unit(coordinator):
    log = []
    flaky = RecordingWrite("b", log, failures=[TransientStoreError("deadlock")])

    result = await coordinator.run_atomic([RecordingWrite("a", log), flaky])

    assert result.attempts == 2
    assert log == ["apply a", "compensate a", "apply a", "apply b"]


@pytest.mark.asyncio
async def test_exhausted_retries_are_fatal(coordinator):
    log = []
    failures = [TransientStoreError("connection reset")] * 3
    flaky = RecordingWrite("a", log, failures=failures)

    with pytest.raises(FatalError) as exc_info:
        await coordinator.run_atomic([flaky], correlation_id="corr_1", label="test_unit")

    assert exc_info.value.correlation_id == "corr_1"
    assert exc_info.value.operations == ["write a"]
    assert exc_info.value.transaction_id.startswith("txn_")


@pytest.mark.asyncio
async def test_unexpected_error_is_fatal_and_rolled_back(coordinator):
    log = []
    broken = RecordingWrite("b", log, failures=[KeyError("boom")])

    with pytest.raises(FatalError):
        await coordinator.run_atomic([RecordingWrite("a", log), broken])

    assert log == ["apply a", "compensate a"]


@pytest.mark.asyncio
async def test_timeout_is_fatal(coordinator):
    log = []
    slow = RecordingWrite("slow", log, delay=5.0)

    with pytest.raises(FatalError) as exc_info:
        await coordinator.run_atomic([RecordingWrite("a", log), slow])

    assert "exceeded" in str(exc_info.value)
    assert log == ["apply a", "compensate a"]


@pytest.mark.asyncio
async def test_failed_compensation_is_fatal(coordinator):
    log = []

    with pytest.raises(FatalError) as exc_info:
        await coordinator.run_atomic([
            BrokenCompensation("a", log),
            RecordingWrite("b", log, failures=[ValidationError("bad")]),
        ])

    assert "manual repair" in str(exc_info.value)


@pytest.mark.asyncio
async def test_deduplicated_append_is_not_compensated(coordinator):
    """Rolling back a unit must not delete an event an earlier unit wrote."""
    store = InMemoryEventStore()
    dose = MedicationEvent(
        command_id="cmd_1",
        patient_id="patient_1",
        event_type=EventType.DOSE_SCHEDULED,
        context=EventContext(correlation_id="corr_1"),
        timing=EventTiming(scheduled_datetime=datetime(2026, 3, 10, 8, tzinfo=timezone.utc)),
    )
    await coordinator.run_atomic([AppendEvent(store, dose)])

    log = []
    with pytest.raises(ValidationError):
        await coordinator.run_atomic([
            AppendEvent(store, dose),
            RecordingWrite("b", log, failures=[ValidationError("bad")]),
        ])

    assert [e.id for e in await store.query(EventQuery())] == [dose.id]


@pytest.mark.asyncio
async def test_lock_key_serializes_units(coordinator):
    log = []

    await asyncio.gather(
        coordinator.run_atomic([RecordingWrite("a1", log, delay=0.05), RecordingWrite("a2", log)], lock_key="cmd_1"),
        coordinator.run_atomic([RecordingWrite("b1", log), RecordingWrite("b2", log)], lock_key="cmd_1"),
    )

    assert log in (
        ["apply a1", "apply a2", "apply b1", "apply b2"],
        ["apply b1", "apply b2", "apply a1", "apply a2"],
    )
