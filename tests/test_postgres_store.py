"""Tests for the PostgreSQL stores against a mocked connection."""

import pytest
from contextlib import asynccontextmanager
from datetime import date
from unittest.mock import AsyncMock

from core.command_store import CommandQuery
from core.errors import ValidationError
from core.models import MedicationCommand, MedicationInfo, MedicationStatus, Schedule
from db.postgres_store import PostgresCommandStore


def make_command(name: str) -> MedicationCommand:
    return MedicationCommand(
        patient_id="patient_1",
        medication=MedicationInfo(name=name, dosage="10mg"),
        schedule=Schedule(
            frequency="daily", times=["08:00"], start_date=date(2026, 3, 10), dosage_amount="1 tablet"
        ),
    )


class FakePool:
    """Stands in for DatabasePool; every acquire() yields the same mocked connection."""

    def __init__(self, commands):
        self.conn = AsyncMock()
        self.conn.fetch.return_value = [{"document": c.model_dump_json()} for c in commands]

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


@pytest.fixture
def pool() -> FakePool:
    return FakePool([make_command("Zoloft"), make_command("aspirin"), make_command("Metformin")])


@pytest.mark.asyncio
async def test_multi_field_filter_sorts_in_memory(pool):
    store = PostgresCommandStore(pool)

    commands = await store.list(CommandQuery(
        patient_id="patient_1", status=MedicationStatus.ACTIVE, order_by="name", limit=2
    ))

    assert [c.medication.name for c in commands] == ["aspirin", "Metformin"]
    sql, *args = pool.conn.fetch.call_args.args
    assert "ORDER BY" not in sql
    assert "LIMIT" not in sql
    assert "patient_id = $1 AND status = $2" in sql
    assert args == ["patient_1", "active"]


@pytest.mark.asyncio
async def test_single_filter_sorts_in_sql(pool):
    store = PostgresCommandStore(pool)

    await store.list(CommandQuery(patient_id="patient_1", order_by="name", descending=True, limit=5))

    sql, *args = pool.conn.fetch.call_args.args
    assert sql.endswith("ORDER BY name_key DESC, id LIMIT $2")
    assert args == ["patient_1", 5]


@pytest.mark.asyncio
async def test_unknown_sort_field_is_rejected(pool):
    store = PostgresCommandStore(pool)

    with pytest.raises(ValidationError):
        await store.list(CommandQuery(patient_id="patient_1", is_active=True, order_by="dosage"))
