"""Pytest configuration and fixtures."""

import pytest
import os
from datetime import date, datetime, timedelta, timezone
from typing import AsyncGenerator
from unittest.mock import AsyncMock

from httpx import AsyncClient, ASGITransport

# Set test environment
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["ENABLE_BACKGROUND_SWEEPS"] = "false"

from core.container import Engine, build_engine, get_engine
from core.models import MedicationInfo, Schedule
from core.orchestrator import MedicationOrchestrator
from main import app
from settings import Settings

# Tuesday, 07:00 UTC
START = datetime(2026, 3, 10, 7, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable replacement for the UTC clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(START)


@pytest.fixture
def notifier() -> AsyncMock:
    """Notification collaborator mock."""
    mock = AsyncMock()
    mock.send.return_value = {"delivered": 1, "failed": 0}
    return mock


@pytest.fixture
def settings() -> Settings:
    return Settings(
        storage_backend="memory",
        transaction_retry_backoff_seconds=0.0,
        enable_background_sweeps=False,
    )


@pytest.fixture
def engine(settings: Settings, clock: FakeClock, notifier: AsyncMock) -> Engine:
    """In-memory engine driven by the fake clock."""
    return build_engine(settings, notifier=notifier, clock=clock)


@pytest.fixture
def orchestrator(engine: Engine) -> MedicationOrchestrator:
    return engine.orchestrator


@pytest.fixture
def daily_schedule():
    """Factory for schedules starting on the first test day."""
    def make(times=("08:00",), frequency="daily", **overrides) -> Schedule:
        data = {
            "frequency": frequency,
            "times": list(times),
            "start_date": date(2026, 3, 10),
            "dosage_amount": "1 tablet",
        }
        data.update(overrides)
        return Schedule(**data)
    return make


@pytest.fixture
def create_medication(orchestrator: MedicationOrchestrator, daily_schedule):
    """Factory creating a medication through the orchestrator."""
    async def create(name="Lisinopril", patient_id="patient_1", schedule=None, **kwargs):
        return await orchestrator.create_medication(
            patient_id=patient_id,
            medication=MedicationInfo(name=name, dosage="10mg"),
            schedule=schedule or daily_schedule(),
            **kwargs
        )
    return create


@pytest.fixture
async def test_client(engine: Engine) -> AsyncGenerator[AsyncClient, None]:
    """Provide test HTTP client bound to the test engine."""
    app.dependency_overrides[get_engine] = lambda: engine
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
