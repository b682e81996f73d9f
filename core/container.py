"""Wires stores, collaborators and the orchestrator from settings."""

import logging
from dataclasses import dataclass
from typing import Optional

from core.command_store import CommandStore, InMemoryCommandStore
from core.event_store import EventStore, InMemoryEventStore
from core.notifications import LoggingNotifier, Notifier
from core.orchestrator import MedicationOrchestrator
from core.permissions import FamilyAccessPermissions, PermissionChecker
from core.preferences import InMemoryTimePreferencesStore
from core.sweeps import DailyRolloverJob, SweepScheduler
from core.transactions import TransactionCoordinator
from db.pool import DatabasePool
from db.postgres_store import PostgresCommandStore, PostgresEventStore, PostgresTimePreferencesStore
from settings import Settings, load_settings

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    """Everything the API layer and the sweeps need."""

    settings: Settings
    command_store: CommandStore
    event_store: EventStore
    orchestrator: MedicationOrchestrator
    permissions: PermissionChecker
    notifier: Notifier
    rollover: DailyRolloverJob
    scheduler: SweepScheduler
    db_pool: Optional[DatabasePool] = None

    async def startup(self) -> None:
        if self.db_pool is not None:
            await self.db_pool.initialize()
            await self.db_pool.apply_migrations()
        if self.settings.enable_background_sweeps:
            self.scheduler.start()

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        if self.db_pool is not None:
            await self.db_pool.close()


def build_engine(
    settings: Settings,
    notifier: Optional[Notifier] = None,
    permissions: Optional[PermissionChecker] = None,
    clock=None
) -> Engine:
    """
    Build an engine for the configured storage backend.

    Args:
        settings: Application settings
        notifier: Notification collaborator (logs by default)
        permissions: Permission collaborator (family access by default)
        clock: Replacement for the UTC clock, used by tests

    Returns:
        Wired engine; call startup() before use with the postgres backend
    """
    db_pool = None
    if settings.storage_backend == "postgres":
        db_pool = DatabasePool(settings.database_url, settings.db_pool_min_size, settings.db_pool_max_size)
        command_store = PostgresCommandStore(db_pool)
        event_store = PostgresEventStore(db_pool)
        preferences_store = PostgresTimePreferencesStore(db_pool, settings.default_timezone)
    else:
        command_store = InMemoryCommandStore()
        event_store = InMemoryEventStore()
        command_store.register_cascade(event_store.delete_for_command)
        preferences_store = InMemoryTimePreferencesStore(settings.default_timezone)

    notifier = notifier or LoggingNotifier()
    coordinator = TransactionCoordinator(
        max_retries=settings.transaction_max_retries,
        backoff_seconds=settings.transaction_retry_backoff_seconds,
        timeout_seconds=settings.transaction_timeout_seconds,
    )
    orchestrator_kwargs = {"clock": clock} if clock is not None else {}
    orchestrator = MedicationOrchestrator(
        command_store=command_store,
        event_store=event_store,
        coordinator=coordinator,
        preferences_store=preferences_store,
        notifier=notifier,
        window_days=settings.schedule_window_days,
        detection_batch_size=settings.missed_detection_batch_size,
        detection_lookback_hours=settings.missed_detection_lookback_hours,
        archive_retention_days=settings.archive_retention_days,
        **orchestrator_kwargs
    )

    logger.info(f"Built medication engine with {settings.storage_backend} storage")
    return Engine(
        settings=settings,
        command_store=command_store,
        event_store=event_store,
        orchestrator=orchestrator,
        permissions=permissions or FamilyAccessPermissions(),
        notifier=notifier,
        rollover=DailyRolloverJob(orchestrator),
        scheduler=SweepScheduler(
            orchestrator,
            detection_interval_minutes=settings.missed_detection_interval_minutes,
            rollover_hour=settings.daily_rollover_hour,
        ),
        db_pool=db_pool,
    )


_engine: Optional[Engine] = None


def get_engine() -> Engine:
    """Process-wide engine, built from settings on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine(load_settings())
    return _engine


def set_engine(engine: Optional[Engine]) -> None:
    """Replace (or clear) the process-wide engine."""
    global _engine
    _engine = engine
