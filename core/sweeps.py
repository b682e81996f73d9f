"""Background sweeps: daily rollover and the periodic scheduler driving them."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional

from core.command_store import CommandQuery
from core.models import MedicationStatus, RolloverResult
from core.orchestrator import MedicationOrchestrator
from core.preferences import patient_zone

logger = logging.getLogger(__name__)


class DailyRolloverJob:
    """
    Once-a-day upkeep of every medication.

    Resumes commands whose pause expired, discontinues schedules past
    their end date, extends each active schedule's dose window and
    archives old events. A failure on one command is recorded and the
    job moves on.
    """

    def __init__(self, orchestrator: MedicationOrchestrator):
        self.orchestrator = orchestrator

    async def run(self, now: Optional[datetime] = None) -> RolloverResult:
        now = now or self.orchestrator.clock()
        result = RolloverResult(run_time=now)
        store = self.orchestrator.command_store

        # STEP 1: Pauses that reached their end
        for command in await store.list(CommandQuery(status=MedicationStatus.PAUSED)):
            if command.status.paused_until is None or command.status.paused_until > now:
                continue
            try:
                await self.orchestrator.change_status(
                    command.id, MedicationStatus.ACTIVE, reason="pause expired", changed_by="daily_rollover"
                )
                result.auto_resumed += 1
            except Exception as e:
                logger.error(f"Auto-resume failed for {command.id}: {e}")
                result.errors.append(f"{command.id}: {e}")

        # STEP 2: Schedules past their end date
        active = await store.list(CommandQuery(status=MedicationStatus.ACTIVE, is_prn=False))
        remaining = []
        for command in active:
            schedule = command.schedule
            if schedule.is_indefinite or schedule.end_date is None:
                remaining.append(command)
                continue
            preferences = await self.orchestrator.get_time_preferences(command.patient_id)
            if schedule.end_date >= now.astimezone(patient_zone(preferences)).date():
                remaining.append(command)
                continue
            try:
                await self.orchestrator.change_status(
                    command.id, MedicationStatus.DISCONTINUED, reason="completed", changed_by="daily_rollover"
                )
                result.auto_completed += 1
            except Exception as e:
                logger.error(f"Auto-completion failed for {command.id}: {e}")
                result.errors.append(f"{command.id}: {e}")

        # STEP 3: Extend each dose window
        for command in remaining:
            try:
                created = await self.orchestrator.regenerate_scheduled_events(
                    command.id, now=now, reason="daily_rollover", actor="daily_rollover"
                )
                result.commands_processed += 1
                result.doses_generated += len(created)
            except Exception as e:
                logger.error(f"Rollover failed for {command.id}: {e}")
                result.errors.append(f"{command.id}: {e}")

        # STEP 4: Archive
        try:
            result.events_archived = await self.orchestrator.archive_events(now)
        except Exception as e:
            logger.error(f"Archival failed: {e}")
            result.errors.append(f"archive: {e}")

        logger.info(
            f"Daily rollover: {result.commands_processed} commands, {result.doses_generated} doses, "
            f"{result.auto_resumed} resumed, {result.auto_completed} completed, "
            f"{result.events_archived} archived, {len(result.errors)} errors"
        )
        return result


def seconds_until_hour(now: datetime, hour: int) -> float:
    """Seconds from now until the next occurrence of hour:00 UTC."""
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class SweepScheduler:
    """Runs missed detection every few minutes and the rollover once a day."""

    def __init__(
        self,
        orchestrator: MedicationOrchestrator,
        detection_interval_minutes: int = 15,
        rollover_hour: int = 2
    ):
        self.orchestrator = orchestrator
        self.rollover = DailyRolloverJob(orchestrator)
        self.detection_interval_minutes = detection_interval_minutes
        self.rollover_hour = rollover_hour
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def _loop(self, name: str, delay: Callable[[], float], job: Callable[[], Awaitable]) -> None:
        while True:
            await asyncio.sleep(delay())
            try:
                await job()
            except Exception as e:
                logger.error(f"Sweep {name} failed: {e}")

    def start(self) -> None:
        if self.running:
            return
        interval = self.detection_interval_minutes * 60
        self._tasks = [
            asyncio.create_task(self._loop(
                "missed_detection",
                lambda: interval,
                self.orchestrator.process_missed_medication_detection,
            )),
            asyncio.create_task(self._loop(
                "daily_rollover",
                lambda: seconds_until_hour(self.orchestrator.clock(), self.rollover_hour),
                self.rollover.run,
            )),
        ]
        logger.info(
            f"Sweeps started (detection every {self.detection_interval_minutes} min, "
            f"rollover at {self.rollover_hour:02d}:00 UTC)"
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Sweeps stopped")
