"""Medication use cases: command lifecycle, dose actions and schedule upkeep."""

import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from core.adherence import compute_adherence, is_superseded
from core.buckets import build_today_buckets
from core.command_store import CommandQuery, CommandStore, merge_patch
from core.dose_state import fold_doses
from core.errors import ConflictError, NotFoundError, ValidationError
from core.event_store import DOSE_EVENT_TYPES, EventQuery, EventStore
from core.grace_period import classify_medication_type, grace_period_for_dose
from core.models import (
    AdherenceMetrics,
    CommandMetadata,
    ComputedSchedule,
    CreateMedicationResult,
    DeleteMedicationResult,
    DoseActionResult,
    DoseState,
    EventContext,
    EventMetadata,
    EventTiming,
    EventType,
    Frequency,
    GracePeriodConfig,
    MedicationCommand,
    MedicationEvent,
    MedicationInfo,
    MedicationStatus,
    MedicationType,
    MissedDetectionResult,
    NotificationUrgency,
    PatientTimePreferences,
    Reminders,
    Schedule,
    SkipReason,
    StatusInfo,
    TodayBuckets,
    as_utc,
    new_id,
    utcnow,
)
from core.notifications import Notifier, notify_safely
from core.preferences import (
    TimePreferencesStore,
    local_instant,
    patient_zone,
    slot_for_time,
    validate_preferences,
)
from core.recurrence import expand, resolve_times
from core.transactions import (
    AppendEvent,
    AppendOutcome,
    ArchiveEvents,
    CreateCommand,
    DeleteCommand,
    ReplaceCommand,
    StoreWrite,
    TransactionCoordinator,
)
from core.validation import validate_command

logger = logging.getLogger(__name__)

# Allowed command status transitions
LEGAL_TRANSITIONS = {
    MedicationStatus.ACTIVE: {MedicationStatus.PAUSED, MedicationStatus.DISCONTINUED},
    MedicationStatus.PAUSED: {MedicationStatus.ACTIVE, MedicationStatus.DISCONTINUED},
    MedicationStatus.DISCONTINUED: set(),
}

MIN_SNOOZE_MINUTES = 1
MAX_SNOOZE_MINUTES = 480

# Tolerated clock skew for user-supplied "taken at" times
TAKEN_AT_SKEW = timedelta(minutes=5)


def check_transition(current: MedicationStatus, new_status: MedicationStatus) -> None:
    """Raise ConflictError unless current -> new_status is a legal transition."""
    if new_status == current:
        raise ConflictError(f"Medication is already {current.value}")
    if new_status not in LEGAL_TRANSITIONS[current]:
        raise ConflictError(f"Cannot change status from {current.value} to {new_status.value}")


class MedicationOrchestrator:
    """Coordinates the command store, event store and collaborators."""

    def __init__(
        self,
        command_store: CommandStore,
        event_store: EventStore,
        coordinator: TransactionCoordinator,
        preferences_store: TimePreferencesStore,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
        window_days: int = 7,
        detection_batch_size: int = 500,
        detection_lookback_hours: int = 24,
        archive_retention_days: int = 30,
        holidays: Optional[Iterable[date]] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            command_store: Current-state records of medications
            event_store: Append-only dose and lifecycle events
            coordinator: Runs multi-write units atomically
            preferences_store: Patient time-slot preferences
            notifier: Notification collaborator, optional
            clock: Returns the current aware UTC time
            window_days: Days of doses generated ahead
            detection_batch_size: Max open doses examined per detection sweep
            detection_lookback_hours: How far back detection looks
            archive_retention_days: Age after which events are archived
            holidays: Designated holidays on top of the US federal calendar
        """
        self.command_store = command_store
        self.event_store = event_store
        self.coordinator = coordinator
        self.preferences_store = preferences_store
        self.notifier = notifier
        self.clock = clock
        self.window_days = window_days
        self.detection_batch_size = detection_batch_size
        self.detection_lookback_hours = detection_lookback_hours
        self.archive_retention_days = archive_retention_days
        self.holidays = list(holidays or [])

    # ===== Helpers =====

    def _now(self) -> datetime:
        return self.clock()

    async def _preferences(self, patient_id: str) -> PatientTimePreferences:
        return await self.preferences_store.get_preferences(patient_id)

    def _window(
        self,
        preferences: PatientTimePreferences,
        now: datetime,
        start: Optional[date] = None,
        end: Optional[date] = None
    ) -> Tuple[date, date]:
        start = start or now.astimezone(patient_zone(preferences)).date()
        end = end or start + timedelta(days=self.window_days - 1)
        if end < start:
            raise ValidationError("Window end cannot be before window start")
        return start, end

    @staticmethod
    def _day_bounds(
        first: date,
        last: date,
        preferences: PatientTimePreferences
    ) -> Tuple[datetime, datetime]:
        """Instants spanning patient-local days first..last inclusive."""
        lower = local_instant(first, time(0), preferences)
        upper = local_instant(last + timedelta(days=1), time(0), preferences) - timedelta(microseconds=1)
        return lower, upper

    def _computed_schedule(
        self,
        schedule: Schedule,
        preferences: PatientTimePreferences,
        now: datetime
    ) -> ComputedSchedule:
        return ComputedSchedule(
            resolved_times=[t.strftime("%H:%M") for t in resolve_times(schedule, preferences)],
            last_computed_at=now,
            next_recompute_at=now + timedelta(days=1),
        )

    def _scheduled_event(
        self,
        command: MedicationCommand,
        instant: datetime,
        preferences: PatientTimePreferences,
        correlation_id: str,
        now: datetime,
        created_by: str
    ) -> MedicationEvent:
        minutes, grace_end = grace_period_for_dose(command, instant, preferences, self.holidays)
        local = instant.astimezone(patient_zone(preferences))
        return MedicationEvent(
            command_id=command.id,
            patient_id=command.patient_id,
            event_type=EventType.DOSE_SCHEDULED,
            event_data={
                "medication_name": command.medication.name,
                "dosage_amount": command.schedule.dosage_amount,
                "local_time": local.strftime("%H:%M"),
                "time_slot": slot_for_time(local.time(), preferences).value,
            },
            context=EventContext(correlation_id=correlation_id, trigger_source="schedule"),
            timing=EventTiming(
                event_timestamp=now,
                scheduled_datetime=instant,
                grace_period_minutes=minutes,
                grace_period_end=grace_end,
            ),
            metadata=EventMetadata(created_at=now, created_by=created_by),
        )

    @staticmethod
    def _dose_event(
        dose: DoseState,
        event_type: EventType,
        event_data: Dict[str, Any],
        correlation_id: str,
        now: datetime,
        actor: str,
        trigger_source: str = "user_action",
        closes_event_id: Optional[str] = None,
        timing: Optional[Dict[str, Any]] = None
    ) -> MedicationEvent:
        """Event acting on a scheduled dose; it carries the dose's scheduled time."""
        scheduled = dose.scheduled
        return MedicationEvent(
            command_id=scheduled.command_id,
            patient_id=scheduled.patient_id,
            event_type=event_type,
            event_data=event_data,
            context=EventContext(
                correlation_id=correlation_id,
                scheduled_event_id=scheduled.id,
                closes_event_id=closes_event_id,
                trigger_source=trigger_source,
            ),
            timing=EventTiming(
                event_timestamp=now,
                scheduled_datetime=scheduled.timing.scheduled_datetime,
                **(timing or {})
            ),
            metadata=EventMetadata(created_at=now, created_by=actor),
        )

    @staticmethod
    def _command_event(
        command: MedicationCommand,
        event_type: EventType,
        event_data: Dict[str, Any],
        correlation_id: str,
        now: datetime,
        actor: str,
        trigger_source: str = "user_action"
    ) -> MedicationEvent:
        return MedicationEvent(
            command_id=command.id,
            patient_id=command.patient_id,
            event_type=event_type,
            event_data=event_data,
            context=EventContext(correlation_id=correlation_id, trigger_source=trigger_source),
            timing=EventTiming(event_timestamp=now),
            metadata=EventMetadata(created_at=now, created_by=actor),
        )

    async def _reconcile_ops(
        self,
        command: MedicationCommand,
        preferences: PatientTimePreferences,
        now: datetime,
        correlation_id: str,
        window_start: date,
        window_end: date,
        reason: str,
        actor: str
    ) -> Tuple[List[StoreWrite], Dict[str, Any]]:
        """
        Writes bringing a command's future doses in line with its schedule.

        Open future doses the schedule no longer produces are closed with a
        superseded system skip; superseded doses the schedule produces again
        are reinstated with an undo; missing instants get a DOSE_SCHEDULED.
        Nothing earlier than `now` is touched, and an active command keeps
        its doses outside the window.
        """
        active = command.status.current == MedicationStatus.ACTIVE and not command.is_prn
        target = expand(command.schedule, window_start, window_end, preferences, not_before=now) if active else []
        target_set = set(target)
        lower, upper = self._day_bounds(window_start, window_end, preferences)

        events = await self.event_store.query(EventQuery(
            command_id=command.id,
            event_types=DOSE_EVENT_TYPES,
            scheduled_from=now,
        ))
        doses = fold_doses(events)

        ops: List[StoreWrite] = []
        stats = {"added": 0, "superseded": 0, "reinstated": 0}
        existing = set()
        for dose in doses.values():
            instant = dose.scheduled.timing.scheduled_datetime
            existing.add(instant)
            if dose.is_open and instant not in target_set and (not active or lower <= instant <= upper):
                ops.append(AppendEvent(self.event_store, self._dose_event(
                    dose,
                    EventType.DOSE_SKIPPED,
                    {"superseded": True, "skip_reason": reason},
                    correlation_id,
                    now,
                    actor,
                    trigger_source="system",
                )))
                stats["superseded"] += 1
            elif not dose.is_open and is_superseded(dose.terminal) and instant in target_set:
                ops.append(AppendEvent(self.event_store, self._dose_event(
                    dose,
                    EventType.DOSE_UNDO,
                    {"reason": "reinstated", "undone_event_type": dose.terminal.event_type.value},
                    correlation_id,
                    now,
                    actor,
                    trigger_source="system",
                    closes_event_id=dose.terminal.id,
                )))
                stats["reinstated"] += 1

        for instant in target:
            if instant not in existing:
                ops.append(AppendEvent(
                    self.event_store,
                    self._scheduled_event(command, instant, preferences, correlation_id, now, actor)
                ))
                stats["added"] += 1

        stats.update({
            "reason": reason,
            "window_start": window_start.isoformat(),
            "window_end": window_end.isoformat(),
        })
        return ops, stats

    def _regenerated_event(
        self,
        command: MedicationCommand,
        stats: Dict[str, Any],
        correlation_id: str,
        now: datetime,
        actor: str
    ) -> MedicationEvent:
        return self._command_event(
            command, EventType.SCHEDULE_REGENERATED, stats, correlation_id, now, actor, trigger_source="system"
        )

    async def _notify(
        self,
        command: MedicationCommand,
        event_name: str,
        urgency: NotificationUrgency,
        extra: Optional[Dict[str, Any]] = None
    ) -> None:
        if not command.reminders.enabled:
            return
        context = {
            "event": event_name,
            "command_id": command.id,
            "patient_id": command.patient_id,
            "medication_name": command.medication.name,
            "dosage": command.medication.dosage,
            "channels": command.reminders.notification_channels,
        }
        context.update(extra or {})
        await notify_safely(self.notifier, [command.patient_id], context, urgency)

    # ===== Medication lifecycle =====

    async def create_medication(
        self,
        patient_id: str,
        medication: MedicationInfo,
        schedule: Schedule,
        reminders: Optional[Reminders] = None,
        grace_period: Optional[GracePeriodConfig] = None,
        is_prn: bool = False,
        created_by: str = "system",
        correlation_id: Optional[str] = None
    ) -> CreateMedicationResult:
        """
        Create a medication command and its initial schedule in one unit.

        Scheduled medications get a SCHEDULE_CREATED event and one
        DOSE_SCHEDULED per dose in the initial window (nothing before now).
        PRN medications get a STATUS_CHANGED "created" event and no doses.

        Args:
            patient_id: Patient the medication belongs to
            medication: Name, dosage and other facts
            schedule: Recurrence definition
            reminders: Reminder configuration, defaults when omitted
            grace_period: Grace configuration; its type is derived from the
                name when omitted
            is_prn: As-needed medication
            created_by: Acting user
            correlation_id: Request correlation id

        Returns:
            Stored command and the events written with it

        Raises:
            ValidationError: If the command breaks an invariant
            ConflictError: If the patient already has this medication active
        """
        now = self._now()
        correlation_id = correlation_id or new_id("corr")
        is_prn = is_prn or schedule.frequency == Frequency.AS_NEEDED

        if grace_period is None:
            grace_period = GracePeriodConfig(medication_type=classify_medication_type(medication.name, is_prn))
        elif is_prn:
            grace_period = grace_period.model_copy(update={"medication_type": MedicationType.PRN})

        command = MedicationCommand(
            patient_id=patient_id,
            medication=medication,
            schedule=schedule.model_copy(deep=True),
            reminders=reminders or Reminders(),
            grace_period=grace_period,
            status=StatusInfo(is_prn=is_prn, last_status_change=now),
            metadata=CommandMetadata(created_at=now, updated_at=now, created_by=created_by),
        )
        validate_command(command)

        preferences = await self._preferences(patient_id)
        ops: List[StoreWrite] = []

        if is_prn:
            ops.append(CreateCommand(self.command_store, command))
            ops.append(AppendEvent(self.event_store, self._command_event(
                command,
                EventType.STATUS_CHANGED,
                {"from": None, "to": MedicationStatus.ACTIVE.value, "reason": "created", "is_prn": True},
                correlation_id,
                now,
                created_by,
            )))
        else:
            command.schedule.computed_schedule = self._computed_schedule(command.schedule, preferences, now)
            ops.append(CreateCommand(self.command_store, command))
            window_start, window_end = self._window(preferences, now)
            instants = expand(command.schedule, window_start, window_end, preferences, not_before=now)
            ops.append(AppendEvent(self.event_store, self._command_event(
                command,
                EventType.SCHEDULE_CREATED,
                {
                    "frequency": command.schedule.frequency.value,
                    "times": command.schedule.times,
                    "window_start": window_start.isoformat(),
                    "window_end": window_end.isoformat(),
                    "doses": len(instants),
                },
                correlation_id,
                now,
                created_by,
            )))
            for instant in instants:
                ops.append(AppendEvent(
                    self.event_store,
                    self._scheduled_event(command, instant, preferences, correlation_id, now, created_by)
                ))

        result = await self.coordinator.run_atomic(
            ops, correlation_id=correlation_id, label="create_medication", lock_key=command.id
        )
        stored = result.results[0]
        events = [outcome.event for outcome in result.results[1:]]
        logger.info(
            f"Created medication {stored.id} ({stored.medication.name}) for patient {patient_id} "
            f"with {len(events) - 1} scheduled doses"
        )

        await self._notify(stored, "medication_created", NotificationUrgency.LOW)
        return CreateMedicationResult(command=stored, events=events)

    async def get_medication(self, command_id: str) -> MedicationCommand:
        return await self.command_store.get(command_id)

    async def list_medications(self, query: CommandQuery) -> List[MedicationCommand]:
        return await self.command_store.list(query)

    async def list_active_commands(self, patient_id: Optional[str] = None) -> List[MedicationCommand]:
        return await self.command_store.list(CommandQuery(patient_id=patient_id, is_active=True))

    async def update_schedule(
        self,
        command_id: str,
        patch: Dict[str, Any],
        updated_by: str = "system",
        correlation_id: Optional[str] = None
    ) -> MedicationCommand:
        """
        Patch the schedule and reconcile future doses in the same unit.

        Past doses are left as they are.

        Raises:
            ValidationError: If the patched schedule is invalid
            NotFoundError: If the command does not exist
        """
        now = self._now()
        correlation_id = correlation_id or new_id("corr")
        current = await self.command_store.get(command_id)
        preferences = await self._preferences(current.patient_id)

        def mutate(command: MedicationCommand) -> MedicationCommand:
            updated = merge_patch(command, "schedule", patch, updated_by, now)
            updated.schedule.computed_schedule = self._computed_schedule(updated.schedule, preferences, now)
            return updated

        preview = mutate(current)
        window_start, window_end = self._window(preferences, now)
        dose_ops, stats = await self._reconcile_ops(
            preview, preferences, now, correlation_id, window_start, window_end, "schedule_changed", updated_by
        )

        ops: List[StoreWrite] = [ReplaceCommand(self.command_store, command_id, mutate, "update schedule of")]
        ops.extend(dose_ops)
        if dose_ops:
            ops.append(AppendEvent(
                self.event_store, self._regenerated_event(preview, stats, correlation_id, now, updated_by)
            ))

        result = await self.coordinator.run_atomic(
            ops, correlation_id=correlation_id, label="update_schedule", lock_key=command_id
        )
        logger.info(
            f"Updated schedule of {command_id}: +{stats['added']} doses, "
            f"{stats['superseded']} superseded, {stats['reinstated']} reinstated"
        )
        return result.results[0]

    async def _update_group(
        self,
        command_id: str,
        group: str,
        patch: Dict[str, Any],
        updated_by: str,
        correlation_id: Optional[str]
    ) -> MedicationCommand:
        now = self._now()
        op = ReplaceCommand(
            self.command_store,
            command_id,
            lambda command: merge_patch(command, group, patch, updated_by, now),
            f"update {group} of",
        )
        result = await self.coordinator.run_atomic(
            [op], correlation_id=correlation_id, label=f"update_{group}", lock_key=command_id
        )
        return result.results[0]

    async def update_medication_info(
        self,
        command_id: str,
        patch: Dict[str, Any],
        updated_by: str = "system",
        correlation_id: Optional[str] = None
    ) -> MedicationCommand:
        return await self._update_group(command_id, "medication", patch, updated_by, correlation_id)

    async def update_reminders(
        self,
        command_id: str,
        patch: Dict[str, Any],
        updated_by: str = "system",
        correlation_id: Optional[str] = None
    ) -> MedicationCommand:
        return await self._update_group(command_id, "reminders", patch, updated_by, correlation_id)

    async def update_grace_period(
        self,
        command_id: str,
        patch: Dict[str, Any],
        updated_by: str = "system",
        correlation_id: Optional[str] = None
    ) -> MedicationCommand:
        return await self._update_group(command_id, "grace_period", patch, updated_by, correlation_id)

    async def change_status(
        self,
        command_id: str,
        new_status: MedicationStatus,
        reason: Optional[str] = None,
        paused_until: Optional[datetime] = None,
        changed_by: str = "system",
        correlation_id: Optional[str] = None
    ) -> MedicationCommand:
        """
        Move a command through ACTIVE / PAUSED / DISCONTINUED.

        Pausing or discontinuing closes future open doses as superseded;
        resuming regenerates doses from now on, without backfilling the
        paused interval.

        Raises:
            ConflictError: If the transition is not allowed
            ValidationError: If paused_until is not in the future
        """
        now = self._now()
        correlation_id = correlation_id or new_id("corr")
        current = await self.command_store.get(command_id)
        check_transition(current.status.current, new_status)

        paused_until = as_utc(paused_until)
        if paused_until is not None:
            if new_status != MedicationStatus.PAUSED:
                raise ValidationError("paused_until is only valid when pausing")
            if paused_until <= now:
                raise ValidationError("paused_until must be in the future")

        preferences = await self._preferences(current.patient_id)
        local_today = now.astimezone(patient_zone(preferences)).date()
        status_patch = {
            "current": new_status,
            "is_active": new_status != MedicationStatus.DISCONTINUED,
            "last_status_change": now,
            "reason": reason,
            "paused_until": paused_until if new_status == MedicationStatus.PAUSED else None,
            "discontinue_date": local_today if new_status == MedicationStatus.DISCONTINUED else None,
        }

        def mutate(command: MedicationCommand) -> MedicationCommand:
            check_transition(command.status.current, new_status)
            return merge_patch(command, "status", status_patch, changed_by, now)

        preview = mutate(current)
        ops: List[StoreWrite] = [
            ReplaceCommand(self.command_store, command_id, mutate, f"{new_status.value}"),
            AppendEvent(self.event_store, self._command_event(
                preview,
                EventType.STATUS_CHANGED,
                {
                    "from": current.status.current.value,
                    "to": new_status.value,
                    "reason": reason,
                    "paused_until": paused_until.isoformat() if paused_until else None,
                },
                correlation_id,
                now,
                changed_by,
            )),
        ]

        if not preview.is_prn:
            window_start, window_end = self._window(preferences, now)
            dose_ops, stats = await self._reconcile_ops(
                preview, preferences, now, correlation_id, window_start, window_end,
                f"status_{new_status.value}", changed_by
            )
            ops.extend(dose_ops)
            if dose_ops:
                ops.append(AppendEvent(
                    self.event_store, self._regenerated_event(preview, stats, correlation_id, now, changed_by)
                ))

        result = await self.coordinator.run_atomic(
            ops, correlation_id=correlation_id, label="change_status", lock_key=command_id
        )
        updated = result.results[0]
        logger.info(
            f"Medication {command_id} {current.status.current.value} -> {new_status.value}"
            f"{f' ({reason})' if reason else ''}"
        )

        await self._notify(updated, f"medication_{new_status.value}", NotificationUrgency.LOW, {"reason": reason})
        return updated

    async def delete_medication(
        self,
        command_id: str,
        hard: bool = False,
        reason: Optional[str] = None,
        deleted_by: str = "system",
        correlation_id: Optional[str] = None
    ) -> DeleteMedicationResult:
        """
        Soft delete discontinues the command and keeps its history; hard
        delete removes the command and every event that references it.
        """
        if not hard:
            command = await self.command_store.get(command_id)
            if command.status.current != MedicationStatus.DISCONTINUED:
                command = await self.change_status(
                    command_id,
                    MedicationStatus.DISCONTINUED,
                    reason=reason or "deleted",
                    changed_by=deleted_by,
                    correlation_id=correlation_id,
                )
            return DeleteMedicationResult(command_id=command_id, hard=False, command=command)

        op = DeleteCommand(self.command_store, self.event_store, command_id)
        await self.coordinator.run_atomic(
            [op], correlation_id=correlation_id, label="delete_medication", lock_key=command_id
        )
        logger.warning(
            f"Hard-deleted medication {command_id} with {len(op.removed_events)} events (by {deleted_by})"
        )
        return DeleteMedicationResult(
            command_id=command_id,
            hard=True,
            events_removed=len(op.removed_events),
            command=op.deleted,
        )

    # ===== Dose actions =====

    async def _resolve_dose(self, command: MedicationCommand, event_id: str) -> DoseState:
        event = await self.event_store.get(event_id)
        if event.command_id != command.id or event.event_type != EventType.DOSE_SCHEDULED:
            raise NotFoundError(f"Scheduled dose {event_id} not found for medication {command.id}")
        return await self.event_store.get_dose(event.id)

    @staticmethod
    def _already_handled(dose: DoseState) -> DoseActionResult:
        return DoseActionResult(
            event=dose.terminal,
            dose=dose,
            already_handled=True,
            message=f"Dose already {dose.terminal.event_type.value.replace('dose_', '')}",
        )

    async def _append_dose_event(
        self,
        command: MedicationCommand,
        event: MedicationEvent,
        label: str
    ) -> DoseActionResult:
        """Append a terminal or snooze event; losing a race is reported, not raised."""
        scheduled_id = event.context.scheduled_event_id
        try:
            result = await self.coordinator.run_atomic(
                [AppendEvent(self.event_store, event)],
                correlation_id=event.context.correlation_id,
                label=label,
                lock_key=command.id,
            )
        except ConflictError:
            dose = await self.event_store.get_dose(scheduled_id)
            if dose.terminal is None:
                raise
            logger.info(f"{label} on {scheduled_id} lost to {dose.terminal.event_type.value}")
            return self._already_handled(dose)

        outcome: AppendOutcome = result.results[0]
        dose = await self.event_store.get_dose(scheduled_id)
        return DoseActionResult(
            event=outcome.event,
            dose=dose,
            already_handled=not outcome.created,
            message="" if outcome.created else "Request already applied",
        )

    async def mark_taken(
        self,
        command_id: str,
        event_id: str,
        taken_at: Optional[datetime] = None,
        notes: Optional[str] = None,
        taken_by: str = "system",
        correlation_id: Optional[str] = None
    ) -> DoseActionResult:
        """
        Close a scheduled dose as taken.

        A dose already closed (taken, missed or skipped) is reported back
        with already_handled=True instead of failing.

        Raises:
            NotFoundError: If event_id is not a scheduled dose of the command
            ValidationError: For PRN medications or a future taken_at
        """
        now = self._now()
        command = await self.command_store.get(command_id)
        if command.is_prn:
            raise ValidationError("As-needed medications are logged, not marked taken")
        dose = await self._resolve_dose(command, event_id)
        if not dose.is_open:
            return self._already_handled(dose)

        taken_at = as_utc(taken_at) or now
        if taken_at > now + TAKEN_AT_SKEW:
            raise ValidationError("taken_at cannot be in the future")

        preferences = await self._preferences(command.patient_id)
        grace_minutes, grace_end = grace_period_for_dose(command, dose.effective_time, preferences, self.holidays)
        minutes_late = max(0, int((taken_at - dose.effective_time).total_seconds() // 60))

        event = self._dose_event(
            dose,
            EventType.DOSE_TAKEN,
            {"taken_at": taken_at.isoformat(), "notes": notes, "taken_by": taken_by},
            correlation_id or new_id("corr"),
            now,
            taken_by,
            timing={
                "grace_period_minutes": grace_minutes,
                "grace_period_end": grace_end,
                "minutes_late": minutes_late,
                "is_on_time": taken_at <= grace_end,
            },
        )
        return await self._append_dose_event(command, event, "mark_taken")

    async def skip_dose(
        self,
        command_id: str,
        event_id: str,
        reason: SkipReason = SkipReason.OTHER,
        notes: Optional[str] = None,
        skipped_by: str = "system",
        correlation_id: Optional[str] = None
    ) -> DoseActionResult:
        now = self._now()
        command = await self.command_store.get(command_id)
        dose = await self._resolve_dose(command, event_id)
        if not dose.is_open:
            return self._already_handled(dose)

        event = self._dose_event(
            dose,
            EventType.DOSE_SKIPPED,
            {"skip_reason": reason.value, "notes": notes},
            correlation_id or new_id("corr"),
            now,
            skipped_by,
        )
        return await self._append_dose_event(command, event, "skip_dose")

    async def snooze_dose(
        self,
        command_id: str,
        event_id: str,
        minutes: int,
        snoozed_by: str = "system",
        correlation_id: Optional[str] = None
    ) -> DoseActionResult:
        """
        Push back an open dose's effective time by `minutes` (1-480).

        The dose keeps its scheduled time; the new target is counted from
        the later of its current effective time and now.
        """
        if not MIN_SNOOZE_MINUTES <= minutes <= MAX_SNOOZE_MINUTES:
            raise ValidationError(
                f"Snooze must be between {MIN_SNOOZE_MINUTES} and {MAX_SNOOZE_MINUTES} minutes"
            )
        now = self._now()
        command = await self.command_store.get(command_id)
        dose = await self._resolve_dose(command, event_id)
        if not dose.is_open:
            return self._already_handled(dose)

        previous = dose.effective_time
        snoozed_until = (max(previous, now) + timedelta(minutes=minutes)).replace(microsecond=0)
        event = self._dose_event(
            dose,
            EventType.DOSE_SNOOZED,
            {
                "snooze_minutes": minutes,
                "snoozed_until": snoozed_until.isoformat(),
                "previous_time": previous.isoformat(),
            },
            correlation_id or new_id("corr"),
            now,
            snoozed_by,
        )
        return await self._append_dose_event(command, event, "snooze_dose")

    async def undo(
        self,
        command_id: str,
        event_id: str,
        reason: Optional[str] = None,
        undone_by: str = "system",
        correlation_id: Optional[str] = None
    ) -> DoseActionResult:
        """
        Reverse the current completion of a dose, reopening it.

        event_id may name either the completion itself or the scheduled dose.

        Raises:
            ConflictError: If the dose has no completion, or event_id is not
                its current one
            ValidationError: If the event cannot be undone
        """
        now = self._now()
        command = await self.command_store.get(command_id)
        event = await self.event_store.get(event_id)
        if event.command_id != command.id:
            raise NotFoundError(f"Event {event_id} not found for medication {command_id}")

        if event.event_type == EventType.DOSE_SCHEDULED:
            dose = await self.event_store.get_dose(event.id)
            if dose.terminal is None:
                raise ConflictError(f"Dose {event.id} has no completion to undo")
        elif event.is_terminal:
            if event.context.scheduled_event_id is None:
                raise ValidationError("As-needed doses cannot be undone")
            dose = await self.event_store.get_dose(event.context.scheduled_event_id)
            if dose.terminal is None or dose.terminal.id != event.id:
                raise ConflictError(f"Event {event.id} is not the current completion of its dose")
        else:
            raise ValidationError(f"{event.event_type.value} events cannot be undone")

        target = dose.terminal
        undo_event = self._dose_event(
            dose,
            EventType.DOSE_UNDO,
            {"reason": reason, "undone_event_type": target.event_type.value},
            correlation_id or new_id("corr"),
            now,
            undone_by,
            closes_event_id=target.id,
        )
        result = await self.coordinator.run_atomic(
            [AppendEvent(self.event_store, undo_event)],
            correlation_id=undo_event.context.correlation_id,
            label="undo",
            lock_key=command_id,
        )
        outcome: AppendOutcome = result.results[0]
        logger.info(f"Undid {target.event_type.value} {target.id} of dose {dose.scheduled.id}")
        return DoseActionResult(
            event=outcome.event,
            dose=await self.event_store.get_dose(dose.scheduled.id),
            already_handled=not outcome.created,
        )

    async def log_prn_dose(
        self,
        command_id: str,
        taken_at: Optional[datetime] = None,
        notes: Optional[str] = None,
        taken_by: str = "system",
        correlation_id: Optional[str] = None
    ) -> MedicationEvent:
        """Record an as-needed dose; it is never scheduled and never missed."""
        now = self._now()
        command = await self.command_store.get(command_id)
        if not command.is_prn:
            raise ValidationError("Only as-needed medications can be logged without a schedule")
        if command.status.current != MedicationStatus.ACTIVE:
            raise ConflictError(f"Medication {command_id} is {command.status.current.value}")

        taken_at = as_utc(taken_at) or now
        if taken_at > now + TAKEN_AT_SKEW:
            raise ValidationError("taken_at cannot be in the future")

        event = self._command_event(
            command,
            EventType.DOSE_TAKEN,
            {"taken_at": taken_at.isoformat(), "notes": notes, "taken_by": taken_by, "prn": True},
            correlation_id or new_id("corr"),
            now,
            taken_by,
        )
        result = await self.coordinator.run_atomic(
            [AppendEvent(self.event_store, event)],
            correlation_id=event.context.correlation_id,
            label="log_prn_dose",
            lock_key=command_id,
        )
        return result.results[0].event

    # ===== Sweeps =====

    async def process_missed_medication_detection(
        self,
        now: Optional[datetime] = None,
        batch_size: Optional[int] = None,
        patient_id: Optional[str] = None
    ) -> MissedDetectionResult:
        """
        Mark open doses whose grace window has ended as missed.

        Looks back `detection_lookback_hours` and examines at most
        `batch_size` open doses. Each dose is its own atomic unit; a dose
        closed concurrently counts as already handled and a failure on one
        dose is recorded without stopping the sweep.
        """
        now = as_utc(now) or self._now()
        batch_size = batch_size or self.detection_batch_size
        result = MissedDetectionResult(detection_time=now)

        doses = await self.event_store.list_open_doses(
            now - timedelta(hours=self.detection_lookback_hours),
            now,
            batch_size,
            patient_id=patient_id,
        )

        commands: Dict[str, Optional[MedicationCommand]] = {}
        preferences: Dict[str, PatientTimePreferences] = {}
        missed: List[Tuple[MedicationCommand, MedicationEvent]] = []

        for dose in doses:
            result.checked += 1
            scheduled = dose.scheduled
            try:
                if scheduled.command_id not in commands:
                    commands[scheduled.command_id] = await self.command_store.find(scheduled.command_id)
                command = commands[scheduled.command_id]
                if command is None or command.is_prn or command.status.current != MedicationStatus.ACTIVE:
                    result.skipped_inactive += 1
                    continue

                if command.patient_id not in preferences:
                    preferences[command.patient_id] = await self._preferences(command.patient_id)
                grace_minutes, grace_end = grace_period_for_dose(
                    command, dose.effective_time, preferences[command.patient_id], self.holidays
                )
                if grace_end >= now:
                    continue

                event = self._dose_event(
                    dose,
                    EventType.DOSE_MISSED,
                    {
                        "detected_at": now.isoformat(),
                        "effective_time": dose.effective_time.isoformat(),
                        "medication_name": command.medication.name,
                    },
                    new_id("corr"),
                    now,
                    "missed_detector",
                    trigger_source="system_detection",
                    timing={"grace_period_minutes": grace_minutes, "grace_period_end": grace_end},
                )
                outcome = (await self.coordinator.run_atomic(
                    [AppendEvent(self.event_store, event)],
                    correlation_id=event.context.correlation_id,
                    label="missed_detection",
                    lock_key=command.id,
                )).results[0]
                if outcome.created:
                    result.missed += 1
                    missed.append((command, outcome.event))
                else:
                    result.already_handled += 1
            except ConflictError:
                result.already_handled += 1
            except Exception as e:
                logger.error(f"Missed detection failed for dose {scheduled.id}: {e}")
                result.errors.append(f"{scheduled.id}: {e}")

        for command, event in missed:
            urgency = (
                NotificationUrgency.HIGH
                if command.grace_period.medication_type == MedicationType.CRITICAL
                else NotificationUrgency.NORMAL
            )
            await self._notify(command, "dose_missed", urgency, {
                "event_id": event.id,
                "scheduled_time": event.timing.scheduled_datetime.isoformat(),
            })

        logger.info(
            f"Missed detection at {now.isoformat()}: checked {result.checked}, "
            f"missed {result.missed}, already handled {result.already_handled}, "
            f"errors {len(result.errors)}"
        )
        return result

    async def regenerate_scheduled_events(
        self,
        command_id: str,
        window_start: Optional[date] = None,
        window_end: Optional[date] = None,
        now: Optional[datetime] = None,
        reason: str = "rollover",
        actor: str = "system",
        correlation_id: Optional[str] = None
    ) -> List[MedicationEvent]:
        """
        Generate the doses missing from a window; never duplicates.

        Returns:
            The DOSE_SCHEDULED events created by this call
        """
        now = as_utc(now) or self._now()
        correlation_id = correlation_id or new_id("corr")
        command = await self.command_store.get(command_id)
        if command.is_prn:
            return []

        preferences = await self._preferences(command.patient_id)
        window_start, window_end = self._window(preferences, now, window_start, window_end)
        ops, stats = await self._reconcile_ops(
            command, preferences, now, correlation_id, window_start, window_end, reason, actor
        )
        if not ops:
            return []

        ops.append(AppendEvent(self.event_store, self._regenerated_event(command, stats, correlation_id, now, actor)))
        result = await self.coordinator.run_atomic(
            ops, correlation_id=correlation_id, label="regenerate_schedule", lock_key=command_id
        )
        created = [
            outcome.event for outcome in result.results
            if outcome.created and outcome.event.event_type == EventType.DOSE_SCHEDULED
        ]
        logger.info(f"Regenerated {len(created)} doses for {command_id} ({window_start} to {window_end})")
        return created

    async def archive_events(self, now: Optional[datetime] = None) -> int:
        """
        Move old events into the archive partition.

        Events older than the retention period move for every command;
        discontinued commands have all their past events moved.

        Returns:
            Number of events archived
        """
        now = as_utc(now) or self._now()
        cutoff = now - timedelta(days=self.archive_retention_days)
        discontinued = await self.command_store.list(CommandQuery(status=MedicationStatus.DISCONTINUED))

        ops: List[StoreWrite] = [ArchiveEvents(self.event_store, cutoff, now)]
        if discontinued:
            ops.append(ArchiveEvents(self.event_store, now, now, [c.id for c in discontinued]))

        result = await self.coordinator.run_atomic(ops, label="archive_events")
        archived = sum(len(moved) for moved in result.results)
        logger.info(f"Archived {archived} events (retention {self.archive_retention_days} days)")
        return archived

    # ===== Read paths =====

    async def query_events(self, query: EventQuery) -> List[MedicationEvent]:
        return await self.event_store.query(query)

    async def get_missed_events(
        self,
        patient_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[MedicationEvent]:
        """Missed doses of a patient that have not been undone."""
        events = await self.event_store.query(EventQuery(
            patient_id=patient_id,
            event_types=[EventType.DOSE_MISSED, EventType.DOSE_UNDO],
            scheduled_from=start,
            scheduled_to=end,
            include_archived=True,
        ))
        undone = {e.context.closes_event_id for e in events if e.event_type == EventType.DOSE_UNDO}
        return [e for e in events if e.event_type == EventType.DOSE_MISSED and e.id not in undone]

    async def get_adherence(
        self,
        patient_id: str,
        start: datetime,
        end: datetime,
        command_id: Optional[str] = None
    ) -> AdherenceMetrics:
        start, end = as_utc(start), as_utc(end)
        if end < start:
            raise ValidationError("Adherence range end cannot be before its start")
        return await compute_adherence(self.event_store, patient_id, start, end, command_id)

    async def get_today_buckets(self, patient_id: str, now: Optional[datetime] = None) -> TodayBuckets:
        now = as_utc(now) or self._now()
        preferences = await self._preferences(patient_id)
        today = now.astimezone(patient_zone(preferences)).date()
        lower, upper = self._day_bounds(today, today, preferences)

        commands = await self.command_store.list(
            CommandQuery(patient_id=patient_id, status=MedicationStatus.ACTIVE)
        )
        events = await self.event_store.query(EventQuery(
            patient_id=patient_id,
            event_types=DOSE_EVENT_TYPES,
            scheduled_from=lower,
            scheduled_to=upper,
        ))
        doses = fold_doses(events)
        return build_today_buckets(patient_id, commands, doses.values(), preferences, now, self.holidays)

    async def get_time_preferences(self, patient_id: str) -> PatientTimePreferences:
        return await self._preferences(patient_id)

    async def save_time_preferences(self, preferences: PatientTimePreferences) -> PatientTimePreferences:
        validate_preferences(preferences)
        return await self.preferences_store.save_preferences(preferences)
