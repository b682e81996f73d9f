"""FastAPI routes for medication management."""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query

from api.schemas import (
    CreateMedicationRequest,
    EventListResponse,
    GracePeriodPatch,
    MedicationInfoPatch,
    MedicationListResponse,
    MissedDetectionRequest,
    PrnDoseRequest,
    RemindersPatch,
    SchedulePatch,
    SkipDoseRequest,
    SnoozeDoseRequest,
    StatusChangeRequest,
    TakeDoseRequest,
    UndoRequest,
)
from core.command_store import CommandQuery
from core.container import Engine, get_engine
from core.event_store import EventQuery
from core.models import (
    AdherenceMetrics,
    CreateMedicationResult,
    DeleteMedicationResult,
    DoseActionResult,
    EventType,
    MedicationCommand,
    MedicationEvent,
    MedicationStatus,
    MissedDetectionResult,
    PatientTimePreferences,
    RolloverResult,
    TodayBuckets,
)
from core.permissions import Action, require_permission

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["medications"])

# Pseudo patient id used to authorize sweeps over every patient
ALL_PATIENTS = "*"


async def acting_user(x_user_id: str = Header(..., alias="X-User-Id", min_length=1)) -> str:
    """Id of the user making the request."""
    return x_user_id


async def authorize_command(engine: Engine, user_id: str, command_id: str, action: Action) -> MedicationCommand:
    """Load a command and check the user may act on its patient."""
    command = await engine.orchestrator.get_medication(command_id)
    await require_permission(engine.permissions, user_id, command.patient_id, action)
    return command


# ===== Medications =====


@router.post("/medications", response_model=CreateMedicationResult, status_code=201)
async def create_medication(
    request: CreateMedicationRequest,
    user_id: str = Depends(acting_user),
    engine: Engine = Depends(get_engine)
) -> CreateMedicationResult:
    """
    Add a medication for a patient.

    Creates the command and, for scheduled medications, the doses of the
    initial window in one atomic unit.

    - **patient_id**: Patient the medication belongs to
    - **medication**: Name, dosage and other facts
    - **schedule**: Frequency, HH:MM times, start/end dates
    - **is_prn**: As-needed medication (no schedule, never missed)
    """
    await require_permission(engine.permissions, user_id, request.patient_id, Action.MANAGE)
    return await engine.orchestrator.create_medication(
        patient_id=request.patient_id,
        medication=request.medication,
        schedule=request.schedule,
        reminders=request.reminders,
        grace_period=request.grace_period,
        is_prn=request.is_prn,
        created_by=user_id,
    )


@router.get("/patients/{patient_id}/medications", response_model=MedicationListResponse)
async def list_medications(
    patient_id: str,
    is_active: Optional[bool] = None,
    status: Optional[MedicationStatus] = None,
    order_by: Optional[str] = Query(default=None, description="name, created_at, updated_at, start_date or status"),
    descending: bool = False,
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    user_id: str = Depends(acting_user),
    engine: Engine = Depends(get_engine)
) -> MedicationListResponse:
    """List a patient's medications with optional filters and ordering."""
    await require_permission(engine.permissions, user_id, patient_id, Action.VIEW)
    medications = await engine.orchestrator.list_medications(CommandQuery(
        patient_id=patient_id,
        is_active=is_active,
        status=status,
        order_by=order_by,
        descending=descending,
        limit=limit,
    ))
    return MedicationListResponse(medications=medications, total=len(medications))


@router.get("/medications/{command_id}", response_model=MedicationCommand)
async def get_medication(
    command_id: str,
    user_id: str = Depends(acting_user),
    engine: Engine = Depends(get_engine)
) -> MedicationCommand:
    return await authorize_command(engine, user_id, command_id, Action.VIEW)


@router.patch("/medications/{command_id}/medication", response_model=MedicationCommand)
async def update_medication_info(
    command_id: str,
    request: MedicationInfoPatch,
    user_id: str = Depends(acting_user),
    engine: Engine = Depends(get_engine)
) -> MedicationCommand:
    await authorize_command(engine, user_id, command_id, Action.MANAGE)
    return await engine.orchestrator.update_medication_info(
        command_id, request.model_dump(exclude_unset=True), updated_by=user_id
    )


@router.patch("/medications/{command_id}/schedule", response_model=MedicationCommand)
async def update_schedule(
    command_id: str,
    request: SchedulePatch,
    user_id: str = Depends(acting_user),
    engine: Engine = Depends(get_engine)
) -> MedicationCommand:
    """
    Patch the schedule.

    Future open doses that no longer match are closed as superseded and
    the new schedule's doses are generated; past doses are untouched.
    """
    await authorize_command(engine, user_id, command_id, Action.MANAGE)
    return await engine.orchestrator.update_schedule(
        command_id, request.model_dump(exclude_unset=True), updated_by=user_id
    )


@router.patch("/medications/{command_id}/reminders", response_model=MedicationCommand)
async def update_reminders(
    command_id: str,
    request: RemindersPatch,
    user_id: str = Depends(acting_user),
    engine: Engine = Depends(get_engine)
) -> MedicationCommand:
    await authorize_command(engine, user_id, command_id, Action.MANAGE)
    return await engine.orchestrator.update_reminders(
        command_id, request.model_dump(exclude_unset=True), updated_by=user_id
    )


@router.patch("/medications/{command_id}/grace-period", response_model=MedicationCommand)
async def update_grace_period(
    command_id: str,
    request: GracePeriodPatch,
    user_id: str = Depends(acting_user),
    engine: Engine = Depends(get_engine)
) -> MedicationCommand:
    await authorize_command(engine, user_id, command_id, Action.MANAGE)
    return await engine.orchestrator.update_grace_period(
        command_id, request.model_dump(exclude_unset=True), updated_by=user_id
    )


@router.patch("/medications/{command_id}/status", response_model=MedicationCommand)
async def change_status(
    command_id: str,
    request: StatusChangeRequest,
    user_id: str = Depends(acting_user),
    engine: Engine = Depends(get_engine)
) -> MedicationCommand:
    """
    Pause, resume or discontinue a medication.

    - **status**: active, paused or discontinued
    - **paused_until**: Optional automatic resume time when pausing
    """
    await authorize_command(engine, user_id, command_id, Action.MANAGE)
    return await engine.orchestrator.change_status(
        command_id,
        request.status,
        reason=request.reason,
        paused_until=request.paused_until,
        changed_by=user_id,
    )


@router.delete("/medications/{command_id}", response_model=DeleteMedicationResult)
async def delete_medication(
    command_id: str,
    hard: bool = Query(default=False, description="Remove the medication and all its events"),
    reason: Optional[str] = None,
    user_id: str = Depends(acting_user),
    engine: Engine = Depends(get_engine)
) -> DeleteMedicationResult:
    await authorize_command(engine, user_id, command_id, Action.MANAGE)
    return await engine.orchestrator.delete_medication(
        command_id, hard=hard, reason=reason, deleted_by=user_id
    )


# ===== Dose actions =====


@router.post("/medications/{command_id}/events/{event_id}/take", response_model=DoseActionResult)
async def take_dose(
    command_id: str,
    event_id: str,
    request: Optional[TakeDoseRequest] = None,
    user_id: str = Depends(acting_user),
    engine: Engine = Depends(get_engine)
) -> DoseActionResult:
    """
    Mark a scheduled dose as taken.

    Returns already_handled=true when the dose was closed before.
    """
    await authorize_command(engine, user_id, command_id, Action.RECORD_DOSE)
    request = request or TakeDoseRequest()
    return await engine.orchestrator.mark_taken(
        command_id, event_id, taken_at=request.taken_at, notes=request.notes, taken_by=user_id
    )


@router.post("/medications/{command_id}/events/{event_id}/undo", response_model=DoseActionResult)
async def undo_dose(
    command_id: str,
    event_id: str,
    request: Optional[UndoRequest] = None,
    user_id: str = Depends(acting_user),
    engine: Engine = Depends(get_engine)
) -> DoseActionResult:
    await authorize_command(engine, user_id, command_id, Action.RECORD_DOSE)
    request = request or UndoRequest()
    return await engine.orchestrator.undo(command_id, event_id, reason=request.reason, undone_by=user_id)


@router.post("/medications/{command_id}/events/{event_id}/skip", response_model=DoseActionResult)
async def skip_dose(
    command_id: str,
    event_id: str,
    request: Optional[SkipDoseRequest] = None,
    user_id: str = Depends(acting_user),
    engine: Engine = Depends(get_engine)
) -> DoseActionResult:
    await authorize_command(engine, user_id, command_id, Action.RECORD_DOSE)
    request = request or SkipDoseRequest()
    return await engine.orchestrator.skip_dose(
        command_id, event_id, reason=request.reason, notes=request.notes, skipped_by=user_id
    )


@router.post("/medications/{command_id}/events/{event_id}/snooze", response_model=DoseActionResult)
async def snooze_dose(
    command_id: str,
    event_id: str,
    request: SnoozeDoseRequest,
    user_id: str = Depends(acting_user),
    engine: Engine = Depends(get_engine)
) -> DoseActionResult:
    await authorize_command(engine, user_id, command_id, Action.RECORD_DOSE)
    return await engine.orchestrator.snooze_dose(command_id, event_id, request.minutes, snoozed_by=user_id)


@router.post("/medications/{command_id}/prn", response_model=MedicationEvent, status_code=201)
async def log_prn_dose(
    command_id: str,
    request: Optional[PrnDoseRequest] = None,
    user_id: str = Depends(acting_user),
    engine: Engine = Depends(get_engine)
) -> MedicationEvent:
    await authorize_command(engine, user_id, command_id, Action.RECORD_DOSE)
    request = request or PrnDoseRequest()
    return await engine.orchestrator.log_prn_dose(
        command_id, taken_at=request.taken_at, notes=request.notes, taken_by=user_id
    )


# ===== Patient read models =====


@router.get("/patients/{patient_id}/events", response_model=EventListResponse)
async def query_events(
    patient_id: str,
    event_type: Optional[List[EventType]] = Query(default=None),
    command_id: Optional[str] = None,
    start: Optional[datetime] = Query(default=None, description="Scheduled time lower bound"),
    end: Optional[datetime] = Query(default=None, description="Scheduled time upper bound"),
    include_archived: bool = False,
    descending: bool = False,
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    user_id: str = Depends(acting_user),
    engine: Engine = Depends(get_engine)
) -> EventListResponse:
    await require_permission(engine.permissions, user_id, patient_id, Action.VIEW)
    events = await engine.orchestrator.query_events(EventQuery(
        patient_id=patient_id,
        command_id=command_id,
        event_types=event_type or [],
        scheduled_from=start,
        scheduled_to=end,
        include_archived=include_archived,
        descending=descending,
        limit=limit,
    ))
    return EventListResponse(events=events, total=len(events))


@router.get("/patients/{patient_id}/events/missed", response_model=EventListResponse)
async def get_missed_events(
    patient_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    user_id: str = Depends(acting_user),
    engine: Engine = Depends(get_engine)
) -> EventListResponse:
    await require_permission(engine.permissions, user_id, patient_id, Action.VIEW)
    events = await engine.orchestrator.get_missed_events(patient_id, start, end)
    return EventListResponse(events=events, total=len(events))


@router.get("/patients/{patient_id}/adherence", response_model=AdherenceMetrics)
async def get_adherence(
    patient_id: str,
    start: Optional[datetime] = Query(default=None, description="Defaults to 7 days before end"),
    end: Optional[datetime] = Query(default=None, description="Defaults to now"),
    command_id: Optional[str] = None,
    user_id: str = Depends(acting_user),
    engine: Engine = Depends(get_engine)
) -> AdherenceMetrics:
    """
    Adherence over doses scheduled in [start, end].

    rate = taken / scheduled * 100; undone completions and doses cancelled
    by schedule changes are excluded.
    """
    await require_permission(engine.permissions, user_id, patient_id, Action.VIEW)
    end = end or engine.orchestrator.clock()
    start = start or end - timedelta(days=7)
    return await engine.orchestrator.get_adherence(patient_id, start, end, command_id)


@router.get("/patients/{patient_id}/today", response_model=TodayBuckets)
async def get_today(
    patient_id: str,
    user_id: str = Depends(acting_user),
    engine: Engine = Depends(get_engine)
) -> TodayBuckets:
    """Today's doses grouped into overdue, due now, due soon, time-of-day slots and completed."""
    await require_permission(engine.permissions, user_id, patient_id, Action.VIEW)
    return await engine.orchestrator.get_today_buckets(patient_id)


@router.get("/patients/{patient_id}/time-preferences", response_model=PatientTimePreferences)
async def get_time_preferences(
    patient_id: str,
    user_id: str = Depends(acting_user),
    engine: Engine = Depends(get_engine)
) -> PatientTimePreferences:
    await require_permission(engine.permissions, user_id, patient_id, Action.VIEW)
    return await engine.orchestrator.get_time_preferences(patient_id)


@router.put("/patients/{patient_id}/time-preferences", response_model=PatientTimePreferences)
async def save_time_preferences(
    patient_id: str,
    request: PatientTimePreferences,
    user_id: str = Depends(acting_user),
    engine: Engine = Depends(get_engine)
) -> PatientTimePreferences:
    await require_permission(engine.permissions, user_id, patient_id, Action.MANAGE)
    return await engine.orchestrator.save_time_preferences(
        request.model_copy(update={"patient_id": patient_id})
    )


# ===== Sweeps =====


@router.post("/jobs/missed-detection", response_model=MissedDetectionResult)
async def run_missed_detection(
    request: Optional[MissedDetectionRequest] = None,
    user_id: str = Depends(acting_user),
    engine: Engine = Depends(get_engine)
) -> MissedDetectionResult:
    """Run one missed-dose detection sweep now."""
    await require_permission(engine.permissions, user_id, ALL_PATIENTS, Action.MANAGE)
    request = request or MissedDetectionRequest()
    return await engine.orchestrator.process_missed_medication_detection(
        batch_size=request.batch_size, patient_id=request.patient_id
    )


@router.post("/jobs/daily-rollover", response_model=RolloverResult)
async def run_daily_rollover(
    user_id: str = Depends(acting_user),
    engine: Engine = Depends(get_engine)
) -> RolloverResult:
    """Run the daily rollover now."""
    await require_permission(engine.permissions, user_id, ALL_PATIENTS, Action.MANAGE)
    return await engine.rollover.run()


@router.get("/health")
async def health_check(engine: Engine = Depends(get_engine)):
    """Health check endpoint."""
    database = None
    if engine.db_pool is not None:
        database = "connected" if await engine.db_pool.test_connection() else "unavailable"
    return {
        "status": "healthy" if database != "unavailable" else "degraded",
        "service": "homecare-medications",
        "version": "1.0.0",
        "storage": engine.settings.storage_backend,
        "database": database,
        "sweeps_running": engine.scheduler.running,
    }
