"""Pydantic domain models for Homecare Medications."""

from pydantic import BaseModel, Field, ConfigDict
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple
from uuid import uuid4


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC form of a datetime; naive values are read as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id(prefix: str) -> str:
    """Generate a prefixed opaque identifier (cmd_, evt_, corr_, txn_)."""
    return f"{prefix}_{uuid4().hex[:20]}"


class Frequency(str, Enum):
    """How often a medication is scheduled."""

    DAILY = "daily"
    TWICE_DAILY = "twice_daily"
    THREE_TIMES_DAILY = "three_times_daily"
    FOUR_TIMES_DAILY = "four_times_daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    AS_NEEDED = "as_needed"


# Number of HH:MM times each frequency must carry
FREQUENCY_CARDINALITY: Dict[Frequency, int] = {
    Frequency.DAILY: 1,
    Frequency.TWICE_DAILY: 2,
    Frequency.THREE_TIMES_DAILY: 3,
    Frequency.FOUR_TIMES_DAILY: 4,
    Frequency.WEEKLY: 1,
    Frequency.MONTHLY: 1,
    Frequency.AS_NEEDED: 0,
}


class MedicationType(str, Enum):
    """Criticality class driving the grace period."""

    CRITICAL = "critical"  # Insulin, anticoagulants, heart medications
    STANDARD = "standard"
    VITAMIN = "vitamin"  # Vitamins, supplements
    PRN = "prn"  # As needed: never missed


class TimeSlot(str, Enum):
    """Named time-of-day slots."""

    MORNING = "morning"
    NOON = "noon"
    EVENING = "evening"
    BEDTIME = "bedtime"


class MedicationStatus(str, Enum):
    """Lifecycle state of a medication command."""

    ACTIVE = "active"
    PAUSED = "paused"
    DISCONTINUED = "discontinued"


class EventType(str, Enum):
    """Medication event types."""

    DOSE_SCHEDULED = "dose_scheduled"
    DOSE_TAKEN = "dose_taken"
    DOSE_MISSED = "dose_missed"
    DOSE_SKIPPED = "dose_skipped"
    DOSE_SNOOZED = "dose_snoozed"
    DOSE_UNDO = "dose_undo"
    SCHEDULE_CREATED = "schedule_created"
    SCHEDULE_REGENERATED = "schedule_regenerated"
    STATUS_CHANGED = "status_changed"


TERMINAL_EVENT_TYPES = frozenset({
    EventType.DOSE_TAKEN,
    EventType.DOSE_MISSED,
    EventType.DOSE_SKIPPED,
})


class SkipReason(str, Enum):
    """Reasons a patient may give for skipping a dose."""

    FORGOT = "forgot"
    FELT_SICK = "felt_sick"
    RAN_OUT = "ran_out"
    SIDE_EFFECTS = "side_effects"
    OTHER = "other"


class NotificationUrgency(str, Enum):
    """Urgency passed to the notification collaborator."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


# ===== Medication command =====


class MedicationInfo(BaseModel):
    """Medication facts."""

    name: str = Field(..., min_length=1, max_length=200)
    dosage: str = Field(..., min_length=1, max_length=100)
    generic_name: Optional[str] = None
    form: Optional[str] = None
    route: Optional[str] = None
    instructions: Optional[str] = None
    prescribed_date: Optional[date] = None


class ComputedSchedule(BaseModel):
    """Cache of the times resolved from patient preferences."""

    resolved_times: List[str] = Field(default_factory=list)
    last_computed_at: datetime
    next_recompute_at: datetime


class Schedule(BaseModel):
    """Recurrence definition."""

    frequency: Frequency
    times: List[str] = Field(default_factory=list, description="HH:MM, patient local time")
    start_date: date
    end_date: Optional[date] = None
    is_indefinite: bool = True
    dosage_amount: str = Field(..., min_length=1)
    use_patient_time_preferences: bool = False
    days_of_week: List[int] = Field(default_factory=list, description="0=Monday, weekly only")
    computed_schedule: Optional[ComputedSchedule] = None


class Reminders(BaseModel):
    """Reminder configuration."""

    enabled: bool = True
    minutes_before: List[int] = Field(default_factory=lambda: [15])
    notification_channels: List[str] = Field(default_factory=lambda: ["push"])


class GracePeriodConfig(BaseModel):
    """Grace period configuration of one medication."""

    # Replaces the computed slot/type base for every slot without an override
    default_minutes: Optional[int] = Field(default=None, ge=0)
    medication_type: MedicationType = MedicationType.STANDARD
    slot_overrides: Dict[TimeSlot, int] = Field(default_factory=dict)


class StatusInfo(BaseModel):
    """Current lifecycle status."""

    current: MedicationStatus = MedicationStatus.ACTIVE
    is_active: bool = True
    is_prn: bool = False
    last_status_change: datetime = Field(default_factory=utcnow)
    reason: Optional[str] = None
    paused_until: Optional[datetime] = None
    discontinue_date: Optional[date] = None


class CommandMetadata(BaseModel):
    """Bookkeeping stamped on every mutation."""

    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    created_by: str = "system"


class MedicationCommand(BaseModel):
    """Single authoritative current-state record of one medication."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: new_id("cmd"))
    patient_id: str = Field(..., min_length=1)
    medication: MedicationInfo
    schedule: Schedule
    reminders: Reminders = Field(default_factory=Reminders)
    grace_period: GracePeriodConfig = Field(default_factory=GracePeriodConfig)
    status: StatusInfo = Field(default_factory=StatusInfo)
    metadata: CommandMetadata = Field(default_factory=CommandMetadata)

    @property
    def identity(self) -> Tuple[str, str]:
        """Key under which at most one active command may exist."""
        return (self.patient_id, self.medication.name.strip().lower())

    @property
    def is_prn(self) -> bool:
        return self.status.is_prn or self.schedule.frequency == Frequency.AS_NEEDED


# ===== Medication event =====


class EventContext(BaseModel):
    """Links between events of one request and one dose."""

    correlation_id: str = Field(default_factory=lambda: new_id("corr"))
    scheduled_event_id: Optional[str] = None  # DOSE_SCHEDULED this event acts on
    closes_event_id: Optional[str] = None  # terminal event reversed by a DOSE_UNDO
    trigger_source: str = "user_action"


class EventTiming(BaseModel):
    """Timing facts of an event."""

    event_timestamp: datetime = Field(default_factory=utcnow)
    scheduled_datetime: Optional[datetime] = None
    grace_period_minutes: Optional[int] = None
    grace_period_end: Optional[datetime] = None
    minutes_late: Optional[int] = None
    is_on_time: Optional[bool] = None


class EventMetadata(BaseModel):
    """Write-once bookkeeping."""

    created_at: datetime = Field(default_factory=utcnow)
    created_by: str = "system"
    schema_version: int = 1


class MedicationEvent(BaseModel):
    """Immutable fact about a command's lifecycle or a dose occurrence."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("evt"))
    command_id: str
    patient_id: str
    event_type: EventType
    event_data: Dict[str, Any] = Field(default_factory=dict)
    context: EventContext = Field(default_factory=EventContext)
    timing: EventTiming = Field(default_factory=EventTiming)
    metadata: EventMetadata = Field(default_factory=EventMetadata)
    archived_at: Optional[datetime] = None

    @property
    def dedup_key(self) -> Tuple[str, str, Optional[datetime]]:
        """Natural key making retried appends idempotent."""
        return (self.context.correlation_id, self.event_type.value, self.timing.scheduled_datetime)

    @property
    def is_terminal(self) -> bool:
        return self.event_type in TERMINAL_EVENT_TYPES


class DoseState(BaseModel):
    """Derived state of one scheduled dose, folded from its events."""

    scheduled: MedicationEvent
    terminal: Optional[MedicationEvent] = None  # current, not undone
    last_undo: Optional[MedicationEvent] = None
    snoozed_until: Optional[datetime] = None
    history: List[MedicationEvent] = Field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.terminal is None

    @property
    def effective_time(self) -> datetime:
        """Scheduled time, pushed back by the latest snooze."""
        return self.snoozed_until or self.scheduled.timing.scheduled_datetime


# ===== Patient time preferences =====


class SlotPreference(BaseModel):
    """Preferred time and boundaries of one named slot."""

    default_time: str
    earliest: str
    latest: str


def _default_slots() -> Dict[TimeSlot, SlotPreference]:
    return {
        TimeSlot.MORNING: SlotPreference(default_time="08:00", earliest="06:00", latest="10:59"),
        TimeSlot.NOON: SlotPreference(default_time="12:00", earliest="11:00", latest="16:59"),
        TimeSlot.EVENING: SlotPreference(default_time="18:00", earliest="17:00", latest="20:59"),
        TimeSlot.BEDTIME: SlotPreference(default_time="22:00", earliest="21:00", latest="05:59"),
    }


class PatientTimePreferences(BaseModel):
    """Named time-slot mapping of one patient."""

    patient_id: str
    timezone: str = "UTC"
    slots: Dict[TimeSlot, SlotPreference] = Field(default_factory=_default_slots)


# ===== Read models and results =====


class MedicationAdherence(BaseModel):
    """Adherence counts of one medication."""

    command_id: str
    scheduled: int = 0
    taken: int = 0
    missed: int = 0
    skipped: int = 0


class AdherenceMetrics(BaseModel):
    """Adherence derived from event counts."""

    patient_id: str
    start: datetime
    end: datetime
    scheduled: int = 0
    taken: int = 0
    missed: int = 0
    skipped: int = 0
    adherence_rate: float = Field(default=0.0, ge=0.0, le=100.0)
    by_medication: Dict[str, MedicationAdherence] = Field(default_factory=dict)


class BucketItem(BaseModel):
    """One open dose in the buckets view."""

    command_id: str
    event_id: str
    medication_name: str
    dosage_amount: str
    scheduled_time: datetime
    effective_time: datetime
    minutes_until_due: int
    grace_period_end: Optional[datetime] = None
    time_slot: TimeSlot
    is_snoozed: bool = False


class CompletedItem(BaseModel):
    """One dose closed today."""

    command_id: str
    event_id: str
    medication_name: str
    scheduled_time: datetime
    completed_at: datetime
    status: EventType


class TodayBuckets(BaseModel):
    """Derived, read-only grouping of today's doses."""

    patient_id: str
    date: date
    overdue: List[BucketItem] = Field(default_factory=list)
    due_now: List[BucketItem] = Field(default_factory=list)
    due_soon: List[BucketItem] = Field(default_factory=list)
    morning: List[BucketItem] = Field(default_factory=list)
    noon: List[BucketItem] = Field(default_factory=list)
    evening: List[BucketItem] = Field(default_factory=list)
    bedtime: List[BucketItem] = Field(default_factory=list)
    completed: List[CompletedItem] = Field(default_factory=list)
    last_updated: datetime


class CreateMedicationResult(BaseModel):
    """Command plus the events written with it."""

    command: MedicationCommand
    events: List[MedicationEvent]


class DoseActionResult(BaseModel):
    """Outcome of take/skip/snooze/undo."""

    event: MedicationEvent
    dose: DoseState
    already_handled: bool = False
    message: str = ""


class MissedDetectionResult(BaseModel):
    """Statistics of one missed-detection sweep."""

    detection_time: datetime
    checked: int = 0
    missed: int = 0
    already_handled: int = 0
    skipped_inactive: int = 0
    errors: List[str] = Field(default_factory=list)


class RolloverResult(BaseModel):
    """Statistics of one daily rollover."""

    run_time: datetime
    commands_processed: int = 0
    doses_generated: int = 0
    events_archived: int = 0
    auto_resumed: int = 0
    auto_completed: int = 0
    errors: List[str] = Field(default_factory=list)


class DeleteMedicationResult(BaseModel):
    """Outcome of a soft or hard delete."""

    command_id: str
    hard: bool
    events_removed: int = 0
    command: Optional[MedicationCommand] = None
