"""API request/response schemas."""

from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from datetime import date, datetime

from core.models import (
    Frequency,
    GracePeriodConfig,
    MedicationCommand,
    MedicationEvent,
    MedicationInfo,
    MedicationStatus,
    MedicationType,
    Reminders,
    Schedule,
    SkipReason,
    TimeSlot,
)


class CreateMedicationRequest(BaseModel):
    """Request to add a medication for a patient."""

    patient_id: str = Field(..., min_length=1)
    medication: MedicationInfo
    schedule: Schedule
    reminders: Optional[Reminders] = None
    grace_period: Optional[GracePeriodConfig] = None
    is_prn: bool = False


class MedicationListResponse(BaseModel):
    """Medications of one patient."""

    medications: List[MedicationCommand]
    total: int


class MedicationInfoPatch(BaseModel):
    """Partial update of medication facts."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    dosage: Optional[str] = Field(default=None, min_length=1, max_length=100)
    generic_name: Optional[str] = None
    form: Optional[str] = None
    route: Optional[str] = None
    instructions: Optional[str] = None
    prescribed_date: Optional[date] = None


class SchedulePatch(BaseModel):
    """Partial update of a schedule; unset fields keep their values."""

    frequency: Optional[Frequency] = None
    times: Optional[List[str]] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_indefinite: Optional[bool] = None
    dosage_amount: Optional[str] = Field(default=None, min_length=1)
    use_patient_time_preferences: Optional[bool] = None
    days_of_week: Optional[List[int]] = None


class RemindersPatch(BaseModel):
    """Partial update of reminder configuration."""

    enabled: Optional[bool] = None
    minutes_before: Optional[List[int]] = None
    notification_channels: Optional[List[str]] = None


class GracePeriodPatch(BaseModel):
    """Partial update of grace-period configuration."""

    default_minutes: Optional[int] = Field(default=None, ge=0)
    medication_type: Optional[MedicationType] = None
    slot_overrides: Optional[Dict[TimeSlot, int]] = None


class StatusChangeRequest(BaseModel):
    """Pause, resume or discontinue a medication."""

    status: MedicationStatus
    reason: Optional[str] = Field(default=None, max_length=500)
    paused_until: Optional[datetime] = None


class TakeDoseRequest(BaseModel):
    taken_at: Optional[datetime] = Field(default=None, description="Defaults to now")
    notes: Optional[str] = Field(default=None, max_length=1000)


class SkipDoseRequest(BaseModel):
    reason: SkipReason = SkipReason.OTHER
    notes: Optional[str] = Field(default=None, max_length=1000)


class SnoozeDoseRequest(BaseModel):
    minutes: int = Field(..., description="Minutes to push the dose back (1-480)")


class UndoRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class PrnDoseRequest(BaseModel):
    taken_at: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class EventListResponse(BaseModel):
    """Events matching a query."""

    events: List[MedicationEvent]
    total: int


class MissedDetectionRequest(BaseModel):
    """Optional overrides for a manually triggered detector sweep."""

    batch_size: Optional[int] = Field(default=None, ge=1, le=5000)
    patient_id: Optional[str] = None
