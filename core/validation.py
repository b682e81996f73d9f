"""Invariant checks for medication commands."""

from typing import List

from core.errors import ValidationError
from core.models import FREQUENCY_CARDINALITY, Frequency, MedicationCommand, Schedule
from core.preferences import is_valid_time


def schedule_errors(schedule: Schedule, is_prn: bool) -> List[str]:
    """Collect violations of the schedule invariants."""
    errors = []

    if is_prn and schedule.frequency != Frequency.AS_NEEDED:
        errors.append("PRN medications must use the as_needed frequency")
    if schedule.frequency == Frequency.AS_NEEDED and not is_prn:
        errors.append("The as_needed frequency is only valid for PRN medications")
    if schedule.frequency == Frequency.AS_NEEDED and schedule.times:
        errors.append("PRN medications cannot carry scheduled times")

    invalid = [t for t in schedule.times if not is_valid_time(t)]
    if invalid:
        errors.append(f"Invalid time format: {', '.join(invalid)} (use 24-hour HH:MM)")

    expected = FREQUENCY_CARDINALITY[schedule.frequency]
    if schedule.frequency != Frequency.AS_NEEDED and len(schedule.times) != expected:
        errors.append(
            f"{schedule.frequency.value} requires exactly {expected} time(s), "
            f"but {len(schedule.times)} provided"
        )
    if len(set(schedule.times)) != len(schedule.times):
        errors.append("Schedule times must be unique")

    if schedule.end_date is not None:
        if schedule.end_date < schedule.start_date:
            errors.append("End date cannot be before start date")
        if schedule.is_indefinite:
            errors.append("An indefinite schedule cannot have an end date")
    elif not schedule.is_indefinite and schedule.frequency != Frequency.AS_NEEDED:
        errors.append("A schedule that is not indefinite needs an end date")

    if schedule.days_of_week:
        if schedule.frequency != Frequency.WEEKLY:
            errors.append("days_of_week is only valid for weekly schedules")
        if any(d < 0 or d > 6 for d in schedule.days_of_week):
            errors.append("days_of_week values must be between 0 (Monday) and 6 (Sunday)")

    return errors


def validate_command(command: MedicationCommand) -> None:
    """Raise ValidationError listing every invariant the command violates."""
    errors = []

    if not command.patient_id.strip():
        errors.append("Patient ID is required")
    if not command.medication.name.strip():
        errors.append("Medication name is required")

    errors.extend(schedule_errors(command.schedule, command.status.is_prn))

    if any(m < 0 for m in command.reminders.minutes_before):
        errors.append("Reminder offsets must be non-negative")
    if any(m < 0 for m in command.grace_period.slot_overrides.values()):
        errors.append("Grace period overrides must be non-negative")

    if errors:
        raise ValidationError(errors)
