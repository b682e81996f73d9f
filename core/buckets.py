"""Today's buckets: a read-only grouping of a patient's doses by time of day."""

from datetime import date, datetime
from typing import Dict, Iterable, Optional

from core.adherence import is_superseded
from core.grace_period import grace_period_for_dose
from core.models import (
    BucketItem,
    CompletedItem,
    DoseState,
    MedicationCommand,
    MedicationStatus,
    PatientTimePreferences,
    TimeSlot,
    TodayBuckets,
)
from core.preferences import patient_zone, slot_for_time

DUE_NOW_MINUTES = 15
DUE_SOON_MINUTES = 60

SLOT_BUCKETS = {
    TimeSlot.MORNING: "morning",
    TimeSlot.NOON: "noon",
    TimeSlot.EVENING: "evening",
    TimeSlot.BEDTIME: "bedtime",
}


def build_today_buckets(
    patient_id: str,
    commands: Iterable[MedicationCommand],
    doses: Iterable[DoseState],
    preferences: PatientTimePreferences,
    now: datetime,
    holidays: Optional[Iterable[date]] = None
) -> TodayBuckets:
    """
    Group today's doses into overdue / due-now / due-soon / slot buckets.

    Pure function of its inputs: open doses of active, scheduled
    medications are classified by minutes until their effective time
    (overdue < 0, due now <= 15, due soon <= 60, otherwise by the slot
    of their local time). Closed doses go to `completed`.
    """
    zone = patient_zone(preferences)
    today = now.astimezone(zone).date()
    by_id: Dict[str, MedicationCommand] = {c.id: c for c in commands}
    holidays = list(holidays or [])
    buckets = TodayBuckets(patient_id=patient_id, date=today, last_updated=now)

    for dose in doses:
        command = by_id.get(dose.scheduled.command_id)
        if command is None or command.is_prn or command.status.current != MedicationStatus.ACTIVE:
            continue
        scheduled_at = dose.scheduled.timing.scheduled_datetime
        if scheduled_at.astimezone(zone).date() != today:
            continue

        if not dose.is_open:
            if is_superseded(dose.terminal):
                continue
            buckets.completed.append(CompletedItem(
                command_id=command.id,
                event_id=dose.scheduled.id,
                medication_name=command.medication.name,
                scheduled_time=scheduled_at,
                completed_at=dose.terminal.timing.event_timestamp,
                status=dose.terminal.event_type,
            ))
            continue

        effective = dose.effective_time
        _, grace_end = grace_period_for_dose(command, effective, preferences, holidays)
        minutes_until_due = int((effective - now).total_seconds() // 60)
        slot = slot_for_time(effective.astimezone(zone).time(), preferences)

        item = BucketItem(
            command_id=command.id,
            event_id=dose.scheduled.id,
            medication_name=command.medication.name,
            dosage_amount=command.schedule.dosage_amount,
            scheduled_time=scheduled_at,
            effective_time=effective,
            minutes_until_due=minutes_until_due,
            grace_period_end=grace_end,
            time_slot=slot,
            is_snoozed=dose.snoozed_until is not None,
        )

        if minutes_until_due < 0:
            buckets.overdue.append(item)
        elif minutes_until_due <= DUE_NOW_MINUTES:
            buckets.due_now.append(item)
        elif minutes_until_due <= DUE_SOON_MINUTES:
            buckets.due_soon.append(item)
        else:
            getattr(buckets, SLOT_BUCKETS[slot]).append(item)

    for name in ("overdue", "due_now", "due_soon", "morning", "noon", "evening", "bedtime"):
        getattr(buckets, name).sort(key=lambda i: i.effective_time)
    buckets.completed.sort(key=lambda i: i.scheduled_time)
    return buckets
