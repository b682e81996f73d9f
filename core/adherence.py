"""Adherence metrics derived from event counts."""

import logging
from datetime import datetime
from typing import Iterable, Optional

from core.event_store import DOSE_EVENT_TYPES, EventQuery, EventStore
from core.models import AdherenceMetrics, EventType, MedicationAdherence, MedicationEvent

logger = logging.getLogger(__name__)


def is_superseded(event: MedicationEvent) -> bool:
    """System skip closing a dose that a schedule change or pause cancelled."""
    return event.event_type == EventType.DOSE_SKIPPED and bool(event.event_data.get("superseded"))


def tally(events: Iterable[MedicationEvent], counts) -> None:
    """Add the net dose counts of events to a counts model in place."""
    events = list(events)
    undone = {
        e.context.closes_event_id
        for e in events
        if e.event_type == EventType.DOSE_UNDO and e.context.closes_event_id
    }
    for event in events:
        if event.id in undone:
            continue
        if event.event_type == EventType.DOSE_SCHEDULED:
            counts.scheduled += 1
        elif event.event_type == EventType.DOSE_TAKEN:
            counts.taken += 1
        elif event.event_type == EventType.DOSE_MISSED:
            counts.missed += 1
        elif is_superseded(event):
            counts.scheduled -= 1
        elif event.event_type == EventType.DOSE_SKIPPED:
            counts.skipped += 1


def adherence_rate(taken: int, scheduled: int) -> float:
    if scheduled <= 0:
        return 0.0
    return round(min(100.0, taken / scheduled * 100), 1)


async def compute_adherence(
    event_store: EventStore,
    patient_id: str,
    start: datetime,
    end: datetime,
    command_id: Optional[str] = None
) -> AdherenceMetrics:
    """
    Adherence of a patient over doses scheduled in [start, end].

    Counts come from events only (archived ones included); completions
    reversed by an undo and doses cancelled by a schedule change are
    left out.
    """
    events = await event_store.query(EventQuery(
        patient_id=patient_id,
        command_id=command_id,
        event_types=DOSE_EVENT_TYPES,
        scheduled_from=start,
        scheduled_to=end,
        include_archived=True,
    ))

    metrics = AdherenceMetrics(patient_id=patient_id, start=start, end=end)
    tally(events, metrics)

    by_command = {}
    for event in events:
        by_command.setdefault(event.command_id, []).append(event)
    for cmd_id, cmd_events in by_command.items():
        breakdown = MedicationAdherence(command_id=cmd_id)
        tally(cmd_events, breakdown)
        metrics.by_medication[cmd_id] = breakdown

    metrics.adherence_rate = adherence_rate(metrics.taken, metrics.scheduled)
    logger.info(
        f"Adherence for patient {patient_id}: {metrics.taken}/{metrics.scheduled} "
        f"({metrics.adherence_rate}%)"
    )
    return metrics
