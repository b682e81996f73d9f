"""Fold dose events into the derived state of each scheduled dose."""

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from core.models import DoseState, EventType, MedicationEvent


def event_sort_key(event: MedicationEvent):
    return (event.timing.event_timestamp, event.metadata.created_at, event.id)


def _as_datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def fold_dose(scheduled: MedicationEvent, related: Iterable[MedicationEvent]) -> DoseState:
    """
    Derive the state of one DOSE_SCHEDULED from the events acting on it.

    A terminal event closes the dose until a DOSE_UNDO naming it reopens
    the dose. The latest snooze moves its effective time.
    """
    history: List[MedicationEvent] = sorted(
        (e for e in related if e.context.scheduled_event_id == scheduled.id),
        key=event_sort_key
    )
    undone = {
        e.context.closes_event_id
        for e in history
        if e.event_type == EventType.DOSE_UNDO and e.context.closes_event_id
    }

    state = DoseState(scheduled=scheduled, history=history)
    for event in history:
        if event.is_terminal and event.id not in undone:
            state.terminal = event
        elif event.event_type == EventType.DOSE_UNDO:
            state.last_undo = event
        elif event.event_type == EventType.DOSE_SNOOZED:
            state.snoozed_until = _as_datetime(event.event_data.get("snoozed_until"))
    return state


def fold_doses(events: Iterable[MedicationEvent]) -> Dict[str, DoseState]:
    """Group a flat event list into dose states keyed by scheduled event id."""
    events = list(events)
    related: Dict[str, List[MedicationEvent]] = {}
    for event in events:
        if event.context.scheduled_event_id:
            related.setdefault(event.context.scheduled_event_id, []).append(event)

    return {
        event.id: fold_dose(event, related.get(event.id, []))
        for event in events
        if event.event_type == EventType.DOSE_SCHEDULED
    }
