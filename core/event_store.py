"""Event store: append-only log of medication events plus an archive partition."""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel, Field, field_validator

from core.dose_state import event_sort_key, fold_dose
from core.errors import ConflictError, NotFoundError, ValidationError
from core.models import DoseState, EventType, MedicationEvent, as_utc

logger = logging.getLogger(__name__)

DOSE_EVENT_TYPES = [
    EventType.DOSE_SCHEDULED,
    EventType.DOSE_TAKEN,
    EventType.DOSE_MISSED,
    EventType.DOSE_SKIPPED,
    EventType.DOSE_SNOOZED,
    EventType.DOSE_UNDO,
]


class EventQuery(BaseModel):
    """Filters for event queries."""

    patient_id: Optional[str] = None
    command_id: Optional[str] = None
    event_types: List[EventType] = Field(default_factory=list)
    scheduled_event_id: Optional[str] = None
    scheduled_from: Optional[datetime] = None
    scheduled_to: Optional[datetime] = None
    occurred_from: Optional[datetime] = None
    occurred_to: Optional[datetime] = None
    include_archived: bool = False
    archived_only: bool = False
    descending: bool = False
    limit: Optional[int] = Field(default=None, ge=1)

    @field_validator("scheduled_from", "scheduled_to", "occurred_from", "occurred_to")
    @classmethod
    def _aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    def matches(self, event: MedicationEvent) -> bool:
        if self.patient_id and event.patient_id != self.patient_id:
            return False
        if self.command_id and event.command_id != self.command_id:
            return False
        if self.event_types and event.event_type not in self.event_types:
            return False
        if self.scheduled_event_id and event.context.scheduled_event_id != self.scheduled_event_id:
            return False
        scheduled = event.timing.scheduled_datetime
        if self.scheduled_from or self.scheduled_to:
            if scheduled is None:
                return False
            if self.scheduled_from and scheduled < self.scheduled_from:
                return False
            if self.scheduled_to and scheduled > self.scheduled_to:
                return False
        occurred = event.timing.event_timestamp
        if self.occurred_from and occurred < self.occurred_from:
            return False
        if self.occurred_to and occurred > self.occurred_to:
            return False
        return True


def reference_time(event: MedicationEvent) -> datetime:
    """Instant an event belongs to for archival: its dose time, else when it happened."""
    return event.timing.scheduled_datetime or event.timing.event_timestamp


def check_dose_transition(event: MedicationEvent, dose: DoseState) -> None:
    """
    Guard the at-most-one-terminal-event invariant for an event about to
    be appended to a dose.

    Raises:
        ConflictError: If the dose is already closed, an undo does not
            target its current completion, or a miss was detected against
            a due time that a snooze has since moved
    """
    if event.is_terminal or event.event_type == EventType.DOSE_SNOOZED:
        if not dose.is_open:
            raise ConflictError(
                f"Dose {dose.scheduled.id} already closed by "
                f"{dose.terminal.event_type.value} ({dose.terminal.id})"
            )
        detected_for = event.event_data.get("effective_time")
        if event.event_type == EventType.DOSE_MISSED and detected_for is not None:
            if datetime.fromisoformat(str(detected_for)) != dose.effective_time:
                raise ConflictError(
                    f"Dose {dose.scheduled.id} was snoozed to {dose.effective_time.isoformat()}"
                )
    elif event.event_type == EventType.DOSE_UNDO:
        if dose.terminal is None or dose.terminal.id != event.context.closes_event_id:
            raise ConflictError(
                f"Event {event.context.closes_event_id} is not the current completion "
                f"of dose {dose.scheduled.id}"
            )


class EventStore(ABC):
    """Storage interface for medication events."""

    @abstractmethod
    async def append(self, event: MedicationEvent) -> Tuple[MedicationEvent, bool]:
        """
        Append one immutable event.

        Idempotent under retry: an event with the same command, correlation
        id, type and scheduled time, or a second DOSE_SCHEDULED for the same
        command and instant, returns the stored event with created=False.

        Raises:
            NotFoundError: If the referenced scheduled dose does not exist
            ConflictError: If the append would break the terminal-event invariant
        """

    @abstractmethod
    async def find(self, event_id: str) -> Optional[MedicationEvent]:
        """Event by id from either partition, or None."""

    async def get(self, event_id: str) -> MedicationEvent:
        event = await self.find(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found")
        return event

    @abstractmethod
    async def query(self, query: EventQuery) -> List[MedicationEvent]:
        """Events matching a query, ordered by event time."""

    @abstractmethod
    async def get_dose(self, scheduled_event_id: str) -> DoseState:
        """Folded state of one scheduled dose."""

    @abstractmethod
    async def list_open_doses(
        self,
        scheduled_from: datetime,
        scheduled_to: datetime,
        limit: int,
        patient_id: Optional[str] = None,
        command_id: Optional[str] = None
    ) -> List[DoseState]:
        """Open scheduled doses in a window, earliest first, at most `limit`."""

    @abstractmethod
    async def delete(self, event_id: str) -> bool:
        """Remove one event. Used only to compensate a rolled-back append."""

    @abstractmethod
    async def delete_for_command(self, command_id: str) -> List[MedicationEvent]:
        """Cascade: remove every event of a command from both partitions."""

    @abstractmethod
    async def restore(self, events: Iterable[MedicationEvent]) -> None:
        """Re-insert removed events into the partition they came from."""

    @abstractmethod
    async def archive(
        self,
        before: datetime,
        archived_at: datetime,
        command_ids: Optional[Iterable[str]] = None
    ) -> List[str]:
        """
        Move events whose reference time is before `before` into the archive.

        When command_ids is given only those commands' events move.
        Returns the ids of the moved events.
        """

    @abstractmethod
    async def unarchive(self, event_ids: Iterable[str]) -> None:
        """Move archived events back into the active partition."""


class InMemoryEventStore(EventStore):
    """Process-local event store."""

    def __init__(self):
        self._events: Dict[str, MedicationEvent] = {}
        self._archive: Dict[str, MedicationEvent] = {}
        self._dedup: Dict[Tuple, str] = {}
        self._scheduled_index: Dict[Tuple[str, datetime], str] = {}
        self._related: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _dedup_key(event: MedicationEvent) -> Tuple:
        return (event.command_id,) + event.dedup_key

    def _index(self, event: MedicationEvent) -> None:
        self._dedup[self._dedup_key(event)] = event.id
        if event.event_type == EventType.DOSE_SCHEDULED:
            self._scheduled_index[(event.command_id, event.timing.scheduled_datetime)] = event.id
        if event.context.scheduled_event_id:
            self._related.setdefault(event.context.scheduled_event_id, set()).add(event.id)

    def _unindex(self, event: MedicationEvent) -> None:
        key = self._dedup_key(event)
        if self._dedup.get(key) == event.id:
            del self._dedup[key]
        if event.event_type == EventType.DOSE_SCHEDULED:
            skey = (event.command_id, event.timing.scheduled_datetime)
            if self._scheduled_index.get(skey) == event.id:
                del self._scheduled_index[skey]
        scheduled_id = event.context.scheduled_event_id
        if scheduled_id in self._related:
            self._related[scheduled_id].discard(event.id)
            if not self._related[scheduled_id]:
                del self._related[scheduled_id]

    def _lookup(self, event_id: str) -> Optional[MedicationEvent]:
        return self._events.get(event_id) or self._archive.get(event_id)

    def _fold(self, scheduled: MedicationEvent) -> DoseState:
        related = [self._lookup(event_id) for event_id in self._related.get(scheduled.id, ())]
        return fold_dose(scheduled, related)

    async def append(self, event: MedicationEvent) -> Tuple[MedicationEvent, bool]:
        if event.event_type != EventType.DOSE_SCHEDULED and event.event_type.value.startswith("dose_"):
            if event.context.scheduled_event_id is None and event.event_type != EventType.DOSE_TAKEN:
                raise ValidationError(f"{event.event_type.value} must reference a scheduled dose")

        async with self._lock:
            existing_id = self._dedup.get(self._dedup_key(event))
            if existing_id is not None and self._lookup(existing_id) is not None:
                return self._lookup(existing_id), False

            if event.event_type == EventType.DOSE_SCHEDULED:
                existing_id = self._scheduled_index.get((event.command_id, event.timing.scheduled_datetime))
                if existing_id is not None and existing_id in self._events:
                    return self._events[existing_id], False

            if event.context.scheduled_event_id:
                scheduled = self._lookup(event.context.scheduled_event_id)
                if scheduled is None or scheduled.event_type != EventType.DOSE_SCHEDULED:
                    raise NotFoundError(f"Scheduled dose {event.context.scheduled_event_id} not found")
                check_dose_transition(event, self._fold(scheduled))

            self._events[event.id] = event
            self._index(event)
        return event, True

    async def find(self, event_id: str) -> Optional[MedicationEvent]:
        return self._lookup(event_id)

    async def query(self, query: EventQuery) -> List[MedicationEvent]:
        if query.archived_only:
            pool = list(self._archive.values())
        elif query.include_archived:
            pool = list(self._events.values()) + list(self._archive.values())
        else:
            pool = list(self._events.values())

        matched = sorted((e for e in pool if query.matches(e)), key=event_sort_key, reverse=query.descending)
        if query.limit is not None:
            matched = matched[:query.limit]
        return matched

    async def get_dose(self, scheduled_event_id: str) -> DoseState:
        scheduled = self._lookup(scheduled_event_id)
        if scheduled is None or scheduled.event_type != EventType.DOSE_SCHEDULED:
            raise NotFoundError(f"Scheduled dose {scheduled_event_id} not found")
        return self._fold(scheduled)

    async def list_open_doses(
        self,
        scheduled_from: datetime,
        scheduled_to: datetime,
        limit: int,
        patient_id: Optional[str] = None,
        command_id: Optional[str] = None
    ) -> List[DoseState]:
        candidates = sorted(
            (
                e for e in self._events.values()
                if e.event_type == EventType.DOSE_SCHEDULED
                and scheduled_from <= e.timing.scheduled_datetime <= scheduled_to
                and (patient_id is None or e.patient_id == patient_id)
                and (command_id is None or e.command_id == command_id)
            ),
            key=lambda e: (e.timing.scheduled_datetime, e.id)
        )
        doses = []
        for scheduled in candidates:
            dose = self._fold(scheduled)
            if dose.is_open:
                doses.append(dose)
                if len(doses) >= limit:
                    break
        return doses

    async def delete(self, event_id: str) -> bool:
        async with self._lock:
            event = self._events.pop(event_id, None) or self._archive.pop(event_id, None)
            if event is None:
                return False
            self._unindex(event)
            return True

    async def delete_for_command(self, command_id: str) -> List[MedicationEvent]:
        async with self._lock:
            removed = []
            for partition in (self._events, self._archive):
                for event_id in [k for k, e in partition.items() if e.command_id == command_id]:
                    event = partition.pop(event_id)
                    self._unindex(event)
                    removed.append(event)
        logger.info(f"Cascade removed {len(removed)} events of command {command_id}")
        return removed

    async def restore(self, events: Iterable[MedicationEvent]) -> None:
        async with self._lock:
            for event in events:
                partition = self._archive if event.archived_at is not None else self._events
                partition[event.id] = event
                self._index(event)

    async def archive(
        self,
        before: datetime,
        archived_at: datetime,
        command_ids: Optional[Iterable[str]] = None
    ) -> List[str]:
        only = set(command_ids) if command_ids is not None else None
        async with self._lock:
            moved = [
                event for event in self._events.values()
                if reference_time(event) < before and (only is None or event.command_id in only)
            ]
            for event in moved:
                del self._events[event.id]
                self._archive[event.id] = event.model_copy(update={"archived_at": archived_at})
        if moved:
            logger.info(f"Archived {len(moved)} events older than {before.isoformat()}")
        return [event.id for event in moved]

    async def unarchive(self, event_ids: Iterable[str]) -> None:
        async with self._lock:
            for event_id in event_ids:
                event = self._archive.pop(event_id, None)
                if event is not None:
                    self._events[event_id] = event.model_copy(update={"archived_at": None})
