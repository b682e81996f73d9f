"""Command store: the mutable current-state record of each medication."""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from core.errors import ConflictError, NotFoundError, TransientStoreError, ValidationError
from core.models import (
    MedicationCommand,
    MedicationEvent,
    MedicationStatus,
    MedicationType,
    utcnow,
)
from core.validation import validate_command

logger = logging.getLogger(__name__)

# Field groups that can be patched independently
PATCHABLE_GROUPS = ("medication", "schedule", "reminders", "grace_period", "status")

SORTABLE_FIELDS = {
    "name": lambda c: c.medication.name.lower(),
    "created_at": lambda c: c.metadata.created_at,
    "updated_at": lambda c: c.metadata.updated_at,
    "start_date": lambda c: c.schedule.start_date,
    "status": lambda c: c.status.current.value,
}

CascadeTrigger = Callable[[str], Awaitable[List[MedicationEvent]]]


class CommandQuery(BaseModel):
    """Filter and sort options for listing commands."""

    patient_id: Optional[str] = None
    is_active: Optional[bool] = None
    status: Optional[MedicationStatus] = None
    is_prn: Optional[bool] = None
    medication_type: Optional[MedicationType] = None
    name: Optional[str] = None
    order_by: Optional[str] = None
    descending: bool = False
    limit: Optional[int] = Field(default=None, ge=1)

    def filters(self) -> Dict[str, Any]:
        """Filter fields that are set."""
        return {
            key: value
            for key, value in {
                "patient_id": self.patient_id,
                "is_active": self.is_active,
                "status": self.status,
                "is_prn": self.is_prn,
                "medication_type": self.medication_type,
                "name": self.name,
            }.items()
            if value is not None
        }

    def matches(self, command: MedicationCommand) -> bool:
        for key, value in self.filters().items():
            if key == "patient_id" and command.patient_id != value:
                return False
            if key == "is_active" and command.status.is_active != value:
                return False
            if key == "status" and command.status.current != value:
                return False
            if key == "is_prn" and command.is_prn != value:
                return False
            if key == "medication_type" and command.grace_period.medication_type != value:
                return False
            if key == "name" and command.medication.name.strip().lower() != value.strip().lower():
                return False
        return True

    def sort_in_memory(self, commands: List[MedicationCommand]) -> List[MedicationCommand]:
        """Sort and limit an already-filtered result set."""
        if self.order_by:
            if self.order_by not in SORTABLE_FIELDS:
                raise ValidationError(f"Cannot sort by {self.order_by!r}")
            commands = sorted(commands, key=SORTABLE_FIELDS[self.order_by], reverse=self.descending)
        if self.limit is not None:
            commands = commands[:self.limit]
        return commands


def merge_patch(
    command: MedicationCommand,
    group: str,
    patch: Dict[str, Any],
    updated_by: Optional[str] = None,
    now: Optional[datetime] = None
) -> MedicationCommand:
    """
    Merge a partial update into one field group of a command.

    Unspecified fields keep their values; the result is re-validated,
    its version bumped and updated_at stamped.

    Raises:
        ValidationError: If the group is unknown or the merged command is invalid
    """
    if group not in PATCHABLE_GROUPS:
        raise ValidationError(f"Unknown field group: {group}")

    data = command.model_dump()
    merged = dict(data[group])
    merged.update(patch)
    data[group] = merged
    data["metadata"]["version"] = command.metadata.version + 1
    data["metadata"]["updated_at"] = now or utcnow()

    try:
        updated = MedicationCommand.model_validate(data)
    except Exception as e:
        raise ValidationError(f"Invalid {group} update: {e}") from e

    if updated_by:
        logger.debug(f"Command {command.id} {group} updated by {updated_by}")
    validate_command(updated)
    return updated


class CommandStore(ABC):
    """Storage interface for medication commands."""

    def __init__(self):
        self._cascades: List[CascadeTrigger] = []

    def register_cascade(self, trigger: CascadeTrigger) -> None:
        """Register a trigger fired with the command id by every hard delete."""
        self._cascades.append(trigger)

    @abstractmethod
    async def create(self, command: MedicationCommand) -> MedicationCommand:
        """Persist a new command after validating its invariants."""

    @abstractmethod
    async def find(self, command_id: str) -> Optional[MedicationCommand]:
        """Command by id, or None."""

    async def get(self, command_id: str) -> MedicationCommand:
        """Command by id, raising NotFoundError when missing."""
        command = await self.find(command_id)
        if command is None:
            raise NotFoundError(f"Medication {command_id} not found")
        return command

    @abstractmethod
    async def list(self, query: CommandQuery) -> List[MedicationCommand]:
        """Commands matching a query."""

    @abstractmethod
    async def replace(
        self,
        command: MedicationCommand,
        expected_version: Optional[int] = None
    ) -> MedicationCommand:
        """Overwrite a stored command, optionally guarded by its prior version."""

    @abstractmethod
    async def delete(self, command_id: str) -> Tuple[MedicationCommand, List[MedicationEvent]]:
        """Hard-delete a command; cascades to every event referencing it."""

    @abstractmethod
    async def restore(self, command: MedicationCommand) -> None:
        """Re-insert a previously deleted command verbatim."""

    async def update(
        self,
        command_id: str,
        group: str,
        patch: Dict[str, Any],
        updated_by: Optional[str] = None
    ) -> MedicationCommand:
        """Partial field-group update."""
        current = await self.get(command_id)
        updated = merge_patch(current, group, patch, updated_by)
        return await self.replace(updated, expected_version=current.metadata.version)


class InMemoryCommandStore(CommandStore):
    """Process-local command store."""

    def __init__(self):
        super().__init__()
        self._commands: Dict[str, MedicationCommand] = {}
        self._lock = asyncio.Lock()

    def _active_duplicate(self, command: MedicationCommand) -> Optional[MedicationCommand]:
        if not command.status.is_active:
            return None
        for other in self._commands.values():
            if other.id != command.id and other.status.is_active and other.identity == command.identity:
                return other
        return None

    async def create(self, command: MedicationCommand) -> MedicationCommand:
        validate_command(command)
        async with self._lock:
            if command.id in self._commands:
                raise ConflictError(f"Medication {command.id} already exists")
            duplicate = self._active_duplicate(command)
            if duplicate is not None:
                raise ConflictError(
                    f"Patient {command.patient_id} already has an active "
                    f"'{command.medication.name}' ({duplicate.id})"
                )
            self._commands[command.id] = command.model_copy(deep=True)
        logger.info(f"Created medication command {command.id} for patient {command.patient_id}")
        return command

    async def find(self, command_id: str) -> Optional[MedicationCommand]:
        command = self._commands.get(command_id)
        return command.model_copy(deep=True) if command else None

    async def list(self, query: CommandQuery) -> List[MedicationCommand]:
        matched = [c.model_copy(deep=True) for c in self._commands.values() if query.matches(c)]
        return query.sort_in_memory(matched)

    async def replace(
        self,
        command: MedicationCommand,
        expected_version: Optional[int] = None
    ) -> MedicationCommand:
        async with self._lock:
            current = self._commands.get(command.id)
            if current is None:
                raise NotFoundError(f"Medication {command.id} not found")
            if expected_version is not None and current.metadata.version != expected_version:
                raise TransientStoreError(
                    f"Medication {command.id} changed concurrently "
                    f"(expected version {expected_version}, found {current.metadata.version})"
                )
            duplicate = self._active_duplicate(command)
            if duplicate is not None:
                raise ConflictError(
                    f"Patient {command.patient_id} already has an active "
                    f"'{command.medication.name}' ({duplicate.id})"
                )
            self._commands[command.id] = command.model_copy(deep=True)
        return command

    async def delete(self, command_id: str) -> Tuple[MedicationCommand, List[MedicationEvent]]:
        async with self._lock:
            command = self._commands.pop(command_id, None)
            if command is None:
                raise NotFoundError(f"Medication {command_id} not found")
            removed: List[MedicationEvent] = []
            try:
                for trigger in self._cascades:
                    removed.extend(await trigger(command_id))
            except Exception:
                self._commands[command_id] = command
                raise
        logger.info(f"Deleted medication command {command_id} and {len(removed)} events")
        return command, removed

    async def restore(self, command: MedicationCommand) -> None:
        async with self._lock:
            self._commands[command.id] = command.model_copy(deep=True)
