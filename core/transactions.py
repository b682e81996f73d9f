"""Atomic multi-write units spanning the command and event stores."""

import asyncio
import logging
import weakref
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from core.command_store import CommandStore
from core.errors import (
    ConflictError,
    FatalError,
    NotFoundError,
    PermissionDeniedError,
    TransientStoreError,
    ValidationError,
)
from core.event_store import EventStore
from core.models import MedicationCommand, MedicationEvent, new_id

logger = logging.getLogger(__name__)

# Surfaced to the caller as-is, never retried
NON_RETRYABLE = (ValidationError, NotFoundError, ConflictError, PermissionDeniedError)


class StoreWrite(ABC):
    """One write inside an atomic unit, with its compensating action."""

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable summary used in failure logs."""

    @abstractmethod
    async def apply(self) -> Any:
        """Perform the write."""

    @abstractmethod
    async def compensate(self) -> None:
        """Undo the write after a later step failed."""


class AppendOutcome(BaseModel):
    """Stored event and whether this append created it."""

    model_config = ConfigDict(frozen=True)

    event: MedicationEvent
    created: bool


class CreateCommand(StoreWrite):
    def __init__(self, store: CommandStore, command: MedicationCommand):
        self.store = store
        self.command = command

    @property
    def description(self) -> str:
        return f"create command {self.command.id} ({self.command.medication.name})"

    async def apply(self) -> MedicationCommand:
        return await self.store.create(self.command)

    async def compensate(self) -> None:
        await self.store.delete(self.command.id)


class ReplaceCommand(StoreWrite):
    """Read-modify-write of a command; the mutation runs against a fresh read."""

    def __init__(
        self,
        store: CommandStore,
        command_id: str,
        mutate: Callable[[MedicationCommand], MedicationCommand],
        label: str = "update"
    ):
        self.store = store
        self.command_id = command_id
        self.mutate = mutate
        self.label = label
        self.before: Optional[MedicationCommand] = None

    @property
    def description(self) -> str:
        return f"{self.label} command {self.command_id}"

    async def apply(self) -> MedicationCommand:
        self.before = await self.store.get(self.command_id)
        updated = self.mutate(self.before)
        return await self.store.replace(updated, expected_version=self.before.metadata.version)

    async def compensate(self) -> None:
        if self.before is not None:
            await self.store.replace(self.before)


class DeleteCommand(StoreWrite):
    """Hard delete; the store's cascade removes every event of the command."""

    def __init__(self, store: CommandStore, event_store: EventStore, command_id: str):
        self.store = store
        self.event_store = event_store
        self.command_id = command_id
        self.deleted: Optional[MedicationCommand] = None
        self.removed_events: List[MedicationEvent] = []

    @property
    def description(self) -> str:
        return f"delete command {self.command_id} with cascade"

    async def apply(self) -> MedicationCommand:
        self.deleted, self.removed_events = await self.store.delete(self.command_id)
        return self.deleted

    async def compensate(self) -> None:
        if self.deleted is not None:
            await self.store.restore(self.deleted)
            await self.event_store.restore(self.removed_events)


class AppendEvent(StoreWrite):
    def __init__(self, store: EventStore, event: MedicationEvent):
        self.store = store
        self.event = event
        self.outcome: Optional[AppendOutcome] = None

    @property
    def description(self) -> str:
        scheduled = self.event.timing.scheduled_datetime
        at = f" @ {scheduled.isoformat()}" if scheduled else ""
        return f"append {self.event.event_type.value} {self.event.id} for command {self.event.command_id}{at}"

    async def apply(self) -> AppendOutcome:
        event, created = await self.store.append(self.event)
        self.outcome = AppendOutcome(event=event, created=created)
        return self.outcome

    async def compensate(self) -> None:
        # A deduplicated append wrote nothing
        if self.outcome is not None and self.outcome.created:
            await self.store.delete(self.outcome.event.id)


class ArchiveEvents(StoreWrite):
    def __init__(
        self,
        store: EventStore,
        before: datetime,
        archived_at: datetime,
        command_ids: Optional[Sequence[str]] = None
    ):
        self.store = store
        self.before = before
        self.archived_at = archived_at
        self.command_ids = command_ids
        self.moved: List[str] = []

    @property
    def description(self) -> str:
        scope = f" of {len(self.command_ids)} commands" if self.command_ids is not None else ""
        return f"archive events{scope} older than {self.before.isoformat()}"

    async def apply(self) -> List[str]:
        self.moved = await self.store.archive(self.before, self.archived_at, self.command_ids)
        return self.moved

    async def compensate(self) -> None:
        await self.store.unarchive(self.moved)


class TransactionResult(BaseModel):
    """Committed atomic unit."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    transaction_id: str
    correlation_id: Optional[str] = None
    attempts: int = 1
    results: List[Any] = Field(default_factory=list)


class TransactionCoordinator:
    """
    Runs lists of store writes as all-or-nothing units.

    Writes are applied in order; on failure the applied ones are
    compensated in reverse. Transient store errors retry the whole unit
    with exponential backoff; validation, not-found and conflict errors
    surface immediately; anything else is fatal and logged with the full
    operation list for manual replay.
    """

    def __init__(
        self,
        max_retries: int = 3,
        backoff_seconds: float = 0.2,
        timeout_seconds: float = 120.0
    ):
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.timeout_seconds = timeout_seconds
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def run_atomic(
        self,
        operations: Sequence[StoreWrite],
        correlation_id: Optional[str] = None,
        label: str = "transaction",
        lock_key: Optional[str] = None
    ) -> TransactionResult:
        """
        Apply every write or none of them.

        Args:
            operations: Writes in the order they must be applied
            correlation_id: Request correlation id, logged on failure
            label: Short name of the use case for logs
            lock_key: Serializes units sharing the key inside this process

        Returns:
            The committed unit with each write's result

        Raises:
            ValidationError, NotFoundError, ConflictError: Rolled back, not retried
            FatalError: Rolled back after retries were exhausted or on an
                unclassified failure
        """
        transaction_id = new_id("txn")
        if lock_key is None:
            return await self._run(operations, transaction_id, correlation_id, label)

        lock = self._lock_for(lock_key)
        async with lock:
            return await self._run(operations, transaction_id, correlation_id, label)

    async def _run(
        self,
        operations: Sequence[StoreWrite],
        transaction_id: str,
        correlation_id: Optional[str],
        label: str
    ) -> TransactionResult:
        attempt = 0
        while True:
            attempt += 1
            applied: List[StoreWrite] = []
            try:
                results = await asyncio.wait_for(
                    self._apply_all(operations, applied),
                    timeout=self.timeout_seconds
                )
            except NON_RETRYABLE:
                await self._rollback(applied, transaction_id, correlation_id, operations)
                raise
            except TransientStoreError as e:
                await self._rollback(applied, transaction_id, correlation_id, operations)
                if attempt > self.max_retries:
                    self._log_fatal(label, transaction_id, correlation_id, operations, e)
                    raise FatalError(
                        f"{label} failed after {attempt} attempts: {e}",
                        transaction_id=transaction_id,
                        correlation_id=correlation_id,
                        operations=[op.description for op in operations]
                    ) from e
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    f"Transient failure in {label} ({transaction_id}), "
                    f"attempt {attempt}/{self.max_retries + 1}, retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
                continue
            except asyncio.TimeoutError as e:
                await self._rollback(applied, transaction_id, correlation_id, operations)
                self._log_fatal(label, transaction_id, correlation_id, operations, e)
                raise FatalError(
                    f"{label} exceeded {self.timeout_seconds}s",
                    transaction_id=transaction_id,
                    correlation_id=correlation_id,
                    operations=[op.description for op in operations]
                ) from e
            except Exception as e:
                await self._rollback(applied, transaction_id, correlation_id, operations)
                self._log_fatal(label, transaction_id, correlation_id, operations, e)
                raise FatalError(
                    f"{label} failed: {e}",
                    transaction_id=transaction_id,
                    correlation_id=correlation_id,
                    operations=[op.description for op in operations]
                ) from e

            logger.info(
                f"Committed {label} ({transaction_id}, {len(operations)} writes, attempt {attempt})"
            )
            return TransactionResult(
                transaction_id=transaction_id,
                correlation_id=correlation_id,
                attempts=attempt,
                results=results
            )

    @staticmethod
    async def _apply_all(operations: Sequence[StoreWrite], applied: List[StoreWrite]) -> List[Any]:
        results = []
        for op in operations:
            results.append(await op.apply())
            applied.append(op)
        return results

    async def _rollback(
        self,
        applied: List[StoreWrite],
        transaction_id: str,
        correlation_id: Optional[str],
        operations: Sequence[StoreWrite]
    ) -> None:
        failures = []
        for op in reversed(applied):
            try:
                await op.compensate()
            except Exception as e:
                logger.error(f"Compensation failed in {transaction_id}: {op.description}: {e}")
                failures.append(op.description)

        if failures:
            raise FatalError(
                f"Rollback of {transaction_id} incomplete; manual repair needed",
                transaction_id=transaction_id,
                correlation_id=correlation_id,
                operations=[op.description for op in operations]
            )
        if applied:
            logger.info(f"Rolled back {len(applied)} writes of {transaction_id}")

    @staticmethod
    def _log_fatal(
        label: str,
        transaction_id: str,
        correlation_id: Optional[str],
        operations: Sequence[StoreWrite],
        error: BaseException
    ) -> None:
        steps = "\n".join(f"  {i + 1}. {op.description}" for i, op in enumerate(operations))
        logger.error(
            f"FATAL {label} failed (transaction={transaction_id}, correlation={correlation_id}): "
            f"{type(error).__name__}: {error}\nOperations for replay:\n{steps}"
        )


