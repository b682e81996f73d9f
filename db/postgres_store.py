"""PostgreSQL implementations of the command, event and preferences stores."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import asyncpg

from core.command_store import CommandQuery, CommandStore
from core.dose_state import fold_dose
from core.errors import ConflictError, NotFoundError, TransientStoreError, ValidationError
from core.event_store import EventQuery, EventStore, check_dose_transition
from core.models import (
    DoseState,
    EventType,
    MedicationCommand,
    MedicationEvent,
    PatientTimePreferences,
    TERMINAL_EVENT_TYPES,
)
from core.preferences import validate_preferences
from core.validation import validate_command
from db.pool import DatabasePool

logger = logging.getLogger(__name__)

ACTIVE_TABLE = "medication_events"
ARCHIVE_TABLE = "medication_events_archive"

EVENT_COLUMNS = (
    "id, command_id, patient_id, event_type, correlation_id, scheduled_event_id, "
    "closes_event_id, scheduled_datetime, event_timestamp, created_at, archived_at, document"
)

# Errors after which the whole unit can safely be retried
TRANSIENT_ERRORS = (
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.QueryCanceledError,
    ConnectionError,
    OSError,
)

COMMAND_SORT_COLUMNS = {
    "name": "name_key",
    "created_at": "created_at",
    "updated_at": "updated_at",
    "start_date": "start_date",
    "status": "status",
}


@asynccontextmanager
async def translate_errors(action: str):
    """Map driver errors onto the engine's error taxonomy."""
    try:
        yield
    except asyncpg.exceptions.UniqueViolationError as e:
        raise ConflictError(f"{action} violates a uniqueness constraint: {e.constraint_name}") from e
    except asyncpg.exceptions.ForeignKeyViolationError as e:
        raise NotFoundError(f"{action} references a missing medication") from e
    except TRANSIENT_ERRORS as e:
        raise TransientStoreError(f"{action} failed: {e}") from e


class PostgresCommandStore(CommandStore):
    """Commands in the medication_commands table.

    Deleting a command removes its events through ON DELETE CASCADE.
    """

    def __init__(self, db_pool: DatabasePool):
        super().__init__()
        self.db_pool = db_pool

    @staticmethod
    def _params(command: MedicationCommand) -> Tuple:
        return (
            command.id,
            command.patient_id,
            command.identity[1],
            command.status.current.value,
            command.status.is_active,
            command.is_prn,
            command.grace_period.medication_type.value,
            command.metadata.version,
            command.schedule.start_date,
            command.metadata.created_at,
            command.metadata.updated_at,
            command.model_dump_json(),
        )

    async def create(self, command: MedicationCommand) -> MedicationCommand:
        validate_command(command)
        async with translate_errors(f"Create medication {command.id}"):
            async with self.db_pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO medication_commands
                    (id, patient_id, name_key, status, is_active, is_prn, medication_type,
                     version, start_date, created_at, updated_at, document)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                    """,
                    *self._params(command)
                )
        logger.info(f"Created medication command {command.id} for patient {command.patient_id}")
        return command

    async def find(self, command_id: str) -> Optional[MedicationCommand]:
        async with translate_errors(f"Read medication {command_id}"):
            async with self.db_pool.acquire() as conn:
                document = await conn.fetchval(
                    "SELECT document FROM medication_commands WHERE id = $1",
                    command_id
                )
        return MedicationCommand.model_validate_json(document) if document else None

    async def list(self, query: CommandQuery) -> List[MedicationCommand]:
        """
        Commands matching a query.

        A single filter is sorted and limited in SQL. With several filters
        the filtered set is fetched unordered and sorted in memory, so no
        composite index is needed per filter combination.
        """
        filters = query.filters()
        sort_in_memory = len(filters) > 1 and query.order_by is not None

        conditions, args = [], []
        for key, value in filters.items():
            if key == "name":
                key, value = "name_key", value.strip().lower()
            elif hasattr(value, "value"):
                value = value.value
            args.append(value)
            conditions.append(f"{key} = ${len(args)}")

        sql = "SELECT document FROM medication_commands"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)

        if sort_in_memory:
            async with translate_errors("List medications"):
                async with self.db_pool.acquire() as conn:
                    rows = await conn.fetch(sql, *args)
            return query.sort_in_memory([MedicationCommand.model_validate_json(row["document"]) for row in rows])

        if query.order_by:
            if query.order_by not in COMMAND_SORT_COLUMNS:
                raise ValidationError(f"Cannot sort by {query.order_by!r}")
            sql += f" ORDER BY {COMMAND_SORT_COLUMNS[query.order_by]} {'DESC' if query.descending else 'ASC'}, id"
        if query.limit is not None:
            args.append(query.limit)
            sql += f" LIMIT ${len(args)}"

        async with translate_errors("List medications"):
            async with self.db_pool.acquire() as conn:
                rows = await conn.fetch(sql, *args)
        return [MedicationCommand.model_validate_json(row["document"]) for row in rows]

    async def replace(
        self,
        command: MedicationCommand,
        expected_version: Optional[int] = None
    ) -> MedicationCommand:
        async with translate_errors(f"Update medication {command.id}"):
            async with self.db_pool.acquire() as conn:
                updated = await conn.fetchval(
                    """
                    UPDATE medication_commands
                    SET patient_id = $2, name_key = $3, status = $4, is_active = $5, is_prn = $6,
                        medication_type = $7, version = $8, start_date = $9, created_at = $10,
                        updated_at = $11, document = $12
                    WHERE id = $1 AND ($13::int IS NULL OR version = $13)
                    RETURNING id
                    """,
                    *self._params(command),
                    expected_version
                )
                if updated is None:
                    exists = await conn.fetchval(
                        "SELECT version FROM medication_commands WHERE id = $1",
                        command.id
                    )
                    if exists is None:
                        raise NotFoundError(f"Medication {command.id} not found")
                    raise TransientStoreError(
                        f"Medication {command.id} changed concurrently "
                        f"(expected version {expected_version}, found {exists})"
                    )
        return command

    async def delete(self, command_id: str) -> Tuple[MedicationCommand, List[MedicationEvent]]:
        async with translate_errors(f"Delete medication {command_id}"):
            async with self.db_pool.acquire() as conn:
                async with conn.transaction():
                    document = await conn.fetchval(
                        "SELECT document FROM medication_commands WHERE id = $1 FOR UPDATE",
                        command_id
                    )
                    if document is None:
                        raise NotFoundError(f"Medication {command_id} not found")
                    rows = []
                    for table in (ACTIVE_TABLE, ARCHIVE_TABLE):
                        rows.extend(await conn.fetch(
                            f"SELECT {EVENT_COLUMNS} FROM {table} WHERE command_id = $1",
                            command_id
                        ))
                    await conn.execute("DELETE FROM medication_commands WHERE id = $1", command_id)

        removed = [row_to_event(row) for row in rows]
        for trigger in self._cascades:
            removed.extend(await trigger(command_id))
        logger.info(f"Deleted medication command {command_id} and {len(removed)} events")
        return MedicationCommand.model_validate_json(document), removed

    async def restore(self, command: MedicationCommand) -> None:
        async with translate_errors(f"Restore medication {command.id}"):
            async with self.db_pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO medication_commands
                    (id, patient_id, name_key, status, is_active, is_prn, medication_type,
                     version, start_date, created_at, updated_at, document)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                    ON CONFLICT (id) DO UPDATE
                    SET status = EXCLUDED.status, is_active = EXCLUDED.is_active,
                        version = EXCLUDED.version, updated_at = EXCLUDED.updated_at,
                        document = EXCLUDED.document
                    """,
                    *self._params(command)
                )


def row_to_event(row: Any) -> MedicationEvent:
    event = MedicationEvent.model_validate_json(row["document"])
    return event.model_copy(update={"archived_at": row["archived_at"]})


def _event_params(event: MedicationEvent) -> Tuple:
    return (
        event.id,
        event.command_id,
        event.patient_id,
        event.event_type.value,
        event.context.correlation_id,
        event.context.scheduled_event_id,
        event.context.closes_event_id,
        event.timing.scheduled_datetime,
        event.timing.event_timestamp,
        event.metadata.created_at,
        event.archived_at,
        event.model_dump_json(),
    )


class PostgresEventStore(EventStore):
    """Events in medication_events, archived ones in medication_events_archive."""

    def __init__(self, db_pool: DatabasePool):
        self.db_pool = db_pool

    @staticmethod
    async def _insert(conn, table: str, event: MedicationEvent) -> None:
        await conn.execute(
            f"""
            INSERT INTO {table} ({EVENT_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            ON CONFLICT (id) DO NOTHING
            """,
            *_event_params(event)
        )

    @staticmethod
    async def _fetch_one(conn, event_id: str) -> Optional[MedicationEvent]:
        for table in (ACTIVE_TABLE, ARCHIVE_TABLE):
            row = await conn.fetchrow(f"SELECT {EVENT_COLUMNS} FROM {table} WHERE id = $1", event_id)
            if row is not None:
                return row_to_event(row)
        return None

    @staticmethod
    async def _related(conn, scheduled_ids: List[str]) -> Dict[str, List[MedicationEvent]]:
        related: Dict[str, List[MedicationEvent]] = {}
        for table in (ACTIVE_TABLE, ARCHIVE_TABLE):
            rows = await conn.fetch(
                f"SELECT {EVENT_COLUMNS} FROM {table} WHERE scheduled_event_id = ANY($1::text[])",
                scheduled_ids
            )
            for row in rows:
                related.setdefault(row["scheduled_event_id"], []).append(row_to_event(row))
        return related

    async def _fold(self, conn, scheduled_event_id: str) -> DoseState:
        scheduled = await self._fetch_one(conn, scheduled_event_id)
        if scheduled is None or scheduled.event_type != EventType.DOSE_SCHEDULED:
            raise NotFoundError(f"Scheduled dose {scheduled_event_id} not found")
        related = await self._related(conn, [scheduled.id])
        return fold_dose(scheduled, related.get(scheduled.id, []))

    async def append(self, event: MedicationEvent) -> Tuple[MedicationEvent, bool]:
        if event.event_type != EventType.DOSE_SCHEDULED and event.event_type.value.startswith("dose_"):
            if event.context.scheduled_event_id is None and event.event_type != EventType.DOSE_TAKEN:
                raise ValidationError(f"{event.event_type.value} must reference a scheduled dose")

        async with translate_errors(f"Append {event.event_type.value} {event.id}"):
            async with self.db_pool.acquire() as conn:
                async with conn.transaction():
                    # Serializes appends per command across processes
                    await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", event.command_id)

                    row = await conn.fetchrow(
                        f"""
                        SELECT {EVENT_COLUMNS} FROM {ACTIVE_TABLE}
                        WHERE command_id = $1 AND correlation_id = $2 AND event_type = $3
                          AND scheduled_datetime IS NOT DISTINCT FROM $4
                        """,
                        event.command_id,
                        event.context.correlation_id,
                        event.event_type.value,
                        event.timing.scheduled_datetime
                    )
                    if row is not None:
                        return row_to_event(row), False

                    if event.event_type == EventType.DOSE_SCHEDULED:
                        row = await conn.fetchrow(
                            f"""
                            SELECT {EVENT_COLUMNS} FROM {ACTIVE_TABLE}
                            WHERE command_id = $1 AND event_type = 'dose_scheduled'
                              AND scheduled_datetime = $2
                            """,
                            event.command_id,
                            event.timing.scheduled_datetime
                        )
                        if row is not None:
                            return row_to_event(row), False

                    if event.context.scheduled_event_id:
                        dose = await self._fold(conn, event.context.scheduled_event_id)
                        check_dose_transition(event, dose)

                    await self._insert(conn, ACTIVE_TABLE, event)
        return event, True

    async def find(self, event_id: str) -> Optional[MedicationEvent]:
        async with translate_errors(f"Read event {event_id}"):
            async with self.db_pool.acquire() as conn:
                return await self._fetch_one(conn, event_id)

    async def query(self, query: EventQuery) -> List[MedicationEvent]:
        conditions, args = [], []

        def add(sql: str, value: Any) -> None:
            args.append(value)
            conditions.append(sql.format(f"${len(args)}"))

        if query.patient_id:
            add("patient_id = {}", query.patient_id)
        if query.command_id:
            add("command_id = {}", query.command_id)
        if query.event_types:
            add("event_type = ANY({}::text[])", [t.value for t in query.event_types])
        if query.scheduled_event_id:
            add("scheduled_event_id = {}", query.scheduled_event_id)
        if query.scheduled_from:
            add("scheduled_datetime >= {}", query.scheduled_from)
        if query.scheduled_to:
            add("scheduled_datetime <= {}", query.scheduled_to)
        if query.occurred_from:
            add("event_timestamp >= {}", query.occurred_from)
        if query.occurred_to:
            add("event_timestamp <= {}", query.occurred_to)

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        if query.archived_only:
            tables = [ARCHIVE_TABLE]
        elif query.include_archived:
            tables = [ACTIVE_TABLE, ARCHIVE_TABLE]
        else:
            tables = [ACTIVE_TABLE]
        sql = " UNION ALL ".join(f"SELECT {EVENT_COLUMNS} FROM {table}{where}" for table in tables)

        direction = "DESC" if query.descending else "ASC"
        sql += f" ORDER BY event_timestamp {direction}, created_at {direction}, id {direction}"
        if query.limit is not None:
            args.append(query.limit)
            sql += f" LIMIT ${len(args)}"

        async with translate_errors("Query events"):
            async with self.db_pool.acquire() as conn:
                rows = await conn.fetch(sql, *args)
        return [row_to_event(row) for row in rows]

    async def get_dose(self, scheduled_event_id: str) -> DoseState:
        async with translate_errors(f"Read dose {scheduled_event_id}"):
            async with self.db_pool.acquire() as conn:
                return await self._fold(conn, scheduled_event_id)

    async def list_open_doses(
        self,
        scheduled_from: datetime,
        scheduled_to: datetime,
        limit: int,
        patient_id: Optional[str] = None,
        command_id: Optional[str] = None
    ) -> List[DoseState]:
        terminal_types = [t.value for t in TERMINAL_EVENT_TYPES]
        async with translate_errors("List open doses"):
            async with self.db_pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {EVENT_COLUMNS} FROM {ACTIVE_TABLE} s
                    WHERE s.event_type = 'dose_scheduled'
                      AND s.scheduled_datetime BETWEEN $1 AND $2
                      AND ($3::text IS NULL OR s.patient_id = $3)
                      AND ($4::text IS NULL OR s.command_id = $4)
                      AND NOT EXISTS (
                          SELECT 1 FROM {ACTIVE_TABLE} t
                          WHERE t.scheduled_event_id = s.id
                            AND t.event_type = ANY($5::text[])
                            AND NOT EXISTS (
                                SELECT 1 FROM {ACTIVE_TABLE} u
                                WHERE u.event_type = 'dose_undo' AND u.closes_event_id = t.id
                            )
                      )
                    ORDER BY s.scheduled_datetime, s.id
                    LIMIT $6
                    """,
                    scheduled_from,
                    scheduled_to,
                    patient_id,
                    command_id,
                    terminal_types,
                    limit
                )
                scheduled = [row_to_event(row) for row in rows]
                related = await self._related(conn, [e.id for e in scheduled]) if scheduled else {}

        doses = [fold_dose(event, related.get(event.id, [])) for event in scheduled]
        return [dose for dose in doses if dose.is_open]

    async def delete(self, event_id: str) -> bool:
        async with translate_errors(f"Delete event {event_id}"):
            async with self.db_pool.acquire() as conn:
                deleted = 0
                for table in (ACTIVE_TABLE, ARCHIVE_TABLE):
                    status = await conn.execute(f"DELETE FROM {table} WHERE id = $1", event_id)
                    deleted += int(status.split()[-1])
        return deleted > 0

    async def delete_for_command(self, command_id: str) -> List[MedicationEvent]:
        removed = []
        async with translate_errors(f"Delete events of {command_id}"):
            async with self.db_pool.acquire() as conn:
                async with conn.transaction():
                    for table in (ACTIVE_TABLE, ARCHIVE_TABLE):
                        rows = await conn.fetch(
                            f"DELETE FROM {table} WHERE command_id = $1 RETURNING {EVENT_COLUMNS}",
                            command_id
                        )
                        removed.extend(row_to_event(row) for row in rows)
        logger.info(f"Cascade removed {len(removed)} events of command {command_id}")
        return removed

    async def restore(self, events: Iterable[MedicationEvent]) -> None:
        async with translate_errors("Restore events"):
            async with self.db_pool.acquire() as conn:
                async with conn.transaction():
                    for event in events:
                        table = ARCHIVE_TABLE if event.archived_at is not None else ACTIVE_TABLE
                        await self._insert(conn, table, event)

    async def archive(
        self,
        before: datetime,
        archived_at: datetime,
        command_ids: Optional[Iterable[str]] = None
    ) -> List[str]:
        only = list(command_ids) if command_ids is not None else None
        async with translate_errors("Archive events"):
            async with self.db_pool.acquire() as conn:
                async with conn.transaction():
                    rows = await conn.fetch(
                        f"""
                        DELETE FROM {ACTIVE_TABLE}
                        WHERE COALESCE(scheduled_datetime, event_timestamp) < $1
                          AND ($2::text[] IS NULL OR command_id = ANY($2::text[]))
                        RETURNING {EVENT_COLUMNS}
                        """,
                        before,
                        only
                    )
                    for row in rows:
                        event = row_to_event(row).model_copy(update={"archived_at": archived_at})
                        await self._insert(conn, ARCHIVE_TABLE, event)
        if rows:
            logger.info(f"Archived {len(rows)} events older than {before.isoformat()}")
        return [row["id"] for row in rows]

    async def unarchive(self, event_ids: Iterable[str]) -> None:
        ids = list(event_ids)
        if not ids:
            return
        async with translate_errors("Unarchive events"):
            async with self.db_pool.acquire() as conn:
                async with conn.transaction():
                    rows = await conn.fetch(
                        f"DELETE FROM {ARCHIVE_TABLE} WHERE id = ANY($1::text[]) RETURNING {EVENT_COLUMNS}",
                        ids
                    )
                    for row in rows:
                        await self._insert(conn, ACTIVE_TABLE, row_to_event(row).model_copy(update={"archived_at": None}))


class PostgresTimePreferencesStore:
    """Patient time-slot preferences in patient_time_preferences."""

    def __init__(self, db_pool: DatabasePool, default_timezone: str = "UTC"):
        self.db_pool = db_pool
        self.default_timezone = default_timezone

    async def get_preferences(self, patient_id: str) -> PatientTimePreferences:
        async with translate_errors(f"Read preferences of {patient_id}"):
            async with self.db_pool.acquire() as conn:
                document = await conn.fetchval(
                    "SELECT document FROM patient_time_preferences WHERE patient_id = $1",
                    patient_id
                )
        if document is None:
            return PatientTimePreferences(patient_id=patient_id, timezone=self.default_timezone)
        return PatientTimePreferences.model_validate_json(document)

    async def save_preferences(self, preferences: PatientTimePreferences) -> PatientTimePreferences:
        validate_preferences(preferences)
        async with translate_errors(f"Save preferences of {preferences.patient_id}"):
            async with self.db_pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO patient_time_preferences (patient_id, document, updated_at)
                    VALUES ($1, $2, NOW())
                    ON CONFLICT (patient_id) DO UPDATE
                    SET document = EXCLUDED.document, updated_at = NOW()
                    """,
                    preferences.patient_id,
                    preferences.model_dump_json()
                )
        logger.info(f"Saved time preferences for patient {preferences.patient_id}")
        return preferences
