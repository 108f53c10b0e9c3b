"""
DuckDB record store for synchronized entities.

Exclusively owns Entity and Reconciliation Record storage plus the small
sync_metadata table used for checkpoints.

Concurrency:
- update() is an atomic read-modify-write: a per-entity asyncio.Lock
  serializes writers of one entity, and the UPDATE is an optimistic
  check-then-set on row_version, so writes that bypass the lock (bulk
  metadata stamps, other processes) are detected and retried.
- Writers of different entities never share a lock.

Timestamps are stored as naive UTC TIMESTAMP columns and come back as
timezone-aware UTC datetimes.
"""
import asyncio
import json
import uuid
import weakref
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

import duckdb

from syncengine.exceptions import (
    ConcurrentModificationError,
    EntityNotFoundError,
    InvalidStateError,
    ValidationError,
)
from syncengine.models import (
    DiscrepancyType,
    Entity,
    ReconciliationFilter,
    ReconciliationRecord,
    SyncStatus,
    utcnow,
)
from syncengine.observability import get_logger

logger = get_logger(__name__)

# Database configuration
DB_DIR = Path(__file__).parent.parent / "data"
DB_PATH = DB_DIR / "sync.duckdb"
MEMORY = ":memory:"

ENTITY_COLUMNS = (
    "id",
    "external_id",
    "external_version",
    "payload",
    "sync_status",
    "sync_job_ref",
    "sync_dispatched_at",
    "last_sync_attempt",
    "last_sync_success",
    "sync_error_code",
    "sync_error_message",
    "retry_count",
    "next_retry_at",
    "local_modified_at",
    "status_changed_at",
    "last_reconciled_at",
    "deleted_at",
    "conflict_snapshot",
    "kept_local_version",
    "created_at",
    "row_version",
)
_SELECT_ENTITY = f"SELECT {', '.join(ENTITY_COLUMNS)} FROM entities"

RECORD_COLUMNS = (
    "id",
    "entity_id",
    "external_id",
    "discrepancy_type",
    "details",
    "detected_at",
    "resolved_at",
    "run_id",
)

Mutator = Callable[[Entity], Optional[Entity]]


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def _entity_params(entity: Entity) -> list:
    return [
        entity.id,
        entity.external_id,
        entity.external_version,
        json.dumps(entity.payload, sort_keys=True, default=str),
        entity.sync_status.value,
        entity.sync_job_ref,
        _to_db(entity.sync_dispatched_at),
        _to_db(entity.last_sync_attempt),
        _to_db(entity.last_sync_success),
        entity.sync_error_code,
        entity.sync_error_message,
        entity.retry_count,
        _to_db(entity.next_retry_at),
        _to_db(entity.local_modified_at),
        _to_db(entity.status_changed_at),
        _to_db(entity.last_reconciled_at),
        _to_db(entity.deleted_at),
        json.dumps(entity.conflict_snapshot, default=str) if entity.conflict_snapshot is not None else None,
        entity.kept_local_version,
        _to_db(entity.created_at),
        entity.row_version,
    ]


def _row_to_entity(row: tuple) -> Entity:
    data = dict(zip(ENTITY_COLUMNS, row))
    return Entity(
        id=data["id"],
        external_id=data["external_id"],
        external_version=data["external_version"],
        payload=json.loads(data["payload"]) if data["payload"] else {},
        sync_status=SyncStatus(data["sync_status"]),
        sync_job_ref=data["sync_job_ref"],
        sync_dispatched_at=_from_db(data["sync_dispatched_at"]),
        last_sync_attempt=_from_db(data["last_sync_attempt"]),
        last_sync_success=_from_db(data["last_sync_success"]),
        sync_error_code=data["sync_error_code"],
        sync_error_message=data["sync_error_message"],
        retry_count=data["retry_count"] or 0,
        next_retry_at=_from_db(data["next_retry_at"]),
        local_modified_at=_from_db(data["local_modified_at"]),
        status_changed_at=_from_db(data["status_changed_at"]),
        last_reconciled_at=_from_db(data["last_reconciled_at"]),
        deleted_at=_from_db(data["deleted_at"]),
        conflict_snapshot=json.loads(data["conflict_snapshot"]) if data["conflict_snapshot"] else None,
        kept_local_version=data["kept_local_version"],
        created_at=_from_db(data["created_at"]),
        row_version=data["row_version"] or 0,
    )


def _row_to_record(row: tuple) -> ReconciliationRecord:
    data = dict(zip(RECORD_COLUMNS, row))
    return ReconciliationRecord(
        id=data["id"],
        entity_id=data["entity_id"],
        external_id=data["external_id"],
        discrepancy_type=DiscrepancyType(data["discrepancy_type"]),
        details=json.loads(data["details"]) if data["details"] else {},
        detected_at=_from_db(data["detected_at"]),
        resolved_at=_from_db(data["resolved_at"]),
        run_id=data["run_id"],
    )


class EntityStore:
    """
    Persistent store of entities with sync metadata.

    Usage:
        store = EntityStore(":memory:")
        entity = await store.create({"name": "Widget"})
        entity = await store.update(entity.id, lambda e: ...)
    """

    def __init__(
        self,
        db_path: Union[str, Path] = DB_PATH,
        clock: Callable[[], datetime] = utcnow,
        write_attempts: int = 5,
    ):
        self.db_path = db_path
        self._clock = clock
        self._write_attempts = write_attempts
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = asyncio.Lock()
        self._entity_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    # ═══════════════════════════════════════════════════════════════════════════
    # CONNECTION
    # ═══════════════════════════════════════════════════════════════════════════

    async def connect(self) -> None:
        """Initialize database connection and schema."""
        async with self._lock:
            if self._connection is not None:
                return
            if str(self.db_path) != MEMORY:
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._connection = duckdb.connect(str(self.db_path))
            self._init_schema(self._connection)
            logger.info(f"DuckDB connected: {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        async with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
                logger.info("DuckDB connection closed")

    @asynccontextmanager
    async def connection(self):
        """Get database connection with automatic reconnection."""
        if self._connection is None:
            await self.connect()
        yield self._connection

    def _init_schema(self, conn: duckdb.DuckDBPyConnection) -> None:
        """Create database schema if not exists."""
        conn.execute("""
            CREATE TABLE IF NOT EXISTS entities (
                id VARCHAR PRIMARY KEY,
                external_id VARCHAR,
                external_version BIGINT,
                payload VARCHAR NOT NULL,
                sync_status VARCHAR NOT NULL,
                sync_job_ref VARCHAR,
                sync_dispatched_at TIMESTAMP,
                last_sync_attempt TIMESTAMP,
                last_sync_success TIMESTAMP,
                sync_error_code VARCHAR,
                sync_error_message VARCHAR,
                retry_count INTEGER NOT NULL DEFAULT 0,
                next_retry_at TIMESTAMP,
                local_modified_at TIMESTAMP NOT NULL,
                status_changed_at TIMESTAMP,
                last_reconciled_at TIMESTAMP,
                deleted_at TIMESTAMP,
                conflict_snapshot VARCHAR,
                kept_local_version BIGINT,
                created_at TIMESTAMP NOT NULL,
                row_version BIGINT NOT NULL DEFAULT 0
            )
        """)
        conn.execute("CREATE SEQUENCE IF NOT EXISTS reconciliation_record_ids START 1")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS reconciliation_records (
                id BIGINT PRIMARY KEY DEFAULT nextval('reconciliation_record_ids'),
                entity_id VARCHAR NOT NULL,
                external_id VARCHAR,
                discrepancy_type VARCHAR NOT NULL,
                details VARCHAR,
                detected_at TIMESTAMP NOT NULL,
                resolved_at TIMESTAMP,
                run_id VARCHAR
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS sync_metadata (
                key VARCHAR PRIMARY KEY,
                value VARCHAR,
                updated_at TIMESTAMP
            )
        """)

    def now(self) -> datetime:
        return self._clock()

    def next_modified_at(self, previous: Optional[datetime]) -> datetime:
        """A local_modified_at strictly after the previous one."""
        now = self._clock()
        if previous is not None and now <= previous:
            now = previous + timedelta(microseconds=1)
        return now

    def _entity_lock(self, entity_id: str) -> asyncio.Lock:
        lock = self._entity_locks.get(entity_id)
        if lock is None:
            lock = asyncio.Lock()
            self._entity_locks[entity_id] = lock
        return lock

    # ═══════════════════════════════════════════════════════════════════════════
    # ENTITIES
    # ═══════════════════════════════════════════════════════════════════════════

    async def create(
        self,
        payload: Dict[str, Any],
        external_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        external_version: Optional[int] = None,
        status: SyncStatus = SyncStatus.PENDING,
    ) -> Entity:
        """Insert a new entity. New entities start PENDING unless told otherwise."""
        if external_id and await self.get_by_external_id(external_id):
            raise ValidationError("external_id", "Already linked to another entity", external_id)

        now = self._clock()
        entity = Entity(
            id=entity_id or uuid.uuid4().hex,
            payload=dict(payload),
            external_id=external_id or None,
            external_version=external_version,
            sync_status=status,
            local_modified_at=now,
            status_changed_at=now,
            created_at=now,
        )
        placeholders = ", ".join("?" for _ in ENTITY_COLUMNS)
        async with self.connection() as conn:
            conn.execute(
                f"INSERT INTO entities ({', '.join(ENTITY_COLUMNS)}) VALUES ({placeholders})",
                _entity_params(entity),
            )
        return entity

    async def find(self, entity_id: str) -> Optional[Entity]:
        """Get an entity by local id, or None."""
        async with self.connection() as conn:
            row = conn.execute(f"{_SELECT_ENTITY} WHERE id = ?", [entity_id]).fetchone()
        return _row_to_entity(row) if row else None

    async def get(self, entity_id: str) -> Entity:
        """Get an entity by local id. Raises EntityNotFoundError."""
        entity = await self.find(entity_id)
        if entity is None:
            raise EntityNotFoundError(entity_id)
        return entity

    async def get_by_external_id(self, external_id: str) -> Optional[Entity]:
        async with self.connection() as conn:
            row = conn.execute(
                f"{_SELECT_ENTITY} WHERE external_id = ?", [external_id]
            ).fetchone()
        return _row_to_entity(row) if row else None

    async def update(self, entity_id: str, mutator: Mutator) -> Entity:
        """
        Atomic read-modify-write of one entity.

        The mutator receives a private copy of the current entity and returns
        the entity to store, or None to leave it unchanged. Exceptions raised
        by the mutator propagate and nothing is written.

        Returns:
            The stored entity after the write (or the unchanged current one)

        Raises:
            EntityNotFoundError: No such entity
            ConcurrentModificationError: The optimistic check kept failing
        """
        async with self._entity_lock(entity_id):
            for attempt in range(1, self._write_attempts + 1):
                current = await self.get(entity_id)
                proposed = mutator(current.copy())
                if proposed is None:
                    return current

                await self._check_invariants(current, proposed)
                if proposed.sync_status != current.sync_status:
                    proposed.status_changed_at = self._clock()
                proposed.row_version = current.row_version + 1

                assignments = ", ".join(f"{col} = ?" for col in ENTITY_COLUMNS[1:])
                params = _entity_params(proposed)[1:] + [entity_id, current.row_version]
                async with self.connection() as conn:
                    written = conn.execute(
                        f"UPDATE entities SET {assignments} "
                        f"WHERE id = ? AND row_version = ? RETURNING id",
                        params,
                    ).fetchall()
                if written:
                    return proposed

                logger.debug(
                    "Optimistic write lost, retrying",
                    extra={"entity_id": entity_id, "attempt": attempt},
                )

        raise ConcurrentModificationError(entity_id, self._write_attempts)

    async def _check_invariants(self, current: Entity, proposed: Entity) -> None:
        if proposed.id != current.id:
            raise InvalidStateError("Entity id is immutable", current.id)

        if proposed.external_id and proposed.external_id != current.external_id:
            other = await self.get_by_external_id(proposed.external_id)
            if other is not None and other.id != current.id:
                raise ValidationError(
                    "external_id", "Already linked to another entity", proposed.external_id
                )

        if (
            proposed.external_id == current.external_id
            and current.external_version is not None
            and (proposed.external_version is None or proposed.external_version < current.external_version)
        ):
            raise InvalidStateError(
                f"external_version may not decrease "
                f"({current.external_version} -> {proposed.external_version})",
                current.id,
            )

    async def delete(self, entity_id: str) -> bool:
        """Hard-delete an entity (local user action only)."""
        async with self._entity_lock(entity_id):
            async with self.connection() as conn:
                deleted = conn.execute(
                    "DELETE FROM entities WHERE id = ? RETURNING id", [entity_id]
                ).fetchall()
        return bool(deleted)

    async def query_pending(self, batch_size: int = 100, now: Optional[datetime] = None) -> List[Entity]:
        """PENDING entities whose backoff gate has passed, oldest change first."""
        now = now or self._clock()
        async with self.connection() as conn:
            rows = conn.execute(
                f"""
                {_SELECT_ENTITY}
                WHERE sync_status = ?
                  AND deleted_at IS NULL
                  AND sync_job_ref IS NULL
                  AND (next_retry_at IS NULL OR next_retry_at <= ?)
                ORDER BY local_modified_at, id
                LIMIT ?
                """,
                [SyncStatus.PENDING.value, _to_db(now), batch_size],
            ).fetchall()
        return [_row_to_entity(r) for r in rows]

    async def query_in_flight(self, dispatched_before: datetime) -> List[Entity]:
        """Entities dispatched before the cutoff that were never adjudicated."""
        async with self.connection() as conn:
            rows = conn.execute(
                f"""
                {_SELECT_ENTITY}
                WHERE sync_job_ref IS NOT NULL AND last_sync_attempt < ?
                ORDER BY last_sync_attempt
                """,
                [_to_db(dispatched_before)],
            ).fetchall()
        return [_row_to_entity(r) for r in rows]

    async def query_by_status(
        self, status: Optional[SyncStatus] = None, limit: int = 100
    ) -> List[Entity]:
        """Most recently changed entities first, optionally of one status."""
        where, params = "", []
        if status is not None:
            where, params = "WHERE sync_status = ?", [status.value]
        async with self.connection() as conn:
            rows = conn.execute(
                f"{_SELECT_ENTITY} {where} ORDER BY status_changed_at DESC, id LIMIT ?",
                params + [limit],
            ).fetchall()
        return [_row_to_entity(r) for r in rows]

    async def query_for_reconciliation(
        self, filter: Optional[ReconciliationFilter] = None
    ) -> AsyncIterator[List[Entity]]:
        """
        Lazily yield pages of correlated, non-deleted entities ordered by id.

        Keyset pagination: a sweep interrupted after the page ending in X can
        be resumed with ReconciliationFilter(after_id=X).
        """
        filt = filter or ReconciliationFilter()
        after_id = filt.after_id

        while True:
            where = ["external_id IS NOT NULL", "external_id <> ''", "deleted_at IS NULL"]
            params: List[Any] = []
            if filt.modified_since is not None:
                where.append("local_modified_at >= ?")
                params.append(_to_db(filt.modified_since))
            if filt.reconciled_before is not None:
                where.append("(last_reconciled_at IS NULL OR last_reconciled_at < ?)")
                params.append(_to_db(filt.reconciled_before))
            if after_id is not None:
                where.append("id > ?")
                params.append(after_id)
            params.append(filt.page_size)

            async with self.connection() as conn:
                rows = conn.execute(
                    f"{_SELECT_ENTITY} WHERE {' AND '.join(where)} ORDER BY id LIMIT ?",
                    params,
                ).fetchall()

            if not rows:
                return

            page = [_row_to_entity(r) for r in rows]
            yield page

            if len(page) < filt.page_size:
                return
            after_id = page[-1].id

    async def mark_reconciled(self, entity_ids: List[str], at: Optional[datetime] = None) -> int:
        """Stamp last_reconciled_at. Bumps row_version so racing update() calls retry."""
        if not entity_ids:
            return 0
        at = at or self._clock()
        placeholders = ", ".join("?" for _ in entity_ids)
        async with self.connection() as conn:
            rows = conn.execute(
                f"""
                UPDATE entities
                SET last_reconciled_at = ?, row_version = row_version + 1
                WHERE id IN ({placeholders})
                RETURNING id
                """,
                [_to_db(at), *entity_ids],
            ).fetchall()
        return len(rows)

    async def count_by_status(self) -> Dict[str, int]:
        """Count of non-deleted entities per sync status (all statuses present)."""
        async with self.connection() as conn:
            rows = conn.execute(
                "SELECT sync_status, COUNT(*) FROM entities WHERE deleted_at IS NULL GROUP BY sync_status"
            ).fetchall()
        counts = {status.value: 0 for status in SyncStatus}
        counts.update({status: count for status, count in rows})
        return counts

    async def count_stuck(self, status: SyncStatus, older_than: datetime) -> int:
        """Entities that have sat in `status` since before the cutoff."""
        async with self.connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM entities
                WHERE sync_status = ? AND deleted_at IS NULL AND status_changed_at < ?
                """,
                [status.value, _to_db(older_than)],
            ).fetchone()
        return row[0] if row else 0

    # ═══════════════════════════════════════════════════════════════════════════
    # RECONCILIATION RECORDS
    # ═══════════════════════════════════════════════════════════════════════════

    async def append_reconciliation_record(self, record: ReconciliationRecord) -> ReconciliationRecord:
        """Append an audit record and return it with its id."""
        async with self.connection() as conn:
            row = conn.execute(
                """
                INSERT INTO reconciliation_records
                    (entity_id, external_id, discrepancy_type, details, detected_at, resolved_at, run_id)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                [
                    record.entity_id,
                    record.external_id,
                    record.discrepancy_type.value,
                    json.dumps(record.details, sort_keys=True, default=str),
                    _to_db(record.detected_at),
                    _to_db(record.resolved_at),
                    record.run_id,
                ],
            ).fetchone()
        record.id = row[0]
        return record

    async def resolve_reconciliation_record(
        self, record_id: int, resolved_at: Optional[datetime] = None
    ) -> bool:
        """Stamp resolution on an open record. Records are otherwise immutable."""
        async with self.connection() as conn:
            rows = conn.execute(
                """
                UPDATE reconciliation_records SET resolved_at = ?
                WHERE id = ? AND resolved_at IS NULL
                RETURNING id
                """,
                [_to_db(resolved_at or self._clock()), record_id],
            ).fetchall()
        return bool(rows)

    async def list_reconciliation_records(
        self,
        entity_id: Optional[str] = None,
        run_id: Optional[str] = None,
        unresolved_only: bool = False,
        limit: int = 100,
    ) -> List[ReconciliationRecord]:
        """Most recent records first."""
        where = ["1 = 1"]
        params: List[Any] = []
        if entity_id is not None:
            where.append("entity_id = ?")
            params.append(entity_id)
        if run_id is not None:
            where.append("run_id = ?")
            params.append(run_id)
        if unresolved_only:
            where.append("resolved_at IS NULL")
        params.append(limit)

        async with self.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {', '.join(RECORD_COLUMNS)} FROM reconciliation_records
                WHERE {' AND '.join(where)}
                ORDER BY id DESC
                LIMIT ?
                """,
                params,
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    # ═══════════════════════════════════════════════════════════════════════════
    # SYNC METADATA
    # ═══════════════════════════════════════════════════════════════════════════

    async def get_metadata(self, key: str) -> Optional[str]:
        async with self.connection() as conn:
            row = conn.execute(
                "SELECT value FROM sync_metadata WHERE key = ?", [key]
            ).fetchone()
        return row[0] if row else None

    async def set_metadata(self, key: str, value: str) -> None:
        async with self.connection() as conn:
            conn.execute("""
                INSERT INTO sync_metadata (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT (key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
            """, [key, value, _to_db(self._clock())])

    async def get_checkpoint(self, key: str) -> Optional[datetime]:
        """Get a stored timestamp checkpoint (e.g. last reconciliation)."""
        value = await self.get_metadata(key)
        return datetime.fromisoformat(value) if value else None

    async def set_checkpoint(self, key: str, timestamp: Optional[datetime] = None) -> None:
        timestamp = timestamp or self._clock()
        await self.set_metadata(key, timestamp.isoformat())

    async def get_stats(self) -> Dict[str, Any]:
        """Row counts for health checks."""
        async with self.connection() as conn:
            entities = conn.execute("SELECT COUNT(*) FROM entities").fetchone()[0]
            open_records = conn.execute(
                "SELECT COUNT(*) FROM reconciliation_records WHERE resolved_at IS NULL"
            ).fetchone()[0]
        return {"entities": entities, "open_reconciliation_records": open_records}
