"""
Sync state machine.

Governs one entity's lifecycle:

    PENDING ──dispatch──► PROCESSING ──adjudicate──► SYNCED
                                                 ├─► SKIPPED
                                                 ├─► VERSION_CONFLICT  (operator)
                                                 ├─► VALIDATION_FAILED (operator)
                                                 └─► ERROR ──retry──► PENDING
                                                           └─────────► DEAD_LETTER (operator)

Every status change goes through the transition table and happens inside one
EntityStore.update() call, so each decision is made against the state that is
current at write time rather than the state captured at dispatch.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Union

from syncengine.config import SyncConfig
from syncengine.conflict import (
    compare_versions,
    detect_race_condition,
    diff_fields,
    error_code_for,
    is_transient,
    validate_shape,
    verify_checksum,
)
from syncengine.events import EventBus, SyncEvent
from syncengine.exceptions import InvalidStateError, InvalidTransitionError, ValidationError
from syncengine.models import (
    AdjudicationResult,
    ConflictResolution,
    Entity,
    EntitySchema,
    RemoteSnapshot,
    SyncStatus,
    VersionComparison,
)
from syncengine.observability import get_logger
from syncengine.store import EntityStore

logger = get_logger(__name__)

Outcome = Union[RemoteSnapshot, BaseException, None]

S = SyncStatus

TRANSITIONS: Dict[SyncStatus, FrozenSet[SyncStatus]] = {
    S.PENDING: frozenset({S.PENDING, S.PROCESSING}),
    # PENDING: user edit while the call is in flight
    S.PROCESSING: frozenset({
        S.SYNCED, S.SKIPPED, S.VERSION_CONFLICT, S.VALIDATION_FAILED, S.ERROR, S.PENDING,
    }),
    S.ERROR: frozenset({S.PENDING, S.DEAD_LETTER, S.PROCESSING}),
    S.SYNCED: frozenset({S.PENDING, S.PROCESSING}),
    S.SKIPPED: frozenset({S.PENDING, S.PROCESSING}),
    S.VALIDATION_FAILED: frozenset({S.PENDING, S.PROCESSING}),
    S.VERSION_CONFLICT: frozenset({S.PENDING}),
    S.DEAD_LETTER: frozenset({S.PENDING, S.PROCESSING}),
}

_OUTCOME_EVENTS = {
    S.SYNCED: SyncEvent.ENTITY_SYNCED,
    S.SKIPPED: SyncEvent.ENTITY_SKIPPED,
    S.VERSION_CONFLICT: SyncEvent.ENTITY_CONFLICT,
    S.VALIDATION_FAILED: SyncEvent.ENTITY_VALIDATION_FAILED,
    S.ERROR: SyncEvent.ENTITY_FAILED,
}


def can_transition(current: SyncStatus, target: SyncStatus) -> bool:
    return target in TRANSITIONS[current]


class SyncStateMachine:
    """
    Applies lifecycle transitions to entities in the store.

    Usage:
        machine = SyncStateMachine(store, bus, config.sync, config.schema)
        entity = await machine.dispatch(entity_id)
        snapshot = await remote.get_by_id(entity.external_id)
        result = await machine.adjudicate(entity_id, entity.sync_job_ref, snapshot)
    """

    def __init__(
        self,
        store: EntityStore,
        bus: EventBus,
        config: Optional[SyncConfig] = None,
        schema: Optional[EntitySchema] = None,
    ):
        self.store = store
        self.bus = bus
        self.config = config or SyncConfig()
        self.schema = schema or EntitySchema()

    def _transition(self, entity: Entity, target: SyncStatus) -> None:
        if not can_transition(entity.sync_status, target):
            raise InvalidTransitionError(entity.id, entity.sync_status, target)
        entity.sync_status = target

    async def _emit(self, event: SyncEvent, entity: Entity, **data: Any) -> None:
        await self.bus.emit(
            event,
            {
                "entity_id": entity.id,
                "external_id": entity.external_id,
                "status": entity.sync_status.value,
                **data,
            },
            source="state_machine",
        )

    # ═══════════════════════════════════════════════════════════════════════════
    # USER WRITES
    # ═══════════════════════════════════════════════════════════════════════════

    async def create_entity(
        self, payload: Dict[str, Any], external_id: Optional[str] = None
    ) -> Entity:
        """Create a new entity in PENDING."""
        entity = await self.store.create(payload, external_id=external_id)
        await self._emit(SyncEvent.ENTITY_CREATED, entity)
        return entity

    async def record_local_write(
        self, entity_id: str, changes: Dict[str, Any], replace: bool = False
    ) -> Entity:
        """
        Commit a user edit immediately.

        Resets the entity to PENDING unless it sits in an operator-gated state,
        in which case the edit is stored and the status is left alone. An edit
        that lands while a call is in flight keeps the job ref so the pending
        adjudication can detect the race.
        """
        def mutate(entity: Entity) -> Entity:
            if entity.is_deleted:
                raise InvalidStateError("Entity was deleted remotely", entity.id, entity.sync_status)
            entity.payload = dict(changes) if replace else {**entity.payload, **changes}
            entity.local_modified_at = self.store.next_modified_at(entity.local_modified_at)
            if entity.sync_status not in SyncStatus.operator_gated():
                self._transition(entity, SyncStatus.PENDING)
                entity.next_retry_at = None
            return entity

        entity = await self.store.update(entity_id, mutate)
        await self._emit(SyncEvent.ENTITY_WRITTEN, entity, fields=sorted(changes))
        return entity

    # ═══════════════════════════════════════════════════════════════════════════
    # DISPATCH / ADJUDICATE
    # ═══════════════════════════════════════════════════════════════════════════

    async def dispatch(
        self,
        entity_id: str,
        *,
        operator_approved: bool = False,
        as_of: Optional[datetime] = None,
    ) -> Entity:
        """
        Move an entity to PROCESSING and stamp a fresh sync_job_ref.

        Args:
            entity_id: Local entity id
            operator_approved: Allow dispatch from non-PENDING states
            as_of: Race-detection reference time (defaults to now). The sweeper
                passes the time its snapshot was fetched.

        Raises:
            EntityNotFoundError: No such entity
            InvalidStateError: Deleted, already in flight, or not PENDING
        """
        job_ref = uuid.uuid4().hex

        def mutate(entity: Entity) -> Entity:
            if entity.is_deleted:
                raise InvalidStateError("Entity was deleted remotely", entity.id, entity.sync_status)
            if entity.in_flight:
                raise InvalidStateError("Sync already in flight", entity.id, entity.sync_status)
            if entity.sync_status != SyncStatus.PENDING and not operator_approved:
                raise InvalidStateError(
                    f"Cannot dispatch from {entity.sync_status.value}",
                    entity.id,
                    entity.sync_status,
                )
            self._transition(entity, SyncStatus.PROCESSING)
            now = self.store.now()
            entity.sync_job_ref = job_ref
            entity.last_sync_attempt = now
            entity.sync_dispatched_at = as_of or now
            entity.next_retry_at = None
            return entity

        entity = await self.store.update(entity_id, mutate)
        await self._emit(SyncEvent.ENTITY_DISPATCHED, entity, job_ref=job_ref)
        return entity

    async def adjudicate(
        self,
        entity_id: str,
        job_ref: Optional[str],
        outcome: Outcome,
        *,
        repair: bool = False,
    ) -> AdjudicationResult:
        """
        Turn one remote call outcome into the entity's next status.

        Args:
            entity_id: Local entity id
            job_ref: The sync_job_ref stamped by dispatch()
            outcome: RemoteSnapshot, None (not found remotely) or the exception
                the call raised
            repair: Reconciliation mode; a SAME version with differing fields
                is applied instead of skipped

        Returns:
            AdjudicationResult. A call whose job_ref no longer matches is a
            no-op (noop=True), which makes adjudication idempotent.
        """
        claimed_by = None
        if isinstance(outcome, RemoteSnapshot) and outcome.id:
            owner = await self.store.get_by_external_id(outcome.id)
            if owner is not None and owner.id != entity_id:
                claimed_by = owner.id

        decision: Dict[str, AdjudicationResult] = {}

        def mutate(entity: Entity) -> Optional[Entity]:
            if job_ref is None or entity.sync_job_ref != job_ref:
                decision["result"] = AdjudicationResult(
                    entity=entity, status=entity.sync_status, noop=True, reason="job_ref_mismatch"
                )
                return None
            result = self._decide(entity, outcome, repair, claimed_by)
            decision["result"] = result
            return result.entity

        stored = await self.store.update(entity_id, mutate)
        result = decision["result"]
        result.entity = stored

        if result.noop:
            logger.debug(
                "Adjudication ignored, job ref no longer current",
                extra={"entity_id": entity_id, "job_ref": job_ref},
            )
            return result

        await self._emit_outcome(result)
        return result

    def _decide(
        self,
        entity: Entity,
        outcome: Outcome,
        repair: bool,
        claimed_by: Optional[str],
    ) -> AdjudicationResult:
        # (1) transport outcome
        if isinstance(outcome, BaseException):
            if is_transient(outcome):
                entity.retry_count += 1
                return self._finish(entity, S.ERROR, error_code_for(outcome), str(outcome), error=outcome)
            return self._finish(
                entity, S.VALIDATION_FAILED, error_code_for(outcome), str(outcome), error=outcome
            )
        if outcome is None:
            return self._finish(
                entity, S.VALIDATION_FAILED, "REMOTE_NOT_FOUND", "Remote record not found"
            )

        snapshot = outcome

        # (2) structure
        problems = validate_shape(snapshot, self.schema)
        if problems:
            return self._finish(
                entity, S.VALIDATION_FAILED, "INVALID_PAYLOAD", "; ".join(str(p) for p in problems)
            )
        if entity.external_id and snapshot.id != entity.external_id:
            return self._finish(
                entity,
                S.VALIDATION_FAILED,
                "EXTERNAL_ID_MISMATCH",
                f"Expected remote id {entity.external_id}, got {snapshot.id}",
            )
        if claimed_by:
            return self._finish(
                entity,
                S.VALIDATION_FAILED,
                "DUPLICATE_EXTERNAL_ID",
                f"Remote id {snapshot.id} is already linked to entity {claimed_by}",
            )

        now = self.store.now()

        # (3) soft delete is authoritative regardless of version
        if snapshot.is_deleted:
            entity.deleted_at = snapshot.deleted_at
            entity.external_id = entity.external_id or snapshot.id
            if entity.external_version is None or snapshot.version > entity.external_version:
                entity.external_version = snapshot.version
            entity.last_sync_success = now
            entity.retry_count = 0
            return self._finish(entity, S.SYNCED, reason="deleted_remotely", applied=True)

        # (4) version against the current stored state
        comparison = compare_versions(entity.external_version, snapshot.version)
        if comparison == VersionComparison.STALE:
            return self._skip(entity, now, "stale_version")

        differences = diff_fields(entity.payload, snapshot.fields, self.schema.compared_fields)
        if comparison == VersionComparison.SAME:
            if entity.kept_local_version == snapshot.version:
                return self._skip(entity, now, "kept_local")
            if not (repair and differences):
                return self._skip(entity, now, "same_version")

        if detect_race_condition(entity, entity.sync_dispatched_at):
            entity.conflict_snapshot = snapshot.to_dict()
            entity.external_id = entity.external_id or snapshot.id
            return self._finish(
                entity,
                S.VERSION_CONFLICT,
                "VERSION_CONFLICT",
                f"Local edit after dispatch; remote version {snapshot.version} not applied",
                reason="local_edit_after_dispatch",
            )

        # (5) checksum
        if self.config.verify_checksums and not verify_checksum(
            snapshot, fields=self.schema.checksum_fields
        ):
            return self._finish(entity, S.VALIDATION_FAILED, "CHECKSUM_MISMATCH", "Checksum does not match payload")

        # (6) apply
        entity.payload = dict(snapshot.fields)
        entity.external_id = snapshot.id
        entity.external_version = snapshot.version
        entity.local_modified_at = self.store.next_modified_at(entity.local_modified_at)
        entity.last_sync_success = now
        entity.retry_count = 0
        entity.conflict_snapshot = None
        entity.kept_local_version = None
        return self._finish(
            entity,
            S.SYNCED,
            reason="repaired" if comparison == VersionComparison.SAME else "applied",
            applied=True,
        )

    def _finish(
        self,
        entity: Entity,
        status: SyncStatus,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        reason: Optional[str] = None,
        applied: bool = False,
        error: Optional[BaseException] = None,
    ) -> AdjudicationResult:
        # Adjudication leaves PROCESSING even when a user edit already moved the
        # entity back to PENDING, so check against PROCESSING.
        if not can_transition(SyncStatus.PROCESSING, status):
            raise InvalidTransitionError(entity.id, SyncStatus.PROCESSING, status)
        entity.sync_status = status
        entity.sync_job_ref = None
        entity.sync_dispatched_at = None
        entity.sync_error_code = error_code
        entity.sync_error_message = error_message
        return AdjudicationResult(
            entity=entity,
            status=status,
            applied=applied,
            reason=reason or (error_code.lower() if error_code else None),
            error=error,
        )

    def _skip(self, entity: Entity, now: datetime, reason: str) -> AdjudicationResult:
        entity.last_sync_success = now
        entity.retry_count = 0
        return self._finish(entity, S.SKIPPED, reason=reason)

    async def _emit_outcome(self, result: AdjudicationResult) -> None:
        entity = result.entity
        extra = {"reason": result.reason, "external_version": entity.external_version}

        if result.reason == "deleted_remotely":
            logger.info("Remote deletion propagated", extra={"entity_id": entity.id})
            await self._emit(SyncEvent.ENTITY_DELETED_REMOTELY, entity, **extra)
            return

        if result.status == S.SYNCED:
            logger.debug("Entity synced", extra={"entity_id": entity.id, "version": entity.external_version})
        elif result.status == S.VERSION_CONFLICT:
            logger.warning("Version conflict, local edit preserved", extra={"entity_id": entity.id})
        elif result.status == S.VALIDATION_FAILED:
            logger.warning(
                f"Validation failed: {entity.sync_error_message}",
                extra={"entity_id": entity.id, "error_code": entity.sync_error_code},
            )
        elif result.status == S.ERROR:
            logger.warning(
                f"Transient sync failure: {entity.sync_error_message}",
                extra={"entity_id": entity.id, "retry_count": entity.retry_count},
            )
            extra["error_code"] = entity.sync_error_code
            extra["retry_count"] = entity.retry_count

        await self._emit(_OUTCOME_EVENTS[result.status], entity, **extra)

    # ═══════════════════════════════════════════════════════════════════════════
    # RETRY PATH
    # ═══════════════════════════════════════════════════════════════════════════

    async def schedule_retry(self, entity_id: str, not_before: datetime) -> Entity:
        """ERROR -> PENDING, gated until not_before."""
        def mutate(entity: Entity) -> Entity:
            if entity.sync_status not in (S.ERROR, S.PENDING):
                raise InvalidTransitionError(entity.id, entity.sync_status, S.PENDING)
            self._transition(entity, S.PENDING)
            entity.next_retry_at = not_before
            return entity

        entity = await self.store.update(entity_id, mutate)
        await self._emit(
            SyncEvent.ENTITY_REQUEUED, entity, reason="retry", not_before=not_before.isoformat()
        )
        return entity

    async def dead_letter(self, entity_id: str) -> Entity:
        """ERROR -> DEAD_LETTER once retries are exhausted."""
        def mutate(entity: Entity) -> Entity:
            self._transition(entity, S.DEAD_LETTER)
            entity.next_retry_at = None
            return entity

        entity = await self.store.update(entity_id, mutate)
        logger.error(
            "Retries exhausted, entity dead-lettered",
            extra={"entity_id": entity.id, "retry_count": entity.retry_count,
                   "error_code": entity.sync_error_code},
        )
        await self._emit(
            SyncEvent.ENTITY_DEAD_LETTERED,
            entity,
            retry_count=entity.retry_count,
            error_code=entity.sync_error_code,
            error_message=entity.sync_error_message,
        )
        return entity

    async def release_stale(self, older_than: datetime) -> List[Entity]:
        """
        Release dispatches abandoned without adjudication (e.g. a crash).

        PROCESSING entities become ERROR with code STALE_DISPATCH so the normal
        retry path picks them up. Entities a user already moved back to PENDING
        just lose their job ref.
        """
        released = []
        for candidate in await self.store.query_in_flight(older_than):
            changed = []

            def mutate(entity: Entity) -> Optional[Entity]:
                changed.clear()
                if entity.sync_job_ref is None or (
                    entity.last_sync_attempt is not None and entity.last_sync_attempt >= older_than
                ):
                    return None
                if entity.sync_status == S.PROCESSING:
                    self._transition(entity, S.ERROR)
                    entity.retry_count += 1
                    entity.sync_error_code = "STALE_DISPATCH"
                    entity.sync_error_message = "Dispatch was never adjudicated"
                entity.sync_job_ref = None
                entity.sync_dispatched_at = None
                changed.append(entity.id)
                return entity

            entity = await self.store.update(candidate.id, mutate)
            if changed:
                released.append(entity)
                if entity.sync_status == S.ERROR:
                    await self._emit(SyncEvent.ENTITY_FAILED, entity, error_code="STALE_DISPATCH",
                                     retry_count=entity.retry_count)

        if released:
            logger.warning(f"Released {len(released)} stale dispatches")
        return released

    # ═══════════════════════════════════════════════════════════════════════════
    # RECONCILIATION / OPERATOR ACTIONS
    # ═══════════════════════════════════════════════════════════════════════════

    async def requeue(self, entity_id: str, reason: str = "manual") -> Entity:
        """SYNCED / SKIPPED / PENDING -> PENDING."""
        def mutate(entity: Entity) -> Entity:
            if entity.in_flight:
                raise InvalidStateError("Sync already in flight", entity.id, entity.sync_status)
            if entity.sync_status not in (S.SYNCED, S.SKIPPED, S.PENDING):
                raise InvalidTransitionError(entity.id, entity.sync_status, S.PENDING)
            self._transition(entity, S.PENDING)
            entity.next_retry_at = None
            return entity

        entity = await self.store.update(entity_id, mutate)
        await self._emit(SyncEvent.ENTITY_REQUEUED, entity, reason=reason)
        return entity

    async def detach(self, entity_id: str) -> Entity:
        """Drop the correlation of an entity the remote no longer knows."""
        def mutate(entity: Entity) -> Entity:
            if entity.in_flight:
                raise InvalidStateError("Sync already in flight", entity.id, entity.sync_status)
            if entity.sync_status in SyncStatus.operator_gated():
                raise InvalidTransitionError(entity.id, entity.sync_status, S.PENDING)
            self._transition(entity, S.PENDING)
            entity.external_id = None
            entity.external_version = None
            entity.next_retry_at = None
            entity.conflict_snapshot = None
            return entity

        entity = await self.store.update(entity_id, mutate)
        await self._emit(SyncEvent.ENTITY_REQUEUED, entity, reason="detached")
        return entity

    async def operator_retry(self, entity_id: str) -> Entity:
        """VALIDATION_FAILED / DEAD_LETTER -> PENDING with a fresh retry budget."""
        def mutate(entity: Entity) -> Entity:
            if entity.sync_status not in (S.VALIDATION_FAILED, S.DEAD_LETTER):
                raise InvalidTransitionError(entity.id, entity.sync_status, S.PENDING)
            self._transition(entity, S.PENDING)
            entity.retry_count = 0
            entity.next_retry_at = None
            entity.sync_error_code = None
            entity.sync_error_message = None
            return entity

        entity = await self.store.update(entity_id, mutate)
        logger.info("Operator retry", extra={"entity_id": entity.id})
        await self._emit(SyncEvent.ENTITY_REQUEUED, entity, reason="operator_retry")
        return entity

    async def resolve_conflict(
        self,
        entity_id: str,
        resolution: ConflictResolution,
        merged_payload: Optional[Dict[str, Any]] = None,
    ) -> Entity:
        """
        Leave VERSION_CONFLICT by operator decision.

        ACCEPT_REMOTE: the next sync applies the remote record.
        KEEP_LOCAL: the losing remote version is acknowledged so the next sync
            of that version is skipped and the local payload stays. Sweeps
            do not repair the entity back to that version either; the mark
            lapses once a newer remote version is applied.
        MERGE: like KEEP_LOCAL, with merged_payload as the new local payload.
        """
        resolution = ConflictResolution(resolution)
        if resolution == ConflictResolution.MERGE and merged_payload is None:
            raise ValidationError("merged_payload", "Required for MERGE resolution")

        def mutate(entity: Entity) -> Entity:
            if entity.sync_status != S.VERSION_CONFLICT:
                raise InvalidStateError(
                    f"Entity is {entity.sync_status.value}, not VERSION_CONFLICT",
                    entity.id,
                    entity.sync_status,
                )
            remote_version = (entity.conflict_snapshot or {}).get("version")

            if resolution == ConflictResolution.ACCEPT_REMOTE:
                entity.kept_local_version = None
            elif isinstance(remote_version, int):
                if entity.external_version is None or remote_version > entity.external_version:
                    entity.external_version = remote_version
                entity.kept_local_version = remote_version
            if resolution == ConflictResolution.MERGE:
                entity.payload = dict(merged_payload)
                entity.local_modified_at = self.store.next_modified_at(entity.local_modified_at)

            self._transition(entity, S.PENDING)
            entity.conflict_snapshot = None
            entity.sync_error_code = None
            entity.sync_error_message = None
            entity.retry_count = 0
            return entity

        entity = await self.store.update(entity_id, mutate)
        logger.info(
            f"Conflict resolved with {resolution.value}", extra={"entity_id": entity.id}
        )
        await self._emit(SyncEvent.ENTITY_RESOLVED, entity, resolution=resolution.value)
        return entity
