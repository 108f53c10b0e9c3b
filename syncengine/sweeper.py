"""
Reconciliation sweeper.

Batch safety net for the live sync path: walks correlated entities, bulk
fetches their remote snapshots, classifies drift, appends one audit record
per divergent entity and repairs what the configured policy allows.

Repairs reuse the state machine (dispatch + adjudicate with repair=True), so a
sweep cannot overwrite a local edit made after its snapshot was fetched.
"""
import asyncio
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from syncengine.config import ReconciliationConfig
from syncengine.conflict import diff_fields, verify_checksum
from syncengine.events import EventBus, SyncEvent
from syncengine.exceptions import (
    ConcurrentModificationError,
    EntityNotFoundError,
    InvalidStateError,
    RemoteError,
    SyncError,
)
from syncengine.models import (
    BulkFetchResult,
    DiscrepancyType,
    Entity,
    EntitySchema,
    ReconciliationFilter,
    ReconciliationRecord,
    ReconciliationSummary,
    RemoteSnapshot,
    RepairPolicy,
    SyncStatus,
)
from syncengine.observability import Timer, correlation_context, get_logger, log_context
from syncengine.resilience import CircuitOpenError
from syncengine.state_machine import SyncStateMachine
from syncengine.store import EntityStore

logger = get_logger(__name__)

CHECKPOINT_KEY = "last_reconciliation"

Classification = Tuple[Optional[DiscrepancyType], Dict[str, Any]]


class ReconciliationSweeper:
    """
    Compares local entities against the remote and repairs drift.

    Usage:
        sweeper = ReconciliationSweeper(store, machine, remote, bus, config.reconciliation)
        summary = await sweeper.reconcile(incremental=True)
    """

    def __init__(
        self,
        store: EntityStore,
        machine: SyncStateMachine,
        remote: Any,
        bus: EventBus,
        config: Optional[ReconciliationConfig] = None,
        schema: Optional[EntitySchema] = None,
        verify_checksums: bool = True,
        is_busy: Optional[Callable[[str], bool]] = None,
    ):
        """
        Args:
            is_busy: Returns True for entities the live queue currently owns;
                those are recorded but not repaired
        """
        self.store = store
        self.machine = machine
        self.remote = remote
        self.bus = bus
        self.config = config or ReconciliationConfig()
        self.schema = schema or EntitySchema()
        self.verify_checksums = verify_checksums
        self._is_busy = is_busy or (lambda entity_id: False)
        self._semaphore = asyncio.Semaphore(max(1, self.config.bulk_concurrency))
        self._run_lock = asyncio.Lock()
        self.last_summary: Optional[ReconciliationSummary] = None

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    @property
    def _chunk_size(self) -> int:
        return min(getattr(self.remote, "bulk_limit", 200), 200)

    # ═══════════════════════════════════════════════════════════════════════════
    # CLASSIFICATION
    # ═══════════════════════════════════════════════════════════════════════════

    def classify(self, entity: Entity, snapshot: Optional[RemoteSnapshot]) -> Classification:
        """
        Classify one entity against its remote snapshot.

        Returns:
            (discrepancy type or None when in sync, details)
        """
        if snapshot is None:
            return DiscrepancyType.MISSING_IN_REMOTE, {"external_id": entity.external_id}

        if snapshot.is_deleted:
            return DiscrepancyType.DELETED_IN_REMOTE, {
                "deleted_at": snapshot.deleted_at.isoformat(),
                "remote_version": snapshot.version,
            }

        if self.verify_checksums and snapshot.checksum and not verify_checksum(
            snapshot, fields=self.schema.checksum_fields
        ):
            return DiscrepancyType.CHECKSUM_MISMATCH, {
                "checksum": snapshot.checksum,
                "remote_version": snapshot.version,
            }

        if snapshot.version != entity.external_version:
            return DiscrepancyType.VERSION_MISMATCH, {
                "local_version": entity.external_version,
                "remote_version": snapshot.version,
            }

        differences = diff_fields(entity.payload, snapshot.fields, self.schema.compared_fields)
        if differences:
            details = {"version": snapshot.version, "fields": differences}
            if entity.kept_local_version == snapshot.version:
                details["kept_local"] = True
            return DiscrepancyType.DATA_MISMATCH, details

        return None, {}

    # ═══════════════════════════════════════════════════════════════════════════
    # SWEEP
    # ═══════════════════════════════════════════════════════════════════════════

    async def reconcile(
        self,
        incremental: bool = False,
        filter: Optional[ReconciliationFilter] = None,
    ) -> ReconciliationSummary:
        """
        Run one sweep.

        Args:
            incremental: Only entities modified since the last sweep, plus
                whatever the remote change feed reports
            filter: Explicit window (e.g. after_id to resume an interrupted sweep)

        Returns:
            ReconciliationSummary with counts per discrepancy type

        Raises:
            SyncError: A sweep is already running
        """
        if self._run_lock.locked():
            raise SyncError("Reconciliation already running")

        async with self._run_lock:
            run_id = uuid.uuid4().hex[:12]
            summary = ReconciliationSummary(
                run_id=run_id, incremental=incremental, started_at=self.store.now()
            )

            with correlation_context(run_id), log_context(run_id=run_id):
                await self.bus.emit(
                    SyncEvent.RECONCILIATION_STARTED,
                    {"run_id": run_id, "incremental": incremental},
                    source="sweeper",
                )

                checkpoint = await self.store.get_checkpoint(CHECKPOINT_KEY) if incremental else None
                if incremental and checkpoint is None:
                    logger.info("No reconciliation checkpoint yet, sweeping everything")

                filt = filter or ReconciliationFilter(
                    modified_since=checkpoint, page_size=self.config.batch_size
                )
                seen: Set[str] = set()
                unchecked: List[Entity] = []
                feed_complete = True

                with Timer("reconciliation", logger, warn_threshold_ms=60_000):
                    async for page in self.store.query_for_reconciliation(filt):
                        unchecked.extend(await self._process_batch(page, summary))
                        seen.update(entity.id for entity in page)
                        await self._respect_rate_limit()

                    if checkpoint is not None:
                        feed_complete = await self._walk_change_feed(checkpoint, seen, summary)

                summary.finished_at = self.store.now()
                await self.store.set_checkpoint(
                    CHECKPOINT_KEY,
                    self._next_checkpoint(summary.started_at, checkpoint, unchecked, feed_complete),
                )

                logger.info(
                    f"Reconciliation finished: {summary.scanned} scanned, "
                    f"{summary.total_discrepancies} discrepancies, {summary.healed} healed",
                    extra={"counts": {t.value: n for t, n in summary.counts.items()}},
                )
                self.last_summary = summary
                await self.bus.emit(
                    SyncEvent.RECONCILIATION_COMPLETED, summary.to_dict(), source="sweeper"
                )

            return summary

    @staticmethod
    def _next_checkpoint(
        started_at: datetime,
        previous: Optional[datetime],
        unchecked: List[Entity],
        feed_complete: bool,
    ) -> datetime:
        """
        Where the next incremental sweep starts.

        Never past an entity whose remote snapshot could not be fetched, and
        never past the previous checkpoint if the change feed walk broke off.
        """
        candidates = [started_at]
        candidates.extend(e.local_modified_at for e in unchecked if e.local_modified_at is not None)
        if not feed_complete and previous is not None:
            candidates.append(previous)
        return min(candidates)

    async def _process_batch(
        self, entities: List[Entity], summary: ReconciliationSummary
    ) -> List[Entity]:
        """Returns the entities whose chunk could not be fetched."""
        size = self._chunk_size
        chunks = [entities[i:i + size] for i in range(0, len(entities), size)]
        failed = await asyncio.gather(*(self._process_chunk(chunk, summary) for chunk in chunks))
        return [entity for chunk in failed for entity in chunk]

    async def _process_chunk(
        self, chunk: List[Entity], summary: ReconciliationSummary
    ) -> List[Entity]:
        async with self._semaphore:
            fetched_at = self.store.now()
            try:
                result: BulkFetchResult = await self.remote.bulk_get_by_ids(
                    [entity.external_id for entity in chunk]
                )
            except (RemoteError, CircuitOpenError) as e:
                summary.fetch_failures += len(chunk)
                logger.warning(
                    f"Bulk fetch failed, {len(chunk)} entities left for the next sweep: {e}"
                )
                return chunk

        snapshots = result.by_id()
        for entity in chunk:
            await self._check(entity, snapshots.get(entity.external_id), fetched_at, summary)
        await self.store.mark_reconciled([entity.id for entity in chunk], self.store.now())
        return []

    async def _walk_change_feed(
        self, since: datetime, seen: Set[str], summary: ReconciliationSummary
    ) -> bool:
        """
        Catch remote-only changes to entities the local window did not cover.

        Returns False if the feed could not be walked to its end.
        """
        cursor = None
        for _ in range(self.config.change_feed_max_pages):
            fetched_at = self.store.now()
            try:
                page = await self.remote.list_changed_since(since, cursor)
            except (RemoteError, CircuitOpenError) as e:
                summary.fetch_failures += 1
                logger.warning(f"Change feed unavailable: {e}")
                return False

            for snapshot in page.items:
                if not snapshot.id:
                    continue
                entity = await self.store.get_by_external_id(snapshot.id)
                if entity is None or entity.is_deleted or entity.id in seen:
                    continue
                seen.add(entity.id)
                await self._check(entity, snapshot, fetched_at, summary)
                await self.store.mark_reconciled([entity.id], self.store.now())

            if not page.next_cursor:
                return True
            cursor = page.next_cursor
            await self._respect_rate_limit()

        logger.warning(
            f"Change feed walk stopped after {self.config.change_feed_max_pages} pages"
        )
        return False

    async def _check(
        self,
        entity: Entity,
        snapshot: Optional[RemoteSnapshot],
        fetched_at: datetime,
        summary: ReconciliationSummary,
    ) -> None:
        summary.scanned += 1
        discrepancy, details = self.classify(entity, snapshot)
        if discrepancy is None:
            return

        summary.counts[discrepancy] += 1
        record = await self.store.append_reconciliation_record(ReconciliationRecord(
            entity_id=entity.id,
            external_id=entity.external_id,
            discrepancy_type=discrepancy,
            details=details,
            detected_at=fetched_at,
            run_id=summary.run_id,
        ))
        await self.bus.emit(
            SyncEvent.DISCREPANCY_DETECTED,
            {"entity_id": entity.id, "discrepancy_type": discrepancy.value, "record_id": record.id},
            source="sweeper",
        )

        if self.config.policy_for(discrepancy) != RepairPolicy.AUTO_HEAL:
            return
        if details.get("kept_local"):
            logger.info(
                f"Not auto-healing {discrepancy.value}, operator kept the local payload",
                extra={"entity_id": entity.id, "version": snapshot.version},
            )
            return

        try:
            healed = await self._heal(entity.id, snapshot, discrepancy, fetched_at)
        except (InvalidStateError, EntityNotFoundError, ConcurrentModificationError) as e:
            summary.heal_failures += 1
            logger.warning(f"Auto-heal failed: {e}", extra={"entity_id": entity.id})
            return

        if healed:
            summary.healed += 1
            await self.store.resolve_reconciliation_record(record.id)

    async def _heal(
        self,
        entity_id: str,
        snapshot: Optional[RemoteSnapshot],
        discrepancy: DiscrepancyType,
        fetched_at: datetime,
    ) -> bool:
        current = await self.store.find(entity_id)
        if current is None or current.is_deleted:
            return False
        if (
            current.sync_status in SyncStatus.operator_gated()
            or current.in_flight
            or self._is_busy(entity_id)
        ):
            logger.info(
                f"Not auto-healing {discrepancy.value} while entity is {current.sync_status.value}",
                extra={"entity_id": entity_id},
            )
            return False

        if discrepancy == DiscrepancyType.MISSING_IN_REMOTE:
            await self.machine.detach(entity_id)
            return True

        dispatched = await self.machine.dispatch(entity_id, operator_approved=True, as_of=fetched_at)
        result = await self.machine.adjudicate(
            entity_id, dispatched.sync_job_ref, snapshot, repair=True
        )
        return result.applied

    async def _respect_rate_limit(self) -> None:
        """Yield to the live path when the remote reports low quota."""
        rate_limit = getattr(self.remote, "rate_limit", None)
        if rate_limit is None or not rate_limit.is_exhausted(self.config.rate_limit_floor):
            return
        pause = min(rate_limit.seconds_until_reset(), self.config.max_rate_limit_pause)
        if pause > 0:
            logger.info(
                f"Remote quota low ({rate_limit.remaining} left), pausing sweep {pause:.1f}s"
            )
            await asyncio.sleep(pause)
