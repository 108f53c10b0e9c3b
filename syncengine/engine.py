"""
Sync engine composition root.

Builds every component from one AppConfig and wires them through a shared
EventBus:

    writes ──► SyncStateMachine ──► EntityStore
                   ▲      │ events
    SyncJobQueue ──┘      ├──► AnomalyMonitor ──► alert sinks
    ReconciliationSweeper ┘
    BackgroundScheduler runs drain / stale release / sweeps / anomaly checks

Usage:
    async with SyncEngine(config) as engine:
        entity = await engine.create({"name": "Widget"})
"""
from typing import Any, Callable, Dict, List, Optional

from syncengine.config import AppConfig, load_config
from syncengine.events import EventBus, SyncEvent
from syncengine.models import (
    ConflictResolution,
    Entity,
    ReconciliationFilter,
    ReconciliationSummary,
    SyncStatus,
    utcnow,
)
from syncengine.monitor import AlertSink, AnomalyMonitor, LoggingAlertSink, WebhookAlertSink
from syncengine.observability import MetricsCollector, get_logger
from syncengine.queue import SyncJobQueue
from syncengine.remote import RemoteClient
from syncengine.scheduler import BackgroundScheduler
from syncengine.state_machine import SyncStateMachine
from syncengine.store import EntityStore
from syncengine.sweeper import ReconciliationSweeper

logger = get_logger(__name__)


class SyncEngine:
    """Owns the lifecycle of all sync components."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        store: Optional[EntityStore] = None,
        remote: Any = None,
        bus: Optional[EventBus] = None,
        metrics: Optional[MetricsCollector] = None,
        sinks: Optional[List[AlertSink]] = None,
        clock: Callable = utcnow,
    ):
        self.config = config or load_config()
        cfg = self.config

        self.bus = bus or EventBus()
        self.metrics = metrics or MetricsCollector()
        self.store = store or EntityStore(
            cfg.store.db_path, clock=clock, write_attempts=cfg.sync.write_attempts
        )
        self.remote = remote or RemoteClient(cfg.remote, metrics=self.metrics)

        self.machine = SyncStateMachine(self.store, self.bus, cfg.sync, cfg.schema)
        self.queue = SyncJobQueue(self.store, self.machine, self.remote, self.bus, cfg.sync)
        self.sweeper = ReconciliationSweeper(
            self.store,
            self.machine,
            self.remote,
            self.bus,
            cfg.reconciliation,
            schema=cfg.schema,
            verify_checksums=cfg.sync.verify_checksums,
            is_busy=self.queue.is_active,
        )

        if sinks is None:
            sinks = [LoggingAlertSink()]
            if cfg.monitor.webhook_url:
                sinks.append(WebhookAlertSink(cfg.monitor.webhook_url))
        self.monitor = AnomalyMonitor(
            self.bus,
            self.store,
            cfg.monitor,
            sinks=sinks,
            circuit=getattr(self.remote, "circuit", None),
            clock=clock,
        )
        self.monitor.attach()
        self.scheduler = BackgroundScheduler(
            self.queue, self.sweeper, self.monitor, self.bus, cfg
        )

        self.bus.subscribe(SyncEvent.ENTITY_REQUEUED, self._on_requeued)
        self.bus.subscribe(SyncEvent.ENTITY_RESOLVED, self._on_requeued)

    async def _on_requeued(self, data: Dict[str, Any]) -> None:
        # Backoff retries are scheduled by the queue itself
        if data.get("reason") != "retry":
            self.queue.enqueue(data["entity_id"])

    # ═══════════════════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════════

    async def open(self) -> None:
        """Connect store and remote without starting any background work."""
        await self.store.connect()
        if hasattr(self.remote, "connect"):
            await self.remote.connect()

    async def start(self, workers: Optional[int] = None, schedule: bool = True) -> None:
        """Connect, recover in-flight work from a previous run and start workers."""
        await self.open()

        await self.queue.start(workers)
        await self.queue.recover_stale()
        await self.queue.drain_pending()

        if schedule:
            await self.scheduler.start()
        logger.info(f"Sync engine {self.config.version} started")

    async def stop(self) -> None:
        self.scheduler.shutdown()
        await self.queue.stop()
        if hasattr(self.remote, "close"):
            await self.remote.close()
        await self.store.close()
        logger.info("Sync engine stopped")

    async def __aenter__(self) -> "SyncEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    # ═══════════════════════════════════════════════════════════════════════════
    # WRITES
    # ═══════════════════════════════════════════════════════════════════════════

    async def create(self, payload: Dict[str, Any], external_id: Optional[str] = None) -> Entity:
        """Commit a new entity locally and queue its sync."""
        entity = await self.machine.create_entity(payload, external_id=external_id)
        self.queue.enqueue(entity.id)
        return entity

    async def write(
        self, entity_id: str, changes: Dict[str, Any], replace: bool = False
    ) -> Entity:
        """Commit a local edit and queue a sync if the entity went back to PENDING."""
        entity = await self.machine.record_local_write(entity_id, changes, replace=replace)
        if entity.sync_status == SyncStatus.PENDING:
            self.queue.enqueue(entity.id)
        return entity

    async def delete(self, entity_id: str) -> bool:
        """Hard-delete locally. A queued task for it is dropped at dispatch."""
        return await self.store.delete(entity_id)

    # ═══════════════════════════════════════════════════════════════════════════
    # OPERATOR ACTIONS
    # ═══════════════════════════════════════════════════════════════════════════

    async def retry(self, entity_id: str) -> Entity:
        """
        Send an entity back through sync.

        VALIDATION_FAILED / DEAD_LETTER get a fresh retry budget; ERROR and a
        PENDING entity waiting out its backoff retry now; SYNCED / SKIPPED re-sync.
        """
        entity = await self.store.get(entity_id)
        if entity.sync_status == SyncStatus.PENDING:
            self.queue.cancel_delayed(entity_id)
        if entity.sync_status in (SyncStatus.VALIDATION_FAILED, SyncStatus.DEAD_LETTER):
            return await self.machine.operator_retry(entity_id)
        if entity.sync_status == SyncStatus.ERROR:
            entity = await self.machine.schedule_retry(entity_id, self.store.now())
            self.queue.enqueue(entity_id)
            return entity
        return await self.machine.requeue(entity_id, reason="manual")

    async def resolve(
        self,
        entity_id: str,
        resolution: ConflictResolution,
        merged_payload: Optional[Dict[str, Any]] = None,
    ) -> Entity:
        return await self.machine.resolve_conflict(entity_id, resolution, merged_payload)

    async def reconcile(
        self, incremental: bool = False, filter: Optional[ReconciliationFilter] = None
    ) -> ReconciliationSummary:
        return await self.sweeper.reconcile(incremental=incremental, filter=filter)

    # ═══════════════════════════════════════════════════════════════════════════
    # READ-ONLY PROJECTIONS
    # ═══════════════════════════════════════════════════════════════════════════

    async def get(self, entity_id: str) -> Entity:
        return await self.store.get(entity_id)

    async def list_entities(
        self, status: Optional[SyncStatus] = None, limit: int = 100
    ) -> List[Entity]:
        return await self.store.query_by_status(status, limit)

    async def status(self) -> Dict[str, Any]:
        """Aggregate status for the CLI and the metrics endpoint."""
        circuit = getattr(self.remote, "circuit", None)
        return {
            "version": self.config.version,
            "entities": await self.store.count_by_status(),
            "queue": self.queue.stats(),
            "monitor": self.monitor.stats(),
            "remote": self.metrics.get_stats(),
            "circuit": circuit.snapshot() if circuit is not None else None,
            "last_reconciliation": (
                self.sweeper.last_summary.to_dict() if self.sweeper.last_summary else None
            ),
            "jobs": self.scheduler.get_jobs(),
        }
