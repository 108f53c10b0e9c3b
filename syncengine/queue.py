"""
Sync job queue.

Decouples entity writes from remote calls. A fixed pool of asyncio workers
pulls SyncTasks; backoff delays are loop timers (call_later), so a waiting
retry holds no worker.

Single-flight: an entity has at most one active task, whether queued,
delayed or in flight. enqueue() while one is active is a no-op.
"""
import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

from syncengine.config import SyncConfig
from syncengine.events import EventBus, SyncEvent
from syncengine.exceptions import (
    EntityNotFoundError,
    InvalidStateError,
    RemoteError,
)
from syncengine.models import Entity, RemoteSnapshot, SyncStatus, SyncTask
from syncengine.observability import correlation_context, entity_context, get_logger
from syncengine.resilience import CircuitOpenError
from syncengine.state_machine import SyncStateMachine
from syncengine.store import EntityStore

logger = get_logger(__name__)

class SyncJobQueue:
    """
    Worker pool executing per-entity sync tasks.

    Usage:
        queue = SyncJobQueue(store, machine, remote, bus, config.sync)
        await queue.start()
        queue.enqueue(entity.id)
        ...
        await queue.stop()
    """

    def __init__(
        self,
        store: EntityStore,
        machine: SyncStateMachine,
        remote: Any,
        bus: EventBus,
        config: Optional[SyncConfig] = None,
    ):
        self.store = store
        self.machine = machine
        self.remote = remote
        self.bus = bus
        self.config = config or SyncConfig()

        self._queue: "asyncio.Queue[SyncTask]" = asyncio.Queue()
        self._active: Dict[str, SyncTask] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._in_flight: Set[str] = set()
        self._workers: List[asyncio.Task] = []
        self._running = False

        self._processed = 0
        self._dropped = 0
        self._retries_scheduled = 0
        self._dead_lettered = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def is_active(self, entity_id: str) -> bool:
        """True while a task for the entity is queued, delayed or in flight."""
        return entity_id in self._active

    # ═══════════════════════════════════════════════════════════════════════════
    # ENQUEUE / SCHEDULE
    # ═══════════════════════════════════════════════════════════════════════════

    def enqueue(self, entity_id: str) -> bool:
        """
        Queue a sync task for immediate dispatch.

        Returns:
            False if a task for the entity is already active
        """
        if entity_id in self._active:
            return False
        task = SyncTask(entity_id=entity_id, enqueued_at=self.store.now())
        self._active[entity_id] = task
        self._queue.put_nowait(task)
        return True

    def schedule(self, entity_id: str, not_before: datetime, attempt: int = 0) -> bool:
        """
        Queue a sync task that becomes eligible at not_before.

        Returns:
            False if a task for the entity is already active
        """
        if entity_id in self._active:
            return False
        task = SyncTask(
            entity_id=entity_id,
            enqueued_at=self.store.now(),
            attempt=attempt,
            scheduled_not_before=not_before,
        )
        self._active[entity_id] = task

        delay = max(0.0, (not_before - self.store.now()).total_seconds())
        loop = asyncio.get_running_loop()
        self._timers[entity_id] = loop.call_later(delay, self._release, task)
        return True

    def cancel_delayed(self, entity_id: str) -> bool:
        """
        Drop a task still waiting out its backoff timer.

        Returns:
            False if the entity had no delayed task
        """
        handle = self._timers.pop(entity_id, None)
        if handle is None:
            return False
        handle.cancel()
        self._active.pop(entity_id, None)
        return True

    def _release(self, task: SyncTask) -> None:
        self._timers.pop(task.entity_id, None)
        if self._active.get(task.entity_id) is task:
            self._queue.put_nowait(task)

    async def drain_pending(self) -> int:
        """
        Enqueue PENDING entities whose backoff gate has passed.

        Recovers tasks lost to a restart or dropped silently.

        Returns:
            Number of tasks enqueued
        """
        entities = await self.store.query_pending(self.config.pending_batch_size)
        enqueued = sum(1 for entity in entities if self.enqueue(entity.id))
        if enqueued:
            logger.info(f"Drained {enqueued} pending entities into the queue")
        return enqueued

    async def recover_stale(self, older_than: Optional[datetime] = None) -> int:
        """
        Release abandoned dispatches and route them through the retry path.

        Returns:
            Number of entities released
        """
        if older_than is None:
            older_than = self.store.now() - timedelta(seconds=self.config.stale_dispatch_seconds)

        released = await self.machine.release_stale(older_than)
        for entity in released:
            if entity.sync_status == SyncStatus.ERROR and not self.is_active(entity.id):
                await self._after_failure(entity, error=None, attempt=entity.retry_count)
        return len(released)

    # ═══════════════════════════════════════════════════════════════════════════
    # WORKERS
    # ═══════════════════════════════════════════════════════════════════════════

    async def start(self, workers: Optional[int] = None) -> None:
        """Start the worker pool."""
        if self._running:
            return
        self._running = True
        count = workers or self.config.workers
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"sync-worker-{i}")
            for i in range(count)
        ]
        logger.info(f"Sync queue started with {count} workers")

    async def stop(self) -> None:
        """
        Stop workers and cancel backoff timers.

        Delayed retries are not lost: their gate is persisted on the entity
        and drain_pending() picks them up again.
        """
        if not self._running:
            return
        self._running = False

        for entity_id, handle in list(self._timers.items()):
            handle.cancel()
            self._active.pop(entity_id, None)
        self._timers.clear()

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Sync queue stopped")

    async def wait_idle(self, timeout: float = 10.0, include_delayed: bool = True) -> bool:
        """
        Wait until nothing is queued or in flight (and, optionally, delayed).

        Returns:
            True if the queue went idle before the timeout
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            busy = self._queue.qsize() or self._in_flight or (include_delayed and self._timers)
            if not busy:
                return True
            await asyncio.sleep(0.01)
        return False

    async def _worker(self, index: int) -> None:
        while True:
            task = await self._queue.get()
            try:
                await self._process(task)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Sync task failed unexpectedly: {e}",
                    extra={"entity_id": task.entity_id, "worker": index},
                    exc_info=True,
                )
            finally:
                self._queue.task_done()

    async def _process(self, task: SyncTask) -> None:
        entity_id = task.entity_id
        self._in_flight.add(entity_id)
        try:
            with correlation_context(), entity_context(entity_id):
                await self._run(task)
        finally:
            self._in_flight.discard(entity_id)
            if self._active.get(entity_id) is task:
                del self._active[entity_id]

    async def _run(self, task: SyncTask) -> None:
        entity = await self.store.find(task.entity_id)
        if entity is None or entity.is_deleted:
            await self._drop(task, "entity_deleted")
            return

        gate = entity.next_retry_at
        if task.scheduled_not_before is None and gate is not None and gate > self.store.now():
            # An immediate enqueue raced a persisted backoff gate
            del self._active[task.entity_id]
            self.schedule(task.entity_id, gate, attempt=task.attempt)
            return

        try:
            entity = await self.machine.dispatch(task.entity_id)
        except (InvalidStateError, EntityNotFoundError) as e:
            await self._drop(task, str(e))
            return

        await self._respect_quota()
        outcome = await self._call_remote(entity)
        result = await self.machine.adjudicate(entity.id, entity.sync_job_ref, outcome)
        self._processed += 1

        if not result.noop and result.status == SyncStatus.ERROR:
            if self._active.get(task.entity_id) is task:
                del self._active[task.entity_id]
            await self._after_failure(result.entity, result.error, task.attempt + 1)

    async def _call_remote(self, entity: Entity):
        """Run the remote call; failures come back as the outcome value."""
        if entity.external_id:
            call = self.remote.get_by_id(entity.external_id)
        else:
            call = self.remote.create(entity.payload)
        try:
            snapshot: Optional[RemoteSnapshot] = await asyncio.wait_for(
                call, timeout=self.config.call_timeout
            )
            return snapshot
        except (RemoteError, CircuitOpenError, asyncio.TimeoutError) as e:
            return e

    async def _respect_quota(self) -> None:
        rate_limit = getattr(self.remote, "rate_limit", None)
        if rate_limit is None or not rate_limit.is_exhausted(0):
            return
        wait = min(rate_limit.seconds_until_reset(), self.config.max_quota_wait)
        if wait > 0:
            logger.info(f"Remote quota exhausted, waiting {wait:.1f}s")
            await asyncio.sleep(wait)

    async def _after_failure(
        self, entity: Entity, error: Optional[BaseException], attempt: int
    ) -> None:
        """Schedule a retry with backoff, or dead-letter once retries run out."""
        policy = self.config.retry

        if entity.retry_count >= policy.max_retries:
            try:
                await self.machine.dead_letter(entity.id)
            except InvalidStateError as e:
                logger.info(f"Dead-letter skipped: {e}", extra={"entity_id": entity.id})
                return
            self._dead_lettered += 1
            return

        delay = policy.delay_for(entity.retry_count - 1)
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = max(delay, float(retry_after))
        not_before = self.store.now() + timedelta(seconds=delay)

        try:
            await self.machine.schedule_retry(entity.id, not_before)
        except InvalidStateError as e:
            logger.info(f"Retry not scheduled: {e}", extra={"entity_id": entity.id})
            return

        self.schedule(entity.id, not_before, attempt=attempt)
        self._retries_scheduled += 1
        logger.info(
            f"Retry {entity.retry_count}/{policy.max_retries} in {delay:.2f}s",
            extra={"entity_id": entity.id, "error_code": entity.sync_error_code},
        )
        await self.bus.emit(
            SyncEvent.RETRY_SCHEDULED,
            {
                "entity_id": entity.id,
                "attempt": attempt,
                "retry_count": entity.retry_count,
                "delay_seconds": delay,
                "not_before": not_before.isoformat(),
            },
            source="queue",
        )

    async def _drop(self, task: SyncTask, reason: str) -> None:
        self._dropped += 1
        logger.debug(f"Sync task dropped: {reason}", extra={"entity_id": task.entity_id})
        await self.bus.emit(
            SyncEvent.TASK_DROPPED,
            {"entity_id": task.entity_id, "reason": reason},
            source="queue",
        )

    def stats(self) -> Dict[str, Any]:
        """Queue statistics for the status API."""
        return {
            "running": self._running,
            "workers": len(self._workers),
            "queued": self._queue.qsize(),
            "delayed": len(self._timers),
            "in_flight": len(self._in_flight),
            "active": len(self._active),
            "processed": self._processed,
            "dropped": self._dropped,
            "retries_scheduled": self._retries_scheduled,
            "dead_lettered": self._dead_lettered,
        }
