"""
In-process event bus.

The state machine, queue, sweeper and scheduler publish what happened; the
anomaly monitor and the engine itself subscribe. Every engine owns its bus.

    bus = EventBus()

    @bus.on(SyncEvent.ENTITY_DEAD_LETTERED)
    async def page_someone(data: dict):
        ...

    await bus.emit(SyncEvent.ENTITY_SYNCED, {"entity_id": "a1", "version": 5})
"""
import asyncio
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from syncengine.observability import get_correlation_id, get_logger

logger = get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class SyncEvent(Enum):
    # entity lifecycle
    ENTITY_CREATED = "entity.created"
    ENTITY_WRITTEN = "entity.written"
    ENTITY_DISPATCHED = "entity.dispatched"
    ENTITY_SYNCED = "entity.synced"
    ENTITY_SKIPPED = "entity.skipped"
    ENTITY_DELETED_REMOTELY = "entity.deleted_remotely"
    ENTITY_CONFLICT = "entity.version_conflict"
    ENTITY_VALIDATION_FAILED = "entity.validation_failed"
    ENTITY_FAILED = "entity.failed"
    ENTITY_DEAD_LETTERED = "entity.dead_lettered"
    ENTITY_REQUEUED = "entity.requeued"
    ENTITY_RESOLVED = "entity.resolved"

    RETRY_SCHEDULED = "queue.retry_scheduled"
    TASK_DROPPED = "queue.task_dropped"

    RECONCILIATION_STARTED = "reconciliation.started"
    DISCREPANCY_DETECTED = "reconciliation.discrepancy_detected"
    RECONCILIATION_COMPLETED = "reconciliation.completed"

    ALERT_RAISED = "monitor.alert_raised"

    JOB_COMPLETED = "scheduler.job_completed"
    JOB_FAILED = "scheduler.job_failed"


# Adjudication outcomes, split the way the monitor counts them. A conflict
# means the remote answered correctly, so it is not an error.
SUCCESS_OUTCOMES = (
    SyncEvent.ENTITY_SYNCED,
    SyncEvent.ENTITY_SKIPPED,
    SyncEvent.ENTITY_DELETED_REMOTELY,
    SyncEvent.ENTITY_CONFLICT,
)
ERROR_OUTCOMES = (
    SyncEvent.ENTITY_FAILED,
    SyncEvent.ENTITY_VALIDATION_FAILED,
)
OUTCOME_EVENTS = SUCCESS_OUTCOMES + ERROR_OUTCOMES


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EventMetadata:
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: datetime = field(default_factory=_now)
    correlation_id: Optional[str] = field(default_factory=get_correlation_id)
    source: str = "syncengine"


@dataclass
class Event:
    type: SyncEvent
    data: Dict[str, Any]
    metadata: EventMetadata = field(default_factory=EventMetadata)

    def to_dict(self) -> Dict[str, Any]:
        meta = self.metadata
        return {
            "event_type": self.type.value,
            "data": self.data,
            "metadata": {
                "event_id": meta.event_id,
                "timestamp": meta.timestamp.isoformat(),
                "correlation_id": meta.correlation_id,
                "source": meta.source,
            },
        }


class EventBus:
    """
    Async publish/subscribe.

    Subscribing with event_type=None receives every event. Handlers for one
    emit run concurrently and are awaited before emit returns; a handler that
    raises is logged and does not affect the emitter or its siblings.
    """

    def __init__(self, max_history: int = 100):
        # None is the wildcard key
        self._subscribers: Dict[Optional[SyncEvent], List[EventHandler]] = {None: []}
        self._history: Deque[Event] = deque(maxlen=max_history)

    def on(self, event_type: Optional[SyncEvent] = None) -> Callable[[EventHandler], EventHandler]:
        """Decorator form of subscribe()."""
        def register(handler: EventHandler) -> EventHandler:
            self.subscribe(event_type, handler)
            return handler
        return register

    def subscribe(self, event_type: Optional[SyncEvent], handler: EventHandler) -> None:
        self._subscribers.setdefault(event_type, []).append(handler)
        logger.debug(
            f"Subscribed {handler.__name__} to {event_type.value if event_type else '*'}"
        )

    def unsubscribe(self, event_type: Optional[SyncEvent], handler: EventHandler) -> bool:
        """Returns False if the handler was not subscribed."""
        handlers = self._subscribers.get(event_type, [])
        try:
            handlers.remove(handler)
        except ValueError:
            return False
        return True

    async def _deliver(self, handler: EventHandler, event: Event) -> None:
        try:
            await handler(event.data)
        except Exception as e:
            logger.error(
                f"Handler {handler.__name__} failed for {event.type.value}: {e}",
                extra={"event": event.to_dict()},
            )

    async def emit(
        self,
        event_type: SyncEvent,
        data: Optional[Dict[str, Any]] = None,
        source: str = "syncengine",
    ) -> Event:
        """Publish an event and wait for its handlers."""
        event = Event(type=event_type, data=data or {}, metadata=EventMetadata(source=source))
        self._history.append(event)

        handlers = self._subscribers.get(event_type, []) + self._subscribers[None]
        if handlers:
            await asyncio.gather(*(self._deliver(handler, event) for handler in handlers))
        return event

    def get_history(self, event_type: Optional[SyncEvent] = None, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent events, oldest first, optionally of one type."""
        events = [e for e in self._history if event_type is None or e.type == event_type]
        return [e.to_dict() for e in events[-limit:]]

    def get_handlers(self) -> Dict[str, int]:
        """Handler count per event type ("*" for wildcard)."""
        return {
            (event_type.value if event_type else "*"): len(handlers)
            for event_type, handlers in self._subscribers.items()
        }

    def clear_handlers(self) -> None:
        self._subscribers = {None: []}

    def clear_history(self) -> None:
        self._history.clear()
