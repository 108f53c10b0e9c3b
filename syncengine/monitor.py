"""
Anomaly & alert monitor.

Aggregates sync outcomes from the event bus into a rolling window and raises
operator alerts for systemic problems: elevated error rate, entities stuck in
PENDING, an unreachable remote, dead letters and reconciliation drift.

Alerts of the same type are throttled (minimum interval). The monitor only
reads state; it never mutates entities or tasks.
"""
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import httpx

from syncengine.config import MonitorConfig
from syncengine.events import ERROR_OUTCOMES, SUCCESS_OUTCOMES, EventBus, SyncEvent
from syncengine.models import Alert, AlertSeverity, AlertType, SyncStatus, utcnow
from syncengine.observability import get_logger
from syncengine.resilience import CircuitBreaker
from syncengine.store import EntityStore

logger = get_logger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# ALERT SINKS
# ═══════════════════════════════════════════════════════════════════════════════

class AlertSink:
    """Delivers alerts somewhere an operator will see them."""

    async def send(self, alert: Alert) -> None:
        raise NotImplementedError


class LoggingAlertSink(AlertSink):
    async def send(self, alert: Alert) -> None:
        log = logger.error if alert.severity == AlertSeverity.CRITICAL else logger.warning
        log(f"ALERT {alert.type.value}: {alert.message}", extra={"alert": alert.to_dict()})


class WebhookAlertSink(AlertSink):
    """POSTs the alert as JSON to a webhook (chat ops, paging)."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def send(self, alert: Alert) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.post(self.url, json=alert.to_dict())
        if resp.status_code >= 400:
            logger.error(f"Alert webhook returned {resp.status_code}: {resp.text[:200]}")
        else:
            logger.info(f"Alert {alert.type.value} delivered to webhook")


# ═══════════════════════════════════════════════════════════════════════════════
# MONITOR
# ═══════════════════════════════════════════════════════════════════════════════

class AnomalyMonitor:
    """
    Rolling-window outcome stats plus throttled alerting.

    Usage:
        monitor = AnomalyMonitor(bus, store, config.monitor, sinks=[LoggingAlertSink()])
        monitor.attach()
        alerts = await monitor.evaluate()
    """

    def __init__(
        self,
        bus: EventBus,
        store: EntityStore,
        config: Optional[MonitorConfig] = None,
        sinks: Optional[List[AlertSink]] = None,
        circuit: Optional[CircuitBreaker] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.bus = bus
        self.store = store
        self.config = config or MonitorConfig()
        self.sinks = list(sinks) if sinks is not None else [LoggingAlertSink()]
        self.circuit = circuit
        self._clock = clock

        self._outcomes: Deque[Tuple[datetime, bool]] = deque(maxlen=self.config.window_max_samples)
        self._failure_streak = 0
        self._last_alert_at: Dict[AlertType, datetime] = {}
        self._suppressed: Dict[AlertType, int] = {}
        self._history: Deque[Alert] = deque(maxlen=self.config.max_alert_history)
        self._attached = False

    def attach(self) -> None:
        """Subscribe to the bus."""
        if self._attached:
            return
        for event in SUCCESS_OUTCOMES:
            self.bus.subscribe(event, self._on_success)
        for event in ERROR_OUTCOMES:
            self.bus.subscribe(event, self._on_error)
        self.bus.subscribe(SyncEvent.ENTITY_DEAD_LETTERED, self._on_dead_letter)
        self.bus.subscribe(SyncEvent.RECONCILIATION_COMPLETED, self._on_reconciliation)
        self._attached = True

    def detach(self) -> None:
        for event in SUCCESS_OUTCOMES:
            self.bus.unsubscribe(event, self._on_success)
        for event in ERROR_OUTCOMES:
            self.bus.unsubscribe(event, self._on_error)
        self.bus.unsubscribe(SyncEvent.ENTITY_DEAD_LETTERED, self._on_dead_letter)
        self.bus.unsubscribe(SyncEvent.RECONCILIATION_COMPLETED, self._on_reconciliation)
        self._attached = False

    # ═══════════════════════════════════════════════════════════════════════════
    # EVENT HANDLERS
    # ═══════════════════════════════════════════════════════════════════════════

    async def _on_success(self, data: Dict[str, Any]) -> None:
        self.record_outcome(True)

    async def _on_error(self, data: Dict[str, Any]) -> None:
        # ENTITY_FAILED is a transport-level failure; validation means the remote answered
        transport = data.get("status") == SyncStatus.ERROR.value
        self.record_outcome(False, transport_failure=transport)
        if transport and self._failure_streak >= self.config.remote_failure_streak:
            await self.raise_alert(Alert(
                type=AlertType.REMOTE_UNAVAILABLE,
                severity=AlertSeverity.CRITICAL,
                message=f"{self._failure_streak} consecutive remote call failures",
                details={"last_error_code": data.get("error_code")},
            ))

    async def _on_dead_letter(self, data: Dict[str, Any]) -> None:
        await self.raise_alert(Alert(
            type=AlertType.DEAD_LETTER,
            severity=AlertSeverity.CRITICAL,
            message=f"Entity {data.get('entity_id')} dead-lettered after "
                    f"{data.get('retry_count')} failed attempts",
            details={
                "entity_id": data.get("entity_id"),
                "error_code": data.get("error_code"),
                "error_message": data.get("error_message"),
            },
        ))

    async def _on_reconciliation(self, data: Dict[str, Any]) -> None:
        total = data.get("total_discrepancies", 0)
        if total >= self.config.drift_threshold:
            await self.raise_alert(Alert(
                type=AlertType.RECONCILIATION_DRIFT,
                severity=AlertSeverity.WARNING,
                message=f"Reconciliation found {total} discrepancies",
                details={"run_id": data.get("run_id"), "counts": data.get("counts", {})},
            ))

    # ═══════════════════════════════════════════════════════════════════════════
    # WINDOW
    # ═══════════════════════════════════════════════════════════════════════════

    def record_outcome(self, success: bool, transport_failure: bool = False) -> None:
        self._outcomes.append((self._clock(), success))
        if transport_failure:
            self._failure_streak += 1
        else:
            self._failure_streak = 0

    def _prune(self) -> None:
        cutoff = self._clock() - timedelta(seconds=self.config.window_seconds)
        while self._outcomes and self._outcomes[0][0] < cutoff:
            self._outcomes.popleft()

    def window_stats(self) -> Dict[str, Any]:
        """Outcome counts and rates over the rolling window."""
        self._prune()
        total = len(self._outcomes)
        successes = sum(1 for _, ok in self._outcomes if ok)
        return {
            "window_seconds": self.config.window_seconds,
            "samples": total,
            "successes": successes,
            "errors": total - successes,
            "success_rate": round(successes / total, 4) if total else None,
            "error_rate": round((total - successes) / total, 4) if total else None,
            "failure_streak": self._failure_streak,
        }

    # ═══════════════════════════════════════════════════════════════════════════
    # EVALUATION
    # ═══════════════════════════════════════════════════════════════════════════

    async def evaluate(self) -> List[Alert]:
        """
        Periodic check of window and store-derived signals.

        Returns:
            Alerts actually raised (throttled ones excluded)
        """
        candidates: List[Alert] = []
        stats = self.window_stats()

        if stats["samples"] >= self.config.min_samples and (
            stats["error_rate"] >= self.config.error_rate_threshold
        ):
            candidates.append(Alert(
                type=AlertType.HIGH_ERROR_RATE,
                severity=AlertSeverity.CRITICAL,
                message=f"Sync error rate {stats['error_rate']:.0%} over the last "
                        f"{self.config.window_seconds // 60} minutes",
                details=stats,
            ))

        cutoff = self._clock() - timedelta(seconds=self.config.stuck_pending_seconds)
        stuck = await self.store.count_stuck(SyncStatus.PENDING, cutoff)
        if stuck >= self.config.stuck_pending_threshold:
            candidates.append(Alert(
                type=AlertType.STUCK_PENDING,
                severity=AlertSeverity.WARNING,
                message=f"{stuck} entities pending for more than "
                        f"{self.config.stuck_pending_seconds // 60} minutes",
                details={"count": stuck},
            ))

        if self.circuit is not None and self.circuit.is_open:
            candidates.append(Alert(
                type=AlertType.REMOTE_UNAVAILABLE,
                severity=AlertSeverity.CRITICAL,
                message="Remote API circuit breaker is open",
                details=self.circuit.snapshot(),
            ))

        raised = []
        for alert in candidates:
            if await self.raise_alert(alert):
                raised.append(alert)
        return raised

    async def raise_alert(self, alert: Alert) -> bool:
        """
        Deliver an alert unless one of the same type went out recently.

        Returns:
            True if delivered, False if throttled
        """
        now = self._clock()
        last = self._last_alert_at.get(alert.type)
        if last is not None and (now - last).total_seconds() < self.config.alert_min_interval_seconds:
            self._suppressed[alert.type] = self._suppressed.get(alert.type, 0) + 1
            logger.debug(f"Alert {alert.type.value} throttled")
            return False

        suppressed = self._suppressed.pop(alert.type, 0)
        if suppressed:
            alert.details["suppressed_since_last"] = suppressed
        alert.raised_at = now
        self._last_alert_at[alert.type] = now
        self._history.append(alert)

        for sink in self.sinks:
            try:
                await sink.send(alert)
            except Exception as e:
                logger.error(f"Alert sink {type(sink).__name__} failed: {e}")

        await self.bus.emit(SyncEvent.ALERT_RAISED, alert.to_dict(), source="monitor")
        return True

    def get_alerts(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent alerts first."""
        return [alert.to_dict() for alert in reversed(list(self._history)[-limit:])]

    def stats(self) -> Dict[str, Any]:
        return {
            **self.window_stats(),
            "alerts_raised": len(self._history),
            "suppressed": {t.value: n for t, n in self._suppressed.items()},
        }
