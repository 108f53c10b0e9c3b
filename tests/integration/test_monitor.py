"""
Integration tests for the anomaly & alert monitor.
"""
import json

import httpx
import pytest

from syncengine.config import MonitorConfig
from syncengine.events import SyncEvent
from syncengine.models import Alert, AlertSeverity, AlertType, SyncStatus
from syncengine.monitor import AlertSink, AnomalyMonitor, WebhookAlertSink
from syncengine.resilience import CircuitBreaker, CircuitState


class RecordingSink(AlertSink):
    def __init__(self):
        self.alerts = []

    async def send(self, alert):
        self.alerts.append(alert)


class BrokenSink(AlertSink):
    async def send(self, alert):
        raise RuntimeError("pager down")


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def monitor(bus, store, clock, sink):
    config = MonitorConfig(
        min_samples=4,
        error_rate_threshold=0.5,
        remote_failure_streak=3,
        drift_threshold=5,
        stuck_pending_seconds=600,
        alert_min_interval_seconds=300,
        webhook_url="",
    )
    m = AnomalyMonitor(bus, store, config, sinks=[sink], clock=clock)
    m.attach()
    return m


async def _outcome(bus, event, status):
    await bus.emit(event, {"entity_id": "a1", "status": status.value, "error_code": "TIMEOUT"})


class TestWindow:
    """Tests for rolling-window aggregation."""

    @pytest.mark.asyncio
    async def test_counts_outcomes(self, monitor, bus):
        await _outcome(bus, SyncEvent.ENTITY_SYNCED, SyncStatus.SYNCED)
        await _outcome(bus, SyncEvent.ENTITY_SKIPPED, SyncStatus.SKIPPED)
        await _outcome(bus, SyncEvent.ENTITY_VALIDATION_FAILED, SyncStatus.VALIDATION_FAILED)

        stats = monitor.window_stats()
        assert stats["samples"] == 3
        assert stats["successes"] == 2
        assert stats["error_rate"] == round(1 / 3, 4)

    @pytest.mark.asyncio
    async def test_old_samples_pruned(self, monitor, clock):
        monitor.record_outcome(False)
        clock.advance(monitor.config.window_seconds + 1)
        monitor.record_outcome(True)

        stats = monitor.window_stats()
        assert stats["samples"] == 1
        assert stats["error_rate"] == 0.0

    def test_empty_window(self, monitor):
        assert monitor.window_stats()["error_rate"] is None

    @pytest.mark.asyncio
    async def test_detach(self, monitor, bus):
        monitor.detach()
        await _outcome(bus, SyncEvent.ENTITY_SYNCED, SyncStatus.SYNCED)
        assert monitor.window_stats()["samples"] == 0


class TestEvaluate:
    """Tests for periodic evaluation."""

    @pytest.mark.asyncio
    async def test_high_error_rate(self, monitor, sink):
        for ok in (True, False, False, False):
            monitor.record_outcome(ok)

        raised = await monitor.evaluate()

        assert [a.type for a in raised] == [AlertType.HIGH_ERROR_RATE]
        assert sink.alerts[0].severity == AlertSeverity.CRITICAL

    @pytest.mark.asyncio
    async def test_too_few_samples(self, monitor):
        """A single failure is not an error-rate incident."""
        monitor.record_outcome(False)
        assert await monitor.evaluate() == []

    @pytest.mark.asyncio
    async def test_stuck_pending(self, monitor, store, clock):
        await store.create({"name": "Widget"})
        await store.create({"name": "Done"}, status=SyncStatus.SYNCED)
        clock.advance(601)

        raised = await monitor.evaluate()

        assert [a.type for a in raised] == [AlertType.STUCK_PENDING]
        assert raised[0].details == {"count": 1}

    @pytest.mark.asyncio
    async def test_open_circuit(self, bus, store, clock, sink):
        circuit = CircuitBreaker(state=CircuitState.OPEN, failure_count=5)
        monitor = AnomalyMonitor(bus, store, MonitorConfig(), sinks=[sink], circuit=circuit, clock=clock)

        raised = await monitor.evaluate()

        assert [a.type for a in raised] == [AlertType.REMOTE_UNAVAILABLE]
        assert raised[0].details == {"state": "open", "failure_count": 5}


class TestEventAlerts:
    """Tests for alerts raised straight from events."""

    @pytest.mark.asyncio
    async def test_dead_letter(self, monitor, bus, sink):
        await bus.emit(SyncEvent.ENTITY_DEAD_LETTERED, {
            "entity_id": "a1", "retry_count": 3, "error_code": "TIMEOUT", "error_message": "slow",
        })

        assert len(sink.alerts) == 1
        alert = sink.alerts[0]
        assert alert.type == AlertType.DEAD_LETTER
        assert "a1" in alert.message
        assert alert.details["error_code"] == "TIMEOUT"

    @pytest.mark.asyncio
    async def test_failure_streak(self, monitor, bus, sink):
        """Consecutive transport failures mean the remote is down."""
        for _ in range(3):
            await _outcome(bus, SyncEvent.ENTITY_FAILED, SyncStatus.ERROR)

        assert [a.type for a in sink.alerts] == [AlertType.REMOTE_UNAVAILABLE]
        assert monitor.window_stats()["failure_streak"] == 3

    @pytest.mark.asyncio
    async def test_validation_failures_break_streak(self, monitor, bus, sink):
        await _outcome(bus, SyncEvent.ENTITY_FAILED, SyncStatus.ERROR)
        await _outcome(bus, SyncEvent.ENTITY_FAILED, SyncStatus.ERROR)
        await _outcome(bus, SyncEvent.ENTITY_VALIDATION_FAILED, SyncStatus.VALIDATION_FAILED)
        await _outcome(bus, SyncEvent.ENTITY_FAILED, SyncStatus.ERROR)

        assert sink.alerts == []
        assert monitor.window_stats()["failure_streak"] == 1

    @pytest.mark.asyncio
    async def test_reconciliation_drift(self, monitor, bus, sink):
        await bus.emit(SyncEvent.RECONCILIATION_COMPLETED, {"run_id": "r1", "total_discrepancies": 2})
        assert sink.alerts == []

        await bus.emit(SyncEvent.RECONCILIATION_COMPLETED, {
            "run_id": "r2", "total_discrepancies": 7, "counts": {"DATA_MISMATCH": 7},
        })
        assert [a.type for a in sink.alerts] == [AlertType.RECONCILIATION_DRIFT]
        assert sink.alerts[0].details["run_id"] == "r2"


class TestThrottling:
    """Tests for per-type alert throttling."""

    @pytest.mark.asyncio
    async def test_same_type_throttled(self, monitor, sink, clock):
        alert = lambda: Alert(AlertType.DEAD_LETTER, AlertSeverity.CRITICAL, "dead")

        assert await monitor.raise_alert(alert()) is True
        clock.advance(10)
        assert await monitor.raise_alert(alert()) is False
        assert await monitor.raise_alert(alert()) is False
        assert monitor.stats()["suppressed"] == {"dead_letter": 2}

        clock.advance(300)
        assert await monitor.raise_alert(alert()) is True
        assert sink.alerts[-1].details["suppressed_since_last"] == 2
        assert len(sink.alerts) == 2

    @pytest.mark.asyncio
    async def test_types_throttled_independently(self, monitor, sink):
        assert await monitor.raise_alert(Alert(AlertType.DEAD_LETTER, AlertSeverity.CRITICAL, "a"))
        assert await monitor.raise_alert(Alert(AlertType.STUCK_PENDING, AlertSeverity.WARNING, "b"))
        assert len(sink.alerts) == 2

    @pytest.mark.asyncio
    async def test_history_newest_first(self, monitor, bus, clock):
        await monitor.raise_alert(Alert(AlertType.DEAD_LETTER, AlertSeverity.CRITICAL, "first"))
        clock.advance()
        await monitor.raise_alert(Alert(AlertType.STUCK_PENDING, AlertSeverity.WARNING, "second"))

        assert [a["message"] for a in monitor.get_alerts()] == ["second", "first"]
        assert monitor.stats()["alerts_raised"] == 2
        assert len(bus.get_history(SyncEvent.ALERT_RAISED)) == 2

    @pytest.mark.asyncio
    async def test_broken_sink_isolated(self, bus, store, clock, sink):
        """One failing sink does not stop delivery to the others."""
        monitor = AnomalyMonitor(bus, store, MonitorConfig(), sinks=[BrokenSink(), sink], clock=clock)
        assert await monitor.raise_alert(Alert(AlertType.DEAD_LETTER, AlertSeverity.CRITICAL, "x"))
        assert len(sink.alerts) == 1


class TestWebhookSink:
    """Tests for WebhookAlertSink."""

    @pytest.mark.asyncio
    async def test_posts_alert_json(self, clock):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200)

        sink = WebhookAlertSink("http://hooks.test/alerts", transport=httpx.MockTransport(handler))
        alert = Alert(AlertType.DEAD_LETTER, AlertSeverity.CRITICAL, "dead", raised_at=clock())
        await sink.send(alert)

        assert seen["url"] == "http://hooks.test/alerts"
        assert seen["body"]["type"] == "dead_letter"
        assert seen["body"]["severity"] == "critical"

    @pytest.mark.asyncio
    async def test_error_status_logged(self, clock, caplog):
        def handler(request):
            return httpx.Response(500, text="nope")

        sink = WebhookAlertSink("http://hooks.test/alerts", transport=httpx.MockTransport(handler))
        await sink.send(Alert(AlertType.DEAD_LETTER, AlertSeverity.CRITICAL, "dead", raised_at=clock()))

        assert "Alert webhook returned 500" in caplog.text
