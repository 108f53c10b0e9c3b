"""
Periodic jobs on APScheduler's AsyncIOScheduler.

    drain_pending               interval  enqueue PENDING entities past their backoff gate
    release_stale               interval  retry dispatches that never got an answer
    incremental_reconciliation  interval  sweep entities changed since the last checkpoint
    full_reconciliation         cron      sweep every correlated entity
    anomaly_check               interval  error rate, stuck entities, circuit state

Each job runs with max_instances=1 and coalescing so a slow sweep never piles
up behind itself. Runs are tracked per job (last status, counts, a short
execution history) from APScheduler's job events.
"""
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional
from zoneinfo import ZoneInfo

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    JobExecutionEvent,
)
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from syncengine.config import AppConfig
from syncengine.events import EventBus, SyncEvent
from syncengine.monitor import AnomalyMonitor
from syncengine.observability import correlation_context, get_logger
from syncengine.queue import SyncJobQueue
from syncengine.sweeper import ReconciliationSweeper

logger = get_logger(__name__)

SCHEDULER_TIMEZONE = ZoneInfo("UTC")
JobFunc = Callable[[], Awaitable[Dict[str, Any]]]


def _now() -> datetime:
    return datetime.now(SCHEDULER_TIMEZONE)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class JobStatus(Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    MISSED = "missed"


@dataclass
class JobExecution:
    started_at: datetime
    finished_at: datetime
    status: JobStatus
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    @property
    def duration_ms(self) -> float:
        return (self.finished_at - self.started_at).total_seconds() * 1000


@dataclass
class TrackedJob:
    """What the scheduler knows about one registered job."""
    id: str
    name: str
    description: str
    history: Deque[JobExecution]
    run_count: int = 0
    error_count: int = 0
    last_status: Optional[JobStatus] = None
    last_error: Optional[str] = None
    started_at: Optional[datetime] = None

    @property
    def last_run(self) -> Optional[datetime]:
        return self.history[-1].started_at if self.history else None


@dataclass(frozen=True)
class _JobSpec:
    id: str
    name: str
    description: str
    func: JobFunc
    trigger: Any


class BackgroundScheduler:
    """
    Registers the engine's periodic jobs and tracks their runs.

    Usage:
        scheduler = BackgroundScheduler(queue, sweeper, monitor, bus, config)
        await scheduler.start()
        ...
        scheduler.shutdown()
    """

    max_history = 50

    def __init__(
        self,
        queue: SyncJobQueue,
        sweeper: ReconciliationSweeper,
        monitor: AnomalyMonitor,
        bus: EventBus,
        config: AppConfig,
    ):
        self.queue = queue
        self.sweeper = sweeper
        self.monitor = monitor
        self.bus = bus
        self.config = config
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._jobs: Dict[str, TrackedJob] = {}

    def _job_specs(self) -> List[_JobSpec]:
        sync = self.config.sync
        recon = self.config.reconciliation
        return [
            _JobSpec(
                "drain_pending", "Drain Pending",
                "Enqueue PENDING entities whose backoff gate has passed",
                self._run_drain_pending,
                IntervalTrigger(seconds=sync.drain_interval_seconds),
            ),
            _JobSpec(
                "release_stale", "Release Stale Dispatches",
                "Retry dispatches that were never adjudicated",
                self._run_release_stale,
                IntervalTrigger(seconds=max(60, sync.stale_dispatch_seconds // 3)),
            ),
            _JobSpec(
                "incremental_reconciliation", "Incremental Reconciliation",
                "Compare entities changed since the last sweep",
                self._run_incremental_reconciliation,
                IntervalTrigger(minutes=recon.incremental_interval_minutes),
            ),
            _JobSpec(
                "full_reconciliation", "Full Reconciliation",
                "Compare every correlated entity against the remote",
                self._run_full_reconciliation,
                CronTrigger(hour=recon.full_sweep_hour, minute=recon.full_sweep_minute),
            ),
            _JobSpec(
                "anomaly_check", "Anomaly Check",
                "Evaluate error rate, stuck entities and remote health",
                self._run_anomaly_check,
                IntervalTrigger(seconds=self.config.monitor.check_interval_seconds),
            ),
        ]

    async def start(self) -> None:
        if self.is_running:
            logger.warning("Scheduler already started")
            return

        self._scheduler = AsyncIOScheduler(timezone=SCHEDULER_TIMEZONE)
        self._scheduler.add_listener(
            self._on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED
        )
        for spec in self._job_specs():
            self._register(spec)
        self._scheduler.start()
        logger.info(f"Background scheduler started with {len(self._jobs)} jobs")

    def _register(self, spec: _JobSpec) -> None:
        tracked = TrackedJob(
            id=spec.id,
            name=spec.name,
            description=spec.description,
            history=deque(maxlen=self.max_history),
        )
        self._jobs[spec.id] = tracked

        async def run() -> Dict[str, Any]:
            tracked.started_at = _now()
            with correlation_context():
                try:
                    result = await spec.func()
                except Exception as e:
                    await self.bus.emit(
                        SyncEvent.JOB_FAILED, {"job_id": spec.id, "error": str(e)}, source="scheduler"
                    )
                    raise
                await self.bus.emit(
                    SyncEvent.JOB_COMPLETED, {"job_id": spec.id, "result": result}, source="scheduler"
                )
            return result

        self._scheduler.add_job(
            run,
            trigger=spec.trigger,
            id=spec.id,
            name=spec.name,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    # ═══════════════════════════════════════════════════════════════════════════
    # JOB BODIES
    # ═══════════════════════════════════════════════════════════════════════════

    async def _run_drain_pending(self) -> Dict[str, Any]:
        return {"enqueued": await self.queue.drain_pending()}

    async def _run_release_stale(self) -> Dict[str, Any]:
        return {"released": await self.queue.recover_stale()}

    async def _sweep(self, incremental: bool) -> Dict[str, Any]:
        if self.sweeper.is_running:
            logger.info(
                f"Reconciliation already running, skipping {'incremental' if incremental else 'full'} sweep"
            )
            return {"skipped": True}
        summary = await self.sweeper.reconcile(incremental=incremental)
        return summary.to_dict()

    async def _run_incremental_reconciliation(self) -> Dict[str, Any]:
        return await self._sweep(incremental=True)

    async def _run_full_reconciliation(self) -> Dict[str, Any]:
        return await self._sweep(incremental=False)

    async def _run_anomaly_check(self) -> Dict[str, Any]:
        raised = await self.monitor.evaluate()
        return {"alerts": [alert.type.value for alert in raised]}

    # ═══════════════════════════════════════════════════════════════════════════
    # RUN TRACKING
    # ═══════════════════════════════════════════════════════════════════════════

    def _on_job_event(self, event: JobExecutionEvent) -> None:
        tracked = self._jobs.get(event.job_id)
        if tracked is None:
            return

        now = _now()
        if event.code == EVENT_JOB_MISSED:
            tracked.last_status = JobStatus.MISSED
            tracked.history.append(JobExecution(now, now, JobStatus.MISSED))
            logger.warning(f"Job {event.job_id} missed its scheduled run", extra={"job_id": event.job_id})
            return

        started = tracked.started_at or now
        tracked.started_at = None
        tracked.run_count += 1

        if event.code == EVENT_JOB_ERROR:
            error = str(event.exception) if event.exception else "Unknown error"
            tracked.error_count += 1
            tracked.last_error = error
            tracked.last_status = JobStatus.FAILED
            tracked.history.append(JobExecution(started, now, JobStatus.FAILED, error=error))
            logger.error(f"Job {event.job_id} failed: {error}", extra={"job_id": event.job_id})
        else:
            tracked.last_status = JobStatus.SUCCESS
            tracked.history.append(
                JobExecution(started, now, JobStatus.SUCCESS, result=getattr(event, "retval", None))
            )

    # ═══════════════════════════════════════════════════════════════════════════
    # CONTROL & INSPECTION
    # ═══════════════════════════════════════════════════════════════════════════

    def _tracked(self, job_id: str) -> TrackedJob:
        if job_id not in self._jobs:
            raise ValueError(f"Unknown job: {job_id}")
        return self._jobs[job_id]

    def get_jobs(self) -> List[Dict[str, Any]]:
        jobs = []
        for tracked in self._jobs.values():
            job = self._scheduler.get_job(tracked.id) if self._scheduler else None
            jobs.append({
                "id": tracked.id,
                "name": tracked.name,
                "description": tracked.description,
                "trigger": str(job.trigger) if job else "",
                "next_run": _iso(job.next_run_time) if job else None,
                "last_run": _iso(tracked.last_run),
                "last_status": tracked.last_status.value if tracked.last_status else None,
                "run_count": tracked.run_count,
                "error_count": tracked.error_count,
                "last_error": tracked.last_error,
            })
        return jobs

    def get_job_history(self, job_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Most recent runs first."""
        tracked = self._jobs.get(job_id)
        if tracked is None:
            return []
        return [
            {
                "started_at": _iso(run.started_at),
                "finished_at": _iso(run.finished_at),
                "status": run.status.value,
                "duration_ms": round(run.duration_ms, 2),
                "error": run.error,
            }
            for run in list(reversed(tracked.history))[:limit]
        ]

    async def run_job_now(self, job_id: str) -> Dict[str, Any]:
        """Move a job's next run to now; APScheduler picks it up on its next wakeup."""
        self._tracked(job_id)
        logger.info(f"Manually triggering job: {job_id}")
        self._scheduler.modify_job(job_id, next_run_time=_now())
        return {"status": "triggered", "job_id": job_id}

    def pause_job(self, job_id: str) -> None:
        self._tracked(job_id)
        self._scheduler.pause_job(job_id)
        logger.info(f"Paused job: {job_id}")

    def resume_job(self, job_id: str) -> None:
        self._tracked(job_id)
        self._scheduler.resume_job(job_id)
        logger.info(f"Resumed job: {job_id}")

    def shutdown(self, wait: bool = False) -> None:
        if not self.is_running:
            return
        self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        logger.info("Background scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None
