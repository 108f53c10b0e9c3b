"""
Logging, correlation and timing for the sync engine.

Every unit of work (one sync task, one sweep, one API request) runs inside a
correlation id; entity and run ids ride along as log context so a single
entity's history can be grepped out of the JSON logs:

    with correlation_context(), entity_context(entity.id):
        logger.info("Dispatching", extra={"attempt": 2})

Remote call counters live in a MetricsCollector instance that the engine
creates and hands to the remote client.
"""
import asyncio
import functools
import json
import logging
import time
import uuid
from collections import Counter, deque
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})

# Attributes every LogRecord has; anything else came in through extra={...}
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message", "asctime", "taskName",
}

_NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler", "uvicorn.access")


# ═══════════════════════════════════════════════════════════════════════════════
# CORRELATION & CONTEXT
# ═══════════════════════════════════════════════════════════════════════════════

def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(correlation_id: str) -> None:
    """Bind a correlation id to the current task (used by the API middleware)."""
    _correlation_id.set(correlation_id)


@contextmanager
def correlation_context(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Run a block under a correlation id, generated if not given."""
    token = _correlation_id.set(correlation_id or generate_correlation_id())
    try:
        yield _correlation_id.get()
    finally:
        _correlation_id.reset(token)


@contextmanager
def log_context(**fields: Any) -> Iterator[Dict[str, Any]]:
    """Add fields to every record logged inside the block. Nests."""
    merged = {**_log_context.get(), **fields}
    token = _log_context.set(merged)
    try:
        yield merged
    finally:
        _log_context.reset(token)


def entity_context(entity_id: str):
    return log_context(entity_id=entity_id)


def get_log_context() -> Dict[str, Any]:
    return dict(_log_context.get())


# ═══════════════════════════════════════════════════════════════════════════════
# FORMATTERS
# ═══════════════════════════════════════════════════════════════════════════════

def _record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Log context plus whatever the call passed via extra={...}."""
    fields = get_log_context()
    fields.update(
        (key, value) for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    )
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per line; non-JSON values are stringified."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        correlation_id = get_correlation_id()
        if correlation_id:
            entry["correlation_id"] = correlation_id
        entry.update(_record_fields(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Console format for local runs:

        2026-01-10 12:00:00 - INFO     - syncengine.queue [1a2b3c4d] - Entity synced | {'entity_id': 'a1'}
    """

    def format(self, record: logging.LogRecord) -> str:
        correlation_id = get_correlation_id()
        line = " - ".join((
            datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
            f"{record.levelname:8}",
            record.name + (f" [{correlation_id}]" if correlation_id else ""),
            record.getMessage(),
        ))
        fields = _record_fields(record)
        if fields:
            line = f"{line} | {fields}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    include_libs: bool = False
) -> None:
    """
    Install a single stream handler on the root logger.

    Args:
        level: Root log level name
        json_format: JSON lines instead of the console format
        include_libs: Keep httpx/apscheduler/uvicorn chatter at the root level
    """
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter() if json_format else HumanReadableFormatter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())

    if not include_libs:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


# ═══════════════════════════════════════════════════════════════════════════════
# TIMING
# ═══════════════════════════════════════════════════════════════════════════════

def _log_duration(log: logging.Logger, name: str, elapsed_ms: float, warn_ms: float) -> None:
    log.log(
        logging.WARNING if elapsed_ms > warn_ms else logging.DEBUG,
        f"{name} completed",
        extra={"duration_ms": round(elapsed_ms, 2)},
    )


class Timer:
    """
    Measure a block; optionally log it (WARNING when slower than the threshold).

    Usage:
        with Timer("bulk_fetch", logger) as t:
            result = await remote.bulk_get_by_ids(ids)
        metrics.record_timing("bulk_get", t.elapsed_ms)
    """

    def __init__(
        self,
        name: str,
        logger: Optional[logging.Logger] = None,
        warn_threshold_ms: float = 1000,
    ):
        self.name = name
        self.logger = logger
        self.warn_threshold_ms = warn_threshold_ms
        self.elapsed_ms: float = 0.0
        self._started: float = 0.0

    def __enter__(self) -> "Timer":
        self._started = time.perf_counter()
        return self

    def __exit__(self, *exc) -> None:
        self.elapsed_ms = (time.perf_counter() - self._started) * 1000
        if self.logger is not None:
            _log_duration(self.logger, self.name, self.elapsed_ms, self.warn_threshold_ms)


def timed(name: Optional[str] = None, warn_threshold_ms: float = 1000):
    """Decorator form of Timer for plain and async functions."""
    def decorator(func: Callable) -> Callable:
        label = name or func.__name__
        log = get_logger(func.__module__)

        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                with Timer(label, log, warn_threshold_ms):
                    return await func(*args, **kwargs)
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with Timer(label, log, warn_threshold_ms):
                return func(*args, **kwargs)
        return wrapper

    return decorator


# ═══════════════════════════════════════════════════════════════════════════════
# METRICS
# ═══════════════════════════════════════════════════════════════════════════════

def _percentile(ordered: List[float], fraction: float) -> float:
    return round(ordered[min(len(ordered) - 1, int(len(ordered) * fraction))], 2)


class MetricsCollector:
    """
    In-memory counters for remote calls: requests per operation, errors per
    kind, and the most recent timing samples per operation.
    """

    def __init__(self, max_samples: int = 100):
        self._max_samples = max_samples
        self._requests: Counter = Counter()
        self._errors: Counter = Counter()
        self._timings: Dict[str, Deque[float]] = {}

    def record_request(self, operation: str) -> None:
        self._requests[operation] += 1

    def record_error(self, kind: str) -> None:
        self._errors[kind] += 1

    def record_timing(self, operation: str, duration_ms: float) -> None:
        samples = self._timings.get(operation)
        if samples is None:
            samples = self._timings[operation] = deque(maxlen=self._max_samples)
        samples.append(duration_ms)

    def _timing_summary(self, samples: Deque[float]) -> Dict[str, Any]:
        ordered = sorted(samples)
        return {
            "count": len(ordered),
            "avg_ms": round(sum(ordered) / len(ordered), 2),
            "min_ms": round(ordered[0], 2),
            "max_ms": round(ordered[-1], 2),
            "p50_ms": _percentile(ordered, 0.5),
            # too few samples for a meaningful tail
            "p95_ms": _percentile(ordered, 0.95) if len(ordered) >= 20 else None,
        }

    def get_stats(self) -> Dict[str, Any]:
        return {
            "requests": dict(self._requests),
            "errors": dict(self._errors),
            "timing": {
                operation: self._timing_summary(samples)
                for operation, samples in self._timings.items()
                if samples
            },
        }

    def reset(self) -> None:
        self._requests.clear()
        self._errors.clear()
        self._timings.clear()
