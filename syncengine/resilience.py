"""
Call protection for the remote client.

Three pieces, all owned by a RemoteClient instance:
- CircuitBreaker: stops calling a remote that keeps failing, probes it again
  after a cooldown
- RateLimiter: token bucket that spaces requests out client-side
- retry_with_backoff: bounded in-call retry for network-level failures

Per-entity retries (minutes to hours apart) are not handled here; those are
persisted on the entity and driven by the sync queue.
"""
import asyncio
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from syncengine.observability import get_logger

logger = get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """A call was refused because the remote's circuit is open."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5       # consecutive failures that open the circuit
    recovery_timeout: float = 60.0   # seconds open before a probe is let through
    half_open_requests: int = 1      # probes allowed while half-open


@dataclass
class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    CLOSED lets everything through and counts failures in a row. Reaching the
    threshold opens the circuit; calls are refused until recovery_timeout has
    passed, then a limited number of probes run HALF_OPEN. A successful probe
    closes the circuit, a failed one opens it again for another cooldown.
    """
    config: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    opened_at: float = 0.0
    probes_in_flight: int = 0

    def __post_init__(self):
        self._lock = asyncio.Lock()
        if self.state == CircuitState.OPEN and not self.opened_at:
            self.opened_at = time.monotonic()

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def cooldown_remaining(self) -> float:
        """Seconds until an open circuit admits a probe (0 when not open)."""
        if self.state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.opened_at + self.config.recovery_timeout - time.monotonic())

    def _move_to(self, state: CircuitState, reason: str) -> None:
        if state == self.state:
            return
        log = logger.warning if state == CircuitState.OPEN else logger.info
        log(
            f"Remote circuit {self.state.value} -> {state.value}: {reason}",
            extra={"circuit_state": state.value, "failure_count": self.failure_count},
        )
        self.state = state
        if state == CircuitState.OPEN:
            self.opened_at = time.monotonic()
        self.probes_in_flight = 0

    async def can_execute(self) -> bool:
        """Whether the next call may go out. Claims a probe slot when half-open."""
        async with self._lock:
            if self.state == CircuitState.OPEN:
                if self.cooldown_remaining() > 0:
                    return False
                self._move_to(CircuitState.HALF_OPEN, "cooldown elapsed")

            if self.state == CircuitState.CLOSED:
                return True

            if self.probes_in_flight >= self.config.half_open_requests:
                return False
            self.probes_in_flight += 1
            return True

    async def record_success(self) -> None:
        async with self._lock:
            self.failure_count = 0
            if self.state == CircuitState.HALF_OPEN:
                self._move_to(CircuitState.CLOSED, "probe succeeded")

    async def record_failure(self) -> None:
        async with self._lock:
            self.failure_count += 1
            if self.state == CircuitState.HALF_OPEN:
                self._move_to(CircuitState.OPEN, "probe failed")
            elif self.state == CircuitState.CLOSED and (
                self.failure_count >= self.config.failure_threshold
            ):
                self._move_to(CircuitState.OPEN, f"{self.failure_count} consecutive failures")

    def snapshot(self) -> Dict[str, Any]:
        return {"state": self.state.value, "failure_count": self.failure_count}


@dataclass
class RateLimiter:
    """
    Token bucket: `rate` tokens per second, at most `burst` banked.

    One bucket per client so the live queue and the sweeper share the same
    request budget.
    """
    rate: float = 10.0
    burst: int = 20

    def __post_init__(self):
        self._tokens = float(self.burst)
        self._refilled_at = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        self._tokens = min(float(self.burst), self._tokens + (now - self._refilled_at) * self.rate)
        self._refilled_at = now

    async def _take(self) -> float:
        """Take a token if one is banked. Returns 0, or the wait until the next one."""
        async with self._lock:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return 0.0
            return (1 - self._tokens) / self.rate

    async def acquire(self, timeout: float = 10.0) -> bool:
        """
        Wait for a token.

        Returns:
            False if no token became available within timeout
        """
        deadline = time.monotonic() + timeout
        while True:
            wait = await self._take()
            if wait == 0:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(wait, remaining, 0.1))


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: float = 0.1  # up to +10% random spread

    def delay_before(self, attempt: int) -> float:
        """Sleep before retry number `attempt` (1 = first retry)."""
        delay = min(self.base_delay * self.exponential_base ** (attempt - 1), self.max_delay)
        return delay * (1 + self.jitter * random.random())


async def retry_with_backoff(
    func: Callable[..., Awaitable[Any]],
    *args,
    config: Optional[RetryConfig] = None,
    retryable_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    **kwargs
) -> Any:
    """
    Await func(*args, **kwargs), retrying the listed exceptions.

    Anything not in retryable_exceptions propagates on the first occurrence;
    the last retryable error propagates once attempts run out.
    """
    config = config or RetryConfig()
    attempt = 1
    while True:
        try:
            return await func(*args, **kwargs)
        except retryable_exceptions as e:
            if attempt >= config.max_attempts:
                if config.max_attempts > 1:
                    logger.warning(
                        f"Giving up after {attempt} attempts: {e}",
                        extra={"attempts": attempt},
                    )
                raise
            delay = config.delay_before(attempt)
            logger.info(
                f"Attempt {attempt}/{config.max_attempts} failed, retrying in {delay:.2f}s",
                extra={"attempt": attempt, "delay": round(delay, 3), "error": str(e)},
            )
            attempt += 1
            await asyncio.sleep(delay)
