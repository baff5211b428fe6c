"""
Circuit breaker — fast-fail calls to a degraded dependency.

CLOSED → OPEN when the rolling failure (or slow-call) rate crosses its
threshold; OPEN → HALF_OPEN once the reset timeout has elapsed; a single
HALF_OPEN trial either closes the circuit again or reopens it.
"""

import logging
import time
from collections import deque
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from chatgate.config.schema import CircuitBreakerConfig
from chatgate.protocol.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CallRecord:
    timestamp: float
    success: bool
    duration_ms: float
    slow: bool


@dataclass
class BreakerMetrics:
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    slow_calls: int = 0
    rejected_calls: int = 0
    last_failure_time: float | None = None
    last_success_time: float | None = None


@dataclass(frozen=True)
class BreakerStatus:
    name: str
    state: CircuitState
    failure_rate: float
    slow_call_rate: float
    recent_calls: int
    metrics: BreakerMetrics
    next_retry_time: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_rate": round(self.failure_rate, 4),
            "slow_call_rate": round(self.slow_call_rate, 4),
            "recent_calls": self.recent_calls,
            "metrics": asdict(self.metrics),
            "next_retry_time": self.next_retry_time,
        }


class CircuitBreaker:
    """
    Breaker guarding one dependency.

    The clock must be monotonic and return seconds; config values are in
    milliseconds.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._window: deque[CallRecord] = deque()
        self._metrics = BreakerMetrics()
        self._next_retry_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def metrics(self) -> BreakerMetrics:
        return self._metrics

    def is_call_permitted(self) -> bool:
        """Read-only check of whether call() would invoke its operation now."""
        if self._state is CircuitState.OPEN:
            return self._next_retry_at is not None and self._clock() >= self._next_retry_at
        if self._state is CircuitState.HALF_OPEN:
            return not self._trial_in_flight
        return True

    def retry_in(self) -> float:
        if self._state is not CircuitState.OPEN or self._next_retry_at is None:
            return 0.0
        return max(self._next_retry_at - self._clock(), 0.0)

    def record_rejection(self) -> None:
        """Count a caller that skipped the dependency because the circuit is open."""
        self._metrics.rejected_calls += 1

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Invoke operation under breaker protection.

        Raises:
            CircuitOpenError: The circuit is open (or a half-open trial is
                already running) and the operation was not invoked.
        """
        if self._state is CircuitState.OPEN:
            if self._next_retry_at is not None and self._clock() < self._next_retry_at:
                self.record_rejection()
                raise CircuitOpenError(self.name, self.retry_in())
            self._transition(CircuitState.HALF_OPEN)

        trial = self._state is CircuitState.HALF_OPEN
        if trial:
            if self._trial_in_flight:
                self.record_rejection()
                raise CircuitOpenError(self.name, 0.0)
            self._trial_in_flight = True

        started = self._clock()
        try:
            result = await operation()
        except Exception:
            self._on_failure(started, trial)
            raise
        finally:
            if trial:
                self._trial_in_flight = False

        self._on_success(started, trial)
        return result

    def _record(self, started: float, success: bool) -> CallRecord:
        now = self._clock()
        duration_ms = (now - started) * 1000
        record = CallRecord(
            timestamp=now,
            success=success,
            duration_ms=duration_ms,
            slow=duration_ms > self.config.slow_call_threshold_ms,
        )
        self._window.append(record)
        self._metrics.total_calls += 1
        if record.slow:
            self._metrics.slow_calls += 1
        self._prune(now)
        return record

    def _on_success(self, started: float, trial: bool) -> None:
        record = self._record(started, success=True)
        self._metrics.successful_calls += 1
        self._metrics.last_success_time = record.timestamp
        if trial and self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.CLOSED)

    def _on_failure(self, started: float, trial: bool) -> None:
        record = self._record(started, success=False)
        self._metrics.failed_calls += 1
        self._metrics.last_failure_time = record.timestamp

        if trial and self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif self._state is CircuitState.CLOSED and self._should_open():
            self._transition(CircuitState.OPEN)

    def _should_open(self) -> bool:
        recent = len(self._window)
        if recent < self.config.minimum_requests:
            return False
        threshold = self.config.failure_threshold / self.config.minimum_requests
        return (
            self._failure_rate() >= threshold
            or self._slow_call_rate() >= self.config.slow_call_rate_threshold
        )

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        if new_state is CircuitState.OPEN:
            self._next_retry_at = self._clock() + self.config.reset_timeout_ms / 1000
            logger.warning(
                "Circuit %s opened (failure rate %.2f, slow rate %.2f)",
                self.name,
                self._failure_rate(),
                self._slow_call_rate(),
            )
        elif new_state is CircuitState.CLOSED:
            self._next_retry_at = None
            self._window.clear()
            self._metrics.failed_calls = 0
            self._metrics.slow_calls = 0
            logger.info("Circuit %s closed", self.name)
        else:
            logger.info("Circuit %s half-open, allowing a trial call", self.name)
        logger.debug("Circuit %s: %s -> %s", self.name, old_state.value, new_state.value)

    def _prune(self, now: float) -> None:
        cutoff = now - self.config.monitoring_period_ms / 1000
        while self._window and self._window[0].timestamp < cutoff:
            self._window.popleft()

    def _failure_rate(self) -> float:
        if not self._window:
            return 0.0
        return sum(1 for r in self._window if not r.success) / len(self._window)

    def _slow_call_rate(self) -> float:
        if not self._window:
            return 0.0
        return sum(1 for r in self._window if r.slow) / len(self._window)

    def status(self) -> BreakerStatus:
        """Snapshot of the breaker. Does not change state."""
        cutoff = self._clock() - self.config.monitoring_period_ms / 1000
        recent = [r for r in self._window if r.timestamp >= cutoff]
        failures = sum(1 for r in recent if not r.success)
        slow = sum(1 for r in recent if r.slow)
        return BreakerStatus(
            name=self.name,
            state=self._state,
            failure_rate=failures / len(recent) if recent else 0.0,
            slow_call_rate=slow / len(recent) if recent else 0.0,
            recent_calls=len(recent),
            metrics=BreakerMetrics(**asdict(self._metrics)),
            next_retry_time=self._next_retry_at,
        )

    def reset(self) -> None:
        """Force the breaker closed and clear all counters."""
        self._state = CircuitState.CLOSED
        self._window.clear()
        self._metrics = BreakerMetrics()
        self._next_retry_at = None
        self._trial_in_flight = False
        logger.info("Circuit %s reset", self.name)
