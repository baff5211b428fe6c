"""
Circuit breaker monitor — one place to inspect and reset every breaker.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable

from chatgate.reliability.breaker import BreakerStatus, CircuitBreaker, CircuitState

logger = logging.getLogger(__name__)

MAX_HISTORY = 1000


@dataclass(frozen=True)
class StateChange:
    name: str
    old_state: CircuitState
    new_state: CircuitState
    at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "from": self.old_state.value,
            "to": self.new_state.value,
            "at": self.at,
        }


class CircuitBreakerMonitor:
    """
    Registry of breakers with a bounded state-change history.

    History is collected by poll(), which the gateway calls whenever it
    builds a health snapshot.
    """

    def __init__(self, clock: Callable[[], float] = time.time, max_history: int = MAX_HISTORY):
        self._breakers: dict[str, CircuitBreaker] = {}
        self._last_state: dict[str, CircuitState] = {}
        self._history: deque[StateChange] = deque(maxlen=max_history)
        self._clock = clock

    def register(self, breaker: CircuitBreaker) -> None:
        self._breakers[breaker.name] = breaker
        self._last_state[breaker.name] = breaker.state

    def unregister(self, name: str) -> bool:
        self._last_state.pop(name, None)
        return self._breakers.pop(name, None) is not None

    def get(self, name: str) -> CircuitBreaker | None:
        return self._breakers.get(name)

    def poll(self) -> list[StateChange]:
        """Record any state changes since the last poll."""
        changes = []
        for name, breaker in self._breakers.items():
            previous = self._last_state.get(name, CircuitState.CLOSED)
            current = breaker.state
            if current is not previous:
                change = StateChange(name, previous, current, self._clock())
                self._history.append(change)
                changes.append(change)
                self._last_state[name] = current
                logger.info("Breaker %s changed %s -> %s", name, previous.value, current.value)
        return changes

    def statuses(self) -> dict[str, BreakerStatus]:
        self.poll()
        return {name: breaker.status() for name, breaker in self._breakers.items()}

    def summary(self) -> dict[str, int]:
        counts = {"total": len(self._breakers), "open": 0, "half_open": 0, "closed": 0}
        for breaker in self._breakers.values():
            counts[breaker.state.value] += 1
        return counts

    def history(self, name: str | None = None, limit: int = 100) -> list[StateChange]:
        entries = [c for c in self._history if name is None or c.name == name]
        return entries[-limit:]

    def reset(self, name: str) -> bool:
        breaker = self._breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        self.poll()
        return True

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
        self.poll()
