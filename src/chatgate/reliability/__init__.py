"""Circuit breakers and retry."""

from chatgate.reliability.breaker import BreakerStatus, CircuitBreaker, CircuitState
from chatgate.reliability.monitor import CircuitBreakerMonitor
from chatgate.reliability.presets import custom_config, get_preset
from chatgate.reliability.retry import RetryOutcome, with_retry

__all__ = [
    "BreakerStatus",
    "CircuitBreaker",
    "CircuitBreakerMonitor",
    "CircuitState",
    "RetryOutcome",
    "custom_config",
    "get_preset",
    "with_retry",
]
