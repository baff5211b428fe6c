"""
Circuit breaker presets for common dependency types.
"""

from chatgate.config.schema import CircuitBreakerConfig

PRESETS: dict[str, CircuitBreakerConfig] = {
    # Model calls are slow and flaky; tolerate more before opening
    "llm": CircuitBreakerConfig(
        failure_threshold=5,
        reset_timeout_ms=60_000,
        monitoring_period_ms=60_000,
        minimum_requests=10,
        slow_call_threshold_ms=5_000,
        slow_call_rate_threshold=0.5,
    ),
    "telegram": CircuitBreakerConfig(
        failure_threshold=3,
        reset_timeout_ms=30_000,
        monitoring_period_ms=30_000,
        minimum_requests=5,
        slow_call_threshold_ms=2_000,
        slow_call_rate_threshold=0.3,
    ),
    "mcp": CircuitBreakerConfig(
        failure_threshold=4,
        reset_timeout_ms=45_000,
        monitoring_period_ms=45_000,
        minimum_requests=8,
        slow_call_threshold_ms=10_000,
        slow_call_rate_threshold=0.4,
    ),
    "database": CircuitBreakerConfig(
        failure_threshold=2,
        reset_timeout_ms=15_000,
        monitoring_period_ms=30_000,
        minimum_requests=5,
        slow_call_threshold_ms=1_000,
        slow_call_rate_threshold=0.2,
    ),
    "http": CircuitBreakerConfig(
        failure_threshold=3,
        reset_timeout_ms=30_000,
        monitoring_period_ms=30_000,
        minimum_requests=6,
        slow_call_threshold_ms=3_000,
        slow_call_rate_threshold=0.35,
    ),
}

ALIASES = {
    "claude": "llm",
    "anthropic": "llm",
    "openai": "llm",
    "ai": "llm",
    "bot": "telegram",
    "tg": "telegram",
    "tools": "mcp",
    "mcp_server": "mcp",
    "db": "database",
    "kv": "database",
    "redis": "database",
    "api": "http",
    "rest": "http",
}

DEFAULT_PRESET = "http"


def get_preset(service_type: str) -> CircuitBreakerConfig:
    """Preset for a service type or alias; unknown types get the HTTP preset."""
    key = service_type.strip().lower()
    key = ALIASES.get(key, key)
    return PRESETS.get(key, PRESETS[DEFAULT_PRESET]).model_copy()


def custom_config(service_type: str, **overrides) -> CircuitBreakerConfig:
    """Preset with selected fields overridden (validated)."""
    base = get_preset(service_type).model_dump()
    base.update(overrides)
    return CircuitBreakerConfig(**base)
