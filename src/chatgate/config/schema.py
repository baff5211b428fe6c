"""
Configuration schema using Pydantic v2.
"""

import re
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _check_pattern(value: str | None) -> str | None:
    if value is not None:
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"Invalid regular expression {value!r}: {e}") from e
    return value


class ValidationRules(BaseModel):
    """Content and identifier rules applied by the validation stage."""

    min_length: int = Field(default=1, ge=0)
    max_length: int = Field(default=4096, ge=1)
    blocked_patterns: list[str] = Field(default_factory=list)
    user_id_pattern: str | None = None
    user_id_max_length: int | None = None
    chat_id_pattern: str | None = None
    session_id_pattern: str | None = None
    session_id_max_length: int | None = None

    @field_validator("blocked_patterns")
    @classmethod
    def compile_blocked(cls, v: list[str]) -> list[str]:
        for pattern in v:
            _check_pattern(pattern)
        return v

    @field_validator("user_id_pattern", "chat_id_pattern", "session_id_pattern")
    @classmethod
    def compile_identifier(cls, v: str | None) -> str | None:
        return _check_pattern(v)

    @model_validator(mode="after")
    def check_bounds(self) -> "ValidationRules":
        if self.min_length > self.max_length:
            raise ValueError("min_length cannot exceed max_length")
        return self


class RateLimitConfig(BaseModel):
    """
    Fixed-window rate limit for one source class.

    key_template is formatted with the request's source, user_id,
    chat_id and session_id. Missing chat/session ids render as
    "private" / "session".
    """

    enabled: bool = True
    window_ms: int = Field(default=60_000, gt=0)
    max_requests: int = Field(default=10, ge=1)
    key_template: str = "{source}:{user_id}"


def _default_rate_limits() -> dict[str, RateLimitConfig]:
    return {
        "telegram": RateLimitConfig(
            max_requests=10, key_template="telegram:{user_id}:{chat_id}"
        ),
        "http": RateLimitConfig(
            max_requests=20, key_template="http:{user_id}:{session_id}"
        ),
        "cli": RateLimitConfig(max_requests=30, key_template="cli:{user_id}"),
    }


class AuthConfig(BaseModel):
    """Presence/shape authentication. Disabled by default."""

    enabled: bool = False
    api_keys: list[str] = Field(default_factory=list)
    cli_user_prefix: str = "cli-user-"


class AdmissionConfig(BaseModel):
    """Admission pipeline configuration."""

    rate_limits: dict[str, RateLimitConfig] = Field(default_factory=_default_rate_limits)
    # Per-source overrides; sources without an entry use the platform defaults
    validation: dict[str, ValidationRules] = Field(default_factory=dict)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    enable_rate_limit: bool = True
    enable_validation: bool = True
    enable_transformation: bool = True
    enable_audit: bool = True


class CircuitBreakerConfig(BaseModel):
    """Thresholds for one guarded dependency. Defaults match the LLM preset."""

    failure_threshold: int = Field(default=5, ge=1)
    reset_timeout_ms: int = Field(default=60_000, ge=0)
    monitoring_period_ms: int = Field(default=60_000, gt=0)
    minimum_requests: int = Field(default=10, ge=1)
    slow_call_threshold_ms: int = Field(default=5_000, gt=0)
    slow_call_rate_threshold: float = Field(default=0.5, gt=0.0, le=1.0)


class RetryConfig(BaseModel):
    """Bounded retry with non-decreasing exponential backoff."""

    max_attempts: int = Field(default=3, ge=1)
    initial_delay_ms: int = Field(default=1_000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_delay_ms: int = Field(default=30_000, ge=0)

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        delay_ms = self.initial_delay_ms * self.backoff_multiplier ** max(attempt - 1, 0)
        return min(delay_ms, max(self.max_delay_ms, self.initial_delay_ms)) / 1000


class RouterConfig(BaseModel):
    """Resilience router configuration."""

    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    # Named preset (llm, telegram, http, ... or an alias); fields set in
    # circuit_breaker override it
    circuit_breaker_preset: str | None = None
    # "platform": one breaker per origin platform; "engine": one shared breaker
    breaker_scope: Literal["platform", "engine"] = "platform"
    dispatch_timeout_ms: int = Field(default=30_000, gt=0)


class SessionConfig(BaseModel):
    """Session store configuration."""

    default_expiration_minutes: int = Field(default=30, ge=1)
    max_sessions_per_user: int = Field(default=5, ge=1)
    cleanup_interval_minutes: int = Field(default=15, ge=1)
    storage: Literal["memory", "json"] = "memory"
    storage_file: str = "sessions.json"


class TelegramConfig(BaseModel):
    """Telegram channel configuration."""

    enabled: bool = False
    token: str = ""
    allow_from: list[str] = Field(default_factory=list)


class ProviderConfig(BaseModel):
    """
    Custom LLM provider configuration.

    Set these to route the Claude CLI through a compatible API proxy
    (e.g., z.ai, OpenRouter, LiteLLM).
    """

    base_url: str = ""  # ANTHROPIC_BASE_URL
    auth_token: str = ""  # ANTHROPIC_AUTH_TOKEN
    model_override: str = ""  # Override all model slots


class McpServerConfig(BaseModel):
    """Configuration for a single MCP server."""

    type: Literal["stdio", "sse"] = "stdio"
    # stdio options
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    # sse options
    url: str | None = None


class EngineConfig(BaseModel):
    """Which processing engine the router dispatches to."""

    kind: Literal["claude", "echo"] = "claude"
    system_prompt: str | None = None
    allowed_tools: list[str] = Field(
        default_factory=lambda: ["Read", "Write", "Edit", "Glob", "Grep", "WebSearch", "WebFetch"]
    )


class ChannelConfigs(BaseModel):
    """All channel configurations."""

    telegram: TelegramConfig = Field(default_factory=TelegramConfig)


class ServerConfig(BaseModel):
    """HTTP API / health server."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=0, le=65535)


class Config(BaseSettings):
    """
    Root configuration.

    Loads from ~/.chatgate/config.json and environment variables
    with CHATGATE_ prefix.
    """

    workspace: Path = Field(default=Path("~/.chatgate/workspace"))
    model: str = "sonnet"
    env: dict[str, str] = Field(default_factory=dict)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    mcp_servers: dict[str, McpServerConfig] = Field(default_factory=dict)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    admission: AdmissionConfig = Field(default_factory=AdmissionConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    sessions: SessionConfig = Field(default_factory=SessionConfig)
    channels: ChannelConfigs = Field(default_factory=ChannelConfigs)
    server: ServerConfig = Field(default_factory=ServerConfig)

    model_config = SettingsConfigDict(
        env_prefix="CHATGATE_",
        env_nested_delimiter="__",
    )

    @field_validator("workspace")
    @classmethod
    def expand_workspace(cls, v: str) -> Path:
        """Expand ~ in workspace path."""
        return Path(v).expanduser().resolve()
