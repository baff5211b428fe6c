"""
Fixed-window rate limiting per request key.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable

from chatgate.admission.models import Accept, StageResult
from chatgate.admission.stages.base import Stage
from chatgate.config.schema import RateLimitConfig
from chatgate.protocol.errors import RateLimitExceededError
from chatgate.protocol.types import IncomingRequest

logger = logging.getLogger(__name__)


@dataclass
class RateLimitWindow:
    key: str
    count: int
    reset_at_ms: float


class RateLimitStage(Stage):
    """
    Counts requests per key in fixed windows.

    A window starts on the first request for a key and resets lazily:
    the first request after reset_at opens a fresh window with count 1.
    The read-check-increment below has no await in it, so interleaved
    requests on one key cannot overshoot the limit.
    """

    name = "rate_limit"
    order = 1

    def __init__(
        self,
        limits: dict[str, RateLimitConfig],
        key_func: Callable[[IncomingRequest], str] | None = None,
        clock: Callable[[], float] = time.time,
        enabled: bool = True,
    ):
        super().__init__(enabled=enabled)
        self.limits = limits
        self._key_func = key_func
        self._clock = clock
        self._windows: dict[str, RateLimitWindow] = {}

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def key_for(self, request: IncomingRequest, config: RateLimitConfig) -> str:
        if self._key_func is not None:
            return self._key_func(request)
        return config.key_template.format(
            source=request.source.value,
            user_id=request.user_id,
            chat_id=request.chat_id or "private",
            session_id=request.session_id or "session",
        )

    async def process(self, request: IncomingRequest) -> StageResult:
        config = self.limits.get(request.source.value)
        if config is None or not config.enabled:
            return Accept(request)

        key = self.key_for(request, config)
        now = self._now_ms()
        window = self._windows.get(key)

        if window is None or now > window.reset_at_ms:
            self._windows[key] = RateLimitWindow(key=key, count=1, reset_at_ms=now + config.window_ms)
            return Accept(request)

        if window.count >= config.max_requests:
            retry_after = max(1, math.ceil((window.reset_at_ms - now) / 1000))
            logger.info("Rate limit hit for %s (%d/%d)", key, window.count, config.max_requests)
            raise RateLimitExceededError(
                f"Rate limit exceeded. Try again in {retry_after} seconds.",
                retry_after=retry_after,
                details={
                    "limit": config.max_requests,
                    "window_ms": config.window_ms,
                    "key": key,
                },
            )

        window.count += 1
        return Accept(request)

    def window(self, key: str) -> RateLimitWindow | None:
        return self._windows.get(key)

    def cleanup(self) -> int:
        """Drop expired windows. Returns how many were removed."""
        now = self._now_ms()
        expired = [k for k, w in self._windows.items() if now > w.reset_at_ms]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def status(self) -> dict[str, Any]:
        now = self._now_ms()
        return {
            "active_windows": sum(1 for w in self._windows.values() if now <= w.reset_at_ms),
            "limits": {source: cfg.model_dump() for source, cfg in self.limits.items()},
        }
