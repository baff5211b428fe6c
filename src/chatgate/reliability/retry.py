"""
Retry with exponential backoff.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar

from chatgate.config.schema import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryOutcome(Generic[T]):
    attempts: int
    value: T | None = None
    error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryConfig,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    give_up_on: tuple[type[Exception], ...] = (),
    label: str = "operation",
) -> RetryOutcome[T]:
    """
    Run operation up to policy.max_attempts times.

    Never raises for operation failures; the outcome carries the last
    error. Exceptions listed in give_up_on stop retrying immediately.
    """
    last_error: Exception | None = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            value = await operation()
            return RetryOutcome(attempts=attempt, value=value)
        except give_up_on as e:
            logger.warning("%s not retried after attempt %d: %s", label, attempt, e)
            return RetryOutcome(attempts=attempt, error=e)
        except Exception as e:
            last_error = e
            if attempt < policy.max_attempts:
                delay = policy.delay_for(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %r; retrying in %.2fs",
                    label,
                    attempt,
                    policy.max_attempts,
                    e,
                    delay,
                )
                await sleep(delay)
            else:
                logger.error(
                    "%s failed permanently after %d attempts: %r",
                    label,
                    policy.max_attempts,
                    e,
                )
    return RetryOutcome(attempts=policy.max_attempts, error=last_error)
