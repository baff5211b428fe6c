"""
Resilience router — circuit-breaker gated, retried dispatch to the engine.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable

from chatgate.config.schema import CircuitBreakerConfig, RouterConfig
from chatgate.protocol.codec import MessageCodec
from chatgate.protocol.errors import (
    CircuitOpenError,
    ConversionFailedError,
    ErrorKind,
    GatewayError,
    SessionNotFoundError,
)
from chatgate.protocol.identifiers import new_id
from chatgate.protocol.types import (
    CanonicalMessage,
    CanonicalResponse,
    Capability,
    Platform,
    ProcessingStats,
    ResponseContent,
    utc_now,
)
from chatgate.reliability.breaker import CircuitBreaker, CircuitState
from chatgate.reliability.monitor import CircuitBreakerMonitor
from chatgate.reliability.presets import custom_config
from chatgate.reliability.retry import with_retry
from chatgate.routing.engine import EngineReply, ProcessingEngine, build_native_update
from chatgate.sessions.models import Session
from chatgate.sessions.store import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_REPLY_TEXT = "System processed the message successfully."
APOLOGY_TEXT = (
    "Sorry, something went wrong while processing your message. "
    "Please try again in a moment."
)
UNAVAILABLE_TEXT = "The service is temporarily unavailable. Please try again shortly."


@dataclass(frozen=True)
class DispatchOutcome:
    success: bool
    attempts: int
    circuit_state: CircuitState | None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "attempts": self.attempts,
            "circuit_state": self.circuit_state.value if self.circuit_state else None,
            "error": self.error,
        }


class MessageRouter:
    """
    Dispatches canonical messages to the processing engine.

    route_message() never raises: every failure on the dispatch path
    becomes a safe CanonicalResponse tagged with the error condition.
    """

    def __init__(
        self,
        engine: ProcessingEngine,
        config: RouterConfig | None = None,
        sessions: SessionStore | None = None,
        monitor: CircuitBreakerMonitor | None = None,
        codec: MessageCodec | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.config = config or RouterConfig()
        self.sessions = sessions
        self.monitor = monitor
        self.codec = codec or MessageCodec()
        self._sleep = sleep
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def breaker_for(self, platform: Platform) -> CircuitBreaker:
        if self.config.breaker_scope == "engine":
            name = "engine"
        else:
            name = f"engine:{platform.value}"
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, self.breaker_config(), clock=self._clock)
            self._breakers[name] = breaker
            if self.monitor is not None:
                self.monitor.register(breaker)
        return breaker

    def breaker_config(self) -> CircuitBreakerConfig:
        """Breaker thresholds: the configured preset, if any, under explicit settings."""
        if not self.config.circuit_breaker_preset:
            return self.config.circuit_breaker
        return custom_config(
            self.config.circuit_breaker_preset,
            **self.config.circuit_breaker.model_dump(exclude_unset=True),
        )

    async def route_message(
        self, message: CanonicalMessage, session: Session | None = None
    ) -> CanonicalResponse:
        started = self._clock()
        try:
            return await self._route(message, session, started)
        except Exception:
            logger.exception("Unexpected routing failure for message %s", message.id)
            return self._failure(
                message,
                ErrorKind.TEMPORARY_FAILURE,
                APOLOGY_TEXT,
                DispatchOutcome(False, 0, None, "internal routing error"),
                started,
            )

    async def _route(
        self, message: CanonicalMessage, session: Session | None, started: float
    ) -> CanonicalResponse:
        breaker = self.breaker_for(message.origin)
        if not breaker.is_call_permitted():
            breaker.record_rejection()
            logger.warning(
                "Circuit %s open, not dispatching message %s", breaker.name, message.id
            )
            return self._failure(
                message,
                ErrorKind.TEMPORARY_FAILURE,
                UNAVAILABLE_TEXT,
                DispatchOutcome(False, 0, breaker.state, "circuit open"),
                started,
            )

        try:
            update = build_native_update(message)
        except ConversionFailedError as e:
            logger.error("Conversion failed for message %s: %s", message.id, e)
            return self._failure(
                message,
                ErrorKind.CONVERSION_FAILED,
                APOLOGY_TEXT,
                DispatchOutcome(False, 0, breaker.state, str(e)),
                started,
            )

        timeout_s = self.config.dispatch_timeout_ms / 1000

        async def dispatch() -> Any:
            return await asyncio.wait_for(self.engine.handle(update), timeout=timeout_s)

        async def attempt() -> Any:
            return await breaker.call(dispatch)

        outcome = await with_retry(
            attempt,
            self.config.retry,
            sleep=self._sleep,
            give_up_on=(CircuitOpenError,),
            label=f"Dispatch of {message.id}",
        )

        if not outcome.succeeded:
            error = outcome.error
            dispatch_outcome = DispatchOutcome(False, outcome.attempts, breaker.state, repr(error))
            if isinstance(error, CircuitOpenError):
                return self._failure(
                    message, ErrorKind.TEMPORARY_FAILURE, UNAVAILABLE_TEXT, dispatch_outcome, started
                )
            kind = error.kind if isinstance(error, GatewayError) else ErrorKind.TEMPORARY_FAILURE
            return self._failure(message, kind, APOLOGY_TEXT, dispatch_outcome, started)

        # The engine call succeeded; a reply that cannot be read is not retried
        try:
            reply = EngineReply.coerce(outcome.value)
        except (TypeError, ValueError, AttributeError) as e:
            failure = ConversionFailedError(f"Unreadable engine reply: {e}", platform=message.origin.value)
            logger.error("Engine reply for message %s could not be converted: %s", message.id, e)
            return self._failure(
                message,
                ErrorKind.CONVERSION_FAILED,
                APOLOGY_TEXT,
                DispatchOutcome(False, outcome.attempts, breaker.state, str(failure)),
                started,
            )
        await self._record_session(session.id if session else message.session_id)

        latency_ms = (self._clock() - started) * 1000
        return CanonicalResponse(
            id=new_id("resp"),
            request_id=message.id,
            timestamp=utc_now(),
            content=ResponseContent(
                text=reply.text or DEFAULT_REPLY_TEXT,
                actions=reply.actions,
                metadata={
                    **reply.metadata,
                    "origin_platform": message.origin.value,
                    "session_id": message.session_id,
                    "dispatch": DispatchOutcome(True, outcome.attempts, breaker.state).to_dict(),
                },
            ),
            format=self.codec.optimal_format(message.origin),
            processing=ProcessingStats(
                latency_ms=round(latency_ms, 3),
                confidence=reply.confidence,
                tools_used=reply.tools_used,
                tokens_used=reply.tokens_used,
            ),
        )

    async def _record_session(self, session_id: str) -> None:
        if self.sessions is None:
            return
        try:
            await self.sessions.record_message(session_id)
        except SessionNotFoundError:
            logger.debug("Session %s vanished before it could be updated", session_id)
        except Exception as e:
            logger.warning("Could not update session %s: %s", session_id, e)

    def _failure(
        self,
        message: CanonicalMessage,
        kind: ErrorKind,
        text: str,
        outcome: DispatchOutcome,
        started: float,
    ) -> CanonicalResponse:
        response = self.codec.create_error_response(message.id, kind, message.origin, text)
        return replace(
            response,
            content=replace(
                response.content,
                metadata={**response.content.metadata, "dispatch": outcome.to_dict()},
            ),
            processing=replace(
                response.processing,
                latency_ms=round((self._clock() - started) * 1000, 3),
            ),
        )

    async def get_available_capabilities(self) -> list[Capability]:
        """Engine capabilities, or [] if the engine cannot list them."""
        try:
            return list(await self.engine.list_capabilities())
        except Exception as e:
            logger.warning("Could not list engine capabilities: %s", e)
            return []

    def breaker_status(self) -> dict[str, dict[str, Any]]:
        return {name: b.status().to_dict() for name, b in self._breakers.items()}
