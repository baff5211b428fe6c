"""
Gateway facade — admission, canonical parse, session, routing, delivery.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from chatgate.admission import AdmissionError, AdmissionPipeline
from chatgate.admission.stages import AuditSink
from chatgate.admission.stages.audit import log_response
from chatgate.admission.stages.rate_limit import RateLimitStage
from chatgate.config.schema import Config, ValidationRules
from chatgate.protocol.codec import MessageCodec
from chatgate.protocol.errors import ErrorKind, GatewayError
from chatgate.protocol.registry import PlatformRegistry, default_registry
from chatgate.protocol.types import CanonicalResponse, Capability, IncomingRequest, Platform
from chatgate.reliability.monitor import CircuitBreakerMonitor
from chatgate.routing import EchoEngine, MessageRouter, ProcessingEngine
from chatgate.sessions import JsonFileSessionBackend, MemorySessionBackend, Session, SessionStore

logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    ErrorKind.TEMPORARY_FAILURE: 503,
    ErrorKind.CONVERSION_FAILED: 500,
}


@dataclass(frozen=True)
class GatewayOutcome:
    """
    What a transport gets back for one request.

    reply is the native value to deliver (TelegramReply, REST envelope
    dict or CliReply). It is None only when the request was rejected
    before routing or failed internally.
    """

    request_id: str
    success: bool
    status_code: int
    reply: Any = None
    response: CanonicalResponse | None = None
    error: AdmissionError | None = None
    session_id: str | None = None
    session_created: bool = False


class Gateway:
    """Composes the request flow and owns its lifecycle."""

    def __init__(
        self,
        pipeline: AdmissionPipeline,
        router: MessageRouter,
        sessions: SessionStore,
        codec: MessageCodec | None = None,
        monitor: CircuitBreakerMonitor | None = None,
        clock: Callable[[], float] = time.monotonic,
        maintenance_interval_s: float = 900.0,
    ):
        self.pipeline = pipeline
        self.router = router
        self.sessions = sessions
        self.codec = codec or router.codec
        self.monitor = monitor or router.monitor or CircuitBreakerMonitor()
        self.channels: Any = None
        self._clock = clock
        self._started_at = clock()
        self._maintenance_interval_s = maintenance_interval_s
        self._maintenance_task: asyncio.Task[None] | None = None
        sessions.add_removal_listener(self._forget_engine_state)

    @property
    def engine(self) -> ProcessingEngine:
        return self.router.engine

    async def start(self) -> None:
        self._started_at = self._clock()
        await self.sessions.start()
        if self._maintenance_task is None:
            self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        logger.info("Gateway started")

    async def stop(self) -> None:
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None
        await self.sessions.stop()
        logger.info("Gateway stopped")

    async def maintain(self) -> dict[str, int]:
        """Drop expired rate-limit windows and sessions."""
        windows = 0
        stage = self.pipeline.get_stage(RateLimitStage.name)
        if isinstance(stage, RateLimitStage):
            windows = stage.cleanup()
        sessions = await self.sessions.sweep_expired()
        if windows:
            logger.debug("Dropped %d expired rate-limit windows", windows)
        return {"rate_limit_windows": windows, "sessions": sessions}

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self._maintenance_interval_s)
            try:
                await self.maintain()
            except Exception:
                logger.exception("Gateway maintenance failed")

    def _forget_engine_state(self, session_id: str) -> None:
        forget = getattr(self.engine, "forget", None)
        if callable(forget):
            forget(session_id)

    async def handle(self, request: IncomingRequest) -> GatewayOutcome:
        """Run one request end to end. Never raises."""
        started = self._clock()
        try:
            outcome = await self._handle(request)
        except Exception:
            logger.exception("Unhandled failure for request %s", request.id)
            outcome = GatewayOutcome(
                request_id=request.id,
                success=False,
                status_code=500,
                error=AdmissionError(
                    code="INTERNAL_ERROR",
                    message="Internal gateway error",
                    status_code=500,
                ),
            )

        log_response(
            request,
            outcome.success,
            (self._clock() - started) * 1000,
            outcome.error.code if outcome.error else None,
        )
        return outcome

    async def _handle(self, request: IncomingRequest) -> GatewayOutcome:
        admission = await self.pipeline.process(request)
        if not admission.success:
            return GatewayOutcome(
                request_id=request.id,
                success=False,
                status_code=admission.error.status_code,
                error=admission.error,
            )

        admitted = admission.request
        try:
            message = self.codec.parse_request(admitted)
        except GatewayError as e:
            logger.info("Could not parse admitted request %s: %s", request.id, e)
            return GatewayOutcome(
                request_id=request.id,
                success=False,
                status_code=e.status_code,
                error=AdmissionError(
                    code=e.code, message=str(e), status_code=e.status_code, stage="parse"
                ),
            )

        try:
            session, created = await self.sessions.get_or_create(
                message.session_id,
                message.user_id,
                message.origin,
                metadata={"source": admitted.source.value},
            )
        except GatewayError as e:
            logger.warning("Session refused for request %s: %s", request.id, e)
            return GatewayOutcome(
                request_id=request.id,
                success=False,
                status_code=e.status_code,
                error=AdmissionError(
                    code=e.code, message=str(e), status_code=e.status_code, stage="session"
                ),
            )
        if created:
            logger.info("New session %s for %s on %s", session.id, session.user_id, session.platform)

        response = await self.router.route_message(message, session)

        try:
            reply = self.codec.format(response, message.origin, message)
        except GatewayError as e:
            logger.error("Could not format response for %s: %s", request.id, e)
            return GatewayOutcome(
                request_id=request.id,
                success=False,
                status_code=e.status_code,
                response=response,
                error=AdmissionError(
                    code=e.code, message=str(e), status_code=e.status_code, stage="format"
                ),
                session_id=session.id,
                session_created=created,
            )

        status_code = 200
        if response.is_error:
            kind = ErrorKind(response.content.metadata.get("error_type", ErrorKind.TEMPORARY_FAILURE.value))
            status_code = _ERROR_STATUS.get(kind, 500)

        return GatewayOutcome(
            request_id=request.id,
            success=not response.is_error,
            status_code=status_code,
            reply=reply,
            response=response,
            session_id=session.id,
            session_created=created,
        )

    async def create_session(
        self,
        user_id: str,
        platform: Platform | str,
        metadata: dict[str, Any] | None = None,
        expiration_minutes: int | None = None,
        session_id: str | None = None,
    ) -> Session:
        return await self.sessions.create(
            user_id,
            Platform(platform),
            metadata,
            expiration_minutes=expiration_minutes,
            session_id=session_id,
        )

    async def get_session(self, session_id: str) -> Session | None:
        return await self.sessions.get(session_id)

    async def reset_session(self, session_id: str) -> bool:
        """Forget a conversation: the gateway session and any engine state tied to it."""
        self._forget_engine_state(session_id)
        removed = await self.sessions.delete(session_id)
        if removed:
            logger.info("Session %s reset", session_id)
        return removed

    async def list_capabilities(self) -> list[Capability]:
        return await self.router.get_available_capabilities()

    def breaker_summary(self) -> dict[str, Any]:
        self.monitor.poll()
        return {
            "summary": self.monitor.summary(),
            "breakers": self.router.breaker_status(),
        }

    async def stats(self) -> dict[str, Any]:
        return {
            "pipeline": self.pipeline.stats(),
            "circuit_breakers": self.breaker_summary(),
            "sessions": await self.sessions.stats(),
        }

    async def health(self) -> dict[str, Any]:
        """
        Health report for the HTTP endpoint.

        Status is "unhealthy" when the pipeline is, "degraded" when the
        pipeline is degraded, any breaker is not closed, or any channel
        is down, and "healthy" otherwise.
        """
        pipeline_status = self.pipeline.health_status()
        breakers = self.breaker_summary()
        channel_status = self.channels.get_status() if self.channels else {}

        status = "healthy"
        if pipeline_status == "unhealthy":
            status = "unhealthy"
        elif (
            pipeline_status == "degraded"
            or breakers["summary"]["open"]
            or breakers["summary"]["half_open"]
            or not all(ch.get("running", False) for ch in channel_status.values())
        ):
            status = "degraded"

        return {
            "status": status,
            "uptime_s": round(self._clock() - self._started_at, 1),
            "pipeline": {
                "status": pipeline_status,
                "active_requests": self.pipeline.active_requests,
                "error_rate": round(self.pipeline.error_rate(), 3),
            },
            "circuit_breakers": breakers["summary"],
            "sessions": await self.sessions.stats(),
            "channels": channel_status,
        }


def merged_validation_rules(
    config: Config, registry: PlatformRegistry
) -> dict[str, ValidationRules]:
    """Platform default rules, replaced per source by config overrides."""
    return {
        adapter.source.value: config.admission.validation.get(adapter.source.value)
        or adapter.default_validation_rules()
        for adapter in registry
    }


def build_engine(config: Config) -> ProcessingEngine:
    if config.engine.kind == "echo":
        return EchoEngine()
    # Delayed import: the SDK is only needed for the claude engine
    from chatgate.agent import ClaudeAgentEngine

    return ClaudeAgentEngine.from_config(config)


def build_session_store(config: Config) -> SessionStore:
    if config.sessions.storage == "json":
        backend = JsonFileSessionBackend(config.workspace / config.sessions.storage_file)
    else:
        backend = MemorySessionBackend()
    return SessionStore(backend, config.sessions)


def build_gateway(
    config: Config,
    engine: ProcessingEngine | None = None,
    audit_sink: AuditSink | None = None,
    sleep: Callable[[float], Any] | None = None,
) -> Gateway:
    """Wire a Gateway from config."""
    registry = default_registry()
    codec = MessageCodec(registry)
    monitor = CircuitBreakerMonitor()
    sessions = build_session_store(config)
    pipeline = AdmissionPipeline.from_config(
        config.admission,
        merged_validation_rules(config, registry),
        audit_sink=audit_sink,
    )
    router_kwargs: dict[str, Any] = {}
    if sleep is not None:
        router_kwargs["sleep"] = sleep
    router = MessageRouter(
        engine or build_engine(config),
        config.router,
        sessions=sessions,
        monitor=monitor,
        codec=codec,
        **router_kwargs,
    )
    logger.debug(
        "Gateway wired: engine=%s, breaker scope=%s, session storage=%s",
        type(router.engine).__name__,
        config.router.breaker_scope,
        config.sessions.storage,
    )
    return Gateway(
        pipeline,
        router,
        sessions,
        codec=codec,
        monitor=monitor,
        maintenance_interval_s=config.sessions.cleanup_interval_minutes * 60,
    )

