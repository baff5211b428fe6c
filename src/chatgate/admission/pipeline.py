"""
Admission pipeline — ordered accept/reject/transform stages.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from chatgate.admission.models import AdmissionError, AdmissionResult, Reject
from chatgate.admission.stages import (
    AuditSink,
    AuditStage,
    AuthenticationStage,
    RateLimitStage,
    Stage,
    TransformationStage,
    ValidationStage,
)
from chatgate.config.schema import AdmissionConfig, ValidationRules
from chatgate.protocol.types import IncomingRequest

logger = logging.getLogger(__name__)

EMA_ALPHA = 0.1


@dataclass
class StageStats:
    execution_count: int = 0
    rejection_count: int = 0
    error_count: int = 0
    average_time_ms: float = 0.0


class AdmissionPipeline:
    """
    Runs a request through enabled stages in ascending order.

    Each stage sees the previous stage's output. The first rejection (or
    unexpected exception) ends the run. process() never raises.

    Statistics are plain counters updated between awaits, so they cost
    nothing and need no locking.
    """

    def __init__(
        self,
        stages: list[Stage] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._stages: list[Stage] = []
        self._clock = clock
        self._started_at = clock()
        self._total = 0
        self._accepted = 0
        self._rejected = 0
        self._internal_errors = 0
        self._active = 0
        self._avg_ms = 0.0
        self._by_source: dict[str, int] = {}
        self._rejections_by_code: dict[str, int] = {}
        self._stage_stats: dict[str, StageStats] = {}
        for stage in stages or []:
            self.add_stage(stage)

    @classmethod
    def from_config(
        cls,
        config: AdmissionConfig,
        validation_rules: dict[str, ValidationRules],
        audit_sink: AuditSink | None = None,
        clock: Callable[[], float] = time.time,
    ) -> "AdmissionPipeline":
        """
        Canonical five-stage pipeline.

        Args:
            config: Admission section of the config
            validation_rules: Rules per source value (platform defaults
                already merged with config overrides)
            audit_sink: Where audit records go; defaults to logging
            clock: Wall clock for rate-limit windows
        """
        return cls(
            [
                RateLimitStage(config.rate_limits, clock=clock, enabled=config.enable_rate_limit),
                AuthenticationStage(config.auth),
                ValidationStage(validation_rules, enabled=config.enable_validation),
                TransformationStage(enabled=config.enable_transformation),
                AuditStage(audit_sink, enabled=config.enable_audit),
            ]
        )

    def add_stage(self, stage: Stage) -> None:
        self._stages.append(stage)
        self._stage_stats.setdefault(stage.name, StageStats())

    def remove_stage(self, name: str) -> bool:
        before = len(self._stages)
        self._stages = [s for s in self._stages if s.name != name]
        return len(self._stages) != before

    def get_stage(self, name: str) -> Stage | None:
        return next((s for s in self._stages if s.name == name), None)

    @property
    def stages(self) -> list[Stage]:
        """Enabled stages in execution order."""
        return sorted((s for s in self._stages if s.enabled), key=lambda s: s.order)

    async def process(self, request: IncomingRequest) -> AdmissionResult:
        started = self._clock()
        self._total += 1
        self._active += 1
        source = request.source.value
        self._by_source[source] = self._by_source.get(source, 0) + 1

        current = request
        chain: list[str] = []
        try:
            for stage in self.stages:
                chain.append(stage.name)
                stage_started = self._clock()
                try:
                    result = await stage.execute(current)
                except Exception:
                    logger.exception("Stage %s failed on request %s", stage.name, request.id)
                    self._record_stage(stage.name, stage_started, error=True)
                    self._internal_errors += 1
                    return self._finish(
                        current,
                        started,
                        chain,
                        AdmissionError(
                            code="MIDDLEWARE_ERROR",
                            message=f"Internal error in stage: {stage.name}",
                            status_code=500,
                            stage=stage.name,
                        ),
                    )

                if isinstance(result, Reject):
                    self._record_stage(stage.name, stage_started, rejected=True)
                    logger.info(
                        "Request %s rejected by %s: %s (%s)",
                        request.id,
                        stage.name,
                        result.code,
                        result.message,
                    )
                    return self._finish(
                        current,
                        started,
                        chain,
                        AdmissionError(
                            code=result.code,
                            message=result.message,
                            status_code=result.status_code or 400,
                            stage=stage.name,
                            metadata=result.metadata,
                        ),
                    )

                self._record_stage(stage.name, stage_started)
                current = result.request

            return self._finish(current, started, chain, None)
        finally:
            self._active -= 1

    def _record_stage(
        self, name: str, started: float, rejected: bool = False, error: bool = False
    ) -> None:
        elapsed_ms = (self._clock() - started) * 1000
        stats = self._stage_stats.setdefault(name, StageStats())
        stats.execution_count += 1
        if stats.execution_count == 1:
            stats.average_time_ms = elapsed_ms
        else:
            stats.average_time_ms += EMA_ALPHA * (elapsed_ms - stats.average_time_ms)
        if rejected:
            stats.rejection_count += 1
        if error:
            stats.error_count += 1

    def _finish(
        self,
        request: IncomingRequest,
        started: float,
        chain: list[str],
        error: AdmissionError | None,
    ) -> AdmissionResult:
        elapsed_ms = (self._clock() - started) * 1000
        if self._accepted + self._rejected == 0:
            self._avg_ms = elapsed_ms
        else:
            self._avg_ms += EMA_ALPHA * (elapsed_ms - self._avg_ms)

        if error is None:
            self._accepted += 1
        else:
            self._rejected += 1
            self._rejections_by_code[error.code] = self._rejections_by_code.get(error.code, 0) + 1

        return AdmissionResult(
            success=error is None,
            request=request,
            error=error,
            processing_time_ms=elapsed_ms,
            stages=tuple(chain),
        )

    @property
    def active_requests(self) -> int:
        return self._active

    def stats(self) -> dict[str, Any]:
        uptime = max(self._clock() - self._started_at, 1e-9)
        return {
            "total_requests": self._total,
            "accepted_requests": self._accepted,
            "rejected_requests": self._rejected,
            "rate_limited_requests": self._rejections_by_code.get("RATE_LIMIT_EXCEEDED", 0),
            "internal_errors": self._internal_errors,
            "requests_per_second": round(self._total / uptime, 3),
            "average_response_time_ms": round(self._avg_ms, 3),
            "error_rate": round(self.error_rate(), 3),
            "active_requests": self._active,
            "requests_by_source": dict(self._by_source),
            "rejections_by_code": dict(self._rejections_by_code),
            "stages": {
                name: {
                    "execution_count": s.execution_count,
                    "rejection_count": s.rejection_count,
                    "error_count": s.error_count,
                    "average_time_ms": round(s.average_time_ms, 3),
                }
                for name, s in self._stage_stats.items()
            },
        }

    def error_rate(self) -> float:
        """Internal stage failures as a percentage of all requests."""
        if not self._total:
            return 0.0
        return self._internal_errors / self._total * 100

    def health_status(self) -> str:
        error_rate = self.error_rate()
        if error_rate > 10 or self._avg_ms > 5000:
            return "unhealthy"
        if error_rate > 5 or self._avg_ms > 2000:
            return "degraded"
        return "healthy"
