"""
Admission pipeline result types.
"""

from dataclasses import dataclass, field
from typing import Any

from chatgate.protocol.types import IncomingRequest


@dataclass(frozen=True)
class Accept:
    """Stage passed; request is the (possibly replaced) request for the next stage."""

    request: IncomingRequest


@dataclass(frozen=True)
class Reject:
    """Stage refused the request. Terminal for the pipeline."""

    code: str
    message: str
    status_code: int = 400
    metadata: dict[str, Any] = field(default_factory=dict)


StageResult = Accept | Reject


@dataclass(frozen=True)
class AdmissionError:
    code: str
    message: str
    status_code: int
    stage: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "status_code": self.status_code,
            "stage": self.stage,
            **({"details": self.metadata} if self.metadata else {}),
        }


@dataclass(frozen=True)
class AdmissionResult:
    success: bool
    request: IncomingRequest
    error: AdmissionError | None = None
    processing_time_ms: float = 0.0
    stages: tuple[str, ...] = ()
