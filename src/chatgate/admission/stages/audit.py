"""
Audit logging — one structured record per admitted request.
"""

import logging
import re
from dataclasses import replace
from typing import Any, Protocol

from chatgate.admission.models import Accept, StageResult
from chatgate.admission.stages.base import Stage
from chatgate.protocol.types import IncomingRequest

logger = logging.getLogger(__name__)

AUDIT_LOGGER_NAME = "chatgate.audit"

_SPECIAL_CHARS_RE = re.compile(r"[<>&\"'`{}\[\]\\]")
_URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)
_IP_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip")


class AuditSink(Protocol):
    def emit(self, record: dict[str, Any]) -> None: ...


class LoggingAuditSink:
    """Writes audit records to the chatgate.audit logger."""

    def __init__(self, audit_logger: logging.Logger | None = None):
        self._logger = audit_logger or logging.getLogger(AUDIT_LOGGER_NAME)

    def emit(self, record: dict[str, Any]) -> None:
        req = record["request"]
        self._logger.info(
            "%s request %s from %s (%d chars)",
            req["source"],
            req["id"],
            req["user_id"],
            req["content_length"],
            extra={"audit": record},
        )


def categorize_performance(duration_ms: float) -> str:
    if duration_ms < 1000:
        return "fast"
    if duration_ms < 5000:
        return "normal"
    if duration_ms < 10000:
        return "slow"
    return "very_slow"


def client_ip(headers: dict[str, str]) -> str | None:
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in _IP_HEADERS:
        value = lowered.get(name)
        if value:
            return value.split(",")[0].strip()
    return None


class AuditStage(Stage):
    """
    Emits the audit record and never fails the request.

    A sink error is logged as a warning and recorded as
    metadata.audit.logged = False.
    """

    name = "audit"
    order = 5

    def __init__(self, sink: AuditSink | None = None, enabled: bool = True):
        super().__init__(enabled=enabled)
        self.sink = sink or LoggingAuditSink()

    @staticmethod
    def build_record(request: IncomingRequest) -> dict[str, Any]:
        headers = {k.lower(): v for k, v in request.headers.items()}
        return {
            "type": "request",
            "timestamp": request.timestamp.isoformat(),
            "request": {
                "id": request.id,
                "source": request.source.value,
                "user_id": request.user_id,
                "chat_id": request.chat_id,
                "session_id": request.session_id,
                "content_length": len(request.content),
                "header_count": len(headers),
            },
            "security": {
                "ip": client_ip(headers),
                "user_agent": headers.get("user-agent"),
                "has_special_chars": bool(_SPECIAL_CHARS_RE.search(request.content)),
                "has_urls": bool(_URL_RE.search(request.content)),
            },
        }

    async def process(self, request: IncomingRequest) -> StageResult:
        try:
            self.sink.emit(self.build_record(request))
            logged = True
        except Exception as e:
            logger.warning("Audit sink failed for request %s: %s", request.id, e)
            logged = False

        return Accept(
            replace(request, metadata={**request.metadata, "audit": {"logged": logged}})
        )


def log_response(
    request: IncomingRequest,
    success: bool,
    duration_ms: float,
    error_code: str | None = None,
    audit_logger: logging.Logger | None = None,
) -> None:
    """Audit record for the end of a request's journey through the gateway."""
    record = {
        "type": "response",
        "request_id": request.id,
        "source": request.source.value,
        "user_id": request.user_id,
        "success": success,
        "error_code": error_code,
        "duration_ms": round(duration_ms, 2),
        "performance": categorize_performance(duration_ms),
    }
    (audit_logger or logging.getLogger(AUDIT_LOGGER_NAME)).info(
        "%s request %s finished in %.0fms (%s)",
        record["source"],
        request.id,
        duration_ms,
        "ok" if success else error_code,
        extra={"audit": record},
    )
