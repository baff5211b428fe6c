"""Admission stages, in canonical order."""

from chatgate.admission.stages.audit import AuditSink, AuditStage, LoggingAuditSink
from chatgate.admission.stages.auth import AuthenticationStage
from chatgate.admission.stages.base import Stage
from chatgate.admission.stages.rate_limit import RateLimitStage
from chatgate.admission.stages.transform import TransformationStage
from chatgate.admission.stages.validation import ValidationStage

__all__ = [
    "AuditSink",
    "AuditStage",
    "AuthenticationStage",
    "LoggingAuditSink",
    "RateLimitStage",
    "Stage",
    "TransformationStage",
    "ValidationStage",
]
