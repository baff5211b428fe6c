"""Admission pipeline: rate limiting, auth, validation, normalization, audit."""

from chatgate.admission.models import Accept, AdmissionError, AdmissionResult, Reject, StageResult
from chatgate.admission.pipeline import AdmissionPipeline

__all__ = [
    "Accept",
    "AdmissionError",
    "AdmissionPipeline",
    "AdmissionResult",
    "Reject",
    "StageResult",
]
