"""Resilience routing to the processing engine."""

from chatgate.routing.engine import EchoEngine, EngineReply, ProcessingEngine, build_native_update
from chatgate.routing.router import DispatchOutcome, MessageRouter

__all__ = [
    "DispatchOutcome",
    "EchoEngine",
    "EngineReply",
    "MessageRouter",
    "ProcessingEngine",
    "build_native_update",
]
