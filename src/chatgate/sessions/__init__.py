"""Session tracking."""

from chatgate.sessions.backends import JsonFileSessionBackend, MemorySessionBackend, SessionBackend
from chatgate.sessions.models import Session, SessionContext, SessionState
from chatgate.sessions.store import SessionStore

__all__ = [
    "JsonFileSessionBackend",
    "MemorySessionBackend",
    "Session",
    "SessionBackend",
    "SessionContext",
    "SessionState",
    "SessionStore",
]
