"""
Session records.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any


class SessionState(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    EXPIRED = "expired"
    TERMINATED = "terminated"


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class SessionContext:
    message_count: int = 0
    last_message_at: datetime | None = None
    preferences: dict[str, Any] = field(default_factory=dict)
    topic: str | None = None
    language: str | None = None
    timezone: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_count": self.message_count,
            "last_message_at": self.last_message_at.isoformat() if self.last_message_at else None,
            "preferences": self.preferences,
            "topic": self.topic,
            "language": self.language,
            "timezone": self.timezone,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionContext":
        return cls(
            message_count=data.get("message_count", 0),
            last_message_at=_dt(data.get("last_message_at")),
            preferences=dict(data.get("preferences") or {}),
            topic=data.get("topic"),
            language=data.get("language"),
            timezone=data.get("timezone"),
        )


@dataclass(frozen=True)
class Session:
    """
    Bounded-lifetime conversational state for one user on one platform.

    Records are immutable; the store replaces them wholesale.
    """

    id: str
    user_id: str
    platform: str
    created_at: datetime
    last_active_at: datetime
    expires_at: datetime | None = None
    state: SessionState = SessionState.ACTIVE
    context: SessionContext = field(default_factory=SessionContext)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def with_changes(self, **changes: Any) -> "Session":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "platform": self.platform,
            "created_at": self.created_at.isoformat(),
            "last_active_at": self.last_active_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "state": self.state.value,
            "context": self.context.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            platform=data["platform"],
            created_at=datetime.fromisoformat(data["created_at"]),
            last_active_at=datetime.fromisoformat(data["last_active_at"]),
            expires_at=_dt(data.get("expires_at")),
            state=SessionState(data.get("state", SessionState.ACTIVE.value)),
            context=SessionContext.from_dict(data.get("context") or {}),
        )
