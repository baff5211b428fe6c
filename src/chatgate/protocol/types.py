"""
Canonical, platform-independent message and response shapes.

All values here are frozen; producers hand them forward and consumers
derive new values with dataclasses.replace().
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Platform(str, Enum):
    """Platforms the gateway knows about."""

    TELEGRAM = "telegram"
    REST_API = "rest_api"
    CLI = "cli"
    # Detection and capability data only, no parse/format bundle
    DISCORD = "discord"
    SLACK = "slack"
    WHATSAPP = "whatsapp"


class Source(str, Enum):
    """Transport class a request arrived through. Set once at ingress."""

    TELEGRAM = "telegram"
    HTTP = "http"
    CLI = "cli"


class AttachmentKind(str, Enum):
    IMAGE = "image"
    DOCUMENT = "document"
    AUDIO = "audio"
    VIDEO = "video"
    LOCATION = "location"
    CONTACT = "contact"


class ActionKind(str, Enum):
    CALLBACK = "callback"
    URL = "url"
    SHARE = "share"
    INPUT = "input"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Attachment:
    kind: AttachmentKind
    url: str | None = None
    file_id: str | None = None
    file_name: str | None = None
    mime_type: str | None = None
    size: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return {k: v for k, v in data.items() if v is not None}


@dataclass(frozen=True)
class ResponseAction:
    """A button or quick reply offered alongside a response."""

    id: str
    label: str
    kind: ActionKind = ActionKind.CALLBACK
    data: str = ""
    style: str = "secondary"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "type": self.kind.value,
            "data": self.data,
            "style": self.style,
        }


@dataclass(frozen=True)
class MessageContent:
    text: str
    attachments: tuple[Attachment, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ConversationRef:
    chat_id: str
    thread_id: str | None = None
    message_count: int = 1


@dataclass(frozen=True)
class CanonicalMessage:
    """A single inbound message, independent of the transport it came from."""

    id: str
    session_id: str
    user_id: str
    timestamp: datetime
    content: MessageContent
    origin: Platform
    conversation: ConversationRef
    platform_data: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.content.text


@dataclass(frozen=True)
class ResponseFormat:
    """Formatting hints the formatter honours when rendering a response."""

    markdown: bool = False
    html: bool = False
    plain_text: bool = True
    max_actions: int = 0
    actions_per_row: int = 3


@dataclass(frozen=True)
class ResponseContent:
    text: str
    attachments: tuple[Attachment, ...] = ()
    actions: tuple[ResponseAction, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProcessingStats:
    latency_ms: float = 0.0
    confidence: float = 1.0
    tools_used: tuple[str, ...] = ()
    tokens_used: int | None = None


@dataclass(frozen=True)
class CanonicalResponse:
    id: str
    request_id: str
    timestamp: datetime
    content: ResponseContent
    format: ResponseFormat = field(default_factory=ResponseFormat)
    processing: ProcessingStats = field(default_factory=ProcessingStats)

    @property
    def text(self) -> str:
        return self.content.text

    @property
    def is_error(self) -> bool:
        return bool(self.content.metadata.get("error"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "timestamp": self.timestamp.isoformat(),
            "content": {
                "text": self.content.text,
                "attachments": [a.to_dict() for a in self.content.attachments],
                "actions": [a.to_dict() for a in self.content.actions],
                "metadata": self.content.metadata,
            },
            "format": asdict(self.format),
            "processing": {
                "latency_ms": self.processing.latency_ms,
                "confidence": self.processing.confidence,
                "tools_used": list(self.processing.tools_used),
                "tokens_used": self.processing.tokens_used,
            },
        }


@dataclass(frozen=True)
class IncomingRequest:
    """
    What every transport hands the admission pipeline.

    Stages never mutate a request; they return a replacement built with
    dataclasses.replace().
    """

    id: str
    source: Source
    user_id: str
    content: str
    timestamp: datetime = field(default_factory=utc_now)
    chat_id: str | None = None
    session_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    raw_payload: dict[str, Any] | None = None


@dataclass(frozen=True)
class Capability:
    """Something the processing engine can do (usually a tool)."""

    name: str
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "metadata": self.metadata,
        }
