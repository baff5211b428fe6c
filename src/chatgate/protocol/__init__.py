"""Canonical message model and platform converters."""

from chatgate.protocol.capabilities import PLATFORM_CAPABILITIES, PlatformCapabilities, get_capabilities
from chatgate.protocol.codec import MessageCodec
from chatgate.protocol.registry import PlatformAdapter, PlatformRegistry, default_registry
from chatgate.protocol.types import (
    ActionKind,
    Attachment,
    AttachmentKind,
    CanonicalMessage,
    CanonicalResponse,
    Capability,
    ConversationRef,
    IncomingRequest,
    MessageContent,
    Platform,
    ProcessingStats,
    ResponseAction,
    ResponseContent,
    ResponseFormat,
    Source,
)

__all__ = [
    "PLATFORM_CAPABILITIES",
    "ActionKind",
    "Attachment",
    "AttachmentKind",
    "CanonicalMessage",
    "CanonicalResponse",
    "Capability",
    "ConversationRef",
    "IncomingRequest",
    "MessageCodec",
    "MessageContent",
    "Platform",
    "PlatformAdapter",
    "PlatformCapabilities",
    "PlatformRegistry",
    "ProcessingStats",
    "ResponseAction",
    "ResponseContent",
    "ResponseFormat",
    "Source",
    "default_registry",
    "get_capabilities",
]
