"""
Processing engine interface and the native update shape it consumes.
"""

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from chatgate.protocol.errors import ConversionFailedError
from chatgate.protocol.identifiers import stable_numeric_id
from chatgate.protocol.types import (
    ActionKind,
    CanonicalMessage,
    Capability,
    Platform,
    ResponseAction,
)


@runtime_checkable
class ProcessingEngine(Protocol):
    """The conversational engine the router dispatches to."""

    async def handle(self, update: dict[str, Any]) -> Any: ...

    async def list_capabilities(self) -> list[Capability]: ...


@dataclass(frozen=True)
class EngineReply:
    """Engine result, normalized from whatever handle() returned."""

    text: str
    confidence: float = 1.0
    tools_used: tuple[str, ...] = ()
    tokens_used: int | None = None
    actions: tuple[ResponseAction, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, result: Any) -> "EngineReply":
        """
        Accept a str, a mapping with "text", or an object with .text.

        Missing or malformed optional fields fall back to their defaults
        and actions without a label are dropped.
        """
        if isinstance(result, cls):
            return result
        if result is None:
            return cls(text="")
        if isinstance(result, str):
            return cls(text=result)
        if isinstance(result, Mapping):
            data = result
        else:
            data = {
                key: getattr(result, key)
                for key in ("text", "confidence", "tools_used", "tokens_used", "actions", "metadata")
                if hasattr(result, key)
            }
        metadata = data.get("metadata")
        actions = (_coerce_action(a, i) for i, a in enumerate(_as_list(data.get("actions"))))
        return cls(
            text=str(data.get("text") or data.get("content") or ""),
            confidence=_as_float(data.get("confidence"), 1.0),
            tools_used=tuple(str(t) for t in _as_list(data.get("tools_used"))),
            tokens_used=_as_int(data.get("tokens_used")),
            actions=tuple(a for a in actions if a is not None),
            metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
        )


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return []


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _coerce_action(action: Any, index: int) -> ResponseAction | None:
    if isinstance(action, ResponseAction):
        return action
    if not isinstance(action, Mapping) or not action.get("label"):
        return None
    try:
        kind = ActionKind(action.get("type") or ActionKind.CALLBACK.value)
    except ValueError:
        kind = ActionKind.CALLBACK
    return ResponseAction(
        id=str(action.get("id") or f"action_{index}"),
        label=str(action["label"]),
        kind=kind,
        data=str(action.get("data") or ""),
        style=str(action.get("style") or "secondary"),
    )


def build_native_update(message: CanonicalMessage) -> dict[str, Any]:
    """
    Shape a canonical message as a chat-platform update.

    Non-chat transports get deterministic numeric surrogates for the id
    fields; the original string ids ride along in the "gateway" block,
    together with the explicit origin tag.
    """
    try:
        data = message.platform_data
        is_chat = message.origin is Platform.TELEGRAM
        update_id = data.get("update_id") if is_chat else None
        message_id = data.get("message_id") if is_chat else None
        chat_type = data.get("chat_type", "private") if is_chat else "private"

        return {
            "update_id": update_id if update_id is not None else stable_numeric_id(message.id),
            "message": {
                "message_id": message_id if message_id is not None else stable_numeric_id(message.id),
                "date": int(message.timestamp.timestamp()),
                "chat": {
                    "id": stable_numeric_id(message.conversation.chat_id),
                    "type": chat_type,
                },
                "from": {
                    "id": stable_numeric_id(message.user_id),
                    "is_bot": bool(data.get("is_bot", False)),
                    "first_name": data.get("first_name") or "",
                    "last_name": data.get("last_name"),
                    "username": data.get("username"),
                },
                "text": message.content.text,
            },
            "gateway": {
                "origin": message.origin.value,
                "session_id": message.session_id,
                "user_ref": message.user_id,
                "chat_ref": message.conversation.chat_id,
                "message_ref": message.id,
                "attachments": [a.to_dict() for a in message.content.attachments],
            },
        }
    except (AttributeError, TypeError, ValueError, OverflowError) as e:
        raise ConversionFailedError(
            f"Cannot convert message {message.id} for the engine: {e}",
            platform=getattr(message.origin, "value", None),
        ) from e


class EchoEngine:
    """
    Engine that answers with the text it was sent.

    Useful for local development and as a stand-in for tests.
    """

    def __init__(self, prefix: str = "Echo: ", delay_s: float = 0.0):
        self.prefix = prefix
        self.delay_s = delay_s

    async def handle(self, update: dict[str, Any]) -> EngineReply:
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        text = update["message"]["text"]
        return EngineReply(text=f"{self.prefix}{text}", tools_used=("echo",))

    async def list_capabilities(self) -> list[Capability]:
        return [Capability(name="echo", description="Repeat the incoming message")]
