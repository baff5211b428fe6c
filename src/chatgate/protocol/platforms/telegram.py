"""
Telegram adapter: Bot API updates in, sendMessage-shaped replies out.
"""

import copy
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from chatgate.config.schema import ValidationRules
from chatgate.protocol.errors import ParsingError
from chatgate.protocol.formatting import sanitize_text
from chatgate.protocol.identifiers import derive_session_id, stable_numeric_id
from chatgate.protocol.registry import PlatformAdapter
from chatgate.protocol.types import (
    ActionKind,
    Attachment,
    AttachmentKind,
    CanonicalMessage,
    CanonicalResponse,
    ConversationRef,
    IncomingRequest,
    MessageContent,
    Platform,
    ResponseAction,
    Source,
    utc_now,
)

_PARSE_MODES = {"markdown": "Markdown", "html": "HTML"}


@dataclass(frozen=True)
class TelegramReply:
    """Arguments for Bot.send_message()."""

    chat_id: int
    text: str
    parse_mode: str | None = None
    reply_markup: dict[str, Any] | None = None
    reply_to_message_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "chat_id": self.chat_id,
            "text": self.text,
            "parse_mode": self.parse_mode,
            "reply_markup": self.reply_markup,
            "reply_to_message_id": self.reply_to_message_id,
        }
        return {k: v for k, v in data.items() if v is not None}


class TelegramAdapter(PlatformAdapter):
    platform = Platform.TELEGRAM
    source = Source.TELEGRAM

    @classmethod
    def default_validation_rules(cls) -> ValidationRules:
        return ValidationRules(
            min_length=1,
            max_length=4096,
            blocked_patterns=[r"^/start$", r"(?is)<script\b[^>]*>.*?</script>"],
            user_id_pattern=r"^\d+$",
            user_id_max_length=20,
            chat_id_pattern=r"^-?\d+$",
        )

    def matches(self, raw: Mapping[str, Any]) -> bool:
        return isinstance(raw.get("update_id"), int) and (
            "message" in raw or "edited_message" in raw
        )

    def parse(self, raw: Mapping[str, Any], session_id: str | None = None) -> CanonicalMessage:
        message = raw.get("message") or raw.get("edited_message")
        if not isinstance(message, Mapping):
            raise ParsingError("Telegram update carries no message", platform="telegram")

        chat = message.get("chat") or {}
        sender = message.get("from") or {}
        if "id" not in chat or "id" not in sender:
            raise ParsingError("Telegram message is missing chat or sender", platform="telegram")

        text = sanitize_text(message.get("text") or message.get("caption"))
        self.check_length(text)

        chat_id = str(chat["id"])
        user_id = str(sender["id"])
        update_id = raw.get("update_id")
        message_id = message.get("message_id")
        date = message.get("date")
        timestamp = datetime.fromtimestamp(date, tz=timezone.utc) if date else utc_now()
        thread_id = message.get("message_thread_id")

        return CanonicalMessage(
            id=f"tg_{update_id}_{message_id}",
            session_id=session_id or derive_session_id(self.platform, user_id, chat_id),
            user_id=user_id,
            timestamp=timestamp,
            content=MessageContent(
                text=text,
                attachments=self._attachments(message),
                metadata={
                    "message_type": "text" if message.get("text") else "caption",
                    "original_platform": self.platform.value,
                },
            ),
            origin=self.platform,
            conversation=ConversationRef(
                chat_id=chat_id,
                thread_id=str(thread_id) if thread_id is not None else None,
            ),
            platform_data={
                "chat_id": chat["id"],
                "message_id": message_id,
                "update_id": update_id,
                "username": sender.get("username"),
                "first_name": sender.get("first_name"),
                "last_name": sender.get("last_name"),
                "chat_type": chat.get("type", "private"),
                "is_bot": bool(sender.get("is_bot", False)),
            },
        )

    @staticmethod
    def _attachments(message: Mapping[str, Any]) -> tuple[Attachment, ...]:
        found: list[Attachment] = []
        if message.get("photo"):
            # Telegram lists every resolution; the last one is the largest
            photo = message["photo"][-1]
            found.append(
                Attachment(
                    kind=AttachmentKind.IMAGE,
                    file_id=photo.get("file_id"),
                    size=photo.get("file_size"),
                )
            )
        for key, kind in (
            ("document", AttachmentKind.DOCUMENT),
            ("voice", AttachmentKind.AUDIO),
            ("audio", AttachmentKind.AUDIO),
            ("video", AttachmentKind.VIDEO),
        ):
            item = message.get(key)
            if item:
                found.append(
                    Attachment(
                        kind=kind,
                        file_id=item.get("file_id"),
                        file_name=item.get("file_name"),
                        mime_type=item.get("mime_type"),
                        size=item.get("file_size"),
                    )
                )
        return tuple(found)

    def format(
        self, response: CanonicalResponse, reply_to: CanonicalMessage | None = None
    ) -> TelegramReply:
        text, mode = self.render_text(response)
        reply_to_message_id = None
        if reply_to is None:
            # Without the originating message, fall back to a chat id carried in the metadata
            chat_id = stable_numeric_id(str(response.content.metadata.get("chat_id") or 0))
        else:
            chat_id = stable_numeric_id(reply_to.conversation.chat_id)
            if reply_to.origin is Platform.TELEGRAM:
                reply_to_message_id = reply_to.platform_data.get("message_id")

        return TelegramReply(
            chat_id=chat_id,
            text=text,
            parse_mode=_PARSE_MODES.get(mode) if mode else None,
            reply_markup=self._keyboard(response),
            reply_to_message_id=reply_to_message_id,
        )

    def _keyboard(self, response: CanonicalResponse) -> dict[str, Any] | None:
        if not self.capabilities.supports_inline_keyboard:
            return None
        actions = self.limit_actions(response)
        if not actions:
            return None
        buttons = [self._button(action) for action in actions]
        return {"inline_keyboard": self.paginate(buttons, response.format.actions_per_row)}

    @staticmethod
    def _button(action: ResponseAction) -> dict[str, str]:
        # Telegram has no share button; links cover it
        if action.kind in (ActionKind.URL, ActionKind.SHARE):
            return {"text": action.label, "url": action.data}
        return {"text": action.label, "callback_data": (action.data or action.id)[:64]}

    def build_payload(self, request: IncomingRequest) -> dict[str, Any]:
        if request.raw_payload and (
            "message" in request.raw_payload or "edited_message" in request.raw_payload
        ):
            payload = copy.deepcopy(request.raw_payload)
            key = "message" if "message" in payload else "edited_message"
            payload[key]["text"] = request.content
            return payload

        chat_id = request.chat_id or request.user_id
        return {
            "update_id": stable_numeric_id(request.id),
            "message": {
                "message_id": stable_numeric_id(request.id),
                "date": int(request.timestamp.timestamp()),
                "chat": {"id": stable_numeric_id(chat_id), "type": "private"},
                "from": {"id": stable_numeric_id(request.user_id), "is_bot": False},
                "text": request.content,
            },
        }
