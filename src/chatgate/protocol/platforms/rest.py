"""
REST adapter: JSON request bodies in, a JSON envelope out.
"""

from datetime import datetime
from typing import Any, Mapping

from chatgate.config.schema import ValidationRules
from chatgate.protocol.errors import ValidationError
from chatgate.protocol.formatting import sanitize_text
from chatgate.protocol.identifiers import derive_session_id, new_id
from chatgate.protocol.registry import PlatformAdapter
from chatgate.protocol.types import (
    Attachment,
    AttachmentKind,
    CanonicalMessage,
    CanonicalResponse,
    ConversationRef,
    IncomingRequest,
    MessageContent,
    Platform,
    Source,
    utc_now,
)

_FORMAT_NAMES = {"markdown": "markdown", "html": "html", None: "plain"}


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            pass
    return utc_now()


class RestAdapter(PlatformAdapter):
    platform = Platform.REST_API
    source = Source.HTTP

    @classmethod
    def default_validation_rules(cls) -> ValidationRules:
        identifier = r"^[A-Za-z0-9_-]+$"
        return ValidationRules(
            min_length=1,
            max_length=8192,
            blocked_patterns=[
                r"(?is)<script\b[^>]*>.*?</script>",
                r"(?i)javascript:",
                r"(?i)\bon\w+\s*=",
            ],
            user_id_pattern=identifier,
            user_id_max_length=50,
            session_id_pattern=identifier,
            session_id_max_length=100,
        )

    def matches(self, raw: Mapping[str, Any]) -> bool:
        return "message" in raw and ("userId" in raw or "user_id" in raw)

    def parse(self, raw: Mapping[str, Any], session_id: str | None = None) -> CanonicalMessage:
        message = raw.get("message")
        user_id = raw.get("userId", raw.get("user_id"))
        if not isinstance(message, str) or not isinstance(user_id, str) or not user_id:
            raise ValidationError(
                "REST payload requires string 'message' and 'userId' fields",
                platform=self.platform.value,
            )

        text = sanitize_text(message)
        self.check_length(text)

        chat_id = str(raw.get("chatId") or raw.get("chat_id") or user_id)
        session_id = (
            session_id
            or raw.get("sessionId")
            or raw.get("session_id")
            or derive_session_id(self.platform, user_id, chat_id)
        )

        return CanonicalMessage(
            id=raw.get("id") or new_id("api"),
            session_id=session_id,
            user_id=user_id,
            timestamp=_parse_timestamp(raw.get("timestamp")),
            content=MessageContent(
                text=text,
                attachments=self._attachments(raw.get("attachments")),
                metadata={
                    "original_platform": self.platform.value,
                    **(raw.get("metadata") or {}),
                },
            ),
            origin=self.platform,
            conversation=ConversationRef(chat_id=chat_id),
            platform_data={
                "client_id": raw.get("clientId"),
                "endpoint": raw.get("endpoint", "/api/v1/messages"),
                "method": raw.get("method", "POST"),
                "headers": dict(raw.get("headers") or {}),
                "api_version": raw.get("apiVersion", "v1"),
            },
        )

    def _attachments(self, items: Any) -> tuple[Attachment, ...]:
        if not items:
            return ()
        if not isinstance(items, list):
            raise ValidationError("'attachments' must be a list", platform=self.platform.value)
        if len(items) > self.capabilities.max_attachments:
            raise ValidationError(
                f"At most {self.capabilities.max_attachments} attachments are allowed",
                platform=self.platform.value,
            )
        parsed = []
        for item in items:
            try:
                parsed.append(
                    Attachment(
                        kind=AttachmentKind(item["type"]),
                        url=item.get("url"),
                        file_name=item.get("filename"),
                        mime_type=item.get("mimeType"),
                        size=item.get("size"),
                    )
                )
            except (KeyError, TypeError, ValueError) as e:
                raise ValidationError(
                    f"Invalid attachment: {item!r}", platform=self.platform.value
                ) from e
        return tuple(parsed)

    def format(
        self, response: CanonicalResponse, reply_to: CanonicalMessage | None = None
    ) -> dict[str, Any]:
        text, mode = self.render_text(response)
        return {
            "id": response.id,
            "request_id": response.request_id,
            "timestamp": response.timestamp.isoformat(),
            "success": not response.is_error,
            "data": {
                "message": text,
                "actions": [a.to_dict() for a in self.limit_actions(response)],
                "attachments": [a.to_dict() for a in response.content.attachments],
                "metadata": response.content.metadata,
            },
            "processing": {
                "latency_ms": response.processing.latency_ms,
                "confidence": response.processing.confidence,
                "tools_used": list(response.processing.tools_used),
            },
            "format": {"type": _FORMAT_NAMES[mode]},
        }

    def build_payload(self, request: IncomingRequest) -> dict[str, Any]:
        raw = request.raw_payload or {}
        return {
            "id": request.id,
            "message": request.content,
            "userId": request.user_id,
            "chatId": request.chat_id,
            "sessionId": request.session_id,
            "timestamp": request.timestamp.isoformat(),
            "clientId": request.headers.get("x-client-id"),
            "endpoint": request.metadata.get("endpoint", "/api/v1/messages"),
            "method": request.metadata.get("method", "POST"),
            "headers": request.headers,
            "attachments": raw.get("attachments"),
            "metadata": raw.get("metadata"),
        }
