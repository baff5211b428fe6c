"""
CLI adapter: terminal input in, plain text out.
"""

from dataclasses import dataclass
from typing import Any, Mapping

from chatgate.config.schema import ValidationRules
from chatgate.protocol.errors import ValidationError
from chatgate.protocol.formatting import sanitize_text
from chatgate.protocol.identifiers import derive_session_id, new_id
from chatgate.protocol.registry import PlatformAdapter
from chatgate.protocol.types import (
    CanonicalMessage,
    CanonicalResponse,
    ConversationRef,
    IncomingRequest,
    MessageContent,
    Platform,
    Source,
    utc_now,
)


@dataclass(frozen=True)
class CliReply:
    text: str
    hints: tuple[str, ...] = ()

    def render(self) -> str:
        if not self.hints:
            return self.text
        return self.text + "\n\n" + "\n".join(self.hints)


class CliAdapter(PlatformAdapter):
    platform = Platform.CLI
    source = Source.CLI

    @classmethod
    def default_validation_rules(cls) -> ValidationRules:
        return ValidationRules(
            min_length=1,
            max_length=2048,
            blocked_patterns=[r"\x00", r"[\x01-\x08\x0B\x0C\x0E-\x1F\x7F-\x9F]"],
            user_id_pattern=r"^cli-user-[A-Za-z0-9_-]+$",
            user_id_max_length=50,
        )

    def parse(self, raw: Mapping[str, Any], session_id: str | None = None) -> CanonicalMessage:
        text = raw.get("text")
        user_id = raw.get("userId")
        if not isinstance(user_id, str) or not user_id:
            raise ValidationError("CLI payload requires a 'userId'", platform=self.platform.value)

        text = sanitize_text(text)
        self.check_length(text)

        return CanonicalMessage(
            id=raw.get("id") or new_id("cli"),
            session_id=session_id
            or raw.get("sessionId")
            or derive_session_id(self.platform, user_id),
            user_id=user_id,
            timestamp=utc_now(),
            content=MessageContent(
                text=text, metadata={"original_platform": self.platform.value}
            ),
            origin=self.platform,
            conversation=ConversationRef(chat_id=user_id),
            platform_data={"terminal": raw.get("terminal")},
        )

    def format(
        self, response: CanonicalResponse, reply_to: CanonicalMessage | None = None
    ) -> CliReply:
        text, _ = self.render_text(response)
        hints = tuple(
            f"[{i}] {action.label}"
            for i, action in enumerate(self.limit_actions(response), start=1)
        )
        return CliReply(text=text, hints=hints)

    def build_payload(self, request: IncomingRequest) -> dict[str, Any]:
        return {
            "id": request.id,
            "text": request.content,
            "userId": request.user_id,
            "sessionId": request.session_id,
            "terminal": request.metadata.get("terminal"),
        }
