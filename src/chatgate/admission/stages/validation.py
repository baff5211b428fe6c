"""
Validation — per-source length, blocked-content and identifier rules.
"""

import re
from dataclasses import dataclass, replace
from typing import Any

from chatgate.admission.models import Accept, StageResult
from chatgate.admission.stages.base import Stage
from chatgate.config.schema import ValidationRules
from chatgate.protocol.errors import ValidationError
from chatgate.protocol.types import IncomingRequest, Source

_DANGEROUS = {
    Source.HTTP: [
        re.compile(r"(?is)<script\b[^>]*>.*?</script>"),
        re.compile(r"(?i)javascript:"),
        re.compile(r"(?i)\bon\w+\s*="),
    ],
    Source.CLI: [re.compile(r"[\x01-\x08\x0B\x0C\x0E-\x1F\x7F-\x9F]")],
    Source.TELEGRAM: [re.compile(r"(?is)<script\b[^>]*>.*?</script>")],
}


@dataclass(frozen=True)
class _CompiledRules:
    rules: ValidationRules
    blocked: tuple[re.Pattern[str], ...]
    user_id: re.Pattern[str] | None
    chat_id: re.Pattern[str] | None
    session_id: re.Pattern[str] | None

    @classmethod
    def build(cls, rules: ValidationRules) -> "_CompiledRules":
        def opt(pattern: str | None) -> re.Pattern[str] | None:
            return re.compile(pattern) if pattern else None

        return cls(
            rules=rules,
            blocked=tuple(re.compile(p) for p in rules.blocked_patterns),
            user_id=opt(rules.user_id_pattern),
            chat_id=opt(rules.chat_id_pattern),
            session_id=opt(rules.session_id_pattern),
        )


class ValidationStage(Stage):
    """
    Rejects malformed requests and hands on a sanitized copy.

    Sources without rules pass through untouched.
    """

    name = "validation"
    order = 3

    def __init__(self, rules: dict[str, ValidationRules], enabled: bool = True):
        super().__init__(enabled=enabled)
        self._rules = {source: _CompiledRules.build(r) for source, r in rules.items()}

    async def process(self, request: IncomingRequest) -> StageResult:
        compiled = self._rules.get(request.source.value)
        if compiled is None:
            return Accept(request)
        rules = compiled.rules
        content = request.content or ""

        if len(content) < rules.min_length:
            raise ValidationError(
                f"Content must be at least {rules.min_length} characters",
                code="INVALID_CONTENT",
            )
        if len(content) > rules.max_length:
            raise ValidationError(
                f"Content exceeds maximum length of {rules.max_length} characters",
                code="INVALID_CONTENT",
            )
        for pattern in compiled.blocked:
            if pattern.search(content):
                raise ValidationError("Content contains blocked patterns", code="INVALID_CONTENT")

        self._check_identifier(
            request.user_id, compiled.user_id, rules.user_id_max_length, "user ID", "INVALID_USER_ID"
        )
        if request.chat_id is not None:
            self._check_identifier(request.chat_id, compiled.chat_id, None, "chat ID", "INVALID_CHAT_ID")
        if request.session_id is not None:
            self._check_identifier(
                request.session_id,
                compiled.session_id,
                rules.session_id_max_length,
                "session ID",
                "INVALID_SESSION_ID",
            )

        sanitized = self.sanitize(content, request.source)
        if not sanitized:
            raise ValidationError("Content is empty after sanitization", code="INVALID_CONTENT")

        return Accept(
            replace(
                request,
                content=sanitized,
                metadata={
                    **request.metadata,
                    "validation": {
                        "sanitized": sanitized != content,
                        "original_length": len(content),
                        "sanitized_length": len(sanitized),
                    },
                },
            )
        )

    @staticmethod
    def _check_identifier(
        value: Any,
        pattern: re.Pattern[str] | None,
        max_length: int | None,
        label: str,
        code: str,
    ) -> None:
        if not isinstance(value, str):
            raise ValidationError(f"{label.capitalize()} must be a string", code=code)
        if pattern is not None and not pattern.match(value):
            raise ValidationError(f"Invalid {label} format", code=code)
        if max_length is not None and len(value) > max_length:
            raise ValidationError(f"{label.capitalize()} exceeds {max_length} characters", code=code)

    @staticmethod
    def sanitize(content: str, source: Source) -> str:
        content = content.replace("\x00", "")
        for pattern in _DANGEROUS.get(source, ()):
            content = pattern.sub("", content)
        return content.strip()
