"""
Content transformation — normalize text, ids and headers; annotate metadata.

Every step here is idempotent: running the stage on its own output
produces an equal request.
"""

import re
from dataclasses import replace
from typing import Any

from chatgate.admission.models import Accept, StageResult
from chatgate.admission.stages.base import Stage
from chatgate.protocol.types import IncomingRequest, Source

INTERFACE_CAPABILITIES = {
    Source.TELEGRAM: ["text", "formatting", "buttons", "files"],
    Source.HTTP: ["text", "json", "files", "streaming"],
    Source.CLI: ["text", "colors", "interactive"],
}

_HORIZONTAL_WS_RE = re.compile(r"[ \t]+")
_LINE_ENDING_RE = re.compile(r"\r\n|\r")
_BLANK_LINES_RE = re.compile(r"\n{3,}")
_ID_RE = re.compile(r"[^A-Za-z0-9_-]")

_TG_BOLD_RE = re.compile(r"(?<!\*)\*\*([^*]+)\*\*(?!\*)")
_TG_ITALIC_RE = re.compile(r"(?<!_)__([^_]+)__(?!_)")

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")
_SMART_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})

# &amp; is only decoded when it does not introduce another entity, so a
# second pass can never decode a new one
_ENTITY_RE = re.compile(r"&(lt|gt|quot|#39|nbsp);|&amp;(?![A-Za-z0-9#]+;)")
_ENTITIES = {"lt": "<", "gt": ">", "quot": '"', "#39": "'", "nbsp": " "}


def _decode_entities(text: str) -> str:
    return _ENTITY_RE.sub(lambda m: _ENTITIES[m.group(1)] if m.group(1) else "&", text)


def normalize_content(content: str, source: Source) -> str:
    if source is Source.TELEGRAM:
        content = _TG_BOLD_RE.sub(r"*\1*", content)
        content = _TG_ITALIC_RE.sub(r"_\1_", content)
    elif source is Source.HTTP:
        content = _decode_entities(content)
    elif source is Source.CLI:
        # Stripping can splice a new escape sequence together; repeat until stable
        stripped = _ANSI_RE.sub("", content)
        while stripped != content:
            content, stripped = stripped, _ANSI_RE.sub("", stripped)
        content = content.translate(_SMART_QUOTES)

    content = _LINE_ENDING_RE.sub("\n", content)
    content = _HORIZONTAL_WS_RE.sub(" ", content)
    content = _BLANK_LINES_RE.sub("\n\n", content)
    return content.strip()


def normalize_id(value: str | int | None) -> str | None:
    if value is None:
        return None
    return _ID_RE.sub("_", str(value))


class TransformationStage(Stage):
    name = "transformation"
    order = 4

    async def process(self, request: IncomingRequest) -> StageResult:
        headers = {k.lower(): v for k, v in request.headers.items()}
        headers["x-gateway-source"] = request.source.value

        user_id = normalize_id(request.user_id)
        return Accept(
            replace(
                request,
                content=normalize_content(request.content, request.source),
                user_id=user_id,
                chat_id=normalize_id(request.chat_id),
                session_id=normalize_id(request.session_id),
                headers=headers,
                metadata={
                    **request.metadata,
                    "gateway": self._annotations(request, user_id),
                },
            )
        )

    @staticmethod
    def _annotations(request: IncomingRequest, user_id: str) -> dict[str, Any]:
        auth = request.metadata.get("auth") or {}
        return {
            "source": request.source.value,
            "received_at": request.timestamp.isoformat(),
            "interface": {
                "type": request.source.value,
                "capabilities": list(INTERFACE_CAPABILITIES.get(request.source, ["text"])),
            },
            "security": {
                "authenticated": bool(auth.get("authenticated", False)),
                "user_id": user_id,
            },
        }
