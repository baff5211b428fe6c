"""
MessageCodec — parse, format, detect and validate through the registry.
"""

import json
import logging
from typing import Any, Mapping

from chatgate.protocol.capabilities import get_capabilities
from chatgate.protocol.errors import (
    ErrorKind,
    ParsingError,
    PlatformNotSupportedError,
)
from chatgate.protocol.identifiers import new_id
from chatgate.protocol.registry import PlatformRegistry, default_registry
from chatgate.protocol.types import (
    CanonicalMessage,
    CanonicalResponse,
    IncomingRequest,
    Platform,
    ProcessingStats,
    ResponseContent,
    ResponseFormat,
    Source,
    utc_now,
)

logger = logging.getLogger(__name__)

_USER_AGENT_PLATFORMS = {
    "discord": Platform.DISCORD,
    "slack": Platform.SLACK,
    "whatsapp": Platform.WHATSAPP,
}

_ERROR_TEXT = {
    ErrorKind.RATE_LIMIT_EXCEEDED: "You're sending messages too quickly. Please wait a moment and try again.",
    ErrorKind.MESSAGE_TOO_LARGE: "Your message is too long. Please shorten it and try again.",
    ErrorKind.VALIDATION_ERROR: "Your message could not be processed. Please check it and try again.",
    ErrorKind.SESSION_EXPIRED: "Your session has expired. Please start a new conversation.",
    ErrorKind.AUTHENTICATION_FAILED: "You're not authorized to use this service.",
    ErrorKind.TEMPORARY_FAILURE: "The service is temporarily unavailable. Please try again shortly.",
}
_DEFAULT_ERROR_TEXT = "Sorry, something went wrong while processing your message. Please try again in a moment."


class MessageCodec:
    """
    Converts between native platform payloads and canonical values.

    Every platform-specific decision is delegated to the adapter found in
    the registry.
    """

    def __init__(self, registry: PlatformRegistry | None = None):
        self.registry = registry or default_registry()

    def parse(
        self,
        raw: Mapping[str, Any],
        platform: Platform | str,
        session_id: str | None = None,
    ) -> CanonicalMessage:
        if not isinstance(raw, Mapping):
            raise ParsingError(f"Expected a JSON object, got {type(raw).__name__}")
        adapter = self.registry.get(platform)
        message = adapter.parse(raw, session_id)
        logger.debug("Parsed %s message %s for session %s", adapter.platform.value, message.id, message.session_id)
        return message

    def parse_request(self, request: IncomingRequest) -> CanonicalMessage:
        """Parse an admitted request, using its source to pick the adapter."""
        adapter = self.registry.for_source(request.source)
        return adapter.parse(adapter.build_payload(request), request.session_id)

    def format(
        self,
        response: CanonicalResponse,
        platform: Platform | str,
        reply_to: CanonicalMessage | None = None,
    ) -> Any:
        adapter = self.registry.get(platform)
        self.validate_response(response, adapter.platform)
        return adapter.format(response, reply_to)

    def detect_platform(
        self, raw: Mapping[str, Any], headers: Mapping[str, str] | None = None
    ) -> Platform:
        """
        Identify the platform a payload came from.

        Structural fingerprints win; headers are only a fallback.
        """
        if isinstance(raw, Mapping):
            for adapter in self.registry:
                if adapter.matches(raw):
                    return adapter.platform

        lowered = {k.lower(): v for k, v in (headers or {}).items()}
        tagged = lowered.get("x-gateway-source")
        if tagged:
            try:
                return self.registry.for_source(Source(tagged)).platform
            except ValueError:
                pass
            try:
                return Platform(tagged)
            except ValueError:
                pass

        user_agent = lowered.get("user-agent", "").lower()
        for marker, platform in _USER_AGENT_PLATFORMS.items():
            if marker in user_agent:
                return platform

        raise PlatformNotSupportedError("Unable to detect platform from payload")

    def validate(self, message: CanonicalMessage) -> bool:
        """Defensive re-check of a parsed message."""
        if not (message.id and message.session_id and message.user_id):
            return False
        text = message.content.text
        if not text or not text.strip():
            return False
        try:
            caps = get_capabilities(message.origin)
        except PlatformNotSupportedError:
            return False
        return len(text) <= caps.max_message_length

    def validate_response(self, response: CanonicalResponse, platform: Platform) -> list[str]:
        """List constraint problems; they are logged, the formatter fixes them."""
        caps = get_capabilities(platform)
        problems = []
        if len(response.text) > caps.max_message_length:
            problems.append(
                f"text length {len(response.text)} exceeds {caps.max_message_length}"
            )
        if len(response.content.attachments) > caps.max_attachments:
            problems.append(
                f"{len(response.content.attachments)} attachments exceed {caps.max_attachments}"
            )
        if len(response.content.actions) > caps.max_actions:
            problems.append(
                f"{len(response.content.actions)} actions exceed {caps.max_actions}"
            )
        if response.format.markdown and not caps.supports_markdown:
            problems.append("markdown not supported")
        if response.format.html and not caps.supports_html:
            problems.append("html not supported")
        for problem in problems:
            logger.warning("Response %s for %s: %s", response.id, platform.value, problem)
        return problems

    def optimal_format(self, platform: Platform | str) -> ResponseFormat:
        try:
            return self.registry.get(platform).optimal_format()
        except PlatformNotSupportedError:
            return ResponseFormat()

    def create_error_response(
        self,
        request_id: str,
        kind: ErrorKind,
        platform: Platform | str | None = None,
        message: str | None = None,
    ) -> CanonicalResponse:
        """A safe, user-facing response describing a failure."""
        platform_value = Platform(platform).value if platform else None
        return CanonicalResponse(
            id=new_id("error"),
            request_id=request_id,
            timestamp=utc_now(),
            content=ResponseContent(
                text=message or _ERROR_TEXT.get(kind, _DEFAULT_ERROR_TEXT),
                metadata={
                    "error": True,
                    "error_type": kind.value,
                    "origin_platform": platform_value,
                },
            ),
            format=ResponseFormat(),
            processing=ProcessingStats(confidence=0.0),
        )

    @staticmethod
    def estimate_size(response: CanonicalResponse) -> int:
        """Approximate serialized size in bytes."""
        return len(json.dumps(response.to_dict(), default=str).encode("utf-8"))
