"""
Platform registry — maps a platform tag to its parse/format bundle.

Adding a platform means writing one PlatformAdapter subclass and
registering it; nothing else in the codec branches on platform.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Iterator, Mapping

from chatgate.config.schema import ValidationRules
from chatgate.protocol.capabilities import PlatformCapabilities, get_capabilities
from chatgate.protocol.errors import MessageTooLargeError, PlatformNotSupportedError
from chatgate.protocol.formatting import (
    has_markdown,
    markdown_to_html,
    strip_formatting,
    truncate_text,
)
from chatgate.protocol.types import (
    CanonicalMessage,
    CanonicalResponse,
    IncomingRequest,
    Platform,
    ResponseAction,
    ResponseFormat,
    Source,
)

logger = logging.getLogger(__name__)


class PlatformAdapter(ABC):
    """
    Abstract bundle of everything platform-specific.

    Subclasses must implement:
    - `parse()` — native payload → CanonicalMessage
    - `format()` — CanonicalResponse → native reply
    - `build_payload()` — admitted IncomingRequest → native payload
    - `default_validation_rules()` — admission rules for this source
    """

    platform: Platform
    source: Source

    def __init__(
        self,
        capabilities: PlatformCapabilities | None = None,
        validation_rules: ValidationRules | None = None,
    ):
        self.capabilities = capabilities or get_capabilities(self.platform)
        self.validation_rules = validation_rules or self.default_validation_rules()

    @classmethod
    @abstractmethod
    def default_validation_rules(cls) -> ValidationRules:
        pass

    @abstractmethod
    def parse(self, raw: Mapping[str, Any], session_id: str | None = None) -> CanonicalMessage:
        pass

    @abstractmethod
    def format(
        self, response: CanonicalResponse, reply_to: CanonicalMessage | None = None
    ) -> Any:
        pass

    @abstractmethod
    def build_payload(self, request: IncomingRequest) -> dict[str, Any]:
        pass

    def matches(self, raw: Mapping[str, Any]) -> bool:
        """Structural fingerprint used by platform detection."""
        return False

    def optimal_format(self) -> ResponseFormat:
        caps = self.capabilities
        return ResponseFormat(
            markdown=caps.supports_markdown,
            html=caps.supports_html and not caps.supports_markdown,
            plain_text=not (caps.supports_markdown or caps.supports_html),
            max_actions=caps.max_actions,
            actions_per_row=3,
        )

    def check_length(self, text: str) -> None:
        limit = self.capabilities.max_message_length
        if len(text) > limit:
            raise MessageTooLargeError(
                f"Message exceeds {self.platform.value} limit of {limit} characters",
                platform=self.platform.value,
                details={"length": len(text), "limit": limit},
            )

    def render_text(self, response: CanonicalResponse) -> tuple[str, str | None]:
        """
        Fit response text to this platform.

        Returns the text and the markup mode ("markdown", "html" or None).
        Problems are logged, never raised.
        """
        caps = self.capabilities
        fmt = response.format
        limit = caps.max_message_length
        text = response.text

        if len(text) > limit:
            logger.warning(
                "Truncating %s response %s from %d to %d characters",
                self.platform.value,
                response.id,
                len(text),
                limit,
            )
            text = truncate_text(text, limit)

        if fmt.markdown and caps.supports_markdown:
            return text, "markdown"

        if fmt.html and caps.supports_html:
            rendered = markdown_to_html(text)
            if len(rendered) <= limit:
                return rendered, "html"
            logger.warning(
                "HTML rendering of %s overflows %s limit, sending plain text",
                response.id,
                self.platform.value,
            )

        if has_markdown(text):
            logger.warning(
                "Stripping unsupported formatting from %s response %s",
                self.platform.value,
                response.id,
            )
            text = strip_formatting(text)
        return text, None

    def limit_actions(self, response: CanonicalResponse) -> list[ResponseAction]:
        actions = list(response.content.actions)
        limit = self.capabilities.max_actions
        if response.format.max_actions:
            limit = min(limit, response.format.max_actions)
        if len(actions) > limit:
            logger.warning(
                "Dropping %d actions beyond %s limit of %d",
                len(actions) - limit,
                self.platform.value,
                limit,
            )
            actions = actions[:limit]
        return actions

    @staticmethod
    def paginate(items: list[Any], per_row: int = 3) -> list[list[Any]]:
        per_row = max(per_row, 1)
        return [items[i : i + per_row] for i in range(0, len(items), per_row)]


class PlatformRegistry:
    """Lookup table of platform adapters, by platform and by source."""

    def __init__(self, adapters: list[PlatformAdapter] | None = None):
        self._by_platform: dict[Platform, PlatformAdapter] = {}
        self._by_source: dict[Source, PlatformAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: PlatformAdapter) -> None:
        self._by_platform[adapter.platform] = adapter
        self._by_source[adapter.source] = adapter

    def get(self, platform: Platform | str) -> PlatformAdapter:
        try:
            return self._by_platform[Platform(platform)]
        except (KeyError, ValueError):
            raise PlatformNotSupportedError(
                f"Unsupported platform: {platform}", platform=str(platform)
            ) from None

    def for_source(self, source: Source | str) -> PlatformAdapter:
        try:
            return self._by_source[Source(source)]
        except (KeyError, ValueError):
            raise PlatformNotSupportedError(
                f"No platform registered for source: {source}"
            ) from None

    def __contains__(self, platform: object) -> bool:
        return platform in self._by_platform

    def __iter__(self) -> Iterator[PlatformAdapter]:
        return iter(self._by_platform.values())

    @property
    def platforms(self) -> list[Platform]:
        return list(self._by_platform)


def default_registry() -> PlatformRegistry:
    """Registry with the built-in telegram, REST and CLI adapters."""
    from chatgate.protocol.platforms import CliAdapter, RestAdapter, TelegramAdapter

    return PlatformRegistry([TelegramAdapter(), RestAdapter(), CliAdapter()])
