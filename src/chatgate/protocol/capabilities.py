"""
Static per-platform capability table.

Used by the formatter for truncation and formatting degradation, and by
the codec when checking message length.
"""

from dataclasses import dataclass

from chatgate.protocol.errors import PlatformNotSupportedError
from chatgate.protocol.types import Platform


@dataclass(frozen=True)
class RateLimits:
    per_second: int
    per_minute: int
    per_hour: int


@dataclass(frozen=True)
class PlatformCapabilities:
    max_message_length: int
    max_attachments: int
    max_actions: int
    supports_markdown: bool
    supports_html: bool
    supports_inline_keyboard: bool
    supports_files: bool
    supports_voice: bool
    supports_location: bool
    rate_limits: RateLimits
    auth_method: str


PLATFORM_CAPABILITIES: dict[Platform, PlatformCapabilities] = {
    Platform.TELEGRAM: PlatformCapabilities(
        max_message_length=4096,
        max_attachments=10,
        max_actions=100,
        supports_markdown=True,
        supports_html=True,
        supports_inline_keyboard=True,
        supports_files=True,
        supports_voice=True,
        supports_location=True,
        rate_limits=RateLimits(per_second=30, per_minute=20, per_hour=1000),
        auth_method="api_key",
    ),
    Platform.REST_API: PlatformCapabilities(
        max_message_length=10000,
        max_attachments=5,
        max_actions=50,
        supports_markdown=True,
        supports_html=True,
        supports_inline_keyboard=False,
        supports_files=True,
        supports_voice=False,
        supports_location=False,
        rate_limits=RateLimits(per_second=100, per_minute=1000, per_hour=10000),
        auth_method="api_key",
    ),
    Platform.CLI: PlatformCapabilities(
        max_message_length=8192,
        max_attachments=0,
        max_actions=10,
        supports_markdown=False,
        supports_html=False,
        supports_inline_keyboard=False,
        supports_files=False,
        supports_voice=False,
        supports_location=False,
        rate_limits=RateLimits(per_second=50, per_minute=600, per_hour=10000),
        auth_method="none",
    ),
    Platform.DISCORD: PlatformCapabilities(
        max_message_length=2000,
        max_attachments=10,
        max_actions=25,
        supports_markdown=True,
        supports_html=False,
        supports_inline_keyboard=True,
        supports_files=True,
        supports_voice=True,
        supports_location=False,
        rate_limits=RateLimits(per_second=5, per_minute=300, per_hour=3600),
        auth_method="oauth",
    ),
    Platform.SLACK: PlatformCapabilities(
        max_message_length=40000,
        max_attachments=20,
        max_actions=25,
        supports_markdown=True,
        supports_html=False,
        supports_inline_keyboard=True,
        supports_files=True,
        supports_voice=False,
        supports_location=False,
        rate_limits=RateLimits(per_second=1, per_minute=100, per_hour=1000),
        auth_method="oauth",
    ),
    Platform.WHATSAPP: PlatformCapabilities(
        max_message_length=65536,
        max_attachments=1,
        max_actions=10,
        supports_markdown=False,
        supports_html=False,
        supports_inline_keyboard=True,
        supports_files=True,
        supports_voice=True,
        supports_location=True,
        rate_limits=RateLimits(per_second=10, per_minute=100, per_hour=1000),
        auth_method="webhook_signature",
    ),
}


def get_capabilities(platform: Platform) -> PlatformCapabilities:
    try:
        return PLATFORM_CAPABILITIES[platform]
    except KeyError:
        raise PlatformNotSupportedError(
            f"No capability data for platform: {platform}",
            platform=str(platform),
        ) from None
