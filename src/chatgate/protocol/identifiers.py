"""
Identifier helpers: generated ids, derived session ids and numeric surrogates.
"""

import re
import uuid

from chatgate.protocol.types import Platform

MAX_SAFE_INTEGER = 2**53 - 1

_NUMERIC_RE = re.compile(r"^-?\d+$")

_SESSION_PREFIXES = {
    Platform.TELEGRAM: "tg",
    Platform.REST_API: "api",
    Platform.CLI: "cli",
}


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def stable_numeric_id(value: str | int) -> int:
    """
    Map an identifier onto a stable integer.

    Numeric strings pass through unchanged. Anything else goes through a
    32-bit rolling string hash reduced into the safe-integer range. The
    hash is lossy: distinct strings can map to the same number.
    """
    if isinstance(value, int):
        return value
    if _NUMERIC_RE.match(value):
        return int(value)

    h = 0
    for ch in value:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 2**31:
        h -= 2**32
    return abs(h) % MAX_SAFE_INTEGER


def derive_session_id(platform: Platform, user_id: str, chat_id: str | None = None) -> str:
    """
    Deterministic session id for a (platform, chat, user) triple.

    Repeated messages from one conversation always map to the same id.
    """
    prefix = _SESSION_PREFIXES.get(platform, platform.value)
    if platform is Platform.TELEGRAM:
        return f"{prefix}_session_{chat_id or user_id}_{user_id}"
    return f"{prefix}_session_{user_id}"
