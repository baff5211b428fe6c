"""
Text helpers for shaping response text to a platform's limits.
"""

import html
import re

from chatgate.protocol.errors import ValidationError

ELLIPSIS = "..."

_SENTENCE_RE = re.compile(r"[^.!?]*[.!?]+(?:\s+|$)")

_BOLD_RE = re.compile(r"\*\*(.+?)\*\*", re.DOTALL)
_UNDERLINE_RE = re.compile(r"__(.+?)__", re.DOTALL)
_ITALIC_STAR_RE = re.compile(r"\*([^*\n]+)\*")
_ITALIC_UNDERSCORE_RE = re.compile(r"(?<!\w)_([^_\n]+)_(?!\w)")
_CODE_BLOCK_RE = re.compile(r"```(?:\w+\n)?(.*?)```", re.DOTALL)
_CODE_RE = re.compile(r"`([^`]+)`")
_STRIKE_RE = re.compile(r"~~(.+?)~~", re.DOTALL)
_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")
_MARKDOWN_HINT_RE = re.compile(r"(\*\*|__|`|~~|\[[^\]]+\]\([^)]+\)|(?<!\w)[*_][^*_\n]+[*_](?!\w))")


def truncate_text(text: str, max_length: int, suffix: str = ELLIPSIS) -> str:
    """
    Shorten text to at most max_length characters.

    Whole sentences are kept where possible; otherwise the text is cut
    hard. The suffix is appended whenever anything was dropped.
    """
    if len(text) <= max_length:
        return text
    if max_length <= len(suffix):
        return text[:max_length]

    budget = max_length - len(suffix)
    kept = ""
    for match in _SENTENCE_RE.finditer(text):
        sentence = match.group(0)
        if len(kept) + len(sentence) > budget:
            break
        kept += sentence

    kept = kept.rstrip()
    if not kept:
        kept = text[:budget].rstrip()
    return kept + suffix


def strip_formatting(text: str) -> str:
    """Remove markdown markup, keeping the visible text."""
    text = _CODE_BLOCK_RE.sub(r"\1", text)
    text = _LINK_RE.sub(r"\1 (\2)", text)
    text = _BOLD_RE.sub(r"\1", text)
    text = _UNDERLINE_RE.sub(r"\1", text)
    text = _STRIKE_RE.sub(r"\1", text)
    text = _CODE_RE.sub(r"\1", text)
    text = _ITALIC_STAR_RE.sub(r"\1", text)
    text = _ITALIC_UNDERSCORE_RE.sub(r"\1", text)
    return text


def markdown_to_html(text: str) -> str:
    """Light markdown → HTML transform (bold, italic, code, links)."""
    text = html.escape(text, quote=False)
    text = _CODE_BLOCK_RE.sub(r"<pre>\1</pre>", text)
    text = _LINK_RE.sub(r'<a href="\2">\1</a>', text)
    text = _BOLD_RE.sub(r"<b>\1</b>", text)
    text = _UNDERLINE_RE.sub(r"<u>\1</u>", text)
    text = _STRIKE_RE.sub(r"<s>\1</s>", text)
    text = _CODE_RE.sub(r"<code>\1</code>", text)
    text = _ITALIC_STAR_RE.sub(r"<i>\1</i>", text)
    return text


def has_markdown(text: str) -> bool:
    return bool(_MARKDOWN_HINT_RE.search(text))


def sanitize_text(text: str | None) -> str:
    """Trim text and reject empty or NUL-bearing content."""
    if text is None:
        raise ValidationError("Text content is required")
    cleaned = text.strip()
    if not cleaned:
        raise ValidationError("Text content cannot be empty")
    if "\x00" in cleaned:
        raise ValidationError("Text content contains null characters")
    return cleaned
