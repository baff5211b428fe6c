"""Built-in platform adapters."""

from chatgate.protocol.platforms.cli import CliAdapter, CliReply
from chatgate.protocol.platforms.rest import RestAdapter
from chatgate.protocol.platforms.telegram import TelegramAdapter, TelegramReply

__all__ = ["CliAdapter", "CliReply", "RestAdapter", "TelegramAdapter", "TelegramReply"]
