"""Channel integrations for chatgate."""

from chatgate.channels.base import BaseChannel
from chatgate.channels.manager import ChannelManager

__all__ = ["BaseChannel", "ChannelManager"]
