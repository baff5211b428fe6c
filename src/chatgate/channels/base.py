"""
Abstract base class for all channels.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from chatgate.protocol.types import IncomingRequest

if TYPE_CHECKING:
    from chatgate.gateway import Gateway, GatewayOutcome


class BaseChannel(ABC):
    """
    Abstract base for all channel integrations.

    Channels must implement:
    - `start()` — Connect to platform, listen for messages
    - `stop()` — Clean shutdown
    - `send()` — Deliver a native reply to the platform
    """

    def __init__(
        self,
        name: str,
        gateway: "Gateway",
        config: dict[str, Any],
    ):
        self.name = name
        self.gateway = gateway
        self.config = config
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def enabled(self) -> bool:
        """Whether this channel is enabled in config."""
        return self.config.get("enabled", False)

    @property
    def allowed_senders(self) -> list[str]:
        """List of allowed sender IDs (empty = all allowed)."""
        return self.config.get("allow_from", [])

    def is_allowed(self, sender_id: str) -> bool:
        """
        Check if a sender is allowed to interact.

        Args:
            sender_id: Platform-specific user ID

        Returns:
            True if allowed, False otherwise
        """
        if not self.allowed_senders:
            return True
        return sender_id in self.allowed_senders

    @abstractmethod
    async def start(self) -> None:
        """Start the channel — connect to platform, listen for messages."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop the channel — clean shutdown."""

    @abstractmethod
    async def send(self, reply: Any) -> None:
        """Deliver a reply produced by the gateway."""

    async def _submit(self, request: IncomingRequest) -> "GatewayOutcome | None":
        """
        Run a request through the gateway and deliver the reply.

        Returns the outcome, or None if the sender is not allowed. The
        caller decides how to tell the user about a rejection.
        """
        if not self.is_allowed(request.user_id):
            return None

        outcome = await self.gateway.handle(request)
        if outcome.reply is not None:
            await self.send(outcome.reply)
        return outcome
