"""
Channel manager — initializes and auto-reconnects channels.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from chatgate.channels.base import BaseChannel

if TYPE_CHECKING:
    from chatgate.gateway import Gateway

logger = logging.getLogger(__name__)


class ChannelManager:
    """
    Manages all channel integrations.

    - Initializes enabled channels from config
    - Coordinates channel lifecycle (start/stop)
    - Auto-reconnects crashed channels with exponential backoff
    """

    MAX_START_RETRIES = 3
    MONITOR_INTERVAL_S = 30  # Check channel health every 30s

    def __init__(
        self,
        gateway: "Gateway",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.channels: dict[str, BaseChannel] = {}
        self._channel_configs: dict[str, tuple[type[BaseChannel], dict[str, Any]]] = {}
        self._monitor_task: asyncio.Task[None] | None = None
        self._running = False
        self._sleep = sleep

    @property
    def running(self) -> bool:
        return self._running

    def init_channel(
        self, name: str, channel_class: type[BaseChannel], config: dict[str, Any]
    ) -> None:
        """
        Initialize a channel if enabled.

        Args:
            name: Channel identifier (e.g., "telegram")
            channel_class: Class implementing BaseChannel
            config: Channel configuration dict
        """
        if not config.get("enabled", False):
            return

        channel = channel_class(name, self.gateway, config)
        self.channels[name] = channel
        # Store config for reconnection
        self._channel_configs[name] = (channel_class, config)

    async def _start_channel_with_retry(self, name: str, channel: BaseChannel) -> bool:
        """Start a channel with exponential backoff retries."""
        for attempt in range(self.MAX_START_RETRIES):
            try:
                await channel.start()
                logger.info("%s channel started", name)
                return True
            except Exception as e:
                wait = 2**attempt
                logger.warning(
                    "%s channel failed (attempt %d/%d): %s",
                    name,
                    attempt + 1,
                    self.MAX_START_RETRIES,
                    e,
                )
                if attempt < self.MAX_START_RETRIES - 1:
                    await self._sleep(wait)
        logger.error("%s channel failed permanently after %d attempts", name, self.MAX_START_RETRIES)
        return False

    async def start_all(self) -> None:
        """Start all enabled channels with retry logic."""
        self._running = True
        for name, channel in self.channels.items():
            await self._start_channel_with_retry(name, channel)

        self._monitor_task = asyncio.create_task(self._monitor_channels())

    async def _monitor_channels(self) -> None:
        """Periodically check channel health and auto-restart crashed channels."""
        try:
            while self._running:
                await asyncio.sleep(self.MONITOR_INTERVAL_S)
                await self.restart_stopped()
        except asyncio.CancelledError:
            pass

    async def restart_stopped(self) -> list[str]:
        """Recreate and start every channel that is no longer running."""
        restarted = []
        for name, channel in list(self.channels.items()):
            if channel.running or not self._running:
                continue
            logger.warning("%s channel appears down, attempting restart", name)
            if name not in self._channel_configs:
                continue
            cls, config = self._channel_configs[name]
            new_channel = cls(name, self.gateway, config)
            if await self._start_channel_with_retry(name, new_channel):
                self.channels[name] = new_channel
                restarted.append(name)
                logger.info("%s channel reconnected", name)
        return restarted

    async def stop_all(self) -> None:
        """Stop all channels."""
        self._running = False

        if self._monitor_task and not self._monitor_task.done():
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass

        for name, channel in self.channels.items():
            try:
                await channel.stop()
                logger.info("%s channel stopped", name)
            except Exception as e:
                logger.error("%s channel stop failed: %s", name, e)

    def get_status(self) -> dict[str, dict]:
        """Get status of all channels (for health endpoint)."""
        return {
            name: {
                "running": channel.running,
                "type": type(channel).__name__,
            }
            for name, channel in self.channels.items()
        }
