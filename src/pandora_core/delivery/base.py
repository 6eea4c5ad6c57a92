"""
Delivery channel interface and registry.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from ..errors import ConfigurationError, ErrorCode
from .chunking import chunk_text

logger = logging.getLogger(__name__)


class DeliveryChannel(ABC):
    """
    A notification sink with a per-message size limit.

    Implementations raise ``DeliveryError`` when a message cannot be posted.
    """

    name: str = "channel"
    max_message_chars: int = 3000

    @abstractmethod
    async def post_text(self, text: str, *, target: str | None = None) -> None:
        """Post one plain-text message no longer than ``max_message_chars``."""
        ...

    @abstractmethod
    async def post_blocks(self, blocks: list[dict[str, Any]], *, target: str | None = None) -> None:
        """Post one structured (block) message."""
        ...

    async def deliver(self, text: str, *, title: str | None = None, target: str | None = None) -> int:
        """
        Chunk ``text`` to the channel limit and post every chunk in order.

        Returns:
            Number of messages posted
        """
        if title:
            text = f"*{title}*\n\n{text}"
        chunks = chunk_text(text, self.max_message_chars)
        for chunk in chunks:
            await self.post_text(chunk, target=target)
        return len(chunks)

    async def close(self) -> None:
        """Release network resources, if any."""


class ChannelRegistry:
    """
    Delivery channels keyed by name.

    Example:
        ```python
        channels = ChannelRegistry()
        channels.register(SlackWebhookChannel(url))
        channel = channels.get("slack")
        ```
    """

    def __init__(self, channels: list[DeliveryChannel] | None = None) -> None:
        self._channels: dict[str, DeliveryChannel] = {}
        for channel in channels or []:
            self.register(channel)

    def register(self, channel: DeliveryChannel, name: str | None = None) -> ChannelRegistry:
        key = name or channel.name
        if key in self._channels:
            logger.warning(f"Replacing delivery channel '{key}'")
        self._channels[key] = channel
        return self

    def get(self, name: str) -> DeliveryChannel:
        """
        Raises:
            ConfigurationError: If no channel is registered under ``name``
        """
        channel = self._channels.get(name)
        if channel is None:
            raise ConfigurationError(f"Unknown delivery channel: {name}", code=ErrorCode.INVALID_CONFIG)
        return channel

    def __contains__(self, name: str) -> bool:
        return name in self._channels

    async def close(self) -> None:
        for channel in self._channels.values():
            await channel.close()


__all__ = ["DeliveryChannel", "ChannelRegistry"]
