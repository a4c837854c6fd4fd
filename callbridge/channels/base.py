"""Browser signaling channels.

A channel is one connected browser. It only knows how to deliver named
events; the :class:`ChannelHub` keeps track of every connected channel so
provider-wide notifications (permission updates, hangups) can be broadcast.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from typing import Any

from loguru import logger

from callbridge.core.events import BrowserEvent


class BrowserChannel(ABC):
    """Abstract base class for a browser-side signaling connection."""

    def __init__(self, channel_id: str | None = None) -> None:
        self.channel_id = channel_id or uuid.uuid4().hex[:12]

    @abstractmethod
    async def send(self, event: str, data: Any = None) -> None:
        """Deliver one named event to the browser.

        Raises:
            ConnectionError: If the channel is no longer connected.
        """
        ...

    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the browser is still connected."""
        ...

    async def emit(self, event: BrowserEvent | str, data: Any = None) -> bool:
        """Send an event, logging instead of raising on a dead channel."""
        name = event.value if isinstance(event, BrowserEvent) else event
        if not self.is_connected():
            logger.warning(f"Channel {self.channel_id} disconnected, dropping '{name}'")
            return False
        try:
            await self.send(name, data)
            return True
        except Exception as e:
            logger.warning(f"Failed to send '{name}' to channel {self.channel_id}: {e}")
            return False

    async def close(self) -> None:
        """Close the channel from the server side."""
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.channel_id}>"


class ChannelHub:
    """Registry of connected browser channels."""

    def __init__(self) -> None:
        self._channels: dict[str, BrowserChannel] = {}

    def add(self, channel: BrowserChannel) -> None:
        self._channels[channel.channel_id] = channel
        logger.info(f"Browser channel connected: {channel.channel_id} (total: {self.count})")

    def remove(self, channel: BrowserChannel) -> None:
        if self._channels.pop(channel.channel_id, None) is not None:
            logger.info(f"Browser channel removed: {channel.channel_id} (total: {self.count})")

    def get(self, channel_id: str) -> BrowserChannel | None:
        return self._channels.get(channel_id)

    @property
    def count(self) -> int:
        return len(self._channels)

    @property
    def all_channels(self) -> list[BrowserChannel]:
        return list(self._channels.values())

    async def broadcast(
        self,
        event: BrowserEvent | str,
        data: Any = None,
        exclude: BrowserChannel | None = None,
    ) -> int:
        """Send an event to every channel. Returns the number delivered."""
        delivered = 0
        for channel in self.all_channels:
            if channel is exclude:
                continue
            if await channel.emit(event, data):
                delivered += 1
        return delivered
