"""WebSocket browser channel.

Wraps an accepted FastAPI/Starlette WebSocket. Messages are JSON objects of
the form ``{"event": "<name>", "data": <payload>}`` in both directions.
"""

from __future__ import annotations

import json
from typing import Any

from loguru import logger

from callbridge.channels.base import BrowserChannel


class WebSocketChannel(BrowserChannel):
    """Adapter making a FastAPI WebSocket usable as a :class:`BrowserChannel`."""

    def __init__(self, websocket: Any, channel_id: str | None = None) -> None:
        super().__init__(channel_id)
        self._ws = websocket
        self._connected = True

    async def send(self, event: str, data: Any = None) -> None:
        if not self._connected:
            raise ConnectionError("Channel closed")
        await self._ws.send_text(json.dumps({"event": event, "data": data}))

    async def recv(self) -> dict[str, Any] | None:
        """Receive the next decoded message, or None when the peer went away."""
        msg = await self._ws.receive()
        if msg.get("type") == "websocket.disconnect":
            self._connected = False
            return None
        text = msg.get("text")
        if text is None and msg.get("bytes") is not None:
            text = msg["bytes"].decode("utf-8", errors="replace")
        if text is None:
            return {}
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON from channel {self.channel_id}: {text[:100]}")
            return {}
        return decoded if isinstance(decoded, dict) else {}

    def is_connected(self) -> bool:
        return self._connected

    async def close(self) -> None:
        if not self._connected:
            return
        self._connected = False
        try:
            await self._ws.close()
        except RuntimeError:
            # Already closed by the peer
            pass
