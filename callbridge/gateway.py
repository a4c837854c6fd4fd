"""Signaling gateway.

Translates browser messages and provider webhook bodies into
:class:`~callbridge.bridge.BridgeController` calls. It holds no call state
of its own.

Browser messages are JSON objects ``{"event": name, "data": payload}``.
Payloads may be the bare value (``"v=0..."`` for an offer, ``"abc123"`` for
a call id) or an object with named fields.
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from callbridge.bridge import BridgeController
from callbridge.channels.base import BrowserChannel, ChannelHub
from callbridge.channels.websocket import WebSocketChannel
from callbridge.webhooks import parse_webhook


def _field(data: Any, *names: str) -> Any:
    """Pick the first present field from a dict payload, or the payload itself."""
    if isinstance(data, dict):
        for name in names:
            if data.get(name) is not None:
                return data[name]
        return None
    return data


class SignalingGateway:
    """Routes browser and webhook input to the bridge controller."""

    def __init__(self, controller: BridgeController, hub: ChannelHub | None = None) -> None:
        self.controller = controller
        self.hub = hub or controller.hub
        self._routes = {
            "offer": self._on_offer,
            "browser-offer": self._on_offer,
            "candidate": self._on_candidate,
            "browser-candidate": self._on_candidate,
            "accept-call": self._on_accept,
            "reject-call": self._on_reject,
            "terminate-call": self._on_terminate,
            "initiate-call": self._on_initiate,
            "smart-call": self._on_initiate,
        }

    # ------------------------------------------------------------------
    # Browser side
    # ------------------------------------------------------------------

    async def connect(self, channel: BrowserChannel) -> None:
        self.hub.add(channel)

    async def disconnect(self, channel: BrowserChannel) -> None:
        self.hub.remove(channel)
        await self.controller.handle_disconnect(channel)

    async def serve(self, channel: WebSocketChannel) -> None:
        """Pump messages from one WebSocket channel until it closes."""
        await self.connect(channel)
        try:
            while True:
                message = await channel.recv()
                if message is None:
                    break
                await self.handle_message(channel, message)
        finally:
            logger.info(f"Browser channel {channel.channel_id} closed")
            await self.disconnect(channel)

    async def handle_message(self, channel: BrowserChannel, message: dict[str, Any]) -> None:
        event = message.get("event")
        handler = self._routes.get(event)
        if handler is None:
            logger.warning(f"Unknown browser event from {channel.channel_id}: {event!r}")
            return
        try:
            await handler(channel, message.get("data"))
        except Exception as e:
            logger.exception(f"Error handling '{event}' from {channel.channel_id}: {e}")

    async def _on_offer(self, channel: BrowserChannel, data: Any) -> None:
        offer_sdp = _field(data, "sdp")
        call_id = _field(data, "callId", "call_id") if isinstance(data, dict) else None
        if not isinstance(offer_sdp, str):
            logger.warning(f"Malformed offer from {channel.channel_id}")
            return
        await self.controller.handle_browser_offer(channel, offer_sdp, call_id)

    async def _on_candidate(self, channel: BrowserChannel, data: Any) -> None:
        candidate = _field(data, "candidate")
        if isinstance(candidate, dict):
            # {"candidate": {candidate, sdpMid, sdpMLineIndex}}
            data = candidate
        if not isinstance(data, dict):
            logger.warning(f"Malformed candidate from {channel.channel_id}")
            return
        await self.controller.handle_browser_candidate(channel, data)

    async def _on_accept(self, channel: BrowserChannel, data: Any) -> None:
        await self.controller.handle_accept_call(channel, _field(data, "callId", "call_id"))

    async def _on_reject(self, channel: BrowserChannel, data: Any) -> None:
        await self.controller.handle_reject_call(channel, _field(data, "callId", "call_id"))

    async def _on_terminate(self, channel: BrowserChannel, data: Any) -> None:
        await self.controller.handle_terminate_call(channel, _field(data, "callId", "call_id"))

    async def _on_initiate(self, channel: BrowserChannel, data: Any) -> None:
        target = _field(data, "phoneNumber", "phone_number", "target")
        await self.controller.handle_initiate_call(channel, str(target or ""))

    # ------------------------------------------------------------------
    # Provider side
    # ------------------------------------------------------------------

    async def handle_webhook(self, payload: Any) -> int:
        """Dispatch every event in a webhook body. Returns the number handled.

        Never raises: the provider must always get a 200.
        """
        try:
            events = parse_webhook(payload)
        except Exception as e:
            logger.exception(f"Unparseable webhook payload: {e}")
            return 0

        handled = 0
        for event in events:
            try:
                await self.controller.handle_webhook_event(event)
                handled += 1
            except Exception as e:
                logger.exception(f"Error processing webhook event {event.event_type.value}: {e}")
        return handled
