"""aiortc-backed implementation of the peer-connection engine.

aiortc gathers all candidates while the local description is applied, so
local candidates travel inside the SDP and ``on_candidate`` is never fired
by this engine. Remote candidates (browser trickle) are still applied.
"""

from __future__ import annotations

import asyncio
from typing import Any

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaRelay
from aiortc.mediastreams import AudioStreamTrack
from aiortc.sdp import candidate_from_sdp
from loguru import logger

from callbridge.core.errors import EngineError
from callbridge.engine.base import IceServer, LegObserver, PeerEngine, PeerLeg


class AiortcLeg(PeerLeg):
    """A :class:`PeerLeg` wrapping one ``RTCPeerConnection``."""

    def __init__(
        self,
        name: str,
        configuration: RTCConfiguration,
        observer: LegObserver | None = None,
    ) -> None:
        self.name = name
        self._observer = observer or LegObserver()
        self._pc = RTCPeerConnection(configuration=configuration)
        self._closed = False
        self._gathered = asyncio.Event()

        @self._pc.on("track")
        async def on_track(track):
            logger.info(f"[{self.name}] Inbound {track.kind} track: {track.id}")
            if self._observer.on_track:
                await self._observer.on_track(track)

        @self._pc.on("connectionstatechange")
        async def on_connection_state_change():
            state = self._pc.connectionState
            logger.info(f"[{self.name}] Connection state: {state}")
            if self._observer.on_state_change:
                await self._observer.on_state_change(state)

        @self._pc.on("icegatheringstatechange")
        def on_ice_gathering_state_change():
            logger.debug(f"[{self.name}] ICE gathering state: {self._pc.iceGatheringState}")
            if self._pc.iceGatheringState == "complete":
                self._gathered.set()

    async def set_remote_description(self, sdp: str, sdp_type: str = "offer") -> None:
        try:
            await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=sdp_type))
        except Exception as e:
            raise EngineError(f"[{self.name}] setRemoteDescription failed: {e}") from e

    async def create_answer(self) -> str:
        try:
            answer = await self._pc.createAnswer()
        except Exception as e:
            raise EngineError(f"[{self.name}] createAnswer failed: {e}") from e
        return answer.sdp

    async def create_offer(self) -> str:
        try:
            offer = await self._pc.createOffer()
        except Exception as e:
            raise EngineError(f"[{self.name}] createOffer failed: {e}") from e
        return offer.sdp

    async def set_local_description(self, sdp: str, sdp_type: str = "answer") -> None:
        try:
            await self._pc.setLocalDescription(RTCSessionDescription(sdp=sdp, type=sdp_type))
        except Exception as e:
            raise EngineError(f"[{self.name}] setLocalDescription failed: {e}") from e

    async def add_ice_candidate(self, candidate: dict[str, Any]) -> None:
        raw = (candidate.get("candidate") or "").strip()
        if not raw:
            # End-of-candidates marker
            return
        if raw.startswith("candidate:"):
            raw = raw[len("candidate:"):]
        try:
            ice = candidate_from_sdp(raw)
            ice.sdpMid = candidate.get("sdpMid")
            ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
            await self._pc.addIceCandidate(ice)
        except Exception as e:
            raise EngineError(f"[{self.name}] addIceCandidate failed: {e}") from e

    def add_track(self, track: Any) -> None:
        self._pc.addTrack(track)

    def add_transceiver(self, kind: str = "audio", direction: str = "sendrecv") -> None:
        self._pc.addTransceiver(kind, direction=direction)

    async def wait_ice_gathering(self) -> None:
        if self._pc.iceGatheringState == "complete":
            return
        await self._gathered.wait()

    @property
    def local_description(self) -> str | None:
        desc = self._pc.localDescription
        return desc.sdp if desc else None

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._pc.close()
        logger.info(f"[{self.name}] Peer connection closed")


class AiortcEngine(PeerEngine):
    """Creates aiortc legs sharing one ICE configuration and media relay."""

    def __init__(self, ice_servers: list[IceServer] | None = None) -> None:
        self._configuration = RTCConfiguration(
            iceServers=[
                RTCIceServer(urls=s.urls, username=s.username, credential=s.credential)
                for s in (ice_servers or [])
            ]
        )
        self._relay = MediaRelay()

    def create_leg(self, name: str, observer: LegObserver | None = None) -> AiortcLeg:
        leg = AiortcLeg(name, self._configuration, observer)
        logger.debug(f"Created peer connection for leg '{name}'")
        return leg

    def silent_audio_track(self) -> AudioStreamTrack:
        # The base AudioStreamTrack emits 20ms frames of silence
        return AudioStreamTrack()

    def forward(self, track: Any) -> Any:
        return self._relay.subscribe(track)
