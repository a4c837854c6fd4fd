"""Shared in-memory fakes for the engine, call-control client and browser channel."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from callbridge.bridge import BridgeController
from callbridge.callcontrol.base import (
    CallControl,
    ConnectResult,
    PermissionRequestOutcome,
    PermissionRequestResult,
    PermissionStatus,
    TerminateResult,
)
from callbridge.channels.base import BrowserChannel, ChannelHub
from callbridge.config import BridgeConfig, TimingConfig
from callbridge.core.errors import EngineError
from callbridge.engine.base import LegObserver, PeerEngine, PeerLeg

BROWSER_OFFER = (
    "v=0\r\n"
    "o=- 4611731400430051336 2 IN IP4 127.0.0.1\r\n"
    "s=-\r\n"
    "t=0 0\r\n"
    "a=group:BUNDLE 0\r\n"
    "m=audio 9 UDP/TLS/RTP/SAVPF 111\r\n"
    "c=IN IP4 0.0.0.0\r\n"
    "a=mid:0\r\n"
    "a=fingerprint:sha-256 AA:BB:CC\r\n"
    "a=setup:actpass\r\n"
    "a=rtpmap:111 opus/48000/2\r\n"
)

PROVIDER_OFFER = (
    "v=0\r\n"
    "o=- 1 2 IN IP4 157.240.0.1\r\n"
    "s=-\r\n"
    "t=0 0\r\n"
    "a=group:BUNDLE audio\r\n"
    "m=audio 3480 UDP/TLS/RTP/SAVPF 111\r\n"
    "c=IN IP4 157.240.0.1\r\n"
    "a=mid:audio\r\n"
    "a=fingerprint:sha-256 DD:EE:FF\r\n"
    "a=rtpmap:111 opus/48000/2\r\n"
)


class FakeTrack:
    def __init__(self, label: str, source: "FakeTrack | None" = None) -> None:
        self.kind = "audio"
        self.label = label
        self.source = source

    def __repr__(self) -> str:
        return f"<FakeTrack {self.label}>"


class FakeLeg(PeerLeg):
    def __init__(self, engine: "FakeEngine", name: str, observer: LegObserver | None) -> None:
        self.engine = engine
        self.name = name
        self.observer = observer or LegObserver()
        self.remote: list[tuple[str, str]] = []
        self.local: list[tuple[str, str]] = []
        self.candidates: list[dict[str, Any]] = []
        self.tracks: list[Any] = []
        self.transceivers: list[tuple[str, str]] = []
        self._state = "new"
        self._closed = False

    def _maybe_fail(self, op: str) -> None:
        if op in self.engine.fail_on:
            raise EngineError(f"[{self.name}] {op} failed")

    async def set_remote_description(self, sdp: str, sdp_type: str = "offer") -> None:
        self._maybe_fail("set_remote_description")
        self.remote.append((sdp, sdp_type))
        track = self.engine.inbound_tracks.get(self.name)
        if track is not None and self.observer.on_track:
            await self.observer.on_track(track)

    async def create_answer(self) -> str:
        self._maybe_fail("create_answer")
        return (
            "v=0\r\n"
            f"o=- {self.name} 2 IN IP4 127.0.0.1\r\n"
            "s=-\r\n"
            "t=0 0\r\n"
            "a=group:BUNDLE 0\r\n"
            "m=audio 9 UDP/TLS/RTP/SAVPF 111\r\n"
            "a=mid:0\r\n"
            "a=setup:actpass\r\n"
        )

    async def create_offer(self) -> str:
        self._maybe_fail("create_offer")
        return f"v=0\r\no=- {self.name} 1 IN IP4 127.0.0.1\r\ns=-\r\nt=0 0\r\nm=audio 9 UDP/TLS/RTP/SAVPF 111\r\n"

    async def set_local_description(self, sdp: str, sdp_type: str = "answer") -> None:
        self._maybe_fail("set_local_description")
        self.local.append((sdp, sdp_type))

    async def add_ice_candidate(self, candidate: dict[str, Any]) -> None:
        self._maybe_fail("add_ice_candidate")
        self.candidates.append(candidate)

    def add_track(self, track: Any) -> None:
        self.tracks.append(track)

    def add_transceiver(self, kind: str = "audio", direction: str = "sendrecv") -> None:
        self.transceivers.append((kind, direction))

    async def wait_ice_gathering(self) -> None:
        if self.engine.ice_never_completes:
            await asyncio.Event().wait()

    @property
    def local_description(self) -> str | None:
        return self.local[-1][0] if self.local else None

    @property
    def connection_state(self) -> str:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        self._closed = True
        self._state = "closed"

    async def report_state(self, state: str) -> None:
        """Simulate a connection-state change from the network."""
        self._state = state
        if self.observer.on_state_change:
            await self.observer.on_state_change(state)


class FakeEngine(PeerEngine):
    def __init__(self) -> None:
        self.legs: list[FakeLeg] = []
        self.fail_on: set[str] = set()
        self.ice_never_completes = False
        # Track each leg reports when its remote offer is applied
        self.inbound_tracks: dict[str, Any] = {"provider": FakeTrack("provider-audio")}
        self.closed = False

    def create_leg(self, name: str, observer: LegObserver | None = None) -> FakeLeg:
        leg = FakeLeg(self, name, observer)
        self.legs.append(leg)
        return leg

    def legs_named(self, name: str) -> list[FakeLeg]:
        return [leg for leg in self.legs if leg.name == name]

    def silent_audio_track(self) -> FakeTrack:
        return FakeTrack("silence")

    def forward(self, track: Any) -> FakeTrack:
        return FakeTrack(f"relay:{track.label}", source=track)

    async def close(self) -> None:
        self.closed = True


class FakeCallControl(CallControl):
    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple]] = []
        self.connect_results: list[ConnectResult] = []
        self.pre_accept_result = True
        self.accept_result = True
        self.pre_accept_gate: asyncio.Event | None = None
        self.terminate_gate: asyncio.Event | None = None
        self.permission = PermissionStatus.GRANTED
        self.request_result = PermissionRequestResult(
            outcome=PermissionRequestOutcome.SENT,
            message_id="wamid.request",
        )
        self.closed = False

    def called(self, name: str) -> list[tuple]:
        return [args for method, args in self.calls if method == name]

    async def connect_call(self, target: str, offer_sdp: str) -> ConnectResult:
        self.calls.append(("connect_call", (target, offer_sdp)))
        if self.connect_results:
            return self.connect_results.pop(0)
        return ConnectResult(success=True, call_id="wacid.out")

    async def pre_accept(self, call_id: str, answer_sdp: str) -> bool:
        self.calls.append(("pre_accept", (call_id, answer_sdp)))
        if self.pre_accept_gate is not None:
            await self.pre_accept_gate.wait()
        return self.pre_accept_result

    async def accept(self, call_id: str, answer_sdp: str) -> bool:
        self.calls.append(("accept", (call_id, answer_sdp)))
        return self.accept_result

    async def reject(self, call_id: str) -> TerminateResult:
        self.calls.append(("reject", (call_id,)))
        return TerminateResult(success=True)

    async def terminate(self, call_id: str) -> TerminateResult:
        self.calls.append(("terminate", (call_id,)))
        if self.terminate_gate is not None:
            await self.terminate_gate.wait()
        return TerminateResult(success=True)

    async def request_permission(self, target: str) -> PermissionRequestResult:
        self.calls.append(("request_permission", (target,)))
        return self.request_result

    async def check_permission(self, target: str, probe_sdp: str) -> PermissionStatus:
        self.calls.append(("check_permission", (target, probe_sdp)))
        return self.permission

    async def close(self) -> None:
        self.closed = True


class FakeChannel(BrowserChannel):
    def __init__(self, channel_id: str | None = None) -> None:
        super().__init__(channel_id)
        self.sent: list[tuple[str, Any]] = []
        self.connected = True
        self.send_gate: asyncio.Event | None = None

    async def send(self, event: str, data: Any = None) -> None:
        if not self.connected:
            raise ConnectionError("Channel closed")
        self.sent.append((event, data))
        if self.send_gate is not None:
            await self.send_gate.wait()

    def is_connected(self) -> bool:
        return self.connected

    def events(self, name: str) -> list[Any]:
        return [data for event, data in self.sent if event == name]

    @property
    def event_names(self) -> list[str]:
        return [event for event, _ in self.sent]


@pytest.fixture
def config() -> BridgeConfig:
    return BridgeConfig(
        timing=TimingConfig(
            provider_track_wait=0.05,
            ice_gathering_wait=0.05,
            accept_delay=0,
            offer_grace=0,
            permission_probe_delay=0,
            auto_call_delay=0,
            auto_call_retry_delay=0,
        )
    )


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def call_control() -> FakeCallControl:
    return FakeCallControl()


@pytest.fixture
def hub() -> ChannelHub:
    return ChannelHub()


@pytest.fixture
def channel(hub: ChannelHub) -> FakeChannel:
    ch = FakeChannel("browser-1")
    hub.add(ch)
    return ch


@pytest.fixture
def controller(config, engine, call_control, hub) -> BridgeController:
    return BridgeController(config, engine, call_control, hub)


async def drain_session_tasks(controller: BridgeController) -> None:
    """Wait for the current session's background tasks, including ones they spawn."""
    for _ in range(5):
        session = controller.sessions.peek()
        tasks = [t for t in (session._tasks if session else []) if not t.done()]
        if not tasks:
            return
        await asyncio.gather(*tasks, return_exceptions=True)
