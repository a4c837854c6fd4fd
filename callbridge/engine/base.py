"""Capability interface over a WebRTC peer-connection engine.

The bridge never touches a concrete WebRTC library. It asks a
:class:`PeerEngine` for legs, drives them through the :class:`PeerLeg`
methods, and learns about candidates, state changes and inbound media
through a :class:`LegObserver`.

Lifecycle of a leg:
    1. engine.create_leg(name, observer) -- synchronous, so the caller can
       register the handle before the first suspension point
    2. set_remote_description / create_answer / set_local_description
       (or create_offer for outbound calls)
    3. add_track / add_ice_candidate while the call is live
    4. close() -- a closed leg is never reused
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

CandidateCallback = Callable[[dict[str, Any]], Awaitable[None]]
StateCallback = Callable[[str], Awaitable[None]]
TrackCallback = Callable[[Any], Awaitable[None]]

# Connection states after which a leg cannot carry media any more
TERMINAL_STATES = ("failed", "closed")


@dataclass
class IceServer:
    """A STUN/TURN server for NAT traversal."""

    urls: str | list[str]
    username: str | None = None
    credential: str | None = None


@dataclass
class LegObserver:
    """Callbacks a leg invokes as its peer connection evolves.

    All callbacks are optional coroutines.
    """

    on_candidate: CandidateCallback | None = None
    on_state_change: StateCallback | None = None
    on_track: TrackCallback | None = None


class PeerLeg(ABC):
    """One side's peer connection (browser or provider)."""

    name: str = ""

    @abstractmethod
    async def set_remote_description(self, sdp: str, sdp_type: str = "offer") -> None:
        """Apply a remote offer or answer."""
        ...

    @abstractmethod
    async def create_answer(self) -> str:
        """Produce a local answer to the applied remote offer."""
        ...

    @abstractmethod
    async def create_offer(self) -> str:
        """Produce a local offer."""
        ...

    @abstractmethod
    async def set_local_description(self, sdp: str, sdp_type: str = "answer") -> None:
        """Apply a local offer or answer."""
        ...

    @abstractmethod
    async def add_ice_candidate(self, candidate: dict[str, Any]) -> None:
        """Apply a remote candidate ({candidate, sdpMid, sdpMLineIndex})."""
        ...

    @abstractmethod
    def add_track(self, track: Any) -> None:
        """Send a media track on this leg."""
        ...

    @abstractmethod
    def add_transceiver(self, kind: str = "audio", direction: str = "sendrecv") -> None:
        """Reserve a media section before creating an offer."""
        ...

    @abstractmethod
    async def wait_ice_gathering(self) -> None:
        """Return once candidate gathering has completed (unbounded)."""
        ...

    @property
    @abstractmethod
    def local_description(self) -> str | None:
        """The current local SDP, if any."""
        ...

    @property
    @abstractmethod
    def connection_state(self) -> str:
        """Connection state (new, connecting, connected, failed, closed...)."""
        ...

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the peer connection. Safe to call more than once."""
        ...


class PeerEngine(ABC):
    """Factory for legs and the media helpers the bridge needs."""

    @abstractmethod
    def create_leg(self, name: str, observer: LegObserver | None = None) -> PeerLeg:
        """Create a new leg. Must not suspend."""
        ...

    @abstractmethod
    def silent_audio_track(self) -> Any:
        """A placeholder audio source producing silence."""
        ...

    @abstractmethod
    def forward(self, track: Any) -> Any:
        """Return a track that re-emits ``track`` so it can be sent on another leg."""
        ...

    async def close(self) -> None:
        """Release engine-wide resources."""
        return None
