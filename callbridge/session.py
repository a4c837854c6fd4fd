"""Call session management for CallBridge.

The server bridges at most one call at a time, so the store holds a single
:class:`CallSession` slot rather than a collection. The store owns every
peer-connection leg attached to the session and releases them on
:meth:`SessionStore.reset`, whatever the exit path.

Every reset bumps a generation counter. Asynchronous work started for a
session remembers the generation it belongs to and becomes a no-op once
the session has been superseded.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from callbridge.channels.base import BrowserChannel
from callbridge.core.events import BridgeState
from callbridge.engine.base import PeerLeg

LEG_ROLES = ("browser", "provider", "offer")


@dataclass
class CallSession:
    """State of the single in-flight call.

    Each call has:
    - two session descriptions (browser offer, provider offer)
    - up to three legs (browser, provider, and the offer leg of an outbound call)
    - a back-reference to the browser channel driving it
    - the provider's call identifier
    """

    # Unique session identifier
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    generation: int = 0

    # Call identifier from the provider
    call_id: str = ""

    # Session descriptions, present only once received
    browser_offer: str | None = None
    provider_offer: str | None = None

    # Legs owned by the session
    browser_leg: PeerLeg | None = None
    provider_leg: PeerLeg | None = None
    offer_leg: PeerLeg | None = None

    # Browser side of this call (not owned)
    browser_channel: BrowserChannel | None = None

    # Lifecycle
    state: BridgeState = BridgeState.IDLE
    in_progress: bool = False
    pre_accepted: bool = False
    accept_confirmed: bool = False

    # Call metadata
    direction: str = "inbound"
    target: str = ""
    caller_id: str = ""
    caller_name: str = ""

    # Media
    browser_tracks: list[Any] = field(default_factory=list)
    provider_track: Any | None = None
    _provider_track_ready: asyncio.Future | None = None
    pending_browser_candidates: list[dict[str, Any]] = field(default_factory=list)
    browser_remote_applied: bool = False

    created_at: float = field(default_factory=time.time)
    last_event_at: float = field(default_factory=time.time)

    # Session-scoped background tasks (bridge run, timers)
    _tasks: list[asyncio.Task] = field(default_factory=list)

    def touch(self) -> None:
        self.last_event_at = time.time()

    @property
    def has_both_offers(self) -> bool:
        return bool(self.browser_offer) and bool(self.provider_offer)

    @property
    def ready_to_bridge(self) -> bool:
        return self.has_both_offers and self.browser_channel is not None

    @property
    def busy(self) -> bool:
        """A call is bridging or live, or an outbound call is ringing."""
        return self.in_progress or self.offer_leg is not None

    @property
    def legs(self) -> list[PeerLeg]:
        return [leg for leg in (self.browser_leg, self.provider_leg, self.offer_leg) if leg is not None]

    @property
    def provider_track_ready(self) -> asyncio.Future:
        """Future resolved with the provider leg's first inbound track."""
        if self._provider_track_ready is None:
            self._provider_track_ready = asyncio.get_running_loop().create_future()
        return self._provider_track_ready

    def set_provider_track(self, track: Any) -> None:
        if self.provider_track is not None:
            return
        self.provider_track = track
        fut = self.provider_track_ready
        if not fut.done():
            fut.set_result(track)

    @property
    def duration_ms(self) -> int:
        return int((time.time() - self.created_at) * 1000)

    def snapshot(self) -> dict[str, Any]:
        """Diagnostic view used by the status endpoint."""
        return {
            "session_id": self.session_id,
            "generation": self.generation,
            "call_id": self.call_id,
            "state": self.state.value,
            "in_progress": self.in_progress,
            "pre_accepted": self.pre_accepted,
            "accept_confirmed": self.accept_confirmed,
            "direction": self.direction,
            "target": self.target,
            "has_browser_offer": bool(self.browser_offer),
            "has_provider_offer": bool(self.provider_offer),
            "browser_channel": self.browser_channel.channel_id if self.browser_channel else None,
            "legs": {leg.name: leg.connection_state for leg in self.legs},
            "created_at": self.created_at,
            "last_event_at": self.last_event_at,
        }


class SessionStore:
    """Single-slot store for the in-flight call session.

    Only the bridge controller writes to it. A session is created lazily by
    :meth:`get` and destroyed by :meth:`reset`.
    """

    def __init__(self) -> None:
        self._session: CallSession | None = None
        self._generation = 0

    def get(self) -> CallSession:
        """Return the current session, creating it on the first event of a cycle."""
        if self._session is None:
            self._session = CallSession(generation=self._generation)
            logger.debug(f"Session created: {self._session.session_id} (generation {self._generation})")
        return self._session

    def peek(self) -> CallSession | None:
        """Return the current session without creating one."""
        return self._session

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def state(self) -> BridgeState:
        return self._session.state if self._session else BridgeState.IDLE

    @property
    def in_progress(self) -> bool:
        return bool(self._session and self._session.in_progress)

    @property
    def busy(self) -> bool:
        return bool(self._session and self._session.busy)

    def is_current(self, generation: int) -> bool:
        return self._session is not None and self._session.generation == generation

    # ------------------------------------------------------------------
    # Field setters
    # ------------------------------------------------------------------

    def set_browser_offer(self, sdp: str) -> None:
        session = self.get()
        session.browser_offer = sdp
        session.touch()

    def set_provider_offer(self, sdp: str) -> None:
        session = self.get()
        session.provider_offer = sdp
        session.touch()

    def set_call_id(self, call_id: str) -> None:
        session = self.get()
        if session.call_id and session.call_id != call_id:
            logger.info(f"Call id changed: {session.call_id} -> {call_id}")
        session.call_id = call_id
        session.touch()

    def set_browser_channel(self, channel: BrowserChannel) -> None:
        session = self.get()
        session.browser_channel = channel
        session.touch()

    def clear_browser_channel(self) -> None:
        if self._session:
            self._session.browser_channel = None
            self._session.touch()

    def set_state(self, state: BridgeState) -> BridgeState:
        """Move to ``state``; returns the previous state."""
        session = self.get()
        old = session.state
        session.state = state
        session.in_progress = state in (BridgeState.BRIDGING, BridgeState.ACTIVE, BridgeState.TERMINATING)
        session.touch()
        if old != state:
            logger.info(f"Bridge state: {old.value} -> {state.value} (call {session.call_id or '-'})")
        return old

    def attach_leg(self, role: str, leg: PeerLeg) -> None:
        """Register a leg with the session so reset() releases it."""
        if role not in LEG_ROLES:
            raise ValueError(f"Unknown leg role: {role}")
        if leg.closed:
            raise ValueError(f"Refusing to attach closed leg '{leg.name}'")
        session = self.get()
        current = getattr(session, f"{role}_leg")
        if current is not None and current is not leg:
            raise ValueError(f"Session already has a {role} leg")
        setattr(session, f"{role}_leg", leg)

    def clear_offers(self) -> None:
        if self._session:
            self._session.browser_offer = None
            self._session.provider_offer = None
            logger.debug("Stored offers cleared")

    def add_task(self, task: asyncio.Task) -> None:
        session = self.get()
        session._tasks = [t for t in session._tasks if not t.done()]
        session._tasks.append(task)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def reset(self, reason: str = "reset") -> CallSession | None:
        """Destroy the current session and release everything it owns.

        Returns the session that was reset, or None if the slot was empty.
        """
        session = self._session
        self._generation += 1
        self._session = None
        if session is None:
            return None

        session.in_progress = False
        session.state = BridgeState.IDLE

        current = asyncio.current_task()
        for task in session._tasks:
            if task is not current and not task.done():
                task.cancel()
        session._tasks.clear()

        fut = session._provider_track_ready
        if fut is not None and not fut.done():
            fut.cancel()

        for leg in session.legs:
            try:
                await leg.close()
            except Exception as e:
                logger.error(f"Error closing leg '{leg.name}': {e}")

        logger.info(
            f"Session reset: {session.session_id} call={session.call_id or '-'} "
            f"reason={reason} (duration: {session.duration_ms}ms)"
        )
        return session
