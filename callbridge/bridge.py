"""CallBridge - the call bridge state machine.

The BridgeController is the heart of the server. It wires together:
- the browser side (signaling channels)
- the provider side (webhook events in, call-control actions out)
- the WebRTC engine that owns both peer-connection legs
- the single-slot session store
- the permission gate for outbound calls

States::

    IDLE -> AWAITING_OFFERS -> BRIDGING -> ACTIVE -> TERMINATING -> IDLE
                                   \\-> ERROR -> IDLE

Every public entry point takes one lock, so there is a single writer of the
session at a time. Negotiation runs as a session-scoped task outside the
lock; it touches the session only between suspension points and only after
confirming the session generation it was started for.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger

from callbridge import sdp
from callbridge.callcontrol.base import CallControl, ConnectResult, PermissionRequestOutcome
from callbridge.channels.base import BrowserChannel, ChannelHub
from callbridge.config import BridgeConfig
from callbridge.core.errors import (
    CallControlError,
    CallFailure,
    EngineError,
    FailureKind,
    SdpError,
    SessionSuperseded,
    classify_failure,
    line_busy_failure,
)
from callbridge.core.events import (
    BridgeState,
    BrowserEvent,
    CallConnect,
    CallTerminate,
    CustomEvent,
    MessageStatus,
    PermissionUpdate,
    WebhookEvent,
)
from callbridge.engine.base import TERMINAL_STATES, LegObserver, PeerEngine, PeerLeg
from callbridge.permissions import PermissionGate, SmartCallOutcome, SmartCallResult, normalize_target
from callbridge.session import CallSession, SessionStore

# Type for event handler callbacks
EventHandler = Callable[..., Awaitable[Any]]

_NOTIFIED_MESSAGE_STATUSES = ("delivered", "read")


class BridgeController:
    """Bridges one browser call leg with one provider call leg.

    Usage:
        controller = BridgeController(config, engine, call_control, hub)

        @controller.on_state_change
        async def log_state(session, old, new):
            print(f"{old.value} -> {new.value}")

        @controller.on_call_ended
        async def done(session, reason):
            print(f"Call {session.call_id} ended: {reason}")

    Handlers must not call back into the controller's entry points.
    """

    def __init__(
        self,
        config: BridgeConfig,
        engine: PeerEngine,
        call_control: CallControl,
        hub: ChannelHub | None = None,
    ) -> None:
        self.config = config
        self.timing = config.timing
        self.engine = engine
        self.call_control = call_control
        self.hub = hub or ChannelHub()
        self.sessions = SessionStore()
        self.permissions = PermissionGate(
            call_control,
            engine,
            probe_delay=self.timing.permission_probe_delay,
        )

        self._lock = asyncio.Lock()
        self._bridge_task: asyncio.Task | None = None

        # Event handlers
        self._handlers: dict[str, list[EventHandler]] = {
            "on_state_change": [],
            "on_call_ended": [],
        }

    # ------------------------------------------------------------------
    # Decorator API for event handlers
    # ------------------------------------------------------------------

    def on_state_change(self, fn: EventHandler) -> EventHandler:
        """Register a handler for state transitions.

        The handler receives (session: CallSession, old: BridgeState, new: BridgeState).
        """
        self._handlers["on_state_change"].append(fn)
        return fn

    def on_call_ended(self, fn: EventHandler) -> EventHandler:
        """Register a handler for ended calls.

        The handler receives (session: CallSession, reason: str).
        """
        self._handlers["on_call_ended"].append(fn)
        return fn

    async def _fire(self, name: str, *args: Any) -> None:
        for handler in self._handlers[name]:
            try:
                await handler(*args)
            except Exception as e:
                logger.error(f"{name} handler error: {e}")

    async def _set_state(self, state: BridgeState) -> None:
        session = self.sessions.get()
        old = self.sessions.set_state(state)
        if old != state:
            await self._fire("on_state_change", session, old, state)

    # ------------------------------------------------------------------
    # Browser entry points
    # ------------------------------------------------------------------

    async def handle_browser_offer(
        self,
        channel: BrowserChannel,
        offer_sdp: str,
        call_id: str | None = None,
    ) -> None:
        """Store the browser's offer and bridge if the provider offer is present."""
        async with self._lock:
            if not offer_sdp or not offer_sdp.strip():
                logger.warning(f"Empty offer from channel {channel.channel_id} ignored")
                return
            if self.sessions.in_progress:
                logger.warning(
                    f"Browser offer from {channel.channel_id} ignored: "
                    f"call {self.sessions.get().call_id or '-'} already in progress"
                )
                return

            logger.info(f"Browser offer from {channel.channel_id}: {sdp.summarize(offer_sdp)}")
            logger.debug(f"Browser offer media lines: {sdp.media_lines(offer_sdp)}")
            self.sessions.set_browser_offer(offer_sdp)
            self.sessions.set_browser_channel(channel)
            if call_id:
                self.sessions.set_call_id(call_id)
            if self.sessions.state == BridgeState.IDLE:
                await self._set_state(BridgeState.AWAITING_OFFERS)
            await self._try_start_bridge()

    async def handle_browser_candidate(self, channel: BrowserChannel, candidate: dict[str, Any]) -> None:
        """Apply a browser candidate, or queue it until the browser leg can take it."""
        async with self._lock:
            if not candidate or not candidate.get("candidate"):
                logger.debug(f"End-of-candidates from {channel.channel_id}")
                return
            session = self.sessions.peek()
            if session is None:
                logger.warning(f"Candidate from {channel.channel_id} ignored: no active session")
                return
            if session.browser_channel is not None and session.browser_channel is not channel:
                logger.warning(f"Candidate from {channel.channel_id} ignored: not the call's channel")
                return

            leg = session.browser_leg
            if leg is None or not session.browser_remote_applied:
                session.pending_browser_candidates.append(candidate)
                logger.debug(f"Queued browser candidate ({len(session.pending_browser_candidates)} pending)")
                return
            await self._apply_candidate(leg, candidate)

    async def handle_accept_call(self, channel: BrowserChannel, call_id: str | None = None) -> None:
        """The browser accepted an incoming call; bind it and bridge if possible."""
        async with self._lock:
            if self.sessions.in_progress:
                logger.warning(
                    f"accept-call for {call_id or '-'} ignored: "
                    f"call {self.sessions.get().call_id or '-'} already in progress"
                )
                return
            logger.info(f"Browser {channel.channel_id} accepted call {call_id or '-'}")
            self.sessions.set_browser_channel(channel)
            if call_id:
                self.sessions.set_call_id(call_id)
            if self.sessions.state == BridgeState.IDLE:
                await self._set_state(BridgeState.AWAITING_OFFERS)
            await self._try_start_bridge()

    async def handle_reject_call(self, channel: BrowserChannel, call_id: str | None = None) -> None:
        """Decline an incoming call."""
        async with self._lock:
            session = self.sessions.peek()
            target_id = call_id or (session.call_id if session else "")
            if not target_id:
                logger.warning(f"reject-call from {channel.channel_id} without a call id ignored")
                return

            logger.info(f"Browser {channel.channel_id} rejected call {target_id}")
            owns_session = session is not None and session.call_id in ("", target_id)
            if owns_session and session.state != BridgeState.IDLE:
                await self._set_state(BridgeState.TERMINATING)
            try:
                result = await self.call_control.reject(target_id)
                if not result.success:
                    logger.warning(f"Reject for call {target_id} was not confirmed: {result.error or result.data}")
            except Exception as e:
                logger.error(f"Reject for call {target_id} failed: {e}")

            if owns_session:
                await self._reset("rejected")

    async def handle_terminate_call(self, channel: BrowserChannel, call_id: str | None = None) -> None:
        """Hang up the call from the browser side."""
        async with self._lock:
            session = self.sessions.peek()
            target_id = call_id or (session.call_id if session else "")
            owns_session = session is not None and session.call_id in ("", target_id)
            logger.info(f"Browser {channel.channel_id} terminated call {target_id or '-'}")

            if owns_session and session.state != BridgeState.IDLE:
                await self._set_state(BridgeState.TERMINATING)
            if target_id:
                await self._hangup_provider(target_id, reject=False)
            if owns_session:
                await self._reset("browser_terminated")
            elif session is not None:
                logger.warning(f"Terminated call {target_id} is not the active call {session.call_id}")

    async def handle_disconnect(self, channel: BrowserChannel) -> None:
        """A browser channel went away."""
        async with self._lock:
            session = self.sessions.peek()
            if session is None or session.browser_channel is not channel:
                return

            if session.in_progress or session.offer_leg is not None:
                logger.warning(
                    f"Browser {channel.channel_id} disconnected during call {session.call_id or '-'}, terminating"
                )
                await self._set_state(BridgeState.TERMINATING)
                if session.call_id:
                    await self._hangup_provider(session.call_id, reject=False)
                await self._reset("browser_disconnected")
                return

            # The offer belonged to the departed peer; a provider offer can
            # still be picked up by another browser.
            logger.info(f"Browser {channel.channel_id} disconnected before bridging")
            self.sessions.clear_browser_channel()
            session.browser_offer = None
            session.pending_browser_candidates.clear()

    async def handle_initiate_call(self, channel: BrowserChannel, target: str) -> SmartCallResult | None:
        """Outbound call request: call directly with permission, otherwise ask for it."""
        target = normalize_target(target)
        if not target:
            await channel.emit(
                BrowserEvent.CALL_FAILED,
                CallFailure(message="A phone number is required").to_payload(),
            )
            return None

        async with self._lock:
            if self.sessions.busy:
                logger.warning(
                    f"Outbound call to {target} rejected: call {self.sessions.get().call_id or '-'} already on the line"
                )
                await channel.emit(BrowserEvent.CALL_FAILED, line_busy_failure().to_payload())
                return None
            self.sessions.set_browser_channel(channel)
            session = self.sessions.get()
            session.direction = "outbound"
            session.target = target

        await channel.emit(BrowserEvent.CALL_STATUS, f"Checking call permission for {target}...")
        result = await self.permissions.smart_call(target, self.place_call)

        if result.outcome == SmartCallOutcome.PERMISSION_REQUESTED:
            await channel.emit(BrowserEvent.PERMISSION_NEEDED, {"phoneNumber": target})
            request = result.permission_request
            if request is not None and request.sent:
                await channel.emit(
                    BrowserEvent.PERMISSION_REQUEST_SENT,
                    {"phoneNumber": target, "messageId": request.message_id},
                )
            else:
                await channel.emit(
                    BrowserEvent.PERMISSION_REQUEST_FAILED,
                    {
                        "phoneNumber": target,
                        "error": request.error if request else "Unknown error",
                        "rateLimited": bool(request and request.outcome == PermissionRequestOutcome.RATE_LIMITED),
                        "retryAfter": request.retry_after if request else "",
                    },
                )
        return result

    # ------------------------------------------------------------------
    # Outbound calls
    # ------------------------------------------------------------------

    async def place_call(self, target: str) -> ConnectResult:
        """Create a local offer and ask the provider to ring ``target``.

        Emits ``call-initiated`` or a classified ``call-failed`` to the bound
        browser channel (or every channel when none is bound).
        """
        target = normalize_target(target)

        async with self._lock:
            if self.sessions.busy:
                result = ConnectResult(
                    success=False,
                    error="A call is already in progress",
                    local_failure=line_busy_failure(),
                )
                logger.warning(f"Outbound call to {target} rejected: {result.error}")
                await self._notify(self.sessions.peek(), BrowserEvent.CALL_FAILED, result.failure.to_payload())
                return result

            session = self.sessions.get()
            generation = session.generation
            leg = self.engine.create_leg("outbound-offer")
            self.sessions.attach_leg("offer", leg)
            session.direction = "outbound"
            session.target = target

        try:
            offer_sdp = await self._create_outbound_offer(leg)
            self._check_generation(generation)
            result = await self.call_control.connect_call(target, offer_sdp)
        except SessionSuperseded as e:
            logger.warning(f"Outbound call to {target} abandoned: {e}")
            return ConnectResult(success=False, error=str(e))
        except (EngineError, SdpError) as e:
            logger.error(f"Could not prepare offer for {target}: {e}")
            result = ConnectResult(success=False, error=f"Failed to prepare call offer: {e}")

        async with self._lock:
            if not self.sessions.is_current(generation):
                logger.warning(f"Session superseded while calling {target}")
                if result.success and result.call_id:
                    await self._hangup_provider(result.call_id, reject=False)
                return ConnectResult(success=False, error="Call attempt superseded")

            session = self.sessions.get()
            if result.success:
                self.sessions.set_call_id(result.call_id)
                if self.sessions.state == BridgeState.IDLE:
                    await self._set_state(BridgeState.AWAITING_OFFERS)
                await self._notify(
                    session,
                    BrowserEvent.CALL_INITIATED,
                    {"callId": result.call_id, "phoneNumber": target},
                )
            else:
                if session.offer_leg is leg:
                    session.offer_leg = None
                    await leg.close()
                await self._notify(session, BrowserEvent.CALL_FAILED, result.failure.to_payload())
        return result

    async def _create_outbound_offer(self, leg: PeerLeg) -> str:
        leg.add_transceiver("audio", "sendrecv")
        offer = await leg.create_offer()
        await leg.set_local_description(offer, "offer")
        try:
            await asyncio.wait_for(leg.wait_ice_gathering(), timeout=self.timing.ice_gathering_wait)
        except asyncio.TimeoutError:
            logger.warning(
                f"ICE gathering not complete after {self.timing.ice_gathering_wait}s, "
                f"sending offer with the candidates gathered so far"
            )
        return leg.local_description or offer

    # ------------------------------------------------------------------
    # Webhook entry point
    # ------------------------------------------------------------------

    async def handle_webhook_event(self, event: WebhookEvent) -> None:
        """React to one normalized provider event."""
        if isinstance(event, CallConnect):
            await self._on_call_connect(event)
        elif isinstance(event, CallTerminate):
            await self._on_call_terminate(event)
        elif isinstance(event, PermissionUpdate):
            await self._on_permission_update(event)
        elif isinstance(event, MessageStatus):
            await self._on_message_status(event)
        elif isinstance(event, CustomEvent):
            logger.debug(f"Unhandled webhook content: {event.custom_type}")
        else:
            logger.warning(f"Unknown webhook event: {event!r}")

    async def _on_call_connect(self, event: CallConnect) -> None:
        async with self._lock:
            session = self.sessions.peek()
            if self.sessions.in_progress:
                if session.call_id == event.call_id:
                    logger.warning(f"Duplicate connect for call {event.call_id} ignored")
                else:
                    logger.warning(
                        f"Connect for call {event.call_id} rejected: call {session.call_id or '-'} in progress"
                    )
                return
            if not event.offer_sdp:
                logger.warning(f"Connect for call {event.call_id} carries no SDP, ignored")
                return
            if session is not None and session.call_id and session.call_id != event.call_id:
                logger.info(f"Connect for call {event.call_id} replaces pending call {session.call_id}")

            logger.info(
                f"Provider connect: call {event.call_id} from {event.caller_name or 'Unknown'} "
                f"({event.caller_id or 'Unknown'}), offer: {sdp.summarize(event.offer_sdp)}"
            )
            self.sessions.set_provider_offer(event.offer_sdp)
            self.sessions.set_call_id(event.call_id)
            session = self.sessions.get()
            session.caller_id = event.caller_id
            session.caller_name = event.caller_name
            if self.sessions.state == BridgeState.IDLE:
                await self._set_state(BridgeState.AWAITING_OFFERS)
            await self._try_start_bridge()

    async def _on_call_terminate(self, event: CallTerminate) -> None:
        async with self._lock:
            session = self.sessions.peek()
            if session is None:
                logger.info(f"Terminate for call {event.call_id} with no active session")
                return
            if session.call_id and session.call_id != event.call_id:
                logger.warning(f"Terminate for call {event.call_id} ignored: active call is {session.call_id}")
                return

            reason = event.reason or "remote_hangup"
            logger.info(
                f"Provider terminated call {event.call_id}: reason={reason} "
                f"duration={event.duration if event.duration is not None else '-'}s status={event.status or '-'}"
            )
            if session.state != BridgeState.IDLE:
                await self._set_state(BridgeState.TERMINATING)
            await self._notify(
                session,
                BrowserEvent.CALL_ENDED,
                {
                    "callId": event.call_id,
                    "reason": reason,
                    "duration": event.duration,
                    "status": event.status,
                },
            )
            await self._reset(reason)

    async def _on_permission_update(self, event: PermissionUpdate) -> None:
        logger.info(f"Call permission for {event.target}: {event.status}")
        await self.hub.broadcast(
            BrowserEvent.PERMISSION_UPDATE,
            {"phoneNumber": event.target, "status": event.status, "callerName": event.caller_name},
        )
        if not event.granted:
            return

        async with self._lock:
            session = self.sessions.peek()
            channel = session.browser_channel if session else None
            if channel is None:
                logger.info(f"Permission granted by {event.target}, no browser waiting to call")
                return
            if session.busy:
                logger.info(f"Permission granted by {event.target}, another call is on the line")
                return
            task = asyncio.create_task(
                self._auto_call(event.target, session.generation),
                name=f"auto-call-{event.target}",
            )
            self.sessions.add_task(task)

        await channel.emit(BrowserEvent.CALL_STATUS, "Permission granted! Initiating call automatically...")

    async def _auto_call(self, target: str, generation: int) -> None:
        await asyncio.sleep(self.timing.auto_call_delay)
        if not self.sessions.is_current(generation):
            return
        result = await self.place_call(target)
        if result.success:
            logger.info(f"Auto-call to {target} placed: call_id={result.call_id}")
            return
        if result.failure and result.failure.kind in (FailureKind.BUSY, FailureKind.LINE_BUSY):
            return

        logger.info(f"Auto-call to {target} failed, retrying in {self.timing.auto_call_retry_delay}s")
        await asyncio.sleep(self.timing.auto_call_retry_delay)
        if not self.sessions.is_current(generation):
            return
        retry = await self.place_call(target)
        if not retry.success:
            logger.error(f"Auto-call retry to {target} failed: {retry.error}")

    async def _on_message_status(self, event: MessageStatus) -> None:
        if event.status not in _NOTIFIED_MESSAGE_STATUSES:
            logger.debug(f"Message {event.message_id}: {event.status}")
            return
        logger.info(f"Message {event.message_id}: {event.status}")
        await self.hub.broadcast(
            BrowserEvent.MESSAGE_STATUS,
            {"messageId": event.message_id, "status": event.status},
        )

    # ------------------------------------------------------------------
    # Bridging
    # ------------------------------------------------------------------

    async def _try_start_bridge(self) -> bool:
        """Start negotiation if both offers and a browser channel are present.

        Must be called with the lock held.
        """
        session = self.sessions.peek()
        if session is None:
            return False
        if session.in_progress:
            logger.warning(f"Bridge for call {session.call_id or '-'} already in progress, not starting another")
            return False
        if not session.ready_to_bridge:
            logger.info(
                f"Waiting to bridge: browser offer={bool(session.browser_offer)} "
                f"provider offer={bool(session.provider_offer)} "
                f"browser channel={session.browser_channel is not None}"
            )
            return False

        await self._set_state(BridgeState.BRIDGING)
        task = asyncio.create_task(
            self._run_bridge(session.generation),
            name=f"bridge-{session.call_id or session.session_id}",
        )
        self.sessions.add_task(task)
        self._bridge_task = task
        return True

    async def _run_bridge(self, generation: int) -> None:
        try:
            await self._negotiate(generation)
        except SessionSuperseded:
            logger.info(f"Bridge for generation {generation} superseded")
        except (EngineError, SdpError, CallControlError) as e:
            logger.error(f"Bridge failed: {e}")
            await self._abort_bridge(generation, e)
        except Exception as e:
            logger.exception(f"Unexpected bridge error: {e}")
            await self._abort_bridge(generation, e)

    def _check_generation(self, generation: int) -> CallSession:
        if not self.sessions.is_current(generation):
            raise SessionSuperseded(f"session generation {generation} is no longer current")
        return self.sessions.get()

    def _check_bridging(self, generation: int, state: BridgeState = BridgeState.BRIDGING) -> CallSession:
        # A teardown holding the lock moves the state on before it resets
        session = self._check_generation(generation)
        if session.state != state:
            raise SessionSuperseded(f"call {session.call_id or '-'} left {state.value} (now {session.state.value})")
        return session

    async def _negotiate(self, generation: int) -> None:
        session = self._check_bridging(generation)
        call_id = session.call_id
        logger.info(f"===== Bridging call {call_id or '-'} =====")

        # Browser leg
        browser_leg = self.engine.create_leg("browser", self._observer("browser", generation))
        self.sessions.attach_leg("browser", browser_leg)
        await browser_leg.set_remote_description(session.browser_offer, "offer")

        session = self._check_bridging(generation)
        pending = session.pending_browser_candidates
        session.pending_browser_candidates = []
        session.browser_remote_applied = True
        for candidate in pending:
            await self._apply_candidate(browser_leg, candidate)

        # Provider leg
        session = self._check_bridging(generation)
        provider_leg = self.engine.create_leg("provider", self._observer("provider", generation))
        self.sessions.attach_leg("provider", provider_leg)
        provider_offer = sdp.normalize_provider_offer(session.provider_offer)
        await provider_leg.set_remote_description(provider_offer, "offer")

        # Let track events raised while applying the offers land
        await asyncio.sleep(0)
        session = self._check_bridging(generation)

        if not session.browser_tracks:
            logger.info("No inbound audio from the browser yet, sending silence to the provider")
            session.browser_tracks.append(self.engine.silent_audio_track())

        # browser mic -> provider
        for track in list(session.browser_tracks):
            provider_leg.add_track(self.engine.forward(track))

        # provider audio -> browser
        provider_track = None
        try:
            provider_track = await asyncio.wait_for(
                asyncio.shield(session.provider_track_ready),
                timeout=self.timing.provider_track_wait,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"No provider audio after {self.timing.provider_track_wait}s, continuing with one-way audio"
            )
        session = self._check_bridging(generation)
        if provider_track is not None:
            browser_leg.add_track(self.engine.forward(provider_track))

        # Browser answer
        browser_answer = await browser_leg.create_answer()
        await browser_leg.set_local_description(browser_answer, "answer")
        session = self._check_bridging(generation)
        browser_answer = browser_leg.local_description or browser_answer
        await self._notify(session, BrowserEvent.ANSWER, {"type": "answer", "sdp": browser_answer})
        logger.info("Browser answer sent")

        # Provider answer
        provider_answer = await provider_leg.create_answer()
        await provider_leg.set_local_description(provider_answer, "answer")
        session = self._check_bridging(generation)
        provider_answer = sdp.normalize_provider_answer(provider_leg.local_description or provider_answer)
        logger.info(f"Provider answer prepared: {sdp.summarize(provider_answer)}")

        if not call_id:
            raise CallControlError("No provider call id to answer")

        if not await self.call_control.pre_accept(call_id, provider_answer):
            raise CallControlError(f"pre_accept rejected for call {call_id}")
        session = self._check_bridging(generation)
        session.pre_accepted = True

        await asyncio.sleep(self.timing.accept_delay)
        self._check_bridging(generation)

        try:
            accepted = await self.call_control.accept(call_id, provider_answer)
        except CallControlError as e:
            logger.error(f"accept for call {call_id} raised: {e}")
            accepted = False
        session = self._check_bridging(generation)
        session.accept_confirmed = accepted
        await self._set_state(BridgeState.ACTIVE)
        session = self._check_bridging(generation, BridgeState.ACTIVE)

        if accepted:
            logger.info(f"Call {call_id} accepted, media bridged")
            await self._notify(session, BrowserEvent.START_TIMER, {"callId": call_id})
        else:
            logger.error(f"accept for call {call_id} failed; media stays up but the call is unconfirmed")

        self._check_bridging(generation, BridgeState.ACTIVE)
        timer = asyncio.create_task(self._clear_offers_later(generation), name=f"clear-offers-{call_id}")
        self.sessions.add_task(timer)

    async def _clear_offers_later(self, generation: int) -> None:
        await asyncio.sleep(self.timing.offer_grace)
        async with self._lock:
            if self.sessions.is_current(generation):
                self.sessions.clear_offers()

    async def _abort_bridge(self, generation: int, error: Exception) -> None:
        """Surface a failed bridge once, release the provider call and reset."""
        async with self._lock:
            if not self.sessions.is_current(generation):
                return
            session = self.sessions.get()
            await self._set_state(BridgeState.ERROR)

            if isinstance(error, CallControlError):
                failure = classify_failure(error.message, error.code)
            elif isinstance(error, (EngineError, SdpError)):
                failure = CallFailure(kind=FailureKind.ENGINE, message="Media negotiation failed")
            else:
                failure = CallFailure(message="Call failed")
            await self._notify(session, BrowserEvent.CALL_FAILED, failure.to_payload())

            if session.call_id:
                reject = session.direction == "inbound" and not session.pre_accepted
                await self._hangup_provider(session.call_id, reject=reject)
            await self._reset(f"error: {error}")

    # ------------------------------------------------------------------
    # Leg observers
    # ------------------------------------------------------------------

    def _observer(self, role: str, generation: int) -> LegObserver:
        async def on_candidate(candidate: dict[str, Any]) -> None:
            if role != "browser" or not self.sessions.is_current(generation):
                return
            session = self.sessions.get()
            if session.browser_channel is not None:
                await session.browser_channel.emit(BrowserEvent.CANDIDATE, candidate)

        async def on_track(track: Any) -> None:
            if not self.sessions.is_current(generation):
                return
            session = self.sessions.get()
            if role == "browser":
                session.browser_tracks.append(track)
            else:
                session.set_provider_track(track)

        async def on_state_change(state: str) -> None:
            if state in TERMINAL_STATES:
                await self._on_leg_terminal(role, generation, state)

        return LegObserver(
            on_candidate=on_candidate,
            on_state_change=on_state_change,
            on_track=on_track,
        )

    async def _on_leg_terminal(self, role: str, generation: int, state: str) -> None:
        if not self.sessions.is_current(generation):
            return
        async with self._lock:
            if not self.sessions.is_current(generation) or not self.sessions.in_progress:
                return
            session = self.sessions.get()
            reason = f"{role}_connection_{state}"
            logger.warning(f"{role.capitalize()} leg {state} during call {session.call_id or '-'}, terminating")
            await self._set_state(BridgeState.TERMINATING)
            await self._notify(session, BrowserEvent.CALL_ENDED, {"callId": session.call_id, "reason": reason})
            if session.call_id:
                await self._hangup_provider(session.call_id, reject=False)
            await self._reset(reason)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _apply_candidate(self, leg: PeerLeg, candidate: dict[str, Any]) -> None:
        try:
            await leg.add_ice_candidate(candidate)
        except EngineError as e:
            logger.warning(f"Failed to add browser candidate: {e}")

    async def _notify(self, session: CallSession | None, event: BrowserEvent, data: Any = None) -> None:
        """Send to the session's browser channel, or every channel when none is bound."""
        channel = session.browser_channel if session else None
        if channel is not None:
            await channel.emit(event, data)
        else:
            await self.hub.broadcast(event, data)

    async def _hangup_provider(self, call_id: str, reject: bool) -> None:
        action = "reject" if reject else "terminate"
        try:
            if reject:
                result = await self.call_control.reject(call_id)
            else:
                result = await self.call_control.terminate(call_id)
        except Exception as e:
            logger.error(f"Provider {action} for call {call_id} failed: {e}")
            return
        if not result.success:
            logger.warning(f"Provider {action} for call {call_id} not confirmed: {result.error or result.data}")

    async def _reset(self, reason: str) -> None:
        """Destroy the session. Must be called with the lock held."""
        session = self.sessions.peek()
        if session is None:
            return
        old = session.state
        had_call = session.in_progress or bool(session.call_id)
        await self.sessions.reset(reason)
        if old != BridgeState.IDLE:
            await self._fire("on_state_change", session, old, BridgeState.IDLE)
        if had_call:
            await self._fire("on_call_ended", session, reason)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def wait_for_bridge(self) -> None:
        """Wait until the latest negotiation task has finished."""
        task = self._bridge_task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def status(self) -> dict[str, Any]:
        session = self.sessions.peek()
        return {
            "state": self.sessions.state.value,
            "in_progress": self.sessions.in_progress,
            "generation": self.sessions.generation,
            "channels": self.hub.count,
            "session": session.snapshot() if session else None,
        }

    async def shutdown(self) -> None:
        """Hang up any live call and release every resource."""
        async with self._lock:
            session = self.sessions.peek()
            if session is not None and session.in_progress:
                await self._set_state(BridgeState.TERMINATING)
                if session.call_id:
                    await self._hangup_provider(session.call_id, reject=False)
            await self._reset("shutdown")
        await self.call_control.close()
        await self.engine.close()
        logger.info("Bridge controller shut down")
