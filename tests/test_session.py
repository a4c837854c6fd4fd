"""Tests for the single-slot session store."""

import asyncio

import pytest

from callbridge.core.events import BridgeState
from callbridge.session import CallSession, SessionStore

from conftest import FakeChannel, FakeEngine, FakeTrack


class TestCallSession:

    def test_defaults(self):
        session = CallSession()
        assert session.call_id == ""
        assert session.state == BridgeState.IDLE
        assert session.in_progress is False
        assert session.legs == []
        assert session.has_both_offers is False
        assert session.duration_ms >= 0

    def test_ready_to_bridge_needs_channel(self):
        session = CallSession(browser_offer="v=0", provider_offer="v=0")
        assert session.has_both_offers is True
        assert session.ready_to_bridge is False
        session.browser_channel = FakeChannel()
        assert session.ready_to_bridge is True

    @pytest.mark.asyncio
    async def test_provider_track_first_wins(self):
        session = CallSession()
        first, second = FakeTrack("a"), FakeTrack("b")
        session.set_provider_track(first)
        session.set_provider_track(second)
        assert session.provider_track is first
        assert await session.provider_track_ready is first

    def test_snapshot(self):
        session = CallSession(call_id="abc123", browser_offer="v=0")
        snap = session.snapshot()
        assert snap["call_id"] == "abc123"
        assert snap["state"] == "idle"
        assert snap["has_browser_offer"] is True
        assert snap["has_provider_offer"] is False
        assert snap["browser_channel"] is None


class TestSessionStore:

    def test_lazy_creation(self):
        store = SessionStore()
        assert store.peek() is None
        assert store.state == BridgeState.IDLE
        session = store.get()
        assert store.get() is session
        assert store.peek() is session

    def test_setters(self):
        store = SessionStore()
        channel = FakeChannel()
        store.set_browser_offer("v=0 browser")
        store.set_provider_offer("v=0 provider")
        store.set_call_id("abc123")
        store.set_browser_channel(channel)
        session = store.get()
        assert session.browser_offer == "v=0 browser"
        assert session.provider_offer == "v=0 provider"
        assert session.call_id == "abc123"
        assert session.browser_channel is channel

        store.clear_browser_channel()
        store.clear_offers()
        assert session.browser_channel is None
        assert session.browser_offer is None
        assert session.provider_offer is None
        assert session.call_id == "abc123"

    @pytest.mark.parametrize(
        "state,in_progress",
        [
            (BridgeState.AWAITING_OFFERS, False),
            (BridgeState.BRIDGING, True),
            (BridgeState.ACTIVE, True),
            (BridgeState.TERMINATING, True),
            (BridgeState.ERROR, False),
        ],
    )
    def test_set_state_drives_in_progress(self, state, in_progress):
        store = SessionStore()
        old = store.set_state(state)
        assert old == BridgeState.IDLE
        assert store.in_progress is in_progress

    @pytest.mark.asyncio
    async def test_attach_leg_rules(self):
        store = SessionStore()
        engine = FakeEngine()
        leg = engine.create_leg("browser")
        store.attach_leg("browser", leg)
        store.attach_leg("browser", leg)  # same leg again is fine
        assert store.get().browser_leg is leg

        with pytest.raises(ValueError):
            store.attach_leg("browser", engine.create_leg("browser-2"))
        with pytest.raises(ValueError):
            store.attach_leg("video", engine.create_leg("x"))

        closed = engine.create_leg("provider")
        await closed.close()
        with pytest.raises(ValueError):
            store.attach_leg("provider", closed)

    @pytest.mark.asyncio
    async def test_reset_releases_everything(self):
        store = SessionStore()
        engine = FakeEngine()
        for role in ("browser", "provider", "offer"):
            store.attach_leg(role, engine.create_leg(role))
        store.set_state(BridgeState.ACTIVE)
        session = store.get()
        track_wait = session.provider_track_ready
        task = asyncio.create_task(asyncio.sleep(10))
        store.add_task(task)
        generation = store.generation

        old = await store.reset("test")
        await asyncio.gather(task, return_exceptions=True)

        assert old is session
        assert store.peek() is None
        assert store.generation == generation + 1
        assert store.in_progress is False
        assert all(leg.closed for leg in engine.legs)
        assert task.cancelled()
        assert track_wait.cancelled()
        assert store.is_current(generation) is False

    @pytest.mark.asyncio
    async def test_reset_empty_slot_bumps_generation(self):
        store = SessionStore()
        assert await store.reset() is None
        assert store.generation == 1
        assert store.get().generation == 1

    @pytest.mark.asyncio
    async def test_reset_does_not_cancel_calling_task(self):
        store = SessionStore()
        store.get()

        async def resetter():
            store.add_task(asyncio.current_task())
            await store.reset("self")
            return "finished"

        assert await asyncio.create_task(resetter()) == "finished"
