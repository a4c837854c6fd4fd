"""Tests for the CallBridge event model and failure classification."""

import pytest

from callbridge.callcontrol.base import ConnectResult
from callbridge.core.errors import (
    CALL_RATE_LIMIT_CODE,
    PERMISSION_REQUEST_RATE_LIMIT_CODE,
    PERMISSION_REQUIRED_CODE,
    CallControlError,
    CallFailure,
    FailureKind,
    classify_failure,
)
from callbridge.core.events import (
    BridgeState,
    BrowserEvent,
    CallConnect,
    CallTerminate,
    CustomEvent,
    EventType,
    MessageStatus,
    PermissionUpdate,
)


class TestEventModel:
    """Test the Pydantic event models."""

    def test_call_connect_defaults(self):
        event = CallConnect(call_id="wacid.1")
        assert event.event_type == EventType.CALL_CONNECT
        assert event.offer_sdp == ""
        assert event.timestamp > 0

    def test_call_terminate(self):
        event = CallTerminate(call_id="wacid.1", reason="hangup", duration=12, status="COMPLETED")
        assert event.event_type == EventType.CALL_TERMINATE
        assert event.duration == 12

    def test_permission_update_granted(self):
        assert PermissionUpdate(target="1", status="granted").granted is True
        assert PermissionUpdate(target="1", status="denied").granted is False

    def test_message_status(self):
        event = MessageStatus(message_id="wamid.1", status="read")
        assert event.event_type == EventType.MESSAGE_STATUS

    def test_custom_event(self):
        event = CustomEvent(custom_type="whatsapp.unknown", payload={"a": 1})
        assert event.event_type == EventType.CUSTOM
        assert event.payload == {"a": 1}

    def test_serialization_roundtrip(self):
        event = CallConnect(call_id="wacid.1", offer_sdp="v=0", caller_name="Alice")
        restored = CallConnect.model_validate(event.model_dump())
        assert restored == event

    def test_browser_event_wire_names(self):
        assert BrowserEvent.PERMISSION_UPDATE.value == "call-permission-update"
        assert BrowserEvent.MESSAGE_STATUS.value == "message-status-update"
        assert BrowserEvent.START_TIMER.value == "start-timer"

    def test_bridge_states(self):
        assert [s.value for s in BridgeState] == [
            "idle", "awaiting_offers", "bridging", "active", "terminating", "error",
        ]


class TestClassifyFailure:

    @pytest.mark.parametrize(
        "message",
        ["Call already ongoing with this user", "A call is already in progress", "User busy"],
    )
    def test_busy_not_retryable(self, message):
        failure = classify_failure(message)
        assert failure.kind == FailureKind.BUSY
        assert failure.retryable is False

    @pytest.mark.parametrize("code", [CALL_RATE_LIMIT_CODE, PERMISSION_REQUEST_RATE_LIMIT_CODE])
    def test_rate_limit_retryable(self, code):
        failure = classify_failure("Too many requests", code)
        assert failure.kind == FailureKind.RATE_LIMITED
        assert failure.retryable is True
        assert failure.code == code

    def test_rate_limit_by_message(self):
        assert classify_failure("Rate limit hit").kind == FailureKind.RATE_LIMITED

    def test_permission_required(self):
        failure = classify_failure("Something", PERMISSION_REQUIRED_CODE)
        assert failure.kind == FailureKind.PERMISSION_REQUIRED
        assert "permission" in failure.message.lower()

    def test_busy_wins_over_code(self):
        failure = classify_failure("User is busy", PERMISSION_REQUIRED_CODE)
        assert failure.kind == FailureKind.BUSY

    def test_generic_keeps_message(self):
        failure = classify_failure("Internal server error", 131000)
        assert failure.kind == FailureKind.GENERIC
        assert failure.message == "Internal server error"

    def test_empty_message(self):
        assert classify_failure(None).message == "Call failed"

    def test_payload(self):
        payload = CallFailure(kind=FailureKind.ENGINE, message="Media negotiation failed").to_payload()
        assert payload == {
            "kind": "engine",
            "message": "Media negotiation failed",
            "retryable": False,
            "code": None,
        }

    def test_connect_result_failure(self):
        assert ConnectResult(success=True, call_id="x").failure is None
        failure = ConnectResult(success=False, error="x", error_code=CALL_RATE_LIMIT_CODE).failure
        assert failure.kind == FailureKind.RATE_LIMITED

    def test_call_control_error_fields(self):
        err = CallControlError("bad", code=100, data={"error": {}})
        assert str(err) == "bad"
        assert err.code == 100
        assert err.data == {"error": {}}
