"""Unified event model for CallBridge.

Provider webhooks are normalized into these canonical events before they
reach the bridge controller. Browser-bound signaling messages are named by
:class:`BrowserEvent` so every producer uses the same wire vocabulary.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class BridgeState(str, Enum):
    IDLE = "idle"
    AWAITING_OFFERS = "awaiting_offers"
    BRIDGING = "bridging"
    ACTIVE = "active"
    TERMINATING = "terminating"
    ERROR = "error"


class EventType(str, Enum):
    CALL_CONNECT = "call.connect"
    CALL_TERMINATE = "call.terminate"
    PERMISSION_UPDATE = "permission.update"
    MESSAGE_STATUS = "message.status"
    CUSTOM = "custom"


class BrowserEvent(str, Enum):
    """Messages the server sends to the browser leg."""

    ANSWER = "answer"
    CANDIDATE = "candidate"
    CALL_INITIATED = "call-initiated"
    CALL_FAILED = "call-failed"
    CALL_STATUS = "call-status"
    CALL_ENDED = "call-ended"
    START_TIMER = "start-timer"
    PERMISSION_NEEDED = "permission-needed"
    PERMISSION_REQUEST_SENT = "permission-request-sent"
    PERMISSION_REQUEST_FAILED = "permission-request-failed"
    PERMISSION_UPDATE = "call-permission-update"
    MESSAGE_STATUS = "message-status-update"


class Event(BaseModel):
    """Base event that all webhook events inherit from."""

    event_type: EventType
    timestamp: float = Field(default_factory=time.time)


class CallConnect(Event):
    """The provider offers (or answers) a call leg."""

    event_type: EventType = EventType.CALL_CONNECT
    call_id: str
    offer_sdp: str = ""
    caller_id: str = ""
    caller_name: str = ""


class CallTerminate(Event):
    """The provider reports that a call has ended."""

    event_type: EventType = EventType.CALL_TERMINATE
    call_id: str
    reason: str | None = None
    duration: int | None = None
    status: str | None = None


class PermissionUpdate(Event):
    """A call-permission decision by a WhatsApp user."""

    event_type: EventType = EventType.PERMISSION_UPDATE
    target: str
    status: str  # "granted" | "denied"
    caller_name: str = ""

    @property
    def granted(self) -> bool:
        return self.status == "granted"


class MessageStatus(Event):
    """Delivery status of a previously sent message."""

    event_type: EventType = EventType.MESSAGE_STATUS
    message_id: str
    status: str


class CustomEvent(Event):
    """Webhook content that does not map to a bridge event."""

    event_type: EventType = EventType.CUSTOM
    custom_type: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)


# Type alias for any webhook event
WebhookEvent = CallConnect | CallTerminate | PermissionUpdate | MessageStatus | CustomEvent
