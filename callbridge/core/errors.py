"""Error types and user-facing failure classification.

Internal failures are raised as :class:`BridgeError` subclasses. Anything
that reaches the browser is first turned into a :class:`CallFailure` so the
client can tell a futile retry (recipient busy) from a useful one (rate
limit).
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel

# Graph API error codes
PERMISSION_REQUIRED_CODE = 138006
PERMISSION_REQUEST_RATE_LIMIT_CODE = 138009
CALL_RATE_LIMIT_CODE = 138010

_BUSY_MARKERS = ("already ongoing", "already in progress", "busy", "another call")


class BridgeError(Exception):
    """Base class for CallBridge errors."""


class SdpError(BridgeError):
    """A session description failed its precondition."""


class EngineError(BridgeError):
    """The WebRTC engine rejected an operation."""


class SessionSuperseded(BridgeError):
    """The session an operation belonged to has been reset."""


class CallControlError(BridgeError):
    """The provider's call-control API returned an error."""

    def __init__(self, message: str, code: int | None = None, data: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data


class FailureKind(str, Enum):
    PERMISSION_REQUIRED = "permission_required"
    RATE_LIMITED = "rate_limited"
    BUSY = "busy"
    LINE_BUSY = "line_busy"
    REJECTED = "rejected"
    ENGINE = "engine"
    GENERIC = "generic"


class CallFailure(BaseModel):
    """A classified failure, sent to the browser as ``call-failed``."""

    kind: FailureKind = FailureKind.GENERIC
    message: str = "Call failed"
    retryable: bool = False
    code: int | None = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def classify_failure(message: str | None, code: int | None = None) -> CallFailure:
    """Map a provider error to a user-facing failure."""
    raw = message or ""
    lowered = raw.lower()

    if any(marker in lowered for marker in _BUSY_MARKERS):
        return CallFailure(
            kind=FailureKind.BUSY,
            message="The recipient is already on another call. Please try again later.",
            retryable=False,
            code=code,
        )
    if code in (CALL_RATE_LIMIT_CODE, PERMISSION_REQUEST_RATE_LIMIT_CODE) or "rate limit" in lowered:
        return CallFailure(
            kind=FailureKind.RATE_LIMITED,
            message="Call rate limit reached. Please wait a moment before trying again.",
            retryable=True,
            code=code,
        )
    if code == PERMISSION_REQUIRED_CODE or "permission" in lowered:
        return CallFailure(
            kind=FailureKind.PERMISSION_REQUIRED,
            message="No approved call permission from recipient. Please request permission first.",
            retryable=False,
            code=code,
        )
    return CallFailure(
        kind=FailureKind.GENERIC,
        message=raw or "Call failed",
        retryable=False,
        code=code,
    )


def line_busy_failure() -> CallFailure:
    """This server already carries a call; nobody was dialed."""
    return CallFailure(
        kind=FailureKind.LINE_BUSY,
        message="A call is already in progress on this line. End it before starting another.",
        retryable=False,
    )
