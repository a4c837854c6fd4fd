"""Base interface for the provider's remote call-control API.

The bridge advances the provider side of a call (connect, pre-accept,
accept, reject, terminate) and manages call permissions through this
interface, regardless of the concrete API behind it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from callbridge.core.errors import CallFailure, classify_failure


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

class PermissionStatus(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    UNKNOWN = "unknown"


class PermissionRequestOutcome(str, Enum):
    SENT = "sent"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


@dataclass
class ConnectResult:
    """Outcome of placing an outbound call."""

    success: bool
    call_id: str = ""
    error: str = ""
    error_code: int | None = None
    data: dict[str, Any] = field(default_factory=dict)
    # Set when the call was refused before reaching the provider
    local_failure: CallFailure | None = None

    @property
    def failure(self) -> CallFailure | None:
        if self.success:
            return None
        if self.local_failure is not None:
            return self.local_failure
        return classify_failure(self.error, self.error_code)


@dataclass
class TerminateResult:
    """Outcome of a terminate or reject action."""

    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str = ""


@dataclass
class PermissionRequestResult:
    """Outcome of sending a call-permission request message."""

    outcome: PermissionRequestOutcome
    message_id: str = ""
    error: str = ""
    error_code: int | None = None
    retry_after: str = ""

    @property
    def sent(self) -> bool:
        return self.outcome == PermissionRequestOutcome.SENT


# ---------------------------------------------------------------------------
# Abstract Base Class
# ---------------------------------------------------------------------------

class CallControl(ABC):
    """Abstract client for a provider's call-control API.

    Implementations never raise for provider-side rejections; they report
    them through the result types so the bridge can classify them.
    """

    @abstractmethod
    async def connect_call(self, target: str, offer_sdp: str) -> ConnectResult:
        """Place an outbound call to ``target`` with a local SDP offer."""
        ...

    @abstractmethod
    async def pre_accept(self, call_id: str, answer_sdp: str) -> bool:
        """Send the early answer so media can start flowing."""
        ...

    @abstractmethod
    async def accept(self, call_id: str, answer_sdp: str) -> bool:
        """Confirm the call as answered."""
        ...

    @abstractmethod
    async def reject(self, call_id: str) -> TerminateResult:
        """Decline an incoming call that was never accepted."""
        ...

    @abstractmethod
    async def terminate(self, call_id: str) -> TerminateResult:
        """Hang up an established call."""
        ...

    @abstractmethod
    async def request_permission(self, target: str) -> PermissionRequestResult:
        """Ask ``target`` for permission to call them."""
        ...

    @abstractmethod
    async def check_permission(self, target: str, probe_sdp: str) -> PermissionStatus:
        """Probe whether ``target`` currently accepts calls."""
        ...

    async def close(self) -> None:
        """Release HTTP resources."""
        return None
