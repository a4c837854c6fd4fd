"""Remote call-control capability and its implementations."""

from callbridge.callcontrol.base import (
    CallControl,
    ConnectResult,
    PermissionRequestOutcome,
    PermissionRequestResult,
    PermissionStatus,
    TerminateResult,
)

__all__ = [
    "CallControl",
    "ConnectResult",
    "PermissionRequestOutcome",
    "PermissionRequestResult",
    "PermissionStatus",
    "TerminateResult",
]
