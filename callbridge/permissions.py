"""Call-permission gate for outbound calls.

WhatsApp users must grant a business permission before it may call them.
The gate answers "may we call this number now?" and, when the answer is
no, asks the user for permission. It never treats a failed or ambiguous
check as permission.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from loguru import logger

from callbridge.callcontrol.base import (
    CallControl,
    ConnectResult,
    PermissionRequestOutcome,
    PermissionRequestResult,
    PermissionStatus,
)
from callbridge.core.errors import FailureKind
from callbridge.engine.base import PeerEngine

PlaceCall = Callable[[str], Awaitable[ConnectResult]]


def normalize_target(target: str) -> str:
    """Strip whitespace and a leading '+' from a phone number."""
    return (target or "").strip().lstrip("+")


class SmartCallOutcome(str, Enum):
    CALL_PLACED = "call_placed"
    CALL_FAILED = "call_failed"
    PERMISSION_REQUESTED = "permission_requested"


@dataclass
class SmartCallResult:
    """What :meth:`PermissionGate.smart_call` ended up doing."""

    outcome: SmartCallOutcome
    target: str
    permission: PermissionStatus = PermissionStatus.UNKNOWN
    connect: ConnectResult | None = None
    permission_request: PermissionRequestResult | None = None


class PermissionGate:
    """Decides whether an outbound call may proceed directly."""

    def __init__(
        self,
        call_control: CallControl,
        engine: PeerEngine,
        probe_delay: float = 0.5,
    ) -> None:
        self.call_control = call_control
        self.engine = engine
        self.probe_delay = probe_delay

    async def check_permission(self, target: str) -> PermissionStatus:
        """Probe the target's permission. Fails closed to UNKNOWN."""
        target = normalize_target(target)
        leg = self.engine.create_leg("permission-probe")
        try:
            leg.add_transceiver("audio", "sendrecv")
            offer = await leg.create_offer()
            await leg.set_local_description(offer, "offer")
            await asyncio.sleep(self.probe_delay)
            probe_sdp = leg.local_description or offer
            status = await self.call_control.check_permission(target, probe_sdp)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Permission check for {target} failed, assuming no permission: {e}")
            return PermissionStatus.UNKNOWN
        finally:
            try:
                await leg.close()
            except Exception as e:
                logger.warning(f"Error closing permission probe leg: {e}")

        if not isinstance(status, PermissionStatus):
            logger.warning(f"Unexpected permission status for {target}: {status!r}")
            return PermissionStatus.UNKNOWN
        return status

    async def request_permission(self, target: str) -> PermissionRequestResult:
        """Send a call-permission request message to the target."""
        target = normalize_target(target)
        try:
            result = await self.call_control.request_permission(target)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Permission request to {target} failed: {e}")
            return PermissionRequestResult(outcome=PermissionRequestOutcome.FAILED, error=str(e))

        if result.outcome == PermissionRequestOutcome.RATE_LIMITED:
            logger.warning(f"Permission request to {target} rate limited (retry after {result.retry_after or 'later'})")
        return result

    async def smart_call(self, target: str, place_call: PlaceCall) -> SmartCallResult:
        """Call directly when permission exists, otherwise request it.

        When a request is sent the call is not placed here; it is placed
        later, when the permission-granted webhook arrives.
        """
        target = normalize_target(target)
        status = await self.check_permission(target)
        logger.info(f"Smart call to {target}: permission {status.value}")

        if status == PermissionStatus.GRANTED:
            connect = await place_call(target)
            if connect.success:
                return SmartCallResult(
                    outcome=SmartCallOutcome.CALL_PLACED,
                    target=target,
                    permission=status,
                    connect=connect,
                )
            failure = connect.failure
            if failure is None or failure.kind != FailureKind.PERMISSION_REQUIRED:
                return SmartCallResult(
                    outcome=SmartCallOutcome.CALL_FAILED,
                    target=target,
                    permission=status,
                    connect=connect,
                )
            logger.info(f"Permission for {target} was revoked, requesting it again")
            request = await self.request_permission(target)
            return SmartCallResult(
                outcome=SmartCallOutcome.PERMISSION_REQUESTED,
                target=target,
                permission=PermissionStatus.DENIED,
                connect=connect,
                permission_request=request,
            )

        request = await self.request_permission(target)
        return SmartCallResult(
            outcome=SmartCallOutcome.PERMISSION_REQUESTED,
            target=target,
            permission=status,
            permission_request=request,
        )
