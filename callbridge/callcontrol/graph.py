"""WhatsApp Cloud API (Graph) call-control client.

Usage:
    client = GraphCallControl(
        phone_number_id="1234567890",
        access_token="EAAG...",
    )
    result = await client.connect_call("15551234567", offer_sdp)
    await client.close()
"""

from __future__ import annotations

import asyncio
from typing import Any

import aiohttp
from loguru import logger

from callbridge.callcontrol.base import (
    CallControl,
    ConnectResult,
    PermissionRequestOutcome,
    PermissionRequestResult,
    PermissionStatus,
    TerminateResult,
)
from callbridge.core.errors import (
    PERMISSION_REQUEST_RATE_LIMIT_CODE,
    PERMISSION_REQUIRED_CODE,
    CallControlError,
)
from callbridge.sdp import summarize

DEFAULT_GRAPH_URL = "https://graph.facebook.com"
DEFAULT_API_VERSION = "v19.0"

PERMISSION_REQUEST_TEXT = (
    "Would you like to receive calls from our application? "
    "This will allow us to provide better service through voice calls."
)


class GraphCallControl(CallControl):
    """Call-control client for the WhatsApp Business calling API.

    Handles:
    - outbound ``connect`` with an SDP offer
    - ``pre_accept`` / ``accept`` with an SDP answer
    - ``reject`` / ``terminate``
    - call-permission request messages and permission probing
    """

    def __init__(
        self,
        phone_number_id: str,
        access_token: str,
        graph_url: str = DEFAULT_GRAPH_URL,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 10.0,
    ) -> None:
        self.phone_number_id = phone_number_id
        self.access_token = access_token
        self.base_url = f"{graph_url.rstrip('/')}/{api_version}/{phone_number_id}"
        self._timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    @property
    def calls_url(self) -> str:
        return f"{self.base_url}/calls"

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}/messages"

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create an aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Content-Type": "application/json",
                },
            )
        return self._session

    async def _post(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST a JSON payload and return the decoded body.

        Raises:
            CallControlError: On HTTP errors (with the Graph error code when
                present) and on transport failures.
        """
        session = await self._get_session()
        try:
            async with session.post(url, json=payload) as resp:
                try:
                    data = await resp.json(content_type=None)
                except (aiohttp.ContentTypeError, ValueError):
                    data = {"raw": await resp.text()}
                data = data if isinstance(data, dict) else {"raw": data}
                if resp.status >= 400:
                    error = data.get("error") or {}
                    raise CallControlError(
                        error.get("message") or f"HTTP {resp.status}",
                        code=error.get("code"),
                        data=data,
                    )
                return data
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise CallControlError(f"Graph API unreachable: {e}") from e

    # ------------------------------------------------------------------
    # Call actions
    # ------------------------------------------------------------------

    async def connect_call(self, target: str, offer_sdp: str) -> ConnectResult:
        payload = {
            "messaging_product": "whatsapp",
            "to": target,
            "action": "connect",
            "session": {"sdp_type": "offer", "sdp": offer_sdp},
        }
        logger.info(f"Placing call to {target} (offer: {summarize(offer_sdp)})")
        try:
            data = await self._post(self.calls_url, payload)
        except CallControlError as e:
            logger.error(f"Call to {target} failed: code={e.code} message={e.message}")
            return ConnectResult(
                success=False,
                error=e.message,
                error_code=e.code,
                data=e.data or {},
            )

        call_id = _extract_call_id(data)
        if data.get("success") is True or call_id:
            logger.info(f"Call initiated to {target}: call_id={call_id}")
            return ConnectResult(success=True, call_id=call_id, data=data)

        logger.warning(f"Unsuccessful connect response: {data}")
        return ConnectResult(
            success=False,
            error="API returned unsuccessful response",
            data=data,
        )

    async def pre_accept(self, call_id: str, answer_sdp: str) -> bool:
        return await self._answer(call_id, answer_sdp, "pre_accept")

    async def accept(self, call_id: str, answer_sdp: str) -> bool:
        return await self._answer(call_id, answer_sdp, "accept")

    async def _answer(self, call_id: str, answer_sdp: str, action: str) -> bool:
        payload = {
            "messaging_product": "whatsapp",
            "call_id": call_id,
            "action": action,
            "session": {"sdp_type": "answer", "sdp": answer_sdp},
        }
        logger.info(f"Sending {action} for call {call_id} (answer: {summarize(answer_sdp)})")
        try:
            data = await self._post(self.calls_url, payload)
        except CallControlError as e:
            logger.error(f"'{action}' failed for call {call_id}: {e.message}")
            return False

        if data.get("success") is True:
            logger.info(f"'{action}' accepted for call {call_id}")
            return True
        logger.warning(f"'{action}' response was not successful: {data}")
        return False

    async def reject(self, call_id: str) -> TerminateResult:
        return await self._end(call_id, "reject")

    async def terminate(self, call_id: str) -> TerminateResult:
        return await self._end(call_id, "terminate")

    async def _end(self, call_id: str, action: str) -> TerminateResult:
        payload = {
            "messaging_product": "whatsapp",
            "call_id": call_id,
            "action": action,
        }
        try:
            data = await self._post(self.calls_url, payload)
        except CallControlError as e:
            logger.error(f"Failed to {action} call {call_id}: {e.message}")
            return TerminateResult(success=False, data=e.data or {}, error=e.message)

        success = data.get("success") is True
        if success:
            logger.info(f"Call {call_id}: {action} succeeded")
        else:
            logger.warning(f"Call {call_id}: {action} response was not successful: {data}")
        return TerminateResult(success=success, data=data)

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    async def request_permission(self, target: str) -> PermissionRequestResult:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": target,
            "type": "interactive",
            "interactive": {
                "type": "call_permission_request",
                "body": {"text": PERMISSION_REQUEST_TEXT},
                "action": {"name": "call_permission_request"},
            },
        }
        try:
            data = await self._post(self.messages_url, payload)
        except CallControlError as e:
            if e.code == PERMISSION_REQUEST_RATE_LIMIT_CODE:
                logger.warning(f"Permission request rate limit reached for {target}")
                return PermissionRequestResult(
                    outcome=PermissionRequestOutcome.RATE_LIMITED,
                    error=(
                        "Rate limit reached for permission requests to this number. "
                        "WhatsApp allows only one permission request every 24 hours."
                    ),
                    error_code=e.code,
                    retry_after="24 hours",
                )
            logger.error(f"Permission request to {target} failed: {e.message}")
            return PermissionRequestResult(
                outcome=PermissionRequestOutcome.FAILED,
                error=e.message,
                error_code=e.code,
            )

        messages = data.get("messages") or [{}]
        message_id = messages[0].get("id", "")
        logger.info(f"Permission request sent to {target}: message_id={message_id}")
        return PermissionRequestResult(outcome=PermissionRequestOutcome.SENT, message_id=message_id)

    async def check_permission(self, target: str, probe_sdp: str) -> PermissionStatus:
        """Probe permission by placing a call and hanging it up immediately.

        A successful connect means permission exists; error 138006 means it
        does not; anything else is reported as unknown.
        """
        result = await self.connect_call(target, probe_sdp)
        if result.success:
            if result.call_id:
                await self.terminate(result.call_id)
            logger.info(f"Permission check for {target}: granted")
            return PermissionStatus.GRANTED
        if result.error_code == PERMISSION_REQUIRED_CODE:
            logger.info(f"Permission check for {target}: denied")
            return PermissionStatus.DENIED
        logger.warning(f"Permission check for {target} inconclusive: {result.error}")
        return PermissionStatus.UNKNOWN

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()


def _extract_call_id(data: dict[str, Any]) -> str:
    if data.get("call_id"):
        return str(data["call_id"])
    calls = data.get("calls")
    if isinstance(calls, list) and calls and isinstance(calls[0], dict) and calls[0].get("id"):
        return str(calls[0]["id"])
    if data.get("id"):
        return str(data["id"])
    return ""
