"""WhatsApp Cloud API webhook parsing.

Translates Graph webhook envelopes into CallBridge events. Like a
serializer, this module does no I/O: it maps provider JSON to the
canonical event model and nothing else.

Envelope shape::

    {"entry": [{"changes": [{"value": {...}}]}]}

Value kinds handled:
    * ``calls``            -- ``connect`` / ``terminate`` call events
    * ``call_permissions`` -- permission decisions
    * ``statuses``         -- message delivery statuses
    * ``messages``         -- interactive ``call_permission_reply`` messages

Protocol reference:
    https://developers.facebook.com/docs/whatsapp/cloud-api/calling
"""

from __future__ import annotations

import hmac
from typing import Any

from loguru import logger

from callbridge.core.events import (
    CallConnect,
    CallTerminate,
    CustomEvent,
    MessageStatus,
    PermissionUpdate,
    WebhookEvent,
)


def verify_subscription(
    mode: str | None,
    token: str | None,
    challenge: str | None,
    expected_token: str,
) -> str | None:
    """Answer the webhook verification handshake.

    Returns the challenge to echo when ``mode`` is ``subscribe`` and the token
    matches, otherwise None.
    """
    if mode != "subscribe" or not token or not expected_token:
        return None
    if not hmac.compare_digest(token, expected_token):
        return None
    return challenge or ""


def parse_webhook(payload: dict[str, Any]) -> list[WebhookEvent]:
    """Parse a webhook body into events. Unknown content yields CustomEvents."""
    events: list[WebhookEvent] = []
    if not isinstance(payload, dict):
        return events

    for entry in payload.get("entry") or []:
        for change in (entry or {}).get("changes") or []:
            value = (change or {}).get("value") or {}
            events.extend(_parse_value(value))
    return events


def _parse_value(value: dict[str, Any]) -> list[WebhookEvent]:
    contacts = value.get("contacts") or []
    contact = contacts[0] if contacts else {}

    if value.get("calls"):
        return [e for e in (_parse_call(call, contact) for call in value["calls"]) if e is not None]

    if value.get("call_permissions"):
        return [
            PermissionUpdate(
                target=str(p.get("wa_id", "")),
                status=str(p.get("status", "")),
            )
            for p in value["call_permissions"]
            if p.get("wa_id")
        ]

    if value.get("statuses"):
        return [
            MessageStatus(message_id=str(s.get("id", "")), status=str(s.get("status", "")))
            for s in value["statuses"]
            if s.get("id")
        ]

    if value.get("messages"):
        events: list[WebhookEvent] = []
        for message in value["messages"]:
            event = _parse_permission_reply(message, contact)
            if event is not None:
                events.append(event)
            else:
                logger.debug(f"Regular message from {message.get('from')}, not call related")
        return events

    return [CustomEvent(custom_type="whatsapp.unknown", payload=value)]


def _parse_call(call: dict[str, Any], contact: dict[str, Any]) -> WebhookEvent | None:
    call_id = call.get("id")
    event = call.get("event")
    if not call_id or not event:
        logger.warning(f"Invalid or incomplete call event: {call}")
        return None

    if event == "connect":
        session = call.get("session") or {}
        return CallConnect(
            call_id=str(call_id),
            offer_sdp=session.get("sdp") or "",
            caller_id=str(contact.get("wa_id") or call.get("from") or ""),
            caller_name=(contact.get("profile") or {}).get("name") or "",
        )

    if event == "terminate":
        duration = call.get("duration")
        return CallTerminate(
            call_id=str(call_id),
            reason=call.get("reason"),
            duration=int(duration) if isinstance(duration, (int, float, str)) and str(duration).isdigit() else None,
            status=call.get("status"),
        )

    return CustomEvent(custom_type=f"whatsapp.call.{event}", payload=call)


def _parse_permission_reply(message: dict[str, Any], contact: dict[str, Any]) -> PermissionUpdate | None:
    if message.get("type") != "interactive":
        return None
    interactive = message.get("interactive") or {}
    reply = interactive.get("call_permission_reply")
    if interactive.get("type") != "call_permission_reply" or not reply:
        return None
    target = str(message.get("from") or "")
    if not target:
        return None
    return PermissionUpdate(
        target=target,
        status="granted" if reply.get("response") == "accept" else "denied",
        caller_name=(contact.get("profile") or {}).get("name") or "",
    )
