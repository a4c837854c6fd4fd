"""CallBridge - bridge browser WebRTC calls to WhatsApp Business calling.

A browser peer signals over a WebSocket, the WhatsApp Cloud API signals
over webhooks and a REST call-control API; CallBridge answers both legs
and relays the audio between them.

Quick start:
    $ pip install callbridge
    $ callbridge init          # generates callbridge.yaml
    $ callbridge run --config callbridge.yaml

Programmatic:
    from callbridge import create_app

    app = create_app({"phone_number_id": "123", "access_token": "EAAG..."})
"""

__version__ = "0.1.0"

# Core
from callbridge.bridge import BridgeController
from callbridge.config import BridgeConfig, load_config
from callbridge.permissions import PermissionGate, SmartCallOutcome, SmartCallResult
from callbridge.session import CallSession, SessionStore

# Events and errors
from callbridge.core.errors import (
    BridgeError,
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
    Event,
    EventType,
    MessageStatus,
    PermissionUpdate,
)

# Capabilities
from callbridge.callcontrol.base import (
    CallControl,
    ConnectResult,
    PermissionRequestOutcome,
    PermissionRequestResult,
    PermissionStatus,
    TerminateResult,
)
from callbridge.callcontrol.graph import GraphCallControl
from callbridge.engine.base import IceServer, LegObserver, PeerEngine, PeerLeg

# Signaling
from callbridge.channels.base import BrowserChannel, ChannelHub
from callbridge.gateway import SignalingGateway
from callbridge.webhooks import parse_webhook, verify_subscription


def create_app(*args, **kwargs):
    """Create the FastAPI application (see :func:`callbridge.server.create_app`)."""
    from callbridge.server import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    # Core
    "BridgeController",
    "BridgeConfig",
    "load_config",
    "CallSession",
    "SessionStore",
    "PermissionGate",
    "SmartCallOutcome",
    "SmartCallResult",
    "create_app",
    # Events and errors
    "Event",
    "EventType",
    "BridgeState",
    "BrowserEvent",
    "CallConnect",
    "CallTerminate",
    "PermissionUpdate",
    "MessageStatus",
    "CustomEvent",
    "BridgeError",
    "SdpError",
    "EngineError",
    "CallControlError",
    "SessionSuperseded",
    "CallFailure",
    "FailureKind",
    "classify_failure",
    "line_busy_failure",
    # Capabilities
    "CallControl",
    "ConnectResult",
    "TerminateResult",
    "PermissionStatus",
    "PermissionRequestOutcome",
    "PermissionRequestResult",
    "GraphCallControl",
    "PeerEngine",
    "PeerLeg",
    "LegObserver",
    "IceServer",
    # Signaling
    "BrowserChannel",
    "ChannelHub",
    "SignalingGateway",
    "parse_webhook",
    "verify_subscription",
]
