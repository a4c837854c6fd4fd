"""HTTP/WebSocket server for CallBridge.

Provides a FastAPI application exposing:
- the provider webhook (GET verification handshake, POST events)
- the browser signaling WebSocket
- health check and status endpoints
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from loguru import logger

from callbridge import __version__
from callbridge.bridge import BridgeController
from callbridge.callcontrol.base import CallControl
from callbridge.callcontrol.graph import GraphCallControl
from callbridge.channels.base import ChannelHub
from callbridge.channels.websocket import WebSocketChannel
from callbridge.config import BridgeConfig, load_config
from callbridge.engine.base import PeerEngine
from callbridge.gateway import SignalingGateway
from callbridge.webhooks import verify_subscription


def _default_engine(config: BridgeConfig) -> PeerEngine:
    from callbridge.engine.aiortc_engine import AiortcEngine

    return AiortcEngine(config.ice.to_ice_servers())


def _default_call_control(config: BridgeConfig) -> CallControl:
    if not config.provider.phone_number_id or not config.provider.access_token:
        logger.warning("PHONE_NUMBER_ID / ACCESS_TOKEN not configured, Graph API calls will fail")
    return GraphCallControl(
        phone_number_id=config.provider.phone_number_id,
        access_token=config.provider.access_token,
        graph_url=config.provider.graph_url,
        api_version=config.provider.api_version,
        timeout=config.provider.timeout,
    )


def create_app(
    config: BridgeConfig | dict | str | Path | None = None,
    engine: PeerEngine | None = None,
    call_control: CallControl | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Bridge configuration (YAML path, dict, BridgeConfig, or None
            for the environment).
        engine: WebRTC engine; defaults to aiortc.
        call_control: Call-control client; defaults to the Graph API client.
    """
    bridge_config = load_config(config)
    hub = ChannelHub()
    controller = BridgeController(
        bridge_config,
        engine or _default_engine(bridge_config),
        call_control or _default_call_control(bridge_config),
        hub,
    )
    gateway = SignalingGateway(controller, hub)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            f"CallBridge listening: webhook {bridge_config.webhook.path}, "
            f"signaling {bridge_config.server.signaling_path}"
        )
        yield
        await controller.shutdown()

    app = FastAPI(
        title="CallBridge",
        description="Browser to WhatsApp voice call bridge",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.controller = controller
    app.state.gateway = gateway

    @app.get(bridge_config.webhook.path)
    async def verify_webhook(request: Request):
        params = request.query_params
        challenge = verify_subscription(
            params.get("hub.mode"),
            params.get("hub.verify_token"),
            params.get("hub.challenge"),
            bridge_config.webhook.verify_token,
        )
        if challenge is None:
            logger.warning("Webhook verification failed")
            return Response(status_code=403)
        logger.info("Webhook verified")
        return PlainTextResponse(challenge)

    @app.post(bridge_config.webhook.path)
    async def receive_webhook(request: Request):
        try:
            payload: Any = await request.json()
        except ValueError:
            logger.warning("Webhook body is not JSON")
            return Response(status_code=200)
        logger.debug(f"Webhook payload: {payload}")
        await gateway.handle_webhook(payload)
        return Response(status_code=200)

    @app.websocket(bridge_config.server.signaling_path)
    async def signaling(websocket: WebSocket):
        await websocket.accept()
        logger.info(f"Browser WebSocket connected: {websocket.client}")
        await gateway.serve(WebSocketChannel(websocket))

    @app.get("/health")
    async def health():
        return JSONResponse({"status": "ok", "state": controller.sessions.state.value})

    @app.get("/status")
    async def status():
        return JSONResponse(controller.status())

    return app


def run_server(
    config: BridgeConfig | dict | str | Path | None = None,
    host: str | None = None,
    port: int | None = None,
) -> None:
    """Run the CallBridge server with uvicorn.

    Args:
        config: Bridge configuration.
        host: Override the listen host.
        port: Override the listen port.
    """
    import uvicorn

    bridge_config = load_config(config)
    app = create_app(bridge_config)

    uvicorn.run(
        app,
        host=host or bridge_config.server.host,
        port=port or bridge_config.server.port,
        log_level=bridge_config.logging.level.lower(),
    )
