"""Configuration system for CallBridge.

Supports loading from YAML files, dicts, environment variables, or
programmatic construction via Pydantic models. The config drives the
provider credentials, webhook verification, server binding, ICE servers
and the bridge's timing accommodations.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field

from callbridge.engine.base import IceServer


class ProviderConfig(BaseModel):
    """WhatsApp Cloud API credentials and endpoint."""

    graph_url: str = "https://graph.facebook.com"
    api_version: str = "v19.0"
    phone_number_id: str = ""
    access_token: str = ""
    timeout: float = 10.0


class WebhookConfig(BaseModel):
    """Webhook ingress settings."""

    path: str = "/call-events"
    verify_token: str = "my_secret_token"


class ServerConfig(BaseModel):
    """HTTP/WebSocket server binding."""

    host: str = "0.0.0.0"
    port: int = 3000
    signaling_path: str = "/ws"


class IceServerConfig(BaseModel):
    """A STUN/TURN server entry."""

    urls: str | list[str]
    username: str | None = None
    credential: str | None = None


class IceConfig(BaseModel):
    """Network traversal servers shared by every leg."""

    servers: list[IceServerConfig] = Field(
        default_factory=lambda: [IceServerConfig(urls="stun:stun.relay.metered.ca:80")]
    )

    def to_ice_servers(self) -> list[IceServer]:
        return [
            IceServer(urls=s.urls, username=s.username, credential=s.credential)
            for s in self.servers
        ]


class TimingConfig(BaseModel):
    """Bounded waits and provider timing accommodations, in seconds."""

    # Wait for the provider leg's first inbound track before answering
    provider_track_wait: float = 5.0
    # Wait for ICE gathering before sending an outbound offer
    ice_gathering_wait: float = 5.0
    # Gap between pre_accept and accept
    accept_delay: float = 1.5
    # Keep offers around for late renegotiation before clearing them
    offer_grace: float = 5.0
    # Let the probe offer settle before checking permission
    permission_probe_delay: float = 0.5
    # Auto-call after a permission grant, and its single retry
    auto_call_delay: float = 1.0
    auto_call_retry_delay: float = 2.0


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"


class BridgeConfig(BaseModel):
    """Top-level CallBridge configuration.

    Examples:
        # Programmatic
        config = BridgeConfig(
            provider=ProviderConfig(phone_number_id="123", access_token="EAAG..."),
        )

        # From YAML
        config = BridgeConfig.from_yaml("callbridge.yaml")

        # Shorthand
        config = BridgeConfig.from_dict({
            "phone_number_id": "123",
            "access_token": "EAAG...",
            "port": 3000,
        })

        # From the process environment
        config = BridgeConfig.from_env()
    """

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    ice: IceConfig = Field(default_factory=IceConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> BridgeConfig:
        """Load configuration from a YAML file."""
        path = Path(path)
        with path.open() as f:
            data = yaml.safe_load(f) or {}
        return cls._from_raw(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BridgeConfig:
        """Load configuration from a dictionary.

        Supports both the full nested format and a flat shorthand format:

        Full format:
            {"provider": {"phone_number_id": "123"}, "server": {"port": 3000}}

        Shorthand format:
            {"phone_number_id": "123", "port": 3000, "verify_token": "..."}
        """
        return cls._from_raw(dict(data))

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> BridgeConfig:
        """Build configuration from environment variables.

        Recognized: PHONE_NUMBER_ID, ACCESS_TOKEN, VERIFY_TOKEN, PORT, HOST,
        ICE_SERVERS (comma separated URLs), GRAPH_API_VERSION, LOG_LEVEL.
        """
        env = os.environ if environ is None else environ
        data: dict[str, Any] = {}
        env_mappings = {
            "PHONE_NUMBER_ID": "phone_number_id",
            "ACCESS_TOKEN": "access_token",
            "VERIFY_TOKEN": "verify_token",
            "GRAPH_API_VERSION": "api_version",
            "HOST": "host",
            "PORT": "port",
            "LOG_LEVEL": "log_level",
        }
        for env_key, flat_key in env_mappings.items():
            if env.get(env_key):
                data[flat_key] = env[env_key]
        if env.get("ICE_SERVERS"):
            urls = [u.strip() for u in env["ICE_SERVERS"].split(",") if u.strip()]
            data["ice"] = {"servers": [{"urls": u} for u in urls]}
        return cls._from_raw(data)

    @classmethod
    def _from_raw(cls, data: dict[str, Any]) -> BridgeConfig:
        """Normalize and construct config from a raw dict."""
        # Map flat keys to nested structure
        flat_mappings = {
            "phone_number_id": ("provider", "phone_number_id"),
            "access_token": ("provider", "access_token"),
            "api_version": ("provider", "api_version"),
            "graph_url": ("provider", "graph_url"),
            "verify_token": ("webhook", "verify_token"),
            "webhook_path": ("webhook", "path"),
            "host": ("server", "host"),
            "port": ("server", "port"),
            "signaling_path": ("server", "signaling_path"),
            "log_level": ("logging", "level"),
        }

        for flat_key, (section, nested_key) in flat_mappings.items():
            if flat_key in data:
                if section not in data:
                    data[section] = {}
                data[section][nested_key] = data.pop(flat_key)

        return cls(**data)


def load_config(source: str | Path | dict[str, Any] | BridgeConfig | None = None) -> BridgeConfig:
    """Load a BridgeConfig from any supported source.

    Args:
        source: A YAML file path (str/Path), a dict, an existing
            BridgeConfig, or None to read the process environment.

    Returns:
        A BridgeConfig instance.
    """
    if source is None:
        return BridgeConfig.from_env()
    if isinstance(source, BridgeConfig):
        return source
    if isinstance(source, dict):
        return BridgeConfig.from_dict(source)
    if isinstance(source, (str, Path)):
        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        return BridgeConfig.from_yaml(path)
    raise TypeError(f"Cannot load config from {type(source)}")


# Default YAML template for `callbridge init`
DEFAULT_CONFIG_YAML = """\
# CallBridge Configuration

provider:
  graph_url: https://graph.facebook.com
  api_version: v19.0
  phone_number_id: ""     # WhatsApp Business phone number ID
  access_token: ""        # System user access token

webhook:
  path: /call-events
  verify_token: my_secret_token

server:
  host: 0.0.0.0
  port: 3000
  signaling_path: /ws

ice:
  servers:
    - urls: stun:stun.relay.metered.ca:80
    # - urls: turn:relay.example.com:3478
    #   username: user
    #   credential: secret

timing:
  provider_track_wait: 5.0
  ice_gathering_wait: 5.0
  accept_delay: 1.5
  offer_grace: 5.0

logging:
  level: INFO
"""
