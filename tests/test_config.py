"""Tests for the CallBridge configuration system."""

import pytest
import yaml

from callbridge.config import DEFAULT_CONFIG_YAML, BridgeConfig, load_config
from callbridge.engine.base import IceServer


class TestBridgeConfig:

    def test_default_config(self):
        config = BridgeConfig()
        assert config.provider.api_version == "v19.0"
        assert config.webhook.path == "/call-events"
        assert config.webhook.verify_token == "my_secret_token"
        assert config.server.port == 3000
        assert config.server.signaling_path == "/ws"
        assert config.timing.provider_track_wait == 5.0
        assert config.timing.accept_delay == 1.5
        assert config.timing.auto_call_retry_delay == 2.0
        assert config.ice.servers[0].urls == "stun:stun.relay.metered.ca:80"

    def test_from_dict_full(self):
        config = BridgeConfig.from_dict({
            "provider": {"phone_number_id": "123", "access_token": "tok"},
            "server": {"port": 8080},
            "timing": {"accept_delay": 0.5},
        })
        assert config.provider.phone_number_id == "123"
        assert config.server.port == 8080
        assert config.timing.accept_delay == 0.5

    def test_from_dict_shorthand(self):
        config = BridgeConfig.from_dict({
            "phone_number_id": "123",
            "access_token": "tok",
            "verify_token": "secret",
            "port": 4000,
            "log_level": "DEBUG",
        })
        assert config.provider.phone_number_id == "123"
        assert config.provider.access_token == "tok"
        assert config.webhook.verify_token == "secret"
        assert config.server.port == 4000
        assert config.logging.level == "DEBUG"

    def test_from_dict_does_not_mutate_input(self):
        data = {"port": 4000}
        BridgeConfig.from_dict(data)
        assert data == {"port": 4000}

    def test_from_env(self):
        config = BridgeConfig.from_env({
            "PHONE_NUMBER_ID": "123",
            "ACCESS_TOKEN": "tok",
            "VERIFY_TOKEN": "secret",
            "PORT": "5000",
            "ICE_SERVERS": "stun:a.example:3478, turn:b.example:3478",
            "GRAPH_API_VERSION": "v20.0",
        })
        assert config.provider.phone_number_id == "123"
        assert config.provider.api_version == "v20.0"
        assert config.webhook.verify_token == "secret"
        assert config.server.port == 5000
        assert [s.urls for s in config.ice.servers] == ["stun:a.example:3478", "turn:b.example:3478"]

    def test_from_env_empty_uses_defaults(self):
        config = BridgeConfig.from_env({})
        assert config.server.port == 3000

    def test_to_ice_servers(self):
        config = BridgeConfig.from_dict({
            "ice": {"servers": [{"urls": "turn:relay.example:3478", "username": "u", "credential": "p"}]},
        })
        assert config.ice.to_ice_servers() == [
            IceServer(urls="turn:relay.example:3478", username="u", credential="p")
        ]

    def test_default_yaml_is_valid(self):
        """The default YAML template should parse into a valid config."""
        data = yaml.safe_load(DEFAULT_CONFIG_YAML)
        config = BridgeConfig.from_dict(data)
        assert config.webhook.path == "/call-events"
        assert config.server.port == 3000


class TestLoadConfig:

    def test_from_bridgeconfig(self):
        original = BridgeConfig()
        assert load_config(original) is original

    def test_from_dict(self):
        assert load_config({"port": 1234}).server.port == 1234

    def test_from_yaml_file(self, tmp_path):
        path = tmp_path / "callbridge.yaml"
        path.write_text("server:\n  port: 7000\nwebhook:\n  verify_token: abc\n")
        config = load_config(str(path))
        assert config.server.port == 7000
        assert config.webhook.verify_token == "abc"

    def test_empty_yaml_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(path).server.port == 3000

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yaml")

    def test_none_reads_environment(self, monkeypatch):
        monkeypatch.setenv("PORT", "6100")
        assert load_config(None).server.port == 6100

    def test_bad_type(self):
        with pytest.raises(TypeError):
            load_config(42)
