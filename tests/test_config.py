"""Tests for configuration loading."""

import logging
from datetime import timedelta
from pathlib import Path

import pytest
import yaml

from rpengine.core.config import (
    ClientSettings,
    LoggingSettings,
    RPSettings,
    get_default_config_yaml,
    load_config,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop RPENGINE_* variables from the test environment."""
    import os

    for key in list(os.environ):
        if key.startswith("RPENGINE_"):
            monkeypatch.delenv(key)


class TestSettings:
    """Tests for the settings dataclasses."""

    def test_defaults(self) -> None:
        settings = RPSettings()

        assert settings.server.port == 5000
        assert settings.client.response_type == "code id_token"
        assert settings.client.scope == ["openid", "profile"]
        assert settings.logging.level == "INFO"

    def test_scope_string(self) -> None:
        client = ClientSettings.from_dict({"scope": "openid email offline_access"})
        assert client.scope == ["openid", "email", "offline_access"]

    def test_round_trip(self) -> None:
        settings = RPSettings.from_dict(
            {
                "server": {"port": 8080},
                "client": {"authority": "https://idp", "client_id": "app", "save_tokens": True},
                "logging": {"level": "DEBUG", "log_file": "/tmp/rp.log"},
            }
        )

        data = settings.to_dict()
        assert data["server"]["port"] == 8080
        assert data["client"]["save_tokens"] is True
        assert data["logging"]["log_file"] == "/tmp/rp.log"
        assert RPSettings.from_dict(data).to_dict() == data

    def test_logging_without_file(self) -> None:
        assert LoggingSettings.from_dict({}).log_file is None

    def test_to_options(self) -> None:
        settings = RPSettings.from_dict(
            {"client": {"authority": "https://idp", "client_id": "app", "backchannel_timeout": 5}}
        )
        events = object()

        options = settings.to_options(events=events)

        assert options.authority == "https://idp"
        assert options.client_id == "app"
        assert options.backchannel_timeout == timedelta(seconds=5)
        assert options.events is events

    def test_save(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "config.yaml"
        RPSettings.from_dict({"client": {"client_id": "app"}}).save(path)

        data = yaml.safe_load(path.read_text())
        assert data["client"]["client_id"] == "app"


class TestLoadConfig:
    """Tests for load_config."""

    def test_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        settings = load_config(tmp_path / "missing.yaml")

        assert settings.config_path is None
        assert settings.client.client_id == ""

    def test_file_values(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("client:\n  client_id: from-file\n  authority: https://idp.example.com\n")

        settings = load_config(path)

        assert settings.config_path == path
        assert settings.client.client_id == "from-file"

    def test_environment_overrides_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("client:\n  client_id: from-file\nserver:\n  port: 5000\n")
        monkeypatch.setenv("RPENGINE_CLIENT_ID", "from-env")
        monkeypatch.setenv("RPENGINE_PORT", "9000")
        monkeypatch.setenv("RPENGINE_SCOPE", "openid email")
        monkeypatch.setenv("RPENGINE_SAVE_TOKENS", "yes")
        monkeypatch.setenv("RPENGINE_LOG_FILE", "/var/log/rp.log")

        settings = load_config(path)

        assert settings.client.client_id == "from-env"
        assert settings.server.port == 9000
        assert settings.client.scope == ["openid", "email"]
        assert settings.client.save_tokens is True
        assert settings.logging.log_file == Path("/var/log/rp.log")

    def test_invalid_integer_keeps_default(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RPENGINE_PORT", "not-a-port")
        assert load_config(tmp_path / "missing.yaml").server.port == 5000

    def test_invalid_file_is_ignored(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("client: [unclosed")

        with caplog.at_level(logging.WARNING, logger="rpengine.core.config"):
            settings = load_config(path)

        assert settings.client.client_id == ""
        assert "Ignoring invalid config file" in caplog.text

    def test_default_yaml_loads(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text(get_default_config_yaml())

        settings = load_config(path)

        assert settings.client.authority == "https://login.example.com"
        assert settings.client.response_mode == "form_post"
        assert settings.client.data_protection_key is None
