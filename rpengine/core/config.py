"""Application configuration management.

Loads configuration from config.yaml files and environment variables.
Environment variables take precedence over config file settings.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from rpengine.core.oidc.message import RedirectBehavior, ResponseMode, ResponseType
from rpengine.core.oidc.options import OIDCOptions

logger = logging.getLogger(__name__)

# Default config locations
DEFAULT_CONFIG_DIR = Path.home() / ".rpengine"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

# Environment variable prefix
ENV_PREFIX = "RPENGINE_"


@dataclass
class ServerSettings:
    """Host application settings."""

    host: str = "127.0.0.1"
    port: int = 5000
    debug: bool = False
    secret_key: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServerSettings:
        return cls(
            host=data.get("host", "127.0.0.1"),
            port=data.get("port", 5000),
            debug=data.get("debug", False),
            secret_key=data.get("secret_key"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "debug": self.debug,
            "secret_key": self.secret_key,
        }


@dataclass
class ClientSettings:
    """Relying-party registration and protocol settings."""

    authority: str | None = None
    metadata_address: str | None = None
    client_id: str = ""
    client_secret: str | None = None
    response_type: str = ResponseType.CODE_ID_TOKEN
    response_mode: str = ResponseMode.FORM_POST
    scope: list[str] = field(default_factory=lambda: ["openid", "profile"])
    resource: str | None = None
    redirect_behavior: str = RedirectBehavior.REDIRECT_GET
    callback_path: str = "/signin-oidc"
    signed_out_callback_path: str = "/signout-callback-oidc"
    remote_sign_out_path: str = "/signout-oidc"
    signed_out_redirect_uri: str = "/"
    save_tokens: bool = False
    get_claims_from_user_info_endpoint: bool = False
    require_https_metadata: bool = True
    skip_unrecognized_requests: bool = False
    use_token_lifetime: bool = True
    backchannel_timeout: int = 60
    data_protection_key: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClientSettings:
        """Create ClientSettings from a dictionary.

        ``scope`` may be a list or a space separated string.
        """
        defaults = cls()
        scope = data.get("scope", defaults.scope)
        if isinstance(scope, str):
            scope = scope.split()
        return cls(
            authority=data.get("authority"),
            metadata_address=data.get("metadata_address"),
            client_id=data.get("client_id", ""),
            client_secret=data.get("client_secret"),
            response_type=data.get("response_type", defaults.response_type),
            response_mode=data.get("response_mode", defaults.response_mode),
            scope=list(scope),
            resource=data.get("resource"),
            redirect_behavior=data.get("redirect_behavior", defaults.redirect_behavior),
            callback_path=data.get("callback_path", defaults.callback_path),
            signed_out_callback_path=data.get("signed_out_callback_path", defaults.signed_out_callback_path),
            remote_sign_out_path=data.get("remote_sign_out_path", defaults.remote_sign_out_path),
            signed_out_redirect_uri=data.get("signed_out_redirect_uri", defaults.signed_out_redirect_uri),
            save_tokens=data.get("save_tokens", False),
            get_claims_from_user_info_endpoint=data.get("get_claims_from_user_info_endpoint", False),
            require_https_metadata=data.get("require_https_metadata", True),
            skip_unrecognized_requests=data.get("skip_unrecognized_requests", False),
            use_token_lifetime=data.get("use_token_lifetime", True),
            backchannel_timeout=data.get("backchannel_timeout", 60),
            data_protection_key=data.get("data_protection_key"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "authority": self.authority,
            "metadata_address": self.metadata_address,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "response_type": str(self.response_type),
            "response_mode": str(self.response_mode),
            "scope": list(self.scope),
            "resource": self.resource,
            "redirect_behavior": str(self.redirect_behavior),
            "callback_path": self.callback_path,
            "signed_out_callback_path": self.signed_out_callback_path,
            "remote_sign_out_path": self.remote_sign_out_path,
            "signed_out_redirect_uri": self.signed_out_redirect_uri,
            "save_tokens": self.save_tokens,
            "get_claims_from_user_info_endpoint": self.get_claims_from_user_info_endpoint,
            "require_https_metadata": self.require_https_metadata,
            "skip_unrecognized_requests": self.skip_unrecognized_requests,
            "use_token_lifetime": self.use_token_lifetime,
            "backchannel_timeout": self.backchannel_timeout,
            "data_protection_key": self.data_protection_key,
        }


@dataclass
class LoggingSettings:
    """Logging settings."""

    level: str = "INFO"
    trace_enabled: bool = False
    log_file: Path | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoggingSettings:
        return cls(
            level=data.get("level", "INFO"),
            trace_enabled=data.get("trace_enabled", False),
            log_file=Path(data["log_file"]) if data.get("log_file") else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "trace_enabled": self.trace_enabled,
            "log_file": str(self.log_file) if self.log_file else None,
        }


@dataclass
class RPSettings:
    """Main application configuration."""

    server: ServerSettings = field(default_factory=ServerSettings)
    client: ClientSettings = field(default_factory=ClientSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    config_path: Path | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], config_path: Path | None = None) -> RPSettings:
        """Create RPSettings from a dictionary."""
        return cls(
            server=ServerSettings.from_dict(data.get("server") or {}),
            client=ClientSettings.from_dict(data.get("client") or {}),
            logging=LoggingSettings.from_dict(data.get("logging") or {}),
            config_path=config_path,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "server": self.server.to_dict(),
            "client": self.client.to_dict(),
            "logging": self.logging.to_dict(),
        }

    def save(self, path: Path | None = None) -> None:
        """Save configuration to a YAML file.

        Args:
            path: Path to save to. Uses config_path or default if not specified.
        """
        save_path = path or self.config_path or DEFAULT_CONFIG_FILE
        save_path.parent.mkdir(parents=True, exist_ok=True)

        with open(save_path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False)

    def to_options(self, **overrides: Any) -> OIDCOptions:
        """Build engine options from the client settings.

        Args:
            **overrides: OIDCOptions fields to set on top of the settings
                (events, configuration, backchannel...).

        Returns:
            Options ready to hand to the orchestrator, which validates them.
        """
        client = self.client
        values: dict[str, Any] = {
            "authority": client.authority,
            "metadata_address": client.metadata_address,
            "client_id": client.client_id,
            "client_secret": client.client_secret,
            "response_type": client.response_type,
            "response_mode": client.response_mode,
            "scope": list(client.scope),
            "resource": client.resource,
            "redirect_behavior": client.redirect_behavior,
            "callback_path": client.callback_path,
            "signed_out_callback_path": client.signed_out_callback_path,
            "remote_sign_out_path": client.remote_sign_out_path,
            "signed_out_redirect_uri": client.signed_out_redirect_uri,
            "save_tokens": client.save_tokens,
            "get_claims_from_user_info_endpoint": client.get_claims_from_user_info_endpoint,
            "require_https_metadata": client.require_https_metadata,
            "skip_unrecognized_requests": client.skip_unrecognized_requests,
            "use_token_lifetime": client.use_token_lifetime,
            "backchannel_timeout": timedelta(seconds=client.backchannel_timeout),
            "data_protection_key": client.data_protection_key,
        }
        values.update(overrides)
        return OIDCOptions(**values)


def _get_env_bool(key: str, default: bool) -> bool:
    """Get a boolean from environment variable."""
    value = os.environ.get(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _get_env_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_env_str(key: str, default: str | None) -> str | None:
    value = os.environ.get(key)
    return value if value else default


def load_config(config_path: Path | None = None) -> RPSettings:
    """Load application configuration.

    Configuration is loaded in this order (later values override earlier):
    1. Default values
    2. config.yaml file (if exists)
    3. Environment variables

    Args:
        config_path: Path to config file. Uses default if not specified.

    Returns:
        RPSettings with merged settings.
    """
    config = RPSettings()

    file_path = config_path or DEFAULT_CONFIG_FILE
    if file_path.exists():
        try:
            with open(file_path) as f:
                data = yaml.safe_load(f) or {}
            config = RPSettings.from_dict(data, config_path=file_path)
        except (OSError, yaml.YAMLError, AttributeError, TypeError) as e:
            logger.warning(f"Ignoring invalid config file {file_path}: {e}")

    # Server settings
    server = config.server
    server.host = _get_env_str(f"{ENV_PREFIX}HOST", server.host) or server.host
    server.port = _get_env_int(f"{ENV_PREFIX}PORT", server.port)
    server.debug = _get_env_bool(f"{ENV_PREFIX}DEBUG", server.debug)
    server.secret_key = _get_env_str(f"{ENV_PREFIX}SECRET_KEY", server.secret_key)

    # Client settings
    client = config.client
    client.authority = _get_env_str(f"{ENV_PREFIX}AUTHORITY", client.authority)
    client.metadata_address = _get_env_str(f"{ENV_PREFIX}METADATA_ADDRESS", client.metadata_address)
    client.client_id = _get_env_str(f"{ENV_PREFIX}CLIENT_ID", client.client_id) or ""
    client.client_secret = _get_env_str(f"{ENV_PREFIX}CLIENT_SECRET", client.client_secret)
    client.response_type = _get_env_str(f"{ENV_PREFIX}RESPONSE_TYPE", client.response_type) or client.response_type
    client.response_mode = _get_env_str(f"{ENV_PREFIX}RESPONSE_MODE", client.response_mode) or client.response_mode

    if os.environ.get(f"{ENV_PREFIX}SCOPE"):
        client.scope = os.environ[f"{ENV_PREFIX}SCOPE"].split()

    client.save_tokens = _get_env_bool(f"{ENV_PREFIX}SAVE_TOKENS", client.save_tokens)
    client.get_claims_from_user_info_endpoint = _get_env_bool(
        f"{ENV_PREFIX}GET_CLAIMS_FROM_USER_INFO", client.get_claims_from_user_info_endpoint
    )
    client.require_https_metadata = _get_env_bool(f"{ENV_PREFIX}REQUIRE_HTTPS_METADATA", client.require_https_metadata)
    client.backchannel_timeout = _get_env_int(f"{ENV_PREFIX}BACKCHANNEL_TIMEOUT", client.backchannel_timeout)
    client.data_protection_key = _get_env_str(f"{ENV_PREFIX}DATA_PROTECTION_KEY", client.data_protection_key)

    # Logging settings
    log = config.logging
    log.level = _get_env_str(f"{ENV_PREFIX}LOG_LEVEL", log.level) or log.level
    log.trace_enabled = _get_env_bool(f"{ENV_PREFIX}LOG_TRACE", log.trace_enabled)
    if os.environ.get(f"{ENV_PREFIX}LOG_FILE"):
        log.log_file = Path(os.environ[f"{ENV_PREFIX}LOG_FILE"])

    return config


def get_default_config_yaml() -> str:
    """Get the default config.yaml content as a string.

    Useful for generating example configuration files.
    """
    return """\
# rpengine Configuration File
# Environment variables override these settings (prefix: RPENGINE_)

server:
  # Bind address of the host application
  host: "127.0.0.1"

  # Port of the host application
  port: 5000

  # Enable debug mode (not recommended for production)
  debug: false

  # Flask session signing key; a random key is used when unset
  # secret_key: "change-me"

client:
  # Identity provider; the discovery document is read from
  # <authority>/.well-known/openid-configuration
  authority: "https://login.example.com"

  # Explicit discovery document URL (overrides authority)
  # metadata_address: "https://login.example.com/.well-known/openid-configuration"

  client_id: ""
  # client_secret: ""

  # code, "code id_token", "id_token"...
  response_type: "code id_token"

  # query, fragment or form_post
  response_mode: "form_post"

  scope:
    - openid
    - profile

  # redirect_get or form_post
  redirect_behavior: "redirect_get"

  callback_path: "/signin-oidc"
  signed_out_callback_path: "/signout-callback-oidc"
  remote_sign_out_path: "/signout-oidc"
  signed_out_redirect_uri: "/"

  # Store access/id/refresh tokens in the session
  save_tokens: false

  # Add claims from the userinfo endpoint
  get_claims_from_user_info_endpoint: false

  # Only disable for local development against an http:// provider
  require_https_metadata: true

  # Backchannel timeout in seconds
  backchannel_timeout: 60

  # Key for state and nonce protection; a random key is used when unset
  # data_protection_key: "change-me"

logging:
  # ERROR, INFO, DEBUG or TRACE
  level: "INFO"

  # Log full HTTP bodies at TRACE level, tokens and secrets included
  trace_enabled: false

  # log_file: ~/.rpengine/rpengine.log
"""
