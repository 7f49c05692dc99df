"""Engine options.

OIDCOptions gathers every setting and collaborator of one engine
instance. ``initialize()`` validates the options and fills in derived
defaults (sign-out scheme, audience, data formats, backchannel and
configuration provider); the orchestrator calls it once at construction.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta

import httpx

from rpengine.core.crypto.protector import AesGcmProtector, SecureDataFormat, string_data_format
from rpengine.core.logging import DEFAULT_MAX_RESPONSE_SIZE, LoggingAsyncClient, ProtocolLogger
from rpengine.core.oidc.events import OIDCEvents
from rpengine.core.oidc.exceptions import ConfigurationError
from rpengine.core.oidc.message import RedirectBehavior, ResponseMode, ResponseType
from rpengine.core.oidc.metadata import (
    DEFAULT_AUTOMATIC_REFRESH_INTERVAL,
    DEFAULT_REFRESH_INTERVAL,
    ConfigurationProvider,
    DiscoveryConfigurationProvider,
    ProviderConfiguration,
    StaticConfigurationProvider,
    build_metadata_address,
)
from rpengine.core.oidc.properties import AuthProperties, properties_data_format
from rpengine.core.oidc.validation import (
    JwtTokenValidator,
    ProtocolValidator,
    TokenValidationParameters,
    TokenValidator,
)

logger = logging.getLogger(__name__)

DEFAULT_SCHEME = "OpenIdConnect"
DEFAULT_SIGN_IN_SCHEME = "Cookies"

# Purpose chain root for every protector derived by the engine
PROTECTOR_PURPOSE = "rpengine.oidc"


@dataclass
class OIDCOptions:
    """Settings and collaborators of one relying-party engine.

    Exactly one configuration source is needed: ``configuration`` (a
    static snapshot), ``configuration_provider``, ``metadata_address`` or
    ``authority`` (from which the metadata address is derived).
    """

    client_id: str = ""
    client_secret: str | None = None

    # Provider configuration sources
    authority: str | None = None
    metadata_address: str | None = None
    configuration: ProviderConfiguration | None = None
    configuration_provider: ConfigurationProvider | None = None
    require_https_metadata: bool = True
    automatic_refresh_interval: timedelta = DEFAULT_AUTOMATIC_REFRESH_INTERVAL
    refresh_interval: timedelta = DEFAULT_REFRESH_INTERVAL

    # Schemes
    scheme: str = DEFAULT_SCHEME
    sign_in_scheme: str | None = DEFAULT_SIGN_IN_SCHEME
    sign_out_scheme: str | None = None

    # Paths handled by the engine
    callback_path: str = "/signin-oidc"
    signed_out_callback_path: str = "/signout-callback-oidc"
    remote_sign_out_path: str = "/signout-oidc"
    signed_out_redirect_uri: str | None = "/"

    # Authorization request
    response_type: str = ResponseType.CODE_ID_TOKEN
    response_mode: str = ResponseMode.FORM_POST
    scope: list[str] = field(default_factory=lambda: ["openid", "profile"])
    resource: str | None = None
    redirect_behavior: str = RedirectBehavior.REDIRECT_GET

    # Callback behavior
    skip_unrecognized_requests: bool = False
    save_tokens: bool = False
    get_claims_from_user_info_endpoint: bool = False
    use_token_lifetime: bool = True
    refresh_on_issuer_key_not_found: bool = True
    remote_authentication_timeout: timedelta = timedelta(minutes=15)

    # Backchannel
    backchannel: httpx.AsyncClient | None = None
    backchannel_timeout: timedelta = timedelta(seconds=60)
    max_response_buffer_size: int = DEFAULT_MAX_RESPONSE_SIZE
    protocol_logger: ProtocolLogger | None = None

    # Data protection
    data_protection_key: str | None = None
    protector: AesGcmProtector | None = None
    state_data_format: SecureDataFormat[AuthProperties] | None = None
    string_data_format: SecureDataFormat[str] | None = None

    # Collaborators
    events: OIDCEvents = field(default_factory=OIDCEvents)
    token_validation_parameters: TokenValidationParameters = field(default_factory=TokenValidationParameters)
    token_validator: TokenValidator = field(default_factory=JwtTokenValidator)
    protocol_validator: ProtocolValidator = field(default_factory=ProtocolValidator)

    @property
    def nonce_lifetime(self) -> timedelta:
        return self.protocol_validator.nonce_lifetime

    def validate(self) -> None:
        """Check the options.

        Raises:
            ConfigurationError: If a required setting is missing or invalid.
        """
        if not self.client_id:
            raise ConfigurationError("Options.client_id must be provided")
        if not self.callback_path:
            raise ConfigurationError("Options.callback_path must be provided")
        if not self.sign_in_scheme:
            raise ConfigurationError("Options.sign_in_scheme is required")
        if (
            self.configuration is None
            and self.configuration_provider is None
            and not self.metadata_address
            and not self.authority
        ):
            raise ConfigurationError(
                "Provide authority, metadata_address, configuration or configuration_provider"
            )

        address = self.metadata_address or (build_metadata_address(self.authority) if self.authority else None)
        if (
            self.configuration is None
            and self.configuration_provider is None
            and address
            and self.require_https_metadata
            and not address.lower().startswith("https://")
        ):
            raise ConfigurationError(
                "The metadata_address or authority must use HTTPS unless disabled for development "
                "by setting require_https_metadata=False."
            )

    def initialize(self) -> None:
        """Validate the options and derive defaults. Safe to call more than once.

        Raises:
            ConfigurationError: If the options are invalid.
        """
        self.validate()

        if not self.sign_out_scheme:
            self.sign_out_scheme = self.sign_in_scheme

        parameters = self.token_validation_parameters
        if not parameters.valid_audience and self.client_id:
            parameters.valid_audience = self.client_id

        if self.protector is None:
            if self.data_protection_key:
                self.protector = AesGcmProtector.from_secret(self.data_protection_key)
            else:
                logger.warning("No data protection key configured; state and nonces will not survive a restart")
                self.protector = AesGcmProtector(os.urandom(32))

        if self.state_data_format is None:
            self.state_data_format = properties_data_format(
                self.protector.create_protector(PROTECTOR_PURPOSE, self.scheme, "state", "v1")
            )
        if self.string_data_format is None:
            self.string_data_format = string_data_format(
                self.protector.create_protector(PROTECTOR_PURPOSE, "str", self.scheme, "v1")
            )

        if self.backchannel is None:
            self.backchannel = LoggingAsyncClient(
                protocol_logger=self.protocol_logger,
                max_response_size=self.max_response_buffer_size,
                timeout=self.backchannel_timeout.total_seconds(),
            )

        if self.configuration_provider is None:
            if self.configuration is not None:
                self.configuration_provider = StaticConfigurationProvider(self.configuration)
            else:
                if not self.metadata_address and self.authority:
                    self.metadata_address = build_metadata_address(self.authority)
                if not self.metadata_address:
                    raise ConfigurationError("Provide authority, metadata_address, configuration or configuration_provider")
                self.configuration_provider = DiscoveryConfigurationProvider(
                    self.metadata_address,
                    self.backchannel,
                    require_https=self.require_https_metadata,
                    automatic_refresh_interval=self.automatic_refresh_interval,
                    refresh_interval=self.refresh_interval,
                )
