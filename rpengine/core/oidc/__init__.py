"""OpenID Connect relying-party engine."""

from rpengine.core.oidc.correlation import CorrelationGuard
from rpengine.core.oidc.events import (
    AuthenticationFailedContext,
    AuthorizationCodeReceivedContext,
    Continue,
    Handled,
    MessageReceivedContext,
    OIDCEvents,
    RedirectContext,
    RemoteFailureContext,
    RemoteSignOutContext,
    Skipped,
    TicketReceivedContext,
    TokenResponseReceivedContext,
    TokenValidatedContext,
    UserInformationReceivedContext,
)
from rpengine.core.oidc.exceptions import (
    AuthenticationError,
    ConfigurationError,
    CorrelationError,
    InvalidTokenTypeError,
    MetadataRetrievalError,
    OIDCError,
    ProtocolError,
    ProtocolValidationError,
    SecurityTokenError,
    SignatureKeyNotFoundError,
    StateError,
    UnsupportedRedirectBehaviorError,
)
from rpengine.core.oidc.handler import (
    AuthenticationOrchestrator,
    CallbackFlow,
    ChallengeFlow,
    SignOutFlow,
)
from rpengine.core.oidc.http import CookieOptions, RequestContext, ResponseContext, ResponseCookie
from rpengine.core.oidc.message import (
    ParameterNames,
    ProtocolMessage,
    RedirectBehavior,
    ResponseMode,
    ResponseType,
)
from rpengine.core.oidc.metadata import (
    ConfigurationCache,
    ConfigurationProvider,
    DiscoveryConfigurationProvider,
    ProviderConfiguration,
    StaticConfigurationProvider,
)
from rpengine.core.oidc.options import OIDCOptions
from rpengine.core.oidc.properties import AuthProperties, AuthToken, Claim, ClaimsIdentity, Ticket
from rpengine.core.oidc.redeemer import CodeRedeemer, RedemptionResult
from rpengine.core.oidc.results import AuthenticateResult, RequestAction, RequestResult
from rpengine.core.oidc.signout import SignOutCoordinator
from rpengine.core.oidc.userinfo import UserInfoFetcher
from rpengine.core.oidc.validation import (
    JwtSecurityToken,
    JwtTokenValidator,
    ProtocolValidator,
    TokenValidationAdapter,
    TokenValidationParameters,
    TokenValidationResult,
    TokenValidator,
)

__all__ = [
    # Engine
    "AuthenticationOrchestrator",
    "CallbackFlow",
    "ChallengeFlow",
    "OIDCOptions",
    "SignOutFlow",
    # Components
    "CodeRedeemer",
    "CorrelationGuard",
    "RedemptionResult",
    "SignOutCoordinator",
    "UserInfoFetcher",
    # Events
    "AuthenticationFailedContext",
    "AuthorizationCodeReceivedContext",
    "Continue",
    "Handled",
    "MessageReceivedContext",
    "OIDCEvents",
    "RedirectContext",
    "RemoteFailureContext",
    "RemoteSignOutContext",
    "Skipped",
    "TicketReceivedContext",
    "TokenResponseReceivedContext",
    "TokenValidatedContext",
    "UserInformationReceivedContext",
    # Exceptions
    "AuthenticationError",
    "ConfigurationError",
    "CorrelationError",
    "InvalidTokenTypeError",
    "MetadataRetrievalError",
    "OIDCError",
    "ProtocolError",
    "ProtocolValidationError",
    "SecurityTokenError",
    "SignatureKeyNotFoundError",
    "StateError",
    "UnsupportedRedirectBehaviorError",
    # HTTP
    "CookieOptions",
    "RequestContext",
    "ResponseContext",
    "ResponseCookie",
    # Messages
    "ParameterNames",
    "ProtocolMessage",
    "RedirectBehavior",
    "ResponseMode",
    "ResponseType",
    # Metadata
    "ConfigurationCache",
    "ConfigurationProvider",
    "DiscoveryConfigurationProvider",
    "ProviderConfiguration",
    "StaticConfigurationProvider",
    # Properties and results
    "AuthProperties",
    "AuthToken",
    "AuthenticateResult",
    "Claim",
    "ClaimsIdentity",
    "RequestAction",
    "RequestResult",
    "Ticket",
    # Validation
    "JwtSecurityToken",
    "JwtTokenValidator",
    "ProtocolValidator",
    "TokenValidationAdapter",
    "TokenValidationParameters",
    "TokenValidationResult",
    "TokenValidator",
]
