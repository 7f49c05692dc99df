"""Error types raised or carried by the OIDC engine.

Two families exist:

- ``AuthenticationError`` subclasses describe why a particular login or
  sign-out attempt failed. They are carried inside result objects and
  surfaced to the caller as an authentication failure.
- ``ConfigurationError`` subclasses indicate operator misconfiguration
  (missing endpoints, unsupported delivery mode). They are raised
  synchronously and never converted into a normal failure result.
"""

from __future__ import annotations


class OIDCError(Exception):
    """Base class for all engine errors."""


class AuthenticationError(OIDCError):
    """A login attempt failed validation or was rejected by the provider."""


class ProtocolError(AuthenticationError):
    """The provider returned an OAuth2/OIDC error, or a response could not be understood."""

    def __init__(
        self,
        message: str,
        error: str | None = None,
        error_description: str | None = None,
        error_uri: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.error_description = error_description
        self.error_uri = error_uri
        self.status_code = status_code

    @classmethod
    def from_error_fields(
        cls,
        error: str | None,
        error_description: str | None,
        error_uri: str | None,
        status_code: int | None = None,
    ) -> ProtocolError:
        """Build the error reported when a message carries an ``error`` parameter."""
        description = error_description or "error_description is null"
        uri = error_uri or "error_uri is null"
        message = f"Message contains error: '{error}', error_description: '{description}', error_uri: '{uri}'."
        if status_code is not None:
            message = f"{message} Status code: {status_code}."
        return cls(
            message,
            error=error,
            error_description=error_description,
            error_uri=error_uri,
            status_code=status_code,
        )


class ProtocolValidationError(ProtocolError):
    """The response failed OIDC protocol validation (nonce, c_hash, at_hash, claims)."""


class CorrelationError(AuthenticationError):
    """The correlation id in state does not match the one issued at challenge time."""


class StateError(AuthenticationError):
    """The ``state`` parameter is missing or could not be unprotected."""


class SecurityTokenError(AuthenticationError):
    """A token could not be read or failed validation."""


class SignatureKeyNotFoundError(SecurityTokenError):
    """No candidate signing key matched the token, possibly because of a key rollover."""


class InvalidTokenTypeError(SecurityTokenError):
    """The validator returned something other than a signed JWT."""


class ConfigurationError(OIDCError):
    """The engine is misconfigured; raised synchronously rather than reported as a failure."""

    @classmethod
    def not_initialized(cls, option: str) -> ConfigurationError:
        """Build the error raised when a derived option is still unset."""
        return cls(f"Options.{option} is not set; call OIDCOptions.initialize() before use")


class UnsupportedRedirectBehaviorError(ConfigurationError):
    """The configured message delivery mode is not supported."""


class MetadataRetrievalError(OIDCError):
    """Provider metadata or signing keys could not be retrieved."""
