"""ID token validation.

Three layers:

- ``JwtTokenValidator`` verifies a compact JWS with PyJWT against a set
  of candidate keys and checks lifetime, issuer and audience, producing a
  ClaimsIdentity and a JwtSecurityToken.
- ``TokenValidationAdapter`` merges the provider's current issuer and
  signing keys into the validation parameters before calling the
  validator, and turns the outcome into a ticket.
- ``ProtocolValidator`` applies the OIDC response rules on top of a
  validated token: nonce, ``c_hash``/``at_hash``, required claims and
  userinfo subject consistency.

Validation failures are returned as values; nothing here raises for a
bad token.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import secrets
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import jwt
from jwt import PyJWK

from rpengine.core.oidc.exceptions import (
    InvalidTokenTypeError,
    ProtocolValidationError,
    SecurityTokenError,
    SignatureKeyNotFoundError,
)
from rpengine.core.oidc.message import ProtocolMessage
from rpengine.core.oidc.metadata import ProviderConfiguration
from rpengine.core.oidc.properties import (
    DEFAULT_ISSUER,
    SHORT_CLAIM_TYPE_PROPERTY,
    AuthProperties,
    Claim,
    ClaimsIdentity,
    Ticket,
    claim_value_to_string,
    claim_value_type,
)
from rpengine.core.oidc.utils import compute_token_hash, decode_jwt, from_unix_time

logger = logging.getLogger(__name__)

# Secure algorithms (asymmetric only - symmetric algs require shared secret)
SECURE_ALGORITHMS = frozenset(
    {
        "RS256",
        "RS384",
        "RS512",  # RSA
        "ES256",
        "ES384",
        "ES512",  # ECDSA
        "PS256",
        "PS384",
        "PS512",  # RSA-PSS
        "EdDSA",  # Edwards-curve
    }
)

# JWS algorithm family to JWK key type
_KEY_TYPES = {"RS": "RSA", "PS": "RSA", "ES": "EC", "Ed": "OKP"}

DEFAULT_MAX_TOKEN_SIZE = 250 * 1024
DEFAULT_CLOCK_SKEW = timedelta(minutes=5)


@dataclass
class JwtSecurityToken:
    """A JWT whose signature and claims passed validation."""

    raw: str
    header: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def algorithm(self) -> str | None:
        return self.header.get("alg")

    @property
    def key_id(self) -> str | None:
        return self.header.get("kid")

    @property
    def issuer(self) -> str | None:
        return self.payload.get("iss")

    @property
    def subject(self) -> str | None:
        value = self.payload.get("sub")
        return claim_value_to_string(value) if value is not None else None

    @property
    def nonce(self) -> str | None:
        return self.payload.get("nonce")

    @property
    def audiences(self) -> list[str]:
        aud = self.payload.get("aud")
        if aud is None:
            return []
        return [aud] if isinstance(aud, str) else [str(a) for a in aud]

    @property
    def valid_from(self) -> datetime | None:
        return from_unix_time(self.payload.get("nbf"))

    @property
    def valid_to(self) -> datetime | None:
        return from_unix_time(self.payload.get("exp"))


@dataclass
class TokenValidationParameters:
    """Rules applied by the token validator.

    ``valid_audience`` defaults to the client id when options are
    initialized. Provider issuer and keys are merged per validation and
    never written back here.
    """

    valid_issuer: str | None = None
    valid_issuers: list[str] = field(default_factory=list)
    valid_audience: str | None = None
    valid_audiences: list[str] = field(default_factory=list)
    issuer_signing_keys: list[PyJWK] = field(default_factory=list)
    valid_algorithms: frozenset[str] = SECURE_ALGORITHMS
    require_signed_tokens: bool = True
    require_expiration_time: bool = True
    validate_issuer: bool = True
    validate_audience: bool = True
    validate_lifetime: bool = True
    clock_skew: timedelta = DEFAULT_CLOCK_SKEW
    authentication_type: str = "AuthenticationTypes.Federation"
    name_claim_type: str = "name"

    def copy(self) -> TokenValidationParameters:
        return dataclasses.replace(
            self,
            valid_issuers=list(self.valid_issuers),
            valid_audiences=list(self.valid_audiences),
            issuer_signing_keys=list(self.issuer_signing_keys),
        )

    def all_issuers(self) -> list[str]:
        issuers = [self.valid_issuer] if self.valid_issuer else []
        return issuers + [i for i in self.valid_issuers if i]

    def all_audiences(self) -> list[str]:
        audiences = [self.valid_audience] if self.valid_audience else []
        return audiences + [a for a in self.valid_audiences if a]


class TokenValidator(Protocol):
    """Contract for the component that verifies id_tokens."""

    def can_read(self, token: str | None) -> bool: ...

    def validate(self, token: str, parameters: TokenValidationParameters) -> tuple[ClaimsIdentity, Any]:
        """Validate a token.

        Raises:
            SecurityTokenError: If the token fails validation.
        """
        ...


class JwtTokenValidator:
    """PyJWT-backed validator for compact JWS id_tokens."""

    def __init__(
        self,
        max_token_size: int = DEFAULT_MAX_TOKEN_SIZE,
        claim_type_map: Mapping[str, str] | None = None,
    ) -> None:
        """Initialize the validator.

        Args:
            max_token_size: Largest token accepted by ``can_read``.
            claim_type_map: Optional renames for inbound claim types. A
                renamed claim remembers its original name in the
                ``short_type`` claim property.
        """
        self.max_token_size = max_token_size
        self.claim_type_map = dict(claim_type_map or {})

    def can_read(self, token: str | None) -> bool:
        if not token or len(token) > self.max_token_size:
            return False
        return token.count(".") == 2

    def validate(self, token: str, parameters: TokenValidationParameters) -> tuple[ClaimsIdentity, JwtSecurityToken]:
        decoded = decode_jwt(token)
        if not decoded.is_valid_format:
            raise SecurityTokenError(f"Unable to read the token: {decoded.error}")

        alg = decoded.algorithm
        if alg is None or alg == "none" or not decoded.signature:
            if parameters.require_signed_tokens:
                raise SecurityTokenError("Unable to validate signature, the token is not signed.")
            payload = decoded.payload
        else:
            payload = self._verify_signature(token, alg, decoded.key_id, parameters)

        security_token = JwtSecurityToken(raw=token, header=decoded.header, payload=payload)
        self._validate_lifetime(security_token, parameters)
        self._validate_audience(security_token, parameters)
        self._validate_issuer(security_token, parameters)

        return self._create_identity(security_token, parameters), security_token

    def _verify_signature(
        self,
        token: str,
        alg: str,
        kid: str | None,
        parameters: TokenValidationParameters,
    ) -> dict[str, Any]:
        if alg not in parameters.valid_algorithms:
            raise SecurityTokenError(f"The algorithm '{alg}' is not allowed")

        key_type = _KEY_TYPES.get(alg[:2])
        candidates = [key for key in parameters.issuer_signing_keys if key.key_type == key_type]
        if kid:
            candidates = [key for key in candidates if key.key_id == kid]
        if not candidates:
            raise SignatureKeyNotFoundError(
                f"Signature validation failed. Unable to match key: kid '{kid or 'not present'}'."
            )

        for key in candidates:
            try:
                payload: dict[str, Any] = jwt.decode(
                    token,
                    key.key,
                    algorithms=[alg],
                    options={
                        "verify_exp": False,
                        "verify_nbf": False,
                        "verify_iat": False,
                        "verify_aud": False,
                        "verify_iss": False,
                    },
                )
                return payload
            except jwt.exceptions.InvalidSignatureError:
                logger.debug(f"Signature did not verify with key '{key.key_id}'")
            except jwt.exceptions.InvalidTokenError as e:
                raise SecurityTokenError(f"Unable to validate the token: {e}") from e

        raise SecurityTokenError("Signature validation failed. No candidate key verified the signature.")

    def _validate_lifetime(self, token: JwtSecurityToken, parameters: TokenValidationParameters) -> None:
        expires = token.valid_to
        if expires is None:
            if parameters.require_expiration_time:
                raise SecurityTokenError("Lifetime validation failed. The token is missing an expiration time.")
            return
        if not parameters.validate_lifetime:
            return

        now = datetime.now(UTC)
        if expires + parameters.clock_skew < now:
            raise SecurityTokenError(f"Lifetime validation failed. The token expired at {expires.isoformat()}.")
        not_before = token.valid_from
        if not_before is not None and not_before - parameters.clock_skew > now:
            raise SecurityTokenError(f"Lifetime validation failed. The token is not valid before {not_before.isoformat()}.")

    def _validate_audience(self, token: JwtSecurityToken, parameters: TokenValidationParameters) -> None:
        if not parameters.validate_audience:
            return
        valid = parameters.all_audiences()
        if not valid:
            raise SecurityTokenError("Audience validation failed. No valid audiences are configured.")
        if not any(aud in valid for aud in token.audiences):
            raise SecurityTokenError(
                f"Audience validation failed. Audiences: '{', '.join(token.audiences)}' did not match: '{', '.join(valid)}'."
            )

    def _validate_issuer(self, token: JwtSecurityToken, parameters: TokenValidationParameters) -> None:
        if not parameters.validate_issuer:
            return
        valid = parameters.all_issuers()
        if not valid:
            raise SecurityTokenError("Issuer validation failed. No valid issuers are configured.")
        if token.issuer not in valid:
            raise SecurityTokenError(f"Issuer validation failed. Issuer: '{token.issuer}' did not match: '{', '.join(valid)}'.")

    def _create_identity(self, token: JwtSecurityToken, parameters: TokenValidationParameters) -> ClaimsIdentity:
        issuer = token.issuer or DEFAULT_ISSUER
        identity = ClaimsIdentity(
            authentication_type=parameters.authentication_type,
            name_claim_type=parameters.name_claim_type,
        )
        for claim_type, value in token.payload.items():
            if value is None:
                continue
            mapped_type = self.claim_type_map.get(claim_type, claim_type)
            claim_properties = {SHORT_CLAIM_TYPE_PROPERTY: claim_type} if mapped_type != claim_type else {}
            values = value if isinstance(value, list) else [value]
            for item in values:
                identity.add_claim(
                    Claim(
                        type=mapped_type,
                        value=claim_value_to_string(item),
                        value_type=claim_value_type(item),
                        issuer=issuer,
                        original_issuer=issuer,
                        properties=dict(claim_properties),
                    )
                )
        return identity


@dataclass
class TokenValidationResult:
    """Outcome of validating one id_token."""

    ticket: Ticket | None = None
    security_token: JwtSecurityToken | None = None
    error: SecurityTokenError | None = None

    @property
    def is_valid(self) -> bool:
        return self.error is None and self.ticket is not None


class TokenValidationAdapter:
    """Runs the token validator with provider metadata merged in."""

    def __init__(
        self,
        validator: TokenValidator,
        parameters: TokenValidationParameters,
        scheme: str,
        use_token_lifetime: bool = True,
    ) -> None:
        self.validator = validator
        self.parameters = parameters
        self.scheme = scheme
        self.use_token_lifetime = use_token_lifetime

    def build_parameters(
        self,
        configuration: ProviderConfiguration | None,
        require_signed_tokens: bool = True,
    ) -> TokenValidationParameters:
        """Copy the configured parameters and merge the provider's issuer and keys.

        The provider issuer fills ``valid_issuer`` when none is configured,
        otherwise it is appended to ``valid_issuers``. Provider keys are
        appended to the configured keys.
        """
        parameters = self.parameters.copy()
        parameters.require_signed_tokens = parameters.require_signed_tokens and require_signed_tokens
        if configuration is None:
            return parameters

        if not parameters.valid_issuer:
            parameters.valid_issuer = configuration.issuer
        elif configuration.issuer:
            parameters.valid_issuers.append(configuration.issuer)
        parameters.issuer_signing_keys.extend(configuration.signing_keys)
        return parameters

    def validate(
        self,
        id_token: str | None,
        properties: AuthProperties,
        configuration: ProviderConfiguration | None,
        require_signed_tokens: bool = True,
    ) -> TokenValidationResult:
        """Validate an id_token and wrap the principal in a ticket.

        When ``use_token_lifetime`` is set, the token's ``nbf``/``exp``
        become the properties' issued/expires timestamps.
        """
        if not id_token or not self.validator.can_read(id_token):
            logger.debug("Unable to read the id_token")
            return TokenValidationResult(
                error=SecurityTokenError(f"Unable to validate the 'id_token', no suitable validator was found for: '{id_token}'.")
            )

        parameters = self.build_parameters(configuration, require_signed_tokens)
        try:
            principal, security_token = self.validator.validate(id_token, parameters)
        except SecurityTokenError as e:
            logger.debug(f"id_token validation failed: {e}")
            return TokenValidationResult(error=e)

        if not isinstance(security_token, JwtSecurityToken):
            logger.debug(f"The validated security token is not a JWT: {type(security_token).__name__}")
            return TokenValidationResult(
                error=InvalidTokenTypeError(
                    f"The validated security token is not a JwtSecurityToken: '{type(security_token).__name__}'."
                )
            )

        if self.use_token_lifetime:
            if security_token.valid_from is not None:
                properties.issued_utc = security_token.valid_from
            if security_token.valid_to is not None:
                properties.expires_utc = security_token.valid_to

        return TokenValidationResult(
            ticket=Ticket(principal=principal, properties=properties, scheme=self.scheme),
            security_token=security_token,
        )


@dataclass
class ProtocolValidationContext:
    """Inputs for one protocol validation step."""

    client_id: str | None = None
    protocol_message: ProtocolMessage | None = None
    validated_id_token: JwtSecurityToken | None = None
    nonce: str | None = None
    user_info_response: str | None = None


class ProtocolValidator:
    """OIDC response rules applied to validated id_tokens.

    Every ``validate_*`` method returns None when the rules hold and a
    ProtocolValidationError otherwise.
    """

    def __init__(
        self,
        require_nonce: bool = True,
        require_time_stamp_in_nonce: bool = True,
        nonce_lifetime: timedelta = timedelta(hours=1),
        require_sub: bool = True,
        required_claims: Sequence[str] = ("iss", "aud", "exp", "iat"),
    ) -> None:
        self.require_nonce = require_nonce
        self.require_time_stamp_in_nonce = require_time_stamp_in_nonce
        self.nonce_lifetime = nonce_lifetime
        self.require_sub = require_sub
        self.required_claims = tuple(required_claims)

    def generate_nonce(self) -> str:
        """Generate a nonce, prefixed with the current Unix time in ms when timestamps are required."""
        random_part = secrets.token_urlsafe(32)
        if self.require_time_stamp_in_nonce:
            return f"{int(time.time() * 1000)}.{random_part}"
        return random_part

    def validate_authentication_response(self, context: ProtocolValidationContext) -> ProtocolValidationError | None:
        message = context.protocol_message
        if message is None:
            return ProtocolValidationError("The authentication response is missing.")

        if not message.id_token:
            if message.code:
                return None
            return ProtocolValidationError("Both 'id_token' and 'code' are missing from the authentication response.")

        token = context.validated_id_token
        if token is None:
            return ProtocolValidationError("The 'id_token' was not validated.")

        return (
            self._validate_id_token(token, context.client_id)
            or (self._validate_at_hash(token, message.access_token, required=True) if message.access_token else None)
            or (self._validate_c_hash(token, message.code) if message.code else None)
            or self._validate_nonce(token, context.nonce)
        )

    def validate_token_response(self, context: ProtocolValidationContext) -> ProtocolValidationError | None:
        message = context.protocol_message
        if message is None:
            return ProtocolValidationError("The token response is missing.")
        if not message.id_token:
            return ProtocolValidationError("The token response does not contain an 'id_token'.")
        if not message.access_token:
            return ProtocolValidationError("The token response does not contain an 'access_token'.")

        token = context.validated_id_token
        if token is None:
            return ProtocolValidationError("The 'id_token' from the token endpoint was not validated.")

        return (
            self._validate_id_token(token, context.client_id)
            or self._validate_at_hash(token, message.access_token, required=False)
            or self._validate_nonce(token, context.nonce)
        )

    def validate_user_info_response(self, context: ProtocolValidationContext) -> ProtocolValidationError | None:
        if not context.user_info_response:
            return ProtocolValidationError("The userinfo response is empty.")
        token = context.validated_id_token
        if token is None:
            return ProtocolValidationError("The 'id_token' was not validated, unable to check the userinfo response.")

        claims = _parse_user_info(context.user_info_response)
        if claims is None:
            return ProtocolValidationError("Unable to parse the userinfo response as JSON or JWT.")

        sub = claims.get("sub")
        if sub is None:
            return ProtocolValidationError("The userinfo response does not contain a 'sub' claim.")
        if claim_value_to_string(sub) != token.subject:
            return ProtocolValidationError(
                f"The 'sub' claim in the userinfo response '{sub}' does not match the id_token subject '{token.subject}'."
            )
        return None

    def _validate_id_token(self, token: JwtSecurityToken, client_id: str | None) -> ProtocolValidationError | None:
        payload = token.payload
        required = list(self.required_claims)
        if self.require_sub:
            required.append("sub")
        missing = [claim for claim in required if payload.get(claim) is None]
        if missing:
            return ProtocolValidationError(f"The id_token is missing required claims: {', '.join(missing)}.")

        azp = payload.get("azp")
        if len(token.audiences) > 1 and not azp:
            return ProtocolValidationError("The id_token has several audiences but no 'azp' claim.")
        if azp and client_id and azp != client_id:
            return ProtocolValidationError(f"The id_token 'azp' claim '{azp}' does not match the client id '{client_id}'.")
        return None

    def _validate_hash(self, token: JwtSecurityToken, claim: str, value: str) -> ProtocolValidationError | None:
        expected = token.payload.get(claim)
        try:
            actual = compute_token_hash(value, token.algorithm or "")
        except ValueError as e:
            return ProtocolValidationError(f"Unable to validate '{claim}': {e}")
        if expected != actual:
            return ProtocolValidationError(f"The '{claim}' claim does not match the hash of the received value.")
        return None

    def _validate_c_hash(self, token: JwtSecurityToken, code: str) -> ProtocolValidationError | None:
        if token.payload.get("c_hash") is None:
            return ProtocolValidationError("The id_token does not contain a 'c_hash' claim for the received code.")
        return self._validate_hash(token, "c_hash", code)

    def _validate_at_hash(self, token: JwtSecurityToken, access_token: str, required: bool) -> ProtocolValidationError | None:
        if token.payload.get("at_hash") is None:
            if required:
                return ProtocolValidationError("The id_token does not contain an 'at_hash' claim for the received access_token.")
            return None
        return self._validate_hash(token, "at_hash", access_token)

    def _validate_nonce(self, token: JwtSecurityToken, expected: str | None) -> ProtocolValidationError | None:
        token_nonce = token.nonce
        if not self.require_nonce and not expected and not token_nonce:
            return None
        if not expected and not token_nonce:
            return ProtocolValidationError("A nonce is required but neither the id_token nor the request carried one.")
        if not expected:
            return ProtocolValidationError("The id_token contains a nonce that was not found in the nonce cookies.")
        if not token_nonce:
            return ProtocolValidationError("The id_token does not contain a 'nonce' claim.")
        if token_nonce != expected:
            return ProtocolValidationError("The nonce in the id_token does not match the expected nonce.")

        if self.require_time_stamp_in_nonce:
            timestamp, _, _ = expected.partition(".")
            try:
                issued = datetime.fromtimestamp(int(timestamp) / 1000, tz=UTC)
            except (ValueError, OverflowError, OSError):
                return ProtocolValidationError("The nonce does not start with a valid timestamp.")
            if issued + self.nonce_lifetime < datetime.now(UTC):
                return ProtocolValidationError(f"The nonce expired; it was issued at {issued.isoformat()}.")
        return None


def _parse_user_info(response: str) -> dict[str, Any] | None:
    try:
        data = json.loads(response)
    except ValueError:
        decoded = decode_jwt(response.strip())
        return decoded.payload if decoded.is_valid_format else None
    return data if isinstance(data, dict) else None
