"""Tests for id_token and protocol validation."""

import base64
import json
import time
from datetime import UTC, datetime, timedelta

import pytest

ISSUER = "https://idp.example.com"
CLIENT_ID = "rp-client"


def _unsigned_jwt(payload: dict) -> str:
    """Create an unsigned (alg=none) JWT."""

    def b64_encode(data: dict) -> str:
        return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")

    return f"{b64_encode({'alg': 'none', 'typ': 'JWT'})}.{b64_encode(payload)}."


def _parameters(provider_configuration, **overrides):
    from rpengine.core.oidc.validation import TokenValidationParameters

    parameters = TokenValidationParameters(
        valid_issuer=ISSUER,
        valid_audience=CLIENT_ID,
        issuer_signing_keys=list(provider_configuration.signing_keys),
    )
    for name, value in overrides.items():
        setattr(parameters, name, value)
    return parameters


class TestJwtTokenValidator:
    """Tests for JwtTokenValidator."""

    def test_valid_token(self, sign_token, provider_configuration) -> None:
        """A well-formed signed token yields claims issued by the token issuer."""
        from rpengine.core.oidc.validation import JwtTokenValidator

        token = sign_token(nonce="n-1", groups=["a", "b"])
        identity, security_token = JwtTokenValidator().validate(token, _parameters(provider_configuration))

        assert security_token.subject == "user-1"
        assert security_token.nonce == "n-1"
        assert security_token.key_id == "test-key"
        assert identity.name == "Test User"
        assert [c.value for c in identity.find_all("groups")] == ["a", "b"]
        assert identity.claims[0].issuer == ISSUER

    def test_claim_type_map_keeps_short_type(self, sign_token, provider_configuration) -> None:
        from rpengine.core.oidc.properties import SHORT_CLAIM_TYPE_PROPERTY
        from rpengine.core.oidc.validation import JwtTokenValidator

        validator = JwtTokenValidator(claim_type_map={"sub": "nameidentifier"})
        identity, _ = validator.validate(sign_token(), _parameters(provider_configuration))

        claim = identity.find_all("nameidentifier")[0]
        assert claim.value == "user-1"
        assert claim.properties[SHORT_CLAIM_TYPE_PROPERTY] == "sub"

    @pytest.mark.parametrize(
        ("claims", "message"),
        [
            ({"aud": "someone-else"}, "Audience validation failed"),
            ({"iss": "https://evil.example.com"}, "Issuer validation failed"),
            ({"exp": int(time.time()) - 3600}, "expired"),
            ({"nbf": int(time.time()) + 3600}, "not valid before"),
            ({"exp": None}, "missing an expiration time"),
        ],
    )
    def test_invalid_claims(self, sign_token, provider_configuration, claims, message) -> None:
        from rpengine.core.oidc.exceptions import SecurityTokenError
        from rpengine.core.oidc.validation import JwtTokenValidator

        with pytest.raises(SecurityTokenError, match=message):
            JwtTokenValidator().validate(sign_token(**claims), _parameters(provider_configuration))

    def test_unknown_key_id(self, sign_token, provider_configuration) -> None:
        """A kid missing from the key set is reported as a key lookup failure."""
        from rpengine.core.oidc.exceptions import SignatureKeyNotFoundError
        from rpengine.core.oidc.validation import JwtTokenValidator

        with pytest.raises(SignatureKeyNotFoundError):
            JwtTokenValidator().validate(sign_token(kid="rotated-key"), _parameters(provider_configuration))

    def test_wrong_signature(self, sign_token, provider_configuration) -> None:
        from cryptography.hazmat.primitives.asymmetric import rsa

        from rpengine.core.oidc.exceptions import SecurityTokenError, SignatureKeyNotFoundError
        from rpengine.core.oidc.validation import JwtTokenValidator

        other_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        with pytest.raises(SecurityTokenError) as excinfo:
            JwtTokenValidator().validate(sign_token(key=other_key), _parameters(provider_configuration))
        assert not isinstance(excinfo.value, SignatureKeyNotFoundError)

    def test_unsigned_token(self, provider_configuration) -> None:
        """Unsigned tokens are only accepted when signatures are not required."""
        from rpengine.core.oidc.exceptions import SecurityTokenError
        from rpengine.core.oidc.validation import JwtTokenValidator

        now = int(time.time())
        token = _unsigned_jwt({"iss": ISSUER, "aud": CLIENT_ID, "sub": "user-1", "iat": now, "exp": now + 60})
        validator = JwtTokenValidator()

        with pytest.raises(SecurityTokenError, match="not signed"):
            validator.validate(token, _parameters(provider_configuration))

        _, security_token = validator.validate(token, _parameters(provider_configuration, require_signed_tokens=False))
        assert security_token.subject == "user-1"

    def test_can_read(self) -> None:
        from rpengine.core.oidc.validation import JwtTokenValidator

        validator = JwtTokenValidator(max_token_size=20)
        assert validator.can_read("a.b.c")
        assert not validator.can_read("a.b")
        assert not validator.can_read(None)
        assert not validator.can_read("a" * 10 + "." + "b" * 10 + ".c")


class TestTokenValidationAdapter:
    """Tests for TokenValidationAdapter."""

    def test_merges_provider_issuer_and_keys(self, provider_configuration) -> None:
        from rpengine.core.oidc.validation import (
            JwtTokenValidator,
            TokenValidationAdapter,
            TokenValidationParameters,
        )

        configured = TokenValidationParameters(valid_issuer="https://configured", valid_audience=CLIENT_ID)
        adapter = TokenValidationAdapter(JwtTokenValidator(), configured, "OpenIdConnect")

        merged = adapter.build_parameters(provider_configuration)

        assert merged.valid_issuer == "https://configured"
        assert merged.valid_issuers == [ISSUER]
        assert len(merged.issuer_signing_keys) == 1
        # The configured parameters are left untouched
        assert configured.valid_issuers == []
        assert configured.issuer_signing_keys == []

    def test_validate_sets_token_lifetime(self, sign_token, provider_configuration) -> None:
        from rpengine.core.oidc.properties import AuthProperties
        from rpengine.core.oidc.validation import (
            JwtTokenValidator,
            TokenValidationAdapter,
            TokenValidationParameters,
        )

        now = int(time.time())
        adapter = TokenValidationAdapter(
            JwtTokenValidator(),
            TokenValidationParameters(valid_audience=CLIENT_ID),
            "OpenIdConnect",
        )
        properties = AuthProperties()

        result = adapter.validate(sign_token(nbf=now, exp=now + 600), properties, provider_configuration)

        assert result.is_valid
        assert result.ticket is not None and result.ticket.scheme == "OpenIdConnect"
        assert properties.issued_utc == datetime.fromtimestamp(now, tz=UTC)
        assert properties.expires_utc == datetime.fromtimestamp(now + 600, tz=UTC)

    def test_validate_returns_errors(self, sign_token, provider_configuration) -> None:
        from rpengine.core.oidc.exceptions import SecurityTokenError
        from rpengine.core.oidc.properties import AuthProperties
        from rpengine.core.oidc.validation import (
            JwtTokenValidator,
            TokenValidationAdapter,
            TokenValidationParameters,
        )

        adapter = TokenValidationAdapter(
            JwtTokenValidator(),
            TokenValidationParameters(valid_audience="other"),
            "OpenIdConnect",
        )

        unreadable = adapter.validate("not-a-jwt", AuthProperties(), provider_configuration)
        invalid = adapter.validate(sign_token(), AuthProperties(), provider_configuration)

        assert isinstance(unreadable.error, SecurityTokenError)
        assert not invalid.is_valid
        assert "Audience" in str(invalid.error)

    def test_non_jwt_security_token_is_rejected(self, provider_configuration) -> None:
        """A validator returning some other token type yields InvalidTokenTypeError."""
        from rpengine.core.oidc.exceptions import InvalidTokenTypeError
        from rpengine.core.oidc.properties import AuthProperties, ClaimsIdentity
        from rpengine.core.oidc.validation import TokenValidationAdapter, TokenValidationParameters

        class OpaqueTokenValidator:
            def can_read(self, token):
                return True

            def validate(self, token, parameters):
                return ClaimsIdentity(), object()

        adapter = TokenValidationAdapter(OpaqueTokenValidator(), TokenValidationParameters(), "OpenIdConnect")
        properties = AuthProperties()

        result = adapter.validate("a.b.c", properties, provider_configuration)

        assert isinstance(result.error, InvalidTokenTypeError)
        assert result.ticket is None
        assert properties.issued_utc is None


class TestProtocolValidator:
    """Tests for ProtocolValidator."""

    def _token(self, sign_token, provider_configuration, **claims):
        from rpengine.core.oidc.validation import JwtTokenValidator

        _, token = JwtTokenValidator().validate(sign_token(**claims), _parameters(provider_configuration))
        return token

    def test_generate_nonce_has_timestamp(self) -> None:
        from rpengine.core.oidc.validation import ProtocolValidator

        timestamp, _, random_part = ProtocolValidator().generate_nonce().partition(".")
        assert abs(int(timestamp) / 1000 - time.time()) < 60
        assert random_part

        assert "." not in ProtocolValidator(require_time_stamp_in_nonce=False).generate_nonce()

    def test_code_only_response_is_valid(self) -> None:
        from rpengine.core.oidc.message import ProtocolMessage
        from rpengine.core.oidc.validation import ProtocolValidationContext, ProtocolValidator

        context = ProtocolValidationContext(protocol_message=ProtocolMessage({"code": "abc"}))
        assert ProtocolValidator().validate_authentication_response(context) is None

        empty = ProtocolValidationContext(protocol_message=ProtocolMessage())
        assert ProtocolValidator().validate_authentication_response(empty) is not None

    def test_hybrid_response_checks_c_hash_and_nonce(self, sign_token, provider_configuration) -> None:
        from rpengine.core.oidc.message import ProtocolMessage
        from rpengine.core.oidc.utils import compute_token_hash
        from rpengine.core.oidc.validation import ProtocolValidationContext, ProtocolValidator

        validator = ProtocolValidator()
        nonce = validator.generate_nonce()
        token = self._token(sign_token, provider_configuration, nonce=nonce, c_hash=compute_token_hash("abc", "RS256"))
        message = ProtocolMessage({"code": "abc", "id_token": token.raw})

        def validate(**overrides):
            values = {
                "client_id": CLIENT_ID,
                "protocol_message": message,
                "validated_id_token": token,
                "nonce": nonce,
            }
            values.update(overrides)
            return validator.validate_authentication_response(ProtocolValidationContext(**values))

        assert validate() is None
        assert "nonce" in str(validate(nonce=None))
        assert "does not match the expected nonce" in str(validate(nonce=f"{nonce}x"))
        assert "c_hash" in str(validate(protocol_message=ProtocolMessage({"code": "other", "id_token": token.raw})))

    def test_expired_nonce(self, sign_token, provider_configuration) -> None:
        from rpengine.core.oidc.message import ProtocolMessage
        from rpengine.core.oidc.validation import ProtocolValidationContext, ProtocolValidator

        issued = int((datetime.now(UTC) - timedelta(hours=2)).timestamp() * 1000)
        nonce = f"{issued}.random"
        token = self._token(sign_token, provider_configuration, nonce=nonce)
        context = ProtocolValidationContext(
            client_id=CLIENT_ID,
            protocol_message=ProtocolMessage({"id_token": token.raw}),
            validated_id_token=token,
            nonce=nonce,
        )

        error = ProtocolValidator(nonce_lifetime=timedelta(hours=1)).validate_authentication_response(context)
        assert "expired" in str(error)

    def test_token_response_requires_access_token(self, sign_token, provider_configuration) -> None:
        from rpengine.core.oidc.message import ProtocolMessage
        from rpengine.core.oidc.validation import ProtocolValidationContext, ProtocolValidator

        token = self._token(sign_token, provider_configuration)
        validator = ProtocolValidator(require_nonce=False)

        missing = ProtocolValidationContext(
            protocol_message=ProtocolMessage({"id_token": token.raw}),
            validated_id_token=token,
        )
        complete = ProtocolValidationContext(
            protocol_message=ProtocolMessage({"id_token": token.raw, "access_token": "at"}),
            validated_id_token=token,
        )

        assert "access_token" in str(validator.validate_token_response(missing))
        assert validator.validate_token_response(complete) is None

    def test_azp_required_for_several_audiences(self, sign_token, provider_configuration) -> None:
        from rpengine.core.oidc.message import ProtocolMessage
        from rpengine.core.oidc.validation import ProtocolValidationContext, ProtocolValidator

        token = self._token(sign_token, provider_configuration, aud=[CLIENT_ID, "api"])
        context = ProtocolValidationContext(
            client_id=CLIENT_ID,
            protocol_message=ProtocolMessage({"id_token": token.raw, "access_token": "at"}),
            validated_id_token=token,
        )

        assert "azp" in str(ProtocolValidator(require_nonce=False).validate_token_response(context))

    def test_user_info_subject(self, sign_token, provider_configuration) -> None:
        from rpengine.core.oidc.validation import ProtocolValidationContext, ProtocolValidator

        token = self._token(sign_token, provider_configuration)
        validator = ProtocolValidator()

        def validate(body: str):
            return validator.validate_user_info_response(
                ProtocolValidationContext(user_info_response=body, validated_id_token=token)
            )

        assert validate('{"sub": "user-1"}') is None
        assert "does not match" in str(validate('{"sub": "user-2"}'))
        assert "'sub'" in str(validate('{"email": "a@b"}'))
        assert validate("") is not None


class TestComputeTokenHash:
    """Tests for the c_hash/at_hash computation."""

    def test_known_value(self) -> None:
        """Matches the at_hash example published in OpenID Connect Core 1.0."""
        from rpengine.core.oidc.utils import compute_token_hash

        access_token = "jHkWEdUXMU1BwAsC4vtUsZwnNvTIxEl0z9K3vx5KF0Y"
        assert compute_token_hash(access_token, "RS256") == "77QmUPtjPfzWtF2AnpK9RQ"

    def test_unknown_algorithm(self) -> None:
        from rpengine.core.oidc.utils import compute_token_hash

        with pytest.raises(ValueError):
            compute_token_hash("value", "HS1")
