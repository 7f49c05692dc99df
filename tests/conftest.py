"""Pytest configuration and fixtures."""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Generator
from typing import Any
from urllib.parse import parse_qsl

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from flask import Flask
from flask.testing import FlaskClient
from jwt.algorithms import RSAAlgorithm

from rpengine.core.logging import LoggingAsyncClient
from rpengine.core.oidc.message import ResponseMode, ResponseType
from rpengine.core.oidc.metadata import ProviderConfiguration
from rpengine.core.oidc.options import OIDCOptions

ISSUER = "https://idp.example.com"
CLIENT_ID = "rp-client"
CLIENT_SECRET = "rp-secret"
KEY_ID = "test-key"
DATA_PROTECTION_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"


@pytest.fixture(scope="session")
def signing_key() -> rsa.RSAPrivateKey:
    """RSA key the fake provider signs id_tokens with."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def jwks(signing_key: rsa.RSAPrivateKey) -> dict[str, Any]:
    """Public JWKS document of the fake provider."""
    key = RSAAlgorithm.to_jwk(signing_key.public_key(), as_dict=True)
    key.update({"kid": KEY_ID, "use": "sig", "alg": "RS256"})
    return {"keys": [key]}


@pytest.fixture(scope="session")
def discovery_document() -> dict[str, Any]:
    return {
        "issuer": ISSUER,
        "authorization_endpoint": f"{ISSUER}/authorize",
        "token_endpoint": f"{ISSUER}/token",
        "userinfo_endpoint": f"{ISSUER}/userinfo",
        "end_session_endpoint": f"{ISSUER}/logout",
        "jwks_uri": f"{ISSUER}/jwks",
        "scopes_supported": ["openid", "profile", "email"],
        "response_types_supported": ["code", "code id_token"],
        "id_token_signing_alg_values_supported": ["RS256"],
    }


@pytest.fixture
def provider_configuration(discovery_document: dict[str, Any], jwks: dict[str, Any]) -> ProviderConfiguration:
    return ProviderConfiguration.from_document(discovery_document, jwks)


@pytest.fixture
def sign_token(signing_key: rsa.RSAPrivateKey) -> Callable[..., str]:
    """Return a function that builds a signed id_token.

    Standard claims (iss, aud, sub, iat, exp) are filled in and can be
    overridden or removed (by passing None) through keyword arguments.
    """

    def _sign(kid: str = KEY_ID, key: Any = None, **claims: Any) -> str:
        now = int(time.time())
        payload: dict[str, Any] = {
            "iss": ISSUER,
            "aud": CLIENT_ID,
            "sub": "user-1",
            "name": "Test User",
            "iat": now,
            "nbf": now,
            "exp": now + 3600,
        }
        payload.update(claims)
        payload = {k: v for k, v in payload.items() if v is not None}
        return jwt.encode(payload, key or signing_key, algorithm="RS256", headers={"kid": kid})

    return _sign


class FakeProvider:
    """In-memory identity provider backing an httpx.MockTransport.

    Serves the discovery document, JWKS, token and userinfo endpoints.
    The token endpoint signs an id_token carrying ``nonce`` (set by the
    test after the challenge) unless ``token_body`` overrides the response.
    """

    issuer = ISSUER
    client_id = CLIENT_ID

    def __init__(
        self,
        sign_token: Callable[..., str],
        discovery_document: dict[str, Any],
        jwks: dict[str, Any],
    ) -> None:
        self.sign_token = sign_token
        self.discovery_document = discovery_document
        self.jwks = jwks
        self.nonce: str | None = None
        self.id_token_claims: dict[str, Any] = {}
        self.token_status = 200
        self.token_body: str | None = None
        self.userinfo: dict[str, Any] = {"sub": "user-1", "email": "user@example.com"}
        self.userinfo_content_type = "application/json"
        self.requests: list[httpx.Request] = []

    def token_response(self) -> dict[str, Any]:
        return {
            "access_token": "access-token-1",
            "token_type": "Bearer",
            "expires_in": 3600,
            "refresh_token": "refresh-token-1",
            "id_token": self.sign_token(nonce=self.nonce, **self.id_token_claims),
        }

    def form(self, index: int = -1) -> dict[str, str]:
        """Form fields of a recorded request."""
        return dict(parse_qsl(self.requests[index].content.decode()))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/.well-known/openid-configuration":
            return httpx.Response(200, json=self.discovery_document)
        if path == "/jwks":
            return httpx.Response(200, json=self.jwks)
        if path == "/token":
            if self.token_body is not None:
                return httpx.Response(
                    self.token_status,
                    content=self.token_body,
                    headers={"Content-Type": "application/json"},
                )
            return httpx.Response(self.token_status, json=self.token_response())
        if path == "/userinfo":
            body = json.dumps(self.userinfo)
            return httpx.Response(200, content=body, headers={"Content-Type": self.userinfo_content_type})
        return httpx.Response(404, json={"error": "not_found"})


@pytest.fixture
def provider(
    sign_token: Callable[..., str],
    discovery_document: dict[str, Any],
    jwks: dict[str, Any],
) -> FakeProvider:
    return FakeProvider(sign_token, discovery_document, jwks)


@pytest.fixture
def make_options(
    provider: FakeProvider,
    provider_configuration: ProviderConfiguration,
) -> Callable[..., OIDCOptions]:
    """Return a factory for options wired to the fake provider.

    Defaults to the authorization code flow with form_post; keyword
    arguments override any OIDCOptions field.
    """

    def _make(**overrides: Any) -> OIDCOptions:
        values: dict[str, Any] = {
            "client_id": CLIENT_ID,
            "client_secret": CLIENT_SECRET,
            "configuration": provider_configuration,
            "response_type": ResponseType.CODE,
            "response_mode": ResponseMode.FORM_POST,
            "data_protection_key": DATA_PROTECTION_KEY,
            "backchannel": LoggingAsyncClient(transport=httpx.MockTransport(provider.handler)),
        }
        values.update(overrides)
        return OIDCOptions(**values)

    return _make


@pytest.fixture
def app(make_options: Callable[..., OIDCOptions]) -> Generator[Flask, None, None]:
    """Create the host application wired to the fake provider."""
    from rpengine.app import create_app
    from rpengine.web import EXTENSION_KEY

    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key",
        },
        options=make_options(),
    )
    yield app
    app.extensions[EXTENSION_KEY].close()


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    """Create test client."""
    return app.test_client()
