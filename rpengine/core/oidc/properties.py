"""Authentication properties, claims and tickets.

AuthProperties travels with a login attempt: it is created at challenge
time, protected into the outgoing ``state`` parameter, recovered on
callback and finally handed over inside the Ticket. Everything it holds
lives in an ordered string-to-string ``items`` map so that it can be
serialized without loss.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from rpengine.core.crypto.protector import Protector, SecureDataFormat

# Well-known item keys
REDIRECT_URI_KEY = ".redirect"
ISSUED_UTC_KEY = ".issued"
EXPIRES_UTC_KEY = ".expires"
CORRELATION_KEY = ".xsrf"
TOKEN_NAMES_KEY = ".TokenNames"
TOKEN_KEY_PREFIX = ".Token."
USER_STATE_KEY = "OpenIdConnect.Userstate"
REDIRECT_URI_FOR_CODE_KEY = "OpenIdConnect.Code.RedirectUri"
SESSION_STATE_KEY = ".sessionState"
CHECK_SESSION_IFRAME_KEY = ".checkSessionIFrame"

# Claim property holding the original JWT claim name when the type was mapped
SHORT_CLAIM_TYPE_PROPERTY = "short_type"

DEFAULT_ISSUER = "LOCAL AUTHORITY"

_PROPERTIES_FORMAT_VERSION = 1


class ClaimValueTypes:
    """Value type markers for claims."""

    STRING = "string"
    BOOLEAN = "boolean"
    INTEGER = "integer"
    DOUBLE = "double"
    JSON = "json"


def claim_value_to_string(value: Any) -> str:
    """Render a JSON value the way it is stored in a Claim.

    Strings are kept as-is, booleans become ``true``/``false`` and
    objects/arrays become compact JSON. Userinfo de-duplication compares
    claims using this string form, so ``"123"`` and ``123`` are equal.
    """
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, separators=(",", ":"))


def claim_value_type(value: Any) -> str:
    if isinstance(value, bool):
        return ClaimValueTypes.BOOLEAN
    if isinstance(value, int):
        return ClaimValueTypes.INTEGER
    if isinstance(value, float):
        return ClaimValueTypes.DOUBLE
    if isinstance(value, (dict, list)):
        return ClaimValueTypes.JSON
    return ClaimValueTypes.STRING


def _format_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


@dataclass
class AuthToken:
    """A named token stored in AuthProperties."""

    name: str
    value: str


class AuthProperties:
    """Property bag attached to a login attempt and the resulting ticket."""

    def __init__(
        self,
        items: Mapping[str, str] | None = None,
        redirect_uri: str | None = None,
    ) -> None:
        self.items: dict[str, str] = dict(items or {})
        if redirect_uri:
            self.redirect_uri = redirect_uri

    def _get(self, key: str) -> str | None:
        return self.items.get(key)

    def _set(self, key: str, value: str | None) -> None:
        if value is None:
            self.items.pop(key, None)
        else:
            self.items[key] = value

    @property
    def redirect_uri(self) -> str | None:
        """Where the user agent goes after the login or sign-out completes."""
        return self._get(REDIRECT_URI_KEY)

    @redirect_uri.setter
    def redirect_uri(self, value: str | None) -> None:
        self._set(REDIRECT_URI_KEY, value)

    @property
    def issued_utc(self) -> datetime | None:
        value = self._get(ISSUED_UTC_KEY)
        return datetime.fromisoformat(value) if value else None

    @issued_utc.setter
    def issued_utc(self, value: datetime | None) -> None:
        self._set(ISSUED_UTC_KEY, _format_utc(value) if value else None)

    @property
    def expires_utc(self) -> datetime | None:
        value = self._get(EXPIRES_UTC_KEY)
        return datetime.fromisoformat(value) if value else None

    @expires_utc.setter
    def expires_utc(self, value: datetime | None) -> None:
        self._set(EXPIRES_UTC_KEY, _format_utc(value) if value else None)

    def store_tokens(self, tokens: Iterable[AuthToken]) -> None:
        """Replace any stored tokens with the given ones."""
        for name in self.token_names():
            self.items.pop(TOKEN_KEY_PREFIX + name, None)
        self.items.pop(TOKEN_NAMES_KEY, None)

        names = []
        for token in tokens:
            names.append(token.name)
            self.items[TOKEN_KEY_PREFIX + token.name] = token.value
        if names:
            self.items[TOKEN_NAMES_KEY] = ";".join(names)

    def token_names(self) -> list[str]:
        value = self.items.get(TOKEN_NAMES_KEY)
        return value.split(";") if value else []

    def get_tokens(self) -> list[AuthToken]:
        tokens = []
        for name in self.token_names():
            value = self.items.get(TOKEN_KEY_PREFIX + name)
            if value is not None:
                tokens.append(AuthToken(name=name, value=value))
        return tokens

    def get_token_value(self, name: str) -> str | None:
        return self.items.get(TOKEN_KEY_PREFIX + name)

    def copy(self) -> AuthProperties:
        return AuthProperties(self.items)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"items": dict(self.items)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuthProperties:
        """Reconstruct from dictionary."""
        items = data.get("items", {})
        return cls({str(k): str(v) for k, v in items.items()})

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AuthProperties):
            return NotImplemented
        return self.items == other.items

    def __repr__(self) -> str:
        return f"AuthProperties(items={self.items!r})"


@dataclass
class Claim:
    """A single claim asserted about the authenticated subject."""

    type: str
    value: str
    value_type: str = ClaimValueTypes.STRING
    issuer: str = DEFAULT_ISSUER
    original_issuer: str | None = None
    properties: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "value": self.value,
            "value_type": self.value_type,
            "issuer": self.issuer,
            "original_issuer": self.original_issuer,
            "properties": dict(self.properties),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Claim:
        return cls(
            type=data["type"],
            value=data["value"],
            value_type=data.get("value_type", ClaimValueTypes.STRING),
            issuer=data.get("issuer", DEFAULT_ISSUER),
            original_issuer=data.get("original_issuer"),
            properties=data.get("properties", {}),
        )


class ClaimsIdentity:
    """An ordered collection of claims issued by one authentication."""

    def __init__(
        self,
        claims: Iterable[Claim] | None = None,
        authentication_type: str | None = None,
        name_claim_type: str = "name",
    ) -> None:
        self.claims: list[Claim] = list(claims or [])
        self.authentication_type = authentication_type
        self.name_claim_type = name_claim_type

    @property
    def is_authenticated(self) -> bool:
        return bool(self.authentication_type)

    @property
    def name(self) -> str | None:
        return self.find_first(self.name_claim_type)

    def find_first(self, claim_type: str) -> str | None:
        for claim in self.claims:
            if claim.type == claim_type:
                return claim.value
        return None

    def find_all(self, claim_type: str) -> list[Claim]:
        return [claim for claim in self.claims if claim.type == claim_type]

    def add_claim(self, claim: Claim) -> None:
        self.claims.append(claim)

    def add_claims_from_json(self, data: Mapping[str, Any], issuer: str) -> None:
        """Append claims for every entry of a JSON object.

        Arrays produce one claim per element; ``None`` values are skipped.
        """
        for claim_type, value in data.items():
            if value is None:
                continue
            values = value if isinstance(value, list) else [value]
            for item in values:
                if item is None:
                    continue
                self.add_claim(
                    Claim(
                        type=claim_type,
                        value=claim_value_to_string(item),
                        value_type=claim_value_type(item),
                        issuer=issuer,
                        original_issuer=issuer,
                    )
                )

    def to_dict(self) -> dict[str, Any]:
        return {
            "authentication_type": self.authentication_type,
            "name_claim_type": self.name_claim_type,
            "claims": [claim.to_dict() for claim in self.claims],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClaimsIdentity:
        return cls(
            claims=[Claim.from_dict(c) for c in data.get("claims", [])],
            authentication_type=data.get("authentication_type"),
            name_claim_type=data.get("name_claim_type", "name"),
        )


@dataclass(frozen=True)
class Ticket:
    """A validated identity handed to the sign-in handler."""

    principal: ClaimsIdentity
    properties: AuthProperties
    scheme: str

    def find_first(self, claim_type: str) -> str | None:
        return self.principal.find_first(claim_type)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for session storage."""
        return {
            "scheme": self.scheme,
            "principal": self.principal.to_dict(),
            "properties": self.properties.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Ticket:
        """Reconstruct from dictionary."""
        return cls(
            principal=ClaimsIdentity.from_dict(data.get("principal", {})),
            properties=AuthProperties.from_dict(data.get("properties", {})),
            scheme=data.get("scheme", ""),
        )


class PropertiesSerializer:
    """Serializes AuthProperties as a versioned JSON document."""

    def serialize(self, model: AuthProperties) -> bytes:
        document = {"v": _PROPERTIES_FORMAT_VERSION, "items": model.items}
        return json.dumps(document, separators=(",", ":")).encode("utf-8")

    def deserialize(self, data: bytes) -> AuthProperties:
        document = json.loads(data.decode("utf-8"))
        if not isinstance(document, dict) or document.get("v") != _PROPERTIES_FORMAT_VERSION:
            raise ValueError("Unsupported properties format")
        return AuthProperties.from_dict(document)


def properties_data_format(protector: Protector) -> SecureDataFormat[AuthProperties]:
    """Build the data format used to protect AuthProperties into ``state``."""
    return SecureDataFormat(PropertiesSerializer(), protector)
