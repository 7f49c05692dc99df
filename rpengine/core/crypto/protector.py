"""Data protection for values that round-trip through the user agent.

The ``state`` parameter and the nonce cookie names carry data the engine
must be able to trust when it comes back. A Protector encrypts and
authenticates opaque bytes; a SecureDataFormat layers serialization and
URL-safe text encoding on top of it.

Protectors are scoped by a purpose chain: the same root key yields
independent sub-keys for ``("rpengine.oidc", "OpenIdConnect", "state")``
and ``("rpengine.oidc", "OpenIdConnect", "nonce")`` so a value protected
for one purpose never unprotects under another.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import secrets
from collections.abc import Sequence
from typing import Generic, Protocol, TypeVar

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Format marker prepended to every protected payload
_MAGIC_HEADER = b"\x09\xf0\xc9\xf0"
_NONCE_SIZE = 12
_KEY_SIZE = 32


class ProtectedDataError(Exception):
    """Raised when protected data is malformed, tampered with, or was protected for another purpose."""


class Protector(Protocol):
    """Encrypt-and-authenticate contract for opaque payloads."""

    def protect(self, data: bytes) -> bytes: ...

    def unprotect(self, data: bytes) -> bytes: ...


def generate_key() -> str:
    """Generate a new random 256-bit root key.

    Returns:
        64-character hex string.
    """
    return secrets.token_hex(_KEY_SIZE)


class AesGcmProtector:
    """AES-256-GCM protector with HKDF-derived, purpose-scoped sub-keys."""

    def __init__(self, root_key: bytes, purposes: Sequence[str] = ()) -> None:
        """Initialize the protector.

        Args:
            root_key: Secret key material (at least 16 bytes).
            purposes: Purpose chain isolating this protector's payloads.

        Raises:
            ValueError: If the root key is too short.
        """
        if len(root_key) < 16:
            raise ValueError("Root key must be at least 16 bytes")
        self._root_key = root_key
        self.purposes = tuple(purposes)

        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=_KEY_SIZE,
            salt=None,
            info="\x00".join(self.purposes).encode("utf-8"),
        )
        self._aead = AESGCM(hkdf.derive(root_key))
        self._associated_data = _MAGIC_HEADER + "\x00".join(self.purposes).encode("utf-8")

    @classmethod
    def from_secret(cls, secret: str, purposes: Sequence[str] = ()) -> AesGcmProtector:
        """Create a protector from a configured secret (hex key or passphrase)."""
        try:
            key = bytes.fromhex(secret)
        except ValueError:
            key = secret.encode("utf-8")
        if len(key) < 16:
            raise ValueError("Secret must be at least 16 bytes of key material")
        return cls(key, purposes)

    def create_protector(self, *purposes: str) -> AesGcmProtector:
        """Derive a child protector whose purpose chain extends this one."""
        return AesGcmProtector(self._root_key, self.purposes + purposes)

    def protect(self, data: bytes) -> bytes:
        nonce = os.urandom(_NONCE_SIZE)
        return _MAGIC_HEADER + nonce + self._aead.encrypt(nonce, data, self._associated_data)

    def unprotect(self, data: bytes) -> bytes:
        header_size = len(_MAGIC_HEADER)
        if len(data) <= header_size + _NONCE_SIZE or not data.startswith(_MAGIC_HEADER):
            raise ProtectedDataError("The payload is not a protected value")

        nonce = data[header_size:header_size + _NONCE_SIZE]
        try:
            return self._aead.decrypt(nonce, data[header_size + _NONCE_SIZE:], self._associated_data)
        except InvalidTag as e:
            raise ProtectedDataError("The payload could not be authenticated") from e


class DataSerializer(Protocol[T]):
    def serialize(self, model: T) -> bytes: ...

    def deserialize(self, data: bytes) -> T: ...


class StringSerializer:
    def serialize(self, model: str) -> bytes:
        return model.encode("utf-8")

    def deserialize(self, data: bytes) -> str:
        return data.decode("utf-8")


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(text: str) -> bytes:
    padding = -len(text) % 4
    return base64.urlsafe_b64decode(text + "=" * padding)


class SecureDataFormat(Generic[T]):
    """Serializes, protects and base64url-encodes a model (without padding).

    The output alphabet is safe for query strings, form fields and
    cookie names.
    """

    def __init__(self, serializer: DataSerializer[T], protector: Protector) -> None:
        self.serializer = serializer
        self.protector = protector

    def protect(self, model: T) -> str:
        return _b64url_encode(self.protector.protect(self.serializer.serialize(model)))

    def unprotect(self, protected_text: str | None) -> T | None:
        """Reverse protect(); returns None when the text cannot be recovered."""
        if not protected_text:
            return None
        try:
            return self.serializer.deserialize(self.protector.unprotect(_b64url_decode(protected_text)))
        except (ProtectedDataError, ValueError, binascii.Error, UnicodeDecodeError) as e:
            logger.debug(f"Unable to unprotect data: {e}")
            return None


def string_data_format(protector: Protector) -> SecureDataFormat[str]:
    return SecureDataFormat(StringSerializer(), protector)
