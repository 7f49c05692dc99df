"""OIDC utility functions.

Unverified JWT decoding (for ``application/jwt`` userinfo responses and
diagnostics) and the left-half hash used by ``c_hash``/``at_hash``.
"""

from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


@dataclass
class DecodedToken:
    """Represents a decoded JWT token."""

    header: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] = field(default_factory=dict)
    signature: str = ""

    # Decoded information
    is_valid_format: bool = True
    error: str | None = None

    @property
    def algorithm(self) -> str | None:
        """Get the signing algorithm from the header."""
        return self.header.get("alg")

    @property
    def key_id(self) -> str | None:
        """Get the key ID from the header."""
        return self.header.get("kid")


def decode_jwt(token: str) -> DecodedToken:
    """Decode a JWT without verifying it.

    Args:
        token: Compact JWT string.

    Returns:
        DecodedToken with header and payload, or ``is_valid_format=False``
        and an error message.
    """
    parts = token.split(".")
    if len(parts) != 3:
        return DecodedToken(
            is_valid_format=False,
            error=f"Invalid JWT format: expected 3 parts, got {len(parts)}",
        )

    try:
        header = _decode_base64url(parts[0])
        payload = _decode_base64url(parts[1])
    except ValueError as e:
        return DecodedToken(is_valid_format=False, error=f"Failed to decode JWT: {e}")

    if not isinstance(header, dict) or not isinstance(payload, dict):
        return DecodedToken(is_valid_format=False, error="JWT header and payload must be JSON objects")

    return DecodedToken(header=header, payload=payload, signature=parts[2])


def _decode_base64url(data: str) -> Any:
    """Decode base64url-encoded JSON data.

    Raises:
        ValueError: If the data is not base64url-encoded JSON.
    """
    padding = 4 - len(data) % 4
    if padding != 4:
        data += "=" * padding

    try:
        decoded_bytes = base64.urlsafe_b64decode(data)
    except (ValueError, TypeError) as e:
        raise ValueError(f"Invalid base64url segment: {e}") from e
    return json.loads(decoded_bytes)


# JWS algorithm suffix to digest used for c_hash / at_hash
_HASH_ALGORITHMS = {
    "256": hashlib.sha256,
    "384": hashlib.sha384,
    "512": hashlib.sha512,
}


def compute_token_hash(value: str, algorithm: str) -> str:
    """Compute a ``c_hash``/``at_hash`` value.

    The value is hashed with the SHA-2 variant matching the id_token's
    ``alg``; the left half of the digest is base64url-encoded without
    padding.

    Args:
        value: The authorization code or access token.
        algorithm: The id_token's JWS ``alg`` (e.g. ``RS256``).

    Returns:
        The encoded hash.

    Raises:
        ValueError: If no hash function is associated with the algorithm.
    """
    if algorithm == "EdDSA":
        hash_function = hashlib.sha512
    else:
        hash_function = _HASH_ALGORITHMS.get(algorithm[-3:]) if algorithm else None
    if hash_function is None:
        raise ValueError(f"Unable to determine a hash algorithm for '{algorithm}'")

    digest = hash_function(value.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest[: len(digest) // 2]).decode("ascii").rstrip("=")


def from_unix_time(value: Any) -> datetime | None:
    """Convert a NumericDate claim to an aware datetime, or None."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(value, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None
