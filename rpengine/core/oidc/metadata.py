"""Provider metadata: snapshots, providers and the shared cache.

A ProviderConfiguration is an immutable snapshot of the provider's
discovery document and signing keys. Configuration providers produce
snapshots (statically, or by fetching ``.well-known/openid-configuration``
and the JWKS over the backchannel); the ConfigurationCache holds the
snapshot shared by every request of one engine and swaps it wholesale
on refresh.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import httpx
from jwt import PyJWK
from jwt.exceptions import InvalidKeyError, PyJWKError

from rpengine.core.oidc.exceptions import ConfigurationError, MetadataRetrievalError

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = ".well-known/openid-configuration"

DEFAULT_AUTOMATIC_REFRESH_INTERVAL = timedelta(days=1)
DEFAULT_REFRESH_INTERVAL = timedelta(seconds=30)


def build_metadata_address(authority: str) -> str:
    """Derive the discovery document URL from an authority.

    An address that already points at the discovery document is kept.
    """
    address = authority.rstrip("/")
    if address.endswith(WELL_KNOWN_PATH):
        return address
    return f"{address}/{WELL_KNOWN_PATH}"


def load_signing_keys(jwks: Mapping[str, Any]) -> tuple[PyJWK, ...]:
    """Build signing keys from a JWKS document.

    Encryption keys and keys PyJWT cannot load are skipped.

    Raises:
        ValueError: If the document has no ``keys`` array.
    """
    keys = jwks.get("keys")
    if not isinstance(keys, list):
        raise ValueError("JWKS document has no 'keys' array")

    signing_keys = []
    for key_data in keys:
        if not isinstance(key_data, dict) or key_data.get("use", "sig") != "sig":
            continue
        try:
            signing_keys.append(PyJWK(key_data))
        except (PyJWKError, InvalidKeyError) as e:
            logger.debug(f"Ignoring unusable JWK (kid={key_data.get('kid')}): {e}")
    return tuple(signing_keys)


def _string_tuple(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(item) for item in value)


@dataclass(frozen=True)
class ProviderConfiguration:
    """Immutable snapshot of provider metadata."""

    issuer: str | None = None
    authorization_endpoint: str | None = None
    token_endpoint: str | None = None
    userinfo_endpoint: str | None = None
    end_session_endpoint: str | None = None
    jwks_uri: str | None = None
    check_session_iframe: str | None = None
    signing_keys: tuple[PyJWK, ...] = ()
    scopes_supported: tuple[str, ...] = ()
    response_types_supported: tuple[str, ...] = ()
    id_token_signing_alg_values_supported: tuple[str, ...] = ()
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_document(
        cls,
        document: Mapping[str, Any],
        jwks: Mapping[str, Any] | None = None,
    ) -> ProviderConfiguration:
        """Build a snapshot from a discovery document and optional JWKS.

        Raises:
            ValueError: If the JWKS document is malformed.
        """

        def text(name: str) -> str | None:
            value = document.get(name)
            return value if isinstance(value, str) and value else None

        return cls(
            issuer=text("issuer"),
            authorization_endpoint=text("authorization_endpoint"),
            token_endpoint=text("token_endpoint"),
            userinfo_endpoint=text("userinfo_endpoint"),
            end_session_endpoint=text("end_session_endpoint"),
            jwks_uri=text("jwks_uri"),
            check_session_iframe=text("check_session_iframe"),
            signing_keys=load_signing_keys(jwks) if jwks is not None else (),
            scopes_supported=_string_tuple(document.get("scopes_supported")),
            response_types_supported=_string_tuple(document.get("response_types_supported")),
            id_token_signing_alg_values_supported=_string_tuple(
                document.get("id_token_signing_alg_values_supported")
            ),
            raw=dict(document),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for display."""
        return {
            "issuer": self.issuer,
            "authorization_endpoint": self.authorization_endpoint,
            "token_endpoint": self.token_endpoint,
            "userinfo_endpoint": self.userinfo_endpoint,
            "end_session_endpoint": self.end_session_endpoint,
            "jwks_uri": self.jwks_uri,
            "check_session_iframe": self.check_session_iframe,
            "signing_keys": [key.key_id for key in self.signing_keys],
            "scopes_supported": list(self.scopes_supported),
            "response_types_supported": list(self.response_types_supported),
            "id_token_signing_alg_values_supported": list(self.id_token_signing_alg_values_supported),
        }


class ConfigurationProvider(Protocol):
    """Source of provider configuration snapshots."""

    async def get(self) -> ProviderConfiguration: ...

    def refresh(self) -> None:
        """Ask for a fresh snapshot on the next ``get()``; advisory only."""
        ...


class StaticConfigurationProvider:
    """Serves a fixed configuration."""

    def __init__(self, configuration: ProviderConfiguration) -> None:
        self.configuration = configuration

    async def get(self) -> ProviderConfiguration:
        return self.configuration

    def refresh(self) -> None:
        return None


class DiscoveryConfigurationProvider:
    """Fetches configuration from a discovery document and its JWKS.

    Snapshots are refreshed automatically after ``automatic_refresh_interval``.
    ``refresh()`` forces a fetch on the next ``get()``, but at most once
    per ``refresh_interval``. When a fetch fails and a previous snapshot
    exists, the previous snapshot keeps being served.
    """

    def __init__(
        self,
        metadata_address: str,
        backchannel: httpx.AsyncClient,
        require_https: bool = True,
        automatic_refresh_interval: timedelta = DEFAULT_AUTOMATIC_REFRESH_INTERVAL,
        refresh_interval: timedelta = DEFAULT_REFRESH_INTERVAL,
    ) -> None:
        """Initialize the provider.

        Args:
            metadata_address: URL of the discovery document.
            backchannel: Shared HTTP client used for both documents.
            require_https: Reject non-HTTPS metadata and JWKS addresses.
            automatic_refresh_interval: Lifetime of a fetched snapshot.
            refresh_interval: Minimum delay between forced refreshes.

        Raises:
            ConfigurationError: If HTTPS is required and the address is not HTTPS.
        """
        self.metadata_address = metadata_address
        self.backchannel = backchannel
        self.require_https = require_https
        self.automatic_refresh_interval = automatic_refresh_interval
        self.refresh_interval = refresh_interval
        self._check_https(metadata_address)

        self._current: ProviderConfiguration | None = None
        self._sync_after: datetime | None = None
        self._last_refresh: datetime | None = None
        self._lock = asyncio.Lock()

    def _check_https(self, address: str) -> None:
        if self.require_https and not address.lower().startswith("https://"):
            raise ConfigurationError(
                f"The metadata address '{address}' must use HTTPS unless require_https_metadata is disabled."
            )

    def _fresh_snapshot(self) -> ProviderConfiguration | None:
        if self._sync_after is not None and datetime.now(UTC) < self._sync_after:
            return self._current
        return None

    async def get(self) -> ProviderConfiguration:
        """Return the current snapshot, fetching it when stale.

        Raises:
            MetadataRetrievalError: If nothing was ever fetched and the fetch fails.
        """
        current = self._fresh_snapshot()
        if current is not None:
            return current

        async with self._lock:
            current = self._fresh_snapshot()
            if current is not None:
                return current

            now = datetime.now(UTC)
            try:
                configuration = await self.retrieve()
            except MetadataRetrievalError as e:
                if self._current is None:
                    raise
                logger.warning(f"Unable to refresh provider configuration, keeping the previous one: {e}")
                self._sync_after = now + self.refresh_interval
                return self._current

            self._current = configuration
            self._last_refresh = now
            self._sync_after = now + self.automatic_refresh_interval
            logger.debug(f"Loaded provider configuration for issuer {configuration.issuer}")
            return configuration

    def refresh(self) -> None:
        now = datetime.now(UTC)
        if self._last_refresh is None or now >= self._last_refresh + self.refresh_interval:
            self._sync_after = now

    async def retrieve(self) -> ProviderConfiguration:
        """Fetch the discovery document and JWKS.

        Raises:
            MetadataRetrievalError: If either document cannot be fetched or parsed.
            ConfigurationError: If the JWKS address violates the HTTPS requirement.
        """
        document = await self._get_json(self.metadata_address)

        jwks = None
        jwks_uri = document.get("jwks_uri")
        if isinstance(jwks_uri, str) and jwks_uri:
            self._check_https(jwks_uri)
            jwks = await self._get_json(jwks_uri)

        try:
            return ProviderConfiguration.from_document(document, jwks)
        except ValueError as e:
            raise MetadataRetrievalError(f"Invalid signing keys at {jwks_uri}: {e}") from e

    async def _get_json(self, url: str) -> dict[str, Any]:
        logger.debug(f"Fetching {url}")
        try:
            response = await self.backchannel.get(url)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise MetadataRetrievalError(f"Timeout fetching {url}") from e
        except httpx.HTTPStatusError as e:
            raise MetadataRetrievalError(
                f"HTTP {e.response.status_code} fetching {url}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise MetadataRetrievalError(f"Request error fetching {url}: {e}") from e
        except ValueError as e:  # JSON decode error
            raise MetadataRetrievalError(f"Invalid JSON at {url}: {e}") from e

        if not isinstance(data, dict):
            raise MetadataRetrievalError(f"Expected a JSON object at {url}")
        return data


@dataclass(frozen=True)
class _Snapshot:
    configuration: ProviderConfiguration
    expires_at: datetime


class ConfigurationCache:
    """The engine's single shared configuration slot.

    Reads are lock-free. A snapshot is replaced as a whole; concurrent
    refreshes may fetch redundantly, and the last one to finish wins.
    """

    def __init__(
        self,
        provider: ConfigurationProvider | None,
        max_age: timedelta = DEFAULT_AUTOMATIC_REFRESH_INTERVAL,
    ) -> None:
        self.provider = provider
        self.max_age = max_age
        self._snapshot: _Snapshot | None = None

    @property
    def current(self) -> ProviderConfiguration | None:
        snapshot = self._snapshot
        return snapshot.configuration if snapshot else None

    async def get(self) -> ProviderConfiguration | None:
        """Return the cached configuration, loading it on first use.

        Returns None only when no provider is configured.
        """
        snapshot = self._snapshot
        if snapshot is not None and datetime.now(UTC) < snapshot.expires_at:
            return snapshot.configuration
        if self.provider is None:
            return snapshot.configuration if snapshot else None

        configuration = await self.provider.get()
        self._snapshot = _Snapshot(configuration, datetime.now(UTC) + self.max_age)
        return configuration

    def request_refresh(self) -> None:
        """Drop the snapshot and ask the provider to refresh, e.g. after a key rollover."""
        if self.provider is None:
            return
        logger.info("Requesting a provider configuration refresh")
        self.provider.refresh()
        self._snapshot = None
