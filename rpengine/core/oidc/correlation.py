"""Anti-forgery and anti-replay state for the login round-trip.

Two values are bound to the user agent at challenge time:

- a correlation id, stored in AuthProperties (and so inside the
  protected ``state``) and mirrored in a correlation cookie;
- a nonce, sent to the provider and mirrored in a cookie whose name is
  the protected nonce.

Both cookies carry the fixed marker value ``N`` and are consumed on the
callback.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from datetime import UTC, datetime, timedelta

from rpengine.core.crypto.protector import SecureDataFormat
from rpengine.core.oidc.exceptions import CorrelationError
from rpengine.core.oidc.http import CookieOptions, RequestContext, ResponseContext
from rpengine.core.oidc.properties import CORRELATION_KEY, AuthProperties

logger = logging.getLogger(__name__)

NONCE_COOKIE_PREFIX = ".rpengine.OpenIdConnect.Nonce."
CORRELATION_COOKIE_PREFIX = ".rpengine.Correlation."
COOKIE_MARKER = "N"

DEFAULT_CORRELATION_LIFETIME = timedelta(minutes=15)


class CorrelationGuard:
    """Generates, stores and verifies correlation ids and nonces.

    Nonce lookup is a linear scan of the request cookies with the nonce
    prefix, so it costs O(active nonce cookies).
    """

    def __init__(
        self,
        nonce_format: SecureDataFormat[str],
        scheme: str,
        nonce_lifetime: timedelta,
        correlation_lifetime: timedelta = DEFAULT_CORRELATION_LIFETIME,
        nonce_cookie_prefix: str = NONCE_COOKIE_PREFIX,
        correlation_cookie_prefix: str = CORRELATION_COOKIE_PREFIX,
    ) -> None:
        self.nonce_format = nonce_format
        self.scheme = scheme
        self.nonce_lifetime = nonce_lifetime
        self.correlation_lifetime = correlation_lifetime
        self.nonce_cookie_prefix = nonce_cookie_prefix
        self.correlation_cookie_prefix = f"{correlation_cookie_prefix}{scheme}."

    def _cookie_options(self, request: RequestContext, lifetime: timedelta | None = None) -> CookieOptions:
        # SameSite=None is only accepted on Secure cookies
        secure = request.is_https
        return CookieOptions(
            http_only=True,
            secure=secure,
            path="/",
            expires=datetime.now(UTC) + lifetime if lifetime else None,
            same_site="None" if secure else None,
        )

    def generate_correlation_id(
        self,
        request: RequestContext,
        response: ResponseContext,
        properties: AuthProperties,
    ) -> str:
        """Create a correlation id, store it in ``properties`` and set its cookie."""
        correlation_id = secrets.token_urlsafe(32)
        properties.items[CORRELATION_KEY] = correlation_id
        response.append_cookie(
            self.correlation_cookie_prefix + correlation_id,
            COOKIE_MARKER,
            self._cookie_options(request, self.correlation_lifetime),
        )
        return correlation_id

    def validate_correlation_id(
        self,
        request: RequestContext,
        response: ResponseContext,
        properties: AuthProperties,
    ) -> CorrelationError | None:
        """Check the correlation id in ``properties`` against its cookie.

        The id is removed from ``properties`` and the cookie is deleted
        whether or not it matched.

        Returns:
            None when the correlation holds, otherwise the error.
        """
        correlation_id = properties.items.pop(CORRELATION_KEY, None)
        if not correlation_id:
            logger.warning(f"The correlation id was not found in the properties of scheme '{self.scheme}'")
            return CorrelationError("Correlation failed.")

        cookie_name = self.correlation_cookie_prefix + correlation_id
        cookie_value = request.cookies.pop(cookie_name, None)
        response.delete_cookie(cookie_name, self._cookie_options(request))

        if cookie_value is None or not hmac.compare_digest(cookie_value.encode(), COOKIE_MARKER.encode()):
            logger.warning(f"Correlation cookie '{cookie_name}' was not found or had an unexpected value")
            return CorrelationError("Correlation failed.")
        return None

    def write_nonce_cookie(self, request: RequestContext, response: ResponseContext, nonce: str) -> None:
        """Store ``nonce`` as a cookie named with its protected form.

        Raises:
            ValueError: If the nonce is empty.
        """
        if not nonce:
            raise ValueError("nonce must not be empty")
        response.append_cookie(
            self.nonce_cookie_prefix + self.nonce_format.protect(nonce),
            COOKIE_MARKER,
            self._cookie_options(request, self.nonce_lifetime),
        )

    def read_nonce_cookie(self, request: RequestContext, response: ResponseContext, nonce: str | None) -> str | None:
        """Find and consume the nonce cookie matching ``nonce``.

        Cookies that fail to unprotect are logged and skipped. The first
        matching cookie is deleted from the response and removed from the
        request view, so the same nonce can only be confirmed once.

        Returns:
            ``nonce`` if a matching cookie was found, otherwise None.
        """
        if not nonce:
            return None

        for name in list(request.cookies):
            if not name.startswith(self.nonce_cookie_prefix):
                continue
            decoded = self.nonce_format.unprotect(name[len(self.nonce_cookie_prefix):])
            if decoded is None:
                logger.debug(f"Unable to unprotect nonce cookie '{name}'")
                continue
            if hmac.compare_digest(decoded.encode(), nonce.encode()):
                request.cookies.pop(name, None)
                response.delete_cookie(name, self._cookie_options(request))
                return nonce

        return None
