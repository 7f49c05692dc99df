"""Transport-neutral request and response views used by the engine.

Hosts translate their framework's request into a RequestContext and
apply the instructions collected on a ResponseContext (status, headers,
body, cookies, sign-in/sign-out) back onto a real response. The engine
never touches a web framework directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from urllib.parse import parse_qsl, urlparse

from rpengine.core.oidc.exceptions import UnsupportedRedirectBehaviorError
from rpengine.core.oidc.message import FORM_URLENCODED, ProtocolMessage, RedirectBehavior
from rpengine.core.oidc.properties import Ticket

logger = logging.getLogger(__name__)

_NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Expires": "-1",
}


@dataclass
class CookieOptions:
    """Attributes for a cookie written or deleted by the engine."""

    http_only: bool = True
    secure: bool = False
    path: str = "/"
    expires: datetime | None = None
    same_site: str | None = None


@dataclass
class ResponseCookie:
    """A cookie instruction. ``value`` is None for a deletion."""

    name: str
    value: str | None
    options: CookieOptions

    @property
    def is_deletion(self) -> bool:
        return self.value is None


@dataclass
class RequestContext:
    """The parts of an inbound HTTP request the engine reads.

    Attributes:
        method: HTTP method (upper case).
        scheme: ``http`` or ``https`` as seen by the original client.
        host: Host header value, including any port.
        path: Request path relative to ``path_base``.
        path_base: Mount point of the application.
        query_string: Raw query string without the leading ``?``.
        content_type: Content-Type header of the body, if any.
        body: Raw request body.
        cookies: Request cookies by name. The engine removes nonce
            cookies it consumes so a second lookup cannot match them.
        ticket: The ticket of the current local session, if the host
            has one.
    """

    method: str = "GET"
    scheme: str = "https"
    host: str = "localhost"
    path: str = "/"
    path_base: str = ""
    query_string: str = ""
    content_type: str | None = None
    body: bytes = b""
    cookies: dict[str, str] = field(default_factory=dict)
    ticket: Ticket | None = None

    @property
    def is_https(self) -> bool:
        return self.scheme.lower() == "https"

    @property
    def is_get(self) -> bool:
        return self.method.upper() == "GET"

    @property
    def is_post(self) -> bool:
        return self.method.upper() == "POST"

    @property
    def has_form_content_type(self) -> bool:
        if not self.content_type:
            return False
        media_type = self.content_type.split(";", 1)[0].strip().lower()
        return media_type == FORM_URLENCODED

    @property
    def query(self) -> list[tuple[str, str]]:
        return parse_qsl(self.query_string, keep_blank_values=True)

    def read_form(self) -> list[tuple[str, str]]:
        """Parse an ``application/x-www-form-urlencoded`` body.

        Returns an empty list for any other content type.
        """
        if not self.has_form_content_type:
            return []
        return parse_qsl(self.body.decode("utf-8", errors="replace"), keep_blank_values=True)

    @property
    def current_uri(self) -> str:
        """The original path base, path and query string (no scheme or host)."""
        uri = f"{self.path_base}{self.path}"
        if self.query_string:
            uri = f"{uri}?{self.query_string}"
        return uri

    def build_redirect_uri(self, target_path: str) -> str:
        """Build an absolute URI for a path under this application."""
        return f"{self.scheme}://{self.host}{self.path_base}{target_path}"

    def build_redirect_uri_if_relative(self, uri: str | None) -> str | None:
        """Make ``uri`` absolute when it is a root-relative path."""
        if not uri or not uri.startswith("/"):
            return uri
        return self.build_redirect_uri(uri)


@dataclass
class ResponseContext:
    """Response instructions collected while the engine processes a request."""

    status_code: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""
    cookies: list[ResponseCookie] = field(default_factory=list)
    signed_in: Ticket | None = None
    signed_out_schemes: list[str] = field(default_factory=list)

    @property
    def has_started(self) -> bool:
        """Whether something already produced a response."""
        return bool(self.body) or "Location" in self.headers

    @property
    def location(self) -> str | None:
        return self.headers.get("Location")

    def redirect(self, location: str) -> None:
        self.status_code = 302
        self.headers["Location"] = location

    def write_html(self, document: str, status_code: int = 200) -> None:
        """Write an HTML document that user agents and proxies must not cache."""
        self.status_code = status_code
        self.headers["Content-Type"] = "text/html;charset=UTF-8"
        self.headers.update(_NO_CACHE_HEADERS)
        self.body = document

    def append_cookie(self, name: str, value: str, options: CookieOptions) -> None:
        self.cookies.append(ResponseCookie(name=name, value=value, options=options))

    def delete_cookie(self, name: str, options: CookieOptions) -> None:
        self.cookies.append(ResponseCookie(name=name, value=None, options=options))

    def sign_in(self, ticket: Ticket) -> None:
        """Ask the host to establish a local session for ``ticket``."""
        self.signed_in = ticket

    def sign_out(self, scheme: str) -> None:
        """Ask the host to end the local session of ``scheme``."""
        self.signed_out_schemes.append(scheme)


def send_protocol_message(response: ResponseContext, message: ProtocolMessage, redirect_behavior: str) -> None:
    """Deliver a message to ``message.issuer_address`` through the user agent.

    ``redirect_get`` issues a 302 with the parameters in the query
    string; ``form_post`` writes an auto-submitting HTML form.

    Raises:
        UnsupportedRedirectBehaviorError: For any other delivery mode.
    """
    if redirect_behavior == RedirectBehavior.REDIRECT_GET:
        redirect_uri = message.build_redirect_url()
        parsed = urlparse(redirect_uri)
        if not parsed.scheme or not parsed.netloc:
            logger.warning(f"The request URL is not well-formed: {redirect_uri}")
        response.redirect(redirect_uri)
    elif redirect_behavior == RedirectBehavior.FORM_POST:
        response.write_html(message.build_form_post())
    else:
        raise UnsupportedRedirectBehaviorError(
            f"An unsupported redirect behavior has been configured: {redirect_behavior}"
        )
