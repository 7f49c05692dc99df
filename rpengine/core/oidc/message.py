"""OpenID Connect protocol messages.

A ProtocolMessage is an ordered, multi-valued parameter bag representing
an authorization request, an authorization/token/end-session response or
a front-channel sign-out notification. Messages are mutable and are
passed by reference through the event pipeline so hooks can rewrite
them.
"""

from __future__ import annotations

import html
import json
from collections.abc import Iterable, Iterator, Mapping, Sequence
from enum import StrEnum
from typing import Any
from urllib.parse import urlencode


class ParameterNames:
    """Well-known OIDC/OAuth2 parameter names."""

    ACCESS_TOKEN = "access_token"
    CLIENT_ID = "client_id"
    CLIENT_SECRET = "client_secret"
    CODE = "code"
    ERROR = "error"
    ERROR_DESCRIPTION = "error_description"
    ERROR_URI = "error_uri"
    EXPIRES_IN = "expires_in"
    GRANT_TYPE = "grant_type"
    ID_TOKEN = "id_token"
    ID_TOKEN_HINT = "id_token_hint"
    NONCE = "nonce"
    POST_LOGOUT_REDIRECT_URI = "post_logout_redirect_uri"
    REDIRECT_URI = "redirect_uri"
    REFRESH_TOKEN = "refresh_token"
    RESOURCE = "resource"
    RESPONSE_MODE = "response_mode"
    RESPONSE_TYPE = "response_type"
    SCOPE = "scope"
    SESSION_STATE = "session_state"
    SID = "sid"
    STATE = "state"
    TOKEN_TYPE = "token_type"


class ResponseType:
    """Response type values (space separated combinations are order-sensitive)."""

    CODE = "code"
    ID_TOKEN = "id_token"
    TOKEN = "token"
    CODE_ID_TOKEN = "code id_token"
    CODE_TOKEN = "code token"
    CODE_ID_TOKEN_TOKEN = "code id_token token"
    ID_TOKEN_TOKEN = "id_token token"
    NONE = "none"


class ResponseMode(StrEnum):
    """Response mode values."""

    QUERY = "query"
    FRAGMENT = "fragment"
    FORM_POST = "form_post"


class RedirectBehavior(StrEnum):
    """How messages are delivered to the identity provider."""

    REDIRECT_GET = "redirect_get"
    FORM_POST = "form_post"


GRANT_TYPE_AUTHORIZATION_CODE = "authorization_code"

FORM_URLENCODED = "application/x-www-form-urlencoded"

_INPUT_TAG = '<input type="hidden" name="{name}" value="{value}" />'

_FORM_POST_DOCUMENT = """<!doctype html>
<html>
<head>
    <title>Please wait while you're being redirected to the identity provider</title>
</head>
<body>
    <form name="form" method="post" action="{action}">
        {inputs}
        <noscript>Click here to finish the process: <input type="submit" /></noscript>
    </form>
    <script>document.form.submit();</script>
</body>
</html>"""


def _parameter(name: str) -> property:
    def getter(self: ProtocolMessage) -> str | None:
        return self.get_parameter(name)

    def setter(self: ProtocolMessage, value: str | None) -> None:
        self.set_parameter(name, value)

    return property(getter, setter, doc=f"The ``{name}`` parameter (first value).")


class ProtocolMessage:
    """Ordered, multi-valued OIDC parameter bag.

    ``issuer_address`` is the endpoint the message is sent to; it is not
    a parameter and is never serialized into the query string or form.
    """

    def __init__(
        self,
        parameters: Mapping[str, str | Sequence[str]] | Iterable[tuple[str, str | Sequence[str]]] | None = None,
        issuer_address: str = "",
    ) -> None:
        self.issuer_address = issuer_address
        self._parameters: dict[str, list[str]] = {}

        if parameters is None:
            return
        pairs = parameters.items() if isinstance(parameters, Mapping) else parameters
        for name, value in pairs:
            if isinstance(value, str):
                self.add_parameter(name, value)
            else:
                for item in value:
                    self.add_parameter(name, item)

    # Well-known parameters
    access_token = _parameter(ParameterNames.ACCESS_TOKEN)
    client_id = _parameter(ParameterNames.CLIENT_ID)
    client_secret = _parameter(ParameterNames.CLIENT_SECRET)
    code = _parameter(ParameterNames.CODE)
    error = _parameter(ParameterNames.ERROR)
    error_description = _parameter(ParameterNames.ERROR_DESCRIPTION)
    error_uri = _parameter(ParameterNames.ERROR_URI)
    expires_in = _parameter(ParameterNames.EXPIRES_IN)
    grant_type = _parameter(ParameterNames.GRANT_TYPE)
    id_token = _parameter(ParameterNames.ID_TOKEN)
    id_token_hint = _parameter(ParameterNames.ID_TOKEN_HINT)
    nonce = _parameter(ParameterNames.NONCE)
    post_logout_redirect_uri = _parameter(ParameterNames.POST_LOGOUT_REDIRECT_URI)
    redirect_uri = _parameter(ParameterNames.REDIRECT_URI)
    refresh_token = _parameter(ParameterNames.REFRESH_TOKEN)
    resource = _parameter(ParameterNames.RESOURCE)
    response_mode = _parameter(ParameterNames.RESPONSE_MODE)
    response_type = _parameter(ParameterNames.RESPONSE_TYPE)
    scope = _parameter(ParameterNames.SCOPE)
    session_state = _parameter(ParameterNames.SESSION_STATE)
    sid = _parameter(ParameterNames.SID)
    state = _parameter(ParameterNames.STATE)
    token_type = _parameter(ParameterNames.TOKEN_TYPE)

    @classmethod
    def from_json(cls, content: str) -> ProtocolMessage:
        """Parse a JSON object (token endpoint response) into a message.

        Non-string scalar values are stored in their JSON text form, so
        ``"expires_in": 3600`` becomes ``"3600"``.

        Raises:
            ValueError: If the content is not a JSON object.
        """
        data = json.loads(content)
        if not isinstance(data, dict):
            raise ValueError(f"Expected a JSON object, got {type(data).__name__}")

        message = cls()
        for name, value in data.items():
            if value is None:
                continue
            if isinstance(value, str):
                message.add_parameter(name, value)
            else:
                message.add_parameter(name, json.dumps(value, separators=(",", ":")))
        return message

    def get_parameter(self, name: str) -> str | None:
        """Get the first value of a parameter, or None if absent."""
        values = self._parameters.get(name)
        return values[0] if values else None

    def get_values(self, name: str) -> list[str]:
        """Get all values of a parameter in order."""
        return list(self._parameters.get(name, []))

    def set_parameter(self, name: str, value: str | None) -> None:
        """Replace a parameter's values; None or empty string removes it."""
        if value is None or value == "":
            self._parameters.pop(name, None)
        else:
            self._parameters[name] = [value]

    def add_parameter(self, name: str, value: str) -> None:
        """Append a value to a parameter, preserving existing values."""
        self._parameters.setdefault(name, []).append(value)

    def remove_parameter(self, name: str) -> None:
        self._parameters.pop(name, None)

    def has_parameter(self, name: str) -> bool:
        return bool(self._parameters.get(name))

    @property
    def parameters(self) -> dict[str, list[str]]:
        """A copy of the parameters, keyed by name in insertion order."""
        return {name: list(values) for name, values in self._parameters.items()}

    def items(self) -> Iterator[tuple[str, str]]:
        """Iterate (name, value) pairs, one per value."""
        for name, values in self._parameters.items():
            for value in values:
                yield name, value

    def copy(self) -> ProtocolMessage:
        return ProtocolMessage(self._parameters, issuer_address=self.issuer_address)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, collapsing single values to strings."""
        return {
            name: values[0] if len(values) == 1 else list(values)
            for name, values in self._parameters.items()
        }

    def to_query_string(self) -> str:
        return urlencode(list(self.items()))

    def build_redirect_url(self) -> str:
        """Build ``issuer_address`` with the parameters appended as a query string."""
        query = self.to_query_string()
        if not query:
            return self.issuer_address
        separator = "&" if "?" in self.issuer_address else "?"
        return f"{self.issuer_address}{separator}{query}"

    def build_form_post(self) -> str:
        """Render an auto-submitting HTML form posting the parameters to ``issuer_address``."""
        inputs = "\n        ".join(
            _INPUT_TAG.format(name=html.escape(name, quote=True), value=html.escape(value, quote=True))
            for name, value in self.items()
        )
        return _FORM_POST_DOCUMENT.format(
            action=html.escape(self.issuer_address, quote=True),
            inputs=inputs,
        )

    def __repr__(self) -> str:
        return f"ProtocolMessage(issuer_address={self.issuer_address!r}, parameters={list(self._parameters)})"
