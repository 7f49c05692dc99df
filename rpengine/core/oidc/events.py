"""Extension hooks threaded through the authentication flows.

Each stage of a flow builds a context dataclass and passes it to the
matching hook on OIDCEvents. A hook returns one of:

- ``Continue(context)`` (or ``None``): carry on, using whatever the hook
  changed on the context (message, properties, principal...).
- ``Handled()``: the hook produced the whole HTTP response; the engine
  stops and writes nothing else.
- ``Skipped()``: the request is "not mine"; the engine returns a skip
  result so the host can try other handlers.

Hooks may be coroutines or plain functions.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar, Union

from rpengine.core.oidc.http import RequestContext, ResponseContext
from rpengine.core.oidc.message import ProtocolMessage
from rpengine.core.oidc.properties import AuthProperties, ClaimsIdentity, Ticket

if TYPE_CHECKING:
    import httpx

    from rpengine.core.oidc.options import OIDCOptions
    from rpengine.core.oidc.validation import JwtSecurityToken

C = TypeVar("C", bound="BaseContext")


@dataclass(frozen=True)
class Continue(Generic[C]):
    """Proceed with the (possibly updated) context."""

    context: C


@dataclass(frozen=True)
class Handled:
    """The hook wrote the response; stop processing."""


@dataclass(frozen=True)
class Skipped:
    """The request is not for this engine; return a skip result."""


EventOutcome = Union[Continue[Any], Handled, Skipped]
Hook = Callable[[C], Union[Awaitable[EventOutcome | None], EventOutcome, None]]


@dataclass
class BaseContext:
    request: RequestContext
    response: ResponseContext
    options: OIDCOptions
    scheme: str


@dataclass
class MessageReceivedContext(BaseContext):
    protocol_message: ProtocolMessage
    properties: AuthProperties | None = None


@dataclass
class RedirectContext(BaseContext):
    """Used for both the authorization request and the end-session request."""

    protocol_message: ProtocolMessage
    properties: AuthProperties


@dataclass
class TokenValidatedContext(BaseContext):
    protocol_message: ProtocolMessage
    properties: AuthProperties
    principal: ClaimsIdentity
    security_token: JwtSecurityToken
    nonce: str | None = None
    token_endpoint_response: ProtocolMessage | None = None


@dataclass
class AuthorizationCodeReceivedContext(BaseContext):
    """Runs before the code is redeemed.

    A hook that redeems the code itself assigns ``token_endpoint_response``;
    the engine then skips its own redemption and token response checks.
    """

    protocol_message: ProtocolMessage
    properties: AuthProperties
    token_endpoint_request: ProtocolMessage
    backchannel: httpx.AsyncClient
    principal: ClaimsIdentity | None = None
    security_token: JwtSecurityToken | None = None
    token_endpoint_response: ProtocolMessage | None = None

    @property
    def handled_code_redemption(self) -> bool:
        return self.token_endpoint_response is not None


@dataclass
class TokenResponseReceivedContext(BaseContext):
    protocol_message: ProtocolMessage
    properties: AuthProperties
    token_endpoint_response: ProtocolMessage
    principal: ClaimsIdentity | None = None


@dataclass
class UserInformationReceivedContext(BaseContext):
    protocol_message: ProtocolMessage
    properties: AuthProperties
    principal: ClaimsIdentity
    user: dict[str, Any] = field(default_factory=dict)


@dataclass
class AuthenticationFailedContext(BaseContext):
    """Runs whenever the callback flow fails.

    A hook may replace ``failure`` and return Continue to change the
    reported reason.
    """

    protocol_message: ProtocolMessage | None
    failure: Exception
    properties: AuthProperties | None = None


@dataclass
class RemoteSignOutContext(BaseContext):
    """Front-channel sign-out notification or signed-out callback."""

    protocol_message: ProtocolMessage | None
    properties: AuthProperties | None = None


@dataclass
class TicketReceivedContext(BaseContext):
    """Runs after a successful callback, before the local sign-in."""

    ticket: Ticket
    return_uri: str | None = None


@dataclass
class RemoteFailureContext(BaseContext):
    failure: Exception
    properties: AuthProperties | None = None


async def invoke_hook(hook: Hook[C] | None, context: C) -> EventOutcome:
    """Run a hook and normalize its outcome.

    Raises:
        TypeError: If the hook returns something other than an outcome.
    """
    if hook is None:
        return Continue(context)

    result = hook(context)
    if inspect.isawaitable(result):
        result = await result

    if result is None:
        return Continue(context)
    if isinstance(result, (Continue, Handled, Skipped)):
        return result
    raise TypeError(f"Event hooks must return Continue, Handled, Skipped or None, got {type(result).__name__}")


@dataclass
class OIDCEvents:
    """Hook container; every hook is optional."""

    on_message_received: Hook[MessageReceivedContext] | None = None
    on_redirect_to_identity_provider: Hook[RedirectContext] | None = None
    on_redirect_to_identity_provider_for_sign_out: Hook[RedirectContext] | None = None
    on_token_validated: Hook[TokenValidatedContext] | None = None
    on_authorization_code_received: Hook[AuthorizationCodeReceivedContext] | None = None
    on_token_response_received: Hook[TokenResponseReceivedContext] | None = None
    on_user_information_received: Hook[UserInformationReceivedContext] | None = None
    on_authentication_failed: Hook[AuthenticationFailedContext] | None = None
    on_remote_sign_out: Hook[RemoteSignOutContext] | None = None
    on_signed_out_callback_redirect: Hook[RemoteSignOutContext] | None = None
    on_ticket_received: Hook[TicketReceivedContext] | None = None
    on_remote_failure: Hook[RemoteFailureContext] | None = None

    async def message_received(self, context: MessageReceivedContext) -> EventOutcome:
        return await invoke_hook(self.on_message_received, context)

    async def redirect_to_identity_provider(self, context: RedirectContext) -> EventOutcome:
        return await invoke_hook(self.on_redirect_to_identity_provider, context)

    async def redirect_to_identity_provider_for_sign_out(self, context: RedirectContext) -> EventOutcome:
        return await invoke_hook(self.on_redirect_to_identity_provider_for_sign_out, context)

    async def token_validated(self, context: TokenValidatedContext) -> EventOutcome:
        return await invoke_hook(self.on_token_validated, context)

    async def authorization_code_received(self, context: AuthorizationCodeReceivedContext) -> EventOutcome:
        return await invoke_hook(self.on_authorization_code_received, context)

    async def token_response_received(self, context: TokenResponseReceivedContext) -> EventOutcome:
        return await invoke_hook(self.on_token_response_received, context)

    async def user_information_received(self, context: UserInformationReceivedContext) -> EventOutcome:
        return await invoke_hook(self.on_user_information_received, context)

    async def authentication_failed(self, context: AuthenticationFailedContext) -> EventOutcome:
        return await invoke_hook(self.on_authentication_failed, context)

    async def remote_sign_out(self, context: RemoteSignOutContext) -> EventOutcome:
        return await invoke_hook(self.on_remote_sign_out, context)

    async def signed_out_callback_redirect(self, context: RemoteSignOutContext) -> EventOutcome:
        return await invoke_hook(self.on_signed_out_callback_redirect, context)

    async def ticket_received(self, context: TicketReceivedContext) -> EventOutcome:
        return await invoke_hook(self.on_ticket_received, context)

    async def remote_failure(self, context: RemoteFailureContext) -> EventOutcome:
        return await invoke_hook(self.on_remote_failure, context)
