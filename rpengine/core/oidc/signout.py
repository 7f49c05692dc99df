"""RP-initiated sign-out, the signed-out callback and front-channel sign-out."""

from __future__ import annotations

import hmac
import logging
from typing import TYPE_CHECKING

from rpengine.core.oidc.events import (
    Handled,
    RedirectContext,
    RemoteSignOutContext,
    Skipped,
)
from rpengine.core.oidc.exceptions import ConfigurationError
from rpengine.core.oidc.http import RequestContext, ResponseContext, send_protocol_message
from rpengine.core.oidc.message import ParameterNames, ProtocolMessage
from rpengine.core.oidc.metadata import ConfigurationCache
from rpengine.core.oidc.properties import USER_STATE_KEY, AuthProperties
from rpengine.core.oidc.results import AuthenticateResult, RequestResult

if TYPE_CHECKING:
    from rpengine.core.oidc.options import OIDCOptions

logger = logging.getLogger(__name__)


def read_request_message(request: RequestContext) -> ProtocolMessage | None:
    """Read protocol parameters from a GET query or a form-urlencoded POST.

    Returns None for any other request shape.
    """
    if request.is_get:
        return ProtocolMessage(request.query)
    if request.is_post and request.has_form_content_type:
        return ProtocolMessage(request.read_form())
    return None


class SignOutCoordinator:
    """Builds end-session requests and processes sign-out notifications."""

    def __init__(self, options: OIDCOptions, configuration: ConfigurationCache) -> None:
        self.options = options
        self.configuration = configuration

    async def sign_out(
        self,
        request: RequestContext,
        response: ResponseContext,
        properties: AuthProperties | None = None,
    ) -> RequestResult:
        """Send the user agent to the provider's end-session endpoint.

        Args:
            request: The current request.
            response: Response to write the redirect or form into.
            properties: Optional properties; ``redirect_uri`` sets where the
                user lands after the provider signs them out.

        Returns:
            HANDLE when the redirect was produced or a hook handled it,
            SKIP when a hook skipped it.

        Raises:
            ConfigurationError: If no end-session endpoint is available.
        """
        options = self.options
        logger.debug("Entering sign-out")

        configuration = await self.configuration.get()
        message = ProtocolMessage(
            issuer_address=(configuration.end_session_endpoint or "") if configuration else "",
        )
        message.post_logout_redirect_uri = request.build_redirect_uri_if_relative(options.signed_out_callback_path)

        properties = properties or AuthProperties()
        if not properties.redirect_uri:
            properties.redirect_uri = request.build_redirect_uri_if_relative(options.signed_out_redirect_uri)
            if not properties.redirect_uri:
                properties.redirect_uri = request.current_uri
        logger.debug(f"Post sign-out redirect: {properties.redirect_uri}")

        ticket = request.ticket
        if ticket is not None:
            message.id_token_hint = ticket.properties.get_token_value(ParameterNames.ID_TOKEN)

        context = RedirectContext(
            request=request,
            response=response,
            options=options,
            scheme=options.scheme,
            protocol_message=message,
            properties=properties,
        )
        outcome = await options.events.redirect_to_identity_provider_for_sign_out(context)
        if isinstance(outcome, Handled):
            logger.debug("RedirectToIdentityProviderForSignOut.HandledResponse")
            return RequestResult.handle()
        if isinstance(outcome, Skipped):
            logger.debug("RedirectToIdentityProviderForSignOut.Skipped")
            return RequestResult.skip()

        message = outcome.context.protocol_message
        properties = outcome.context.properties
        if message.state:
            properties.items[USER_STATE_KEY] = message.state
        if options.state_data_format is None:
            raise ConfigurationError.not_initialized("state_data_format")
        message.state = options.state_data_format.protect(properties)

        if not message.issuer_address:
            raise ConfigurationError(
                "Cannot redirect to the end session endpoint, the configuration may be missing or invalid."
            )

        send_protocol_message(response, message, options.redirect_behavior)
        return RequestResult.handle()

    async def handle_sign_out_callback(self, request: RequestContext, response: ResponseContext) -> RequestResult:
        """Finish an RP-initiated sign-out when the provider returns the user agent."""
        options = self.options
        message = ProtocolMessage(request.query)

        properties = None
        if message.state:
            if options.state_data_format is None:
                raise ConfigurationError.not_initialized("state_data_format")
            properties = options.state_data_format.unprotect(message.state)

        context = RemoteSignOutContext(
            request=request,
            response=response,
            options=options,
            scheme=options.scheme,
            protocol_message=message,
            properties=properties,
        )
        outcome = await options.events.signed_out_callback_redirect(context)
        if isinstance(outcome, Handled):
            logger.debug("SignedOutCallbackRedirect.HandledResponse")
            return RequestResult.handle()
        if isinstance(outcome, Skipped):
            logger.debug("SignedOutCallbackRedirect.Skipped")
            return RequestResult.skip()

        properties = outcome.context.properties
        if properties is not None and properties.redirect_uri:
            response.redirect(properties.redirect_uri)
        return RequestResult.handle()

    async def handle_remote_sign_out(self, request: RequestContext, response: ResponseContext) -> RequestResult:
        """Process a provider-initiated (front-channel) sign-out notification.

        When the local session has a ``sid`` claim, the notification must
        carry the same ``sid``; otherwise the notification is ignored, the
        local session kept and a handled result with the failure reason is
        returned. Without a local ``sid`` the session is always signed out.
        """
        options = self.options
        message = read_request_message(request)

        context = RemoteSignOutContext(
            request=request,
            response=response,
            options=options,
            scheme=options.scheme,
            protocol_message=message,
        )
        outcome = await options.events.remote_sign_out(context)
        if isinstance(outcome, Handled):
            logger.debug("RemoteSignOut.HandledResponse")
            return RequestResult.handle()
        if isinstance(outcome, Skipped):
            logger.debug("RemoteSignOut.Skipped")
            return RequestResult.skip()

        message = outcome.context.protocol_message
        if message is None:
            return RequestResult.skip()

        ticket = request.ticket
        sid = ticket.find_first(ParameterNames.SID) if ticket is not None else None
        if sid:
            if not message.sid:
                logger.debug("The remote signout request was ignored because the 'sid' parameter was missing")
                return RequestResult.handle(AuthenticateResult.fail("The 'sid' parameter is missing."))
            if not hmac.compare_digest(sid.encode(), message.sid.encode()):
                logger.debug("The remote signout request was ignored because the 'sid' parameter didn't match the expected value")
                return RequestResult.handle(AuthenticateResult.fail("The 'sid' parameter does not match the local session."))

        logger.info("Remote signout request processed")
        if not options.sign_out_scheme:
            raise ConfigurationError.not_initialized("sign_out_scheme")
        response.sign_out(options.sign_out_scheme)
        return RequestResult.handle()
