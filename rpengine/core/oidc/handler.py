"""The relying-party state machine.

AuthenticationOrchestrator drives the four flows of the engine:

- challenge: send the user agent to the authorization endpoint;
- callback: validate the provider's response and produce a Ticket;
- sign-out: send the user agent to the end-session endpoint;
- remote sign-out: process provider-initiated sign-out notifications.

Hosts call ``handle_request`` for every inbound request and act on the
returned RequestResult, and call ``challenge``/``sign_out`` when the
application wants to start a login or logout.
"""

from __future__ import annotations

import html
import logging
from datetime import UTC, datetime, timedelta
from typing import Protocol

from rpengine.core.oidc.correlation import CorrelationGuard
from rpengine.core.oidc.events import (
    AuthenticationFailedContext,
    AuthorizationCodeReceivedContext,
    Handled,
    MessageReceivedContext,
    RedirectContext,
    RemoteFailureContext,
    Skipped,
    TicketReceivedContext,
    TokenResponseReceivedContext,
    TokenValidatedContext,
)
from rpengine.core.oidc.exceptions import (
    AuthenticationError,
    ConfigurationError,
    ProtocolError,
    SecurityTokenError,
    SignatureKeyNotFoundError,
    StateError,
)
from rpengine.core.oidc.http import RequestContext, ResponseContext, send_protocol_message
from rpengine.core.oidc.message import ProtocolMessage, ResponseMode, ResponseType
from rpengine.core.oidc.metadata import ConfigurationCache, ProviderConfiguration
from rpengine.core.oidc.options import OIDCOptions
from rpengine.core.oidc.properties import (
    CHECK_SESSION_IFRAME_KEY,
    REDIRECT_URI_FOR_CODE_KEY,
    SESSION_STATE_KEY,
    USER_STATE_KEY,
    AuthProperties,
    AuthToken,
    Ticket,
)
from rpengine.core.oidc.redeemer import CodeRedeemer
from rpengine.core.oidc.results import AuthenticateResult, RequestResult
from rpengine.core.oidc.signout import SignOutCoordinator
from rpengine.core.oidc.userinfo import UserInfoFetcher
from rpengine.core.oidc.validation import (
    JwtSecurityToken,
    ProtocolValidationContext,
    TokenValidationAdapter,
)

logger = logging.getLogger(__name__)

EXPIRES_AT_TOKEN = "expires_at"

_FAILURE_DOCUMENT = """<!doctype html>
<html>
<head>
    <title>Sign-in failed</title>
</head>
<body>
    <h1>An error was encountered while handling the remote login.</h1>
    <p>{reason}</p>
</body>
</html>"""


class ChallengeFlow(Protocol):
    async def challenge(
        self,
        request: RequestContext,
        response: ResponseContext,
        properties: AuthProperties | None = None,
    ) -> RequestResult: ...


class CallbackFlow(Protocol):
    async def handle_remote_authenticate(self, request: RequestContext, response: ResponseContext) -> AuthenticateResult: ...

    async def handle_request(self, request: RequestContext, response: ResponseContext) -> RequestResult: ...


class SignOutFlow(Protocol):
    async def sign_out(
        self,
        request: RequestContext,
        response: ResponseContext,
        properties: AuthProperties | None = None,
    ) -> RequestResult: ...

    async def handle_sign_out_callback(self, request: RequestContext, response: ResponseContext) -> RequestResult: ...

    async def handle_remote_sign_out(self, request: RequestContext, response: ResponseContext) -> RequestResult: ...


def build_token_list(message: ProtocolMessage, now: datetime) -> list[AuthToken]:
    """Collect the tokens of a response for storage in AuthProperties.

    ``expires_in`` becomes an ``expires_at`` token holding the absolute
    ISO-8601 expiry; a non-integer ``expires_in`` is ignored.
    """
    tokens = []
    for name in ("access_token", "id_token", "refresh_token", "token_type"):
        value = message.get_parameter(name)
        if value:
            tokens.append(AuthToken(name=name, value=value))

    if message.expires_in:
        try:
            seconds = int(message.expires_in)
        except ValueError:
            logger.debug(f"Ignoring non-integer expires_in: {message.expires_in!r}")
        else:
            tokens.append(AuthToken(name=EXPIRES_AT_TOKEN, value=(now + timedelta(seconds=seconds)).isoformat()))
    return tokens


class AuthenticationOrchestrator:
    """OpenID Connect relying-party engine for one scheme.

    Implements ChallengeFlow, CallbackFlow and SignOutFlow. One instance
    is shared by all requests; the only state kept between requests is the
    provider configuration cache and the backchannel client.
    """

    def __init__(self, options: OIDCOptions) -> None:
        """Initialize the engine.

        Args:
            options: Engine options; ``initialize()`` is called on them.

        Raises:
            ConfigurationError: If the options are invalid.
        """
        options.initialize()
        if options.backchannel is None:
            raise ConfigurationError.not_initialized("backchannel")
        if options.string_data_format is None:
            raise ConfigurationError.not_initialized("string_data_format")

        self.options = options
        self.configuration = ConfigurationCache(options.configuration_provider, options.automatic_refresh_interval)
        self.correlation = CorrelationGuard(
            options.string_data_format,
            options.scheme,
            nonce_lifetime=options.nonce_lifetime,
            correlation_lifetime=options.remote_authentication_timeout,
        )
        self.token_validation = TokenValidationAdapter(
            options.token_validator,
            options.token_validation_parameters,
            options.scheme,
            use_token_lifetime=options.use_token_lifetime,
        )
        self.redeemer = CodeRedeemer(options.backchannel)
        self.user_info = UserInfoFetcher(options.backchannel, options.protocol_validator, options.events)
        self.sign_out_coordinator = SignOutCoordinator(options, self.configuration)

    async def aclose(self) -> None:
        """Close the backchannel client."""
        if self.options.backchannel is not None:
            await self.options.backchannel.aclose()

    async def __aenter__(self) -> AuthenticationOrchestrator:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    # -- Dispatch ---------------------------------------------------------

    async def handle_request(self, request: RequestContext, response: ResponseContext) -> RequestResult:
        """Route a request to the flow owning its path.

        Returns:
            CONTINUE for paths the engine does not own, otherwise the
            outcome of the remote sign-out, signed-out callback or login
            callback flow.
        """
        options = self.options
        path = request.path
        if options.remote_sign_out_path and path == options.remote_sign_out_path:
            return await self.handle_remote_sign_out(request, response)
        if options.signed_out_callback_path and path == options.signed_out_callback_path:
            return await self.handle_sign_out_callback(request, response)
        if path == options.callback_path:
            return await self._handle_callback(request, response)
        return RequestResult.proceed()

    async def _handle_callback(self, request: RequestContext, response: ResponseContext) -> RequestResult:
        result = await self.handle_remote_authenticate(request, response)
        if result.handled:
            return RequestResult.handle(result)
        if result.skipped:
            return RequestResult.skip(result)
        if result.ticket is None:
            failure = result.failure or AuthenticationError("Invalid return state, unable to redirect.")
            return await self._handle_remote_failure(request, response, failure, result.properties)

        ticket = result.ticket
        context = TicketReceivedContext(
            request=request,
            response=response,
            options=self.options,
            scheme=self.options.scheme,
            ticket=ticket,
            return_uri=ticket.properties.redirect_uri,
        )
        ticket.properties.redirect_uri = None

        outcome = await self.options.events.ticket_received(context)
        if isinstance(outcome, Handled):
            logger.debug("TicketReceived.HandledResponse")
            return RequestResult.handle(result)
        if isinstance(outcome, Skipped):
            logger.debug("TicketReceived.Skipped")
            return RequestResult.skip(result)

        context = outcome.context
        response.sign_in(context.ticket)
        response.redirect(context.return_uri or "/")
        return RequestResult.handle(AuthenticateResult.success(context.ticket))

    async def _handle_remote_failure(
        self,
        request: RequestContext,
        response: ResponseContext,
        failure: Exception,
        properties: AuthProperties | None,
    ) -> RequestResult:
        logger.info(f"Error from remote login: {failure}")
        context = RemoteFailureContext(
            request=request,
            response=response,
            options=self.options,
            scheme=self.options.scheme,
            failure=failure,
            properties=properties,
        )
        outcome = await self.options.events.remote_failure(context)
        if isinstance(outcome, Handled):
            logger.debug("RemoteFailure.HandledResponse")
            return RequestResult.handle(AuthenticateResult.fail(failure, properties))
        if isinstance(outcome, Skipped):
            logger.debug("RemoteFailure.Skipped")
            return RequestResult.skip(AuthenticateResult.fail(failure, properties))

        failure = outcome.context.failure
        response.write_html(_FAILURE_DOCUMENT.format(reason=html.escape(str(failure))), status_code=400)
        return RequestResult.handle(AuthenticateResult.fail(failure, properties))

    # -- Challenge --------------------------------------------------------

    async def challenge(
        self,
        request: RequestContext,
        response: ResponseContext,
        properties: AuthProperties | None = None,
    ) -> RequestResult:
        """Send the user agent to the authorization endpoint.

        Args:
            request: The request that needs authentication.
            response: Response to write the redirect or form into.
            properties: Optional properties; ``redirect_uri`` sets where the
                user returns after login (defaults to the current URI).

        Returns:
            HANDLE when the request was produced or a hook handled it, SKIP
            when the ``redirect_to_identity_provider`` hook skipped it.

        Raises:
            ConfigurationError: If the authorization endpoint is unknown or
                the redirect behavior is unsupported.
        """
        options = self.options
        logger.debug("Entering challenge")

        properties = properties or AuthProperties()
        if not properties.redirect_uri:
            properties.redirect_uri = request.current_uri
        logger.debug(f"Using properties.redirect_uri for redirect post authentication: '{properties.redirect_uri}'")

        configuration = await self.configuration.get()

        message = ProtocolMessage(
            issuer_address=(configuration.authorization_endpoint or "") if configuration else "",
        )
        message.client_id = options.client_id
        message.redirect_uri = request.build_redirect_uri(options.callback_path)
        message.resource = options.resource
        message.response_type = options.response_type
        message.scope = " ".join(options.scope)

        # response_mode is omitted when it is the default for the response type
        if options.response_type != ResponseType.CODE or options.response_mode != ResponseMode.QUERY:
            message.response_mode = options.response_mode

        if options.protocol_validator.require_nonce:
            message.nonce = options.protocol_validator.generate_nonce()
            self.correlation.write_nonce_cookie(request, response, message.nonce)

        self.correlation.generate_correlation_id(request, response, properties)

        context = RedirectContext(
            request=request,
            response=response,
            options=options,
            scheme=options.scheme,
            protocol_message=message,
            properties=properties,
        )
        outcome = await options.events.redirect_to_identity_provider(context)
        if isinstance(outcome, Handled):
            logger.debug("RedirectToIdentityProvider.HandledResponse")
            return RequestResult.handle()
        if isinstance(outcome, Skipped):
            logger.debug("RedirectToIdentityProvider.Skipped")
            return RequestResult.skip()

        message = outcome.context.protocol_message
        properties = outcome.context.properties

        if message.state:
            properties.items[USER_STATE_KEY] = message.state

        # Redeeming the code requires the exact redirect_uri of the request
        if message.redirect_uri:
            properties.items[REDIRECT_URI_FOR_CODE_KEY] = message.redirect_uri

        if options.state_data_format is None:
            raise ConfigurationError.not_initialized("state_data_format")
        message.state = options.state_data_format.protect(properties)

        if not message.issuer_address:
            raise ConfigurationError(
                "Cannot redirect to the authorization endpoint, the configuration may be missing or invalid."
            )

        send_protocol_message(response, message, options.redirect_behavior)
        return RequestResult.handle()

    # -- Callback ---------------------------------------------------------

    def _skip_or_fail(self, failure: Exception | str, properties: AuthProperties | None = None) -> AuthenticateResult:
        if self.options.skip_unrecognized_requests:
            return AuthenticateResult.skip()
        return AuthenticateResult.fail(failure, properties)

    def _read_state(self, state: str | None) -> AuthProperties | None:
        if not state:
            return None
        if self.options.state_data_format is None:
            raise ConfigurationError.not_initialized("state_data_format")
        return self.options.state_data_format.unprotect(state)

    async def handle_remote_authenticate(self, request: RequestContext, response: ResponseContext) -> AuthenticateResult:
        """Process an authorization response at the callback path.

        The response is read from the query of a GET or from a
        form-urlencoded POST body. Once the message is read, every failure
        goes through the ``authentication_failed`` event except state and
        correlation failures and provider errors, which fail directly.

        Returns:
            The AuthenticateResult: success with a Ticket, fail, skip
            (unrecognized message, or a hook skipped) or handle.

        Raises:
            ConfigurationError: On fatal misconfiguration.
        """
        options = self.options
        logger.debug("Entering handle_remote_authenticate")

        authorization_response: ProtocolMessage | None = None
        if request.is_get:
            authorization_response = ProtocolMessage(request.query)
            # Tokens in a query string leak through history and referrers
            if authorization_response.id_token or authorization_response.access_token:
                return self._skip_or_fail(
                    ProtocolError(
                        "An OpenID Connect response cannot contain an identity token "
                        "or an access token when using response_mode=query"
                    )
                )
        elif request.is_post and request.has_form_content_type:
            authorization_response = ProtocolMessage(request.read_form())

        if authorization_response is None:
            return self._skip_or_fail("No message.")

        try:
            return await self._process_authorization_response(request, response, authorization_response)
        except ConfigurationError:
            raise
        except Exception as e:
            return await self._authentication_failed(request, response, authorization_response, e)

    async def _authentication_failed(
        self,
        request: RequestContext,
        response: ResponseContext,
        message: ProtocolMessage,
        failure: Exception,
    ) -> AuthenticateResult:
        logger.error(f"Exception occurred while processing message: {failure}")

        if self.options.refresh_on_issuer_key_not_found and isinstance(failure, SignatureKeyNotFoundError):
            logger.debug("ConfigurationManager.RequestRefresh was called")
            self.configuration.request_refresh()

        context = AuthenticationFailedContext(
            request=request,
            response=response,
            options=self.options,
            scheme=self.options.scheme,
            protocol_message=message,
            failure=failure,
        )
        outcome = await self.options.events.authentication_failed(context)
        if isinstance(outcome, Handled):
            logger.debug("AuthenticationFailed.HandledResponse")
            return AuthenticateResult.handle()
        if isinstance(outcome, Skipped):
            logger.debug("AuthenticationFailed.Skipped")
            return AuthenticateResult.skip()
        return AuthenticateResult.fail(outcome.context.failure, outcome.context.properties)

    async def _process_authorization_response(
        self,
        request: RequestContext,
        response: ResponseContext,
        authorization_response: ProtocolMessage,
    ) -> AuthenticateResult:
        options = self.options
        events = options.events
        scheme = options.scheme

        properties = self._read_state(authorization_response.state)

        received = MessageReceivedContext(
            request=request,
            response=response,
            options=options,
            scheme=scheme,
            protocol_message=authorization_response,
            properties=properties,
        )
        outcome = await events.message_received(received)
        if isinstance(outcome, Handled):
            logger.debug("MessageReceived.HandledResponse")
            return AuthenticateResult.handle()
        if isinstance(outcome, Skipped):
            logger.debug("MessageReceived.Skipped")
            return AuthenticateResult.skip()
        authorization_response = outcome.context.protocol_message
        properties = outcome.context.properties

        if properties is None:
            # state is the only carrier of the correlation id
            if not authorization_response.state:
                logger.debug("message.State is null or empty.")
                return self._skip_or_fail(StateError("OpenIdConnectAuthenticationHandler: message.State is null or empty."))
            properties = self._read_state(authorization_response.state)

        if properties is None:
            logger.debug("Unable to read the message.State.")
            return self._skip_or_fail(StateError("Unable to unprotect the message.State."))

        authorization_response.state = properties.items.get(USER_STATE_KEY)

        correlation_error = self.correlation.validate_correlation_id(request, response, properties)
        if correlation_error is not None:
            return AuthenticateResult.fail(correlation_error, properties)

        if authorization_response.error:
            logger.error(
                f"Message contains error: '{authorization_response.error}', "
                f"error_description: '{authorization_response.error_description}'"
            )
            return AuthenticateResult.fail(
                ProtocolError.from_error_fields(
                    authorization_response.error,
                    authorization_response.error_description,
                    authorization_response.error_uri,
                ),
                properties,
            )

        logger.debug("Updating configuration")
        configuration = await self.configuration.get()
        self._populate_session_properties(authorization_response, properties, configuration)

        ticket: Ticket | None = None
        jwt: JwtSecurityToken | None = None
        nonce: str | None = None

        # Hybrid or implicit flow
        if authorization_response.id_token:
            logger.debug("Received 'id_token'")
            validated = self.token_validation.validate(authorization_response.id_token, properties, configuration)
            if validated.error is not None or validated.ticket is None or validated.security_token is None:
                raise validated.error or SecurityTokenError("Unable to validate the 'id_token'.")
            ticket, jwt = validated.ticket, validated.security_token
            nonce = self.correlation.read_nonce_cookie(request, response, jwt.nonce)

            token_validated = TokenValidatedContext(
                request=request,
                response=response,
                options=options,
                scheme=scheme,
                protocol_message=authorization_response,
                properties=properties,
                principal=ticket.principal,
                security_token=jwt,
                nonce=nonce,
            )
            outcome = await events.token_validated(token_validated)
            if isinstance(outcome, Handled):
                logger.debug("TokenValidated.HandledResponse")
                return AuthenticateResult.handle()
            if isinstance(outcome, Skipped):
                logger.debug("TokenValidated.Skipped")
                return AuthenticateResult.skip()
            token_validated = outcome.context
            authorization_response = token_validated.protocol_message
            properties = token_validated.properties
            ticket = Ticket(token_validated.principal, properties, scheme)
            jwt = token_validated.security_token
            nonce = token_validated.nonce

        protocol_error = options.protocol_validator.validate_authentication_response(
            ProtocolValidationContext(
                client_id=options.client_id,
                protocol_message=authorization_response,
                validated_id_token=jwt,
                nonce=nonce,
            )
        )
        if protocol_error is not None:
            raise protocol_error

        token_endpoint_response: ProtocolMessage | None = None

        # Authorization code or hybrid flow
        if authorization_response.code:
            code_received = AuthorizationCodeReceivedContext(
                request=request,
                response=response,
                options=options,
                scheme=scheme,
                protocol_message=authorization_response,
                properties=properties,
                token_endpoint_request=CodeRedeemer.build_request(
                    configuration.token_endpoint if configuration else None,
                    options.client_id,
                    options.client_secret,
                    authorization_response.code,
                    properties.items.get(REDIRECT_URI_FOR_CODE_KEY),
                ),
                backchannel=self.redeemer.backchannel,
                principal=ticket.principal if ticket else None,
                security_token=jwt,
            )
            logger.debug("AuthorizationCode received")
            outcome = await events.authorization_code_received(code_received)
            if isinstance(outcome, Handled):
                logger.debug("AuthorizationCodeReceived.HandledResponse")
                return AuthenticateResult.handle()
            if isinstance(outcome, Skipped):
                logger.debug("AuthorizationCodeReceived.Skipped")
                return AuthenticateResult.skip()
            code_received = outcome.context
            authorization_response = code_received.protocol_message
            properties = code_received.properties
            token_endpoint_response = code_received.token_endpoint_response
            ticket = Ticket(code_received.principal, properties, scheme) if code_received.principal else None
            jwt = code_received.security_token
            handled_code_redemption = code_received.handled_code_redemption

            if not handled_code_redemption:
                redemption = await self.redeemer.redeem(code_received.token_endpoint_request)
                if not redemption.is_success:
                    raise redemption.error or ProtocolError("The token endpoint returned no response.")
                token_endpoint_response = redemption.response
            if token_endpoint_response is None:
                raise ProtocolError("The token endpoint returned no response.")

            response_received = TokenResponseReceivedContext(
                request=request,
                response=response,
                options=options,
                scheme=scheme,
                protocol_message=authorization_response,
                properties=properties,
                token_endpoint_response=token_endpoint_response,
                principal=ticket.principal if ticket else None,
            )
            logger.debug("Token response received")
            outcome = await events.token_response_received(response_received)
            if isinstance(outcome, Handled):
                logger.debug("TokenResponseReceived.HandledResponse")
                return AuthenticateResult.handle()
            if isinstance(outcome, Skipped):
                logger.debug("TokenResponseReceived.Skipped")
                return AuthenticateResult.skip()
            authorization_response = outcome.context.protocol_message
            token_endpoint_response = outcome.context.token_endpoint_response

            # Signatures are not required on tokens received directly from the token endpoint
            validated = self.token_validation.validate(
                token_endpoint_response.id_token,
                properties,
                configuration,
                require_signed_tokens=False,
            )
            if validated.error is not None or validated.ticket is None or validated.security_token is None:
                raise validated.error or SecurityTokenError("Unable to validate the 'id_token'.")
            token_endpoint_jwt = validated.security_token

            if ticket is None:
                nonce = self.correlation.read_nonce_cookie(request, response, token_endpoint_jwt.nonce)
                token_validated = TokenValidatedContext(
                    request=request,
                    response=response,
                    options=options,
                    scheme=scheme,
                    protocol_message=authorization_response,
                    properties=properties,
                    principal=validated.ticket.principal,
                    security_token=token_endpoint_jwt,
                    nonce=nonce,
                    token_endpoint_response=token_endpoint_response,
                )
                outcome = await events.token_validated(token_validated)
                if isinstance(outcome, Handled):
                    logger.debug("TokenValidated.HandledResponse")
                    return AuthenticateResult.handle()
                if isinstance(outcome, Skipped):
                    logger.debug("TokenValidated.Skipped")
                    return AuthenticateResult.skip()
                token_validated = outcome.context
                authorization_response = token_validated.protocol_message
                token_endpoint_response = token_validated.token_endpoint_response or token_endpoint_response
                properties = token_validated.properties
                ticket = Ticket(token_validated.principal, properties, scheme)
                jwt = token_validated.security_token
                nonce = token_validated.nonce
            else:
                if jwt is None or jwt.subject != token_endpoint_jwt.subject:
                    raise SecurityTokenError(
                        "The sub claim does not match in the id_token's from the authorization and token endpoints."
                    )
                jwt = token_endpoint_jwt

            if not handled_code_redemption:
                protocol_error = options.protocol_validator.validate_token_response(
                    ProtocolValidationContext(
                        client_id=options.client_id,
                        protocol_message=token_endpoint_response,
                        validated_id_token=jwt,
                        nonce=nonce,
                    )
                )
                if protocol_error is not None:
                    raise protocol_error

        if ticket is None or jwt is None:
            raise SecurityTokenError("No id_token was validated for this response.")

        message = token_endpoint_response or authorization_response
        if options.save_tokens:
            ticket.properties.store_tokens(build_token_list(message, datetime.now(UTC)))

        if options.get_claims_from_user_info_endpoint:
            result = await self.user_info.fetch(
                request,
                response,
                options,
                message,
                jwt,
                ticket.principal,
                ticket.properties,
                configuration.userinfo_endpoint if configuration else None,
            )
            if result.failure is not None:
                raise result.failure
            return result

        return AuthenticateResult.success(ticket)

    def _populate_session_properties(
        self,
        message: ProtocolMessage,
        properties: AuthProperties,
        configuration: ProviderConfiguration | None,
    ) -> None:
        if message.session_state:
            properties.items[SESSION_STATE_KEY] = message.session_state
        if configuration is not None and configuration.check_session_iframe:
            properties.items[CHECK_SESSION_IFRAME_KEY] = configuration.check_session_iframe

    # -- Sign-out ---------------------------------------------------------

    async def sign_out(
        self,
        request: RequestContext,
        response: ResponseContext,
        properties: AuthProperties | None = None,
    ) -> RequestResult:
        return await self.sign_out_coordinator.sign_out(request, response, properties)

    async def handle_sign_out_callback(self, request: RequestContext, response: ResponseContext) -> RequestResult:
        return await self.sign_out_coordinator.handle_sign_out_callback(request, response)

    async def handle_remote_sign_out(self, request: RequestContext, response: ResponseContext) -> RequestResult:
        return await self.sign_out_coordinator.handle_remote_sign_out(request, response)
