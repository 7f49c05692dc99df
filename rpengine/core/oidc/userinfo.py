"""Supplemental claims from the provider's userinfo endpoint."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from rpengine.core.oidc.events import (
    Handled,
    OIDCEvents,
    Skipped,
    UserInformationReceivedContext,
)
from rpengine.core.oidc.exceptions import ProtocolError
from rpengine.core.oidc.http import RequestContext, ResponseContext
from rpengine.core.oidc.message import ProtocolMessage
from rpengine.core.oidc.properties import (
    DEFAULT_ISSUER,
    SHORT_CLAIM_TYPE_PROPERTY,
    AuthProperties,
    ClaimsIdentity,
    Ticket,
    claim_value_to_string,
)
from rpengine.core.oidc.results import AuthenticateResult
from rpengine.core.oidc.utils import decode_jwt
from rpengine.core.oidc.validation import (
    JwtSecurityToken,
    ProtocolValidationContext,
    ProtocolValidator,
)

if TYPE_CHECKING:
    from rpengine.core.oidc.options import OIDCOptions

logger = logging.getLogger(__name__)


def merge_user_info(identity: ClaimsIdentity, user: dict[str, Any], issuer: str | None) -> None:
    """Append the userinfo claims the identity does not already have.

    An entry is dropped when some claim of the identity has the same type
    (or the same original short type) and the same string value. Values
    are compared in their string form, so ``"123"`` and ``123`` match.
    Remaining entries are added with ``issuer`` as their issuer.
    """
    for claim in identity.claims:
        short_type = claim.properties.get(SHORT_CLAIM_TYPE_PROPERTY, "")
        if claim.type in user:
            key = claim.type
        elif short_type and short_type in user:
            key = short_type
        else:
            continue

        value = user[key]
        if value is not None and claim.value == claim_value_to_string(value):
            del user[key]

    identity.add_claims_from_json(user, issuer or DEFAULT_ISSUER)


def _media_type(content_type: str | None) -> str:
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


class UserInfoFetcher:
    """Fetches userinfo claims and merges them into the validated identity.

    Failures are returned as failed results rather than raised, except
    transport and HTTP status errors from the backchannel.
    """

    def __init__(
        self,
        backchannel: httpx.AsyncClient,
        protocol_validator: ProtocolValidator,
        events: OIDCEvents,
    ) -> None:
        self.backchannel = backchannel
        self.protocol_validator = protocol_validator
        self.events = events

    async def fetch(
        self,
        request: RequestContext,
        response: ResponseContext,
        options: OIDCOptions,
        message: ProtocolMessage,
        security_token: JwtSecurityToken,
        principal: ClaimsIdentity,
        properties: AuthProperties,
        userinfo_endpoint: str | None,
    ) -> AuthenticateResult:
        """Retrieve claims and build the final ticket.

        Args:
            request: The callback request.
            response: The callback response.
            options: Engine options (passed to the hook context).
            message: The token endpoint response, or the authorization
                response when no code was redeemed.
            security_token: The validated id_token.
            principal: The identity built from the id_token.
            properties: Properties of this login.
            userinfo_endpoint: The provider's userinfo endpoint, if any.

        Returns:
            Success with the (possibly augmented) ticket, handle/skip when
            the hook short-circuits, or a failure.

        Raises:
            httpx.HTTPError: If the request fails or returns a non-2xx status.
        """
        scheme = options.scheme
        if not userinfo_endpoint:
            logger.debug("The UserInfo endpoint is not set. Claims cannot be retrieved.")
            return AuthenticateResult.success(Ticket(principal, properties, scheme))
        if not message.access_token:
            logger.debug("The access_token is not available. Claims cannot be retrieved.")
            return AuthenticateResult.success(Ticket(principal, properties, scheme))

        logger.debug("Retrieving claims from the UserInfo endpoint.")
        http_response = await self.backchannel.get(
            userinfo_endpoint,
            headers={"Authorization": f"Bearer {message.access_token}"},
        )
        http_response.raise_for_status()
        body = http_response.text

        media_type = _media_type(http_response.headers.get("content-type"))
        user: Any
        if media_type == "application/json":
            try:
                user = json.loads(body)
            except ValueError as e:
                failure = ProtocolError(f"Unable to parse the userinfo response: {e}")
                return AuthenticateResult.fail(failure, properties)
        elif media_type == "application/jwt":
            decoded = decode_jwt(body.strip())
            if not decoded.is_valid_format:
                return AuthenticateResult.fail(ProtocolError(f"Unable to read the userinfo JWT: {decoded.error}"), properties)
            user = decoded.payload
        else:
            return AuthenticateResult.fail(ProtocolError(f"Unknown response type: {media_type}"), properties)

        if not isinstance(user, dict):
            return AuthenticateResult.fail(ProtocolError("The userinfo response is not a JSON object."), properties)

        logger.debug(f"User information received: {sorted(user)}")
        context = UserInformationReceivedContext(
            request=request,
            response=response,
            options=options,
            scheme=scheme,
            protocol_message=message,
            properties=properties,
            principal=principal,
            user=user,
        )
        outcome = await self.events.user_information_received(context)
        if isinstance(outcome, Handled):
            logger.debug("UserInformationReceived.HandledResponse")
            return AuthenticateResult.handle()
        if isinstance(outcome, Skipped):
            logger.debug("UserInformationReceived.Skipped")
            return AuthenticateResult.skip()

        context = outcome.context
        principal = context.principal
        properties = context.properties
        user = context.user

        error = self.protocol_validator.validate_user_info_response(
            ProtocolValidationContext(user_info_response=body, validated_id_token=security_token)
        )
        if error is not None:
            return AuthenticateResult.fail(error, properties)

        merge_user_info(principal, user, security_token.issuer)
        return AuthenticateResult.success(Ticket(principal, properties, scheme))
