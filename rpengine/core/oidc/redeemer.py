"""Authorization code redemption over the backchannel."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from rpengine.core.oidc.exceptions import ConfigurationError, ProtocolError
from rpengine.core.oidc.message import GRANT_TYPE_AUTHORIZATION_CODE, ProtocolMessage

logger = logging.getLogger(__name__)


@dataclass
class RedemptionResult:
    """Response from the token endpoint."""

    response: ProtocolMessage | None = None
    status_code: int | None = None
    error: ProtocolError | None = None

    @property
    def is_success(self) -> bool:
        return self.error is None and self.response is not None


class CodeRedeemer:
    """Exchanges an authorization code for tokens at the token endpoint."""

    def __init__(self, backchannel: httpx.AsyncClient) -> None:
        self.backchannel = backchannel

    @staticmethod
    def build_request(
        token_endpoint: str | None,
        client_id: str,
        client_secret: str | None,
        code: str | None,
        redirect_uri: str | None,
    ) -> ProtocolMessage:
        """Build the token endpoint request message.

        Args:
            token_endpoint: Token endpoint URL (the message's issuer address).
            client_id: The client identifier.
            client_secret: The client secret, if any.
            code: The authorization code from the callback.
            redirect_uri: The exact redirect URI sent with the authorization request.

        Returns:
            The request message; empty values are omitted.
        """
        message = ProtocolMessage(issuer_address=token_endpoint or "")
        message.client_id = client_id
        message.client_secret = client_secret
        message.code = code
        message.grant_type = GRANT_TYPE_AUTHORIZATION_CODE
        message.redirect_uri = redirect_uri
        return message

    async def redeem(self, request: ProtocolMessage) -> RedemptionResult:
        """POST the request to the token endpoint and parse the JSON response.

        The body is parsed as JSON whatever the declared content type.
        Transport errors (``httpx.HTTPError``) propagate.

        Args:
            request: Message built by ``build_request`` (possibly modified by hooks).

        Returns:
            RedemptionResult with the parsed response, or the error for an
            unparseable body or a non-2xx status.

        Raises:
            ConfigurationError: If the request has no token endpoint.
        """
        if not request.issuer_address:
            raise ConfigurationError("Cannot redeem the authorization code, the token endpoint is missing from the configuration.")

        logger.debug("Redeeming code for tokens")
        response = await self.backchannel.post(
            request.issuer_address,
            data=request.parameters,
            headers={"Accept": "application/json"},
        )

        content_type = response.headers.get("content-type")
        if not content_type:
            logger.warning(f"Unexpected token response format. Status Code: {response.status_code}. Content-Type header is missing.")
        elif content_type.split(";", 1)[0].strip().lower() != "application/json":
            logger.warning(f"Unexpected token response format. Status Code: {response.status_code}. Content-Type {content_type}.")

        try:
            message = ProtocolMessage.from_json(response.text)
        except ValueError as e:
            error = ProtocolError(
                f"Failed to parse token response body as JSON. Status Code: {response.status_code}. Content-Type: {content_type}",
                status_code=response.status_code,
            )
            error.__cause__ = e
            return RedemptionResult(status_code=response.status_code, error=error)

        if not response.is_success:
            logger.error(
                f"Token endpoint returned {response.status_code}: error '{message.error}', "
                f"error_description '{message.error_description}'"
            )
            return RedemptionResult(
                response=message,
                status_code=response.status_code,
                error=ProtocolError.from_error_fields(
                    message.error,
                    message.error_description,
                    message.error_uri,
                    status_code=response.status_code,
                ),
            )

        return RedemptionResult(response=message, status_code=response.status_code)
