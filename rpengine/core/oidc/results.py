"""Outcomes produced by the authentication flows.

AuthenticateResult describes how a callback was resolved (a ticket, a
failure, or a handled/skipped short-circuit). RequestResult tells the
host what to do with the HTTP request as a whole.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from rpengine.core.oidc.exceptions import AuthenticationError
from rpengine.core.oidc.properties import AuthProperties, ClaimsIdentity, Ticket


@dataclass(frozen=True)
class AuthenticateResult:
    """Result of processing a remote authentication response.

    Exactly one of the following holds: ``ticket`` is set (success),
    ``failure`` is set (fail), ``handled`` is true, ``skipped`` is true,
    or none of them (no result).
    """

    ticket: Ticket | None = None
    failure: Exception | None = None
    properties: AuthProperties | None = None
    handled: bool = False
    skipped: bool = False

    @property
    def succeeded(self) -> bool:
        return self.ticket is not None

    @property
    def none(self) -> bool:
        return not (self.succeeded or self.failure or self.handled or self.skipped)

    @property
    def principal(self) -> ClaimsIdentity | None:
        return self.ticket.principal if self.ticket else None

    @classmethod
    def success(cls, ticket: Ticket) -> AuthenticateResult:
        return cls(ticket=ticket, properties=ticket.properties)

    @classmethod
    def fail(
        cls,
        failure: Exception | str,
        properties: AuthProperties | None = None,
    ) -> AuthenticateResult:
        """Create a failed result.

        Args:
            failure: The exception describing the failure, or a message
                that is wrapped in an AuthenticationError.
            properties: Properties recovered from ``state``, if any.
        """
        if isinstance(failure, str):
            failure = AuthenticationError(failure)
        return cls(failure=failure, properties=properties)

    @classmethod
    def handle(cls) -> AuthenticateResult:
        return cls(handled=True)

    @classmethod
    def skip(cls) -> AuthenticateResult:
        return cls(skipped=True)


class RequestAction(StrEnum):
    """What the host should do with a request after the engine saw it."""

    # The engine wrote the response; the host must not write anything else
    HANDLE = "handle"
    # The request belongs to the engine's paths but was declared "not mine"
    SKIP = "skip"
    # Not an engine path; the host continues with its own routing
    CONTINUE = "continue"


@dataclass(frozen=True)
class RequestResult:
    """Terminal outcome of ``handle_request``."""

    action: RequestAction
    authenticate_result: AuthenticateResult | None = None

    @property
    def failure(self) -> Exception | None:
        if self.authenticate_result is None:
            return None
        return self.authenticate_result.failure

    @classmethod
    def handle(cls, result: AuthenticateResult | None = None) -> RequestResult:
        return cls(RequestAction.HANDLE, result)

    @classmethod
    def skip(cls, result: AuthenticateResult | None = None) -> RequestResult:
        return cls(RequestAction.SKIP, result)

    @classmethod
    def proceed(cls) -> RequestResult:
        return cls(RequestAction.CONTINUE)
