"""Translate between Flask and the engine's request/response views."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from flask import Request, Response

from rpengine.core.oidc.http import RequestContext, ResponseContext
from rpengine.web.session import clear_ticket, load_ticket, store_ticket

if TYPE_CHECKING:
    from rpengine.core.oidc.properties import Ticket

logger = logging.getLogger(__name__)


def to_request_context(request: Request, ticket: Ticket | None = None) -> RequestContext:
    """Build a RequestContext from the current Flask request.

    The body is read as raw bytes before anything touches ``request.form``,
    so form posts are parsed by the engine itself.
    """
    body = request.get_data(cache=True)
    return RequestContext(
        method=request.method,
        scheme=request.scheme,
        host=request.host,
        path=request.path,
        path_base=request.script_root,
        query_string=request.query_string.decode("latin-1"),
        content_type=request.content_type,
        body=body,
        cookies=dict(request.cookies),
        ticket=ticket if ticket is not None else load_ticket(),
    )


def apply_session_changes(context: ResponseContext) -> None:
    """Apply the sign-out and sign-in instructions to the Flask session."""
    if context.signed_out_schemes:
        clear_ticket()
    if context.signed_in is not None:
        store_ticket(context.signed_in)


def to_flask_response(context: ResponseContext) -> Response:
    """Render a ResponseContext, including its cookie and session instructions."""
    apply_session_changes(context)

    response = Response(context.body, status=context.status_code)
    for name, value in context.headers.items():
        response.headers[name] = value

    for cookie in context.cookies:
        options = cookie.options
        if cookie.is_deletion:
            response.delete_cookie(
                cookie.name,
                path=options.path,
                secure=options.secure,
                httponly=options.http_only,
                samesite=options.same_site,
            )
        else:
            response.set_cookie(
                cookie.name,
                cookie.value or "",
                expires=options.expires,
                path=options.path,
                secure=options.secure,
                httponly=options.http_only,
                samesite=options.same_site,
            )
    return response
