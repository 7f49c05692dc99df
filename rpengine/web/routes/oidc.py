"""Login, logout and engine-owned protocol endpoints."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from flask import Blueprint, request

from rpengine.core.oidc.exceptions import ConfigurationError
from rpengine.core.oidc.http import ResponseContext
from rpengine.core.oidc.properties import AuthProperties
from rpengine.core.oidc.results import RequestAction
from rpengine.web import get_engine
from rpengine.web.adapter import to_flask_response, to_request_context
from rpengine.web.session import load_ticket

if TYPE_CHECKING:
    from werkzeug.wrappers import Response as WerkzeugResponse

logger = logging.getLogger(__name__)

oidc_bp = Blueprint("oidc", __name__)

# Query parameter naming the local page to return to after login/logout
RETURN_URL_PARAM = "return_url"


def _safe_return_url(value: str | None) -> str | None:
    # Only local paths; "//host" would leave the site
    if value and value.startswith("/") and not value.startswith("//"):
        return value
    return None


def dispatch_engine_paths() -> WerkzeugResponse | None:
    """Let the engine process its callback and sign-out paths.

    Runs before every request. Requests the engine does not own, or
    skips, continue to the regular routes.
    """
    engine = get_engine()
    options = engine.orchestrator.options
    engine_paths = {options.callback_path, options.signed_out_callback_path, options.remote_sign_out_path}
    if request.path not in engine_paths:
        return None

    context = to_request_context(request)
    response = ResponseContext()
    result = engine.runner.run(engine.orchestrator.handle_request(context, response))

    if result.action == RequestAction.HANDLE:
        if result.failure is not None:
            logger.warning(f"Request to {request.path} ended with failure: {result.failure}")
        return to_flask_response(response)
    if result.action == RequestAction.SKIP:
        logger.debug(f"Engine skipped {request.path}")
    return None


@oidc_bp.route("/login")
def login() -> WerkzeugResponse | tuple[dict[str, str], int]:
    """Start a login at the identity provider."""
    engine = get_engine()
    properties = AuthProperties(redirect_uri=_safe_return_url(request.args.get(RETURN_URL_PARAM)) or "/")

    context = to_request_context(request)
    response = ResponseContext()
    result = engine.runner.run(engine.orchestrator.challenge(context, response, properties))

    if result.action == RequestAction.SKIP:
        return {"error": "challenge_skipped"}, 401
    return to_flask_response(response)


@oidc_bp.route("/logout", methods=["GET", "POST"])
def logout() -> WerkzeugResponse:
    """End the local session and sign out at the identity provider."""
    engine = get_engine()
    options = engine.orchestrator.options
    ticket = load_ticket()
    return_url = _safe_return_url(request.args.get(RETURN_URL_PARAM))

    context = to_request_context(request, ticket=ticket)
    response = ResponseContext()
    if not options.sign_in_scheme:
        raise ConfigurationError.not_initialized("sign_in_scheme")
    response.sign_out(options.sign_in_scheme)

    if ticket is None:
        logger.debug("No local session; skipping provider sign-out")
        response.redirect(return_url or "/")
        return to_flask_response(response)

    properties = AuthProperties(redirect_uri=return_url) if return_url else None
    result = engine.runner.run(engine.orchestrator.sign_out(context, response, properties))
    if result.action == RequestAction.SKIP and not response.has_started:
        response.redirect(return_url or "/")
    return to_flask_response(response)

