"""Web routes for the relying-party host."""

from __future__ import annotations

from typing import Any

from flask import Blueprint, Flask, url_for

from rpengine.web.session import load_ticket

main_bp = Blueprint("main", __name__)


@main_bp.route("/")
def index() -> dict[str, Any]:
    """Describe the session state and the available endpoints."""
    ticket = load_ticket()
    return {
        "authenticated": ticket is not None,
        "name": ticket.principal.name if ticket else None,
        "login": url_for("oidc.login"),
        "logout": url_for("oidc.logout"),
        "me": url_for("main.me"),
    }


@main_bp.route("/health")
def health() -> dict[str, str]:
    """Health check endpoint (unauthenticated)."""
    return {"status": "healthy"}


@main_bp.route("/me")
def me() -> tuple[dict[str, Any], int] | dict[str, Any]:
    """Return the claims and stored properties of the signed-in user."""
    ticket = load_ticket()
    if ticket is None:
        return {"error": "not_authenticated"}, 401

    properties = ticket.properties
    return {
        "scheme": ticket.scheme,
        "name": ticket.principal.name,
        "claims": [{"type": c.type, "value": c.value, "issuer": c.issuer} for c in ticket.principal.claims],
        "issued_utc": properties.issued_utc.isoformat() if properties.issued_utc else None,
        "expires_utc": properties.expires_utc.isoformat() if properties.expires_utc else None,
        "tokens": properties.token_names(),
    }


def init_app(app: Flask) -> None:
    """Register blueprints and the engine dispatch hook with the Flask app."""
    from rpengine.web.routes.oidc import dispatch_engine_paths, oidc_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(oidc_bp)
    app.before_request(dispatch_engine_paths)
