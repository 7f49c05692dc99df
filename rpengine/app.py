"""Flask application factory."""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING

from flask import Flask

from rpengine.core.oidc.exceptions import ConfigurationError

if TYPE_CHECKING:
    from rpengine.core.config import RPSettings
    from rpengine.core.oidc.options import OIDCOptions

logger = logging.getLogger(__name__)


def create_app(
    config: dict | None = None,
    settings: RPSettings | None = None,
    options: OIDCOptions | None = None,
) -> Flask:
    """Create and configure the Flask application.

    Args:
        config: Optional Flask configuration overriding defaults.
        settings: Application settings. Loads from file/env if neither
            settings nor options are provided.
        options: Ready-made engine options; takes precedence over
            ``settings.client``.

    Returns:
        Configured Flask application instance.

    Raises:
        ConfigurationError: If the engine options are invalid.
    """
    from rpengine.core.config import load_config

    if settings is None and options is None:
        settings = load_config()

    app = Flask(__name__)

    secret_key = settings.server.secret_key if settings else None
    app.config.from_mapping(
        SECRET_KEY=secret_key or secrets.token_hex(32),
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
    )

    if config:
        app.config.from_mapping(config)

    if options is None and settings is not None:
        options = settings.to_options()
    if options is None:
        raise ConfigurationError("create_app needs settings or options")

    from rpengine.web import init_engine
    from rpengine.web import routes

    init_engine(app, options)
    routes.init_app(app)

    @app.errorhandler(ConfigurationError)
    def configuration_error(error: ConfigurationError) -> tuple[dict[str, str], int]:
        logger.error(f"Engine configuration error: {error}")
        return {"error": "configuration_error", "detail": str(error)}, 500

    return app


def run_server(
    settings: RPSettings | None = None,
    host: str | None = None,
    port: int | None = None,
) -> None:
    """Run the Flask development server.

    Args:
        settings: Application settings. Loads from file/env if not provided.
        host: Override host from settings.
        port: Override port from settings.
    """
    from rpengine.core.config import load_config
    from rpengine.core.logging import configure_logging
    from rpengine.web import get_engine

    if settings is None:
        settings = load_config()

    configure_logging(
        level=settings.logging.level,
        trace_enabled=settings.logging.trace_enabled,
        log_file=str(settings.logging.log_file) if settings.logging.log_file else None,
    )

    server_host = host or settings.server.host
    server_port = port or settings.server.port

    app = create_app(settings=settings)
    app.debug = settings.server.debug

    print("Starting rpengine host...")
    print(f"  URL: http://{server_host}:{server_port}")
    print(f"  Login: http://{server_host}:{server_port}/login")
    print("")

    try:
        app.run(host=server_host, port=server_port, use_reloader=False)
    finally:
        with app.app_context():
            get_engine().close()
