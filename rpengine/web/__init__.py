"""Flask host for the relying-party engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import Flask, current_app

from rpengine.core.oidc.handler import AuthenticationOrchestrator
from rpengine.core.oidc.options import OIDCOptions
from rpengine.web.runner import EngineRunner

logger = logging.getLogger(__name__)

EXTENSION_KEY = "rpengine"


@dataclass
class WebEngine:
    """The engine and the event loop it runs on, attached to a Flask app."""

    orchestrator: AuthenticationOrchestrator
    runner: EngineRunner

    def close(self) -> None:
        """Close the backchannel and stop the loop."""
        if self.runner.is_running:
            self.runner.run(self.orchestrator.aclose())
        self.runner.close()


def init_engine(app: Flask, options: OIDCOptions) -> WebEngine:
    """Create the engine for ``app``.

    Raises:
        ConfigurationError: If the options are invalid.
    """
    runner = EngineRunner()
    try:
        orchestrator = AuthenticationOrchestrator(options)
    except Exception:
        runner.close()
        raise
    engine = WebEngine(orchestrator=orchestrator, runner=runner)
    app.extensions[EXTENSION_KEY] = engine
    logger.info(f"Relying-party engine ready for client '{options.client_id}' (scheme '{options.scheme}')")
    return engine


def get_engine() -> WebEngine:
    """Return the engine of the current Flask app."""
    return current_app.extensions[EXTENSION_KEY]
