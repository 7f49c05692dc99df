"""Server CLI commands."""

from pathlib import Path

import click


@click.command()
@click.option(
    "--host",
    "-h",
    default=None,
    help="Host to bind to (default: from config or 127.0.0.1)",
)
@click.option(
    "--port",
    "-p",
    type=int,
    default=None,
    help="Port to bind to (default: from config or 5000)",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),  # type: ignore[type-var]
    default=None,
    help="Path to config.yaml (default: ~/.rpengine/config.yaml)",
)
@click.option(
    "--debug",
    is_flag=True,
    help="Enable debug mode",
)
def serve(
    host: str | None,
    port: int | None,
    config_path: Path | None,
    debug: bool,
) -> None:
    """Start the relying-party host application.

    The engine settings come from config.yaml and RPENGINE_* environment
    variables. A client id and an authority (or metadata address) are
    required.

    Examples:

        # Start with settings from ~/.rpengine/config.yaml
        rpengine serve

        # Start on a custom port with an explicit config file
        rpengine serve --port 8080 --config ./config.yaml
    """
    from rpengine.app import run_server
    from rpengine.core.config import load_config
    from rpengine.core.oidc.exceptions import ConfigurationError

    settings = load_config(config_path)

    if debug:
        settings.server.debug = True

    try:
        settings.to_options().validate()
    except ConfigurationError as e:
        raise click.ClickException(f"Invalid configuration: {e}") from None

    run_server(settings=settings, host=host, port=port)
