"""CLI entry point for rpengine."""

import click

from rpengine import __version__
from rpengine.cli import config as config_commands
from rpengine.cli import discover as discover_commands
from rpengine.cli import serve as serve_commands


@click.group()
@click.version_option(version=__version__, prog_name="rpengine")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """rpengine - OpenID Connect relying-party engine."""
    ctx.ensure_object(dict)


cli.add_command(config_commands.config)
cli.add_command(discover_commands.discover)
cli.add_command(serve_commands.serve)
