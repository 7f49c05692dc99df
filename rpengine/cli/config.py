"""Configuration management CLI commands."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import click
import yaml

# Values hidden by `config show` unless --show-secrets is given
_SECRET_FIELDS = ("client_secret", "data_protection_key", "secret_key")


def _mask_secrets(data: dict[str, Any]) -> dict[str, Any]:
    masked: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            masked[key] = _mask_secrets(value)
        elif key in _SECRET_FIELDS and value:
            masked[key] = "********"
        else:
            masked[key] = value
    return masked


@click.group()
def config() -> None:
    """Manage rpengine configuration."""
    pass


@config.command("show")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),  # type: ignore[type-var]
    default=None,
    help="Path to config.yaml (default: ~/.rpengine/config.yaml)",
)
@click.option(
    "--show-secrets",
    is_flag=True,
    help="Print client secret and keys instead of masking them",
)
@click.option(
    "--json",
    "output_json",
    is_flag=True,
    help="Output results as JSON for scripting",
)
def config_show(config_path: Path | None, show_secrets: bool, output_json: bool) -> None:
    """Show the effective configuration (file merged with environment).

    Examples:

        rpengine config show

        rpengine config show --json
    """
    from rpengine.core.config import DEFAULT_CONFIG_FILE, load_config

    settings = load_config(config_path)
    data = settings.to_dict()
    if not show_secrets:
        data = _mask_secrets(data)

    if output_json:
        click.echo(json.dumps(data, indent=2, default=str))
        return

    source = settings.config_path or config_path or DEFAULT_CONFIG_FILE
    exists = Path(source).exists()
    click.echo(f"# Config file: {source}{'' if exists else ' (not found, using defaults)'}")
    click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False).rstrip())


@config.command("init")
@click.option(
    "--path",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),  # type: ignore[type-var]
    default=None,
    help="Where to write config.yaml (default: ~/.rpengine/config.yaml)",
)
@click.option(
    "--force",
    is_flag=True,
    help="Overwrite an existing config file.",
)
def config_init(config_path: Path | None, force: bool) -> None:
    """Write a commented default config.yaml.

    Examples:

        # Create ~/.rpengine/config.yaml
        rpengine config init

        # Overwrite an existing file
        rpengine config init --force
    """
    from rpengine.core.config import DEFAULT_CONFIG_FILE, get_default_config_yaml

    path = config_path or DEFAULT_CONFIG_FILE
    if path.exists() and not force:
        click.echo(f"Config file already exists: {path}")
        click.echo("Use --force to overwrite it.")
        return

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(get_default_config_yaml())
    click.echo(f"Config file written to: {path}")
    click.echo("")
    click.echo("Next steps:")
    click.echo("  1. Set client.authority and client.client_id")
    click.echo("  2. Run 'rpengine discover <authority>' to check the provider")
    click.echo("  3. Run 'rpengine serve'")
