"""Provider discovery CLI command."""

from __future__ import annotations

import asyncio
import json

import click
import httpx

from rpengine.core.logging import LoggingAsyncClient
from rpengine.core.oidc.exceptions import ConfigurationError, MetadataRetrievalError
from rpengine.core.oidc.metadata import (
    DiscoveryConfigurationProvider,
    ProviderConfiguration,
    build_metadata_address,
)


async def fetch_configuration(
    metadata_address: str,
    require_https: bool = True,
    timeout: float = 10.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderConfiguration:
    """Fetch a provider's discovery document and signing keys.

    Raises:
        ConfigurationError: If HTTPS is required and an address is not HTTPS.
        MetadataRetrievalError: If a document cannot be fetched or parsed.
    """
    async with LoggingAsyncClient(timeout=timeout, transport=transport) as client:
        provider = DiscoveryConfigurationProvider(metadata_address, client, require_https=require_https)
        return await provider.retrieve()


@click.command()
@click.argument("authority")
@click.option(
    "--insecure",
    is_flag=True,
    help="Allow http:// metadata addresses (development only)",
)
@click.option(
    "--timeout",
    type=float,
    default=10.0,
    show_default=True,
    help="Request timeout in seconds",
)
@click.option(
    "--json",
    "output_json",
    is_flag=True,
    help="Output results as JSON for scripting",
)
def discover(authority: str, insecure: bool, timeout: float, output_json: bool) -> None:
    """Fetch and display a provider's OpenID Connect metadata.

    AUTHORITY is the provider's issuer URL or the full address of its
    discovery document.

    Examples:

        rpengine discover https://login.example.com

        rpengine discover http://localhost:8080/realms/dev --insecure --json
    """
    address = build_metadata_address(authority)

    try:
        configuration = asyncio.run(fetch_configuration(address, require_https=not insecure, timeout=timeout))
    except (ConfigurationError, MetadataRetrievalError) as e:
        if output_json:
            click.echo(json.dumps({"error": str(e)}, indent=2), err=True)
            raise SystemExit(1) from None
        raise click.ClickException(str(e)) from None

    data = configuration.to_dict()
    if output_json:
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(f"Discovery document: {address}")
    click.echo("")
    for key, value in data.items():
        if isinstance(value, list):
            value = ", ".join(str(v) for v in value) if value else "(none)"
        click.echo(f"  {key}: {value if value is not None else '(not set)'}")
