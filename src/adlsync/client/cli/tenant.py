"""Tenant commands for the adlsync CLI.

Commands:
- tenant add: Configure a tenant
- tenant list: Show configured tenants
"""

from __future__ import annotations

import click

from adlsync.client.cli.config import list_tenants, save_tenant
from adlsync.core.config import DEFAULT_SCOPES, TenantConfig


@click.group()
def tenant() -> None:
    """Manage ADL tenants."""


@tenant.command("add")
@click.argument("tenant_id")
@click.option("--name", default=None, help="Display name (default: tenant id).")
@click.option("--base-url", required=True, help="Tenant API base URL.")
@click.option("--token-endpoint", required=True, help="OAuth2 token endpoint URL.")
@click.option("--client-id", required=True, help="OAuth2 client id.")
@click.option(
    "--scope",
    "scopes",
    multiple=True,
    help=f"OAuth2 scope (repeatable, default: {' '.join(DEFAULT_SCOPES)}).",
)
@click.option("--timeout", default=30.0, show_default=True, help="Request timeout in seconds.")
def add(
    tenant_id: str,
    name: str | None,
    base_url: str,
    token_endpoint: str,
    client_id: str,
    scopes: tuple[str, ...],
    timeout: float,
) -> None:
    """Add or replace a tenant."""
    config = TenantConfig(
        id=tenant_id,
        name=name or tenant_id,
        base_url=base_url,
        token_endpoint=token_endpoint,
        client_id=client_id,
        scopes=list(scopes or DEFAULT_SCOPES),
        timeout=timeout,
    )
    if not config.is_secure:
        click.echo("Warning: tenant API is not served over HTTPS.", err=True)
    save_tenant(config)
    click.echo(f"Tenant '{tenant_id}' saved.")


@tenant.command("list")
def list_cmd() -> None:
    """List configured tenants."""
    tenants = list_tenants()
    if not tenants:
        click.echo("No tenants configured.")
        return
    for config in tenants:
        click.echo(f"{config.id}\t{config.name}\t{config.base_url}")
