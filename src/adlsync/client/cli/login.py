"""Credential commands for the adlsync CLI.

Commands:
- login: Store tokens obtained from the tenant's sign-in flow
- logout: Forget a tenant's tokens
"""

from __future__ import annotations

import asyncio

import click

from adlsync.client.api import TokenResponse
from adlsync.client.cli.services import open_services, require_tenant


@click.command()
@click.argument("tenant_id")
@click.option("--refresh-token", required=True, help="OAuth2 refresh token.")
@click.option("--access-token", default=None, help="Current access token, if known.")
@click.option(
    "--expires-in",
    default=0,
    show_default=True,
    help="Seconds until the access token expires (0 forces a refresh on first use).",
)
def login(tenant_id: str, refresh_token: str, access_token: str | None, expires_in: int) -> None:
    """Store tokens for a tenant.

    Tokens come from the tenant's browser sign-in; only the refresh token is
    required.
    """
    tenant = require_tenant(tenant_id)
    response = TokenResponse.from_dict(
        {
            "access_token": access_token or "",
            "refresh_token": refresh_token,
            "expires_in": expires_in if access_token else 0,
        }
    )
    with open_services() as services:
        asyncio.run(services.tokens.save_login(tenant, response))
    click.echo(f"Logged in to '{tenant_id}'.")


@click.command()
@click.argument("tenant_id")
def logout(tenant_id: str) -> None:
    """Forget all tokens for a tenant."""
    tenant = require_tenant(tenant_id)
    with open_services() as services:
        asyncio.run(services.tokens.logout(tenant))
    click.echo(f"Logged out of '{tenant_id}'.")
