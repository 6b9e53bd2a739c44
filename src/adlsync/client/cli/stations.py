"""Station commands for the adlsync CLI.

Commands:
- stations: List cached stations, optionally refreshing them first
"""

from __future__ import annotations

import asyncio
import sys

import click

from adlsync.client.api import APIError, ObservationsClient
from adlsync.client.auth import TenantAuth
from adlsync.client.cli.services import Services, open_services, require_tenant
from adlsync.client.store import Station
from adlsync.core.config import TenantConfig


async def _refresh_and_list(
    services: Services, tenant: TenantConfig, refresh: bool
) -> list[Station]:
    if refresh:
        async with ObservationsClient(tenant, auth=TenantAuth(tenant, services.tokens)) as client:
            await services.repository.refresh_stations(tenant, client)
    return await services.stations.list_for_tenant(tenant.id)


@click.command()
@click.argument("tenant_id")
@click.option("--refresh", is_flag=True, help="Fetch the station list from the server first.")
def stations(tenant_id: str, refresh: bool) -> None:
    """List stations linked to your account."""
    tenant = require_tenant(tenant_id)
    with open_services() as services:
        try:
            cached = asyncio.run(_refresh_and_list(services, tenant, refresh))
        except APIError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    if not cached:
        click.echo("No stations cached. Run with --refresh.")
        return
    for station in cached:
        mode = station.schedule_mode or "-"
        click.echo(f"{station.station_id}\t{station.name}\t{station.timezone}\t{mode}")
