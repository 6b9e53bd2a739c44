"""Command-line interface for adlsync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- tenant add / tenant list: Manage tenants
- login / logout: Store or forget tenant tokens
- stations: List (and refresh) cached stations
- submit: Validate an observation and queue it
- sync: Upload queued observations now
- status: Show queue counts
- retry: Requeue failed observations
- requeue-stuck: Requeue observations stuck in UPLOADING
- watch: Upload in the background until interrupted
"""

from __future__ import annotations

import click

from adlsync.client.cli.config import (
    get_config_dir,
    get_config_file,
    get_database_path,
    get_tenant,
    load_config,
    save_config,
    setup_logging,
)
from adlsync.client.cli.login import login, logout
from adlsync.client.cli.stations import stations
from adlsync.client.cli.submit import submit
from adlsync.client.cli.sync import requeue_stuck, retry, status, sync, watch
from adlsync.client.cli.tenant import tenant


@click.group()
@click.version_option(package_name="adlsync")
@click.option("--verbose", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """adlsync - Offline-first observation submission for ADL."""
    setup_logging(verbose)


# Account commands
cli.add_command(tenant)
cli.add_command(login)
cli.add_command(logout)
cli.add_command(stations)

# Queue commands
cli.add_command(submit)
cli.add_command(sync)
cli.add_command(status)
cli.add_command(retry)
cli.add_command(requeue_stuck)
cli.add_command(watch)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "get_config_dir",
    "get_config_file",
    "get_database_path",
    "get_tenant",
    "load_config",
    "save_config",
]
