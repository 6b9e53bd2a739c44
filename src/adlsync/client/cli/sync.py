"""Queue commands for the adlsync CLI.

Commands:
- sync: Upload queued observations now
- status: Show queue counts per status
- retry: Requeue failed observations
- requeue-stuck: Requeue observations stuck in UPLOADING
- watch: Keep uploading in the background until interrupted
"""

from __future__ import annotations

import asyncio
import logging
import sys

import click

from adlsync.client.api import AuthError, TransportError
from adlsync.client.cli.config import get_tenant
from adlsync.client.cli.services import Services, open_services, require_tenant
from adlsync.client.sync import UploadScheduler

logger = logging.getLogger(__name__)


@click.command()
@click.argument("tenant_id")
@click.option("--batch-size", "-n", type=int, default=None, help="Records per pass (1-50).")
@click.option("--endpoint", default=None, help="Override the submission URL.")
def sync(tenant_id: str, batch_size: int | None, endpoint: str | None) -> None:
    """Upload queued observations for a tenant now.

    Uploads batch after batch until the queue is empty or a pass makes no
    progress.
    """
    tenant = require_tenant(tenant_id)
    with open_services() as services:
        try:
            results = asyncio.run(services.repository.sync(tenant, endpoint, batch_size))
        except AuthError as e:
            click.echo(f"Error: {e}. Run 'adlsync login {tenant_id}'.", err=True)
            sys.exit(1)
        except TransportError as e:
            click.echo(f"Error: {e}. Try again later.", err=True)
            sys.exit(1)

    if not results:
        click.echo("Nothing to upload.")
        return

    synced = sum(r.success_count for r in results)
    permanent = sum(r.permanent_failures for r in results)
    retriable = sum(r.retriable_failures for r in results)
    click.echo(f"Uploaded {synced}, failed {permanent + retriable} ({retriable} retriable).")
    for result in results:
        for attempt in result.attempts:
            if attempt.error:
                click.echo(f"  {attempt.key}: {attempt.error}")


@click.command()
@click.argument("tenant_id")
def status(tenant_id: str) -> None:
    """Show how many observations are in each state."""
    tenant = require_tenant(tenant_id)
    with open_services() as services:
        stats = asyncio.run(services.repository.upload_stats(tenant.id))

    click.echo(f"Tenant: {tenant.name}")
    for name in ("queued", "uploading", "failed", "synced"):
        click.echo(f"  {name:<10} {stats[name]}")
    click.echo(f"  {'pending':<10} {stats['total_pending']}")


@click.command()
@click.argument("tenant_id")
def retry(tenant_id: str) -> None:
    """Requeue all failed observations of a tenant."""
    tenant = require_tenant(tenant_id)
    with open_services() as services:
        count = asyncio.run(services.repository.retry_failed(tenant.id))
    click.echo(f"Requeued {count} failed observations.")


@click.command("requeue-stuck")
@click.argument("tenant_id")
@click.option(
    "--older-than",
    type=int,
    default=None,
    help="Minutes without progress before an upload counts as stuck.",
)
def requeue_stuck(tenant_id: str, older_than: int | None) -> None:
    """Requeue observations left in UPLOADING by an interrupted pass."""
    tenant = require_tenant(tenant_id)
    with open_services() as services:
        count = asyncio.run(services.repository.requeue_stuck(tenant.id, older_than))
    click.echo(f"Requeued {count} stuck observations.")


async def _watch(services: Services, interval: float) -> None:
    scheduler = UploadScheduler(services.orchestrator, services.settings)
    scheduler.start()
    try:
        while True:
            for tenant_id in await services.store.pending_tenants():
                if scheduler.is_scheduled(tenant_id):
                    continue
                tenant = get_tenant(tenant_id)
                if tenant is None:
                    logger.warning("Pending observations for unknown tenant %s", tenant_id)
                    continue
                scheduler.schedule_one_shot(tenant)
            await asyncio.sleep(interval)
    finally:
        scheduler.stop()


@click.command()
@click.option(
    "--interval",
    default=300.0,
    show_default=True,
    help="Seconds between scans for pending observations.",
)
def watch(interval: float) -> None:
    """Upload pending observations in the background until Ctrl+C."""
    click.echo("Watching for pending observations (Ctrl+C to stop)...")
    with open_services() as services:
        try:
            asyncio.run(_watch(services, interval))
        except KeyboardInterrupt:
            click.echo("Stopped.")
