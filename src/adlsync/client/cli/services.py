"""Wiring of stores, token manager and upload pipeline for CLI commands."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

import click

from adlsync.client.api import TokenEndpointClient
from adlsync.client.auth import TokenManager
from adlsync.client.cli.config import get_database_path, get_tenant, load_settings
from adlsync.client.repository import ObservationsRepository
from adlsync.client.store import CredentialStore, Database, ObservationStore, StationCache
from adlsync.client.sync import UploadOrchestrator
from adlsync.core.config import SyncSettings, TenantConfig


@dataclass
class Services:
    """Objects shared by the CLI commands."""

    db: Database
    settings: SyncSettings
    store: ObservationStore
    credentials: CredentialStore
    stations: StationCache
    tokens: TokenManager
    orchestrator: UploadOrchestrator
    repository: ObservationsRepository


@contextmanager
def open_services() -> Iterator[Services]:
    """Open the local database and build the service graph.

    The database is closed on exit.
    """
    settings = load_settings()
    db = Database(get_database_path())
    try:
        store = ObservationStore(db)
        credentials = CredentialStore(db)
        stations = StationCache(db)
        tokens = TokenManager(
            credentials, TokenEndpointClient(), skew_seconds=settings.token_skew_seconds
        )
        orchestrator = UploadOrchestrator(store, tokens, settings)
        repository = ObservationsRepository(store, stations, orchestrator, settings)
        yield Services(
            db, settings, store, credentials, stations, tokens, orchestrator, repository
        )
    finally:
        db.close()


def require_tenant(tenant_id: str) -> TenantConfig:
    """Get a configured tenant or exit with an error."""
    tenant = get_tenant(tenant_id)
    if tenant is None:
        click.echo(
            f"Error: Unknown tenant '{tenant_id}'. Run 'adlsync tenant add' first.", err=True
        )
        sys.exit(1)
    return tenant
