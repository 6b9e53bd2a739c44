"""Configuration utilities for the adlsync CLI.

This module provides shared configuration functions used across CLI commands.
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import fields
from pathlib import Path
from typing import Any

from adlsync.core.config import SyncSettings, TenantConfig


def get_config_dir() -> Path:
    """Get the configuration directory for adlsync.

    Returns:
        Path to ~/.adlsync or equivalent.
    """
    return Path.home() / ".adlsync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def get_database_path() -> Path:
    """Get the local database path (configured or default ~/.adlsync/adlsync.db)."""
    config = load_config()
    if config.get("database"):
        return Path(config["database"]).expanduser().resolve()
    return get_config_dir() / "adlsync.db"


def get_tenant(tenant_id: str) -> TenantConfig | None:
    """Get a configured tenant by id.

    Returns:
        TenantConfig if configured, None otherwise.
    """
    data = load_config().get("tenants", {}).get(tenant_id)
    return TenantConfig.from_dict(data) if data else None


def list_tenants() -> list[TenantConfig]:
    """All configured tenants, sorted by id."""
    tenants = load_config().get("tenants", {})
    return [TenantConfig.from_dict(tenants[key]) for key in sorted(tenants)]


def save_tenant(tenant: TenantConfig) -> None:
    """Add or replace a tenant in the config file."""
    config = load_config()
    config.setdefault("tenants", {})[tenant.id] = tenant.to_dict()
    save_config(config)


def load_settings() -> SyncSettings:
    """Build SyncSettings from the optional ``settings`` section.

    Unknown keys are ignored.
    """
    overrides = load_config().get("settings", {})
    known = {f.name for f in fields(SyncSettings)}
    return SyncSettings(**{k: v for k, v in overrides.items() if k in known})


def setup_logging(verbose: bool) -> None:
    """Send adlsync log records to stderr.

    Args:
        verbose: Log at DEBUG instead of WARNING.
    """
    adlsync_logger = logging.getLogger("adlsync")
    for handler in adlsync_logger.handlers[:]:
        adlsync_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    adlsync_logger.addHandler(handler)
    adlsync_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    adlsync_logger.propagate = False
