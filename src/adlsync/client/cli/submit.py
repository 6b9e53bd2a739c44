"""Submit command for the adlsync CLI.

Commands:
- submit: Validate an observation and queue it for upload
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

import click

from adlsync.client.cli.services import open_services, require_tenant
from adlsync.client.repository import StationNotFoundError
from adlsync.client.schedule import ValidationError
from adlsync.client.sync import PayloadError


def parse_values(values: tuple[str, ...]) -> list[dict[str, Any]]:
    """Parse ``MAPPING_ID=VALUE`` pairs into payload records.

    Raises:
        click.BadParameter: A pair is not of that form.
    """
    records = []
    for item in values:
        mapping, sep, value = item.partition("=")
        if not sep:
            raise click.BadParameter(f"expected MAPPING_ID=VALUE, got '{item}'", param_hint="--value")
        try:
            records.append({"variable_mapping_id": int(mapping), "value": float(value)})
        except ValueError as e:
            raise click.BadParameter(f"invalid number in '{item}'", param_hint="--value") from e
    return records


def build_payload(
    values: tuple[str, ...],
    payload_file: Path | None,
    reason: str | None,
    duplicate_policy: str | None,
    app_version: str,
) -> dict[str, Any]:
    """Assemble a payload from a JSON file and/or ``--value`` pairs.

    Raises:
        PayloadError: The file is not valid JSON or does not hold an object.
    """
    if payload_file is not None:
        try:
            payload = json.loads(payload_file.read_text())
        except ValueError as e:
            raise PayloadError(f"{payload_file.name} is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise PayloadError()
    else:
        payload = {"records": [], "metadata": {}}
    if values:
        payload["records"] = parse_values(values)

    metadata = payload.setdefault("metadata", {})
    if isinstance(metadata, dict):
        metadata.setdefault("app_version", app_version)
        if reason:
            metadata["reason"] = reason
        if duplicate_policy:
            metadata["duplicate_policy"] = duplicate_policy
    return payload


@click.command()
@click.argument("tenant_id")
@click.argument("station_id", type=int)
@click.option(
    "--value",
    "-v",
    "values",
    multiple=True,
    metavar="MAPPING_ID=VALUE",
    help="Measured value for a variable mapping (repeatable).",
)
@click.option(
    "--payload",
    "payload_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON file with 'records' and 'metadata'.",
)
@click.option(
    "--at",
    "at",
    type=click.DateTime(formats=["%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M"]),
    default=None,
    help="Capture time in station local time (default: now).",
)
@click.option("--reason", default=None, help="Reason for a late or revised observation.")
@click.option("--duplicate-policy", default=None, help="Server duplicate policy, e.g. 'replace'.")
def submit(
    tenant_id: str,
    station_id: int,
    values: tuple[str, ...],
    payload_file: Path | None,
    at: datetime | None,
    reason: str | None,
    duplicate_policy: str | None,
) -> None:
    """Validate an observation and queue it for upload.

    The station must be in the local cache ('adlsync stations --refresh').
    """
    tenant = require_tenant(tenant_id)
    if not values and payload_file is None:
        click.echo("Error: Provide --value or --payload.", err=True)
        sys.exit(1)

    with open_services() as services:
        try:
            payload = build_payload(
                values, payload_file, reason, duplicate_policy, services.settings.app_version
            )
            record = asyncio.run(
                services.repository.submit_for_station(tenant.id, station_id, payload, at)
            )
        except ValidationError as e:
            click.echo(f"Rejected: {e.reason}", err=True)
            sys.exit(1)
        except (PayloadError, StationNotFoundError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    late = " (late)" if record.late else ""
    click.echo(f"Queued {record.key} for {record.scheduled_at.isoformat()}{late}")
