"""Observation repository: the entry point used by the CLI.

This module provides:
- validate_payload: Structural check of an observation payload
- ObservationsRepository: Validate-and-queue, manual retry, stats, streams,
  station cache refresh and manual sync
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo

from adlsync.client.schedule import local_to_utc, validate
from adlsync.client.store.models import Observation, Station, observation_key
from adlsync.client.sync.types import PayloadError
from adlsync.core.config import SyncSettings
from adlsync.core.types import SyncStatus

if TYPE_CHECKING:
    from adlsync.client.api import ObservationsClient
    from adlsync.client.schedule import ScheduleMode
    from adlsync.client.store import ObservationStore, StationCache
    from adlsync.client.sync.types import UploadBatchResult
    from adlsync.client.sync.upload import UploadOrchestrator
    from adlsync.core.config import TenantConfig

logger = logging.getLogger(__name__)

DEFAULT_MAX_PASSES = 100


class StationNotFoundError(LookupError):
    """The station is not in the local cache (refresh stations first)."""


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def validate_payload(payload: Any) -> None:
    """Check that a payload can later be submitted.

    A valid payload is an object with a non-empty ``records`` list of
    ``{"variable_mapping_id": int, "value": number}`` and a ``metadata``
    object.

    Raises:
        PayloadError: The payload is malformed.
    """
    if not isinstance(payload, dict):
        raise PayloadError()
    records = payload.get("records")
    if not isinstance(records, list) or not records:
        raise PayloadError()
    if not isinstance(payload.get("metadata"), dict):
        raise PayloadError()
    for row in records:
        if not isinstance(row, dict):
            raise PayloadError()
        mapping_id = row.get("variable_mapping_id")
        if not isinstance(mapping_id, int) or isinstance(mapping_id, bool):
            raise PayloadError()
        if not _is_number(row.get("value")):
            raise PayloadError()


class ObservationsRepository:
    """Validate, queue and manage observations for all tenants."""

    def __init__(
        self,
        store: ObservationStore,
        stations: StationCache | None = None,
        orchestrator: UploadOrchestrator | None = None,
        settings: SyncSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._stations = stations
        self._orchestrator = orchestrator
        self._settings = settings or SyncSettings()
        self._clock = clock or (lambda: datetime.now(UTC))

    async def queue_submit(
        self,
        tenant_id: str,
        station_id: int,
        station_name: str,
        timezone: ZoneInfo | str,
        schedule: ScheduleMode,
        payload: dict[str, Any],
        requested_local: datetime | None = None,
    ) -> Observation:
        """Validate a capture and queue it for upload.

        The capture time is checked against the station schedule and the
        payload against the submission format before anything is written.
        Submitting the same slot again replaces the earlier record.

        Args:
            tenant_id: Tenant the station belongs to.
            station_id: Station link id.
            station_name: Display name stored with the record.
            timezone: Station time zone.
            schedule: The station's schedule rules.
            payload: ``{"records": [...], "metadata": {...}}``.
            requested_local: Explicit local capture time, or None.

        Returns:
            The stored record (status QUEUED).

        Raises:
            ValidationError: The capture time is not allowed.
            PayloadError: The payload is malformed.
        """
        now = self._clock()
        result = validate(schedule, timezone, now, requested_local)
        result.raise_for_reason()
        validate_payload(payload)

        zone = ZoneInfo(timezone) if isinstance(timezone, str) else timezone
        scheduled_at = local_to_utc(result.normalized_local, zone)
        record = Observation(
            key=observation_key(tenant_id, station_id, scheduled_at),
            tenant_id=tenant_id,
            station_id=station_id,
            station_name=station_name,
            timezone=zone.key,
            scheduled_at=scheduled_at,
            created_at=now,
            updated_at=now,
            late=result.late,
            locked=result.locked,
            schedule_mode=schedule.tag,
            payload_json=json.dumps(payload),
            status=SyncStatus.QUEUED,
            remote_id=None,
            last_error=None,
        )
        saved = await self._store.upsert(record)
        logger.info("Queued observation %s (late=%s)", saved.key, saved.late)
        return saved

    async def submit_for_station(
        self,
        tenant_id: str,
        station_id: int,
        payload: dict[str, Any],
        requested_local: datetime | None = None,
    ) -> Observation:
        """Queue an observation using the cached station details.

        Raises:
            StationNotFoundError: The station isn't cached or has no schedule.
        """
        station = await self._station(tenant_id, station_id)
        schedule = station.schedule()
        if schedule is None:
            raise StationNotFoundError(f"Station {station_id} has no schedule configured")
        return await self.queue_submit(
            tenant_id,
            station.station_id,
            station.name,
            station.timezone,
            schedule,
            payload,
            requested_local,
        )

    async def _station(self, tenant_id: str, station_id: int) -> Station:
        if self._stations is None:
            raise StationNotFoundError("No station cache configured")
        station = await self._stations.get(tenant_id, station_id)
        if station is None:
            raise StationNotFoundError(f"Unknown station {station_id} for tenant {tenant_id}")
        return station

    async def refresh_stations(self, tenant: TenantConfig, client: ObservationsClient) -> int:
        """Replace the tenant's cached stations with the server's list.

        On any error the previous cache is left untouched.
        """
        if self._stations is None:
            raise StationNotFoundError("No station cache configured")
        raw = await client.list_stations()
        now = self._clock()
        stations = [Station.from_api(tenant.id, item, now) for item in raw]
        return await self._stations.replace_for_tenant(tenant.id, stations)

    async def retry_failed(self, tenant_id: str) -> int:
        """Reset FAILED records of a tenant to QUEUED."""
        return await self._store.reset_failed_to_queued(tenant_id, updated_at=self._clock())

    async def requeue_stuck(self, tenant_id: str, older_than_minutes: int | None = None) -> int:
        """Requeue UPLOADING records untouched for longer than the threshold."""
        minutes = (
            self._settings.stuck_upload_minutes if older_than_minutes is None else older_than_minutes
        )
        now = self._clock()
        return await self._store.reset_stuck_uploading(
            tenant_id, now - timedelta(minutes=minutes), updated_at=now
        )

    async def upload_stats(self, tenant_id: str) -> dict[str, int]:
        """Counts for monitoring: pending total plus one entry per status."""
        counts = await self._store.count_by_status(tenant_id)
        stats = {status.value.lower(): count for status, count in counts.items()}
        stats["total_pending"] = counts[SyncStatus.QUEUED] + counts[SyncStatus.FAILED]
        return stats

    async def sync(
        self,
        tenant: TenantConfig,
        endpoint: str | None = None,
        max_items: int | None = None,
        max_passes: int = DEFAULT_MAX_PASSES,
    ) -> list[UploadBatchResult]:
        """Upload batches until a pass uploads nothing or no work remains.

        Returns:
            One result per pass that attempted at least one record.
        """
        if self._orchestrator is None:
            raise RuntimeError("No upload orchestrator configured")
        results: list[UploadBatchResult] = []
        for _ in range(max_passes):
            result = await self._orchestrator.upload_batch(tenant, endpoint, max_items)
            if not result.progressed:
                break
            results.append(result)
            if result.success_count == 0 or not result.has_more_work:
                break
        return results

    def stream_all(self, tenant_id: str) -> AsyncIterator[list[Observation]]:
        return self._store.stream_all(tenant_id)

    def stream_for_station(self, tenant_id: str, station_id: int) -> AsyncIterator[list[Observation]]:
        return self._store.stream_by_station(tenant_id, station_id)
