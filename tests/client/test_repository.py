"""Tests for the observations repository."""

from __future__ import annotations

import json
from datetime import datetime, time, timedelta
from typing import Any

import pytest

from adlsync.client.api import ObservationsClient, TransportError
from adlsync.client.repository import (
    ObservationsRepository,
    StationNotFoundError,
    validate_payload,
)
from adlsync.client.schedule import REASON_OUTSIDE_WINDOW, FixedLocalConfig, ValidationError
from adlsync.client.store import Database, ObservationStore, Station, StationCache
from adlsync.client.sync import PayloadError, UploadBatchResult
from adlsync.core.config import SyncSettings, TenantConfig
from adlsync.core.types import ScheduleModeTag, SyncStatus
from tests.factories import BASE_TIME, make_observation, make_payload, make_tenant

FIXED = FixedLocalConfig(
    slots=(time(6, 0), time(18, 0)),
    window_before=30,
    window_after=30,
    grace_late=60,
    rounding_increment=15,
    backfill_days=2,
    allow_future=60,
    lock_after=240,
)

FIXED_STATION = {
    "id": 100,
    "name": "Kisumu",
    "timezone": "Africa/Nairobi",
    "schedule": {
        "mode": "fixed_local",
        "config": {
            "slots": ["06:00", "18:00"],
            "window_before_mins": 30,
            "window_after_mins": 30,
            "grace_late_mins": 60,
            "rounding_increment_mins": 15,
            "backfill_days": 2,
            "allow_future_mins": 60,
            "lock_after_mins": 240,
        },
    },
}


class Clock:
    """Settable clock."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class ScriptedOrchestrator:
    """Orchestrator returning one scripted result per pass."""

    def __init__(self, results: list[UploadBatchResult]) -> None:
        self.results = list(results)
        self.calls: list[tuple[str | None, int | None]] = []

    async def upload_batch(
        self, tenant: TenantConfig, endpoint: str | None = None, max_items: int | None = None
    ) -> UploadBatchResult:
        self.calls.append((endpoint, max_items))
        return self.results.pop(0) if self.results else UploadBatchResult()


def make_repository(
    store: ObservationStore,
    db: Database | None = None,
    now: datetime = BASE_TIME + timedelta(minutes=10),
    orchestrator: Any = None,
) -> tuple[ObservationsRepository, Clock]:
    """Create a repository at 06:10 Nairobi time by default."""
    clock = Clock(now)
    stations = StationCache(db) if db is not None else None
    repository = ObservationsRepository(
        store, stations, orchestrator, SyncSettings(stuck_upload_minutes=15), clock=clock
    )
    return repository, clock


class TestValidatePayload:
    """Tests for validate_payload function."""

    def test_valid(self) -> None:
        validate_payload(make_payload())

    @pytest.mark.parametrize(
        "payload",
        [
            [],
            {"metadata": {}},
            {"records": [], "metadata": {}},
            {"records": [{"variable_mapping_id": 7, "value": 1}]},
            {"records": [{"variable_mapping_id": "7", "value": 1}], "metadata": {}},
            {"records": [{"variable_mapping_id": 7, "value": True}], "metadata": {}},
            {"records": [{"variable_mapping_id": 7, "value": None}], "metadata": {}},
            {"records": ["junk"], "metadata": {}},
        ],
    )
    def test_invalid(self, payload: Any) -> None:
        """Should reject payloads that could never be submitted."""
        with pytest.raises(PayloadError):
            validate_payload(payload)


class TestQueueSubmit:
    """Tests for ObservationsRepository.queue_submit."""

    @pytest.mark.asyncio
    async def test_queues_normalized_slot(self, store: ObservationStore) -> None:
        """Should store a QUEUED record at the slot's UTC instant."""
        repository, clock = make_repository(store)

        record = await repository.queue_submit(
            "t1", 100, "Kisumu", "Africa/Nairobi", FIXED, make_payload()
        )

        assert record.status == SyncStatus.QUEUED
        assert record.scheduled_at == BASE_TIME
        assert record.key == f"t1:100:{int(BASE_TIME.timestamp()) * 1000}"
        assert record.created_at == clock.now
        assert record.late is False
        assert record.schedule_mode == ScheduleModeTag.FIXED_LOCAL
        assert record.timezone == "Africa/Nairobi"
        assert json.loads(record.payload_json) == make_payload()
        assert await store.get(record.key) is not None

    @pytest.mark.asyncio
    async def test_grace_period_is_late(self, store: ObservationStore) -> None:
        """Should flag submissions inside the grace period as late."""
        repository, _ = make_repository(store, now=BASE_TIME + timedelta(minutes=70))

        record = await repository.queue_submit(
            "t1", 100, "Kisumu", "Africa/Nairobi", FIXED, make_payload()
        )

        assert record.late is True
        assert record.scheduled_at == BASE_TIME

    @pytest.mark.asyncio
    async def test_rejected_time_is_not_stored(self, store: ObservationStore) -> None:
        """Should raise ValidationError and persist nothing."""
        repository, _ = make_repository(store, now=BASE_TIME + timedelta(minutes=95))

        with pytest.raises(ValidationError) as exc_info:
            await repository.queue_submit(
                "t1", 100, "Kisumu", "Africa/Nairobi", FIXED, make_payload()
            )

        assert exc_info.value.reason == REASON_OUTSIDE_WINDOW
        assert await store.list_observations("t1") == []

    @pytest.mark.asyncio
    async def test_bad_payload_is_not_stored(self, store: ObservationStore) -> None:
        repository, _ = make_repository(store)

        with pytest.raises(PayloadError):
            await repository.queue_submit(
                "t1", 100, "Kisumu", "Africa/Nairobi", FIXED, {"records": []}
            )

        assert await store.list_observations("t1") == []

    @pytest.mark.asyncio
    async def test_resubmitting_slot_replaces_record(self, store: ObservationStore) -> None:
        """Two captures normalized to the same slot should share one record."""
        repository, clock = make_repository(store)
        await repository.queue_submit(
            "t1", 100, "Kisumu", "Africa/Nairobi", FIXED, make_payload(value=1.0)
        )
        clock.now += timedelta(minutes=5)

        await repository.queue_submit(
            "t1", 100, "Kisumu", "Africa/Nairobi", FIXED, make_payload(value=2.0)
        )

        records = await store.list_observations("t1")
        assert len(records) == 1
        assert json.loads(records[0].payload_json)["records"][0]["value"] == 2.0

    @pytest.mark.asyncio
    async def test_explicit_capture_time(self, store: ObservationStore) -> None:
        """Should honour an explicit local capture time."""
        repository, _ = make_repository(store, now=BASE_TIME + timedelta(hours=12, minutes=5))

        record = await repository.queue_submit(
            "t1",
            100,
            "Kisumu",
            "Africa/Nairobi",
            FIXED,
            make_payload(),
            requested_local=datetime(2025, 3, 10, 18, 6),
        )

        assert record.scheduled_at == BASE_TIME + timedelta(hours=12)


class TestStations:
    """Tests for station cache use."""

    @pytest.mark.asyncio
    async def test_refresh_and_submit(self, httpx_mock, db: Database, store: ObservationStore) -> None:  # type: ignore[no-untyped-def]
        """Should cache the server's stations and use them for submissions."""
        httpx_mock.add_response(url="http://test/api/mobile/stations/", json=[FIXED_STATION])
        repository, _ = make_repository(store, db)
        tenant = make_tenant()

        async with ObservationsClient(tenant) as client:
            count = await repository.refresh_stations(tenant, client)
        record = await repository.submit_for_station("t1", 100, make_payload())

        assert count == 1
        assert record.station_name == "Kisumu"
        assert record.scheduled_at == BASE_TIME

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_cache(self, httpx_mock, db: Database, store: ObservationStore) -> None:  # type: ignore[no-untyped-def]
        """A server error should leave the previous stations in place."""
        httpx_mock.add_response(url="http://test/api/mobile/stations/", status_code=500)
        cache = StationCache(db)
        await cache.replace_for_tenant("t1", [Station.from_api("t1", FIXED_STATION)])
        repository, _ = make_repository(store, db)
        tenant = make_tenant()

        async with ObservationsClient(tenant) as client:
            with pytest.raises(TransportError):
                await repository.refresh_stations(tenant, client)

        assert [s.station_id for s in await cache.list_for_tenant("t1")] == [100]

    @pytest.mark.asyncio
    async def test_unknown_station(self, db: Database, store: ObservationStore) -> None:
        repository, _ = make_repository(store, db)

        with pytest.raises(StationNotFoundError):
            await repository.submit_for_station("t1", 404, make_payload())

    @pytest.mark.asyncio
    async def test_station_without_schedule(self, db: Database, store: ObservationStore) -> None:
        await StationCache(db).replace_for_tenant("t1", [Station.from_api("t1", {"id": 5})])
        repository, _ = make_repository(store, db)

        with pytest.raises(StationNotFoundError, match="no schedule"):
            await repository.submit_for_station("t1", 5, make_payload())


class TestMaintenance:
    """Tests for retry, stuck sweep and stats."""

    @pytest.mark.asyncio
    async def test_retry_failed(self, store: ObservationStore) -> None:
        await store.upsert(make_observation(status=SyncStatus.FAILED))
        repository, _ = make_repository(store)

        assert await repository.retry_failed("t1") == 1
        assert (await store.count_by_status("t1"))[SyncStatus.QUEUED] == 1

    @pytest.mark.asyncio
    async def test_requeue_stuck_default_threshold(self, store: ObservationStore) -> None:
        """Should requeue uploads untouched for the configured minutes."""
        stuck = make_observation(minutes=0, status=SyncStatus.UPLOADING)
        fresh = make_observation(minutes=60, status=SyncStatus.UPLOADING)
        fresh.updated_at = BASE_TIME + timedelta(minutes=25)
        await store.upsert_many([stuck, fresh])
        repository, _ = make_repository(store, now=BASE_TIME + timedelta(minutes=30))

        assert await repository.requeue_stuck("t1") == 1
        assert await repository.requeue_stuck("t1", older_than_minutes=1) == 1

    @pytest.mark.asyncio
    async def test_upload_stats(self, store: ObservationStore) -> None:
        await store.upsert_many(
            [
                make_observation(minutes=0),
                make_observation(minutes=60, status=SyncStatus.FAILED),
                make_observation(minutes=120, status=SyncStatus.SYNCED),
            ]
        )
        repository, _ = make_repository(store)

        stats = await repository.upload_stats("t1")

        assert stats == {
            "queued": 1,
            "uploading": 0,
            "synced": 1,
            "failed": 1,
            "total_pending": 2,
        }

    @pytest.mark.asyncio
    async def test_stream_all(self, store: ObservationStore) -> None:
        repository, _ = make_repository(store)
        stream = repository.stream_all("t1")
        try:
            assert await anext(stream) == []
            await repository.queue_submit(
                "t1", 100, "Kisumu", "Africa/Nairobi", FIXED, make_payload()
            )
            assert len(await anext(stream)) == 1
        finally:
            await stream.aclose()  # type: ignore[attr-defined]


class TestSync:
    """Tests for ObservationsRepository.sync."""

    @pytest.mark.asyncio
    async def test_runs_until_drained(self, store: ObservationStore) -> None:
        orchestrator = ScriptedOrchestrator(
            [
                UploadBatchResult(success_count=10, has_more_work=True),
                UploadBatchResult(success_count=3, has_more_work=False),
            ]
        )
        repository, _ = make_repository(store, orchestrator=orchestrator)

        results = await repository.sync(make_tenant(), endpoint="http://x/", max_items=10)

        assert [r.success_count for r in results] == [10, 3]
        assert orchestrator.calls == [("http://x/", 10), ("http://x/", 10)]

    @pytest.mark.asyncio
    async def test_stops_when_nothing_uploaded(self, store: ObservationStore) -> None:
        """Failures alone should not loop forever."""
        orchestrator = ScriptedOrchestrator(
            [UploadBatchResult(retriable_failures=2, has_more_work=True)]
        )
        repository, _ = make_repository(store, orchestrator=orchestrator)

        results = await repository.sync(make_tenant())

        assert len(results) == 1
        assert len(orchestrator.calls) == 1

    @pytest.mark.asyncio
    async def test_empty_queue(self, store: ObservationStore) -> None:
        orchestrator = ScriptedOrchestrator([])
        repository, _ = make_repository(store, orchestrator=orchestrator)

        assert await repository.sync(make_tenant()) == []

    @pytest.mark.asyncio
    async def test_max_passes(self, store: ObservationStore) -> None:
        orchestrator = ScriptedOrchestrator(
            [UploadBatchResult(success_count=1, has_more_work=True) for _ in range(5)]
        )
        repository, _ = make_repository(store, orchestrator=orchestrator)

        results = await repository.sync(make_tenant(), max_passes=3)

        assert len(results) == 3

    @pytest.mark.asyncio
    async def test_requires_orchestrator(self, store: ObservationStore) -> None:
        repository, _ = make_repository(store)

        with pytest.raises(RuntimeError):
            await repository.sync(make_tenant())
