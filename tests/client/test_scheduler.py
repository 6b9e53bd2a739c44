"""Tests for background upload scheduling."""

from __future__ import annotations

import logging
import random
from datetime import timedelta
from typing import Any
from unittest.mock import MagicMock

import pytest

from adlsync.client.api import AuthError, TransportError
from adlsync.client.sync import UploadBatchResult, UploadScheduler
from adlsync.client.sync.scheduler import job_id_for
from adlsync.core.config import SyncSettings, TenantConfig
from tests.factories import BASE_TIME, make_tenant


class FakeOrchestrator:
    """Orchestrator returning scripted results (or raising scripted errors)."""

    def __init__(self, outcome: UploadBatchResult | Exception) -> None:
        self.outcome = outcome
        self.calls: list[tuple[str, str | None]] = []
        self.on_call: Any = None

    async def upload_batch(
        self, tenant: TenantConfig, endpoint: str | None = None, max_items: int | None = None
    ) -> UploadBatchResult:
        self.calls.append((tenant.id, endpoint))
        if self.on_call is not None:
            self.on_call()
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def online(result: bool = True):  # type: ignore[no-untyped-def]
    async def check(tenant: TenantConfig) -> bool:
        return result

    return check


def make_scheduler(
    orchestrator: FakeOrchestrator,
    reachable: bool = True,
    **settings: Any,
) -> tuple[UploadScheduler, MagicMock]:
    """Create an UploadScheduler over a mocked APScheduler."""
    backend = MagicMock()
    backend.get_job.return_value = None
    scheduler = UploadScheduler(
        orchestrator,  # type: ignore[arg-type]
        settings=SyncSettings(**settings),
        connectivity=online(reachable),
        scheduler=backend,
        clock=lambda: BASE_TIME,
        rng=random.Random(1),
    )
    return scheduler, backend


def scheduled_kwargs(backend: MagicMock) -> dict[str, Any]:
    return backend.add_job.call_args.kwargs


class TestScheduleOneShot:
    """Tests for UploadScheduler.schedule_one_shot."""

    def test_requires_start(self) -> None:
        """Should refuse to schedule before start()."""
        scheduler = UploadScheduler(FakeOrchestrator(UploadBatchResult()))  # type: ignore[arg-type]

        with pytest.raises(RuntimeError):
            scheduler.schedule_one_shot(make_tenant())

    def test_adds_unique_job_per_tenant(self) -> None:
        """Should add a replaceable date job keyed by tenant."""
        scheduler, backend = make_scheduler(FakeOrchestrator(UploadBatchResult()))

        job_id = scheduler.schedule_one_shot(make_tenant(), endpoint="http://x/", delay=30)

        assert job_id == "upload:t1"
        kwargs = scheduled_kwargs(backend)
        assert kwargs["id"] == "upload:t1"
        assert kwargs["replace_existing"] is True
        assert kwargs["trigger"].run_date == BASE_TIME + timedelta(seconds=30)
        assert kwargs["kwargs"]["endpoint"] == "http://x/"
        assert kwargs["kwargs"]["deferrals"] == 0

    def test_is_scheduled_and_cancel(self) -> None:
        """Should report and remove a pending job."""
        scheduler, backend = make_scheduler(FakeOrchestrator(UploadBatchResult()))

        assert scheduler.is_scheduled("t1") is False
        assert scheduler.cancel("t1") is False

        backend.get_job.return_value = object()
        assert scheduler.is_scheduled("t1") is True
        assert scheduler.cancel("t1") is True
        backend.remove_job.assert_called_once_with(job_id_for("t1"))


class TestRunPass:
    """Tests for what a scheduled pass does next."""

    @pytest.mark.asyncio
    async def test_progress_with_more_work_chains_immediately(self) -> None:
        """Should schedule the next pass right away."""
        result = UploadBatchResult(success_count=2, has_more_work=True)
        scheduler, backend = make_scheduler(FakeOrchestrator(result))

        await scheduler._run_pass(make_tenant(), None, True, deferrals=3)

        kwargs = scheduled_kwargs(backend)
        assert kwargs["trigger"].run_date == BASE_TIME
        # A successful pass resets the deferral chain
        assert kwargs["kwargs"]["deferrals"] == 0

    @pytest.mark.asyncio
    async def test_drained_queue_stops(self) -> None:
        """Should not schedule again once the queue is empty."""
        result = UploadBatchResult(success_count=2, has_more_work=False)
        scheduler, backend = make_scheduler(FakeOrchestrator(result))

        await scheduler._run_pass(make_tenant(), None, True, deferrals=0)

        backend.add_job.assert_not_called()

    @pytest.mark.asyncio
    async def test_nothing_to_do_stops(self) -> None:
        scheduler, backend = make_scheduler(FakeOrchestrator(UploadBatchResult()))

        await scheduler._run_pass(make_tenant(), None, True, deferrals=0)

        backend.add_job.assert_not_called()

    @pytest.mark.asyncio
    async def test_retriable_failures_defer(self) -> None:
        """Should back off after transient record failures."""
        result = UploadBatchResult(retriable_failures=1, has_more_work=True)
        scheduler, backend = make_scheduler(
            FakeOrchestrator(result), scheduler_initial_backoff=30.0, scheduler_max_backoff=600.0
        )

        await scheduler._run_pass(make_tenant(), None, True, deferrals=2)

        kwargs = scheduled_kwargs(backend)
        assert kwargs["kwargs"]["deferrals"] == 3
        delay = (kwargs["trigger"].run_date - BASE_TIME).total_seconds()
        assert 90.0 <= delay <= 150.0

    @pytest.mark.asyncio
    async def test_permanent_failures_only_stop(self, caplog: pytest.LogCaptureFixture) -> None:
        """Should not retry records that can never succeed."""
        result = UploadBatchResult(permanent_failures=2, has_more_work=True)
        scheduler, backend = make_scheduler(FakeOrchestrator(result))

        with caplog.at_level(logging.WARNING, logger="adlsync"):
            await scheduler._run_pass(make_tenant(), None, True, deferrals=0)

        backend.add_job.assert_not_called()
        assert "2 permanent failures" in caplog.text

    @pytest.mark.asyncio
    async def test_offline_defers_without_uploading(self) -> None:
        """Should skip the pass when the tenant is unreachable."""
        orchestrator = FakeOrchestrator(UploadBatchResult(success_count=1))
        scheduler, backend = make_scheduler(orchestrator, reachable=False)

        await scheduler._run_pass(make_tenant(), None, True, deferrals=0)

        assert orchestrator.calls == []
        assert scheduled_kwargs(backend)["kwargs"]["deferrals"] == 1

    @pytest.mark.asyncio
    async def test_connectivity_check_skipped_when_not_required(self) -> None:
        orchestrator = FakeOrchestrator(UploadBatchResult())
        scheduler, _ = make_scheduler(orchestrator, reachable=False)

        await scheduler._run_pass(make_tenant(), "http://x/", False, deferrals=0)

        assert orchestrator.calls == [("t1", "http://x/")]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error", [AuthError("Not logged in (no refresh token)"), TransportError("offline")]
    )
    async def test_pass_level_errors_defer(self, error: Exception) -> None:
        """Auth and token-endpoint failures should defer the whole pass."""
        scheduler, backend = make_scheduler(FakeOrchestrator(error))

        await scheduler._run_pass(make_tenant(), None, True, deferrals=0)

        assert scheduled_kwargs(backend)["kwargs"]["deferrals"] == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_deferrals(self, caplog: pytest.LogCaptureFixture) -> None:
        """Should stop the chain once the deferral budget is spent."""
        scheduler, backend = make_scheduler(
            FakeOrchestrator(UploadBatchResult()), reachable=False, scheduler_max_deferrals=3
        )

        with caplog.at_level(logging.WARNING, logger="adlsync"):
            await scheduler._run_pass(make_tenant(), None, True, deferrals=3)

        backend.add_job.assert_not_called()
        assert "Giving up" in caplog.text

    @pytest.mark.asyncio
    async def test_unexpected_error_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        """Should log unexpected errors and stop the chain."""
        scheduler, backend = make_scheduler(FakeOrchestrator(RuntimeError("disk full")))

        with caplog.at_level(logging.ERROR, logger="adlsync"):
            await scheduler._run_pass(make_tenant(), None, True, deferrals=0)

        backend.add_job.assert_not_called()
        assert "Error during scheduled upload" in caplog.text

    @pytest.mark.asyncio
    async def test_running_pass_counts_as_scheduled(self) -> None:
        """A tenant should be reported busy while its pass runs."""
        orchestrator = FakeOrchestrator(UploadBatchResult())
        scheduler, _ = make_scheduler(orchestrator)
        seen: list[bool] = []
        orchestrator.on_call = lambda: seen.append(scheduler.is_scheduled("t1"))

        await scheduler._run_pass(make_tenant(), None, False, deferrals=0)

        assert seen == [True]
        assert scheduler.is_scheduled("t1") is False


class TestLifecycle:
    """Tests for starting and stopping the real APScheduler backend."""

    @pytest.mark.asyncio
    async def test_start_schedule_stop(self) -> None:
        scheduler = UploadScheduler(FakeOrchestrator(UploadBatchResult()))  # type: ignore[arg-type]
        scheduler.start()
        try:
            assert scheduler.running is True
            scheduler.schedule_one_shot(make_tenant(), delay=3600)
            assert scheduler.is_scheduled("t1") is True
            assert scheduler.cancel("t1") is True
            assert scheduler.is_scheduled("t1") is False
        finally:
            scheduler.stop()

        assert scheduler.running is False
