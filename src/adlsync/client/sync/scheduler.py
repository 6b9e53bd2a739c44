"""Background scheduling of upload passes.

This module provides:
- UploadScheduler: One-shot upload jobs per tenant on an asyncio scheduler,
  chained while a pass makes progress and deferred with exponential backoff
  when the tenant is offline or can't authenticate
"""

from __future__ import annotations

import logging
import random
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from adlsync.client.api import AuthError, ObservationsClient, TransportError
from adlsync.client.sync.retry import backoff_delay
from adlsync.core.config import SyncSettings

if TYPE_CHECKING:
    from adlsync.client.sync.types import UploadBatchResult
    from adlsync.client.sync.upload import UploadOrchestrator
    from adlsync.core.config import TenantConfig

logger = logging.getLogger(__name__)

ConnectivityCheck = Callable[["TenantConfig"], Awaitable[bool]]


async def check_connectivity(tenant: TenantConfig) -> bool:
    """Return True if the tenant API answers at all."""
    async with ObservationsClient(tenant) as client:
        return await client.health_check()


def job_id_for(tenant_id: str) -> str:
    return f"upload:{tenant_id}"


class UploadScheduler:
    """Schedules upload passes for tenants.

    There is at most one pending job per tenant; scheduling again replaces it.
    Each run:
    - checks connectivity when the job requires network,
    - uploads one batch,
    - schedules the next batch right away if records were uploaded and more
      remain,
    - defers with backoff after retriable record failures or when the pass
      can't start (offline, token refresh failed),
    - stops once nothing is left or only permanent failures remain.
    """

    def __init__(
        self,
        orchestrator: UploadOrchestrator,
        settings: SyncSettings | None = None,
        connectivity: ConnectivityCheck = check_connectivity,
        scheduler: AsyncIOScheduler | None = None,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            orchestrator: Performs the upload passes.
            settings: Deferral bounds.
            connectivity: Async reachability probe for a tenant.
            scheduler: APScheduler instance; created on start() if omitted.
            clock: Returns the current aware UTC datetime.
            rng: Random source for backoff jitter.
        """
        self._orchestrator = orchestrator
        self._settings = settings or SyncSettings()
        self._connectivity = connectivity
        self._scheduler = scheduler
        self._clock = clock or (lambda: datetime.now(UTC))
        self._rng = rng
        self._active: set[str] = set()

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Start the scheduler. Must be called with a running event loop."""
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(timezone=UTC)
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Upload scheduler started")

    def stop(self) -> None:
        """Stop the scheduler without waiting for running passes."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Upload scheduler stopped")
        self._scheduler = None

    def schedule_one_shot(
        self,
        tenant: TenantConfig,
        endpoint: str | None = None,
        requires_network: bool = True,
        delay: float = 0.0,
        deferrals: int = 0,
    ) -> str:
        """Schedule a single upload pass for a tenant.

        Args:
            tenant: Tenant to drain.
            endpoint: Submission URL; defaults to the tenant's.
            requires_network: Probe connectivity before uploading.
            delay: Seconds from now until the pass runs.
            deferrals: How many times this chain was already deferred.

        Returns:
            The job id (one per tenant).
        """
        if self._scheduler is None:
            raise RuntimeError("Scheduler is not started")

        job_id = job_id_for(tenant.id)
        self._scheduler.add_job(
            self._run_pass,
            trigger=DateTrigger(run_date=self._clock() + timedelta(seconds=delay)),
            id=job_id,
            name=f"Upload observations for {tenant.id}",
            replace_existing=True,
            misfire_grace_time=None,
            kwargs={
                "tenant": tenant,
                "endpoint": endpoint,
                "requires_network": requires_network,
                "deferrals": deferrals,
            },
        )
        logger.debug("Scheduled %s in %.1fs (deferrals=%d)", job_id, delay, deferrals)
        return job_id

    def is_scheduled(self, tenant_id: str) -> bool:
        """True if a pass for the tenant is pending or running."""
        if tenant_id in self._active:
            return True
        if self._scheduler is None:
            return False
        return self._scheduler.get_job(job_id_for(tenant_id)) is not None

    def cancel(self, tenant_id: str) -> bool:
        """Cancel the pending pass for a tenant, if any."""
        if self._scheduler is None or self._scheduler.get_job(job_id_for(tenant_id)) is None:
            return False
        self._scheduler.remove_job(job_id_for(tenant_id))
        return True

    async def _run_pass(
        self,
        tenant: TenantConfig,
        endpoint: str | None,
        requires_network: bool,
        deferrals: int,
    ) -> None:
        """Job function for one scheduled upload pass."""
        self._active.add(tenant.id)
        try:
            await self._pass(tenant, endpoint, requires_network, deferrals)
        finally:
            self._active.discard(tenant.id)

    async def _pass(
        self,
        tenant: TenantConfig,
        endpoint: str | None,
        requires_network: bool,
        deferrals: int,
    ) -> None:
        if requires_network and not await self._connectivity(tenant):
            self._defer(tenant, endpoint, requires_network, deferrals, "tenant API unreachable")
            return

        try:
            result = await self._orchestrator.upload_batch(tenant, endpoint)
        except (AuthError, TransportError) as e:
            # Login state or connectivity may change later
            self._defer(tenant, endpoint, requires_network, deferrals, str(e))
            return
        except Exception:
            logger.exception("Error during scheduled upload for tenant %s", tenant.id)
            return

        self._after_pass(tenant, endpoint, requires_network, deferrals, result)

    def _after_pass(
        self,
        tenant: TenantConfig,
        endpoint: str | None,
        requires_network: bool,
        deferrals: int,
        result: UploadBatchResult,
    ) -> None:
        if not result.progressed:
            logger.debug("Nothing to upload for tenant %s", tenant.id)
        elif result.success_count > 0 and result.has_more_work:
            self.schedule_one_shot(tenant, endpoint, requires_network)
        elif result.retriable_failures > 0:
            self._defer(
                tenant,
                endpoint,
                requires_network,
                deferrals,
                f"{result.retriable_failures} retriable failures",
            )
        elif result.permanent_failures > 0:
            logger.warning(
                "Upload pass for tenant %s left %d permanent failures",
                tenant.id,
                result.permanent_failures,
            )
        else:
            logger.info("Upload queue drained for tenant %s", tenant.id)

    def _defer(
        self,
        tenant: TenantConfig,
        endpoint: str | None,
        requires_network: bool,
        deferrals: int,
        reason: str,
    ) -> None:
        if deferrals >= self._settings.scheduler_max_deferrals:
            logger.warning(
                "Giving up on uploads for tenant %s after %d deferrals: %s",
                tenant.id,
                deferrals,
                reason,
            )
            return

        delay = backoff_delay(
            deferrals,
            initial_backoff=self._settings.scheduler_initial_backoff,
            max_backoff=self._settings.scheduler_max_backoff,
            rng=self._rng,
        )
        logger.warning(
            "Deferring uploads for tenant %s by %.0fs (%s)", tenant.id, delay, reason
        )
        self.schedule_one_shot(tenant, endpoint, requires_network, delay, deferrals + 1)
