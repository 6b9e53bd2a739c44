"""Upload of queued observations.

This module provides:
- idempotency_key: Stable submission id derived from a record key
- build_post_request: Stored payload to wire request conversion
- UploadOrchestrator: Drains a tenant's queue in bounded batches
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from adlsync.client.api import (
    APIError,
    ObservationPostRequest,
    ObservationsClient,
    SubmissionMetadata,
    SubmissionRecord,
    TransportError,
)
from adlsync.client.auth import TenantAuth
from adlsync.client.schedule import format_iso_z
from adlsync.client.store.database import InvalidTransitionError, RecordNotFoundError
from adlsync.client.sync.retry import retry_with_backoff
from adlsync.client.sync.types import (
    PERMANENT_PREFIX,
    RETRIABLE_PREFIX,
    PayloadError,
    UploadAttemptResult,
    UploadBatchResult,
)
from adlsync.core.config import SyncSettings
from adlsync.core.types import SyncStatus

if TYPE_CHECKING:
    from adlsync.client.auth import TokenManager
    from adlsync.client.store import Observation, ObservationStore
    from adlsync.core.config import TenantConfig

logger = logging.getLogger(__name__)

ClientFactory = Callable[["TenantConfig"], ObservationsClient]


def idempotency_key(record_key: str) -> str:
    """Name-based (MD5, version 3) UUID of a record key.

    The same record always yields the same key, so the server can drop
    duplicate deliveries of a retried submission.
    """
    digest = hashlib.md5(record_key.encode("utf-8")).digest()
    return str(uuid.UUID(bytes=digest, version=3))


def _parse_records(raw: Any) -> list[SubmissionRecord]:
    if not isinstance(raw, list):
        raise PayloadError()
    records = []
    for row in raw:
        if not isinstance(row, dict):
            continue
        mapping_id = row.get("variable_mapping_id")
        value = row.get("value")
        # bool is an int subclass but never a valid measurement
        if isinstance(mapping_id, bool) or not isinstance(mapping_id, int | float):
            continue
        if isinstance(value, bool) or not isinstance(value, int | float):
            continue
        records.append(SubmissionRecord(int(mapping_id), float(value)))
    if not records:
        raise PayloadError()
    return records


def build_post_request(record: Observation, default_app_version: str) -> ObservationPostRequest:
    """Convert a stored observation into a submission request.

    Raises:
        PayloadError: The payload isn't JSON, or lacks usable ``records``
            or a ``metadata`` object.
    """
    try:
        payload = json.loads(record.payload_json)
    except (TypeError, ValueError) as e:
        raise PayloadError() from e
    if not isinstance(payload, dict):
        raise PayloadError()

    records = _parse_records(payload.get("records"))
    meta = payload.get("metadata")
    if not isinstance(meta, dict):
        raise PayloadError()

    duplicate_policy = meta.get("duplicate_policy")
    reason = meta.get("reason")
    app_version = meta.get("app_version")
    return ObservationPostRequest(
        idempotency_key=idempotency_key(record.key),
        submission_time=format_iso_z(record.updated_at),
        observation_time=format_iso_z(record.scheduled_at),
        station_link_id=record.station_id,
        records=records,
        metadata=SubmissionMetadata(
            app_version=app_version if isinstance(app_version, str) else default_app_version,
            late=record.late,
            duplicate_policy=duplicate_policy if isinstance(duplicate_policy, str) else None,
            reason=reason if isinstance(reason, str) else None,
        ),
    )


class UploadOrchestrator:
    """Drains queued observations for one tenant at a time.

    Records in a pass are processed sequentially and each one is isolated:
    a failing record is marked FAILED and the pass moves on. Only problems
    that affect the whole pass (no usable token) propagate.
    """

    def __init__(
        self,
        store: ObservationStore,
        tokens: TokenManager,
        settings: SyncSettings | None = None,
        client_factory: ClientFactory | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Durable observation queue.
            tokens: Token manager used to authenticate submissions.
            settings: Batch and retry tunables.
            client_factory: Builds the API client for a tenant; defaults to an
                ObservationsClient authenticated through TenantAuth.
            clock: Returns the current aware UTC datetime.
        """
        self._store = store
        self._tokens = tokens
        self._settings = settings or SyncSettings()
        self._client_factory = client_factory or self._default_client
        self._clock = clock or (lambda: datetime.now(UTC))

    def _default_client(self, tenant: TenantConfig) -> ObservationsClient:
        return ObservationsClient(tenant, auth=TenantAuth(tenant, self._tokens))

    def clamp_batch_size(self, max_items: int | None) -> int:
        """Clamp a requested batch size to ``[1, max_batch_size]``."""
        requested = self._settings.batch_size if max_items is None else max_items
        return max(1, min(requested, self._settings.max_batch_size))

    async def drain_batch(
        self, tenant: TenantConfig, endpoint: str | None = None, max_items: int | None = None
    ) -> bool:
        """Upload one batch; True if at least one record was attempted."""
        result = await self.upload_batch(tenant, endpoint, max_items)
        return result.progressed

    async def upload_batch(
        self, tenant: TenantConfig, endpoint: str | None = None, max_items: int | None = None
    ) -> UploadBatchResult:
        """Upload up to ``max_items`` pending records, oldest first.

        Args:
            tenant: Tenant whose queue is drained.
            endpoint: Submission URL; defaults to the tenant's observations URL.
            max_items: Batch size, clamped to ``[1, max_batch_size]``.

        Returns:
            Per-pass counts and per-record outcomes.

        Raises:
            AuthError: No valid token could be obtained for the tenant.
            TransportError: The token endpoint was unreachable.
        """
        limit = self.clamp_batch_size(max_items)
        pending = await self._store.query_pending(tenant.id, limit)
        result = UploadBatchResult()
        if not pending:
            logger.debug("No pending observations for tenant %s", tenant.id)
            return result

        # Fail the whole pass early if the tenant can't authenticate
        await self._tokens.get_valid_access_token(tenant)

        url = endpoint or tenant.observations_url
        logger.info("Uploading %d observations for tenant %s", len(pending), tenant.id)
        async with self._client_factory(tenant) as client:
            for record in pending:
                result.add(await self._upload_one(client, url, record))

        result.has_more_work = bool(await self._store.query_pending(tenant.id, 1))
        logger.info(
            "Batch finished for tenant %s: success=%d, permanent=%d, retriable=%d, more=%s",
            tenant.id,
            result.success_count,
            result.permanent_failures,
            result.retriable_failures,
            result.has_more_work,
        )
        return result

    async def _upload_one(
        self, client: ObservationsClient, url: str, record: Observation
    ) -> UploadAttemptResult:
        try:
            await self._store.update_status(
                record.key, SyncStatus.UPLOADING, updated_at=self._clock()
            )
            return await self._submit(client, url, record)
        except InvalidTransitionError as e:
            # Re-submitted or requeued while this pass held it; the next pass picks it up
            logger.warning("Skipping %s, it changed during upload: %s", record.key, e)
            return UploadAttemptResult(record.key, e.current, error=str(e))
        except RecordNotFoundError:
            logger.warning("Skipping %s, it was removed during upload", record.key)
            return UploadAttemptResult(
                record.key, record.status, error=f"{record.key} no longer exists", permanent=True
            )

    async def _submit(
        self, client: ObservationsClient, url: str, record: Observation
    ) -> UploadAttemptResult:
        try:
            request = build_post_request(record, self._settings.app_version)
            response = await retry_with_backoff(
                lambda: client.submit(url, request),
                max_retries=self._settings.submit_max_retries,
                initial_backoff=self._settings.submit_initial_backoff,
                max_backoff=self._settings.submit_max_backoff,
                retryable_exceptions=(TransportError,),
            )
        except PayloadError as e:
            return await self._fail(record, str(e), permanent=True)
        except APIError as e:
            return await self._fail(record, str(e), permanent=e.is_permanent())
        except Exception as e:
            logger.exception("Unexpected error uploading %s", record.key)
            return await self._fail(record, str(e) or type(e).__name__, permanent=False)

        await self._store.mark_synced(record.key, response.id, updated_at=self._clock())
        logger.debug("Uploaded %s as remote id %d (%s)", record.key, response.id, response.status)
        return UploadAttemptResult(record.key, SyncStatus.SYNCED, remote_id=response.id)

    async def _fail(self, record: Observation, message: str, permanent: bool) -> UploadAttemptResult:
        error = (PERMANENT_PREFIX if permanent else RETRIABLE_PREFIX) + message
        await self._store.update_status(
            record.key, SyncStatus.FAILED, error=error, updated_at=self._clock()
        )
        logger.warning("Upload of %s failed: %s", record.key, error)
        return UploadAttemptResult(record.key, SyncStatus.FAILED, error=error, permanent=permanent)
