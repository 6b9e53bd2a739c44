"""Upload pipeline: payload conversion, batch orchestration and scheduling."""

from adlsync.client.sync.retry import backoff_delay, retry_with_backoff
from adlsync.client.sync.scheduler import UploadScheduler
from adlsync.client.sync.types import (
    INVALID_PAYLOAD_MESSAGE,
    PayloadError,
    SyncError,
    UploadAttemptResult,
    UploadBatchResult,
)
from adlsync.client.sync.upload import UploadOrchestrator, build_post_request, idempotency_key

__all__ = [
    # Retry
    "backoff_delay",
    "retry_with_backoff",
    # Types
    "INVALID_PAYLOAD_MESSAGE",
    "PayloadError",
    "SyncError",
    "UploadAttemptResult",
    "UploadBatchResult",
    # Upload
    "UploadOrchestrator",
    "UploadScheduler",
    "build_post_request",
    "idempotency_key",
]
