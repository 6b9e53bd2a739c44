"""Shared types and dataclasses for upload operations.

This module provides:
- SyncError, PayloadError: Exception classes
- UploadAttemptResult: Outcome of one record
- UploadBatchResult: Outcome of one drain pass
"""

from __future__ import annotations

from dataclasses import dataclass, field

from adlsync.core.types import SyncStatus

INVALID_PAYLOAD_MESSAGE = "Invalid payload format - missing 'records' or 'metadata'"
PERMANENT_PREFIX = "Permanent failure: "
RETRIABLE_PREFIX = "Retriable failure: "


class SyncError(Exception):
    """Base exception for sync errors."""


class PayloadError(SyncError):
    """A stored payload cannot be turned into a submission.

    Never retried: the record is marked FAILED without a network call.
    """

    def __init__(self, message: str = INVALID_PAYLOAD_MESSAGE) -> None:
        super().__init__(message)


@dataclass
class UploadAttemptResult:
    """Result of uploading one record."""

    key: str
    status: SyncStatus
    remote_id: int | None = None
    error: str | None = None
    permanent: bool = False

    @property
    def ok(self) -> bool:
        return self.status == SyncStatus.SYNCED


@dataclass
class UploadBatchResult:
    """Result of one drain pass for a tenant.

    Attributes:
        success_count: Records marked SYNCED.
        permanent_failures: Records failed with a non-retriable error.
        retriable_failures: Records failed with a transient error.
        has_more_work: The pass was full, so more records may be pending.
        attempts: Per-record outcomes in processing order.
    """

    success_count: int = 0
    permanent_failures: int = 0
    retriable_failures: int = 0
    has_more_work: bool = False
    attempts: list[UploadAttemptResult] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.success_count + self.permanent_failures + self.retriable_failures

    @property
    def progressed(self) -> bool:
        """True if at least one record was attempted."""
        return self.attempted > 0

    def add(self, attempt: UploadAttemptResult) -> None:
        self.attempts.append(attempt)
        if attempt.ok:
            self.success_count += 1
        elif attempt.permanent:
            self.permanent_failures += 1
        else:
            self.retriable_failures += 1
