"""Shared types for adlsync.

This module defines enums used by the store, the orchestrator and the CLI.
"""

from __future__ import annotations

from enum import Enum


class SyncStatus(str, Enum):
    """Sync status of a queued observation.

    QUEUED -> UPLOADING -> SYNCED | FAILED, plus the manual FAILED -> QUEUED
    retry. UPLOADING -> QUEUED is not an edge: only the explicit stuck-upload sweep
    moves such records, and it bypasses transition checks.
    """

    QUEUED = "QUEUED"
    UPLOADING = "UPLOADING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"

    @property
    def is_pending(self) -> bool:
        """True for statuses picked up by an upload pass."""
        return self in (SyncStatus.QUEUED, SyncStatus.FAILED)

    def can_transition_to(self, target: SyncStatus) -> bool:
        """Check whether ``self -> target`` is a legal edge."""
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.QUEUED: frozenset({SyncStatus.UPLOADING}),
    # FAILED records are re-attempted by the next pass, or reset by the operator
    SyncStatus.FAILED: frozenset({SyncStatus.UPLOADING, SyncStatus.QUEUED}),
    SyncStatus.UPLOADING: frozenset({SyncStatus.SYNCED, SyncStatus.FAILED}),
    SyncStatus.SYNCED: frozenset(),
}

PENDING_STATUSES: tuple[SyncStatus, ...] = (SyncStatus.QUEUED, SyncStatus.FAILED)


class ScheduleModeTag(str, Enum):
    """Schedule mode stored alongside each observation."""

    FIXED_LOCAL = "fixed_local"
    WINDOWED_ONLY = "windowed_only"
