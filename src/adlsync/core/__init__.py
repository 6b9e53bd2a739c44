"""Core module - Shared configuration and types."""

from adlsync.core.config import TenantConfig, SyncSettings
from adlsync.core.types import PENDING_STATUSES, ScheduleModeTag, SyncStatus

__all__ = [
    # Config
    "SyncSettings",
    "TenantConfig",
    # Types
    "PENDING_STATUSES",
    "ScheduleModeTag",
    "SyncStatus",
]
