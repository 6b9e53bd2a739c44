"""Shared configuration classes for adlsync.

This module defines configuration classes used by the API client, the token
manager and the upload pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

DEFAULT_SCOPES = ("adl.read", "adl.write")


@dataclass
class TenantConfig:
    """Configuration for one ADL tenant (deployment).

    Each tenant has its own authentication realm and API base address.

    Attributes:
        id: Stable tenant identifier (used in record keys).
        name: Human-readable tenant name.
        base_url: Base URL of the tenant API (e.g., "https://adl.example.org").
        token_endpoint: OAuth2 token endpoint used for refresh grants.
        client_id: OAuth2 public client id.
        scopes: Requested OAuth2 scopes.
        timeout: Request/connection timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    id: str
    name: str
    base_url: str
    token_endpoint: str
    client_id: str
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    timeout: float = 30.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize base URL."""
        self.base_url = self.base_url.rstrip("/")

    @property
    def observations_url(self) -> str:
        """Default endpoint for observation submissions."""
        return f"{self.base_url}/api/mobile/observations/"

    @property
    def stations_url(self) -> str:
        """Endpoint listing the stations linked to the current user."""
        return f"{self.base_url}/api/mobile/stations/"

    @property
    def is_secure(self) -> bool:
        """Check if the tenant API is served over HTTPS."""
        return self.base_url.startswith("https://")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TenantConfig:
        """Create from a config file dictionary."""
        return cls(
            id=str(data["id"]),
            name=data.get("name", str(data["id"])),
            base_url=data["base_url"],
            token_endpoint=data["token_endpoint"],
            client_id=data["client_id"],
            scopes=list(data.get("scopes", DEFAULT_SCOPES)),
            timeout=float(data.get("timeout", 30.0)),
            verify_ssl=bool(data.get("verify_ssl", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the config file."""
        return {
            "id": self.id,
            "name": self.name,
            "base_url": self.base_url,
            "token_endpoint": self.token_endpoint,
            "client_id": self.client_id,
            "scopes": list(self.scopes),
            "timeout": self.timeout,
            "verify_ssl": self.verify_ssl,
        }


@dataclass
class SyncSettings:
    """Tunables for token handling and the upload pipeline.

    Attributes:
        batch_size: Default number of records drained per pass.
        max_batch_size: Upper clamp for a single pass.
        token_skew_seconds: Refresh tokens this long before they expire.
        submit_max_retries: Retries of a single submission on transport errors.
        submit_initial_backoff: First backoff delay for submissions (seconds).
        submit_max_backoff: Cap for submission backoff (seconds).
        scheduler_initial_backoff: First deferral delay for a scheduled pass.
        scheduler_max_backoff: Cap for scheduled pass deferral.
        scheduler_max_deferrals: Give up a scheduled chain after this many deferrals.
        stuck_upload_minutes: Age after which UPLOADING records count as stuck.
        app_version: Reported in submission metadata when the payload omits it.
    """

    batch_size: int = 10
    max_batch_size: int = 50
    token_skew_seconds: float = 60.0
    submit_max_retries: int = 2
    submit_initial_backoff: float = 0.3
    submit_max_backoff: float = 5.0
    scheduler_initial_backoff: float = 30.0
    scheduler_max_backoff: float = 600.0
    scheduler_max_deferrals: int = 5
    stuck_upload_minutes: int = 15
    app_version: str = "1.0.0"
