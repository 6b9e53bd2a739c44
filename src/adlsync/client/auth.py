"""Token lifecycle management for tenant API access.

This module provides:
- TokenStore / TokenRefresher: protocols for the collaborators
- TokenManager: per-tenant cached access token with single-flight refresh
- TenantAuth: httpx auth flow that resolves tokens asynchronously and
  retries a rejected request exactly once after a forced refresh

Concurrency:
    Refresh is the only critical section. Each tenant gets its own
    asyncio.Lock, so tenants refresh independently while concurrent callers
    for the same tenant wait and then reuse the refreshed token.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator, Callable, Generator
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Protocol

import httpx

from adlsync.client.api import AuthError, TokenResponse

if TYPE_CHECKING:
    from adlsync.core.config import TenantConfig

logger = logging.getLogger(__name__)

DEFAULT_SKEW_SECONDS = 60.0


class TokenStore(Protocol):
    """Durable per-tenant token storage."""

    async def get_access(self, tenant_id: str) -> str | None: ...

    async def get_refresh(self, tenant_id: str) -> str | None: ...

    async def get_expiry(self, tenant_id: str) -> datetime | None: ...

    async def save_tokens(
        self,
        tenant_id: str,
        access: str | None,
        refresh: str | None,
        expires_at: datetime | None,
    ) -> None: ...

    async def clear_tokens(self, tenant_id: str) -> None: ...


class TokenRefresher(Protocol):
    """Network collaborator performing the refresh-token grant."""

    async def refresh_token(self, tenant: TenantConfig, refresh_token: str) -> TokenResponse: ...


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TokenManager:
    """Hands out valid access tokens, refreshing them when they expire.

    Usage:
        manager = TokenManager(CredentialStore(db), TokenEndpointClient())
        token = await manager.get_valid_access_token(tenant)
    """

    def __init__(
        self,
        store: TokenStore,
        refresher: TokenRefresher,
        skew_seconds: float = DEFAULT_SKEW_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the token manager.

        Args:
            store: Credential storage.
            refresher: Performs refresh-token grants.
            skew_seconds: Treat tokens as expired this long before expiry.
            clock: Returns the current aware UTC datetime.
        """
        self._store = store
        self._refresher = refresher
        self._skew = timedelta(seconds=skew_seconds)
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    def _is_fresh(self, access: str | None, expiry: datetime | None) -> bool:
        if not access or expiry is None:
            return False
        return expiry - self._skew > self._clock()

    async def _cached(self, tenant_id: str) -> tuple[str | None, datetime | None]:
        return await self._store.get_access(tenant_id), await self._store.get_expiry(tenant_id)

    async def get_valid_access_token(self, tenant: TenantConfig) -> str:
        """Return a non-expiring access token for the tenant.

        Raises:
            AuthError: No refresh token is stored or the refresh was rejected.
            TransportError: The token endpoint could not be reached.
        """
        access, expiry = await self._cached(tenant.id)
        if self._is_fresh(access, expiry):
            return access  # type: ignore[return-value]

        async with self._lock_for(tenant.id):
            # Another caller may have refreshed while we waited
            access, expiry = await self._cached(tenant.id)
            if self._is_fresh(access, expiry):
                return access  # type: ignore[return-value]
            return await self._refresh_locked(tenant)

    async def force_refresh(self, tenant: TenantConfig, rejected_token: str | None) -> str:
        """Refresh after the server rejected ``rejected_token``.

        If another caller already replaced the rejected token, that newer
        token is returned without a second refresh.
        """
        async with self._lock_for(tenant.id):
            access, expiry = await self._cached(tenant.id)
            if access and access != rejected_token and self._is_fresh(access, expiry):
                return access
            return await self._refresh_locked(tenant)

    async def _refresh_locked(self, tenant: TenantConfig) -> str:
        refresh = await self._store.get_refresh(tenant.id)
        if not refresh:
            raise AuthError("Not logged in (no refresh token)")

        logger.info("Refreshing access token for tenant %s", tenant.id)
        try:
            response = await self._refresher.refresh_token(tenant, refresh)
        except AuthError:
            logger.warning("Refresh token rejected for tenant %s", tenant.id)
            raise

        await self._store.save_tokens(
            tenant.id,
            response.access_token,
            response.refresh_token or refresh,
            response.expires_at,
        )
        logger.debug("Access token for tenant %s valid until %s", tenant.id, response.expires_at)
        return response.access_token

    async def save_login(self, tenant: TenantConfig, response: TokenResponse) -> None:
        """Persist tokens obtained from an interactive login."""
        await self._store.save_tokens(
            tenant.id, response.access_token, response.refresh_token, response.expires_at
        )
        logger.info("Stored login for tenant %s", tenant.id)

    async def logout(self, tenant: TenantConfig) -> None:
        """Forget all tokens for the tenant."""
        await self._store.clear_tokens(tenant.id)
        logger.info("Cleared tokens for tenant %s", tenant.id)


class TenantAuth(httpx.Auth):
    """Bearer auth for one tenant, with one transparent re-authentication.

    The first 401 forces a refresh and replays the request once. A second
    401 (or a refresh that yields the same token) is returned to the caller,
    which surfaces it as AuthError.
    """

    def __init__(self, tenant: TenantConfig, manager: TokenManager) -> None:
        self._tenant = tenant
        self._manager = manager

    def sync_auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        raise RuntimeError("TenantAuth requires an httpx.AsyncClient")
        yield request  # pragma: no cover

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        token = await self._manager.get_valid_access_token(self._tenant)
        request.headers["Authorization"] = f"Bearer {token}"
        response = yield request

        if response.status_code != 401:
            return

        logger.info("Request rejected for tenant %s, refreshing token once", self._tenant.id)
        new_token = await self._manager.force_refresh(self._tenant, rejected_token=token)
        if new_token == token:
            return  # already tried with this token

        request.headers["Authorization"] = f"Bearer {new_token}"
        yield request
