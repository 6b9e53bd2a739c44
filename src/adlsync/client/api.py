"""HTTP client for the ADL observation API.

This module provides:
- APIError and subclasses: classified network failures
- TokenResponse: result of an OAuth2 token grant
- ObservationPostRequest / ObservationPostResponse: submission wire format
- ObservationsClient: async client used by the upload orchestrator
- TokenEndpointClient: async client for refresh-token grants
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from adlsync.core.config import TenantConfig

logger = logging.getLogger(__name__)

USER_AGENT = "adlsync/0.1.0"


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    def is_permanent(self) -> bool:
        """True if retrying the same request cannot succeed."""
        return True


class AuthError(APIError):
    """Authentication failed and could not be recovered by a token refresh.

    The user has to log in again.
    """


class TransportError(APIError):
    """Timeout, connection failure, 5xx or rate limiting (429)."""

    def is_permanent(self) -> bool:
        return False


class ClientError(APIError):
    """The server rejected the request (4xx other than 401/429)."""


class UnexpectedBodyError(APIError):
    """A successful response did not carry JSON (e.g. an HTML login page)."""

    def __init__(self, content_type: str | None, snippet: str) -> None:
        super().__init__("Response is not JSON")
        self.content_type = content_type
        self.snippet = snippet


def _detail(response: httpx.Response, default: str) -> str:
    try:
        data = response.json()
    except ValueError:
        return default
    if isinstance(data, dict):
        return str(data.get("detail") or data.get("error_description") or data.get("error") or default)
    return default


def raise_for_status(response: httpx.Response) -> httpx.Response:
    """Classify a response and raise the matching APIError."""
    code = response.status_code
    if code == 401:
        raise AuthError("Session expired", 401)
    if code == 403:
        raise ClientError("You don't have permission", 403)
    if code == 404:
        raise ClientError("Not found", 404)
    if code == 429:
        raise TransportError("Rate limit exceeded", 429)
    if code >= 500:
        raise TransportError(f"Server error ({code})", code)
    if code >= 400:
        raise ClientError(f"Client error ({code}): {_detail(response, 'Unknown error')}", code)

    content_type = response.headers.get("Content-Type", "").lower()
    if code != 204 and "application/json" not in content_type:
        peek = response.text[:1024].lstrip()
        if "text/html" in content_type or peek.lower().startswith(("<!doctype", "<html")):
            raise UnexpectedBodyError(content_type or None, peek[:200])
    return response


def _json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except json.JSONDecodeError as e:
        raise APIError(f"Bad response format: {e}", response.status_code) from e


@dataclass
class TokenResponse:
    """Tokens returned by the authorization server."""

    access_token: str
    expires_at: datetime
    refresh_token: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], now: datetime | None = None) -> TokenResponse:
        """Create from an OAuth2 token endpoint response."""
        issued = now or datetime.now(UTC)
        expires_in = int(data.get("expires_in", 3600))
        return cls(
            access_token=data["access_token"],
            expires_at=issued + timedelta(seconds=expires_in),
            refresh_token=data.get("refresh_token"),
        )


@dataclass
class SubmissionRecord:
    """One measured value in a submission."""

    variable_mapping_id: int
    value: float


@dataclass
class SubmissionMetadata:
    """Submission metadata sent with every observation."""

    app_version: str
    late: bool = False
    duplicate_policy: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"late": self.late, "app_version": self.app_version}
        if self.duplicate_policy is not None:
            data["duplicate_policy"] = self.duplicate_policy
        if self.reason is not None:
            data["reason"] = self.reason
        return data


@dataclass
class ObservationPostRequest:
    """Observation submission as sent to the server."""

    idempotency_key: str
    submission_time: str
    observation_time: str
    station_link_id: int
    records: list[SubmissionRecord]
    metadata: SubmissionMetadata

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the JSON wire format."""
        return {
            "idempotency_key": self.idempotency_key,
            "submission_time": self.submission_time,
            "observation_time": self.observation_time,
            "station_link_id": self.station_link_id,
            "records": [
                {"variable_mapping_id": r.variable_mapping_id, "value": r.value}
                for r in self.records
            ],
            "metadata": self.metadata.to_dict(),
        }


@dataclass
class ObservationPostResponse:
    """Server acknowledgement of a submission."""

    id: int
    station_link_id: int
    observation_time: str
    status: str  # e.g. "accepted", "late", "revised"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ObservationPostResponse:
        """Create from API response dictionary."""
        return cls(
            id=int(data["id"]),
            station_link_id=int(data["station_link_id"]),
            observation_time=data["observation_time"],
            status=data["status"],
        )


class ObservationsClient:
    """Async HTTP client for one tenant's observation API.

    Authentication is delegated to an ``httpx.Auth`` (see
    ``adlsync.client.auth.TenantAuth``) so tokens are resolved right before
    each request and a rejected token is refreshed once.
    """

    def __init__(
        self,
        tenant: TenantConfig,
        auth: httpx.Auth | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            tenant: Tenant configuration (base URL, timeouts).
            auth: Authentication flow applied to every request.
            transport: Optional transport override.
        """
        self._tenant = tenant
        self._client = httpx.AsyncClient(
            base_url=tenant.base_url,
            auth=auth,
            timeout=tenant.timeout,
            verify=tenant.verify_ssl,
            headers={"Accept": "application/json", "User-Agent": USER_AGENT},
            transport=transport,
        )

    @property
    def tenant(self) -> TenantConfig:
        return self._tenant

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> ObservationsClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"Network timeout after {self._tenant.timeout}s") from e
        except httpx.RequestError as e:
            raise TransportError(f"Network error: {e}") from e
        logger.debug("%s %s -> %d", method, url, response.status_code)
        return raise_for_status(response)

    async def health_check(self) -> bool:
        """Check that the tenant API is reachable.

        Any HTTP answer counts as reachable; only transport failures don't.
        """
        try:
            await self._client.get("/")
            return True
        except httpx.RequestError:
            return False

    async def list_stations(self) -> list[dict[str, Any]]:
        """Fetch the stations linked to the current user.

        Returns the raw station dictionaries; an empty (204) response yields
        an empty list.
        """
        response = await self._send("GET", self._tenant.stations_url)
        if response.status_code == 204 or not response.content:
            return []
        data = _json(response)
        if not isinstance(data, list):
            raise APIError("Bad response format: expected a list of stations", response.status_code)
        return data

    async def submit(self, url: str, request: ObservationPostRequest) -> ObservationPostResponse:
        """Submit one observation.

        Args:
            url: Absolute submission endpoint (or path relative to base URL).
            request: The wire payload.

        Returns:
            Server acknowledgement.

        Raises:
            AuthError: Rejected even after a token refresh.
            TransportError: Timeout, 5xx or 429.
            ClientError: Other 4xx.
        """
        response = await self._send(
            "POST",
            url,
            json=request.to_dict(),
            headers={"Content-Type": "application/json"},
        )
        return ObservationPostResponse.from_dict(_json(response))


class TokenEndpointClient:
    """Performs OAuth2 refresh-token grants against a tenant's token endpoint."""

    def __init__(
        self,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport

    async def refresh_token(self, tenant: TenantConfig, refresh_token: str) -> TokenResponse:
        """Exchange a refresh token for a new access token.

        Raises:
            AuthError: The grant was rejected (invalid or revoked refresh token).
            TransportError: The endpoint could not be reached.
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": tenant.client_id,
        }
        if tenant.scopes:
            data["scope"] = " ".join(tenant.scopes)

        async with httpx.AsyncClient(
            timeout=self._timeout,
            verify=tenant.verify_ssl,
            headers={"Accept": "application/json", "User-Agent": USER_AGENT},
            transport=self._transport,
        ) as client:
            try:
                response = await client.post(tenant.token_endpoint, data=data)
            except httpx.TimeoutException as e:
                raise TransportError(f"Token refresh timeout after {self._timeout}s") from e
            except httpx.RequestError as e:
                raise TransportError(f"Network error during token refresh: {e}") from e

        if response.status_code in (400, 401):
            raise AuthError(
                f"Token refresh rejected: {_detail(response, 'invalid_grant')}",
                response.status_code,
            )
        raise_for_status(response)
        return TokenResponse.from_dict(_json(response))
