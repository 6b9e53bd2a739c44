"""Local database for queued observations, credentials and stations.

This module provides:
- Database: SQLAlchemy engine over SQLite (WAL mode)
- ObservationStore: durable queue with status state machine and streams
- CredentialStore: per-tenant OAuth2 tokens
- StationCache: per-tenant station reference data

Store methods are coroutines. SQL runs in a worker thread via
``asyncio.to_thread``; change notifications fire on the event loop after the
write has committed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterable, Sequence
from contextlib import aclosing
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

from sqlalchemy import create_engine, delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from adlsync.client.store.models import Base, Credential, Observation, Station
from adlsync.client.store.streams import ChangeHub
from adlsync.core.types import PENDING_STATUSES, SyncStatus

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RecordNotFoundError(LookupError):
    """No observation exists for the given key."""


class InvalidTransitionError(Exception):
    """A status change is not a legal edge of the sync state machine."""

    def __init__(self, key: str, current: SyncStatus, target: SyncStatus) -> None:
        super().__init__(f"{key}: cannot move from {current.value} to {target.value}")
        self.key = key
        self.current = current
        self.target = target


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Database:
    """SQLAlchemy database for the client.

    Uses SQLite with WAL mode so stream readers don't block the uploader.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the database.

        Args:
            db_path: Path to the SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # Sessions are opened from worker threads
        self._engine: Engine = create_engine(
            f"sqlite:///{self._db_path}",
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )

        with self._engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL")

        Base.metadata.create_all(self._engine)
        self._sessions = sessionmaker(self._engine, expire_on_commit=False)

    @property
    def path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Close the database connection."""
        self._engine.dispose()

    def session(self) -> Session:
        """Create a new database session."""
        return self._sessions()

    async def run(self, fn: Callable[[Session], T]) -> T:
        """Run ``fn`` with a fresh session in a worker thread."""

        def _call() -> T:
            with self.session() as session:
                return fn(session)

        return await asyncio.to_thread(_call)


class ObservationStore:
    """Durable, keyed queue of observations.

    Records are created once, mutated by the upload pass or a manual retry,
    and never deleted.
    """

    def __init__(self, db: Database, hub: ChangeHub | None = None) -> None:
        self._db = db
        self._hub = hub or ChangeHub()

    @property
    def hub(self) -> ChangeHub:
        return self._hub

    # === Writes ===

    async def upsert(self, record: Observation) -> Observation:
        """Insert or replace a record by key."""
        saved = await self.upsert_many([record])
        return saved[0]

    async def upsert_many(self, records: Sequence[Observation]) -> list[Observation]:
        """Insert or replace several records in one transaction."""

        def _upsert(session: Session) -> list[Observation]:
            merged = [session.merge(record) for record in records]
            session.commit()
            for record in merged:
                session.expunge(record)
            return merged

        saved = await self._db.run(_upsert)
        for record in saved:
            logger.debug("Upserted %s (%s)", record.key, record.status.value)
            self._hub.notify(record.tenant_id, record.station_id)
        return saved

    async def update_status(
        self,
        key: str,
        status: SyncStatus,
        error: str | None = None,
        updated_at: datetime | None = None,
    ) -> Observation:
        """Move a record to ``status``.

        Raises:
            RecordNotFoundError: No record with this key.
            InvalidTransitionError: ``status`` is not reachable from the
                record's current status.
        """
        when = updated_at or _utcnow()

        def _update(session: Session) -> Observation:
            record = self._load(session, key)
            if not record.status.can_transition_to(status):
                raise InvalidTransitionError(key, record.status, status)
            record.status = status
            record.last_error = error
            record.updated_at = when
            session.commit()
            session.expunge(record)
            return record

        record = await self._db.run(_update)
        logger.debug("%s -> %s", key, status.value)
        self._hub.notify(record.tenant_id, record.station_id)
        return record

    async def mark_synced(
        self, key: str, remote_id: int | None, updated_at: datetime | None = None
    ) -> Observation:
        """Record a successful upload and the server-assigned id."""
        when = updated_at or _utcnow()

        def _mark(session: Session) -> Observation:
            record = self._load(session, key)
            if not record.status.can_transition_to(SyncStatus.SYNCED):
                raise InvalidTransitionError(key, record.status, SyncStatus.SYNCED)
            record.status = SyncStatus.SYNCED
            record.remote_id = remote_id
            record.last_error = None
            record.updated_at = when
            session.commit()
            session.expunge(record)
            return record

        record = await self._db.run(_mark)
        logger.debug("%s -> SYNCED (remote id %s)", key, remote_id)
        self._hub.notify(record.tenant_id, record.station_id)
        return record

    async def reset_failed_to_queued(self, tenant_id: str, updated_at: datetime | None = None) -> int:
        """Move all FAILED records of a tenant back to QUEUED.

        Returns:
            Number of records reset.
        """
        when = updated_at or _utcnow()

        def _reset(session: Session) -> int:
            stmt = select(Observation).where(
                Observation.tenant_id == tenant_id,
                Observation.status == SyncStatus.FAILED,
            )
            records = session.execute(stmt).scalars().all()
            for record in records:
                record.status = SyncStatus.QUEUED
                record.last_error = None
                record.updated_at = when
            session.commit()
            return len(records)

        count = await self._db.run(_reset)
        if count:
            logger.info("Requeued %d failed observations for tenant %s", count, tenant_id)
            self._hub.notify(tenant_id)
        return count

    async def reset_stuck_uploading(
        self, tenant_id: str, older_than: datetime, updated_at: datetime | None = None
    ) -> int:
        """Move UPLOADING records last touched before ``older_than`` to QUEUED.

        This is the operator sweep for passes that were interrupted mid-record;
        the upload pass itself never calls it.

        Returns:
            Number of records reset.
        """
        when = updated_at or _utcnow()

        def _sweep(session: Session) -> int:
            stmt = select(Observation).where(
                Observation.tenant_id == tenant_id,
                Observation.status == SyncStatus.UPLOADING,
                Observation.updated_at < older_than,
            )
            records = session.execute(stmt).scalars().all()
            for record in records:
                record.status = SyncStatus.QUEUED
                record.last_error = "Upload interrupted; requeued"
                record.updated_at = when
            session.commit()
            return len(records)

        count = await self._db.run(_sweep)
        if count:
            logger.warning("Requeued %d stuck uploads for tenant %s", count, tenant_id)
            self._hub.notify(tenant_id)
        return count

    # === Reads ===

    @staticmethod
    def _load(session: Session, key: str) -> Observation:
        record = session.get(Observation, key)
        if record is None:
            raise RecordNotFoundError(key)
        return record

    async def get(self, key: str) -> Observation | None:
        """Get a record by key, None if absent."""

        def _get(session: Session) -> Observation | None:
            record = session.get(Observation, key)
            if record is not None:
                session.expunge(record)
            return record

        return await self._db.run(_get)

    async def query_pending(
        self,
        tenant_id: str,
        limit: int,
        statuses: Iterable[SyncStatus] = PENDING_STATUSES,
    ) -> list[Observation]:
        """Oldest-first records of a tenant in one of ``statuses``."""
        wanted = list(statuses)

        def _query(session: Session) -> list[Observation]:
            stmt = (
                select(Observation)
                .where(Observation.tenant_id == tenant_id, Observation.status.in_(wanted))
                .order_by(Observation.created_at.asc(), Observation.key.asc())
                .limit(limit)
            )
            records = list(session.execute(stmt).scalars().all())
            session.expunge_all()
            return records

        return await self._db.run(_query)

    async def list_observations(
        self, tenant_id: str, station_id: int | None = None
    ) -> list[Observation]:
        """All records of a tenant (or one station), newest scheduled first."""

        def _list(session: Session) -> list[Observation]:
            stmt = select(Observation).where(Observation.tenant_id == tenant_id)
            if station_id is not None:
                stmt = stmt.where(Observation.station_id == station_id)
            stmt = stmt.order_by(Observation.scheduled_at.desc(), Observation.key.asc())
            records = list(session.execute(stmt).scalars().all())
            session.expunge_all()
            return records

        return await self._db.run(_list)

    async def count_by_status(self, tenant_id: str) -> dict[SyncStatus, int]:
        """Number of records per status; every status is present."""

        def _count(session: Session) -> dict[SyncStatus, int]:
            stmt = (
                select(Observation.status, func.count())
                .where(Observation.tenant_id == tenant_id)
                .group_by(Observation.status)
            )
            counts = {status: 0 for status in SyncStatus}
            for status, count in session.execute(stmt).all():
                counts[status] = count
            return counts

        return await self._db.run(_count)

    async def pending_tenants(self) -> list[str]:
        """Tenants that have at least one QUEUED or FAILED record."""

        def _tenants(session: Session) -> list[str]:
            stmt = (
                select(Observation.tenant_id)
                .where(Observation.status.in_(PENDING_STATUSES))
                .distinct()
                .order_by(Observation.tenant_id)
            )
            return list(session.execute(stmt).scalars().all())

        return await self._db.run(_tenants)

    # === Streams ===

    async def stream_all(self, tenant_id: str) -> AsyncIterator[list[Observation]]:
        """Snapshots of a tenant's records, re-emitted after each change."""
        async with aclosing(self._hub.watch(tenant_id)) as changes:
            async for _ in changes:
                yield await self.list_observations(tenant_id)

    async def stream_by_station(
        self, tenant_id: str, station_id: int
    ) -> AsyncIterator[list[Observation]]:
        """Snapshots of one station's records, re-emitted after each change."""
        async with aclosing(self._hub.watch(tenant_id, station_id)) as changes:
            async for _ in changes:
                yield await self.list_observations(tenant_id, station_id)


class CredentialStore:
    """Per-tenant OAuth2 tokens."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def _get(self, tenant_id: str) -> Credential | None:
        def _load(session: Session) -> Credential | None:
            credential = session.get(Credential, tenant_id)
            if credential is not None:
                session.expunge(credential)
            return credential

        return await self._db.run(_load)

    async def get_access(self, tenant_id: str) -> str | None:
        credential = await self._get(tenant_id)
        return credential.access_token if credential else None

    async def get_refresh(self, tenant_id: str) -> str | None:
        credential = await self._get(tenant_id)
        return credential.refresh_token if credential else None

    async def get_expiry(self, tenant_id: str) -> datetime | None:
        credential = await self._get(tenant_id)
        return credential.expires_at if credential else None

    async def save_tokens(
        self,
        tenant_id: str,
        access: str | None,
        refresh: str | None,
        expires_at: datetime | None,
    ) -> None:
        """Replace the stored tokens for a tenant."""

        def _save(session: Session) -> None:
            session.merge(
                Credential(
                    tenant_id=tenant_id,
                    access_token=access,
                    refresh_token=refresh,
                    expires_at=expires_at,
                )
            )
            session.commit()

        await self._db.run(_save)

    async def clear_tokens(self, tenant_id: str) -> None:
        def _clear(session: Session) -> None:
            session.execute(delete(Credential).where(Credential.tenant_id == tenant_id))
            session.commit()

        await self._db.run(_clear)


class StationCache:
    """Per-tenant station reference data."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def replace_for_tenant(self, tenant_id: str, stations: Sequence[Station]) -> int:
        """Replace a tenant's stations in a single transaction.

        Readers see either the old or the new set, never an empty table
        in between. An empty ``stations`` clears the tenant.
        """

        def _replace(session: Session) -> int:
            with session.begin():
                session.execute(delete(Station).where(Station.tenant_id == tenant_id))
                session.add_all(stations)
            return len(stations)

        count = await self._db.run(_replace)
        logger.info("Cached %d stations for tenant %s", count, tenant_id)
        return count

    async def list_for_tenant(self, tenant_id: str) -> list[Station]:
        def _list(session: Session) -> list[Station]:
            stmt = select(Station).where(Station.tenant_id == tenant_id).order_by(Station.name)
            stations = list(session.execute(stmt).scalars().all())
            session.expunge_all()
            return stations

        return await self._db.run(_list)

    async def get(self, tenant_id: str, station_id: int) -> Station | None:
        def _get(session: Session) -> Station | None:
            station = session.get(Station, (tenant_id, station_id))
            if station is not None:
                session.expunge(station)
            return station

        return await self._db.run(_get)
