"""SQLAlchemy models for the local adlsync store.

This module defines the durable queue, credential and station cache schema.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, TypeDecorator
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from adlsync.client.schedule import ScheduleMode, schedule_mode_from_dict
from adlsync.core.types import ScheduleModeTag, SyncStatus


class UTCDateTime(TypeDecorator[datetime]):
    """DateTime stored as naive UTC, returned as aware UTC.

    SQLite drops tzinfo, so values are normalized on the way in and
    re-tagged on the way out.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        return value.replace(tzinfo=UTC)


def _enum(enum_cls: type) -> SAEnum:
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=16,
        values_callable=lambda members: [m.value for m in members],
    )


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""


def observation_key(tenant_id: str, station_id: int, scheduled_at: datetime) -> str:
    """Build the globally unique record key ``tenant:station:epoch_millis``."""
    if scheduled_at.tzinfo is None:
        scheduled_at = scheduled_at.replace(tzinfo=UTC)
    millis = int(scheduled_at.timestamp() * 1000)
    return f"{tenant_id}:{station_id}:{millis}"


class Observation(Base):
    """One queued observation.

    ``late`` and ``locked`` are captured at validation time and never
    recomputed. ``payload_json`` is opaque to the store.
    """

    __tablename__ = "observations"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    station_id: Mapped[int] = mapped_column(Integer, nullable=False)
    station_name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    late: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    locked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    schedule_mode: Mapped[ScheduleModeTag] = mapped_column(
        _enum(ScheduleModeTag), nullable=False
    )
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[SyncStatus] = mapped_column(
        _enum(SyncStatus), default=SyncStatus.QUEUED, nullable=False
    )
    remote_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_observations_pending", "tenant_id", "status", "created_at"),
        Index("idx_observations_station", "tenant_id", "station_id", "scheduled_at"),
    )

    def __repr__(self) -> str:
        return f"<Observation {self.key} {self.status.value}>"


class Credential(Base):
    """OAuth2 tokens for one tenant."""

    __tablename__ = "credentials"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class Station(Base):
    """Cached station reference data for one tenant."""

    __tablename__ = "stations"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    station_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    schedule_mode: Mapped[str | None] = mapped_column(String(16), nullable=True)
    detail_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=lambda: datetime.now(UTC), nullable=False
    )

    @property
    def detail(self) -> dict[str, Any]:
        return json.loads(self.detail_json or "{}")

    def schedule(self) -> ScheduleMode | None:
        """Parse the cached schedule rules, None if the server sent none."""
        schedule = self.detail.get("schedule")
        if not schedule:
            return None
        return schedule_mode_from_dict(schedule)

    @classmethod
    def from_api(cls, tenant_id: str, data: dict[str, Any], now: datetime | None = None) -> Station:
        """Create from a station dictionary returned by the API."""
        schedule = data.get("schedule") or {}
        return cls(
            tenant_id=tenant_id,
            station_id=int(data["id"]),
            name=data.get("name") or f"Station {data['id']}",
            timezone=data.get("timezone") or "UTC",
            schedule_mode=schedule.get("mode"),
            detail_json=json.dumps(data),
            updated_at=now or datetime.now(UTC),
        )
