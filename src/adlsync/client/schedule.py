"""Schedule policy for observation capture times.

This module provides:
- FixedLocalConfig / WindowedOnlyConfig: schedule rules for a station
- ScheduleMode: tagged union of the two configs
- ValidationResult: outcome of validating a capture time
- validate: pure validation of "now + rules" into flags and a normalized time
- round_local, nearest_slot_local: time helpers used by validate
- local_to_utc, local_to_iso_z: boundary conversion for persistence

All comparisons happen on naive datetimes in the station's local civil
calendar. Absolute instants only appear at the boundary: ``now_utc`` in,
``local_to_utc`` out.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from adlsync.core.types import ScheduleModeTag

REASON_LOCKED_SLOT = "Editing locked for this slot."
REASON_LOCKED_WINDOW = "Editing locked for this window."
REASON_TOO_OLD = "Older than allowed backfill window."
REASON_TOO_FUTURE = "Too far in the future."
REASON_OUTSIDE_WINDOW = "Outside allowed submission window."


class ValidationError(ValueError):
    """A capture time was rejected by the schedule policy.

    Raised before anything is persisted; never retried automatically.
    """

    def __init__(self, reason: str, result: ValidationResult | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.result = result


@dataclass(frozen=True)
class FixedLocalConfig:
    """Fixed daily slots (e.g. 06:00 and 18:00 local time).

    All durations are minutes, except ``backfill_days``.
    """

    slots: tuple[time, ...]
    window_before: int
    window_after: int
    grace_late: int
    rounding_increment: int
    backfill_days: int
    allow_future: int
    lock_after: int

    @property
    def tag(self) -> ScheduleModeTag:
        return ScheduleModeTag.FIXED_LOCAL


@dataclass(frozen=True)
class WindowedOnlyConfig:
    """A single open window per local day."""

    window_start: time
    window_end: time
    grace_late: int
    rounding_increment: int
    backfill_days: int
    allow_future: int
    lock_after: int

    @property
    def tag(self) -> ScheduleModeTag:
        return ScheduleModeTag.WINDOWED_ONLY

    @property
    def crosses_midnight(self) -> bool:
        """True when the window starts on one day and ends on the next."""
        return self.window_start > self.window_end


ScheduleMode = FixedLocalConfig | WindowedOnlyConfig


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating a capture time.

    Attributes:
        ok: True if the observation may be submitted.
        late: Captured after the nominal window but within grace.
        locked: The normalized time is past its edit deadline.
        reason: First violated constraint, None when ok.
        normalized_local: Rounded capture time in station local time.
    """

    ok: bool
    late: bool
    locked: bool
    reason: str | None
    normalized_local: datetime

    def raise_for_reason(self) -> None:
        """Raise ValidationError if the capture time was rejected."""
        if not self.ok:
            raise ValidationError(self.reason or REASON_OUTSIDE_WINDOW, self)


def round_local(dt: datetime, increment: int) -> datetime:
    """Round a local datetime to the nearest ``increment`` minutes.

    Ties go to the next slot. Seconds and sub-seconds are always dropped.
    Rounding past 23:59 moves to the next calendar day.
    """
    truncated = dt.replace(second=0, microsecond=0)
    if increment <= 1:
        return truncated
    total = truncated.hour * 60 + truncated.minute
    rounded = ((total + increment // 2) // increment) * increment
    midnight = truncated.replace(hour=0, minute=0)
    return midnight + timedelta(minutes=rounded)


def nearest_slot_local(now_local: datetime, slots: tuple[time, ...]) -> datetime:
    """Pick the configured slot closest to ``now_local``.

    Candidates are taken from the previous, current and next local day so
    slots near midnight are found from either side.
    """
    if not slots:
        return now_local
    today = now_local.date()
    candidates = [
        datetime.combine(today + timedelta(days=offset), slot)
        for offset in (0, -1, 1)
        for slot in slots
    ]
    return min(candidates, key=lambda c: abs((c - now_local).total_seconds()))


def to_local(now_utc: datetime, station_tz: ZoneInfo) -> datetime:
    """Convert an absolute instant to naive station-local time."""
    if now_utc.tzinfo is None:
        now_utc = now_utc.replace(tzinfo=UTC)
    return now_utc.astimezone(station_tz).replace(tzinfo=None)


def local_to_utc(local: datetime, station_tz: ZoneInfo) -> datetime:
    """Convert a naive station-local datetime to an aware UTC datetime."""
    return local.replace(tzinfo=station_tz).astimezone(UTC)


def local_to_iso_z(local: datetime, station_tz: ZoneInfo) -> str:
    """Convert a naive station-local datetime to ISO-8601 with a Z suffix."""
    return format_iso_z(local_to_utc(local, station_tz))


def format_iso_z(instant: datetime) -> str:
    """Format an aware datetime as UTC ISO-8601 ending in ``Z``."""
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=UTC)
    return instant.astimezone(UTC).replace(tzinfo=None).isoformat() + "Z"


def _bounds(
    now_local: datetime, normalized: datetime, backfill_days: int, allow_future: int
) -> tuple[bool, bool]:
    within_backfill = normalized >= now_local - timedelta(days=backfill_days)
    within_future = normalized <= now_local + timedelta(minutes=allow_future)
    return within_backfill, within_future


def _first_reason(
    locked: bool,
    within_backfill: bool,
    within_future: bool,
    in_window: bool,
    locked_reason: str,
) -> str | None:
    if locked:
        return locked_reason
    if not within_backfill:
        return REASON_TOO_OLD
    if not within_future:
        return REASON_TOO_FUTURE
    if not in_window:
        return REASON_OUTSIDE_WINDOW
    return None


def _validate_fixed(
    cfg: FixedLocalConfig, now_local: datetime, requested: datetime | None
) -> ValidationResult:
    base = requested if requested is not None else nearest_slot_local(now_local, cfg.slots)
    slot = round_local(base, cfg.rounding_increment)

    open_at = slot - timedelta(minutes=cfg.window_before)
    close_at = slot + timedelta(minutes=cfg.window_after + cfg.grace_late)

    late = now_local > slot + timedelta(minutes=cfg.window_after)
    locked = now_local > slot + timedelta(minutes=cfg.lock_after)
    in_window = open_at <= now_local <= close_at
    within_backfill, within_future = _bounds(
        now_local, slot, cfg.backfill_days, cfg.allow_future
    )

    ok = in_window and within_backfill and within_future and not locked
    reason = _first_reason(
        locked, within_backfill, within_future, in_window, REASON_LOCKED_SLOT
    )
    return ValidationResult(ok, late, locked, reason, slot)


def _window_for(cfg: WindowedOnlyConfig, normalized: datetime) -> tuple[datetime, datetime]:
    """Return the (start, end) of the window instance containing ``normalized``'s day."""
    day = normalized.date()
    if not cfg.crosses_midnight:
        return datetime.combine(day, cfg.window_start), datetime.combine(day, cfg.window_end)
    # Wrapping window: the evening part belongs to the window ending tomorrow,
    # the early-morning part to the window that started yesterday.
    if normalized.time() >= cfg.window_start:
        return (
            datetime.combine(day, cfg.window_start),
            datetime.combine(day + timedelta(days=1), cfg.window_end),
        )
    return (
        datetime.combine(day - timedelta(days=1), cfg.window_start),
        datetime.combine(day, cfg.window_end),
    )


def _validate_windowed(
    cfg: WindowedOnlyConfig, now_local: datetime, requested: datetime | None
) -> ValidationResult:
    base = requested if requested is not None else now_local
    normalized = round_local(base, cfg.rounding_increment)

    win_start, win_end = _window_for(cfg, normalized)
    close_at = win_end + timedelta(minutes=cfg.grace_late)

    late = normalized > win_end
    locked = now_local > normalized + timedelta(minutes=cfg.lock_after)
    in_window = win_start <= normalized <= close_at
    within_backfill, within_future = _bounds(
        now_local, normalized, cfg.backfill_days, cfg.allow_future
    )

    ok = in_window and within_backfill and within_future and not locked
    reason = _first_reason(
        locked, within_backfill, within_future, in_window, REASON_LOCKED_WINDOW
    )
    return ValidationResult(ok, late, locked, reason, normalized)


def validate(
    mode: ScheduleMode,
    station_tz: ZoneInfo | str,
    now_utc: datetime,
    requested_local: datetime | None = None,
) -> ValidationResult:
    """Validate and normalize a capture time against schedule rules.

    Args:
        mode: FixedLocalConfig or WindowedOnlyConfig for the station.
        station_tz: Station time zone (ZoneInfo or IANA name).
        now_utc: Current instant (aware; naive values are taken as UTC).
        requested_local: Explicit capture time chosen by the observer, in
            naive station-local time. None picks a default.

    Returns:
        ValidationResult with flags, reason and the normalized local time.
    """
    if isinstance(station_tz, str):
        station_tz = ZoneInfo(station_tz)
    now_local = to_local(now_utc, station_tz)
    if requested_local is not None and requested_local.tzinfo is not None:
        requested_local = to_local(requested_local, station_tz)

    if isinstance(mode, FixedLocalConfig):
        return _validate_fixed(mode, now_local, requested_local)
    if isinstance(mode, WindowedOnlyConfig):
        return _validate_windowed(mode, now_local, requested_local)
    raise TypeError(f"Unknown schedule mode: {type(mode).__name__}")


def _parse_time(value: str) -> time:
    return time.fromisoformat(value)


def schedule_mode_from_dict(data: dict[str, Any]) -> ScheduleMode:
    """Build a schedule config from station-detail JSON.

    Expects ``{"mode": "fixed_local" | "windowed_only", "config": {...}}``
    with ``*_mins`` keys as served by the ADL API. Unknown modes fall back
    to windowed_only.
    """
    cfg = data["config"]
    common = {
        "grace_late": int(cfg["grace_late_mins"]),
        "rounding_increment": int(cfg["rounding_increment_mins"]),
        "backfill_days": int(cfg["backfill_days"]),
        "allow_future": int(cfg["allow_future_mins"]),
        "lock_after": int(cfg["lock_after_mins"]),
    }
    if data.get("mode") == ScheduleModeTag.FIXED_LOCAL.value:
        return FixedLocalConfig(
            slots=tuple(_parse_time(s) for s in cfg["slots"]),
            window_before=int(cfg["window_before_mins"]),
            window_after=int(cfg["window_after_mins"]),
            **common,
        )
    return WindowedOnlyConfig(
        window_start=_parse_time(cfg["window_start"]),
        window_end=_parse_time(cfg["window_end"]),
        **common,
    )
