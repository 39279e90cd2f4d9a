"""
Lead SLA Platform
Business-Hours Clock.

Converts "N minutes of working time" into a wall-clock deadline for a
workspace's weekly schedule and IANA timezone.

Architecture:
  - All local weekday / time-of-day values are derived from the instant with
    ``zoneinfo`` so DST changes are handled by the tz database.
  - Local wall-clock → instant uses an offset guess-then-correct double pass
    instead of a fixed UTC offset.
  - A schedule with no usable day never loops forever: probing is limited to
    14 days ahead and the walk itself is capped; both degrade to +24h.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import current_app, has_app_context
from sqlalchemy import select

from app.models import db
from app.models.workspace import WorkspaceSettings

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Europe/Bucharest"
WEEKDAY_KEYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
_MAX_ITERATIONS = 10_000
_LOOKAHEAD_DAYS = 14


def as_utc(dt: datetime) -> datetime:
    """Normalise a datetime to UTC-aware regardless of whether SQLite stored it naive.

    SQLite's DateTime columns return naive datetimes; PostgreSQL returns tz-aware.
    Every comparison against ``datetime.now(timezone.utc)`` goes through here.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Configuration
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class DaySchedule:
    enabled: bool
    start: str
    end: str


def default_schedule() -> dict[str, DaySchedule]:
    """Mon–Fri 09:00–18:00, weekend closed."""
    schedule = {key: DaySchedule(True, "09:00", "18:00") for key in WEEKDAY_KEYS[:5]}
    schedule.update({key: DaySchedule(False, "09:00", "18:00") for key in WEEKDAY_KEYS[5:]})
    return schedule


@dataclass(frozen=True)
class BusinessHoursConfig:
    business_hours_enabled: bool = True
    timezone: str = DEFAULT_TIMEZONE
    schedule: dict[str, DaySchedule] = field(default_factory=default_schedule)

    def with_enabled(self, enabled: bool) -> "BusinessHoursConfig":
        return BusinessHoursConfig(enabled, self.timezone, self.schedule)

    def to_dict(self) -> dict:
        return {
            "businessHoursEnabled": self.business_hours_enabled,
            "timezone": self.timezone,
            "schedule": {
                key: {"enabled": day.enabled, "start": day.start, "end": day.end}
                for key, day in self.schedule.items()
            },
        }


def is_valid_time_string(value) -> bool:
    return isinstance(value, str) and bool(_TIME_RE.match(value))


@lru_cache(maxsize=128)
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def is_valid_timezone(value) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    try:
        _zone(value.strip())
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def _normalize_day(raw, fallback: DaySchedule) -> DaySchedule:
    if not isinstance(raw, dict):
        return fallback
    enabled = raw.get("enabled")
    start = raw.get("start")
    end = raw.get("end")
    return DaySchedule(
        enabled=enabled if isinstance(enabled, bool) else fallback.enabled,
        start=start if is_valid_time_string(start) else fallback.start,
        end=end if is_valid_time_string(end) else fallback.end,
    )


def normalize_business_hours_config(raw: dict | None) -> BusinessHoursConfig:
    """Parse a persisted business-hours blob, defaulting every bad field.

    Accepts both ``businessHoursEnabled`` and ``business_hours_enabled`` keys.
    An invalid or empty timezone becomes ``DEFAULT_TIMEZONE``.
    """
    raw = raw if isinstance(raw, dict) else {}

    tz = raw.get("timezone")
    tz = tz.strip() if is_valid_timezone(tz) else DEFAULT_TIMEZONE

    enabled = raw.get("businessHoursEnabled", raw.get("business_hours_enabled"))
    enabled = enabled if isinstance(enabled, bool) else True

    defaults = default_schedule()
    raw_schedule = raw.get("schedule") if isinstance(raw.get("schedule"), dict) else {}
    schedule = {key: _normalize_day(raw_schedule.get(key), defaults[key]) for key in WEEKDAY_KEYS}

    return BusinessHoursConfig(business_hours_enabled=enabled, timezone=tz, schedule=schedule)


def get_workspace_business_hours(workspace_id: int) -> BusinessHoursConfig:
    """Load the workspace clock configuration; defaults when settings are missing."""
    fallback_tz = DEFAULT_TIMEZONE
    if has_app_context():
        fallback_tz = current_app.config.get("DEFAULT_TIMEZONE") or DEFAULT_TIMEZONE

    stmt = select(WorkspaceSettings).where(WorkspaceSettings.workspace_id == workspace_id)
    settings = db.session.execute(stmt).scalar_one_or_none()
    if settings is None:
        return normalize_business_hours_config({"timezone": fallback_tz})
    return normalize_business_hours_config(
        {
            "timezone": settings.timezone if is_valid_timezone(settings.timezone) else fallback_tz,
            "businessHoursEnabled": settings.business_hours_enabled,
            "schedule": settings.schedule,
        }
    )


# ═════════════════════════════════════════════════════════════════════════════
# Timezone arithmetic
# ═════════════════════════════════════════════════════════════════════════════


def _window(day: DaySchedule | None) -> tuple[timedelta, timedelta] | None:
    """Return (start, end) offsets from local midnight, or None if unusable."""
    if day is None or not day.enabled:
        return None
    if not (is_valid_time_string(day.start) and is_valid_time_string(day.end)):
        return None
    sh, sm = (int(p) for p in day.start.split(":"))
    eh, em = (int(p) for p in day.end.split(":"))
    start = timedelta(hours=sh, minutes=sm)
    end = timedelta(hours=eh, minutes=em)
    if end <= start:
        return None
    return start, end


def local_to_utc(year: int, month: int, day: int, offset: timedelta, tz: ZoneInfo) -> datetime:
    """Instant at which the local wall clock in ``tz`` reads ``date + offset``.

    First pass guesses the UTC offset from the wall clock read as UTC; the
    second pass re-reads the offset at the candidate instant and corrects it
    when the two straddle a DST change.
    """
    wall = datetime(year, month, day, tzinfo=timezone.utc) + offset
    first = wall.astimezone(tz).utcoffset() or timedelta(0)
    candidate = wall - first
    second = candidate.astimezone(tz).utcoffset() or timedelta(0)
    if second != first:
        candidate = wall - second
    return candidate


def _next_available_day_start(
    cursor: datetime,
    tz: ZoneInfo,
    schedule: dict[str, DaySchedule],
    start_offset: int,
) -> datetime:
    base = cursor.astimezone(tz).date()
    for offset in range(start_offset, _LOOKAHEAD_DAYS + 1):
        day = base + timedelta(days=offset)
        window = _window(schedule.get(WEEKDAY_KEYS[day.weekday()]))
        if window is not None:
            return local_to_utc(day.year, day.month, day.day, window[0], tz)
    return cursor + timedelta(hours=24)


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════


def compute_due_at(start_at: datetime, target_minutes: int, config: BusinessHoursConfig) -> datetime:
    """Return the deadline after ``target_minutes`` of working time from ``start_at``.

    Disabled business hours → plain wall-clock addition. Minutes ≤ 0 →
    ``start_at`` unchanged.
    """
    minutes = max(0, int(target_minutes or 0))
    start = as_utc(start_at)
    if minutes <= 0:
        return start
    if not config.business_hours_enabled:
        return start + timedelta(minutes=minutes)

    tz_name = config.timezone if is_valid_timezone(config.timezone) else DEFAULT_TIMEZONE
    tz = _zone(tz_name)
    remaining = timedelta(minutes=minutes)
    cursor = start

    for _ in range(_MAX_ITERATIONS):
        local = cursor.astimezone(tz)
        window = _window(config.schedule.get(WEEKDAY_KEYS[local.weekday()]))
        if window is None:
            cursor = _next_available_day_start(cursor, tz, config.schedule, 1)
            continue

        window_start, window_end = window
        now = timedelta(
            hours=local.hour, minutes=local.minute, seconds=local.second, microseconds=local.microsecond,
        )
        if now < window_start:
            cursor = local_to_utc(local.year, local.month, local.day, window_start, tz)
            continue
        if now >= window_end:
            cursor = _next_available_day_start(cursor, tz, config.schedule, 1)
            continue

        consumed = min(remaining, window_end - now)
        cursor = cursor + consumed
        remaining -= consumed
        if remaining <= timedelta(0):
            return cursor
        cursor = _next_available_day_start(cursor, tz, config.schedule, 1)

    logger.warning(
        "compute_due_at iteration cap reached; degrading to +24h",
        extra={"timezone": tz_name, "target_minutes": minutes},
    )
    return cursor + timedelta(hours=24)
