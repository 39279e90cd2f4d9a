"""
Tests: Business-hours clock.

Covers compute_due_at (in-window, overnight carry, weekend skip, DST change,
disabled clock, zero minutes), monotonicity and window confinement, and
defensive config normalization.

Dates used: 2026-03-02 is a Monday; Europe/Bucharest is UTC+2 until the DST
change on 2026-03-29 and UTC+3 afterwards.
"""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from app.models import db as _db
from app.models.workspace import Workspace
from app.services.business_hours import (
    DEFAULT_TIMEZONE,
    BusinessHoursConfig,
    DaySchedule,
    compute_due_at,
    get_workspace_business_hours,
    is_valid_timezone,
    normalize_business_hours_config,
)
from conftest import make_workspace

BUCHAREST = BusinessHoursConfig(business_hours_enabled=True, timezone="Europe/Bucharest")


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


# ── compute_due_at ────────────────────────────────────────────────────────────


def test_inside_window_adds_plain_minutes():
    # Monday 10:00 local
    assert compute_due_at(_utc(2026, 3, 2, 8, 0), 30, BUCHAREST) == _utc(2026, 3, 2, 8, 30)


def test_before_opening_starts_at_window_start():
    # Monday 06:00 local → 09:15 local
    assert compute_due_at(_utc(2026, 3, 2, 4, 0), 15, BUCHAREST) == _utc(2026, 3, 2, 7, 15)


def test_carry_over_weekend_to_monday():
    # Friday 17:50 local: 10 minutes Friday, 20 minutes Monday from 09:00
    assert compute_due_at(_utc(2026, 3, 6, 15, 50), 30, BUCHAREST) == _utc(2026, 3, 9, 7, 20)


def test_start_on_saturday_waits_for_monday():
    assert compute_due_at(_utc(2026, 3, 7, 12, 0), 15, BUCHAREST) == _utc(2026, 3, 9, 7, 15)


def test_after_closing_moves_to_next_day():
    # Monday 19:00 local → Tuesday 09:00 + 15
    assert compute_due_at(_utc(2026, 3, 2, 17, 0), 15, BUCHAREST) == _utc(2026, 3, 3, 7, 15)


def test_dst_change_over_weekend():
    # Friday 2026-03-27 17:30 (UTC+2); Monday 2026-03-30 09:00 is UTC+3
    assert compute_due_at(_utc(2026, 3, 27, 15, 30), 60, BUCHAREST) == _utc(2026, 3, 30, 6, 30)


def test_disabled_business_hours_is_wall_clock():
    config = BUCHAREST.with_enabled(False)
    start = _utc(2026, 3, 7, 23, 0)
    assert compute_due_at(start, 90, config) == start + timedelta(minutes=90)


@pytest.mark.parametrize("minutes", [0, -5, None])
def test_non_positive_minutes_return_start(minutes):
    start = _utc(2026, 3, 7, 23, 0)
    assert compute_due_at(start, minutes, BUCHAREST) == start


def test_naive_start_is_read_as_utc():
    naive = datetime(2026, 3, 2, 8, 0)
    assert compute_due_at(naive, 30, BUCHAREST) == _utc(2026, 3, 2, 8, 30)


def test_deterministic_for_same_inputs():
    start = _utc(2026, 3, 6, 15, 50)
    assert compute_due_at(start, 240, BUCHAREST) == compute_due_at(start, 240, BUCHAREST)


def test_monotonic_in_minutes():
    start = _utc(2026, 3, 6, 14, 0)
    previous = start
    for minutes in range(0, 24 * 60, 37):
        due = compute_due_at(start, minutes, BUCHAREST)
        assert due >= previous
        previous = due


def test_due_at_lands_inside_working_window():
    tz = ZoneInfo("Europe/Bucharest")
    start = _utc(2026, 3, 5, 13, 7)
    for minutes in (1, 45, 300, 541, 900, 2000):
        local = compute_due_at(start, minutes, BUCHAREST).astimezone(tz)
        assert local.weekday() < 5
        wall = local.hour * 60 + local.minute
        assert 9 * 60 <= wall <= 18 * 60


def test_custom_schedule_with_inverted_window_is_skipped():
    schedule = dict(BUCHAREST.schedule)
    schedule["mon"] = DaySchedule(True, "18:00", "09:00")
    config = BusinessHoursConfig(True, "Europe/Bucharest", schedule)
    # Monday unusable → Tuesday 09:00 local
    assert compute_due_at(_utc(2026, 3, 2, 8, 0), 10, config) == _utc(2026, 3, 3, 7, 10)


def test_all_days_closed_terminates():
    schedule = {key: DaySchedule(False, "09:00", "18:00") for key in BUCHAREST.schedule}
    config = BusinessHoursConfig(True, "UTC", schedule)
    start = _utc(2026, 3, 2, 8, 0)
    assert compute_due_at(start, 10, config) > start


# ── Config normalization ──────────────────────────────────────────────────────


def test_normalize_defaults_every_bad_field():
    config = normalize_business_hours_config({
        "timezone": "Mars/Olympus",
        "businessHoursEnabled": "yes",
        "schedule": {"mon": {"enabled": "x", "start": "9am", "end": "25:00"}, "sat": "closed"},
    })
    assert config.timezone == DEFAULT_TIMEZONE
    assert config.business_hours_enabled is True
    assert config.schedule["mon"] == DaySchedule(True, "09:00", "18:00")
    assert config.schedule["sat"].enabled is False


def test_normalize_accepts_snake_case_flag():
    config = normalize_business_hours_config({"business_hours_enabled": False, "timezone": "UTC"})
    assert config.business_hours_enabled is False
    assert config.timezone == "UTC"


def test_normalize_none_gives_defaults():
    config = normalize_business_hours_config(None)
    assert config.to_dict()["schedule"]["fri"] == {"enabled": True, "start": "09:00", "end": "18:00"}
    assert config.to_dict()["schedule"]["sun"]["enabled"] is False


def test_is_valid_timezone():
    assert is_valid_timezone("Europe/Bucharest")
    assert not is_valid_timezone("")
    assert not is_valid_timezone("Nowhere/City")
    assert not is_valid_timezone(None)


# ── Workspace lookup ──────────────────────────────────────────────────────────


def test_workspace_settings_are_loaded():
    ws = make_workspace(timezone="America/New_York", business_hours_enabled=True,
                        schedule={"sat": {"enabled": True, "start": "10:00", "end": "14:00"}})
    config = get_workspace_business_hours(ws.id)
    assert config.timezone == "America/New_York"
    assert config.schedule["sat"] == DaySchedule(True, "10:00", "14:00")


def test_missing_settings_use_configured_default_timezone(app):
    ws = Workspace(name="No settings")
    _db.session.add(ws)
    _db.session.flush()
    config = get_workspace_business_hours(ws.id)
    assert config.timezone == app.config["DEFAULT_TIMEZONE"]
    assert config.business_hours_enabled is True


def test_invalid_stored_timezone_falls_back():
    ws = make_workspace(timezone="Not/AZone", business_hours_enabled=True)
    assert get_workspace_business_hours(ws.id).timezone == DEFAULT_TIMEZONE
