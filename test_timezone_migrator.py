"""Tests for timezone migration of schedules."""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from conftest import FIXED_NOW
from schemas import Frequency, ScheduleSpec
from timezone_migrator import migrate, migrate_schedule


def spec(frequency, tz, time_of_day="09:00", **fields):
    return ScheduleSpec(frequency=frequency, timezone=tz, time_of_day=time_of_day, **fields)


def test_new_york_to_london_keeps_wall_clock_time():
    schedule = spec(Frequency.DAILY, "America/New_York")
    stored = datetime(2025, 1, 15, 14, 0, tzinfo=timezone.utc)  # 09:00 EST

    result = migrate(schedule, stored, "America/New_York", "Europe/London", now=FIXED_NOW)

    assert result != stored
    local = result.astimezone(ZoneInfo("Europe/London"))
    assert (local.hour, local.minute) == (9, 0)


def test_same_zone_migration_is_a_no_op():
    stored = datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)
    assert migrate(spec(Frequency.DAILY, "UTC"), stored, "UTC", "UTC", now=FIXED_NOW) == stored

    weekly = spec(Frequency.WEEKLY, "America/New_York", week_days=[1, 3])
    stored = datetime(2025, 1, 15, 14, 0, tzinfo=timezone.utc)  # Wednesday 09:00 EST
    assert migrate(weekly, stored, "America/New_York", "America/New_York", now=FIXED_NOW) == stored


def test_migrated_schedule_is_rewritten():
    schedule = spec(Frequency.ONE_TIME, "America/New_York", date=date(2025, 2, 1))
    stored = datetime(2025, 2, 1, 14, 0, tzinfo=timezone.utc)

    result = migrate_schedule(schedule, stored, None, "Europe/London", now=FIXED_NOW)

    assert result.schedule.timezone == "Europe/London"
    assert result.schedule.time_of_day == "09:00"
    assert result.schedule.date == date(2025, 2, 1)
    assert result.next_run_at_utc == datetime(2025, 2, 1, 9, 0, tzinfo=timezone.utc)


def test_weekly_without_days_falls_back_to_recovered_weekday():
    schedule = spec(Frequency.WEEKLY, "UTC", week_days=[])
    stored = datetime(2025, 1, 17, 9, 0, tzinfo=timezone.utc)  # Friday

    result = migrate_schedule(schedule, stored, "UTC", "Asia/Tokyo", now=FIXED_NOW)

    assert result.schedule.week_days == [5]
    assert result.schedule.time_of_day == "09:00"


def test_invalid_target_timezone():
    schedule = spec(Frequency.DAILY, "UTC")
    assert migrate_schedule(schedule, FIXED_NOW, "UTC", "Not/AZone") is None
    assert migrate(schedule, FIXED_NOW, "UTC", "Not/AZone") is None


def test_without_stored_next_run_schedule_is_rezoned():
    schedule = spec(Frequency.DAILY, "America/New_York")
    result = migrate(schedule, None, "America/New_York", "Europe/London", now=FIXED_NOW)
    assert result == datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)


def test_invalid_origin_falls_back_to_schedule_timezone():
    schedule = spec(Frequency.DAILY, "America/New_York")
    stored = datetime(2025, 1, 15, 14, 0, tzinfo=timezone.utc)
    result = migrate(schedule, stored, "bogus", "Europe/London", now=FIXED_NOW)
    assert result == datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)


def test_past_one_time_cannot_be_migrated():
    schedule = spec(Frequency.ONE_TIME, "UTC", date=date(2025, 1, 1))
    stored = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)
    assert migrate(schedule, stored, "UTC", "Europe/London", now=FIXED_NOW) is None


def test_one_time_dst_gap_uses_wider_probe(monkeypatch):
    monkeypatch.setattr("schedule_resolver.settings.DST_PROBE_MAX_MINUTES", 10)
    schedule = spec(Frequency.ONE_TIME, "UTC", time_of_day="02:30", date=date(2025, 3, 9))
    stored = datetime(2025, 3, 9, 2, 30, tzinfo=timezone.utc)

    result = migrate(schedule, stored, "UTC", "America/New_York", now=FIXED_NOW)

    # 02:30 does not exist in New York that day; first valid minute is 03:00 EDT
    assert result == datetime(2025, 3, 9, 7, 0, tzinfo=timezone.utc)
