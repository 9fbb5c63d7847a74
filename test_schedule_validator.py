"""Tests for schedule and reminder payload validation."""

from datetime import date, datetime, timezone

import pytest

from conftest import FIXED_NOW
from errors import ScheduleValidationError
from schedule_validator import normalize_frequency, normalize_weekdays, validate_reminder, validate_schedule
from schemas import Frequency, ReminderType


def error_code(raw, **kwargs):
    with pytest.raises(ScheduleValidationError) as exc_info:
        validate_schedule(raw, now=FIXED_NOW, **kwargs)
    return exc_info.value.code


@pytest.mark.parametrize("alias", ["one_time", "one-time", "onetime", "OneTime", "ONE_TIME", "once"])
def test_one_time_frequency_aliases(alias):
    assert normalize_frequency(alias) == Frequency.ONE_TIME


def test_unknown_frequency():
    assert error_code({"timezone": "UTC", "timeOfDay": "09:00"}, frequency="hourly") == "FREQUENCY_INVALID"


def test_weekly_accepts_one_to_four_days():
    for days in ([1], [1, 2], [1, 2, 3], [1, 2, 3, 4]):
        spec = validate_schedule(
            {"timezone": "UTC", "timeOfDay": "09:00", "weekDays": days}, frequency="weekly", now=FIXED_NOW
        )
        assert spec.week_days == days


def test_weekly_rejects_five_days():
    raw = {"timezone": "UTC", "timeOfDay": "09:00", "weekDays": [1, 2, 3, 4, 5]}
    assert error_code(raw, frequency="weekly") == "WEEKDAYS_TOO_MANY"


def test_weekly_missing_and_invalid_days():
    assert error_code({"timezone": "UTC", "timeOfDay": "09:00"}, frequency="weekly") == "WEEKDAYS_MISSING"
    assert error_code({"timezone": "UTC", "timeOfDay": "09:00", "weekDays": []}, frequency="weekly") == "WEEKDAYS_MISSING"
    assert error_code({"timezone": "UTC", "timeOfDay": "09:00", "weekDays": [0, 8]}, frequency="weekly") == "WEEKDAYS_INVALID"


def test_weekday_aliases_normalize_sorted_and_deduplicated():
    assert normalize_weekdays(["wed", "Monday", "3", 1]) == [1, 3]
    assert normalize_weekdays(["SUN", "sat"]) == [6, 7]
    assert normalize_weekdays(["mo"]) is None
    assert normalize_weekdays([True]) is None
    assert normalize_weekdays("1,2") is None


def test_legacy_field_names():
    spec = validate_schedule(
        {"kind": "weekly", "tz": "Europe/Paris", "localTime": "7:05", "daysOfWeek": ["fri"]}, now=FIXED_NOW
    )
    assert spec.frequency == Frequency.WEEKLY
    assert spec.timezone == "Europe/Paris"
    assert spec.time_of_day == "07:05"
    assert spec.week_days == [5]


def test_only_fields_required_by_frequency_are_kept():
    spec = validate_schedule(
        {"timezone": "UTC", "timeOfDay": "09:00", "date": "2025-02-01", "weekDays": [1]},
        frequency="daily",
        now=FIXED_NOW,
    )
    assert spec.date is None
    assert spec.week_days is None
    assert spec.to_document() == {"timezone": "UTC", "timeOfDay": "09:00"}


def test_timezone_errors():
    assert error_code({"timeOfDay": "09:00"}, frequency="daily") == "TIMEZONE_MISSING"
    assert error_code({"timezone": "Nowhere/Land", "timeOfDay": "09:00"}, frequency="daily") == "TIMEZONE_INVALID"


def test_default_timezone_only_applies_when_missing():
    spec = validate_schedule({"timeOfDay": "09:00"}, frequency="daily", default_timezone="Asia/Tokyo")
    assert spec.timezone == "Asia/Tokyo"


def test_timezone_checked_before_time():
    assert error_code({"timezone": "Nowhere/Land", "timeOfDay": "99"}, frequency="daily") == "TIMEZONE_INVALID"


def test_time_errors():
    assert error_code({"timezone": "UTC", "timeOfDay": "9am"}, frequency="daily") == "TIME_FORMAT_INVALID"
    assert error_code({"timezone": "UTC"}, frequency="daily") == "TIME_FORMAT_INVALID"
    assert error_code({"timezone": "UTC", "timeOfDay": "24:00"}, frequency="daily") == "TIME_OUT_OF_RANGE"
    assert error_code({"timezone": "UTC", "timeOfDay": "12:60"}, frequency="daily") == "TIME_OUT_OF_RANGE"


def test_one_time_date_checks():
    base = {"timezone": "UTC", "timeOfDay": "09:00"}
    assert error_code(base, frequency="one_time") == "DATE_MISSING"
    assert error_code({**base, "date": "2025-02-30"}, frequency="one_time") == "DATE_INVALID"
    assert error_code({**base, "date": "2025-01-14"}, frequency="one_time") == "TIME_IN_PAST"
    assert error_code({**base, "timeOfDay": "08:00", "date": "2025-01-15"}, frequency="one_time") == "TIME_IN_PAST"


def test_one_time_future_date():
    spec = validate_schedule(
        {"timezone": "UTC", "timeOfDay": "08:01", "localDate": "2025-01-15"}, frequency="one_time", now=FIXED_NOW
    )
    assert spec.date == date(2025, 1, 15)


def test_one_time_in_unbridgeable_dst_gap(monkeypatch):
    monkeypatch.setattr("schedule_resolver.settings.DST_PROBE_MAX_MINUTES", 10)
    raw = {"timezone": "America/New_York", "timeOfDay": "02:30", "date": "2025-03-09"}
    assert error_code(raw, frequency="one_time") == "NEXT_RUN_FAILED"


def test_missing_schedule():
    assert error_code(None, frequency="daily") == "SCHEDULE_MISSING"


def test_validate_reminder_ai():
    reminder = validate_reminder(
        {
            "reminderType": "ai",
            "aiPrompt": "  Write a post about our launch  ",
            "tone": "friendly",
            "frequency": "daily",
            "scheduleWithTZ": {"timezone": "UTC", "timeOfDay": "09:00"},
        },
        now=FIXED_NOW,
    )
    assert reminder.reminder_type == ReminderType.AI
    assert reminder.content == {"aiPrompt": "Write a post about our launch", "tone": "friendly"}
    assert reminder.next_run_at_utc == datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)


def test_validate_reminder_prompt_too_short():
    with pytest.raises(ScheduleValidationError) as exc_info:
        validate_reminder(
            {"reminderType": "ai", "aiPrompt": "short", "frequency": "daily",
             "schedule": {"timezone": "UTC", "timeOfDay": "09:00"}},
            now=FIXED_NOW,
        )
    assert exc_info.value.code == "PROMPT_TOO_SHORT"


def test_validate_reminder_simple_message_is_truncated():
    reminder = validate_reminder(
        {"reminderType": "simple", "content": {"message": "x" * 2500}, "frequency": "daily",
         "schedule": {"timezone": "UTC", "timeOfDay": "09:00"}},
        now=FIXED_NOW,
    )
    assert len(reminder.content["message"]) == 2000


def test_validated_reminder_document():
    reminder = validate_reminder(
        {"message": "Water the plants", "frequency": "weekly",
         "schedule": {"timezone": "UTC", "timeOfDay": "09:00", "weekDays": ["mon", "wed"]}},
        now=FIXED_NOW,
    )
    document = reminder.to_document("owner-1", "key-1")
    assert document.owner_id == "owner-1"
    assert document.frequency == Frequency.WEEKLY
    assert document.schedule == {"timezone": "UTC", "timeOfDay": "09:00", "weekDays": [1, 3]}
    assert document.meta == {"idempotencyKey": "key-1"}
    assert document.next_run_at_utc == datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)
