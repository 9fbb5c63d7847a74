"""Schedule and reminder payload validation.

Raw schedule fields may come from the form layer or from legacy documents
(`localTime`, `daysOfWeek`, `localDate`, `tz`, ...). validate_schedule()
normalizes them into a ScheduleSpec or raises ScheduleValidationError with a
stable error code the UI can map to a message.
"""

from collections.abc import Mapping
from datetime import date, datetime
import re
from typing import Any, List, Optional

from config import settings
from errors import ScheduleValidationError
from schedule_resolver import (
    InstantLike,
    build_local_candidate,
    is_valid_timezone,
    parse_instant,
    resolve,
    utc_now,
)
from schemas import Frequency, ReminderType, ScheduleSpec, ValidatedReminder

TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")

FREQUENCY_ALIASES = {
    "one_time": Frequency.ONE_TIME,
    "onetime": Frequency.ONE_TIME,
    "once": Frequency.ONE_TIME,
    "daily": Frequency.DAILY,
    "weekly": Frequency.WEEKLY,
}

WEEKDAY_NAMES = {"mon": 1, "tue": 2, "wed": 3, "thu": 4, "fri": 5, "sat": 6, "sun": 7}

MIN_MESSAGE_LENGTH = 1
MIN_AI_PROMPT_LENGTH = 8
MAX_CONTENT_LENGTH = 2000


def _first(raw: Mapping, *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        return value
    return None


def normalize_frequency(value: Any) -> Frequency:
    if isinstance(value, Frequency):
        return value
    key = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
    frequency = FREQUENCY_ALIASES.get(key)
    if frequency is None:
        raise ScheduleValidationError(
            "FREQUENCY_INVALID", "Invalid reminder frequency selected.", "frequency"
        )
    return frequency


def normalize_weekdays(values: Any) -> Optional[List[int]]:
    """Canonical sorted, de-duplicated ISO weekdays, or None if any entry is invalid.

    Accepts integers 1-7, numeric strings and day names ("Mon", "monday").
    """
    if not isinstance(values, (list, tuple, set)):
        return None

    days = []
    for value in values:
        if isinstance(value, bool):
            return None
        if isinstance(value, int) and 1 <= value <= 7:
            days.append(value)
            continue
        if isinstance(value, str):
            text = value.strip()
            if re.fullmatch(r"[1-7]", text):
                days.append(int(text))
                continue
            day = WEEKDAY_NAMES.get(text[:3].lower())
            if day is not None and len(text) >= 3:
                days.append(day)
                continue
        return None
    return sorted(set(days))


def _parse_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise ScheduleValidationError(
            "DATE_INVALID", "Selected date or time is invalid.", "date"
        ) from None


def validate_schedule(
    raw: Mapping,
    frequency: Any = None,
    now: InstantLike = None,
    default_timezone: Optional[str] = None,
    max_weekdays: Optional[int] = None,
) -> ScheduleSpec:
    """Validate and normalize raw schedule fields.

    Checks, in order: timezone, time of day, frequency, the fields the
    frequency requires, and for one-time schedules that the instant lies
    strictly after `now`.

    Args:
        raw: Schedule mapping, possibly using legacy field names
        frequency: Frequency; read from raw["frequency"] when omitted
        now: Reference instant for the one-time future check
        default_timezone: Used only when raw carries no timezone at all
        max_weekdays: Weekly selection cap (defaults to settings)

    Returns:
        ScheduleSpec with only the fields `frequency` needs

    Raises:
        ScheduleValidationError: With a code such as TIMEZONE_INVALID,
            TIME_FORMAT_INVALID, WEEKDAYS_TOO_MANY or TIME_IN_PAST
    """
    if not isinstance(raw, Mapping):
        raise ScheduleValidationError("SCHEDULE_MISSING", "Missing schedule", "schedule")
    if max_weekdays is None:
        max_weekdays = settings.MAX_WEEKDAYS

    tz = _first(raw, "timezone", "tz") or default_timezone
    if not tz:
        raise ScheduleValidationError(
            "TIMEZONE_MISSING", "Timezone is missing or invalid.", "timezone"
        )
    if not is_valid_timezone(tz):
        raise ScheduleValidationError(
            "TIMEZONE_INVALID", f"Unknown timezone: {tz}", "timezone"
        )

    time_raw = _first(raw, "timeOfDay", "localTime", "time", "timeLocal")
    match = TIME_PATTERN.match(str(time_raw).strip()) if time_raw is not None else None
    if not match:
        raise ScheduleValidationError(
            "TIME_FORMAT_INVALID", "Time must be in HH:mm format.", "timeOfDay"
        )
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ScheduleValidationError(
            "TIME_OUT_OF_RANGE", "Invalid timeOfDay values.", "timeOfDay"
        )

    freq = normalize_frequency(frequency if frequency is not None else _first(raw, "frequency", "kind"))
    fields = {"frequency": freq, "timezone": tz, "time_of_day": f"{hour:02d}:{minute:02d}"}

    if freq == Frequency.ONE_TIME:
        date_raw = _first(raw, "date", "localDate")
        if date_raw is None:
            raise ScheduleValidationError("DATE_MISSING", "Please select a valid date.", "date")
        local_date = _parse_date(date_raw)

        candidate = build_local_candidate(local_date, hour, minute, tz)
        if candidate is None:
            raise ScheduleValidationError(
                "NEXT_RUN_FAILED",
                "Selected local time does not exist in this timezone.",
                "timeOfDay",
            )
        reference = utc_now() if now is None else parse_instant(now)
        if reference is None:
            raise ValueError(f"Unparseable reference instant: {now!r}")
        if candidate <= reference:
            raise ScheduleValidationError(
                "TIME_IN_PAST", "Selected time must be in the future.", "date"
            )
        fields["date"] = local_date

    if freq == Frequency.WEEKLY:
        raw_days = _first(raw, "weekDays", "daysOfWeek", "weekdays")
        if raw_days is None or (isinstance(raw_days, (list, tuple, set)) and not raw_days):
            raise ScheduleValidationError(
                "WEEKDAYS_MISSING", "Please select at least one weekday.", "weekDays"
            )
        week_days = normalize_weekdays(raw_days)
        if not week_days:
            raise ScheduleValidationError(
                "WEEKDAYS_INVALID", "weekDays values must be 1..7 or day names.", "weekDays"
            )
        if len(week_days) > max_weekdays:
            raise ScheduleValidationError(
                "WEEKDAYS_TOO_MANY",
                f"You can only select a maximum of {max_weekdays} days per week.",
                "weekDays",
            )
        fields["week_days"] = week_days

    return ScheduleSpec(**fields)


def _trimmed(value: Any, max_length: int) -> Optional[str]:
    if not isinstance(value, str):
        return None
    text = value.strip()[:max_length]
    return text or None


def _content_for(reminder_type: ReminderType, params: Mapping) -> dict:
    content = params.get("content") if isinstance(params.get("content"), Mapping) else {}
    legacy_prompt = params.get("prompt")

    if reminder_type == ReminderType.AI:
        prompt = (_trimmed(content.get("aiPrompt", params.get("aiPrompt", legacy_prompt)), MAX_CONTENT_LENGTH) or "")
        if len(prompt) < MIN_AI_PROMPT_LENGTH:
            raise ScheduleValidationError(
                "PROMPT_TOO_SHORT",
                f"Prompt must be at least {MIN_AI_PROMPT_LENGTH} characters.",
                "aiPrompt",
            )
        extras = {
            "tone": _trimmed(content.get("tone", params.get("tone")), 100),
            "platform": _trimmed(content.get("platform", params.get("platform")), 50),
            "role": _trimmed(content.get("role", params.get("role")), 100),
        }
        return {"aiPrompt": prompt, **{k: v for k, v in extras.items() if v}}

    message = (_trimmed(content.get("message", params.get("message", legacy_prompt)), MAX_CONTENT_LENGTH) or "")
    if len(message) < MIN_MESSAGE_LENGTH:
        raise ScheduleValidationError(
            "PROMPT_TOO_SHORT",
            f"Message must be at least {MIN_MESSAGE_LENGTH} characters.",
            "message",
        )
    extras = {
        "title": _trimmed(content.get("title", params.get("title")), 200),
        "notes": _trimmed(content.get("notes", params.get("notes")), MAX_CONTENT_LENGTH),
    }
    return {"message": message, **{k: v for k, v in extras.items() if v}}


def validate_reminder(params: Mapping, now: InstantLike = None) -> ValidatedReminder:
    """Validate content and schedule of a reminder payload, and compute its next run.

    Raises:
        ScheduleValidationError: On any content or schedule problem, or
            NEXT_RUN_FAILED when no next run can be computed
    """
    raw_type = str(params.get("reminderType") or params.get("reminder_type") or "simple")
    reminder_type = ReminderType.AI if raw_type.strip().lower() == "ai" else ReminderType.SIMPLE

    content = _content_for(reminder_type, params)

    raw_schedule = params.get("schedule")
    if raw_schedule is None:
        raw_schedule = params.get("scheduleWithTZ")
    schedule = validate_schedule(raw_schedule, frequency=params.get("frequency"), now=now)

    next_run = resolve(schedule, now)
    if next_run is None:
        raise ScheduleValidationError(
            "NEXT_RUN_FAILED",
            "Next run time could not be computed. Please check your schedule.",
            "nextRun",
        )

    return ValidatedReminder(
        reminder_type=reminder_type,
        content=content,
        schedule=schedule,
        next_run_at_utc=next_run,
    )

