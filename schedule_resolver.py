"""Next-run resolution for reminder schedules.

Pure functions: a ScheduleSpec and a reference instant go in, the next
absolute UTC instant (or None when nothing satisfies the schedule) comes out.
All instants are timezone-aware UTC with sub-second precision dropped so
stored values compare stably.

Local times that fall inside a daylight-saving gap are probed forward one
minute at a time up to a bounded ceiling. Ambiguous local times (clocks
going back) resolve to their first occurrence.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config import settings
from errors import UnsatisfiableSchedule
from logger_config import setup_logger
from schemas import Frequency, ScheduleSpec

logger = setup_logger(__name__, 'scheduler.log')

InstantLike = Union[datetime, str, int, float, None]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_timezone(name) -> bool:
    """True if `name` is an IANA zone the tz database can load."""
    if not isinstance(name, str) or not name.strip():
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return False
    return True


def parse_instant(value: InstantLike) -> Optional[datetime]:
    """Parse a datetime, ISO 8601 string or epoch number into an aware UTC datetime.

    Numbers above 1e12 are read as epoch milliseconds, above 1e9 as epoch
    seconds, anything smaller as milliseconds. Naive datetimes and ISO
    strings without an offset are taken to be UTC. Returns None when the
    value cannot be parsed.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        if value > 1e12:
            seconds = value / 1000.0
        elif value > 1e9:
            seconds = float(value)
        else:
            seconds = value / 1000.0
        try:
            parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_utc_instant(value: datetime) -> datetime:
    """Convert to UTC and drop sub-second precision."""
    return value.astimezone(timezone.utc).replace(microsecond=0)


def to_utc_iso(value: Optional[datetime]) -> Optional[str]:
    """Stable storage form, e.g. 2025-03-10T09:00:00Z"""
    if value is None:
        return None
    return to_utc_instant(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def _exists_locally(local: datetime, zone: ZoneInfo) -> bool:
    # A wall-clock time inside a spring-forward gap does not survive a
    # round trip through UTC.
    aware = local.replace(tzinfo=zone)
    round_trip = aware.astimezone(timezone.utc).astimezone(zone)
    return round_trip.replace(tzinfo=None) == local


def build_local_candidate(
    local_date: date,
    hour: int,
    minute: int,
    tz_name: str,
    max_shift_minutes: Optional[int] = None,
) -> Optional[datetime]:
    """Aware datetime for `local_date hour:minute` in `tz_name`.

    If that wall-clock time does not exist (DST gap), shift forward minute by
    minute up to `max_shift_minutes`. Returns None when no valid local time
    is found within the ceiling.
    """
    if max_shift_minutes is None:
        max_shift_minutes = settings.DST_PROBE_MAX_MINUTES

    zone = ZoneInfo(tz_name)
    requested = datetime.combine(local_date, time(hour, minute))

    for shift in range(max_shift_minutes + 1):
        candidate = requested + timedelta(minutes=shift)
        if _exists_locally(candidate, zone):
            if shift:
                logger.warning(
                    f"Local time {requested.isoformat()} does not exist in {tz_name} (DST gap), "
                    f"shifted forward {shift} minute(s)"
                )
            return candidate.replace(tzinfo=zone)

    logger.warning(
        f"No valid local time within {max_shift_minutes} minutes of "
        f"{requested.isoformat()} in {tz_name}"
    )
    return None


def resolve(
    schedule: ScheduleSpec,
    reference: InstantLike = None,
    max_shift_minutes: Optional[int] = None,
) -> Optional[datetime]:
    """Next UTC instant satisfying `schedule` strictly after `reference`.

    Args:
        schedule: Validated schedule
        reference: Reference instant (defaults to now)
        max_shift_minutes: DST gap probe ceiling (defaults to settings)

    Returns:
        Aware UTC datetime without sub-seconds, or None if unsatisfiable
        (one-time date already passed, or DST probe exhausted)

    Raises:
        ValueError: On a malformed reference or a schedule missing the
            fields its frequency requires
    """
    ref = utc_now() if reference is None else parse_instant(reference)
    if ref is None:
        raise ValueError(f"Unparseable reference instant: {reference!r}")

    zone = ZoneInfo(schedule.timezone)
    local_ref = ref.astimezone(zone)
    hour, minute = schedule.hour, schedule.minute

    def candidate_on(day: date) -> Optional[datetime]:
        return build_local_candidate(day, hour, minute, schedule.timezone, max_shift_minutes)

    if schedule.frequency == Frequency.ONE_TIME:
        if schedule.date is None:
            raise ValueError("one_time schedule requires a date")
        candidate = candidate_on(schedule.date)
        if candidate is None or candidate <= ref:
            return None
        return to_utc_instant(candidate)

    if schedule.frequency == Frequency.DAILY:
        today = local_ref.date()
        candidate = candidate_on(today)
        if candidate is None or candidate <= ref:
            candidate = candidate_on(today + timedelta(days=1))
        return to_utc_instant(candidate) if candidate else None

    if schedule.frequency == Frequency.WEEKLY:
        week_days = sorted(set(schedule.week_days or [local_ref.isoweekday()]))
        best = None
        for target in week_days:
            delta = (target - local_ref.isoweekday()) % 7
            target_date = local_ref.date() + timedelta(days=delta)
            candidate = candidate_on(target_date)
            if delta == 0 and (candidate is None or candidate <= ref):
                candidate = candidate_on(target_date + timedelta(days=7))
            if candidate is None:
                continue
            if best is None or candidate < best:
                best = candidate
        return to_utc_instant(best) if best else None

    raise ValueError(f"Unsupported frequency: {schedule.frequency}")


def resolve_or_raise(schedule: ScheduleSpec, reference: InstantLike = None) -> datetime:
    """Like resolve(), but raise UnsatisfiableSchedule instead of returning None."""
    result = resolve(schedule, reference)
    if result is None:
        raise UnsatisfiableSchedule(
            f"No future run for {schedule.frequency.value} schedule at "
            f"{schedule.time_of_day} {schedule.timezone}"
        )
    return result


def next_runs(
    schedule: ScheduleSpec,
    count: int = 3,
    reference: InstantLike = None,
    max_attempts: int = 50,
) -> List[datetime]:
    """Up to `count` successive occurrences, for previews."""
    results: List[datetime] = []
    cursor = reference
    attempts = 0
    while len(results) < count and attempts < max_attempts:
        attempts += 1
        upcoming = resolve(schedule, cursor)
        if upcoming is None:
            break
        results.append(upcoming)
        # one second past this run so the next call moves on
        cursor = upcoming + timedelta(seconds=1)
    return results


def format_next_run(instant: Optional[datetime], tz_name: str = "UTC") -> str:
    """Human form such as 'Monday, Oct 27, 9:00 PM' in `tz_name`."""
    if instant is None:
        return "Waiting for a valid schedule..."
    if not is_valid_timezone(tz_name):
        tz_name = "UTC"
    local = instant.astimezone(ZoneInfo(tz_name))
    hour = local.strftime("%I").lstrip("0") or "12"
    return f"{local.strftime('%A, %b %d')}, {hour}:{local.strftime('%M %p')}"
