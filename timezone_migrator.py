"""Re-express a reminder's next run after the user's timezone changes.

The wall-clock time the user picked is what must survive the move, not the
absolute instant: a 09:00 New York reminder becomes a 09:00 London reminder.
"""

from datetime import datetime
from typing import NamedTuple, Optional
from zoneinfo import ZoneInfo

from config import settings
from logger_config import setup_logger
from schedule_resolver import InstantLike, is_valid_timezone, parse_instant, resolve
from schemas import Frequency, ScheduleSpec

logger = setup_logger(__name__, 'migrator.log')


class MigrationResult(NamedTuple):
    schedule: ScheduleSpec
    next_run_at_utc: Optional[datetime]


def migrate_schedule(
    schedule: ScheduleSpec,
    current_next_run_utc: InstantLike,
    from_timezone: Optional[str],
    to_timezone: str,
    now: InstantLike = None,
) -> Optional[MigrationResult]:
    """Rewrite `schedule` for `to_timezone` and resolve its next run.

    The local date/time/weekday is recovered from the stored next run as seen
    in `from_timezone` (or the schedule's own timezone). Without a usable
    stored next run, the existing schedule is simply re-zoned.

    Returns:
        MigrationResult whose next_run_at_utc is None when no future run
        could be resolved, or None if `to_timezone` is invalid
    """
    if not is_valid_timezone(to_timezone):
        logger.warning(f"Migration skipped: invalid target timezone {to_timezone!r}")
        return None

    if is_valid_timezone(from_timezone):
        origin = from_timezone
    elif is_valid_timezone(schedule.timezone):
        origin = schedule.timezone
    else:
        origin = None

    stored = parse_instant(current_next_run_utc)
    if origin is None or stored is None:
        rezoned = schedule.model_copy(update={"timezone": to_timezone})
        return MigrationResult(rezoned, resolve(rezoned, now))

    local = stored.astimezone(ZoneInfo(origin))
    update = {"timezone": to_timezone, "time_of_day": f"{local.hour:02d}:{local.minute:02d}"}
    if schedule.frequency == Frequency.ONE_TIME:
        update["date"] = local.date()
    elif schedule.frequency == Frequency.WEEKLY and not schedule.week_days:
        update["week_days"] = [local.isoweekday()]
    migrated = schedule.model_copy(update=update)

    next_run = resolve(migrated, now)
    if next_run is None and schedule.frequency == Frequency.ONE_TIME:
        # a DST gap in the target zone may need a wider probe than the default
        next_run = resolve(migrated, now, max_shift_minutes=settings.MIGRATION_DST_PROBE_MAX_MINUTES)

    return MigrationResult(migrated, next_run)


def migrate(
    schedule: ScheduleSpec,
    current_next_run_utc: InstantLike,
    from_timezone: Optional[str],
    to_timezone: str,
    now: InstantLike = None,
) -> Optional[datetime]:
    """New next-run instant under `to_timezone`, or None.

    None means "leave the stored schedule untouched": callers must never
    overwrite a working next run with it.
    """
    result = migrate_schedule(schedule, current_next_run_utc, from_timezone, to_timezone, now)
    if result is None or result.next_run_at_utc is None:
        logger.info(
            f"No migrated next run for {schedule.frequency.value} schedule "
            f"{from_timezone} -> {to_timezone}"
        )
        return None
    return result.next_run_at_utc
