"""Recompute every reminder of a user after a timezone change.

Reminders are migrated in fixed-size batches committed one after another,
each batch all-or-nothing. A failing batch triggers a best-effort rollback
of the batches this run already committed, newest first, from a log of
each reminder's original schedule and next run.
"""

from datetime import datetime
from typing import Callable, List, Optional, Tuple
import uuid

from pydantic import ValidationError
from sqlalchemy.orm import sessionmaker

import crud
from config import settings
from database import Reminder
from errors import PartialBatchFailure
from logger_config import setup_logger
from schedule_resolver import is_valid_timezone, utc_now
from schemas import RecomputeResult, RollbackEntry, ScheduleSpec
from timezone_migrator import migrate_schedule

logger = setup_logger(__name__, 'recompute.log')

ProgressCallback = Callable[[int, int], None]
PlannedUpdate = Tuple[str, dict, Optional[datetime]]


class BatchRecomputer:
    """Applies timezone migration to all of an owner's reminders.

    Args:
        session_factory: SQLAlchemy session factory
        batch_size: Reminders per committed batch
        max_client_count: Above this many reminders nothing is touched and
            the result is `queued`; None disables the ceiling (server side)
        fetch_limit: Page size for reading the owner's reminders
        clock: Returns the current aware UTC datetime
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        batch_size: Optional[int] = None,
        max_client_count: Optional[int] = settings.MAX_CLIENT_RECOMPUTE_COUNT,
        fetch_limit: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self.batch_size = max(1, batch_size or settings.RECOMPUTE_BATCH_SIZE)
        self.max_client_count = max_client_count
        self.fetch_limit = fetch_limit or settings.RECOMPUTE_FETCH_LIMIT
        self._clock = clock

    def _load_reminders(self, owner_id: str) -> List[Reminder]:
        """Read the owner's reminders page by page.

        Stops early once the client ceiling is exceeded, since such a run
        is deferred anyway.
        """
        reminders = []
        with self._session_factory() as db:
            while True:
                page = crud.get_reminders_for_recompute(db, owner_id, self.fetch_limit, len(reminders))
                reminders.extend(page)
                if len(page) < self.fetch_limit:
                    break
                if self.max_client_count is not None and len(reminders) > self.max_client_count:
                    break
        return reminders

    def _plan(
        self, reminders, target_timezone: str, from_timezone: Optional[str], now: datetime
    ) -> List[Tuple[PlannedUpdate, RollbackEntry]]:
        planned = []
        for reminder in reminders:
            original = dict(reminder.schedule or {})
            entry = RollbackEntry(
                reminder_id=reminder.id,
                schedule=original,
                next_run_at_utc=reminder.next_run_at_utc,
            )
            rezoned = {**original, "timezone": target_timezone}

            try:
                spec = ScheduleSpec.from_document(reminder.frequency, original)
            except ValidationError:
                logger.warning(f"Reminder {reminder.id} has a malformed schedule, updating timezone only")
                planned.append(((reminder.id, rezoned, None), entry))
                continue

            result = migrate_schedule(spec, reminder.next_run_at_utc, from_timezone, target_timezone, now)
            if result is None or result.next_run_at_utc is None:
                logger.warning(f"Migration failed for reminder {reminder.id}, keeping its next run")
                planned.append(((reminder.id, rezoned, None), entry))
            else:
                planned.append(((reminder.id, result.schedule.to_document(), result.next_run_at_utc), entry))
        return planned

    def _commit_batch(self, updates: List[PlannedUpdate]) -> None:
        with self._session_factory() as db:
            with db.begin():
                crud.apply_schedule_updates(db, updates, self._clock())

    def _restore(self, entry: RollbackEntry) -> None:
        with self._session_factory() as db:
            crud.restore_reminder_schedule(db, entry.reminder_id, entry.schedule, entry.next_run_at_utc)

    def _rollback(self, rollback_log: List[RollbackEntry]) -> List[str]:
        errors = []
        for entry in reversed(rollback_log):
            try:
                self._restore(entry)
            except Exception as e:
                logger.error(f"Rollback failed for reminder {entry.reminder_id}: {str(e)}")
                errors.append(f"{entry.reminder_id}: {e}")
        logger.info(f"Rolled back {len(rollback_log) - len(errors)}/{len(rollback_log)} reminder(s)")
        return errors

    def recompute(
        self,
        owner_id: str,
        target_timezone: str,
        from_timezone: Optional[str] = None,
        progress_cb: Optional[ProgressCallback] = None,
    ) -> RecomputeResult:
        """Migrate all of `owner_id`'s reminders to `target_timezone`.

        Args:
            owner_id: Owner whose reminders are migrated
            target_timezone: New IANA timezone
            from_timezone: Timezone the stored next runs were computed in
                (defaults to each schedule's own timezone)
            progress_cb: Called with (processed, total) after each committed batch

        Returns:
            RecomputeResult with status ok, queued (over the client ceiling,
            nothing mutated) or error (invalid input, an unreadable store or
            a failed batch, earlier batches rolled back)
        """
        run_id = uuid.uuid4().hex
        if not owner_id:
            return RecomputeResult(status="error", error="missing owner", run_id=run_id)
        if not is_valid_timezone(target_timezone):
            logger.warning(f"Recompute rejected: invalid timezone {target_timezone!r}")
            return RecomputeResult(status="error", error=f"invalid timezone: {target_timezone}", run_id=run_id)

        try:
            reminders = self._load_reminders(owner_id)
        except Exception as e:
            logger.error(f"Recompute run {run_id} could not read reminders of {owner_id}: {str(e)}")
            return RecomputeResult(status="error", error=f"read failed: {e}", run_id=run_id)
        total = len(reminders)

        if self.max_client_count is not None and total > self.max_client_count:
            logger.info(
                f"Recompute for {owner_id} deferred: {total} reminders exceed the "
                f"client limit of {self.max_client_count}"
            )
            return RecomputeResult(status="queued", total=total, run_id=run_id)

        logger.info(f"Recompute run {run_id}: {total} reminder(s) of {owner_id} -> {target_timezone}")
        try:
            planned = self._plan(reminders, target_timezone, from_timezone, self._clock())
        except Exception as e:
            logger.error(f"Recompute run {run_id} could not plan updates: {str(e)}")
            return RecomputeResult(status="error", total=total, error=f"planning failed: {e}", run_id=run_id)
        batches = [planned[i:i + self.batch_size] for i in range(0, len(planned), self.batch_size)]

        committed: List[RollbackEntry] = []
        processed = 0
        try:
            for index, batch in enumerate(batches, start=1):
                try:
                    self._commit_batch([update for update, _ in batch])
                except Exception as e:
                    raise PartialBatchFailure(
                        f"batch {index}/{len(batches)} failed: {e}", processed, list(committed)
                    ) from e

                committed.extend(entry for _, entry in batch)
                processed += len(batch)
                if progress_cb:
                    try:
                        progress_cb(processed, total)
                    except Exception as e:
                        logger.error(f"Progress callback failed: {str(e)}")
        except PartialBatchFailure as failure:
            logger.error(f"Recompute run {run_id} failed after {failure.committed} reminder(s): {failure}")
            rollback_errors = self._rollback(failure.rollback_log)
            return RecomputeResult(
                status="error",
                processed=failure.committed,
                total=total,
                rollback_log=failure.rollback_log,
                error=str(failure),
                rollback_errors=rollback_errors,
                run_id=run_id,
            )

        logger.info(f"Recompute run {run_id} completed: {processed}/{total}")
        return RecomputeResult(
            status="ok", processed=processed, total=total, rollback_log=committed, run_id=run_id
        )
