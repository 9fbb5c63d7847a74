"""CRUD operations for the Reminder Scheduling Engine.

This module provides database operations for reminders, idempotency
mappings, user profiles and recompute jobs.
IMPORTANT: All datetime parameters and return values are datetime objects, NOT strings.

Functions that are building blocks of a larger transaction (add_reminder,
add_idempotency_mapping, apply_schedule_updates) only add/flush; the
caller owns the commit. The rest commit on their own.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from database import IdempotencyMapping, RecomputeJob, Reminder, UserProfile, new_id
from logger_config import setup_logger
from schemas import ReminderDocument

logger = setup_logger(__name__, 'crud.log')

ScheduleUpdate = Tuple[str, dict, Optional[datetime]]


def add_reminder(db: Session, document: ReminderDocument, now: Optional[datetime] = None) -> Reminder:
    """Stage a new reminder in the current transaction.

    Args:
        db: Database session
        document: Validated reminder document
            - next_run_at_utc: datetime (MUST be datetime object!)
        now: Creation timestamp (defaults to current UTC time)

    Returns:
        Reminder: The pending ORM object (id already assigned)
    """
    now = now or datetime.now(timezone.utc)

    # Ensure next_run_at_utc has UTC timezone
    next_run = document.next_run_at_utc
    if next_run is not None and next_run.tzinfo is None:
        next_run = next_run.replace(tzinfo=timezone.utc)

    db_reminder = Reminder(
        id=new_id(),
        owner_id=document.owner_id,
        reminder_type=document.reminder_type.value,
        frequency=document.frequency.value,
        schedule=document.schedule,
        next_run_at_utc=next_run,
        enabled=document.enabled,
        content=document.content,
        meta=document.meta,
        created_at=now,
        updated_at=now,
    )
    db.add(db_reminder)
    db.flush()
    return db_reminder


def get_reminder(db: Session, reminder_id: str, owner_id: Optional[str] = None) -> Optional[Reminder]:
    """Get a specific reminder by ID, optionally scoped to its owner.

    Returns:
        Optional[Reminder]: Reminder object if found, None otherwise
    """
    query = db.query(Reminder).filter(Reminder.id == reminder_id)
    if owner_id is not None:
        query = query.filter(Reminder.owner_id == owner_id)
    return query.first()


def list_reminders_by_owner(
    db: Session,
    owner_id: str,
    enabled: Optional[bool] = None,
    limit: int = 50,
) -> List[Reminder]:
    """Get reminders for a specific owner, newest first.

    Args:
        db: Database session
        owner_id: Owner (user) id
        enabled: Optional filter on the soft-disable flag
        limit: Maximum number of results (default: 50)
    """
    query = db.query(Reminder).filter(Reminder.owner_id == owner_id)
    if enabled is not None:
        query = query.filter(Reminder.enabled == enabled)
    return query.order_by(Reminder.created_at.desc()).limit(limit).all()


def get_reminders_for_recompute(
    db: Session, owner_id: str, limit: int, offset: int = 0
) -> List[Reminder]:
    """One page of an owner's reminders in creation order."""
    return (
        db.query(Reminder)
        .filter(Reminder.owner_id == owner_id)
        .order_by(Reminder.created_at, Reminder.id)
        .offset(offset)
        .limit(limit)
        .all()
    )


def get_reminders_changed_since(
    db: Session, owner_id: str, since: Optional[datetime], limit: int = 500
) -> List[Reminder]:
    """Owner's reminders updated strictly after `since`, oldest change first."""
    query = db.query(Reminder).filter(Reminder.owner_id == owner_id)
    if since is not None:
        query = query.filter(Reminder.updated_at > since)
    return query.order_by(Reminder.updated_at, Reminder.id).limit(limit).all()


def disable_reminder(db: Session, reminder_id: str, owner_id: str) -> Optional[Reminder]:
    """Soft-disable a reminder. Disabling is one-way; there is no re-enable.

    Returns:
        Optional[Reminder]: Updated reminder if found, None otherwise
    """
    reminder = get_reminder(db, reminder_id, owner_id)
    if not reminder:
        return None
    if reminder.enabled:
        reminder.enabled = False
        reminder.updated_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(reminder)
        logger.info(f"Disabled reminder {reminder_id} for {owner_id}")
    return reminder


def apply_schedule_updates(
    db: Session, updates: Iterable[ScheduleUpdate], now: Optional[datetime] = None
) -> int:
    """Stage (reminder_id, schedule, next_run_at_utc) rewrites without committing.

    A None next run leaves the stored value untouched.

    Raises:
        LookupError: If a reminder vanished since it was read
    """
    now = now or datetime.now(timezone.utc)
    count = 0
    for reminder_id, schedule, next_run in updates:
        reminder = db.get(Reminder, reminder_id)
        if reminder is None:
            raise LookupError(f"not-found: reminder {reminder_id}")
        reminder.schedule = dict(schedule)
        # CRITICAL: Flag JSON columns as modified for SQLAlchemy change tracking
        flag_modified(reminder, 'schedule')
        if next_run is not None:
            reminder.next_run_at_utc = next_run
        reminder.updated_at = now
        count += 1
    db.flush()
    return count


def get_idempotency_mapping(db: Session, owner_id: str, idempotency_key: str) -> Optional[IdempotencyMapping]:
    return db.get(IdempotencyMapping, (owner_id, idempotency_key))


def add_idempotency_mapping(
    db: Session,
    owner_id: str,
    idempotency_key: str,
    reminder_id: str,
    now: datetime,
    ttl: timedelta,
) -> IdempotencyMapping:
    mapping = IdempotencyMapping(
        owner_id=owner_id,
        idempotency_key=idempotency_key,
        reminder_id=reminder_id,
        created_at=now,
        expires_at=now + ttl,
    )
    db.add(mapping)
    db.flush()
    return mapping


def purge_expired_mappings(db: Session, now: Optional[datetime] = None) -> int:
    """Delete idempotency mappings whose expiry has passed.

    Returns:
        int: Number of mappings removed
    """
    now = now or datetime.now(timezone.utc)
    deleted = (
        db.query(IdempotencyMapping)
        .filter(IdempotencyMapping.expires_at <= now)
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted


def get_user_profile(db: Session, owner_id: str) -> Optional[UserProfile]:
    return db.get(UserProfile, owner_id)


def set_user_timezone(
    db: Session, owner_id: str, tz: str, is_auto_timezone: bool = True
) -> UserProfile:
    """Create or update the owner's profile timezone (merge semantics)."""
    now = datetime.now(timezone.utc)
    profile = db.get(UserProfile, owner_id)
    if profile is None:
        profile = UserProfile(owner_id=owner_id)
        db.add(profile)
    profile.timezone = tz
    profile.is_auto_timezone = is_auto_timezone
    profile.updated_at = now
    db.commit()
    db.refresh(profile)
    return profile


def enqueue_recompute_job(
    db: Session,
    owner_id: str,
    target_timezone: str,
    from_timezone: Optional[str] = None,
    requester: str = "client",
) -> RecomputeJob:
    """Record (or replace) the owner's pending server-side recompute."""
    job = db.get(RecomputeJob, owner_id)
    if job is None:
        job = RecomputeJob(owner_id=owner_id)
        db.add(job)
    job.target_timezone = target_timezone
    job.from_timezone = from_timezone
    job.status = "pending"
    job.requester = requester
    job.requested_at = datetime.now(timezone.utc)
    job.error = None
    db.commit()
    db.refresh(job)
    return job


def get_pending_recompute_jobs(db: Session, limit: int = 20) -> List[RecomputeJob]:
    return (
        db.query(RecomputeJob)
        .filter(RecomputeJob.status == "pending")
        .order_by(RecomputeJob.requested_at)
        .limit(limit)
        .all()
    )


def mark_recompute_job(
    db: Session,
    owner_id: str,
    status: str,
    error: Optional[str] = None,
    requested_at: Optional[datetime] = None,
) -> Optional[RecomputeJob]:
    """Set a job's status; with `requested_at`, only if it is still that request.

    Returns:
        Optional[RecomputeJob]: The job, or None when it is missing or was
        replaced by a newer request
    """
    job = db.get(RecomputeJob, owner_id)
    if job is None:
        return None
    if requested_at is not None and job.requested_at != requested_at:
        logger.info(f"Recompute job for {owner_id} was replaced by a newer request, leaving it {job.status}")
        return None
    job.status = status
    job.error = error
    db.commit()
    return job



def restore_reminder_schedule(
    db: Session, reminder_id: str, schedule: dict, next_run_at_utc: Optional[datetime]
) -> Reminder:
    """Put back a reminder's schedule and next run exactly as recorded (commits)."""
    reminder = db.get(Reminder, reminder_id)
    if reminder is None:
        raise LookupError(f"not-found: reminder {reminder_id}")
    reminder.schedule = dict(schedule)
    flag_modified(reminder, 'schedule')
    reminder.next_run_at_utc = next_run_at_utc
    reminder.updated_at = datetime.now(timezone.utc)
    db.commit()
    return reminder
