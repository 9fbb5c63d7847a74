"""Database module for the Reminder Scheduling Engine.

This module defines SQLAlchemy models and database session management.
IMPORTANT: next_run_at_utc and every timestamp are stored as timezone-aware
DateTime objects in UTC, NOT strings.

Components never import a global session; they receive a session factory
built by create_session_factory().
"""

from functools import lru_cache
import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    JSON,
    PrimaryKeyConstraint,
    String,
    create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator
from datetime import timezone

from config import settings

# SQLAlchemy Base
Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """DateTime that always comes back timezone-aware in UTC.

    SQLite drops tzinfo on the way in; re-attach it on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def new_id() -> str:
    return uuid.uuid4().hex


class Reminder(Base):
    """Reminder intent plus the engine-computed next run.

    The schedule is immutable after creation except for timezone migration;
    `enabled` only ever goes from True to False.
    """

    __tablename__ = "reminders"

    id = Column(String, primary_key=True, default=new_id, doc="Reminder id")
    owner_id = Column(String, nullable=False, index=True, doc="Owning user id")
    reminder_type = Column(String, nullable=False, default="simple", doc="ai or simple")
    frequency = Column(String, nullable=False, doc="one_time, daily or weekly")
    schedule = Column(JSON, nullable=False, doc="{timezone, timeOfDay, date?, weekDays?}")

    # CRITICAL: DateTime object in UTC, NOT string!
    next_run_at_utc = Column(UTCDateTime, nullable=True, doc="Next absolute fire time (UTC)")

    enabled = Column(Boolean, nullable=False, default=True, doc="Soft-disable flag")
    content = Column(JSON, nullable=False, default=dict, doc="aiPrompt/tone or message/title")
    meta = Column(JSON, nullable=False, default=dict, doc="{idempotencyKey}")

    created_at = Column(UTCDateTime, nullable=False, doc="Creation time (UTC)")
    updated_at = Column(UTCDateTime, nullable=False, index=True, doc="Last change (UTC)")

    __table_args__ = (
        Index('idx_owner_created', 'owner_id', 'created_at'),
        Index('idx_owner_next_run', 'owner_id', 'next_run_at_utc'),
    )

    def __repr__(self):
        """String representation"""
        return (
            f"<Reminder(id={self.id}, owner={self.owner_id}, "
            f"frequency={self.frequency}, next={self.next_run_at_utc}, enabled={self.enabled})>"
        )


class IdempotencyMapping(Base):
    """(owner_id, idempotency_key) -> reminder_id, at most one per key."""

    __tablename__ = "idempotency_mappings"

    owner_id = Column(String, nullable=False)
    idempotency_key = Column(String, nullable=False)
    reminder_id = Column(String, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False, index=True)

    __table_args__ = (
        PrimaryKeyConstraint('owner_id', 'idempotency_key', name='pk_idempotency_mapping'),
    )


class UserProfile(Base):
    """Per-user profile; the remote target of queued timezone changes."""

    __tablename__ = "user_profiles"

    owner_id = Column(String, primary_key=True)
    timezone = Column(String, nullable=True)
    is_auto_timezone = Column(Boolean, nullable=False, default=True)
    updated_at = Column(UTCDateTime, nullable=False)


class RecomputeJob(Base):
    """Server-side recompute request for users over the client ceiling."""

    __tablename__ = "recompute_jobs"

    owner_id = Column(String, primary_key=True)
    target_timezone = Column(String, nullable=False)
    from_timezone = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending", index=True)
    requester = Column(String, nullable=False, default="client")
    requested_at = Column(UTCDateTime, nullable=False)
    error = Column(String, nullable=True)


def create_session_factory(database_url: str, echo: bool = False) -> sessionmaker:
    """Build an engine for `database_url`, create tables, return a session factory.

    In-memory SQLite uses a StaticPool so every session shares one database.
    """
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    engine_kwargs = {}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        engine_kwargs["poolclass"] = StaticPool

    engine = create_engine(
        database_url,
        connect_args=connect_args,
        echo=echo,  # Set to True for SQL debugging
        **engine_kwargs,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@lru_cache(maxsize=None)
def get_session_factory() -> sessionmaker:
    """Session factory for the configured DATABASE_URL (built on first use)."""
    return create_session_factory(settings.DATABASE_URL)


def get_db():
    """Database session dependency for FastAPI.

    Yields:
        Session: SQLAlchemy database session
    """
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()
