"""Pydantic schemas for the Reminder Scheduling Engine.

This module defines the schedule, reminder, queue and result shapes.
Python attributes are snake_case; every persisted or wire document uses the
camelCase field names (ownerId, nextRunAtUtc, ...).
"""

from datetime import date as LocalDate, datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class Frequency(str, Enum):
    """How often a reminder fires"""
    ONE_TIME = "one_time"
    DAILY = "daily"
    WEEKLY = "weekly"


class ReminderType(str, Enum):
    """Reminder content kind"""
    AI = "ai"
    SIMPLE = "simple"


class CamelModel(BaseModel):
    """Base model serialising to camelCase while accepting both spellings."""

    class Config:
        """Pydantic config"""
        alias_generator = to_camel
        populate_by_name = True


class ScheduleSpec(CamelModel):
    """A normalized, validated schedule.

    Only the fields required by `frequency` are populated: `date` for
    one_time, `week_days` for weekly.
    """

    frequency: Frequency = Field(..., description="one_time, daily or weekly")
    timezone: str = Field(..., description="IANA timezone, e.g. Europe/London")
    time_of_day: str = Field(..., description="Local time as HH:MM", examples=["09:00"])
    date: Optional[LocalDate] = Field(None, description="Local calendar date (one_time only)")
    week_days: Optional[List[int]] = Field(
        None, description="ISO weekdays 1=Mon..7=Sun (weekly only)"
    )

    @property
    def hour(self) -> int:
        return int(self.time_of_day.split(":")[0])

    @property
    def minute(self) -> int:
        return int(self.time_of_day.split(":")[1])

    def to_document(self) -> Dict[str, Any]:
        """Persisted `schedule` sub-document (frequency lives on the reminder)."""
        return self.model_dump(
            mode="json", by_alias=True, exclude_none=True, exclude={"frequency"}
        )

    @classmethod
    def from_document(cls, frequency: str, document: Dict[str, Any]) -> "ScheduleSpec":
        return cls.model_validate({**(document or {}), "frequency": frequency})


class ReminderDocument(CamelModel):
    """Reminder as written to the store.

    `next_run_at_utc` is computed by the engine, never supplied by the UI.
    """

    owner_id: str
    reminder_type: ReminderType = ReminderType.SIMPLE
    frequency: Frequency
    schedule: Dict[str, Any]
    next_run_at_utc: Optional[datetime] = None
    enabled: bool = True
    content: Dict[str, Any] = Field(default_factory=dict)
    meta: Dict[str, Any] = Field(default_factory=dict)


class ReminderCreate(CamelModel):
    """Request body for creating a reminder (raw, pre-validation shape)."""

    owner_id: str = Field(..., min_length=1, description="Owner (user) id")
    reminder_type: ReminderType = Field(ReminderType.SIMPLE, description="ai or simple")
    frequency: str = Field(..., description="one_time, daily or weekly")
    schedule: Dict[str, Any] = Field(
        ...,
        description="Raw schedule; legacy aliases (localTime, daysOfWeek, ...) accepted",
        examples=[{"timezone": "Europe/London", "timeOfDay": "09:00", "weekDays": [1, 3]}],
    )
    content: Dict[str, Any] = Field(default_factory=dict, description="aiPrompt/tone or message/title")


class ReminderResponse(CamelModel):
    """Reminder as returned to callers.

    CRITICAL: next_run_at_utc is a UTC datetime, serialized as ISO 8601.
    """

    id: str
    owner_id: str
    reminder_type: str
    frequency: str
    schedule: Dict[str, Any]
    next_run_at_utc: Optional[datetime] = None
    enabled: bool
    content: Dict[str, Any]
    meta: Dict[str, Any]
    created_at: datetime
    updated_at: datetime

    class Config:
        """Pydantic configuration"""
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True  # Enable ORM mode for SQLAlchemy models


class SchedulePreviewRequest(CamelModel):
    frequency: str
    schedule: Dict[str, Any]
    count: int = Field(3, ge=1, le=20)


class SchedulePreviewResponse(CamelModel):
    schedule: ScheduleSpec
    next_run_at_utc: Optional[datetime]
    upcoming: List[datetime]


class TimezoneChangeRequest(CamelModel):
    timezone: str = Field(..., description="Target IANA timezone")
    from_timezone: Optional[str] = Field(None, description="Timezone the stored next-runs were computed in")
    run_recompute: bool = True


class CreateResult(CamelModel):
    """Outcome of an idempotent reminder creation."""
    reminder_id: str
    idempotent: bool


class QueueItem(CamelModel):
    """Pending timezone change waiting to be written to the remote profile."""

    owner_id: str
    target_timezone: str
    enqueued_at: datetime
    attempts: int = 0
    client_id: str
    op_id: str
    permanent_failure: bool = False
    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None


class QueueDocument(CamelModel):
    """Schema-versioned queue map persisted in local storage."""
    schema_version: int = Field(..., alias="schema")
    items: Dict[str, QueueItem] = Field(default_factory=dict)


class FlushFailure(CamelModel):
    key: str
    item: Optional[QueueItem] = None
    error: str


class FlushResult(CamelModel):
    succeeded: List[QueueItem] = Field(default_factory=list)
    failed: List[FlushFailure] = Field(default_factory=list)
    skipped: int = 0
    in_progress: bool = False


class RollbackEntry(CamelModel):
    """Pre-migration state of one reminder."""
    reminder_id: str
    schedule: Dict[str, Any]
    next_run_at_utc: Optional[datetime] = None


class RecomputeResult(CamelModel):
    status: Literal["ok", "queued", "error"]
    processed: int = 0
    total: int = 0
    rollback_log: List[RollbackEntry] = Field(default_factory=list)
    error: Optional[str] = None
    rollback_errors: List[str] = Field(default_factory=list)
    run_id: Optional[str] = None


class SyncOutcome(CamelModel):
    """Structured result handed back to the UI layer, never an exception."""
    status: Literal["ok", "queued", "error"]
    error: Optional[str] = None
    queued_for_server: bool = False
    processed: int = 0
    run_id: Optional[str] = None


class ReminderChange(CamelModel):
    """One event of the reminder change feed."""
    change_type: Literal["added", "modified"]
    reminder: ReminderResponse


class ValidatedReminder(CamelModel):
    """A reminder payload that passed content and schedule validation."""

    reminder_type: ReminderType
    content: Dict[str, Any]
    schedule: ScheduleSpec
    next_run_at_utc: datetime

    def to_document(self, owner_id: str, idempotency_key: Optional[str] = None) -> ReminderDocument:
        meta = {"idempotencyKey": idempotency_key} if idempotency_key else {}
        return ReminderDocument(
            owner_id=owner_id,
            reminder_type=self.reminder_type,
            frequency=self.schedule.frequency,
            schedule=self.schedule.to_document(),
            next_run_at_utc=self.next_run_at_utc,
            content=self.content,
            meta=meta,
        )


class ReminderCreateResponse(CamelModel):
    reminder_id: str
    idempotent: bool
    reminder: Optional[ReminderResponse] = None


class TimezoneChangeResponse(CamelModel):
    owner_id: str
    timezone: str
    previous_timezone: Optional[str] = None
    recompute: Optional[RecomputeResult] = None
