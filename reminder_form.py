"""Reminder creation form as an explicit state machine.

FormState is immutable; every user action is a pure function returning the
next state. Validation and the next-run preview are recomputed from the
state on demand and stay empty until the form is activated, so an untouched
form costs nothing.

    idle --activate/edit--> active --begin_save--> saving
    saving --save_succeeded/save_cancelled--> active
    saving --save_failed--> error --edit--> active

ReminderForm wraps the pure functions with the side effects: prompt
autosave to local storage, and a save() that cancels a stale in-flight
save before starting a new one.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Literal, NamedTuple, Optional
import uuid
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field

from config import settings
from errors import ScheduleValidationError
from logger_config import setup_logger
from schedule_resolver import InstantLike, format_next_run, is_valid_timezone, utc_now
from schedule_validator import validate_reminder
from schemas import CreateResult, ReminderDocument, ValidatedReminder
from timezone_storage import LocalStorage

logger = setup_logger(__name__, 'form.log')

PROMPT_AUTOSAVE_KEY = "reminder_prompt_autosave_v1"

FormStatus = Literal["idle", "active", "saving", "error"]
CreateFn = Callable[[str, str, ReminderDocument], CreateResult]


class FormState(BaseModel):
    """Snapshot of the form."""

    status: FormStatus = "idle"
    reminder_type: str = "ai"
    prompt: str = ""
    tone: Optional[str] = None
    platform: Optional[str] = None
    title: Optional[str] = None
    frequency: str = "one_time"
    schedule: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None
    last_error: Optional[str] = None
    error_code: Optional[str] = None
    last_saved_id: Optional[str] = None

    class Config:
        """Pydantic config"""
        frozen = True


class FormValidation(NamedTuple):
    ok: bool
    reminder: Optional[ValidatedReminder] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    field: Optional[str] = None


def default_schedule(timezone: Optional[str], now: InstantLike = None) -> Dict[str, Any]:
    """Five minutes from now in `timezone`, on today's date and weekday."""
    tz = timezone if is_valid_timezone(timezone) else settings.DEFAULT_TIMEZONE
    current = now if isinstance(now, datetime) else utc_now()
    local = (current.astimezone(ZoneInfo(tz)) + timedelta(minutes=5)).replace(second=0, microsecond=0)
    return {
        "timezone": tz,
        "timeOfDay": local.strftime("%H:%M"),
        "date": local.date().isoformat(),
        "weekDays": [local.isoweekday()],
    }


def initial_state(timezone: Optional[str], reminder_type: str = "ai", now: InstantLike = None) -> FormState:
    return FormState(reminder_type=reminder_type, schedule=default_schedule(timezone, now))


def activate(state: FormState) -> FormState:
    if state.status != "idle":
        return state
    return state.model_copy(update={"status": "active"})


def edit(state: FormState, schedule: Optional[Dict[str, Any]] = None, **changes) -> FormState:
    """Apply field changes; `schedule` is merged into the current schedule.

    Editing activates an idle form and clears a previous error.
    """
    update = dict(changes)
    if schedule:
        update["schedule"] = {**state.schedule, **schedule}
    if state.status in ("idle", "error"):
        update.update(status="active", last_error=None, error_code=None)
    return state.model_copy(update=update)


def toggle_weekday(state: FormState, weekday: int, max_weekdays: Optional[int] = None) -> FormState:
    """Add or remove an ISO weekday; additions beyond the cap are ignored."""
    state = activate(state)
    if not isinstance(weekday, int) or isinstance(weekday, bool) or not 1 <= weekday <= 7:
        return state
    max_weekdays = max_weekdays or settings.MAX_WEEKDAYS

    days = set(state.schedule.get("weekDays") or [])
    if weekday in days:
        days.discard(weekday)
    elif len(days) < max_weekdays:
        days.add(weekday)
    return state.model_copy(update={"schedule": {**state.schedule, "weekDays": sorted(days)}})


def begin_save(state: FormState, idempotency_key: str) -> FormState:
    return state.model_copy(
        update={"status": "saving", "idempotency_key": idempotency_key, "last_error": None, "error_code": None}
    )


def save_succeeded(state: FormState, reminder_id: str) -> FormState:
    return state.model_copy(
        update={"status": "active", "last_saved_id": reminder_id, "prompt": "", "idempotency_key": None}
    )


def save_failed(state: FormState, error: str, code: Optional[str] = None) -> FormState:
    return state.model_copy(update={"status": "error", "last_error": error, "error_code": code})


def save_cancelled(state: FormState) -> FormState:
    if state.status != "saving":
        return state
    return state.model_copy(update={"status": "active", "idempotency_key": None})


def reminder_params(state: FormState) -> Dict[str, Any]:
    """Payload for validate_reminder() built from the form fields."""
    params = {
        "reminderType": state.reminder_type,
        "frequency": state.frequency,
        "scheduleWithTZ": dict(state.schedule),
    }
    if state.reminder_type == "ai":
        params.update(aiPrompt=state.prompt, tone=state.tone, platform=state.platform)
    else:
        params.update(message=state.prompt, title=state.title)
    return params


def current_validation(state: FormState, now: InstantLike = None) -> FormValidation:
    if state.status == "idle":
        return FormValidation(ok=False)
    try:
        reminder = validate_reminder(reminder_params(state), now=now)
    except ScheduleValidationError as e:
        return FormValidation(ok=False, error_code=e.code, error_message=e.message, field=e.field)
    return FormValidation(ok=True, reminder=reminder)


def preview_next_run(state: FormState, now: InstantLike = None) -> Optional[datetime]:
    """Next run the form's schedule would get, or None (idle or invalid)."""
    validation = current_validation(state, now)
    return validation.reminder.next_run_at_utc if validation.ok else None


def preview_next_run_text(state: FormState, now: InstantLike = None) -> str:
    return format_next_run(preview_next_run(state, now), state.schedule.get("timezone") or "UTC")


class ReminderForm:
    """Stateful form driver for one owner.

    Args:
        owner_id: Owner the reminders are created for
        create: Blocking create callable, e.g. IdempotentWriter.create
        timezone: Confirmed timezone used for the default schedule
        storage: Optional local storage for prompt autosave
        clock: Returns the current aware UTC datetime
    """

    def __init__(
        self,
        owner_id: str,
        create: CreateFn,
        timezone: Optional[str] = None,
        reminder_type: str = "ai",
        storage: Optional[LocalStorage] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.owner_id = owner_id
        self._create = create
        self._storage = storage
        self._clock = clock
        self._save_task: Optional[asyncio.Task] = None

        state = initial_state(timezone, reminder_type, clock())
        saved_prompt = storage.get_item(PROMPT_AUTOSAVE_KEY) if storage else None
        if isinstance(saved_prompt, str) and saved_prompt:
            state = state.model_copy(update={"prompt": saved_prompt})
        self.state = state

    def activate(self) -> None:
        self.state = activate(self.state)

    def edit(self, schedule: Optional[Dict[str, Any]] = None, **changes) -> None:
        self.state = edit(self.state, schedule, **changes)
        if "prompt" in changes and self._storage:
            self._storage.set_item(PROMPT_AUTOSAVE_KEY, changes["prompt"] or "")

    def toggle_weekday(self, weekday: int) -> None:
        self.state = toggle_weekday(self.state, weekday)

    @property
    def validation(self) -> FormValidation:
        return current_validation(self.state, self._clock())

    @property
    def next_run(self) -> Optional[datetime]:
        return preview_next_run(self.state, self._clock())

    def cancel_in_flight(self) -> None:
        if self._save_task and not self._save_task.done():
            logger.info("Cancelling stale save")
            self._save_task.cancel()
        self._save_task = None

    async def save(self) -> Optional[CreateResult]:
        """Validate and create the reminder under a fresh idempotency key.

        A save still in flight is cancelled first. Returns None when the
        form is invalid, the write failed (state goes to error), or this
        save was superseded by a newer one.
        """
        self.cancel_in_flight()
        self.state = begin_save(activate(self.state), uuid.uuid4().hex)
        task = asyncio.ensure_future(self._save(self.state.idempotency_key))
        self._save_task = task
        try:
            return await task
        except asyncio.CancelledError:
            if self._save_task is None or self._save_task is task:
                self.state = save_cancelled(self.state)
                raise
            return None
        finally:
            if self._save_task is task:
                self._save_task = None

    async def _save(self, idempotency_key: str) -> Optional[CreateResult]:
        validation = current_validation(self.state, self._clock())
        if not validation.ok:
            self.state = save_failed(self.state, validation.error_message or "Validation failed", validation.error_code)
            return None

        document = validation.reminder.to_document(self.owner_id, idempotency_key)
        try:
            result = await asyncio.to_thread(self._create, self.owner_id, idempotency_key, document)
        except Exception as e:
            logger.error(f"Saving reminder for {self.owner_id} failed: {str(e)}", exc_info=True)
            self.state = save_failed(self.state, str(e), getattr(e, "code", None))
            return None

        if self.state.idempotency_key != idempotency_key:
            return result
        self.state = save_succeeded(self.state, result.reminder_id)
        if self._storage:
            self._storage.remove_item(PROMPT_AUTOSAVE_KEY)
        logger.info(f"Saved reminder {result.reminder_id} (idempotent={result.idempotent})")
        return result
