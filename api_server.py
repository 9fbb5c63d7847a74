"""FastAPI REST API server for the Reminder Scheduling Engine.

This module provides HTTP endpoints for schedule previews, idempotent
reminder creation, soft-disable, and user timezone changes.
Designed for frontend/external application access.

IMPORTANT: next-run values are computed here, never accepted from callers.
"""

from typing import List, Optional
import uuid

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker

import crud
import database
import schemas
from batch_recomputer import BatchRecomputer
from config import settings
from errors import PermanentStoreError, ScheduleValidationError, TransientStoreError
from idempotent_writer import IdempotentWriter
from logger_config import setup_logger
from schedule_resolver import is_valid_timezone, next_runs, resolve
from schedule_validator import validate_reminder, validate_schedule

logger = setup_logger(__name__, 'api.log')

# Create FastAPI application
app = FastAPI(
    title="Reminder Scheduling Engine API",
    description="Timezone-aware reminder scheduling with idempotent creation and timezone migration",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

origins = [
    "http://localhost:3000",
    "http://localhost:5173",
]

# Configure CORS for frontend access
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ScheduleValidationError)
async def schedule_validation_handler(request: Request, exc: ScheduleValidationError):
    logger.info(f"Validation failed on {request.url.path}: {exc.code} ({exc.message})")
    return JSONResponse(status_code=422, content={"status": "error", **exc.to_dict()})


@app.exception_handler(TransientStoreError)
async def transient_store_handler(request: Request, exc: TransientStoreError):
    logger.error(f"Store unavailable on {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"status": "error", "error": str(exc), "code": exc.code})


@app.exception_handler(PermanentStoreError)
async def permanent_store_handler(request: Request, exc: PermanentStoreError):
    logger.error(f"Store rejected write on {request.url.path}: {exc}")
    return JSONResponse(status_code=409, content={"status": "error", "error": str(exc), "code": exc.code})


def get_writer(session_factory: sessionmaker = Depends(database.get_session_factory)) -> IdempotentWriter:
    return IdempotentWriter(session_factory)


def get_server_recomputer(session_factory: sessionmaker = Depends(database.get_session_factory)) -> BatchRecomputer:
    """Server-side recomputer: no client ceiling."""
    return BatchRecomputer(session_factory, max_client_count=None)


@app.get("/")
def root():
    """Root endpoint - service information"""
    return {
        "service": "Reminder Scheduling Engine API",
        "version": "1.0.0",
        "status": "healthy",
        "endpoints": {
            "docs": "/docs",
            "health": "/health",
            "preview": "/schedules/preview",
            "reminders": "/reminders"
        }
    }


@app.get("/health")
def health_check():
    """Health check endpoint for monitoring"""
    return {
        "status": "healthy",
        "service": "reminder_scheduling_engine",
        "database": settings.DATABASE_URL.split("://")[0]
    }


@app.post("/schedules/preview", response_model=schemas.SchedulePreviewResponse)
def preview_schedule(request: schemas.SchedulePreviewRequest):
    """Validate a schedule and show its upcoming runs.

    Request body example:
    ```json
    {
        "frequency": "weekly",
        "schedule": {"timezone": "Europe/London", "timeOfDay": "09:00", "weekDays": [1, 3]},
        "count": 3
    }
    ```
    """
    schedule = validate_schedule(request.schedule, frequency=request.frequency)
    upcoming = next_runs(schedule, count=request.count)
    return schemas.SchedulePreviewResponse(
        schedule=schedule,
        next_run_at_utc=upcoming[0] if upcoming else resolve(schedule),
        upcoming=upcoming,
    )


@app.post("/reminders", response_model=schemas.ReminderCreateResponse, status_code=201)
def create_reminder(
    reminder: schemas.ReminderCreate,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    writer: IdempotentWriter = Depends(get_writer),
    db: Session = Depends(database.get_db)
):
    """Create a reminder at most once per Idempotency-Key.

    Request body example:
    ```json
    {
        "ownerId": "user-1",
        "reminderType": "simple",
        "frequency": "daily",
        "schedule": {"timezone": "America/New_York", "timeOfDay": "09:00"},
        "content": {"message": "Stand-up"}
    }
    ```

    Repeating the request with the same key returns the first reminder
    with `idempotent: true`.
    """
    # a retried key returns its reminder even once a one-time run has passed
    result = writer.lookup(reminder.owner_id, idempotency_key) if idempotency_key else None
    if result is None:
        validated = validate_reminder(reminder.model_dump(mode="json", by_alias=True))

        if not idempotency_key:
            idempotency_key = uuid.uuid4().hex
            logger.info(f"No Idempotency-Key from {reminder.owner_id}, generated {idempotency_key}")

        document = validated.to_document(reminder.owner_id, idempotency_key)
        result = writer.create(reminder.owner_id, idempotency_key, document)

    created = crud.get_reminder(db, result.reminder_id, reminder.owner_id)
    return schemas.ReminderCreateResponse(
        reminder_id=result.reminder_id,
        idempotent=result.idempotent,
        reminder=schemas.ReminderResponse.model_validate(created) if created else None,
    )


@app.get("/reminders", response_model=List[schemas.ReminderResponse])
def list_reminders(
    owner_id: str = Query(..., description="Owner (user) id"),
    enabled: Optional[bool] = Query(None, description="Filter by enabled flag"),
    limit: int = Query(50, ge=1, le=1000, description="Maximum number of results"),
    db: Session = Depends(database.get_db)
):
    """List reminders for an owner, newest first."""
    return crud.list_reminders_by_owner(db, owner_id, enabled, limit)


@app.get("/reminders/{reminder_id}", response_model=schemas.ReminderResponse)
def get_reminder(
    reminder_id: str,
    owner_id: str = Query(..., description="Owner (user) id"),
    db: Session = Depends(database.get_db)
):
    """Get a specific reminder by ID."""
    reminder = crud.get_reminder(db, reminder_id, owner_id)
    if not reminder:
        raise HTTPException(status_code=404, detail="Reminder not found")
    return reminder


@app.post("/reminders/{reminder_id}/disable", response_model=schemas.ReminderResponse)
def disable_reminder(
    reminder_id: str,
    owner_id: str = Query(..., description="Owner (user) id"),
    db: Session = Depends(database.get_db)
):
    """Soft-disable a reminder. Reminders are never physically deleted."""
    reminder = crud.disable_reminder(db, reminder_id, owner_id)
    if not reminder:
        raise HTTPException(status_code=404, detail="Reminder not found")
    return reminder


@app.put("/users/{owner_id}/timezone", response_model=schemas.TimezoneChangeResponse)
def change_timezone(
    owner_id: str,
    request: schemas.TimezoneChangeRequest,
    db: Session = Depends(database.get_db),
    recomputer: BatchRecomputer = Depends(get_server_recomputer)
):
    """Set the owner's profile timezone and, optionally, migrate their reminders.

    Request body example:
    ```json
    {"timezone": "Europe/London", "runRecompute": true}
    ```
    """
    if not is_valid_timezone(request.timezone):
        raise HTTPException(status_code=422, detail=f"Unknown timezone: {request.timezone}")

    profile = crud.get_user_profile(db, owner_id)
    previous = profile.timezone if profile else None
    crud.set_user_timezone(db, owner_id, request.timezone)
    logger.info(f"Profile timezone for {owner_id}: {previous} -> {request.timezone}")

    recompute = None
    if request.run_recompute:
        recompute = recomputer.recompute(owner_id, request.timezone, request.from_timezone or previous)

    return schemas.TimezoneChangeResponse(
        owner_id=owner_id,
        timezone=request.timezone,
        previous_timezone=previous,
        recompute=recompute,
    )


@app.post("/users/{owner_id}/recompute", response_model=schemas.RecomputeResult)
def recompute_reminders(
    owner_id: str,
    request: schemas.TimezoneChangeRequest,
    defer: bool = Query(False, description="Record a background job instead of running now"),
    db: Session = Depends(database.get_db),
    recomputer: BatchRecomputer = Depends(get_server_recomputer)
):
    """Migrate all of the owner's reminders to `timezone`, now or in the background worker."""
    if not is_valid_timezone(request.timezone):
        raise HTTPException(status_code=422, detail=f"Unknown timezone: {request.timezone}")

    if defer:
        crud.enqueue_recompute_job(db, owner_id, request.timezone, request.from_timezone, requester="api")
        return schemas.RecomputeResult(status="queued")

    return recomputer.recompute(owner_id, request.timezone, request.from_timezone)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level="info"
    )
