"""MCP Server for the Reminder Scheduling Engine.

This module provides MCP tools for AI agents to preview schedules and
manage reminders. Uses the same database as the REST API for data
consistency.

IMPORTANT: Tools take raw schedule fields (timezone, timeOfDay, date,
weekDays); next-run instants are always computed by the engine.

Transport Support:
- stdio: Standard input/output (local process communication)
- sse: Server-Sent Events over HTTP (network access, scalable)
"""

import os
from typing import List, Optional
import uuid

from mcp.server.fastmcp import FastMCP

import crud
import database
from batch_recomputer import BatchRecomputer
from config import settings
from errors import ScheduleValidationError, StoreError
from idempotent_writer import IdempotentWriter
from logger_config import setup_logger
from schedule_resolver import format_next_run, is_valid_timezone, next_runs
from schedule_validator import validate_reminder, validate_schedule

logger = setup_logger(__name__, 'mcp.log')
logger.info("MCP Server initialized")

# Create FastMCP server with host and port from settings
mcp = FastMCP(
    "ReminderSchedulingEngine",
    host=settings.MCP_HOST,
    port=settings.MCP_PORT
)


def _schedule_fields(
    timezone: str,
    time_of_day: str,
    date: Optional[str] = None,
    week_days: Optional[List] = None,
) -> dict:
    schedule = {"timezone": timezone, "timeOfDay": time_of_day}
    if date:
        schedule["date"] = date
    if week_days:
        schedule["weekDays"] = week_days
    return schedule


@mcp.tool()
def preview_schedule(
    frequency: str,
    timezone: str,
    time_of_day: str,
    date: str = None,
    week_days: list = None,
    count: int = 3
) -> str:
    """Show the next runs of a schedule without saving anything.

    Args:
        frequency: "one_time", "daily" or "weekly"
        timezone: IANA timezone (e.g., "Europe/London")
        time_of_day: Local time as HH:MM (e.g., "09:00")
        date: Local date YYYY-MM-DD (one_time only)
        week_days: Weekdays 1=Mon..7=Sun or names like "Mon" (weekly only, max 4)
        count: Number of upcoming runs to show (default: 3, max: 20)

    Returns:
        Upcoming runs in the schedule's timezone and UTC, or error message
    """
    try:
        schedule = validate_schedule(
            _schedule_fields(timezone, time_of_day, date, week_days), frequency=frequency
        )
        upcoming = next_runs(schedule, count=max(1, min(count, 20)))
        if not upcoming:
            return "No upcoming runs for this schedule."

        result = [f"Next {len(upcoming)} run(s) for {schedule.frequency.value} at {schedule.time_of_day} {schedule.timezone}:"]
        for run in upcoming:
            result.append(f"• {format_next_run(run, schedule.timezone)} ({run.isoformat()})")
        return "\n".join(result)
    except ScheduleValidationError as e:
        return f"✗ Invalid schedule [{e.code}]: {e.message}"


@mcp.tool()
def create_reminder(
    owner_id: str,
    frequency: str,
    timezone: str,
    time_of_day: str,
    message: str = None,
    ai_prompt: str = None,
    date: str = None,
    week_days: list = None,
    idempotency_key: str = None
) -> str:
    """Create a reminder for a user.

    Pass `ai_prompt` for an AI reminder or `message` for a simple one.
    Reusing an idempotency_key returns the reminder created the first time.

    Args:
        owner_id: Owner (user) id
        frequency: "one_time", "daily" or "weekly"
        timezone: IANA timezone (e.g., "America/New_York")
        time_of_day: Local time as HH:MM
        message: Text of a simple reminder
        ai_prompt: Prompt of an AI reminder (at least 8 characters)
        date: Local date YYYY-MM-DD (one_time only)
        week_days: Weekdays 1=Mon..7=Sun (weekly only, max 4)
        idempotency_key: Optional client-chosen key

    Returns:
        Success message with reminder ID and next run, or error message
    """
    try:
        params = {
            "reminderType": "ai" if ai_prompt else "simple",
            "aiPrompt": ai_prompt,
            "message": message,
            "frequency": frequency,
            "schedule": _schedule_fields(timezone, time_of_day, date, week_days),
        }
        validated = validate_reminder(params)
        key = idempotency_key or uuid.uuid4().hex
        logger.info(f"📝 Creating {frequency} reminder for {owner_id} (key {key})")

        writer = IdempotentWriter(database.get_session_factory())
        result = writer.create(owner_id, key, validated.to_document(owner_id, key))
        status = "already existed" if result.idempotent else "created successfully"
        return (
            f"✓ Reminder {status}!\n"
            f"ID: {result.reminder_id}\n"
            f"Next run: {format_next_run(validated.next_run_at_utc, validated.schedule.timezone)}\n"
            f"Next run (UTC): {validated.next_run_at_utc.isoformat()}"
        )
    except ScheduleValidationError as e:
        return f"✗ Invalid reminder [{e.code}]: {e.message}"
    except StoreError as e:
        logger.error(f"Store error creating reminder for {owner_id}: {str(e)}")
        return f"✗ Error creating reminder: {str(e)}"


@mcp.tool()
def list_reminders(owner_id: str, enabled_only: bool = False, limit: int = 50) -> str:
    """List reminders for a user.

    Args:
        owner_id: Owner (user) id
        enabled_only: Only show enabled reminders
        limit: Maximum number of results (default: 50, max: 1000)

    Returns:
        Formatted list of reminders or message if none found
    """
    db = database.get_session_factory()()
    try:
        reminders = crud.list_reminders_by_owner(
            db, owner_id, True if enabled_only else None, max(1, min(limit, 1000))
        )
        if not reminders:
            return "No reminders found."

        result = [f"Found {len(reminders)} reminder(s):\n"]
        for r in reminders:
            tz = (r.schedule or {}).get("timezone", "UTC")
            text = (r.content or {}).get("message") or (r.content or {}).get("aiPrompt") or ""
            result.append(
                f"\n• [{r.reminder_type}] {text[:60]}\n"
                f"  ID: {r.id}\n"
                f"  Frequency: {r.frequency} at {(r.schedule or {}).get('timeOfDay')} {tz}\n"
                f"  Next run: {format_next_run(r.next_run_at_utc, tz)}\n"
                f"  Enabled: {r.enabled}"
            )
        return "\n".join(result)
    finally:
        db.close()


@mcp.tool()
def disable_reminder(owner_id: str, reminder_id: str) -> str:
    """Disable a reminder so it no longer fires. This cannot be undone.

    Args:
        owner_id: Owner (user) id
        reminder_id: Reminder id

    Returns:
        Success or error message
    """
    db = database.get_session_factory()()
    try:
        reminder = crud.disable_reminder(db, reminder_id, owner_id)
        if not reminder:
            return f"✗ Reminder {reminder_id} not found."
        return f"✓ Reminder {reminder_id} disabled."
    finally:
        db.close()


@mcp.tool()
def change_timezone(owner_id: str, timezone: str, from_timezone: str = None) -> str:
    """Move a user to a new timezone and migrate all their reminders.

    Reminders keep their local wall-clock time: 09:00 stays 09:00 in the
    new timezone.

    Args:
        owner_id: Owner (user) id
        timezone: New IANA timezone
        from_timezone: Timezone the stored next runs were computed in (defaults to the profile's)

    Returns:
        Summary of the migration, or error message
    """
    if not is_valid_timezone(timezone):
        return f"✗ Unknown timezone: {timezone}"

    session_factory = database.get_session_factory()
    db = session_factory()
    try:
        profile = crud.get_user_profile(db, owner_id)
        previous = profile.timezone if profile else None
        crud.set_user_timezone(db, owner_id, timezone)
    finally:
        db.close()

    result = BatchRecomputer(session_factory, max_client_count=None).recompute(
        owner_id, timezone, from_timezone or previous
    )
    if result.status != "ok":
        return f"✗ Timezone set to {timezone}, but reminder migration failed: {result.error}"
    return f"✓ Timezone set to {timezone}. Migrated {result.processed}/{result.total} reminder(s)."


if __name__ == "__main__":
    # Get transport from environment or config
    transport = os.getenv("MCP_TRANSPORT", settings.MCP_TRANSPORT).lower()

    if transport == "sse":
        # Run MCP server with SSE transport for network access
        host = settings.MCP_HOST
        port = settings.MCP_PORT

        print(f"Starting MCP server with SSE transport on {host}:{port}")
        print(f"SSE endpoint: http://{host}:{port}/sse")

        mcp.run(transport="sse")
    else:
        # Run MCP server with stdio transport for local process communication
        print("Starting MCP server with stdio transport")
        mcp.run(transport="stdio")
