"""Tests for the reminder change feed."""

from datetime import datetime, timedelta, timezone

import pytest

import crud
from change_feed import watch_reminders
from conftest import FIXED_NOW
from schemas import Frequency, ReminderDocument


def seed(session_factory, owner_id, count):
    ids = []
    with session_factory() as db:
        for i in range(count):
            reminder = crud.add_reminder(
                db,
                ReminderDocument(
                    owner_id=owner_id,
                    frequency=Frequency.DAILY,
                    schedule={"timezone": "UTC", "timeOfDay": "09:00"},
                    next_run_at_utc=datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc),
                    content={"message": f"reminder {i}"},
                ),
                FIXED_NOW + timedelta(seconds=i),
            )
            ids.append(reminder.id)
        db.commit()
    return ids


@pytest.mark.asyncio
async def test_feed_reports_existing_then_modified(session_factory):
    ids = seed(session_factory, "u1", 2)
    seed(session_factory, "u2", 1)
    feed = watch_reminders(session_factory, "u1", poll_interval=0)

    first = await feed.__anext__()
    second = await feed.__anext__()
    assert [first.change_type, second.change_type] == ["added", "added"]
    assert [first.reminder.id, second.reminder.id] == ids

    with session_factory() as db:
        crud.disable_reminder(db, ids[0], "u1")

    change = await feed.__anext__()
    assert change.change_type == "modified"
    assert change.reminder.id == ids[0]
    assert change.reminder.enabled is False
    await feed.aclose()


@pytest.mark.asyncio
async def test_feed_resumes_from_cursor(session_factory):
    seed(session_factory, "u1", 1)
    feed = watch_reminders(session_factory, "u1", poll_interval=0)
    first = await feed.__anext__()
    await feed.aclose()

    with session_factory() as db:
        crud.disable_reminder(db, first.reminder.id, "u1")

    resumed = watch_reminders(session_factory, "u1", since=first.reminder.updated_at, poll_interval=0)
    change = await resumed.__anext__()
    assert change.reminder.id == first.reminder.id
    assert change.change_type == "modified"
    await resumed.aclose()
