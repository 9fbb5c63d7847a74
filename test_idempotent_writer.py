"""Tests for at-most-once reminder creation."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError
from tenacity import wait_none

import crud
from conftest import FIXED_NOW, FakeClock
from database import IdempotencyMapping, Reminder
from errors import TransientStoreError
from idempotent_writer import IdempotentWriter
from schemas import Frequency, ReminderDocument


def document(owner_id="u1"):
    return ReminderDocument(
        owner_id=owner_id,
        frequency=Frequency.DAILY,
        schedule={"timezone": "UTC", "timeOfDay": "09:00"},
        next_run_at_utc=datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc),
        content={"message": "Stretch"},
    )


def reminder_count(session_factory):
    with session_factory() as db:
        return db.query(Reminder).count()


def test_same_key_returns_same_reminder(session_factory):
    writer = IdempotentWriter(session_factory, clock=FakeClock())

    first = writer.create("u1", "key-1", document())
    second = writer.create("u1", "key-1", document())

    assert not first.idempotent
    assert second.idempotent
    assert second.reminder_id == first.reminder_id
    assert reminder_count(session_factory) == 1


def test_created_reminder_carries_owner_and_key(session_factory):
    writer = IdempotentWriter(session_factory, clock=FakeClock())

    result = writer.create("u1", "key-1", document(owner_id="someone-else"))

    with session_factory() as db:
        reminder = crud.get_reminder(db, result.reminder_id)
        assert reminder.owner_id == "u1"
        assert reminder.meta == {"idempotencyKey": "key-1"}
        assert reminder.next_run_at_utc == datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)
        assert reminder.enabled


def test_keys_are_scoped_per_owner(session_factory):
    writer = IdempotentWriter(session_factory, clock=FakeClock())

    first = writer.create("u1", "key-1", document())
    other = writer.create("u2", "key-1", document())

    assert not other.idempotent
    assert other.reminder_id != first.reminder_id


def test_expired_mapping_creates_new_reminder(session_factory):
    clock = FakeClock()
    writer = IdempotentWriter(session_factory, ttl=timedelta(hours=1), clock=clock)

    first = writer.create("u1", "key-1", document())
    clock.now = FIXED_NOW + timedelta(hours=2)
    second = writer.create("u1", "key-1", document())

    assert not second.idempotent
    assert second.reminder_id != first.reminder_id
    assert reminder_count(session_factory) == 2
    with session_factory() as db:
        mapping = crud.get_idempotency_mapping(db, "u1", "key-1")
        assert mapping.reminder_id == second.reminder_id


def test_lookup_finds_only_live_mappings(session_factory):
    clock = FakeClock()
    writer = IdempotentWriter(session_factory, ttl=timedelta(hours=1), clock=clock)
    created = writer.create("u1", "key-1", document())

    hit = writer.lookup("u1", "key-1")
    assert hit.idempotent
    assert hit.reminder_id == created.reminder_id
    assert writer.lookup("u2", "key-1") is None
    assert writer.lookup("u1", "") is None

    clock.now = FIXED_NOW + timedelta(hours=2)
    assert writer.lookup("u1", "key-1") is None


def test_missing_owner_or_key(session_factory):
    writer = IdempotentWriter(session_factory)
    with pytest.raises(ValueError):
        writer.create("", "key-1", document())
    with pytest.raises(ValueError):
        writer.create("u1", "", document())


def test_transient_failure_is_retried(session_factory, monkeypatch):
    real_add = crud.add_reminder
    calls = []

    def flaky_add(db, doc, now=None):
        calls.append(1)
        if len(calls) == 1:
            raise OperationalError("INSERT INTO reminders", {}, Exception("database is locked"))
        return real_add(db, doc, now)

    monkeypatch.setattr(crud, "add_reminder", flaky_add)
    writer = IdempotentWriter(session_factory, max_attempts=3, wait=wait_none(), clock=FakeClock())

    result = writer.create("u1", "key-1", document())

    assert len(calls) == 2
    assert not result.idempotent
    assert reminder_count(session_factory) == 1


def test_transient_failure_gives_up_after_max_attempts(session_factory, monkeypatch):
    def always_locked(db, doc, now=None):
        raise OperationalError("INSERT INTO reminders", {}, Exception("database is locked"))

    monkeypatch.setattr(crud, "add_reminder", always_locked)
    writer = IdempotentWriter(session_factory, max_attempts=2, wait=wait_none(), clock=FakeClock())

    with pytest.raises(TransientStoreError):
        writer.create("u1", "key-1", document())
    assert reminder_count(session_factory) == 0


def test_concurrent_insert_resolves_to_winner(session_factory, monkeypatch):
    writer = IdempotentWriter(session_factory, clock=FakeClock())
    winner = writer.create("u1", "key-1", document())

    real_get = crud.get_idempotency_mapping
    calls = []

    def stale_get(db, owner_id, key):
        # first read misses the mapping, as if the winner committed just after it
        calls.append(1)
        if len(calls) == 1:
            return None
        return real_get(db, owner_id, key)

    monkeypatch.setattr(crud, "get_idempotency_mapping", stale_get)

    loser = writer.create("u1", "key-1", document())

    assert loser.idempotent
    assert loser.reminder_id == winner.reminder_id
    assert reminder_count(session_factory) == 1


def test_purge_expired(session_factory):
    clock = FakeClock()
    writer = IdempotentWriter(session_factory, ttl=timedelta(days=1), clock=clock)
    writer.create("u1", "old", document())
    clock.now = FIXED_NOW + timedelta(days=2)
    writer.create("u1", "new", document())

    assert writer.purge_expired() == 1
    with session_factory() as db:
        keys = [m.idempotency_key for m in db.query(IdempotencyMapping).all()]
    assert keys == ["new"]
