"""Tests for the REST API."""

from fastapi.testclient import TestClient
import pytest

import database
from api_server import app
from database import RecomputeJob


@pytest.fixture
def client(session_factory):
    def get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[database.get_session_factory] = lambda: session_factory
    app.dependency_overrides[database.get_db] = get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def reminder_payload(owner_id="u1", tz="America/New_York", **overrides):
    payload = {
        "ownerId": owner_id,
        "reminderType": "simple",
        "frequency": "daily",
        "schedule": {"timezone": tz, "timeOfDay": "09:00"},
        "content": {"message": "Stand-up"},
    }
    payload.update(overrides)
    return payload


def create(client, key=None, **overrides):
    headers = {"Idempotency-Key": key} if key else {}
    return client.post("/reminders", json=reminder_payload(**overrides), headers=headers)


def test_root_and_health(client):
    assert client.get("/").json()["status"] == "healthy"
    assert client.get("/health").json()["status"] == "healthy"


def test_preview_schedule(client):
    response = client.post(
        "/schedules/preview",
        json={
            "frequency": "weekly",
            "schedule": {"timezone": "Europe/London", "localTime": "09:00", "daysOfWeek": ["wed", "mon"]},
            "count": 3,
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["schedule"]["weekDays"] == [1, 3]
    assert body["schedule"]["timeOfDay"] == "09:00"
    assert len(body["upcoming"]) == 3
    assert body["nextRunAtUtc"] == body["upcoming"][0]


def test_preview_rejects_invalid_schedule(client):
    response = client.post(
        "/schedules/preview",
        json={"frequency": "daily", "schedule": {"timezone": "Nowhere/Land", "timeOfDay": "09:00"}},
    )

    assert response.status_code == 422
    assert response.json()["code"] == "TIMEZONE_INVALID"
    assert response.json()["field"] == "timezone"


def test_create_is_idempotent_per_key(client):
    first = create(client, key="key-1")
    second = create(client, key="key-1")

    assert first.status_code == 201
    assert second.status_code == 201
    assert first.json()["idempotent"] is False
    assert second.json()["idempotent"] is True
    assert second.json()["reminderId"] == first.json()["reminderId"]

    reminder = first.json()["reminder"]
    assert reminder["ownerId"] == "u1"
    assert reminder["nextRunAtUtc"] is not None
    assert reminder["meta"] == {"idempotencyKey": "key-1"}
    assert len(client.get("/reminders", params={"owner_id": "u1"}).json()) == 1


def test_create_without_key_always_creates(client):
    first = create(client)
    second = create(client)
    assert first.json()["reminderId"] != second.json()["reminderId"]


def test_retry_after_one_time_run_passed_returns_existing(client):
    first = create(
        client, key="key-1", frequency="one_time",
        schedule={"timezone": "UTC", "timeOfDay": "09:00", "date": "2099-01-01"},
    )
    assert first.status_code == 201
    # same key, schedule now in the past
    retry = create(
        client, key="key-1", frequency="one_time",
        schedule={"timezone": "UTC", "timeOfDay": "09:00", "date": "2020-01-01"},
    )

    assert retry.status_code == 201
    assert retry.json()["idempotent"] is True
    assert retry.json()["reminderId"] == first.json()["reminderId"]

    fresh = create(
        client, key="key-2", frequency="one_time",
        schedule={"timezone": "UTC", "timeOfDay": "09:00", "date": "2020-01-01"},
    )
    assert fresh.status_code == 422
    assert fresh.json()["code"] == "TIME_IN_PAST"


def test_create_rejects_invalid_reminder(client):
    response = create(client, key="key-1", frequency="weekly")

    assert response.status_code == 422
    assert response.json()["code"] == "WEEKDAYS_MISSING"
    assert client.get("/reminders", params={"owner_id": "u1"}).json() == []


def test_get_and_disable_reminder(client):
    reminder_id = create(client, key="key-1").json()["reminderId"]

    assert client.get(f"/reminders/{reminder_id}", params={"owner_id": "u1"}).json()["enabled"] is True
    assert client.get(f"/reminders/{reminder_id}", params={"owner_id": "u2"}).status_code == 404

    disabled = client.post(f"/reminders/{reminder_id}/disable", params={"owner_id": "u1"})
    assert disabled.status_code == 200
    assert disabled.json()["enabled"] is False

    enabled_only = client.get("/reminders", params={"owner_id": "u1", "enabled": True}).json()
    assert enabled_only == []
    assert client.post("/reminders/missing/disable", params={"owner_id": "u1"}).status_code == 404


def test_change_timezone_migrates_reminders(client):
    reminder_id = create(client, key="key-1").json()["reminderId"]

    response = client.put(
        "/users/u1/timezone",
        json={"timezone": "Europe/London", "fromTimezone": "America/New_York"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["previousTimezone"] is None
    assert body["recompute"]["status"] == "ok"
    assert body["recompute"]["processed"] == 1

    reminder = client.get(f"/reminders/{reminder_id}", params={"owner_id": "u1"}).json()
    assert reminder["schedule"] == {"timezone": "Europe/London", "timeOfDay": "09:00"}

    again = client.put("/users/u1/timezone", json={"timezone": "Asia/Tokyo", "runRecompute": False})
    assert again.json()["previousTimezone"] == "Europe/London"
    assert again.json()["recompute"] is None


def test_change_timezone_rejects_unknown_zone(client):
    response = client.put("/users/u1/timezone", json={"timezone": "Nowhere/Land"})
    assert response.status_code == 422


def test_deferred_recompute_records_job(client, session_factory):
    response = client.post(
        "/users/u1/recompute", params={"defer": True}, json={"timezone": "Europe/London"}
    )

    assert response.json()["status"] == "queued"
    with session_factory() as db:
        job = db.get(RecomputeJob, "u1")
        assert job.requester == "api"
        assert job.status == "pending"
