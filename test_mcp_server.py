"""Tests for the MCP tools."""

import pytest

import database
import mcp_server


@pytest.fixture(autouse=True)
def use_test_database(monkeypatch, session_factory):
    monkeypatch.setattr(database, "get_session_factory", lambda: session_factory)


def test_preview_schedule_lists_runs():
    text = mcp_server.preview_schedule("weekly", "Europe/London", "09:00", week_days=["mon", "wed"], count=2)
    assert text.startswith("Next 2 run(s) for weekly at 09:00 Europe/London")


def test_preview_schedule_reports_error_code():
    text = mcp_server.preview_schedule("weekly", "Europe/London", "09:00", week_days=[1, 2, 3, 4, 5])
    assert "WEEKDAYS_TOO_MANY" in text


def test_create_list_and_disable():
    created = mcp_server.create_reminder("u1", "daily", "UTC", "09:00", message="Stretch", idempotency_key="k1")
    assert "created successfully" in created
    again = mcp_server.create_reminder("u1", "daily", "UTC", "09:00", message="Stretch", idempotency_key="k1")
    assert "already existed" in again

    reminder_id = created.split("ID: ")[1].splitlines()[0]
    assert reminder_id in mcp_server.list_reminders("u1")

    assert "disabled" in mcp_server.disable_reminder("u1", reminder_id)
    assert mcp_server.list_reminders("u1", enabled_only=True) == "No reminders found."
    assert "not found" in mcp_server.disable_reminder("u1", "missing")


def test_create_rejects_short_prompt():
    text = mcp_server.create_reminder("u1", "daily", "UTC", "09:00", ai_prompt="short")
    assert "PROMPT_TOO_SHORT" in text
    assert mcp_server.list_reminders("u1") == "No reminders found."


def test_change_timezone_migrates_reminders():
    mcp_server.create_reminder("u1", "daily", "America/New_York", "09:00", message="Stand-up")

    text = mcp_server.change_timezone("u1", "Europe/London")

    assert text == "✓ Timezone set to Europe/London. Migrated 1/1 reminder(s)."
    assert "Unknown timezone" in mcp_server.change_timezone("u1", "Nowhere/Land")
