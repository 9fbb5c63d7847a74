"""Reminder Scheduling Engine - timezone-aware next-run computation for reminders.

This package turns user-declared schedules (one-time, daily, weekly at a
local wall-clock time) into absolute UTC next-run instants, keeps them
correct when the user's timezone changes, and propagates timezone changes
to the remote profile through a persisted retrying queue.

Features:
- Schedule validation with legacy field aliases and stable error codes
- DST-aware next-run resolution (gaps probed forward, ambiguous times take the first occurrence)
- Timezone migration preserving the local wall-clock time
- Idempotent reminder creation per (owner, idempotency key)
- Batched, transactional recompute with rollback
- Offline-tolerant timezone sync queue with backoff
- Dual access: REST API and MCP server

Components:
- config: Application settings
- database: SQLAlchemy models and session management
- schemas: Pydantic schemas
- crud: Database operations
- schedule_validator / schedule_resolver / timezone_migrator: scheduling core
- sync_queue / timezone_storage / profile_client / timezone_sync: device-side sync
- idempotent_writer / batch_recomputer: store writes
- reminder_form / change_feed: UI-facing state and change events
- api_server: FastAPI REST API
- mcp_server: MCP server with tools for AI agents
- background_worker: deferred recomputes and housekeeping

Usage:
    # Start everything
    python main.py

    # Or run directly
    python api_server.py
    python mcp_server.py
    python background_worker.py
"""

__version__ = "1.0.0"
__author__ = "Mayur"
__description__ = "Timezone-aware reminder scheduling engine with MCP integration"
