"""Change feed over an owner's reminders.

watch_reminders() is a lazy async iterator: nothing is queried until the
first event is requested. Each event carries the reminder as of the poll
that saw it. Restart a feed from the last event's `updatedAt` by passing it
as `since`.
"""

import asyncio
from datetime import datetime
from typing import AsyncIterator, Optional

from sqlalchemy.orm import sessionmaker

import crud
from logger_config import setup_logger
from schemas import ReminderChange, ReminderResponse

logger = setup_logger(__name__, 'feed.log')


async def watch_reminders(
    session_factory: sessionmaker,
    owner_id: str,
    since: Optional[datetime] = None,
    poll_interval: float = 2.0,
    batch_limit: int = 500,
) -> AsyncIterator[ReminderChange]:
    """Yield `added`/`modified` events for `owner_id`'s reminders.

    Without `since`, every existing reminder is reported first.
    A reminder is `added` when its creation time equals its last update,
    `modified` otherwise.
    """
    cursor = since

    def poll():
        with session_factory() as db:
            return crud.get_reminders_changed_since(db, owner_id, cursor, batch_limit)

    while True:
        rows = await asyncio.to_thread(poll)
        if rows:
            logger.debug(f"Change feed for {owner_id}: {len(rows)} change(s)")
        for row in rows:
            change_type = "added" if row.created_at == row.updated_at else "modified"
            cursor = row.updated_at if cursor is None or row.updated_at > cursor else cursor
            yield ReminderChange(change_type=change_type, reminder=ReminderResponse.model_validate(row))

        if len(rows) < batch_limit:
            await asyncio.sleep(poll_interval)
