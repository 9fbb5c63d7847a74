"""Persisted, retrying queue of timezone changes bound for the remote profile.

Items survive restarts through LocalStorage. A flush walks the queue
strictly sequentially: one remote write at a time, rate limited, with
exponential backoff for transient failures and a permanent mark for
authorization/not-found failures. Every item mutation re-reads the latest
persisted snapshot before writing it back, so several contexts sharing the
same storage never clobber each other's changes wholesale.
"""

import asyncio
from datetime import datetime, timedelta
import random
from typing import Awaitable, Callable, List, Optional
import uuid

from config import settings
from errors import is_permanent_error
from logger_config import setup_logger
from schedule_resolver import is_valid_timezone, utc_now
from schemas import FlushFailure, FlushResult, QueueItem
from timezone_storage import (
    LocalStorage,
    broadcast_accepted,
    clear_declined,
    make_queue_key,
    read_queue,
    write_queue,
)

logger = setup_logger(__name__, 'queue.log')

RECONNECT_JITTER_SECONDS = 0.8

RemoteWriter = Callable[[str, str], Awaitable[None]]


class SyncQueue:
    """At-least-once delivery of (owner, timezone) updates.

    Args:
        storage: Local storage holding the queue document
        writer: Coroutine function writing `timezone` to `owner_id`'s profile
        current_owner: Returns the signed-in owner id, or None
        client_id: Identifier of this device/context, recorded on each item
        clock: Returns the current aware UTC datetime
        sleep: Coroutine function used for rate limiting and jitter
    """

    def __init__(
        self,
        storage: LocalStorage,
        writer: RemoteWriter,
        current_owner: Callable[[], Optional[str]],
        client_id: Optional[str] = None,
        max_items: Optional[int] = None,
        max_attempts: Optional[int] = None,
        rate_limit_seconds: Optional[float] = None,
        backoff_base_seconds: Optional[float] = None,
        backoff_max_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._storage = storage
        self._writer = writer
        self._current_owner = current_owner
        self.client_id = client_id or uuid.uuid4().hex
        self._max_items = max_items if max_items is not None else settings.MAX_QUEUE_ITEMS
        self._max_attempts = max_attempts if max_attempts is not None else settings.MAX_QUEUE_ATTEMPTS
        self._rate_limit = (
            rate_limit_seconds if rate_limit_seconds is not None else settings.QUEUE_RATE_LIMIT_SECONDS
        )
        self._backoff_base = (
            backoff_base_seconds if backoff_base_seconds is not None else settings.QUEUE_BACKOFF_BASE_SECONDS
        )
        self._backoff_max = (
            backoff_max_seconds if backoff_max_seconds is not None else settings.QUEUE_BACKOFF_MAX_SECONDS
        )
        self._clock = clock
        self._sleep = sleep
        self._flushing = False

    @property
    def flushing(self) -> bool:
        return self._flushing

    def enqueue(self, owner_id: str, target_timezone: str) -> Optional[QueueItem]:
        """Queue (or refresh) the update of `owner_id`'s profile to `target_timezone`.

        Re-enqueueing the same pair refreshes its timestamp and op id while
        keeping the attempt count. Beyond the size cap the oldest entries are
        evicted.

        Returns:
            The stored item, or None when the owner or timezone is unusable
        """
        if not owner_id or not is_valid_timezone(target_timezone):
            logger.warning(f"Enqueue skipped: owner={owner_id!r} timezone={target_timezone!r}")
            return None

        document = read_queue(self._storage)
        key = make_queue_key(owner_id, target_timezone)
        existing = document.items.get(key)

        item = QueueItem(
            owner_id=owner_id,
            target_timezone=target_timezone,
            enqueued_at=self._clock(),
            attempts=existing.attempts if existing else 0,
            permanent_failure=existing.permanent_failure if existing else False,
            client_id=self.client_id,
            op_id=uuid.uuid4().hex,
        )
        document.items[key] = item

        overflow = len(document.items) - self._max_items
        if overflow > 0:
            oldest = sorted(document.items, key=lambda k: document.items[k].enqueued_at)[:overflow]
            for stale_key in oldest:
                del document.items[stale_key]
            logger.info(f"Queue trimmed {len(oldest)} old item(s)")

        write_queue(self._storage, document)
        logger.info(f"Queued timezone update {key}")
        return item

    def items(self) -> List[QueueItem]:
        return list(read_queue(self._storage).items.values())

    def pending(self) -> List[QueueItem]:
        """Items still eligible for delivery (not permanently failed)."""
        return [item for item in self.items() if not item.permanent_failure]

    def _backoff(self, attempts: int) -> timedelta:
        seconds = min(self._backoff_base * 2 ** max(attempts - 1, 0), self._backoff_max)
        return timedelta(seconds=seconds)

    def _save_item(self, key: str, item: QueueItem) -> None:
        document = read_queue(self._storage)
        document.items[key] = item
        write_queue(self._storage, document)

    def _remove_item(self, key: str) -> None:
        document = read_queue(self._storage)
        if document.items.pop(key, None) is not None:
            write_queue(self._storage, document)

    def _record_failure(self, key: str, item: QueueItem, exc: Exception) -> QueueItem:
        latest = read_queue(self._storage).items.get(key) or item
        now = self._clock()
        attempts = max(latest.attempts, item.attempts) + 1
        update = {
            "attempts": min(attempts, self._max_attempts),
            "last_attempt_at": now,
            "last_error": str(exc),
        }
        if is_permanent_error(exc):
            update["permanent_failure"] = True
            update["next_attempt_at"] = None
            logger.warning(f"Permanent failure for queued item {key}, not retrying: {exc}")
        else:
            update["next_attempt_at"] = now + self._backoff(attempts)
            logger.warning(
                f"Transient failure for queued item {key} (attempt {attempts}), "
                f"next attempt after {update['next_attempt_at'].isoformat()}: {exc}"
            )
        failed = latest.model_copy(update=update)
        self._save_item(key, failed)
        return failed

    async def flush(self) -> FlushResult:
        """Deliver eligible items for the current owner, one at a time.

        Returns immediately with `in_progress=True` when another flush is
        already running.
        """
        if self._flushing:
            logger.info("Flush already in progress, skipping")
            return FlushResult(in_progress=True)

        self._flushing = True
        try:
            return await self._flush()
        finally:
            self._flushing = False

    async def _flush(self) -> FlushResult:
        result = FlushResult()
        owner_id = self._current_owner()
        if not owner_id:
            logger.info("Flush skipped: no signed-in owner")
            return result

        keys = list(read_queue(self._storage).items)
        for key in keys:
            # another context may have delivered or refreshed it meanwhile
            item = read_queue(self._storage).items.get(key)
            if item is None:
                continue

            if item.owner_id != owner_id:
                logger.info(f"Skipping queued item {key}: belongs to a different owner")
                result.skipped += 1
                continue

            if item.permanent_failure:
                result.skipped += 1
                continue

            if item.attempts >= self._max_attempts:
                item = item.model_copy(update={"permanent_failure": True})
                self._save_item(key, item)
                result.failed.append(
                    FlushFailure(key=key, item=item, error=f"max attempts ({self._max_attempts}) reached")
                )
                continue

            if item.next_attempt_at and item.next_attempt_at > self._clock():
                result.skipped += 1
                continue

            if self._rate_limit:
                await self._sleep(self._rate_limit)

            try:
                await self._writer(item.owner_id, item.target_timezone)
            except Exception as e:
                failed = self._record_failure(key, item, e)
                result.failed.append(FlushFailure(key=key, item=failed, error=str(e)))
                continue

            self._remove_item(key)
            clear_declined(self._storage, item.owner_id, item.target_timezone)
            broadcast_accepted(
                self._storage, item.owner_id, item.target_timezone, item.op_id, self._clock()
            )
            result.succeeded.append(item)
            logger.info(f"Flushed timezone update {key}")

        return result

    async def handle_reconnect(self) -> FlushResult:
        """Flush after a short random delay so reconnecting contexts spread out."""
        await self._sleep(random.uniform(0, RECONNECT_JITTER_SECONDS))
        return await self.flush()
