"""Local device storage for the timezone sync queue and its markers.

LocalStorage is a small key/value store persisted as one JSON file (or kept
in memory when no path is given). Every mutation is a read-modify-write of
the file so several processes sharing it always work from the latest
snapshot. Listeners registered with subscribe() receive (key, value) after
each write; that is how "accepted"/"declined" changes reach other contexts.
"""

from datetime import datetime, timedelta, timezone
import json
import os
import threading
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from config import settings
from logger_config import setup_logger
from schemas import QueueDocument, QueueItem

logger = setup_logger(__name__, 'storage.log')

QUEUE_KEY = "pending_timezone_updates_v2"
ACCEPTED_KEY = "timezone_accepted_broadcast"
DECLINED_KEY = "declined_timezones_v1"

QUEUE_SCHEMA_VERSION = 1

Listener = Callable[[str, Any], None]


class LocalStorage:
    """JSON-file backed key/value storage with change listeners."""

    def __init__(self, path: Optional[str] = None):
        self._path = path
        self._memory: Dict[str, Any] = {}
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, Any]:
        if not self._path:
            return dict(self._memory)
        try:
            with open(self._path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Local storage at {self._path} unreadable, starting empty: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, Any]) -> None:
        if not self._path:
            self._memory = data
            return
        tmp_path = f"{self._path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as fh:
            json.dump(data, fh)
        os.replace(tmp_path, self._path)

    def get_item(self, key: str) -> Any:
        with self._lock:
            return self._load().get(key)

    def set_item(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)
        self._notify(key, value)

    def remove_item(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key not in data:
                return
            del data[key]
            self._save(data)
        self._notify(key, None)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns the unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, key: str, value: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(key, value)
            except Exception:
                logger.exception(f"Storage listener failed for key {key}")


def make_queue_key(owner_id: str, tz: str) -> str:
    return f"{owner_id}::{tz}"


def empty_queue() -> QueueDocument:
    return QueueDocument(schema_version=QUEUE_SCHEMA_VERSION, items={})


def read_queue(storage: LocalStorage) -> QueueDocument:
    """Latest persisted queue.

    A missing document, schema mismatch or unparseable payload yields an
    empty queue. Individually malformed items are dropped.
    """
    raw = storage.get_item(QUEUE_KEY)
    if raw is None:
        return empty_queue()
    if not isinstance(raw, dict) or raw.get("schema") != QUEUE_SCHEMA_VERSION:
        logger.warning("Queue schema mismatch or invalid document, resetting queue")
        return empty_queue()

    items = {}
    for key, payload in (raw.get("items") or {}).items():
        try:
            items[key] = QueueItem.model_validate(payload)
        except ValidationError:
            logger.warning(f"Dropping malformed queue item {key}")
    return QueueDocument(schema_version=QUEUE_SCHEMA_VERSION, items=items)


def write_queue(storage: LocalStorage, document: QueueDocument) -> None:
    storage.set_item(QUEUE_KEY, document.model_dump(mode="json", by_alias=True))


def _read_declined(storage: LocalStorage) -> Dict[str, float]:
    raw = storage.get_item(DECLINED_KEY)
    return dict(raw) if isinstance(raw, dict) else {}


def mark_declined(storage: LocalStorage, owner_id: str, tz: str, now: Optional[datetime] = None) -> None:
    if not owner_id or not tz:
        return
    now = now or datetime.now(timezone.utc)
    declined = _read_declined(storage)
    declined[make_queue_key(owner_id, tz)] = now.timestamp()
    storage.set_item(DECLINED_KEY, declined)


def clear_declined(storage: LocalStorage, owner_id: str, tz: str) -> None:
    if not owner_id or not tz:
        return
    declined = _read_declined(storage)
    key = make_queue_key(owner_id, tz)
    if key in declined:
        del declined[key]
        storage.set_item(DECLINED_KEY, declined)
        logger.info(f"Cleared declined mark for {key}")


def clear_all_declined_for_owner(storage: LocalStorage, owner_id: str) -> None:
    if not owner_id:
        return
    declined = _read_declined(storage)
    kept = {k: v for k, v in declined.items() if not k.startswith(f"{owner_id}::")}
    if len(kept) != len(declined):
        storage.set_item(DECLINED_KEY, kept)
        logger.info(f"Cleared all declined marks for owner {owner_id}")


def is_declined(
    storage: LocalStorage,
    owner_id: Optional[str],
    tz: Optional[str],
    now: Optional[datetime] = None,
    ttl: Optional[timedelta] = None,
) -> bool:
    """True while a decline of `tz` by `owner_id` is younger than the TTL.

    Expired marks for every owner are purged on the way.
    """
    if not owner_id or not tz:
        return False
    now = now or datetime.now(timezone.utc)
    ttl = ttl or timedelta(hours=settings.DECLINE_TTL_HOURS)
    cutoff = now.timestamp() - ttl.total_seconds()

    declined = _read_declined(storage)
    live = {k: ts for k, ts in declined.items() if (ts or 0) >= cutoff}
    if len(live) != len(declined):
        storage.set_item(DECLINED_KEY, live)
    return make_queue_key(owner_id, tz) in live


def broadcast_accepted(
    storage: LocalStorage,
    owner_id: str,
    tz: str,
    op_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """Tell other contexts that `tz` was accepted for `owner_id`."""
    now = now or datetime.now(timezone.utc)
    storage.set_item(
        ACCEPTED_KEY,
        {"ownerId": owner_id, "timezone": tz, "opId": op_id, "ts": now.timestamp()},
    )
