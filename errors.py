"""Error taxonomy for the scheduling engine.

Validation and unsatisfiable-schedule errors are surfaced to the caller and
never retried. Store errors are split into transient (retried with backoff)
and permanent (marked, never retried).
"""

from typing import List, Optional

import httpx
from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

PERMANENT_HTTP_STATUSES = {401, 403, 404}
PERMANENT_MARKERS = ("permission", "unauth", "forbidden", "not-found", "not found")


class ScheduleValidationError(ValueError):
    """Raised when a schedule (or reminder payload) has an invalid shape."""

    def __init__(self, code: str, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.field = field

    def to_dict(self) -> dict:
        return {"code": self.code, "error": self.message, "field": self.field}


class UnsatisfiableSchedule(Exception):
    """No future instant satisfies the schedule (date passed or DST probe exhausted)."""


class StoreError(Exception):
    """Base class for remote store failures."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class TransientStoreError(StoreError):
    """Network, rate-limit or availability failure. Safe to retry."""


class PermanentStoreError(StoreError):
    """Authorization or not-found failure. Never retried."""


class PartialBatchFailure(Exception):
    """A batch failed after earlier batches of the same run were committed."""

    def __init__(self, message: str, committed: int, rollback_log: Optional[List] = None):
        super().__init__(message)
        self.committed = committed
        self.rollback_log = rollback_log or []


def is_permanent_error(exc: BaseException) -> bool:
    """Classify an arbitrary exception raised by a store write.

    Anything not recognisably permanent is treated as transient.
    """
    if isinstance(exc, PermanentStoreError):
        return True
    if isinstance(exc, TransientStoreError):
        return False
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in PERMANENT_HTTP_STATUSES

    code = str(getattr(exc, "code", None) or getattr(exc, "status", None) or "").lower()
    message = str(exc).lower()
    return any(marker in code or marker in message for marker in PERMANENT_MARKERS)


def from_sqlalchemy_error(exc: BaseException) -> StoreError:
    """Map a SQLAlchemy exception onto the store error taxonomy."""
    if isinstance(exc, (OperationalError, DisconnectionError, PoolTimeoutError)):
        return TransientStoreError(str(exc), code="unavailable")
    return PermanentStoreError(str(exc), code=exc.__class__.__name__)
