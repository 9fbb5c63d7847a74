"""At-most-once reminder creation keyed by (owner_id, idempotency_key).

The decision is taken inside one transaction that reads only the
idempotency mapping. The reminder and its mapping are inserted together or
not at all; a unique-key collision with a concurrent writer is resolved by
re-reading the winner's mapping.
"""

from datetime import datetime, timedelta
import logging
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

import crud
from config import settings
from errors import TransientStoreError, from_sqlalchemy_error
from logger_config import setup_logger
from schedule_resolver import utc_now
from schemas import CreateResult, ReminderDocument

logger = setup_logger(__name__, 'writer.log')


class IdempotentWriter:
    """Creates reminders at most once per idempotency key.

    Args:
        session_factory: SQLAlchemy session factory
        ttl: Lifetime of a mapping (defaults to IDEMPOTENCY_TTL_DAYS)
        max_attempts: Attempts on TransientStoreError (defaults to WRITE_MAX_ATTEMPTS)
        wait: tenacity wait strategy between attempts
        clock: Returns the current aware UTC datetime
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        ttl: Optional[timedelta] = None,
        max_attempts: Optional[int] = None,
        wait=None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._ttl = ttl or timedelta(days=settings.IDEMPOTENCY_TTL_DAYS)
        self._max_attempts = max_attempts or settings.WRITE_MAX_ATTEMPTS
        self._wait = wait or wait_random_exponential(multiplier=0.5, max=8)
        self._clock = clock

    def lookup(self, owner_id: str, idempotency_key: str) -> Optional[CreateResult]:
        """The reminder already created under a live `idempotency_key`, if any."""
        if not owner_id or not idempotency_key:
            return None
        try:
            with self._session_factory() as db:
                mapping = crud.get_idempotency_mapping(db, owner_id, idempotency_key)
        except SQLAlchemyError as e:
            raise from_sqlalchemy_error(e) from e
        if mapping is None or not mapping.reminder_id or mapping.expires_at <= self._clock():
            return None
        return CreateResult(reminder_id=mapping.reminder_id, idempotent=True)

    def create(self, owner_id: str, idempotency_key: str, document: ReminderDocument) -> CreateResult:
        """Create `document` unless `idempotency_key` was already used by `owner_id`.

        Returns:
            CreateResult with idempotent=True when an existing reminder id is returned

        Raises:
            ValueError: Missing owner or key
            TransientStoreError: Still failing after the last attempt
            PermanentStoreError: Any non-transient store failure
        """
        if not owner_id or not idempotency_key:
            raise ValueError("owner_id and idempotency_key are required")

        document = document.model_copy(
            update={
                "owner_id": owner_id,
                "meta": {**document.meta, "idempotencyKey": idempotency_key},
            }
        )

        retrying = Retrying(
            reraise=True,
            retry=retry_if_exception_type(TransientStoreError),
            stop=stop_after_attempt(self._max_attempts),
            wait=self._wait,
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        for attempt in retrying:
            with attempt:
                return self._create_once(owner_id, idempotency_key, document)

    def _create_once(self, owner_id: str, idempotency_key: str, document: ReminderDocument) -> CreateResult:
        try:
            with self._session_factory() as db:
                with db.begin():
                    now = self._clock()
                    mapping = crud.get_idempotency_mapping(db, owner_id, idempotency_key)
                    if mapping is not None:
                        if mapping.reminder_id and mapping.expires_at > now:
                            logger.info(
                                f"Idempotent hit for {owner_id}/{idempotency_key} -> {mapping.reminder_id}"
                            )
                            return CreateResult(reminder_id=mapping.reminder_id, idempotent=True)
                        # expired or never completed
                        db.delete(mapping)
                        db.flush()

                    reminder = crud.add_reminder(db, document, now)
                    crud.add_idempotency_mapping(
                        db, owner_id, idempotency_key, reminder.id, now, self._ttl
                    )
                    reminder_id = reminder.id
        except IntegrityError:
            logger.info(f"Concurrent create for {owner_id}/{idempotency_key}, re-reading mapping")
            return self._reread(owner_id, idempotency_key)
        except SQLAlchemyError as e:
            raise from_sqlalchemy_error(e) from e

        logger.info(f"Created reminder {reminder_id} for {owner_id} (key {idempotency_key})")
        return CreateResult(reminder_id=reminder_id, idempotent=False)

    def _reread(self, owner_id: str, idempotency_key: str) -> CreateResult:
        with self._session_factory() as db:
            mapping = crud.get_idempotency_mapping(db, owner_id, idempotency_key)
        if mapping is None or not mapping.reminder_id:
            raise TransientStoreError(
                f"mapping for {owner_id}/{idempotency_key} not visible yet", code="aborted"
            )
        return CreateResult(reminder_id=mapping.reminder_id, idempotent=True)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete expired idempotency mappings; returns how many were removed."""
        with self._session_factory() as db:
            deleted = crud.purge_expired_mappings(db, now or self._clock())
        if deleted:
            logger.info(f"Purged {deleted} expired idempotency mapping(s)")
        return deleted
