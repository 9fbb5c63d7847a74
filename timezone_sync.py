"""Device timezone detection, confirmation and propagation.

TimezoneSyncController holds the per-device state of the timezone flow:
a detected device timezone is staged for the user to confirm, a decline is
remembered locally for a day, and an acceptance writes the profile (or
queues the write when offline or failing) and recomputes the user's
reminders. Every UI-facing entry point returns a SyncOutcome rather than
raising.
"""

import asyncio
from typing import Any, Optional

from sqlalchemy.orm import sessionmaker

import crud
from batch_recomputer import BatchRecomputer, ProgressCallback
from config import settings
from logger_config import setup_logger
from schedule_resolver import is_valid_timezone
from schemas import FlushResult, SyncOutcome
from sync_queue import RemoteWriter, SyncQueue
from timezone_storage import (
    ACCEPTED_KEY,
    DECLINED_KEY,
    LocalStorage,
    clear_all_declined_for_owner,
    clear_declined,
    is_declined,
    make_queue_key,
    mark_declined,
)

logger = setup_logger(__name__, 'timezone_sync.log')


class TimezoneSyncController:
    """Stage, decline and accept device timezones for the signed-in owner.

    Args:
        storage: Local storage shared with other contexts of the device
        writer: Coroutine function writing a timezone to the remote profile
        session_factory: Session factory for recompute and server job records
        owner_id: Signed-in owner, or None
        profile_timezone: Timezone currently stored on the owner's profile
        queue: SyncQueue to use (built over `storage`/`writer` when omitted)
        recomputer: BatchRecomputer to use (client ceiling applied when omitted)
        server_recompute_enabled: Record RecomputeJobs for deferred recomputes
    """

    def __init__(
        self,
        storage: LocalStorage,
        writer: RemoteWriter,
        session_factory: sessionmaker,
        owner_id: Optional[str] = None,
        profile_timezone: Optional[str] = None,
        queue: Optional[SyncQueue] = None,
        recomputer: Optional[BatchRecomputer] = None,
        server_recompute_enabled: Optional[bool] = None,
    ):
        self._storage = storage
        self._writer = writer
        self._session_factory = session_factory
        self.owner_id = owner_id
        self.profile_timezone = profile_timezone
        self.queue = queue or SyncQueue(storage, writer, lambda: self.owner_id)
        self.recomputer = recomputer or BatchRecomputer(session_factory)
        self.server_recompute_enabled = (
            settings.SERVER_RECOMPUTE_ENABLED if server_recompute_enabled is None else server_recompute_enabled
        )

        self.pending_device_timezone: Optional[str] = None
        self.pending_original_timezone: Optional[str] = None
        self.last_synced_timezone: Optional[str] = None
        self._accepting = False
        self._unsubscribe = storage.subscribe(self.on_storage_event)

    def close(self) -> None:
        self._unsubscribe()

    def sign_in(self, owner_id: str, profile_timezone: Optional[str] = None) -> None:
        self.owner_id = owner_id
        self.profile_timezone = profile_timezone
        self.last_synced_timezone = None
        self._clear_staging()

    def sign_out(self) -> None:
        """Forget the owner and their declined timezones on this device."""
        if self.owner_id:
            clear_all_declined_for_owner(self._storage, self.owner_id)
        self.owner_id = None
        self.profile_timezone = None
        self.last_synced_timezone = None
        self._clear_staging()

    def _clear_staging(self) -> None:
        self.pending_device_timezone = None
        self.pending_original_timezone = None

    def stage_device_timezone(self, device_timezone: Optional[str], original_timezone: Optional[str] = None) -> bool:
        """Stage `device_timezone` for confirmation.

        Returns:
            bool: False when it matches the profile or the last synced
            timezone, was declined recently, or is already staged
        """
        if not device_timezone:
            return False
        if self.profile_timezone == device_timezone:
            return False
        if self.last_synced_timezone == device_timezone:
            return False
        if is_declined(self._storage, self.owner_id, device_timezone):
            logger.info(f"Device timezone {device_timezone} was declined recently, not staging")
            return False
        if self.pending_device_timezone == device_timezone:
            logger.debug(f"Device timezone {device_timezone} already staged")
            return False

        self.pending_original_timezone = original_timezone or self.profile_timezone
        self.pending_device_timezone = device_timezone
        logger.info(
            f"Staged device timezone {device_timezone} (original: {self.pending_original_timezone})"
        )
        return True

    def decline_device_timezone(self) -> None:
        if self.pending_device_timezone and self.owner_id:
            mark_declined(self._storage, self.owner_id, self.pending_device_timezone)
            logger.info(f"Declined device timezone {self.pending_device_timezone}")
        self._clear_staging()

    async def _queue_server_recompute(self, target_timezone: str, from_timezone: Optional[str]) -> None:
        def record():
            with self._session_factory() as db:
                crud.enqueue_recompute_job(db, self.owner_id, target_timezone, from_timezone, "client")

        await asyncio.to_thread(record)
        logger.info(f"Queued server recompute for {self.owner_id} -> {target_timezone}")

    async def _defer_to_server(
        self, target_timezone: str, from_timezone: Optional[str], run_id: Optional[str], error: Optional[str] = None
    ) -> SyncOutcome:
        if not self.server_recompute_enabled:
            logger.info("Server recompute disabled, reporting queued")
            return SyncOutcome(status="queued", queued_for_server=True, run_id=run_id, error=error)
        try:
            await self._queue_server_recompute(target_timezone, from_timezone)
        except Exception as e:
            logger.error(f"Failed to queue server recompute: {str(e)}", exc_info=True)
            return SyncOutcome(status="error", error=error or str(e), run_id=run_id)
        return SyncOutcome(status="queued", queued_for_server=True, run_id=run_id, error=error)

    async def accept_device_timezone(
        self,
        new_timezone: Optional[str],
        persist_to_profile: bool = True,
        run_client_recompute: bool = True,
        online: bool = True,
        progress_cb: Optional[ProgressCallback] = None,
    ) -> SyncOutcome:
        """Adopt `new_timezone` for the signed-in owner.

        Offline, or when the profile write fails, the change is queued for
        the SyncQueue (and re-staged on failure). Otherwise the profile is
        written and the owner's reminders are recomputed, or a server-side
        recompute is recorded when there are too many of them.
        """
        if not self.owner_id:
            return SyncOutcome(status="error", error="No authenticated user")
        if not new_timezone:
            return SyncOutcome(status="error", error="new_timezone is required")
        if not is_valid_timezone(new_timezone):
            return SyncOutcome(status="error", error="Invalid timezone")
        if self._accepting:
            logger.warning("Timezone update already in progress")
            return SyncOutcome(status="error", error="Timezone update already in progress")

        self._accepting = True
        previous_synced = self.last_synced_timezone
        previous_timezone = self.profile_timezone
        try:
            if not online:
                self.queue.enqueue(self.owner_id, new_timezone)
                self._clear_staging()
                return SyncOutcome(status="queued", queued_for_server=True)

            if persist_to_profile:
                try:
                    await self._writer(self.owner_id, new_timezone)
                except Exception as e:
                    self.last_synced_timezone = previous_synced
                    self.queue.enqueue(self.owner_id, new_timezone)
                    self._clear_staging()
                    self.stage_device_timezone(new_timezone, previous_timezone)
                    logger.error(f"Profile write failed, queued and re-staged {new_timezone}: {str(e)}")
                    return SyncOutcome(status="queued", queued_for_server=True, error=str(e))

                self.profile_timezone = new_timezone
                self.last_synced_timezone = new_timezone
                clear_declined(self._storage, self.owner_id, new_timezone)
                logger.info(f"Profile timezone written: {new_timezone}")

            self._clear_staging()
            if not run_client_recompute:
                return SyncOutcome(status="ok")

            try:
                result = await asyncio.to_thread(
                    self.recomputer.recompute, self.owner_id, new_timezone, previous_timezone, progress_cb
                )
            except Exception as e:
                logger.error(f"Client recompute raised, deferring to server: {str(e)}", exc_info=True)
                return await self._defer_to_server(new_timezone, previous_timezone, None, str(e))
            if result.status == "ok":
                return SyncOutcome(status="ok", processed=result.processed, run_id=result.run_id)
            if result.status == "queued":
                return await self._defer_to_server(new_timezone, previous_timezone, result.run_id)

            logger.error(f"Client recompute failed: {result.error}")
            return await self._defer_to_server(new_timezone, previous_timezone, result.run_id, result.error)
        finally:
            self._accepting = False

    async def handle_online(self) -> FlushResult:
        """Flush queued updates after reconnecting; clear staging for delivered ones."""
        result = await self.queue.handle_reconnect()
        for item in result.succeeded:
            if item.owner_id != self.owner_id:
                continue
            self.profile_timezone = item.target_timezone
            self.last_synced_timezone = item.target_timezone
            if self.pending_device_timezone == item.target_timezone:
                self._clear_staging()
        return result

    def on_storage_event(self, key: str, value: Any) -> None:
        """React to another context accepting or declining the staged timezone."""
        pending = self.pending_device_timezone
        if not pending or not self.owner_id:
            return

        if key == ACCEPTED_KEY and isinstance(value, dict):
            if value.get("ownerId") == self.owner_id and value.get("timezone") == pending:
                logger.info(f"Timezone {pending} accepted elsewhere, clearing staging")
                self.profile_timezone = pending
                self._clear_staging()
        elif key == DECLINED_KEY and isinstance(value, dict):
            if make_queue_key(self.owner_id, pending) in value:
                logger.info(f"Timezone {pending} declined elsewhere, clearing staging")
                self._clear_staging()
