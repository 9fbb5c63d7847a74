"""Background Worker for the Reminder Scheduling Engine.

This module implements a background worker that runs deferred,
server-side recomputes and housekeeping.

The worker:
- Runs continuously, one iteration every 60 seconds (configurable)
- Picks up pending RecomputeJobs (users with too many reminders for a
  client-side recompute) and migrates their reminders without a ceiling
- Marks each job done or failed with the error, never retrying it in-loop
- Purges expired idempotency mappings
"""

import asyncio
import signal
import sys

import crud
import database
from batch_recomputer import BatchRecomputer
from config import settings
from idempotent_writer import IdempotentWriter
from logger_config import setup_logger

# Configure logging
logger = setup_logger(__name__, 'worker.log')

# Global flag for graceful shutdown
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True


def process_recompute_jobs(session_factory, limit: int = 20) -> int:
    """Run every pending recompute job once.

    Returns:
        int: Number of jobs that completed successfully
    """
    with session_factory() as db:
        jobs = [
            (job.owner_id, job.target_timezone, job.from_timezone, job.requested_at)
            for job in crud.get_pending_recompute_jobs(db, limit)
        ]

    if not jobs:
        logger.debug("No pending recompute jobs at this time")
        return 0

    logger.info(f"Found {len(jobs)} pending recompute job(s)")
    recomputer = BatchRecomputer(session_factory, max_client_count=None)
    completed = 0

    for owner_id, target_timezone, from_timezone, requested_at in jobs:
        logger.info(f"Processing recompute for {owner_id} -> {target_timezone}")
        with session_factory() as db:
            if crud.mark_recompute_job(db, owner_id, "running", requested_at=requested_at) is None:
                continue

        try:
            result = recomputer.recompute(owner_id, target_timezone, from_timezone)
        except Exception as e:
            logger.error(f"Recompute for {owner_id} raised: {str(e)}", exc_info=True)
            with session_factory() as db:
                crud.mark_recompute_job(db, owner_id, "failed", str(e), requested_at=requested_at)
            continue

        with session_factory() as db:
            if result.status == "ok":
                if crud.mark_recompute_job(db, owner_id, "done", requested_at=requested_at) is not None:
                    completed += 1
                logger.info(f"Recompute for {owner_id} done: {result.processed}/{result.total}")
            else:
                crud.mark_recompute_job(db, owner_id, "failed", result.error, requested_at=requested_at)
                logger.error(f"Recompute for {owner_id} failed: {result.error}")
                if result.rollback_errors:
                    logger.error(f"Rollback errors for {owner_id}: {result.rollback_errors}")
    return completed


def purge_idempotency_mappings(session_factory) -> int:
    return IdempotentWriter(session_factory).purge_expired()


async def run_iteration(session_factory):
    """One worker pass; store calls run off the event loop."""
    try:
        await asyncio.to_thread(process_recompute_jobs, session_factory)
        await asyncio.to_thread(purge_idempotency_mappings, session_factory)
    except Exception as e:
        logger.error(f"Error in worker iteration: {str(e)}", exc_info=True)


async def worker_loop():
    """Main worker loop that runs continuously.

    Runs one iteration at the configured interval.
    """
    logger.info("Background worker started")
    logger.info(f"Worker enabled: {settings.WORKER_ENABLED}")
    logger.info(f"Check interval: {settings.WORKER_CHECK_INTERVAL} seconds")

    if not settings.WORKER_ENABLED:
        logger.warning("Worker is disabled in configuration. Exiting.")
        return

    session_factory = database.get_session_factory()
    iteration = 0
    while not shutdown_requested:
        try:
            iteration += 1
            logger.debug(f"Worker iteration {iteration} started")

            await run_iteration(session_factory)

            logger.debug(f"Worker iteration {iteration} completed")

            # Break sleep into 1-second intervals to allow quick shutdown
            for _ in range(settings.WORKER_CHECK_INTERVAL):
                if shutdown_requested:
                    break
                await asyncio.sleep(1)

        except Exception as e:
            logger.error(f"Error in worker loop iteration {iteration}: {str(e)}", exc_info=True)
            # Continue running even if an error occurs
            await asyncio.sleep(5)

    logger.info("Background worker shutting down gracefully")


def main():
    """Main entry point for the background worker."""
    # Register signal handlers for graceful shutdown
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("=" * 60)
    logger.info("Reminder Scheduling Engine - Background Worker")
    logger.info("=" * 60)

    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as e:
        logger.error(f"Fatal error in background worker: {str(e)}", exc_info=True)
        sys.exit(1)

    logger.info("Background worker stopped")
    sys.exit(0)


if __name__ == "__main__":
    main()
