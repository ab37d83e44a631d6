"""
Background cleanup task.

Runs every CLEANUP_INTERVAL seconds and
  - deletes generated media in TEMP_DIR older than MAX_FILE_AGE seconds,
  - fails jobs that stopped updating while still ``processing``,
  - deletes terminal jobs whose endTime is older than the retention window.

The job sweeps back up the per-job expiry timers, which do not survive a
restart, and the orchestrator's final write, which can be lost to a store
outage.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Optional

from errors import JobStoreError
from jobs import STATUS_FAILED, JobStore, is_terminal, now_ms

logger = logging.getLogger(__name__)

MEDIA_SUFFIXES = (".mp3", ".wav", ".mp4")


async def cleanup_loop(
    store: JobStore,
    media_dir: str,
    *,
    interval: int,
    max_file_age: int,
    retention_seconds: int,
    stale_after: float,
) -> None:
    """Infinite loop: sleep, then delete stale media files and settle or expire jobs."""
    while True:
        try:
            await asyncio.sleep(interval)
            await asyncio.to_thread(delete_stale_files, media_dir, max_file_age)
            await asyncio.to_thread(fail_stale_jobs, store, stale_after)
            await asyncio.to_thread(sweep_expired_jobs, store, retention_seconds)
        except asyncio.CancelledError:
            break
        except Exception as exc:
            # Log but never crash the background task
            logger.exception("[Cleanup] Unexpected error: %r", exc)


def delete_stale_files(media_dir: str, max_file_age: int) -> int:
    temp_path = Path(media_dir)
    if not temp_path.exists():
        return 0

    now = time.time()
    deleted = 0

    for file in temp_path.iterdir():
        if not file.is_file() or file.suffix not in MEDIA_SUFFIXES:
            continue
        age = now - file.stat().st_mtime
        if age > max_file_age:
            try:
                file.unlink()
                deleted += 1
            except OSError as exc:
                logger.warning("[Cleanup] Could not delete %s: %r", file.name, exc)

    if deleted:
        logger.info("[Cleanup] Deleted %d stale file(s) from %s", deleted, media_dir)
    return deleted


def fail_stale_jobs(store: JobStore, stale_after: float, now: Optional[int] = None) -> int:
    """
    Mark ``processing`` jobs with no update for *stale_after* seconds as failed.

    Nothing is driving such a job any more: its task died with the process or
    gave up writing to the store. Once failed, it ages out like any other
    terminal job.
    """
    now = now if now is not None else now_ms()
    cutoff = now - stale_after * 1000
    failed = 0
    try:
        for job in store.list_all():
            if is_terminal(job) or (job.get("lastUpdated") or 0) >= cutoff:
                continue
            error = JobStoreError(f"Job stopped updating during {job.get('stage')} and was abandoned")
            store.merge(
                job["id"],
                {
                    "status": STATUS_FAILED,
                    "message": error.message,
                    "result": None,
                    "error": error.to_dict(job.get("stage")),
                    "endTime": now,
                },
            )
            failed += 1
    except JobStoreError as exc:
        logger.warning("[Cleanup] Stale-job sweep interrupted: %s", exc.message)

    if failed:
        logger.warning("[Cleanup] Marked %d stale job(s) as failed", failed)
    return failed


def sweep_expired_jobs(store: JobStore, retention_seconds: int, now: Optional[int] = None) -> int:
    """Delete terminal jobs that ended more than *retention_seconds* ago. 0 keeps everything."""
    if retention_seconds <= 0:
        return 0

    cutoff = (now if now is not None else now_ms()) - retention_seconds * 1000
    deleted = 0
    try:
        for job in store.list_all():
            if is_terminal(job) and (job.get("endTime") or 0) < cutoff:
                store.delete(job["id"])
                deleted += 1
    except JobStoreError as exc:
        logger.warning("[Cleanup] Job sweep interrupted: %s", exc.message)

    if deleted:
        logger.info("[Cleanup] Removed %d expired job(s)", deleted)
    return deleted
