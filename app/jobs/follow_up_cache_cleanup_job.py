"""
Follow-up cache cleanup background job.

Deletes persisted follow-up calculations that are expired or were written
under an older cache metadata version. Reads never return such rows, so
this only keeps the follow_up_cache table small.

Usage:
    python -m app.jobs.worker follow_up_cache_cleanup
"""

import asyncio
import time

from app.config import settings
from app.db.pool import db_pool
from app.features.follow_up.cache.persisted_store import PersistedCalculationStore
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class FollowUpCacheCleanupJob:
    def __init__(self, store: PersistedCalculationStore | None = None):
        self.store = store or PersistedCalculationStore(
            metadata_version=settings.FOLLOW_UP_CACHE_VERSION,
            ttl_seconds=settings.PERSISTED_CACHE_TTL_SECONDS,
        )
        self.is_running = False

    async def run_once(self) -> dict:
        if self.is_running:
            logger.warning("Follow-up cache cleanup already running, skipping")
            return {"skipped": True, "reason": "already_running"}

        self.is_running = True
        start = time.perf_counter()
        try:
            deleted = await self.store.delete_expired()
        finally:
            self.is_running = False

        result = {
            "skipped": False,
            "deleted_rows": deleted,
            "metadata_version": self.store.metadata_version,
            "duration_ms": round((time.perf_counter() - start) * 1000, 2),
        }
        logger.info("Follow-up cache cleanup completed", **result)
        return result


async def start_follow_up_cache_cleanup_scheduler(
    job: FollowUpCacheCleanupJob | None = None,
) -> None:
    """Run the cleanup every CACHE_CLEANUP_INTERVAL_MINUTES until cancelled."""
    job = job or FollowUpCacheCleanupJob()
    interval_seconds = settings.CACHE_CLEANUP_INTERVAL_MINUTES * 60

    if not db_pool.initialized:
        await db_pool.initialize()

    logger.info(
        "Follow-up cache cleanup scheduler started",
        interval_minutes=settings.CACHE_CLEANUP_INTERVAL_MINUTES,
    )

    try:
        while True:
            try:
                await job.run_once()
            except Exception as e:
                logger.error(
                    "Error in follow-up cache cleanup, will retry",
                    error=str(e),
                    error_type=type(e).__name__,
                )
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("Follow-up cache cleanup scheduler cancelled")
        raise
    finally:
        await db_pool.close()
