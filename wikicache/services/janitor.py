"""
Periodic removal of expired cache entries.
TTL is enforced lazily on read; the janitor keeps idle entries from piling
up (and from bloating durable snapshots) between reads.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from wikicache.services.cache import TieredCacheStore


class CacheJanitor:
    """Runs TieredCacheStore.cleanup_expired() on an interval."""

    JOB_ID = "cache_cleanup_job"

    def __init__(self, store: TieredCacheStore, interval_minutes: int = 5):
        self.store = store
        self.interval_minutes = interval_minutes
        self.scheduler = AsyncIOScheduler()
        self._is_running = False

    async def cleanup_job(self) -> None:
        """Scheduled cleanup."""
        try:
            removed = self.run_now()
            if removed:
                logger.info(f"Cache cleanup removed {sum(removed.values())} expired entries")
                for tier, count in removed.items():
                    logger.debug(f"  - {tier}: {count}")
        except Exception as e:
            logger.error(f"Error in scheduled cache cleanup: {e}")

    def run_now(self) -> dict[str, int]:
        """Clean up immediately."""
        if not self.store.initialized:
            return {}
        return self.store.cleanup_expired()

    def start(self) -> None:
        """Start the scheduler. Must be called with a running event loop."""
        if self._is_running:
            logger.warning("Cache janitor is already running")
            return

        self.scheduler.add_job(
            self.cleanup_job,
            trigger="interval",
            minutes=self.interval_minutes,
            id=self.JOB_ID,
            name="Cache Expiry Cleanup",
            replace_existing=True,
        )
        self.scheduler.start()
        self._is_running = True
        logger.info(f"Cache janitor started: cleanup every {self.interval_minutes} minutes")

    def stop(self) -> None:
        """Stop the scheduler."""
        if not self._is_running:
            return

        self.scheduler.shutdown(wait=False)
        self._is_running = False
        logger.info("Cache janitor stopped")

    def is_running(self) -> bool:
        return self._is_running
