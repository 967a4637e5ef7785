from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from marketplace_assistant.core.base import ErrorLevel
from marketplace_assistant.core.config import RetentionPolicy, settings
from marketplace_assistant.core.decorators import with_error_handling
from marketplace_assistant.core.logging import get_logger

if TYPE_CHECKING:
    from marketplace_assistant.services.knowledge_store import KnowledgeStore
    from marketplace_assistant.services.semantic_cache import SemanticCache

logger = get_logger(__name__)


class MaintenanceJobs:
    """Background jobs for cache expiry and knowledge retention."""

    def __init__(
        self,
        knowledge: "KnowledgeStore",
        cache: "SemanticCache",
        retention: RetentionPolicy | None = None,
        interval_minutes: int | None = None,
    ):
        self.knowledge = knowledge
        self.cache = cache
        self.retention = retention or settings.retention
        self.interval_minutes = interval_minutes or settings.maintenance_interval_minutes
        self.scheduler = AsyncIOScheduler()
        self._setup_jobs()

    def _setup_jobs(self):
        self.scheduler.add_job(
            self.cleanup_cache,
            "interval",
            minutes=self.interval_minutes,
            id="cache_cleanup",
            max_instances=1,
            coalesce=True,
        )
        if self.retention.enabled:
            self.scheduler.add_job(
                self.apply_retention,
                "interval",
                minutes=self.interval_minutes,
                id="knowledge_retention",
                max_instances=1,
                coalesce=True,
            )

    async def start(self):
        self.scheduler.start()
        logger.info(
            "MaintenanceJobs started",
            interval_minutes=self.interval_minutes,
            retention_enabled=self.retention.enabled,
        )

    async def shutdown(self):
        self.scheduler.shutdown(wait=False)
        logger.info("MaintenanceJobs shutdown complete")

    @with_error_handling(error_level=ErrorLevel.WARNING, reraise=False)
    async def cleanup_cache(self) -> int:
        """Remove expired cache entries."""
        removed = await self.cache.cleanup_expired()
        logger.debug(f"Cache cleanup removed {removed} entries")
        return removed

    @with_error_handling(error_level=ErrorLevel.WARNING, reraise=False)
    async def apply_retention(self) -> int:
        """Compact old conversation entries of every owner with knowledge."""
        if not self.retention.enabled:
            return 0

        total = 0
        for owner_id in await self.knowledge.owners():
            total += await self.knowledge.compact(owner_id, self.retention)
        if total:
            logger.info(f"Retention compacted {total} conversation entries")
        return total
