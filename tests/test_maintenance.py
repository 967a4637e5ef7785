import asyncio
from datetime import timedelta

from marketplace_assistant.core.config import RetentionPolicy
from marketplace_assistant.domain.models import CacheEntry, ContentType
from marketplace_assistant.domain.models.utils import utc_now
from marketplace_assistant.services.maintenance import MaintenanceJobs

from .fakes import bag_of_words


def test_retention_job_is_only_scheduled_when_configured(harness):
    without = MaintenanceJobs(harness.knowledge, harness.cache, retention=RetentionPolicy())
    with_retention = MaintenanceJobs(
        harness.knowledge, harness.cache, retention=RetentionPolicy(max_conversation_entries=10)
    )

    assert [job.id for job in without.scheduler.get_jobs()] == ["cache_cleanup"]
    assert sorted(job.id for job in with_retention.scheduler.get_jobs()) == ["cache_cleanup", "knowledge_retention"]


def test_cleanup_and_retention_runs(harness):
    jobs = MaintenanceJobs(harness.knowledge, harness.cache, retention=RetentionPolicy(max_conversation_entries=1))

    async def scenario():
        created = utc_now() - timedelta(hours=1)
        await harness.cache_repo.add(
            CacheEntry(
                owner_id="alice",
                scope_key="scope",
                query_embedding=bag_of_words("old"),
                response_text="old",
                created_at=created,
                expires_at=created + timedelta(minutes=5),
            )
        )
        for owner_id in ("alice", "bob"):
            for i in range(3):
                await harness.knowledge.store(owner_id, f"User: message {i}", ContentType.CONVERSATION)
        return await jobs.cleanup_cache(), await jobs.apply_retention()

    assert asyncio.run(scenario()) == (1, 4)


def test_job_failures_are_logged_not_raised(harness):
    class BrokenCache:
        async def cleanup_expired(self) -> int:
            raise RuntimeError("graph unavailable")

    jobs = MaintenanceJobs(harness.knowledge, BrokenCache(), retention=RetentionPolicy())

    assert asyncio.run(jobs.cleanup_cache()) is None
