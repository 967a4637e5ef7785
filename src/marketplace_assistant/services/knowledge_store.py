"""Knowledge Store: per-owner text fragments addressed by vector similarity."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import logfire

from marketplace_assistant.core.base import ErrorLevel
from marketplace_assistant.core.config import RetentionPolicy, settings
from marketplace_assistant.core.decorators import with_error_handling
from marketplace_assistant.core.errors import DimensionMismatchError
from marketplace_assistant.core.logging import get_logger
from marketplace_assistant.domain.models import ContentType, KnowledgeEntry, ScoredEntry
from marketplace_assistant.domain.models.utils import utc_now

if TYPE_CHECKING:
    from marketplace_assistant.domain.services import KnowledgeRepository
    from marketplace_assistant.services.vector_adapter import VectorServiceAdapter

logger = get_logger(__name__)


class KnowledgeStore:
    """Append-only, owner-scoped knowledge entries.

    Every entry has the same embedding length (``dimensions``). An entry is
    only written once its embedding exists, so a provider failure on ``store``
    leaves the owner's entries untouched.
    """

    def __init__(
        self,
        repository: KnowledgeRepository,
        vectors: VectorServiceAdapter,
        dimensions: int | None = None,
    ) -> None:
        self.repository = repository
        self.vectors = vectors
        self.dimensions = dimensions or settings.embedding_dimensions

    def _check_dimensions(self, embedding: list[float], operation: str) -> None:
        if len(embedding) != self.dimensions:
            raise DimensionMismatchError(expected=self.dimensions, actual=len(embedding), operation=operation)

    @with_error_handling(error_level=ErrorLevel.ERROR, reraise=True)
    async def store(
        self,
        owner_id: str,
        content: str,
        content_type: ContentType,
        metadata: dict[str, Any] | None = None,
        embedding: list[float] | None = None,
    ) -> KnowledgeEntry:
        """Embed (unless ``embedding`` is given) and append a new entry.

        Identical content stored twice yields two distinct entries.
        """
        if embedding is None:
            embedding = await self.vectors.embed(content)
        self._check_dimensions(embedding, "store")

        entry = KnowledgeEntry(
            owner_id=owner_id,
            content=content,
            content_type=content_type,
            embedding=embedding,
            metadata=metadata or {},
        )
        await self.repository.add(entry)

        logger.info(
            "Knowledge entry stored",
            owner_id=owner_id,
            entry_id=str(entry.id),
            content_type=content_type.value,
        )
        return entry

    @logfire.instrument("knowledge query", extract_args=False)
    async def query(
        self,
        owner_id: str,
        query_embedding: list[float],
        top_k: int | None = None,
        min_score: float | None = None,
    ) -> list[ScoredEntry]:
        """At most ``top_k`` of this owner's live entries with cosine score >= ``min_score``."""
        self._check_dimensions(query_embedding, "query")
        top_k = settings.knowledge_top_k if top_k is None else top_k
        if top_k <= 0:
            return []
        min_score = settings.knowledge_min_score if min_score is None else min_score

        results = await self.repository.search(owner_id, query_embedding, top_k, min_score)

        logger.debug("Knowledge query", owner_id=owner_id, results=len(results), top_k=top_k)
        return results

    async def query_text(
        self,
        owner_id: str,
        text: str,
        top_k: int | None = None,
        min_score: float | None = None,
    ) -> list[ScoredEntry]:
        embedding = await self.vectors.embed(text)
        return await self.query(owner_id, embedding, top_k, min_score)

    async def purge(self, owner_id: str) -> int:
        """Owner-initiated soft delete of every live entry."""
        deleted = await self.repository.soft_delete_owner(owner_id, utc_now())
        logger.info("Knowledge purged", owner_id=owner_id, deleted=deleted)
        return deleted

    async def count(self, owner_id: str, content_type: ContentType | None = None) -> int:
        return await self.repository.count(owner_id, content_type)

    async def last_fact_change(self, owner_id: str) -> datetime | None:
        """When this owner's set of user facts last changed (store or purge)."""
        return await self.repository.last_fact_change(owner_id)

    async def owners(self) -> list[str]:
        return await self.repository.owners()

    async def compact(self, owner_id: str, policy: RetentionPolicy) -> int:
        """Soft-delete conversation entries beyond the policy's limits.

        Entries older than ``max_age_days`` go first, then the oldest entries
        above ``max_conversation_entries``. User facts are never touched.
        """
        if not policy.enabled:
            return 0

        entries = await self.repository.list_entries(owner_id, ContentType.CONVERSATION)
        doomed: list[KnowledgeEntry] = []

        if policy.max_age_days is not None:
            cutoff = utc_now() - timedelta(days=policy.max_age_days)
            doomed.extend(e for e in entries if e.created_at < cutoff)
            entries = [e for e in entries if e.created_at >= cutoff]

        if policy.max_conversation_entries is not None and len(entries) > policy.max_conversation_entries:
            # entries are ordered oldest first
            doomed.extend(entries[: len(entries) - policy.max_conversation_entries])

        if not doomed:
            return 0

        deleted = await self.repository.soft_delete_ids(owner_id, [str(e.id) for e in doomed], utc_now())
        logger.info("Knowledge compacted", owner_id=owner_id, deleted=deleted)
        return deleted
