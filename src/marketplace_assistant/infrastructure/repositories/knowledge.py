"""Knowledge entry repositories."""

from datetime import datetime
from typing import Any

from neo4j import AsyncDriver

from marketplace_assistant.core.base import ErrorLevel
from marketplace_assistant.core.decorators import with_error_handling, with_session
from marketplace_assistant.core.logging import get_logger
from marketplace_assistant.domain.models import ContentType, KnowledgeEntry, ScoredEntry
from marketplace_assistant.domain.similarity import cosine_similarities, rank
from marketplace_assistant.infrastructure.neo4j.queries import KnowledgeQueries
from marketplace_assistant.infrastructure.repositories._records import dumps, loads, to_native

logger = get_logger(__name__)


class InMemoryKnowledgeRepository:
    """Process-local repository, partitioned by owner."""

    def __init__(self) -> None:
        self._entries: dict[str, list[KnowledgeEntry]] = {}

    def _live(self, owner_id: str, content_type: ContentType | None = None) -> list[KnowledgeEntry]:
        return [
            e
            for e in self._entries.get(owner_id, [])
            if not e.is_deleted and (content_type is None or e.content_type == content_type)
        ]

    async def add(self, entry: KnowledgeEntry) -> KnowledgeEntry:
        self._entries.setdefault(entry.owner_id, []).append(entry.model_copy(deep=True))
        return entry

    async def search(
        self,
        owner_id: str,
        embedding: list[float],
        top_k: int,
        min_score: float,
    ) -> list[ScoredEntry]:
        # Only this owner's partition is ever scored
        candidates = self._live(owner_id)
        scores = cosine_similarities(embedding, [e.embedding for e in candidates])
        scored = [ScoredEntry(entry=e.model_copy(deep=True), score=s) for e, s in zip(candidates, scores, strict=True)]
        return rank(scored, top_k, min_score)

    async def soft_delete_owner(self, owner_id: str, deleted_at: datetime) -> int:
        live = self._live(owner_id)
        for entry in live:
            entry.deleted_at = deleted_at
        return len(live)

    async def soft_delete_ids(self, owner_id: str, entry_ids: list[str], deleted_at: datetime) -> int:
        wanted = set(entry_ids)
        deleted = 0
        for entry in self._live(owner_id):
            if str(entry.id) in wanted:
                entry.deleted_at = deleted_at
                deleted += 1
        return deleted

    async def list_entries(self, owner_id: str, content_type: ContentType | None = None) -> list[KnowledgeEntry]:
        live = sorted(self._live(owner_id, content_type), key=lambda e: e.created_at)
        return [e.model_copy(deep=True) for e in live]

    async def count(self, owner_id: str, content_type: ContentType | None = None) -> int:
        return len(self._live(owner_id, content_type))

    async def last_fact_change(self, owner_id: str) -> datetime | None:
        changes = [
            e.deleted_at or e.created_at
            for e in self._entries.get(owner_id, [])
            if e.content_type == ContentType.USER_FACT
        ]
        return max(changes) if changes else None

    async def owners(self) -> list[str]:
        return [owner for owner in self._entries if self._live(owner)]


class Neo4jKnowledgeRepository:
    """Neo4j-backed repository. Similarity is computed inside the owner-scoped match."""

    def __init__(self, driver: AsyncDriver):
        self.driver = driver

    @staticmethod
    def _record_to_entry(node: Any) -> KnowledgeEntry:
        props = dict(node)
        return KnowledgeEntry(
            id=props["id"],
            owner_id=props["owner_id"],
            content=props["content"],
            content_type=ContentType(props["content_type"]),
            embedding=list(props["embedding"]),
            metadata=loads(props.get("metadata_json"), {}),
            created_at=to_native(props["created_at"]),
            deleted_at=to_native(props.get("deleted_at")),
        )

    @with_session()
    @with_error_handling(error_level=ErrorLevel.ERROR, reraise=True)
    async def add(self, session, entry: KnowledgeEntry) -> KnowledgeEntry:
        await session.run(
            KnowledgeQueries.create(),
            id=str(entry.id),
            owner_id=entry.owner_id,
            content=entry.content,
            content_type=entry.content_type.value,
            embedding=entry.embedding,
            metadata_json=dumps(entry.metadata),
            created_at=entry.created_at,
        )
        logger.debug(f"Stored knowledge entry {entry.id}", owner_id=entry.owner_id)
        return entry

    @with_session()
    @with_error_handling(error_level=ErrorLevel.ERROR, reraise=True)
    async def search(
        self,
        session,
        owner_id: str,
        embedding: list[float],
        top_k: int,
        min_score: float,
    ) -> list[ScoredEntry]:
        result = await session.run(
            KnowledgeQueries.similarity_search(),
            owner_id=owner_id,
            embedding=embedding,
            min_score=min_score,
            top_k=top_k,
        )
        return [ScoredEntry(entry=self._record_to_entry(record["k"]), score=record["score"]) async for record in result]

    @with_session()
    async def soft_delete_owner(self, session, owner_id: str, deleted_at: datetime) -> int:
        result = await session.run(KnowledgeQueries.soft_delete_owner(), owner_id=owner_id, deleted_at=deleted_at)
        record = await result.single()
        return record["deleted"] if record else 0

    @with_session()
    async def soft_delete_ids(self, session, owner_id: str, entry_ids: list[str], deleted_at: datetime) -> int:
        result = await session.run(
            KnowledgeQueries.soft_delete_ids(), owner_id=owner_id, ids=entry_ids, deleted_at=deleted_at
        )
        record = await result.single()
        return record["deleted"] if record else 0

    @with_session()
    async def list_entries(
        self, session, owner_id: str, content_type: ContentType | None = None
    ) -> list[KnowledgeEntry]:
        result = await session.run(
            KnowledgeQueries.list_live(),
            owner_id=owner_id,
            content_type=content_type.value if content_type else None,
        )
        return [self._record_to_entry(record["k"]) async for record in result]

    @with_session()
    async def count(self, session, owner_id: str, content_type: ContentType | None = None) -> int:
        result = await session.run(
            KnowledgeQueries.count_live(),
            owner_id=owner_id,
            content_type=content_type.value if content_type else None,
        )
        record = await result.single()
        return record["total"] if record else 0

    @with_session()
    async def last_fact_change(self, session, owner_id: str) -> datetime | None:
        result = await session.run(KnowledgeQueries.last_fact_change(), owner_id=owner_id)
        record = await result.single()
        return to_native(record["changed_at"]) if record else None

    @with_session()
    async def owners(self, session) -> list[str]:
        result = await session.run(KnowledgeQueries.owners())
        return [record["owner_id"] async for record in result]
