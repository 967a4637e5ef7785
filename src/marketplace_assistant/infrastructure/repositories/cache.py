"""Semantic cache repositories."""

from datetime import datetime
from typing import Any

from neo4j import AsyncDriver

from marketplace_assistant.core.decorators import with_session
from marketplace_assistant.domain.models import CacheEntry
from marketplace_assistant.infrastructure.neo4j.queries import CacheQueries
from marketplace_assistant.infrastructure.repositories._records import dumps, loads, to_native


class InMemoryCacheRepository:
    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}

    async def add(self, entry: CacheEntry) -> CacheEntry:
        self._entries[str(entry.id)] = entry
        return entry

    async def candidates(self, owner_id: str, scope_key: str) -> list[CacheEntry]:
        return [e for e in self._entries.values() if e.owner_id == owner_id and e.scope_key == scope_key]

    async def delete(self, entry_ids: list[str]) -> int:
        return sum(1 for entry_id in entry_ids if self._entries.pop(entry_id, None) is not None)

    async def delete_owner(self, owner_id: str) -> int:
        return await self.delete([key for key, e in self._entries.items() if e.owner_id == owner_id])

    async def delete_expired(self, now: datetime) -> int:
        return await self.delete([key for key, e in self._entries.items() if e.is_expired(now)])

    async def count(self) -> int:
        return len(self._entries)


class Neo4jCacheRepository:
    def __init__(self, driver: AsyncDriver):
        self.driver = driver

    @staticmethod
    def _record_to_entry(node: Any) -> CacheEntry:
        props = dict(node)
        return CacheEntry(
            id=props["id"],
            owner_id=props["owner_id"],
            scope_key=props["scope_key"],
            query_embedding=list(props["query_embedding"]),
            response_text=props["response_text"],
            tool_calls_snapshot=loads(props.get("tool_calls_json"), []),
            created_at=to_native(props["created_at"]),
            expires_at=to_native(props["expires_at"]),
        )

    @with_session()
    async def add(self, session, entry: CacheEntry) -> CacheEntry:
        await session.run(
            CacheQueries.create(),
            id=str(entry.id),
            owner_id=entry.owner_id,
            scope_key=entry.scope_key,
            query_embedding=entry.query_embedding,
            response_text=entry.response_text,
            tool_calls_json=dumps(entry.tool_calls_snapshot),
            created_at=entry.created_at,
            expires_at=entry.expires_at,
        )
        return entry

    @with_session()
    async def candidates(self, session, owner_id: str, scope_key: str) -> list[CacheEntry]:
        result = await session.run(CacheQueries.candidates(), owner_id=owner_id, scope_key=scope_key)
        return [self._record_to_entry(record["c"]) async for record in result]

    @with_session()
    async def delete(self, session, entry_ids: list[str]) -> int:
        if not entry_ids:
            return 0
        result = await session.run(CacheQueries.delete_ids(), ids=entry_ids)
        record = await result.single()
        return record["deleted"] if record else 0

    @with_session()
    async def delete_owner(self, session, owner_id: str) -> int:
        result = await session.run(CacheQueries.delete_owner(), owner_id=owner_id)
        record = await result.single()
        return record["deleted"] if record else 0

    @with_session()
    async def delete_expired(self, session, now: datetime) -> int:
        result = await session.run(CacheQueries.delete_expired(), now=now)
        record = await result.single()
        return record["deleted"] if record else 0

    @with_session()
    async def count(self, session) -> int:
        result = await session.run(CacheQueries.count())
        record = await result.single()
        return record["total"] if record else 0
