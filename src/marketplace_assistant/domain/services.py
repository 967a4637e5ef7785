"""Domain service protocols."""

from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from marketplace_assistant.domain.models import (
    CacheEntry,
    ContentType,
    KnowledgeEntry,
    ScoredEntry,
    SessionEvent,
    StreamDelta,
    ToolExecutionResult,
)


@runtime_checkable
class EmbeddingService(Protocol):
    """Protocol for embedding providers. Vectors have a fixed length per model."""

    async def embed_text(self, text: str) -> list[float]: ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]: ...

    def get_model_dimensions(self) -> int: ...


@runtime_checkable
class ChatCompletionService(Protocol):
    """Protocol for streaming chat-completion providers."""

    def chat_complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamDelta]: ...


class ToolHandler(Protocol):
    """Executes one validated tool call on behalf of an owner."""

    async def execute(
        self,
        function_name: str,
        arguments: dict[str, Any],
        owner_id: str,
    ) -> ToolExecutionResult: ...


class KnowledgeRepository(Protocol):
    """Persistence for knowledge entries. Every read is scoped to one owner."""

    async def add(self, entry: KnowledgeEntry) -> KnowledgeEntry: ...

    async def search(
        self,
        owner_id: str,
        embedding: list[float],
        top_k: int,
        min_score: float,
    ) -> list[ScoredEntry]: ...

    async def soft_delete_owner(self, owner_id: str, deleted_at: datetime) -> int: ...

    async def soft_delete_ids(self, owner_id: str, entry_ids: list[str], deleted_at: datetime) -> int: ...

    async def list_entries(
        self,
        owner_id: str,
        content_type: ContentType | None = None,
    ) -> list[KnowledgeEntry]: ...

    async def count(self, owner_id: str, content_type: ContentType | None = None) -> int: ...

    async def last_fact_change(self, owner_id: str) -> datetime | None: ...

    async def owners(self) -> list[str]: ...


class CacheRepository(Protocol):
    """Persistence for semantic cache entries."""

    async def add(self, entry: CacheEntry) -> CacheEntry: ...

    async def candidates(self, owner_id: str, scope_key: str) -> list[CacheEntry]: ...

    async def delete(self, entry_ids: list[str]) -> int: ...

    async def delete_owner(self, owner_id: str) -> int: ...

    async def delete_expired(self, now: datetime) -> int: ...

    async def count(self) -> int: ...


class SessionRepository(Protocol):
    """Append-only per-owner session event log."""

    async def append(self, owner_id: str, kind: str, payload: dict[str, Any]) -> SessionEvent: ...

    async def events(self, owner_id: str) -> list[SessionEvent]: ...
