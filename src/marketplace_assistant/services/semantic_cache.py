"""Semantic Cache: previously served answers keyed by query similarity and scope."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import logfire

from marketplace_assistant.core.config import settings
from marketplace_assistant.core.errors import CacheInconsistency, DimensionMismatchError, ProcessingError
from marketplace_assistant.core.logging import get_logger
from marketplace_assistant.domain.models import CacheEntry, CacheStats
from marketplace_assistant.domain.models.utils import utc_now
from marketplace_assistant.domain.similarity import cosine_similarities

if TYPE_CHECKING:
    from marketplace_assistant.domain.services import CacheRepository

logger = get_logger(__name__)

# Returns when the owner's facts last changed, or None if they never did
FactClock = Callable[[str], Awaitable[datetime | None]]


def build_scope_key(
    enabled_tools: Iterable[str],
    current_filters: dict[str, Any] | None = None,
    context: dict[str, Any] | None = None,
) -> str:
    """Fingerprint of everything that changes the valid answer set for a query."""
    payload = {
        "tools": sorted(set(enabled_tools)),
        "filters": {k: v for k, v in sorted((current_filters or {}).items()) if v is not None},
        "context": context or {},
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()[:32]


class SemanticCache:
    """Similarity-keyed answer cache, scoped per owner and scope key.

    A lookup only considers entries with the same owner and scope key. An
    entry older than the owner's latest fact change is stale: it is deleted
    and the lookup reports a miss.
    """

    def __init__(
        self,
        repository: CacheRepository,
        fact_clock: FactClock | None = None,
        dimensions: int | None = None,
        similarity_threshold: float | None = None,
        ttl_seconds: int | None = None,
    ) -> None:
        self.repository = repository
        self.fact_clock = fact_clock
        self.dimensions = dimensions or settings.embedding_dimensions
        self.similarity_threshold = (
            settings.cache_similarity_threshold if similarity_threshold is None else similarity_threshold
        )
        self.ttl_seconds = settings.cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._stats = CacheStats()

    def _check_dimensions(self, embedding: list[float], operation: str) -> None:
        if len(embedding) != self.dimensions:
            raise DimensionMismatchError(expected=self.dimensions, actual=len(embedding), operation=operation)

    @logfire.instrument("semantic cache lookup", extract_args=False)
    async def lookup(
        self,
        owner_id: str,
        query_embedding: list[float],
        scope_key: str,
        similarity_threshold: float | None = None,
    ) -> CacheEntry | None:
        """The most similar fresh entry scoring at least the threshold, or None.

        Stale entries are removed as they are found and the next best
        candidate is tried.
        """
        self._check_dimensions(query_embedding, "cache_lookup")
        threshold = self.similarity_threshold if similarity_threshold is None else similarity_threshold
        self._stats.lookups += 1

        now = utc_now()
        candidates = await self.repository.candidates(owner_id, scope_key)

        expired = [str(e.id) for e in candidates if e.is_expired(now)]
        if expired:
            await self.repository.delete(expired)
        live = [e for e in candidates if not e.is_expired(now) and e.scope_key == scope_key]

        scores = cosine_similarities(query_embedding, [e.query_embedding for e in live])
        ranked = sorted(
            ((score, entry) for score, entry in zip(scores, live, strict=True) if score >= threshold),
            key=lambda pair: pair[0],
            reverse=True,
        )

        changed_at = await self.fact_clock(owner_id) if ranked and self.fact_clock is not None else None
        stale: list[CacheEntry] = []
        hit: tuple[float, CacheEntry] | None = None
        for score, entry in ranked:
            if self._is_stale(entry, changed_at):
                stale.append(entry)
                continue
            hit = (score, entry)
            break

        if stale:
            await self.repository.delete([str(e.id) for e in stale])
            self._stats.stale += len(stale)

        if hit is None:
            self._stats.misses += 1
            logger.debug(
                "Cache miss",
                owner_id=owner_id,
                best_score=round(max(scores), 4) if scores else None,
                stale=len(stale),
            )
            return None

        score, entry = hit
        self._stats.hits += 1
        logger.info("Cache hit", owner_id=owner_id, entry_id=str(entry.id), score=round(score, 4))
        return entry

    @staticmethod
    def _is_stale(entry: CacheEntry, changed_at: datetime | None) -> bool:
        if changed_at is None or entry.created_at >= changed_at:
            return False

        error = CacheInconsistency(
            message="Cached answer predates the owner's latest fact change",
            details={
                "source": "semantic_cache",
                "operation": "lookup",
                "entry_id": str(entry.id),
                "entry_created_at": entry.created_at.isoformat(),
                "facts_changed_at": changed_at.isoformat(),
            },
        )
        logger.warning(error.message, owner_id=entry.owner_id, error_code=error.code.value, details=error.details.model_dump())
        return True

    async def put(
        self,
        owner_id: str,
        query_embedding: list[float],
        scope_key: str,
        response_text: str,
        tool_calls_snapshot: list[dict[str, Any]] | None = None,
        ttl: int | None = None,
    ) -> CacheEntry:
        self._check_dimensions(query_embedding, "cache_put")
        ttl = self.ttl_seconds if ttl is None else ttl
        if ttl <= 0:
            raise ProcessingError(
                message="Cache TTL must be positive",
                details={"source": "semantic_cache", "operation": "put", "ttl": ttl},
            )

        created_at = utc_now()
        entry = CacheEntry(
            owner_id=owner_id,
            scope_key=scope_key,
            query_embedding=query_embedding,
            response_text=response_text,
            tool_calls_snapshot=tool_calls_snapshot or [],
            created_at=created_at,
            expires_at=created_at + timedelta(seconds=ttl),
        )
        await self.repository.add(entry)
        logger.debug("Cache entry written", owner_id=owner_id, entry_id=str(entry.id), ttl=ttl)
        return entry

    async def invalidate(self, owner_id: str) -> int:
        """Remove every entry for the owner."""
        removed = await self.repository.delete_owner(owner_id)
        logger.info("Cache invalidated", owner_id=owner_id, removed=removed)
        return removed

    async def cleanup_expired(self) -> int:
        removed = await self.repository.delete_expired(utc_now())
        if removed:
            logger.info("Expired cache entries removed", removed=removed)
        return removed

    async def stats(self) -> CacheStats:
        return self._stats.model_copy(update={"entries": await self.repository.count()})
