"""Knowledge API endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from marketplace_assistant.api.dependencies import get_knowledge_store, get_semantic_cache
from marketplace_assistant.core.decorators import with_error_handling
from marketplace_assistant.core.logging import get_logger
from marketplace_assistant.domain.models import ContentType
from marketplace_assistant.services.knowledge_store import KnowledgeStore
from marketplace_assistant.services.semantic_cache import SemanticCache

logger = get_logger(__name__)
router = APIRouter()


class RememberRequest(BaseModel):
    """Request model for storing a knowledge entry."""

    owner_id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    content_type: ContentType = ContentType.USER_FACT
    metadata: dict | None = None


class RememberResponse(BaseModel):
    entry_id: UUID
    cache_entries_removed: int = 0
    message: str = "Knowledge stored successfully"


class SearchRequest(BaseModel):
    """Request model for searching an owner's knowledge."""

    owner_id: str = Field(..., min_length=1)
    query: str = Field(..., min_length=1)
    k: int = Field(5, ge=1, le=50)
    threshold: float = Field(0.3, ge=-1.0, le=1.0)


class SearchResult(BaseModel):
    id: UUID
    content: str
    content_type: ContentType
    score: float
    created_at: datetime


class SearchResponse(BaseModel):
    results: list[SearchResult]
    count: int


class PurgeResponse(BaseModel):
    deleted: int
    cache_entries_removed: int


class KnowledgeStatsResponse(BaseModel):
    owner_id: str
    total: int
    user_facts: int
    conversations: int
    last_fact_change: datetime | None


@router.post("/remember", response_model=RememberResponse, operation_id="remember")
@with_error_handling(reraise=True)
async def remember(
    request: RememberRequest,
    store: KnowledgeStore = Depends(get_knowledge_store),
    cache: SemanticCache = Depends(get_semantic_cache),
) -> RememberResponse:
    """Store a knowledge entry. New user facts invalidate the owner's cached answers."""
    logger.info(
        "Storing knowledge",
        extra={
            "owner_id": request.owner_id,
            "content_length": len(request.content),
            "content_type": request.content_type.value,
        },
    )

    entry = await store.store(request.owner_id, request.content, request.content_type, request.metadata)

    removed = 0
    if request.content_type == ContentType.USER_FACT:
        removed = await cache.invalidate(request.owner_id)

    return RememberResponse(entry_id=entry.id, cache_entries_removed=removed)


@router.post("/search", response_model=SearchResponse, operation_id="search_knowledge")
@with_error_handling(reraise=True)
async def search(
    request: SearchRequest,
    store: KnowledgeStore = Depends(get_knowledge_store),
) -> SearchResponse:
    """Similarity search over one owner's entries."""
    scored = await store.query_text(request.owner_id, request.query, top_k=request.k, min_score=request.threshold)
    results = [
        SearchResult(
            id=s.entry.id,
            content=s.entry.content,
            content_type=s.entry.content_type,
            score=s.score,
            created_at=s.entry.created_at,
        )
        for s in scored
    ]
    return SearchResponse(results=results, count=len(results))


@router.delete("/{owner_id}", response_model=PurgeResponse, operation_id="purge_knowledge")
@with_error_handling(reraise=True)
async def purge(
    owner_id: str,
    store: KnowledgeStore = Depends(get_knowledge_store),
    cache: SemanticCache = Depends(get_semantic_cache),
) -> PurgeResponse:
    """Soft-delete everything the owner stored and drop their cached answers."""
    deleted = await store.purge(owner_id)
    removed = await cache.invalidate(owner_id)
    return PurgeResponse(deleted=deleted, cache_entries_removed=removed)


@router.get("/{owner_id}/stats", response_model=KnowledgeStatsResponse, operation_id="knowledge_stats")
@with_error_handling(reraise=True)
async def stats(
    owner_id: str,
    store: KnowledgeStore = Depends(get_knowledge_store),
) -> KnowledgeStatsResponse:
    return KnowledgeStatsResponse(
        owner_id=owner_id,
        total=await store.count(owner_id),
        user_facts=await store.count(owner_id, ContentType.USER_FACT),
        conversations=await store.count(owner_id, ContentType.CONVERSATION),
        last_fact_change=await store.last_fact_change(owner_id),
    )
