"""Semantic cache endpoints."""

from fastapi import APIRouter, Depends

from marketplace_assistant.api.dependencies import get_semantic_cache
from marketplace_assistant.services.semantic_cache import SemanticCache

router = APIRouter()


@router.get("/stats", operation_id="cache_stats")
async def cache_stats(cache: SemanticCache = Depends(get_semantic_cache)) -> dict:
    """Entry count and lookup counters since startup."""
    return (await cache.stats()).to_dict()
