"""API dependencies."""

from fastapi import HTTPException

from marketplace_assistant.services.filter_intelligence import FilterIntelligenceEngine
from marketplace_assistant.services.knowledge_store import KnowledgeStore
from marketplace_assistant.services.monitoring import StageMonitor
from marketplace_assistant.services.orchestrator import ConversationOrchestrator
from marketplace_assistant.services.semantic_cache import SemanticCache
from marketplace_assistant.services.vector_adapter import VectorServiceAdapter

# These will be set by the main.py lifespan
vector_adapter: VectorServiceAdapter | None = None
knowledge_store: KnowledgeStore | None = None
semantic_cache: SemanticCache | None = None
filter_engine: FilterIntelligenceEngine | None = None
orchestrator: ConversationOrchestrator | None = None
stage_monitor: StageMonitor | None = None


def _not_ready(name: str) -> HTTPException:
    return HTTPException(status_code=503, detail=f"{name} not initialized")


def get_orchestrator() -> ConversationOrchestrator:
    if orchestrator is None:
        raise _not_ready("Conversation orchestrator")
    return orchestrator


def get_knowledge_store() -> KnowledgeStore:
    if knowledge_store is None:
        raise _not_ready("Knowledge store")
    return knowledge_store


def get_semantic_cache() -> SemanticCache:
    if semantic_cache is None:
        raise _not_ready("Semantic cache")
    return semantic_cache


def get_filter_engine() -> FilterIntelligenceEngine:
    if filter_engine is None:
        raise _not_ready("Filter engine")
    return filter_engine


def get_vector_adapter() -> VectorServiceAdapter | None:
    """Optional: health reporting works before the providers are up."""
    return vector_adapter


def get_stage_monitor() -> StageMonitor | None:
    return stage_monitor
