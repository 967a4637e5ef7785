"""Service layer: the retrieval and tool-execution core behind the chat transport."""

from .fact_extraction import FactExtractor
from .filter_intelligence import FilterIntelligenceEngine, current_filter_spec, validate_filters
from .knowledge_store import KnowledgeStore
from .maintenance import MaintenanceJobs
from .monitoring import StageMonitor, StageStats
from .orchestrator import DEGRADED_RESPONSE, ConversationOrchestrator, TurnState
from .semantic_cache import SemanticCache, build_scope_key
from .tool_dispatch import MarketplaceToolHandler, ToolDefinition, ToolExecutor, ToolRegistry, build_default_registry
from .tool_reconstructor import ToolCallReconstructor
from .vector_adapter import VectorServiceAdapter

__all__ = [
    "DEGRADED_RESPONSE",
    "ConversationOrchestrator",
    "FactExtractor",
    "FilterIntelligenceEngine",
    "KnowledgeStore",
    "MaintenanceJobs",
    "MarketplaceToolHandler",
    "SemanticCache",
    "StageMonitor",
    "StageStats",
    "ToolCallReconstructor",
    "ToolDefinition",
    "ToolExecutor",
    "ToolRegistry",
    "TurnState",
    "VectorServiceAdapter",
    "build_default_registry",
    "build_scope_key",
    "current_filter_spec",
    "validate_filters",
]
