"""Domain models for the marketplace assistant."""

from .cache import CacheEntry, CacheStats
from .conversation import (
    ConversationSession,
    ExecutedToolCall,
    Message,
    MessageRole,
    PerformanceStats,
    RagContext,
    SessionEvent,
    SessionEventKind,
)
from .filters import FilterDecision, FilterIntent, FilterSpec
from .knowledge import ContentType, EmbeddingType, KnowledgeEntry, ScoredEntry
from .tools import (
    ClientEvent,
    ReconstructedToolCall,
    ReconstructionResult,
    StreamDelta,
    ToolCallFailure,
    ToolCallFragment,
    ToolExecutionResult,
)

__all__ = [
    # Cache
    "CacheEntry",
    "CacheStats",
    # Tools
    "ClientEvent",
    # Knowledge
    "ContentType",
    # Conversation
    "ConversationSession",
    "EmbeddingType",
    "ExecutedToolCall",
    # Filters
    "FilterDecision",
    "FilterIntent",
    "FilterSpec",
    "KnowledgeEntry",
    "Message",
    "MessageRole",
    "PerformanceStats",
    "RagContext",
    "ReconstructedToolCall",
    "ReconstructionResult",
    "ScoredEntry",
    "SessionEvent",
    "SessionEventKind",
    "StreamDelta",
    "ToolCallFailure",
    "ToolCallFragment",
    "ToolExecutionResult",
]
