"""Shared fixtures: an in-memory assistant wired to fake providers."""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import pytest

from marketplace_assistant.infrastructure.repositories.cache import InMemoryCacheRepository
from marketplace_assistant.infrastructure.repositories.knowledge import InMemoryKnowledgeRepository
from marketplace_assistant.infrastructure.repositories.session import InMemorySessionRepository
from marketplace_assistant.services.filter_intelligence import FilterIntelligenceEngine
from marketplace_assistant.services.knowledge_store import KnowledgeStore
from marketplace_assistant.services.orchestrator import ConversationOrchestrator
from marketplace_assistant.services.semantic_cache import SemanticCache
from marketplace_assistant.services.tool_dispatch import ToolRegistry, build_default_registry
from marketplace_assistant.services.vector_adapter import VectorServiceAdapter

from .fakes import DIMENSIONS, FakeEmbedder, ScriptedChat


@dataclass
class Harness:
    embedder: FakeEmbedder
    chat: ScriptedChat
    vectors: VectorServiceAdapter
    knowledge_repo: InMemoryKnowledgeRepository
    cache_repo: InMemoryCacheRepository
    sessions: InMemorySessionRepository
    knowledge: KnowledgeStore
    cache: SemanticCache
    registry: ToolRegistry
    filter_engine: FilterIntelligenceEngine
    orchestrator: ConversationOrchestrator


def build_harness(
    chat: ScriptedChat | None = None,
    embedder: FakeEmbedder | None = None,
    registry: ToolRegistry | None = None,
    **orchestrator_options: Any,
) -> Harness:
    embedder = embedder or FakeEmbedder()
    chat = chat or ScriptedChat()
    vectors = VectorServiceAdapter(embedder, chat, max_retries=1, backoff_seconds=0)
    knowledge_repo = InMemoryKnowledgeRepository()
    cache_repo = InMemoryCacheRepository()
    sessions = InMemorySessionRepository()
    knowledge = KnowledgeStore(knowledge_repo, vectors, dimensions=DIMENSIONS)
    cache = SemanticCache(cache_repo, fact_clock=knowledge.last_fact_change, dimensions=DIMENSIONS)
    registry = registry or build_default_registry()
    filter_engine = FilterIntelligenceEngine()
    orchestrator = ConversationOrchestrator(
        vectors=vectors,
        knowledge=knowledge,
        cache=cache,
        sessions=sessions,
        tools=registry,
        filter_engine=filter_engine,
        **orchestrator_options,
    )
    return Harness(
        embedder=embedder,
        chat=chat,
        vectors=vectors,
        knowledge_repo=knowledge_repo,
        cache_repo=cache_repo,
        sessions=sessions,
        knowledge=knowledge,
        cache=cache,
        registry=registry,
        filter_engine=filter_engine,
        orchestrator=orchestrator,
    )


@pytest.fixture
def make_harness() -> Callable[..., Harness]:
    return build_harness


@pytest.fixture
def harness() -> Harness:
    return build_harness()
