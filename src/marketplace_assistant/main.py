"""Marketplace Assistant FastAPI application.

Wires the providers, the persistence backend and the conversation core into
the app lifecycle, and starts background maintenance.
"""

# Configure Logfire and logging
# Pass token from environment if available
import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import logfire
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from neo4j import AsyncDriver

from marketplace_assistant.api import dependencies
from marketplace_assistant.api import router as api_router
from marketplace_assistant.api.endpoints import core
from marketplace_assistant.core.base import ApplicationError
from marketplace_assistant.core.config import settings
from marketplace_assistant.core.error_context import ErrorContextManager
from marketplace_assistant.core.handlers import GlobalErrorHandler
from marketplace_assistant.core.logging import get_logger, setup_logging
from marketplace_assistant.infrastructure.embeddings.factory import create_embedding_service
from marketplace_assistant.infrastructure.llm.openai_chat import OpenAIChatService
from marketplace_assistant.infrastructure.neo4j.driver import create_neo4j_driver, ensure_schema
from marketplace_assistant.infrastructure.repositories.cache import InMemoryCacheRepository, Neo4jCacheRepository
from marketplace_assistant.infrastructure.repositories.knowledge import (
    InMemoryKnowledgeRepository,
    Neo4jKnowledgeRepository,
)
from marketplace_assistant.infrastructure.repositories.session import (
    InMemorySessionRepository,
    Neo4jSessionRepository,
)
from marketplace_assistant.services.filter_intelligence import FilterIntelligenceEngine
from marketplace_assistant.services.knowledge_store import KnowledgeStore
from marketplace_assistant.services.maintenance import MaintenanceJobs
from marketplace_assistant.services.monitoring import StageMonitor
from marketplace_assistant.services.orchestrator import ConversationOrchestrator
from marketplace_assistant.services.semantic_cache import SemanticCache
from marketplace_assistant.services.tool_dispatch import build_default_registry
from marketplace_assistant.services.vector_adapter import VectorServiceAdapter

logfire.configure(
    service_name="marketplace-assistant",
    token=os.getenv("LOGFIRE_TOKEN"),
    send_to_logfire="if-token-present",
)
setup_logging(level=logging.DEBUG if settings.debug else logging.INFO)
logger = get_logger(__name__)

# Global variables for application state
neo4j_driver: AsyncDriver | None = None
maintenance: MaintenanceJobs | None = None


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None]:
    """Application lifecycle manager."""
    global neo4j_driver, maintenance

    logger.info("Starting Marketplace Assistant", extra={"storage_backend": settings.storage_backend})

    try:
        if settings.storage_backend == "neo4j":
            neo4j_driver = await create_neo4j_driver()
            await ensure_schema(neo4j_driver)
            knowledge_repo = Neo4jKnowledgeRepository(neo4j_driver)
            cache_repo = Neo4jCacheRepository(neo4j_driver)
            session_repo = Neo4jSessionRepository(neo4j_driver)
        else:
            logger.warning("Using in-memory storage; nothing survives a restart")
            knowledge_repo = InMemoryKnowledgeRepository()
            cache_repo = InMemoryCacheRepository()
            session_repo = InMemorySessionRepository()

        # The exact-text embedding cache needs the graph; it is skipped in memory mode
        embedding_service = create_embedding_service(neo4j_driver, use_cache=neo4j_driver is not None)
        vectors = VectorServiceAdapter(embedding_service, OpenAIChatService())
        dimensions = embedding_service.get_model_dimensions()
        logger.info(f"Using embedding model with {dimensions} dimensions")

        knowledge = KnowledgeStore(knowledge_repo, vectors, dimensions=dimensions)
        cache = SemanticCache(cache_repo, fact_clock=knowledge.last_fact_change, dimensions=dimensions)
        filter_engine = FilterIntelligenceEngine()
        stage_monitor = StageMonitor()
        orchestrator = ConversationOrchestrator(
            vectors=vectors,
            knowledge=knowledge,
            cache=cache,
            sessions=session_repo,
            tools=build_default_registry(),
            filter_engine=filter_engine,
            monitor=stage_monitor,
        )

        # Set global dependencies for API endpoints
        dependencies.vector_adapter = vectors
        dependencies.knowledge_store = knowledge
        dependencies.semantic_cache = cache
        dependencies.filter_engine = filter_engine
        dependencies.orchestrator = orchestrator
        dependencies.stage_monitor = stage_monitor

        if settings.enable_maintenance_jobs:
            maintenance = MaintenanceJobs(knowledge, cache)
            await maintenance.start()
        else:
            logger.info("Maintenance jobs disabled by configuration")

        logger.info("Marketplace Assistant started")

        yield  # Application is running

    except Exception as e:
        logger.error(f"Failed to start Marketplace Assistant: {e}", exc_info=True)
        raise

    finally:
        logger.info("Shutting down Marketplace Assistant")

        if maintenance:
            await maintenance.shutdown()
            maintenance = None

        if neo4j_driver:
            await neo4j_driver.close()
            neo4j_driver = None
            logger.info("Neo4j connection closed")


# Create FastAPI app with lifespan management
app = FastAPI(
    title="Marketplace Assistant API",
    description="Retrieval and tool-execution core for the publisher marketplace chat assistant",
    version="0.1.0",
    lifespan=lifespan,
)

# Enable FastAPI instrumentation for request tracing
logfire.instrument_fastapi(app)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

error_handler = GlobalErrorHandler(ErrorContextManager())


@app.exception_handler(ApplicationError)
async def application_error_handler(request: Request, exc: ApplicationError):
    return await error_handler.handle_application_error(request, exc)


# Mount API routers
app.include_router(api_router, prefix="/api/v1")
app.include_router(core.router)


if __name__ == "__main__":
    """Development server entry point."""
    logger.info("Starting Marketplace Assistant development server...")

    uvicorn.run("marketplace_assistant.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
