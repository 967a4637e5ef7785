"""Construction of the embedding provider.

The knowledge store and semantic cache enforce one vector length, so the
provider is refused at startup if its model disagrees with the configured one.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from marketplace_assistant.core.base import ErrorCode, ServiceErrorDetails
from marketplace_assistant.core.config import settings
from marketplace_assistant.core.errors import ServiceError
from marketplace_assistant.core.logging import get_logger
from marketplace_assistant.infrastructure.embeddings.cache import EmbeddingCache
from marketplace_assistant.infrastructure.embeddings.voyage import VoyageEmbeddingService

if TYPE_CHECKING:
    from neo4j import AsyncDriver

    from marketplace_assistant.domain.services import EmbeddingService

logger = get_logger(__name__)


def check_dimensions(service: EmbeddingService, expected: int | None = None) -> int:
    """Return the service's vector length, or raise if it is not ``expected``."""
    expected = expected or settings.embedding_dimensions
    dimensions = service.get_model_dimensions()
    if dimensions != expected:
        raise ServiceError(
            message=f"Embedding model produces {dimensions} dimensions, store is configured for {expected}",
            details=ServiceErrorDetails(
                source="embedding_factory",
                operation="check_dimensions",
                service_name=type(service).__name__,
            ),
            code=ErrorCode.CONFIG_INVALID,
        )
    return dimensions


def create_embedding_service(neo4j_driver: AsyncDriver | None = None, use_cache: bool = True) -> EmbeddingService:
    """Voyage embeddings, with the exact-text cache when a graph is available."""
    cache = None
    if use_cache and neo4j_driver is not None:
        cache = EmbeddingCache(neo4j_driver)
    elif use_cache:
        logger.info("No Neo4j driver; embedding cache disabled")

    service = VoyageEmbeddingService(cache=cache)
    dimensions = check_dimensions(service)
    logger.info("Embedding service ready", model=service.model, dimensions=dimensions, cached=cache is not None)
    return service
