"""Voyage AI embedding service."""

import os
from typing import Any, cast

import voyageai
import voyageai.error

from marketplace_assistant.core.base import ApplicationError, ErrorLevel, ServiceErrorDetails
from marketplace_assistant.core.config import settings
from marketplace_assistant.core.decorators import with_error_handling
from marketplace_assistant.core.errors import (
    AuthenticationError,
    ProcessingError,
    ProviderTimeoutError,
    RateLimitError,
    TransientProviderError,
)
from marketplace_assistant.core.logging import get_logger
from marketplace_assistant.domain.models import EmbeddingType
from marketplace_assistant.infrastructure.embeddings.cache import EmbeddingCache

logger = get_logger(__name__)

MODEL_DIMENSIONS = {
    "voyage-3-large": 1024,
    "voyage-3.5": 1024,
    "voyage-3.5-lite": 1024,
    "voyage-3": 1024,
    "voyage-3-lite": 512,
    "voyage-large-2": 1536,
    "voyage-code-2": 1536,
}


class VoyageEmbeddingService:
    """Voyage AI embedding service implementation.

    Provider failures are mapped onto the application's error taxonomy so the
    vector service adapter can decide what to retry. This class does not retry
    on its own.
    """

    @with_error_handling(error_level=ErrorLevel.ERROR)
    def __init__(
        self,
        model: str | None = None,
        default_embedding_type: EmbeddingType = EmbeddingType.QUERY,
        cache: EmbeddingCache | None = None,
        api_key: str | None = None,
    ) -> None:
        """Initialize the Voyage embedding service.

        Raises:
            AuthenticationError: If the API key is not configured
        """
        api_key = api_key or settings.voyage_api_key
        if not api_key:
            raise AuthenticationError(
                message="Voyage API key not found in settings",
                details=ServiceErrorDetails(
                    source="VoyageEmbeddingService",
                    operation="initialization",
                    service_name="Voyage AI",
                ),
            )

        self.model = model or settings.voyage_model
        self.default_embedding_type = default_embedding_type

        os.environ["VOYAGE_API_KEY"] = api_key
        # voyageai doesn't expose a public client type
        self.client: Any = voyageai.AsyncClient()
        self.cache = cache

    async def _call_voyage_api(self, texts: list[str], input_type: EmbeddingType) -> list[list[float]]:
        try:
            response = await self.client.embed(texts=texts, model=self.model, input_type=input_type.value)
        except Exception as e:
            raise self._handle_error(e, texts) from e

        embeddings = getattr(response, "embeddings", [])
        if not embeddings or len(embeddings) != len(texts):
            raise ProcessingError(
                message="Voyage API returned incomplete embeddings",
                details=ServiceErrorDetails(
                    source="voyage_embedding",
                    operation="embed",
                    service_name="voyage",
                    endpoint="/embeddings",
                    status_code=200,
                ),
            )
        return [cast("list[float]", emb) for emb in embeddings]

    @with_error_handling(error_level=ErrorLevel.ERROR)
    async def embed_text(self, text: str) -> list[float]:
        """Generate an embedding vector for the provided text with caching."""
        if not text.strip():
            raise ProcessingError(
                message="Cannot embed empty text",
                details={"source": "voyage_embedding", "operation": "embed_text", "text_length": len(text)},
            )

        if self.cache:
            cached = await self.cache.get(text, self.model, self.get_model_dimensions())
            if cached is not None:
                logger.debug("Embedding cache hit", model=self.model, text_length=len(text))
                return cached

        embedding = (await self._call_voyage_api([text], self.default_embedding_type))[0]

        if self.cache:
            await self.cache.put(text, self.model, embedding)

        return embedding

    @with_error_handling(error_level=ErrorLevel.ERROR)
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate document embeddings for a batch of texts.

        Raises:
            ProcessingError: If the batch holds only empty texts or the response is incomplete
        """
        if not texts:
            return []

        valid_texts = [text for text in texts if text.strip()]
        if not valid_texts:
            raise ProcessingError(
                message="Batch contains only empty texts",
                details={
                    "source": "voyage_embedding",
                    "operation": "embed_batch",
                    "original_batch_size": len(texts),
                },
            )

        return await self._call_voyage_api(valid_texts, EmbeddingType.DOCUMENT)

    def _handle_error(self, e: Exception, texts: list[str]) -> ApplicationError:
        """Map provider errors to our exception types."""

        def details(status_code: int | None) -> ServiceErrorDetails:
            return ServiceErrorDetails(
                source="VoyageEmbeddingService",
                operation="embed",
                service_name="Voyage AI",
                endpoint="/embeddings",
                status_code=status_code,
            )

        error_msg = str(e).lower()
        if isinstance(e, voyageai.error.RateLimitError) or "rate limit" in error_msg:
            return RateLimitError(message="Rate limit exceeded for embeddings API", details=details(429))
        if isinstance(e, voyageai.error.Timeout | voyageai.error.APIConnectionError) or (
            "timeout" in error_msg or "connection" in error_msg
        ):
            return ProviderTimeoutError(message="Embeddings API request timed out", details=details(408))
        if isinstance(e, voyageai.error.ServiceUnavailableError):
            return TransientProviderError(message="Embeddings API unavailable", details=details(503))
        if isinstance(e, voyageai.error.AuthenticationError) or "api key" in error_msg:
            return AuthenticationError(message="Authentication failed for embeddings API", details=details(401))

        return ProcessingError(
            message=f"Failed to generate embeddings: {e!s}",
            details={
                "source": "VoyageEmbeddingService",
                "operation": "embed",
                "batch_size": len(texts),
                "model": self.model,
                "original_error": str(e),
            },
        )

    def get_model_dimensions(self) -> int:
        """Dimensionality of the configured Voyage model."""
        return MODEL_DIMENSIONS.get(self.model, settings.embedding_dimensions)
