"""Vector Service Adapter: the single entry point to the embedding and chat providers."""

import asyncio
from collections.abc import AsyncIterator
from typing import Any

from marketplace_assistant.core.circuit_breaker import CircuitBreaker, RetryWithCircuitBreaker
from marketplace_assistant.core.config import settings
from marketplace_assistant.core.errors import TransientProviderError
from marketplace_assistant.core.logging import get_logger
from marketplace_assistant.domain.models import StreamDelta
from marketplace_assistant.domain.services import ChatCompletionService, EmbeddingService

logger = get_logger(__name__)


class VectorServiceAdapter:
    """Wraps the providers behind ``embed`` and ``chat_complete``.

    Transient failures are retried ``max_retries`` times with exponential
    backoff. A chat stream is only retried while it has produced nothing:
    once a delta has reached the caller, a replay would duplicate output.
    """

    def __init__(
        self,
        embeddings: EmbeddingService,
        chat: ChatCompletionService,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
    ) -> None:
        self.embeddings = embeddings
        self.chat = chat

        max_retries = settings.provider_max_retries if max_retries is None else max_retries
        backoff_seconds = settings.provider_retry_backoff_seconds if backoff_seconds is None else backoff_seconds

        self._embed_breaker: CircuitBreaker = CircuitBreaker(name="embeddings", failure_threshold=5)
        self._chat_breaker: CircuitBreaker = CircuitBreaker(name="chat_completion", failure_threshold=5)
        self._embed_retry = RetryWithCircuitBreaker(
            self._embed_breaker, max_retries=max_retries, initial_delay=backoff_seconds
        )
        self._chat_retry = RetryWithCircuitBreaker(
            self._chat_breaker, max_retries=max_retries, initial_delay=backoff_seconds
        )

    @property
    def dimensions(self) -> int:
        return self.embeddings.get_model_dimensions()

    async def embed(self, text: str) -> list[float]:
        return await self._embed_retry.call_async(self.embeddings.embed_text, text)

    async def chat_complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamDelta]:
        attempts = self._chat_retry.max_retries + 1

        for attempt in range(1, attempts + 1):
            self._chat_breaker.ensure_available("chat_complete")
            produced = False
            try:
                async for delta in self.chat.chat_complete(messages, tools):
                    produced = True
                    yield delta
            except TransientProviderError as e:
                self._chat_breaker.record_failure(e)
                if produced or attempt >= attempts:
                    raise
                delay = self._chat_retry.backoff_delay(attempt)
                logger.info(
                    "Retrying chat completion after transient failure",
                    attempt=attempt,
                    delay_seconds=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)
                continue

            self._chat_breaker.record_success()
            return

    def health(self) -> dict[str, Any]:
        return {
            "embeddings": self._embed_breaker.get_state(),
            "chat_completion": self._chat_breaker.get_state(),
        }
