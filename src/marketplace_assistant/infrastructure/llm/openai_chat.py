"""OpenAI streaming chat-completion service.

This is the streaming protocol adapter: every provider tool-call delta becomes
one ``ToolCallFragment`` keyed by the provider's ``index``. ``id`` and
``function.name`` usually arrive on the first delta of a call only, so the
adapter stamps each fragment with a per-index ``sequence`` in arrival order.
"""

from collections import defaultdict
from collections.abc import AsyncIterator
from typing import Any

import openai
from openai import AsyncOpenAI

from marketplace_assistant.core.base import AIServiceErrorDetails, ApplicationError
from marketplace_assistant.core.config import settings
from marketplace_assistant.core.errors import (
    AuthenticationError,
    ProcessingError,
    ProviderTimeoutError,
    RateLimitError,
    TransientProviderError,
)
from marketplace_assistant.core.logging import get_logger
from marketplace_assistant.domain.models import StreamDelta, ToolCallFragment

logger = get_logger(__name__)


class OpenAIChatService:
    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> None:
        if client is None:
            if not settings.openai_api_key:
                raise AuthenticationError(
                    message="OpenAI API key not found in settings",
                    details=AIServiceErrorDetails(
                        source="OpenAIChatService",
                        operation="initialization",
                        service_name="OpenAI",
                    ),
                )
            client = AsyncOpenAI(api_key=settings.openai_api_key)

        self.client = client
        self.model = model or settings.chat_model
        self.temperature = settings.chat_temperature if temperature is None else temperature
        self.max_tokens = max_tokens or settings.chat_max_tokens

    async def chat_complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """Stream text deltas, tool-call fragments and the finish reason."""
        request: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": True,
        }
        if tools:
            request["tools"] = tools
            request["tool_choice"] = "auto"

        sequences: dict[int, int] = defaultdict(int)

        try:
            stream = await self.client.chat.completions.create(**request)
            async for chunk in stream:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta

                if delta is not None and delta.content:
                    yield StreamDelta(text_delta=delta.content)

                for tool_call in (delta.tool_calls if delta is not None else None) or []:
                    function = tool_call.function
                    yield StreamDelta(
                        fragment=ToolCallFragment(
                            call_index=tool_call.index,
                            call_id=tool_call.id or None,
                            function_name=(function.name or None) if function else None,
                            arguments_chunk=(function.arguments or "") if function else "",
                            sequence=sequences[tool_call.index],
                        )
                    )
                    sequences[tool_call.index] += 1

                if choice.finish_reason:
                    yield StreamDelta(finish_reason=choice.finish_reason)
        except openai.OpenAIError as e:
            raise self._handle_error(e) from e

    def _handle_error(self, e: openai.OpenAIError) -> ApplicationError:
        """Map provider errors to our exception types."""
        status_code = getattr(e, "status_code", None)
        details = AIServiceErrorDetails(
            source="OpenAIChatService",
            operation="chat_complete",
            service_name="OpenAI",
            endpoint="/chat/completions",
            status_code=status_code,
            model_name=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )

        if isinstance(e, openai.RateLimitError):
            return RateLimitError(message="Rate limit exceeded for chat completions", details=details)
        # APITimeoutError is a subclass of APIConnectionError
        if isinstance(e, openai.APITimeoutError):
            return ProviderTimeoutError(message="Chat completion request timed out", details=details)
        if isinstance(e, openai.APIConnectionError | openai.InternalServerError):
            return TransientProviderError(message=f"Chat completion unavailable: {e!s}", details=details)
        if isinstance(e, openai.AuthenticationError | openai.PermissionDeniedError):
            return AuthenticationError(message="Authentication failed for chat completions", details=details)

        logger.error("Chat completion failed", error=str(e), status_code=status_code)
        return ProcessingError(message=f"Chat completion failed: {e!s}", details=details)
