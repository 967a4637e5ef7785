"""Chat API endpoints: the streamed turn, the session view and filter extraction."""

from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from marketplace_assistant.api.dependencies import get_filter_engine, get_orchestrator
from marketplace_assistant.core.decorators import with_error_handling
from marketplace_assistant.core.logging import get_logger
from marketplace_assistant.domain.models import ConversationSession, FilterDecision
from marketplace_assistant.services.filter_intelligence import FilterIntelligenceEngine
from marketplace_assistant.services.orchestrator import ConversationOrchestrator

logger = get_logger(__name__)
router = APIRouter()


class ChatRequest(BaseModel):
    """One user message. ``owner_id`` comes from the surrounding application's auth."""

    owner_id: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    enabled_tools: list[str] | None = Field(None, description="Tools the model may call; all when omitted")
    current_filters: dict[str, Any] | None = Field(None, description="Active filters, storefront parameter names")
    page_context: dict[str, Any] | None = None


class FilterExtractRequest(BaseModel):
    owner_id: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    current_filters: dict[str, Any] | None = None


@router.post("/stream", operation_id="chat_stream")
async def chat_stream(
    request: ChatRequest,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    """Run a turn and stream its events as server-sent events."""
    logger.info(
        "Chat turn requested",
        extra={
            "owner_id": request.owner_id,
            "message_length": len(request.message),
            "enabled_tools": request.enabled_tools,
        },
    )

    async def events() -> AsyncIterator[str]:
        turn = orchestrator.stream_turn(
            request.owner_id,
            request.message,
            enabled_tools=request.enabled_tools,
            current_filters=request.current_filters,
            page_context=request.page_context,
        )
        async with aclosing(turn) as stream:
            async for event in stream:
                yield event.to_sse()

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/session/{owner_id}", response_model=ConversationSession, operation_id="chat_session")
@with_error_handling(reraise=True)
async def get_session(
    owner_id: str,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
) -> ConversationSession:
    """The owner's conversation, folded from its event log."""
    return await orchestrator.get_session(owner_id)


@router.post("/filters/extract", response_model=FilterDecision, operation_id="extract_filters")
@with_error_handling(reraise=True)
async def extract_filters(
    request: FilterExtractRequest,
    engine: FilterIntelligenceEngine = Depends(get_filter_engine),
) -> FilterDecision:
    """Translate a message into a filter decision without running a turn."""
    return engine.extract(request.owner_id, request.message, request.current_filters)
