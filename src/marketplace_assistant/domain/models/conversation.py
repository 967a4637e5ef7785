"""Conversation session models.

A session is an append-only log of ``SessionEvent`` records per owner; the
``ConversationSession`` view is a fold over that log.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from marketplace_assistant.domain.models.utils import utc_now


class MessageRole(str, Enum):
    """Message roles in a conversation."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Message(BaseModel):
    """A single message in a conversation."""

    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utc_now)


class RagContext(BaseModel):
    sources: list[str] = Field(default_factory=list)
    cache_hit: bool = False
    context_count: int = 0


class ExecutedToolCall(BaseModel):
    call_id: str
    function_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    success: bool
    result: Any = None
    error: str | None = None
    duration_ms: float = 0.0
    cached: bool = False

    def to_client_payload(self) -> dict[str, Any]:
        """The tool_result payload sent to the client and kept in cache snapshots."""
        return {
            "call_id": self.call_id,
            "function_name": self.function_name,
            "success": self.success,
            "result": self.result,
            "error": self.error,
        }


class PerformanceStats(BaseModel):
    total_interactions: int = 0
    avg_response_time_ms: float = 0.0
    cache_hit_rate: float = 0.0


class SessionEventKind(str, Enum):
    MESSAGE = "message"
    TOOL_CALLS = "tool_calls"
    TURN = "turn"


class SessionEvent(BaseModel):
    seq: int
    owner_id: str
    kind: SessionEventKind
    payload: dict[str, Any]
    timestamp: datetime = Field(default_factory=utc_now)


class ConversationSession(BaseModel):
    """Per-owner view folded from the session event log."""

    owner_id: str
    messages: list[Message] = Field(default_factory=list)
    rag_context: RagContext = Field(default_factory=RagContext)
    tool_history: list[ExecutedToolCall] = Field(default_factory=list)
    performance: PerformanceStats = Field(default_factory=PerformanceStats)
    last_seq: int = -1
    cache_hits: int = 0

    @classmethod
    def from_events(cls, owner_id: str, events: list[SessionEvent]) -> "ConversationSession":
        session = cls(owner_id=owner_id)
        for event in sorted(events, key=lambda e: e.seq):
            session.apply(event)
        return session

    def apply(self, event: SessionEvent) -> None:
        """Fold one event into the view. Events at or below ``last_seq`` are ignored."""
        if event.seq <= self.last_seq:
            return

        if event.kind == SessionEventKind.MESSAGE:
            self.messages.append(Message.model_validate(event.payload))
        elif event.kind == SessionEventKind.TOOL_CALLS:
            self.tool_history.extend(ExecutedToolCall.model_validate(c) for c in event.payload["calls"])
        elif event.kind == SessionEventKind.TURN:
            self.rag_context = RagContext.model_validate(event.payload["rag_context"])
            self._record_turn(event.payload.get("response_time_ms", 0.0), self.rag_context.cache_hit)

        self.last_seq = event.seq

    def _record_turn(self, response_time_ms: float, cache_hit: bool) -> None:
        perf = self.performance
        total = perf.total_interactions + 1
        perf.avg_response_time_ms = perf.avg_response_time_ms + (response_time_ms - perf.avg_response_time_ms) / total
        perf.total_interactions = total
        if cache_hit:
            self.cache_hits += 1
        perf.cache_hit_rate = self.cache_hits / total

    def recent_messages(self, limit: int) -> list[Message]:
        return self.messages[-limit:] if limit > 0 else []
