"""Conversation Orchestrator: runs one chat turn end to end and streams it to the client.

A turn moves through ``TurnState`` in order::

    Idle -> Embedding -> CacheCheck -> Retrieving -> Streaming
         -> Reconstructing -> Executing -> Persisting -> Idle

A cache hit jumps from CacheCheck straight to Persisting. Turns of one owner
never overlap; turns of different owners run concurrently.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from marketplace_assistant.core.base import ApplicationError, ServiceErrorDetails
from marketplace_assistant.core.config import settings
from marketplace_assistant.core.errors import ProviderTimeoutError
from marketplace_assistant.core.logging import get_logger, log_context
from marketplace_assistant.domain.models import (
    CacheEntry,
    ClientEvent,
    ContentType,
    ConversationSession,
    ExecutedToolCall,
    FilterDecision,
    FilterIntent,
    FilterSpec,
    Message,
    MessageRole,
    RagContext,
    ScoredEntry,
    SessionEventKind,
)
from marketplace_assistant.services.fact_extraction import FactExtractor
from marketplace_assistant.services.filter_intelligence import FilterIntelligenceEngine, current_filter_spec
from marketplace_assistant.services.monitoring import StageMonitor
from marketplace_assistant.services.semantic_cache import build_scope_key
from marketplace_assistant.services.tool_dispatch import ToolExecutor
from marketplace_assistant.services.tool_reconstructor import ToolCallReconstructor

if TYPE_CHECKING:
    from marketplace_assistant.domain.services import SessionRepository
    from marketplace_assistant.services.knowledge_store import KnowledgeStore
    from marketplace_assistant.services.semantic_cache import SemanticCache
    from marketplace_assistant.services.tool_dispatch import ToolRegistry
    from marketplace_assistant.services.vector_adapter import VectorServiceAdapter

logger = get_logger(__name__)

DEGRADED_RESPONSE = "I couldn't process that right now. Please try again in a moment."


class TurnState(str, Enum):
    IDLE = "idle"
    EMBEDDING = "embedding"
    CACHE_CHECK = "cache_check"
    RETRIEVING = "retrieving"
    STREAMING = "streaming"
    RECONSTRUCTING = "reconstructing"
    EXECUTING = "executing"
    PERSISTING = "persisting"


@dataclass
class Turn:
    """Everything one turn produced, up to the point it stopped."""

    turn_id: str
    owner_id: str
    message: str
    scope_key: str
    enabled_tools: list[str]
    state: TurnState = TurnState.IDLE
    query_embedding: list[float] | None = None
    response_parts: list[str] = field(default_factory=list)
    executed: list[ExecutedToolCall] = field(default_factory=list)
    rag_context: RagContext = field(default_factory=RagContext)
    decision: FilterDecision | None = None
    cache_hit: bool = False
    degraded: bool = False
    partial: bool = False
    started: float = field(default_factory=time.perf_counter)

    @property
    def response_text(self) -> str:
        return "".join(self.response_parts)


class ConversationOrchestrator:
    def __init__(
        self,
        vectors: VectorServiceAdapter,
        knowledge: KnowledgeStore,
        cache: SemanticCache,
        sessions: SessionRepository,
        tools: ToolRegistry,
        filter_engine: FilterIntelligenceEngine | None = None,
        fact_extractor: FactExtractor | None = None,
        idle_timeout_seconds: float | None = None,
        top_k: int | None = None,
        history_window: int | None = None,
        monitor: StageMonitor | None = None,
    ) -> None:
        self.vectors = vectors
        self.knowledge = knowledge
        self.cache = cache
        self.sessions = sessions
        self.tools = tools
        self.executor = ToolExecutor(tools)
        self.filter_engine = filter_engine or FilterIntelligenceEngine()
        self.fact_extractor = fact_extractor or FactExtractor()
        self.idle_timeout = (
            settings.stream_idle_timeout_seconds if idle_timeout_seconds is None else idle_timeout_seconds
        )
        self.top_k = settings.knowledge_top_k if top_k is None else top_k
        self.history_window = settings.history_window if history_window is None else history_window
        self.monitor = monitor or StageMonitor()

        # Per-owner turn locks, dropped once no turn holds or awaits them
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._producers: set[asyncio.Task] = set()

    async def get_session(self, owner_id: str) -> ConversationSession:
        return ConversationSession.from_events(owner_id, await self.sessions.events(owner_id))

    async def stream_turn(
        self,
        owner_id: str,
        message: str,
        *,
        enabled_tools: Iterable[str] | None = None,
        current_filters: FilterSpec | dict[str, Any] | None = None,
        page_context: dict[str, Any] | None = None,
    ) -> AsyncIterator[ClientEvent]:
        """Run one turn and yield its client events, ending with ``done``.

        Closing this generator early counts as a client disconnect: the turn
        stops reading the model, drops unfinished tool calls and still
        persists what it produced.
        """
        queue: asyncio.Queue[ClientEvent | None] = asyncio.Queue()
        disconnected = asyncio.Event()

        producer = asyncio.create_task(
            self._produce(owner_id, message, enabled_tools, current_filters, page_context, queue, disconnected)
        )
        self._producers.add(producer)
        producer.add_done_callback(self._producers.discard)

        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
        finally:
            if not producer.done():
                disconnected.set()
            # The turn finishes persisting even if this consumer is cancelled
            await asyncio.shield(producer)

    async def _produce(
        self,
        owner_id: str,
        message: str,
        enabled_tools: Iterable[str] | None,
        current_filters: FilterSpec | dict[str, Any] | None,
        page_context: dict[str, Any] | None,
        queue: asyncio.Queue[ClientEvent | None],
        disconnected: asyncio.Event,
    ) -> None:
        try:
            async with self._owner_lock(owner_id):
                turn_id = uuid.uuid4().hex[:12]
                with log_context(owner_id=owner_id, turn_id=turn_id):
                    await self._run_turn(
                        turn_id, owner_id, message, enabled_tools, current_filters, page_context, queue, disconnected
                    )
        finally:
            queue.put_nowait(None)

    @asynccontextmanager
    async def _owner_lock(self, owner_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(owner_id, asyncio.Lock())
        self._lock_users[owner_id] = self._lock_users.get(owner_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[owner_id] -= 1
            if not self._lock_users[owner_id]:
                del self._lock_users[owner_id]
                del self._locks[owner_id]

    def _transition(self, turn: Turn, state: TurnState) -> None:
        logger.debug("Turn state", previous=turn.state.value, state=state.value)
        turn.state = state

    async def _run_turn(
        self,
        turn_id: str,
        owner_id: str,
        message: str,
        enabled_tools: Iterable[str] | None,
        current_filters: FilterSpec | dict[str, Any] | None,
        page_context: dict[str, Any] | None,
        queue: asyncio.Queue[ClientEvent | None],
        disconnected: asyncio.Event,
    ) -> None:
        current = current_filter_spec(current_filters)
        tool_names = self.tools.enabled(enabled_tools)
        turn = Turn(
            turn_id=turn_id,
            owner_id=owner_id,
            message=message,
            scope_key=build_scope_key(tool_names, current.to_params(), page_context),
            enabled_tools=tool_names,
        )
        logger.info("Turn started", tools=tool_names)

        turn.decision = self.filter_engine.extract(owner_id, message, current)

        try:
            await self._serve(turn, current, page_context, queue, disconnected)
        except Exception as e:
            self._degrade(turn, e, queue)

        self._transition(turn, TurnState.PERSISTING)
        with self.monitor.track("persisting") as span:
            failed_writes = await self._persist(turn)
            span.set_attribute("failed_writes", failed_writes)
        self._transition(turn, TurnState.IDLE)

        queue.put_nowait(
            ClientEvent(
                type="done",
                rag_context=turn.rag_context.model_dump(),
                filter_decision=turn.decision.summary() if turn.decision else None,
                cache_hit=turn.cache_hit,
                degraded=turn.degraded,
                partial=turn.partial,
            )
        )
        logger.info(
            "Turn finished",
            cache_hit=turn.cache_hit,
            degraded=turn.degraded,
            partial=turn.partial,
            tool_calls=len(turn.executed),
            response_time_ms=round((time.perf_counter() - turn.started) * 1000, 2),
        )

    @staticmethod
    def _log_skipped(event: str, error: Exception, **fields: Any) -> None:
        """Log a failure the turn carries on past. Call from inside the ``except`` block."""
        if isinstance(error, ApplicationError):
            logger.warning(event, error_code=error.code.value, error=error.message, **fields)
        else:
            logger.error(event, error=str(error), exc_info=True, **fields)

    async def _attempt(self, event: str, write: Awaitable[Any], **fields: Any) -> bool:
        try:
            await write
        except Exception as e:
            self._log_skipped(event, e, **fields)
            return False
        return True

    async def _serve(
        self,
        turn: Turn,
        current: FilterSpec,
        page_context: dict[str, Any] | None,
        queue: asyncio.Queue[ClientEvent | None],
        disconnected: asyncio.Event,
    ) -> None:
        self._transition(turn, TurnState.EMBEDDING)
        try:
            with self.monitor.track("embedding"):
                turn.query_embedding = await self.vectors.embed(turn.message)
        except ApplicationError as e:
            # Without a vector there is no cache or retrieval, but the model can still answer
            logger.warning("Query embedding failed; skipping cache and retrieval", error=e.message)

        scored: list[ScoredEntry] = []
        if turn.query_embedding is not None:
            self._transition(turn, TurnState.CACHE_CHECK)
            hit = await self._cache_lookup(turn)
            if hit is not None:
                self._replay(turn, hit, queue)
                return

            self._transition(turn, TurnState.RETRIEVING)
            scored = await self._retrieve(turn)

        try:
            session = await self.get_session(turn.owner_id)
        except Exception as e:
            self._log_skipped("Session history unavailable; answering without it", e)
            session = ConversationSession(owner_id=turn.owner_id)
        prompt = self._build_prompt(turn, session, scored, page_context)

        self._transition(turn, TurnState.STREAMING)
        reconstructor = ToolCallReconstructor()
        with self.monitor.track("streaming") as span:
            completed = await self._stream(turn, prompt, reconstructor, queue, disconnected)
            span.set_attribute("completed", completed)
        if not completed:
            return

        self._transition(turn, TurnState.RECONSTRUCTING)
        result = reconstructor.finish()

        if result.calls or result.failures:
            self._transition(turn, TurnState.EXECUTING)
            with self.monitor.track("executing", tool_calls=len(result.calls)):
                executed = await self.executor.execute_all(turn.owner_id, result.calls, turn.enabled_tools)
            by_index = [(call.call_index, done) for call, done in zip(result.calls, executed, strict=True)]
            by_index.extend((failure.call_index, ToolExecutor.unparseable(failure)) for failure in result.failures)
            for _, executed_call in sorted(by_index, key=lambda pair: pair[0]):
                turn.executed.append(executed_call)
                queue.put_nowait(ClientEvent(type="tool_result", cached=False, **executed_call.to_client_payload()))

    async def _cache_lookup(self, turn: Turn) -> CacheEntry | None:
        try:
            with self.monitor.track("cache_check") as span:
                hit = await self.cache.lookup(turn.owner_id, turn.query_embedding, turn.scope_key)
                span.set_attribute("cache_hit", hit is not None)
        except Exception as e:
            self._log_skipped("Cache lookup failed; treating as miss", e)
            return None
        return hit

    def _replay(self, turn: Turn, hit: CacheEntry, queue: asyncio.Queue[ClientEvent | None]) -> None:
        turn.cache_hit = True
        turn.rag_context = RagContext(cache_hit=True)
        turn.response_parts.append(hit.response_text)
        if hit.response_text:
            queue.put_nowait(ClientEvent(type="content", delta=hit.response_text))
        for payload in hit.tool_calls_snapshot:
            executed = ExecutedToolCall.model_validate({**payload, "cached": True})
            turn.executed.append(executed)
            queue.put_nowait(ClientEvent(type="tool_result", cached=True, **executed.to_client_payload()))

    async def _retrieve(self, turn: Turn) -> list[ScoredEntry]:
        try:
            with self.monitor.track("retrieving") as span:
                scored = await self.knowledge.query(turn.owner_id, turn.query_embedding, self.top_k)
                span.set_attribute("context_count", len(scored))
        except Exception as e:
            self._log_skipped("Knowledge retrieval failed; answering without context", e)
            return []
        turn.rag_context = RagContext(sources=[str(s.entry.id) for s in scored], context_count=len(scored))
        return scored

    def _build_prompt(
        self,
        turn: Turn,
        session: ConversationSession,
        scored: list[ScoredEntry],
        page_context: dict[str, Any] | None,
    ) -> list[dict[str, Any]]:
        sections = [settings.system_prompt, f"Your name is {settings.assistant_name}."]

        facts = [s.entry.content for s in scored if s.entry.content_type == ContentType.USER_FACT]
        snippets = [s.entry.content for s in scored if s.entry.content_type == ContentType.CONVERSATION]
        if facts:
            sections.append("Known facts about the user:\n" + "\n".join(f"- {fact}" for fact in facts))
        if snippets:
            sections.append("Relevant earlier conversation:\n" + "\n".join(f"- {snippet}" for snippet in snippets))

        decision = turn.decision
        if decision is not None and decision.intent != FilterIntent.NONE:
            guidance = (
                "The filter analysis is confident; apply these filters with applyFilters."
                if decision.should_update
                else "The filter analysis is not confident enough to change filters; answer the question "
                "or ask the user to clarify instead of calling applyFilters."
            )
            sections.append(f"Filter analysis: {json.dumps(decision.summary())}\n{guidance}")

        if page_context:
            sections.append(f"Current page context: {json.dumps(page_context, default=str)}")

        messages: list[dict[str, Any]] = [{"role": MessageRole.SYSTEM.value, "content": "\n\n".join(sections)}]
        messages.extend(
            {"role": m.role.value, "content": m.content}
            for m in session.recent_messages(self.history_window)
            if m.role != MessageRole.SYSTEM
        )
        messages.append({"role": MessageRole.USER.value, "content": turn.message})
        return messages

    async def _stream(
        self,
        turn: Turn,
        prompt: list[dict[str, Any]],
        reconstructor: ToolCallReconstructor,
        queue: asyncio.Queue[ClientEvent | None],
        disconnected: asyncio.Event,
    ) -> bool:
        """Forward text deltas and fold fragments until the stream ends.

        Returns False if the client went away first.

        Raises:
            ProviderTimeoutError: no delta arrived within the idle timeout
            MalformedStreamError: fragments broke ordering or identity rules
        """
        tools = self.tools.openai_tools(turn.enabled_tools) or None
        stream = self.vectors.chat_complete(prompt, tools)
        gone = asyncio.create_task(disconnected.wait())
        next_delta: asyncio.Future | None = None

        try:
            while True:
                next_delta = asyncio.ensure_future(anext(stream))
                done, _ = await asyncio.wait(
                    {next_delta, gone}, timeout=self.idle_timeout, return_when=asyncio.FIRST_COMPLETED
                )

                if next_delta not in done:
                    next_delta.cancel()
                    await asyncio.gather(next_delta, return_exceptions=True)
                    reconstructor.discard()
                    if gone in done:
                        turn.partial = True
                        logger.info("Client disconnected; turn will be persisted as partial")
                        return False
                    raise ProviderTimeoutError(
                        message=f"No model output for {self.idle_timeout:g}s",
                        details=ServiceErrorDetails(
                            source="conversation_orchestrator",
                            operation="stream",
                            service_name="chat_completion",
                        ),
                    )

                try:
                    delta = next_delta.result()
                except StopAsyncIteration:
                    return True

                if delta.text_delta:
                    turn.response_parts.append(delta.text_delta)
                    queue.put_nowait(ClientEvent(type="content", delta=delta.text_delta))
                if delta.fragment is not None:
                    reconstructor.feed(delta.fragment)
        finally:
            gone.cancel()
            if next_delta is not None and not next_delta.done():
                next_delta.cancel()
                await asyncio.gather(next_delta, return_exceptions=True)
            await stream.aclose()

    def _degrade(self, turn: Turn, error: Exception, queue: asyncio.Queue[ClientEvent | None]) -> None:
        if isinstance(error, ApplicationError):
            logger.error(
                "Turn failed; sending degraded response",
                state=turn.state.value,
                error_code=error.code.value,
                error=error.message,
            )
        else:
            logger.error(
                "Turn failed unexpectedly; sending degraded response",
                state=turn.state.value,
                error=str(error),
                exc_info=True,
            )
        turn.degraded = True
        text = DEGRADED_RESPONSE if not turn.response_parts else f"\n\n{DEGRADED_RESPONSE}"
        turn.response_parts.append(text)
        queue.put_nowait(ClientEvent(type="content", delta=text))

    async def _persist(self, turn: Turn) -> int:
        """Append the turn to the session log, then update knowledge and cache.

        Every write is attempted on its own; a failed write is logged and the
        rest still run. Returns the number of writes that failed.
        """
        owner_id = turn.owner_id
        response_text = turn.response_text

        events: list[tuple[SessionEventKind, dict[str, Any]]] = [
            (SessionEventKind.MESSAGE, Message(role=MessageRole.USER, content=turn.message).model_dump(mode="json"))
        ]
        if response_text:
            events.append(
                (
                    SessionEventKind.MESSAGE,
                    Message(role=MessageRole.ASSISTANT, content=response_text).model_dump(mode="json"),
                )
            )
        if turn.executed:
            events.append((SessionEventKind.TOOL_CALLS, {"calls": [c.model_dump(mode="json") for c in turn.executed]}))
        events.append(
            (
                SessionEventKind.TURN,
                {
                    "rag_context": turn.rag_context.model_dump(),
                    "response_time_ms": (time.perf_counter() - turn.started) * 1000,
                    "turn_id": turn.turn_id,
                },
            )
        )

        failed = 0
        for kind, payload in events:
            if not await self._attempt(
                "Session event not stored", self.sessions.append(owner_id, kind.value, payload), kind=kind.value
            ):
                failed += 1

        if turn.query_embedding is not None and response_text and not (turn.cache_hit or turn.degraded):
            if not await self._store_knowledge(
                turn,
                f"User: {turn.message}\nAssistant: {response_text}",
                ContentType.CONVERSATION,
                {"query": turn.message, "response": response_text, "source": "chat_conversation"},
                turn.query_embedding,
            ):
                failed += 1

        stored_facts = 0
        for fact in self.fact_extractor.extract(turn.message):
            # A message that is itself the fact already has its vector
            embedding = turn.query_embedding if fact == turn.message.strip() else None
            if await self._store_knowledge(
                turn, fact, ContentType.USER_FACT, {"query": turn.message, "source": "user_fact"}, embedding
            ):
                stored_facts += 1
            else:
                failed += 1

        if stored_facts and not await self._attempt("Cache invalidation failed", self.cache.invalidate(owner_id)):
            failed += 1

        if self._cacheable(turn) and not await self._attempt(
            "Cache entry not stored",
            self.cache.put(
                owner_id,
                turn.query_embedding,
                turn.scope_key,
                response_text,
                [c.to_client_payload() for c in turn.executed],
            ),
        ):
            failed += 1

        return failed

    async def _store_knowledge(
        self,
        turn: Turn,
        content: str,
        content_type: ContentType,
        metadata: dict[str, Any],
        embedding: list[float] | None,
    ) -> bool:
        return await self._attempt(
            "Knowledge entry not stored; continuing without it",
            self.knowledge.store(
                turn.owner_id, content, content_type, {**metadata, "turn_id": turn.turn_id}, embedding=embedding
            ),
            content_type=content_type.value,
        )

    def _cacheable(self, turn: Turn) -> bool:
        if turn.query_embedding is None or turn.cache_hit or turn.degraded or turn.partial:
            return False
        if not turn.response_text and not turn.executed:
            return False
        return all(c.success and self.tools.is_cacheable(c.function_name) for c in turn.executed)
