"""End-to-end turns through the conversation orchestrator with fake providers."""

import asyncio

from marketplace_assistant.core.errors import ServiceError, TransientProviderError
from marketplace_assistant.domain.models import ContentType, SessionEventKind, StreamDelta, ToolCallFragment
from marketplace_assistant.services.orchestrator import DEGRADED_RESPONSE
from marketplace_assistant.services.tool_dispatch import build_default_registry

from .conftest import build_harness
from .fakes import FakeEmbedder, RecordingHandler, ScriptedChat, collect, finish, text, tool_call


def content_of(events) -> str:
    return "".join(e.delta for e in events if e.type == "content")


def done_of(events):
    assert events[-1].type == "done"
    return events[-1]


def test_remembered_fact_answers_later_question_then_serves_from_cache(harness):
    orchestrator = harness.orchestrator

    async def scenario():
        first = await collect(orchestrator.stream_turn("alice", "My favorite food is pizza."))
        second = await collect(orchestrator.stream_turn("alice", "What's my favorite food?"))
        third = await collect(orchestrator.stream_turn("alice", "What's my favorite food?"))
        return first, second, third

    first, second, third = asyncio.run(scenario())

    assert done_of(first).cache_hit is False
    assert "pizza" in content_of(second).lower()
    assert done_of(second).rag_context["context_count"] >= 1
    assert done_of(second).cache_hit is False

    assert done_of(third).cache_hit is True
    assert done_of(third).rag_context["cache_hit"] is True
    assert content_of(third) == content_of(second)
    assert len(harness.chat.calls) == 2


def test_persisted_turn_records_messages_knowledge_and_facts(harness):
    async def scenario():
        await collect(harness.orchestrator.stream_turn("alice", "I live in Oslo."))
        session = await harness.orchestrator.get_session("alice")
        facts = await harness.knowledge.count("alice", ContentType.USER_FACT)
        conversations = await harness.knowledge_repo.list_entries("alice", ContentType.CONVERSATION)
        return session, facts, conversations

    session, facts, conversations = asyncio.run(scenario())

    assert [m.role.value for m in session.messages] == ["user", "assistant"]
    assert session.messages[0].content == "I live in Oslo."
    assert session.performance.total_interactions == 1
    assert facts == 1
    assert conversations[0].content == "User: I live in Oslo.\nAssistant: Got it, I'll remember that."
    # the conversation entry reuses the query vector instead of embedding again
    assert harness.embedder.calls.count("I live in Oslo.") == 1


def test_new_fact_invalidates_earlier_answers(harness):
    orchestrator = harness.orchestrator

    async def scenario():
        before = await collect(orchestrator.stream_turn("alice", "What do I like?"))
        await collect(orchestrator.stream_turn("alice", "I really like hiking."))
        after = await collect(orchestrator.stream_turn("alice", "What do I like?"))
        return before, after

    before, after = asyncio.run(scenario())

    assert content_of(before) == "I don't know that yet."
    assert done_of(after).cache_hit is False
    assert "hiking" in content_of(after)
    assert len(harness.chat.calls) == 3


def test_tool_turn_is_replayed_from_cache_without_running_the_tool():
    handler = RecordingHandler()
    chat = ScriptedChat([tool_call(0, "call_1", "navigateTo", '{"route":', ' "/cart"}') + finish("tool_calls")])
    harness = build_harness(chat=chat, registry=build_default_registry(handler))

    async def scenario():
        first = await collect(harness.orchestrator.stream_turn("alice", "take me to the cart"))
        second = await collect(harness.orchestrator.stream_turn("alice", "take me to the cart"))
        return first, second

    first, second = asyncio.run(scenario())

    live = [e for e in first if e.type == "tool_result"]
    replayed = [e for e in second if e.type == "tool_result"]
    assert live[0].call_id == "call_1"
    assert live[0].success is True
    assert live[0].cached is False
    assert replayed[0].cached is True
    assert replayed[0].result == live[0].result
    assert done_of(second).cache_hit is True
    assert len(handler.calls) == 1
    assert len(chat.calls) == 1


def test_cart_changes_are_never_cached():
    chat = ScriptedChat(
        [
            tool_call(0, "call_1", "addToCart", '{"productId": "p1"}') + finish("tool_calls"),
            tool_call(0, "call_2", "addToCart", '{"productId": "p1"}') + finish("tool_calls"),
        ]
    )
    harness = build_harness(chat=chat)

    async def scenario():
        await collect(harness.orchestrator.stream_turn("alice", "add p1 to my cart"))
        second = await collect(harness.orchestrator.stream_turn("alice", "add p1 to my cart"))
        return second, await harness.cache.stats()

    second, stats = asyncio.run(scenario())

    result = next(e for e in second if e.type == "tool_result")
    assert result.result["totalItems"] == 2
    assert done_of(second).cache_hit is False
    assert stats.entries == 0


def test_text_and_tool_calls_in_one_turn():
    chat = ScriptedChat(
        [
            text("Applying ")
            + tool_call(0, "call_1", "applyFilters", '{"daMin": 5', '0, "spamMax": 3}')
            + text("filters now.")
            + finish("tool_calls")
        ]
    )
    harness = build_harness(chat=chat)

    async def scenario():
        events = await collect(harness.orchestrator.stream_turn("alice", "DA above 50 and spam below 3"))
        return events, await harness.orchestrator.get_session("alice")

    events, session = asyncio.run(scenario())

    assert [e.type for e in events] == ["content", "content", "tool_result", "done"]
    assert content_of(events) == "Applying filters now."
    assert events[2].result["filters"] == {"daMin": 50, "spamMax": 3}
    assert session.tool_history[0].function_name == "applyFilters"


def test_invalid_tool_arguments_fail_only_that_call():
    chat = ScriptedChat(
        [
            tool_call(0, "call_1", "applyFilters", '{"daMin": 150}')
            + tool_call(1, "call_2", "navigateTo", '{"route": "/publishers"}')
            + tool_call(2, "call_3", "navigateTo", '{"route": ')
            + finish("tool_calls")
        ]
    )
    harness = build_harness(chat=chat)

    events = asyncio.run(collect(harness.orchestrator.stream_turn("alice", "filter please")))

    results = [e for e in events if e.type == "tool_result"]
    assert [(r.call_id, r.success) for r in results] == [("call_1", False), ("call_2", True), ("call_3", False)]
    assert "could not be understood" in results[2].error
    assert done_of(events).degraded is False


def test_provider_failure_degrades_but_keeps_the_user_message():
    chat = ScriptedChat([[TransientProviderError("overloaded")], [TransientProviderError("overloaded")]])
    harness = build_harness(chat=chat)

    async def scenario():
        events = await collect(harness.orchestrator.stream_turn("alice", "show me tech sites"))
        session = await harness.orchestrator.get_session("alice")
        conversations = await harness.knowledge.count("alice", ContentType.CONVERSATION)
        return events, session, conversations, await harness.cache.stats()

    events, session, conversations, stats = asyncio.run(scenario())

    assert content_of(events) == DEGRADED_RESPONSE
    assert done_of(events).degraded is True
    assert session.messages[0].content == "show me tech sites"
    assert session.messages[1].content == DEGRADED_RESPONSE
    assert conversations == 0
    assert stats.entries == 0


def test_embedding_failure_still_answers_without_cache_or_retrieval():
    embedder = FakeEmbedder(errors=[TransientProviderError("down"), TransientProviderError("down")])
    harness = build_harness(embedder=embedder)

    async def scenario():
        events = await collect(harness.orchestrator.stream_turn("alice", "hello there"))
        return events, await harness.cache.stats()

    events, stats = asyncio.run(scenario())

    assert content_of(events) == "Got it, I'll remember that."
    assert done_of(events).degraded is False
    assert done_of(events).rag_context["context_count"] == 0
    assert stats.lookups == 0
    assert stats.entries == 0


def test_idle_stream_times_out_into_a_degraded_turn():
    chat = ScriptedChat([text("Hel") + [5.0] + text("lo")])
    harness = build_harness(chat=chat, idle_timeout_seconds=0.05)

    events = asyncio.run(collect(harness.orchestrator.stream_turn("alice", "hi")))

    assert [e.delta for e in events if e.type == "content"] == ["Hel", f"\n\n{DEGRADED_RESPONSE}"]
    assert done_of(events).degraded is True
    assert chat.closed == 1


def test_malformed_fragments_degrade_the_turn():
    out_of_order = StreamDelta(
        fragment=ToolCallFragment(call_index=0, call_id="c1", function_name="viewCart", arguments_chunk="}", sequence=1)
    )
    handler = RecordingHandler()
    harness = build_harness(chat=ScriptedChat([[out_of_order] + finish()]), registry=build_default_registry(handler))

    events = asyncio.run(collect(harness.orchestrator.stream_turn("alice", "show my cart")))

    assert done_of(events).degraded is True
    assert not [e for e in events if e.type == "tool_result"]
    assert handler.calls == []


def test_non_transient_provider_error_degrades():
    harness = build_harness(chat=ScriptedChat([[ServiceError("model rejected the request")]]))

    events = asyncio.run(collect(harness.orchestrator.stream_turn("alice", "hi")))

    assert done_of(events).degraded is True


def test_disconnect_persists_a_partial_turn_and_drops_pending_calls():
    chat = ScriptedChat(
        [text("Sure, ") + tool_call(0, "call_1", "navigateTo", '{"route":') + [5.0] + text("ignored") + finish()]
    )
    handler = RecordingHandler()
    harness = build_harness(chat=chat, registry=build_default_registry(handler))

    async def scenario():
        stream = harness.orchestrator.stream_turn("alice", "go to the cart")
        first = await anext(stream)
        await stream.aclose()
        return first, await harness.sessions.events("alice"), await harness.cache.stats()

    first, events, stats = asyncio.run(scenario())

    assert first.delta == "Sure, "
    assert [e.payload.get("content") for e in events if e.kind == SessionEventKind.MESSAGE] == [
        "go to the cart",
        "Sure, ",
    ]
    assert not [e for e in events if e.kind == SessionEventKind.TOOL_CALLS]
    assert handler.calls == []
    assert stats.entries == 0
    assert chat.closed == 1


def test_turns_of_one_owner_do_not_overlap():
    chat = ScriptedChat([text("first ") + [0.05] + text("answer") + finish(), text("second answer") + finish()])
    harness = build_harness(chat=chat)

    async def scenario():
        await asyncio.gather(
            collect(harness.orchestrator.stream_turn("alice", "one")),
            collect(harness.orchestrator.stream_turn("alice", "two")),
        )
        return await harness.orchestrator.get_session("alice")

    session = asyncio.run(scenario())

    assert [m.content for m in session.messages] == ["one", "first answer", "two", "second answer"]


def test_turns_of_different_owners_run_concurrently():
    chat = ScriptedChat([text("slow ") + [0.2] + text("answer") + finish(), text("fast answer") + finish()])
    harness = build_harness(chat=chat)
    finished: list[str] = []

    async def turn(owner_id: str, message: str):
        async for event in harness.orchestrator.stream_turn(owner_id, message):
            if event.type == "done":
                finished.append(owner_id)

    async def scenario():
        await asyncio.gather(turn("alice", "slow question"), turn("bob", "fast question"))

    asyncio.run(scenario())

    assert finished == ["bob", "alice"]


def test_done_event_carries_the_filter_decision(harness):
    events = asyncio.run(
        collect(
            harness.orchestrator.stream_turn(
                "alice", "show me tech sites with DA above 50", enabled_tools=["applyFilters"]
            )
        )
    )

    decision = done_of(events).filter_decision
    assert decision["filters"] == {"daMin": 50, "niche": "tech"}
    assert decision["should_update"] is True
    system_prompt = harness.chat.calls[0]["messages"][0]["content"]
    assert "Filter analysis:" in system_prompt
    assert [t["function"]["name"] for t in harness.chat.calls[0]["tools"]] == ["applyFilters"]


def test_scope_change_bypasses_cached_answer(harness):
    async def scenario():
        await collect(harness.orchestrator.stream_turn("alice", "what is domain authority?"))
        again = await collect(
            harness.orchestrator.stream_turn("alice", "what is domain authority?", current_filters={"niche": "tech"})
        )
        return again

    again = asyncio.run(scenario())

    assert done_of(again).cache_hit is False
    assert len(harness.chat.calls) == 2


def test_history_is_replayed_into_the_prompt(harness):
    async def scenario():
        await collect(harness.orchestrator.stream_turn("alice", "hello"))
        await collect(harness.orchestrator.stream_turn("alice", "and another thing"))

    asyncio.run(scenario())

    messages = harness.chat.calls[1]["messages"]
    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
    assert messages[1]["content"] == "hello"
    assert messages[-1]["content"] == "and another thing"


class StorageDown(Exception):
    pass


async def unreachable(*args, **kwargs):
    raise StorageDown("neo4j unreachable")


def test_retrieval_failure_answers_without_context(harness, monkeypatch):
    monkeypatch.setattr(harness.knowledge_repo, "search", unreachable)

    events = asyncio.run(collect(harness.orchestrator.stream_turn("alice", "Hello there")))

    assert content_of(events) == "Got it, I'll remember that."
    assert done_of(events).degraded is False
    assert done_of(events).rag_context["context_count"] == 0


def test_cache_lookup_failure_is_a_miss(harness, monkeypatch):
    monkeypatch.setattr(harness.cache_repo, "candidates", unreachable)

    events = asyncio.run(collect(harness.orchestrator.stream_turn("alice", "Hello there")))

    assert done_of(events).cache_hit is False
    assert done_of(events).degraded is False
    assert len(harness.chat.calls) == 1


def test_failed_writes_still_finish_the_turn(harness, monkeypatch):
    async def cache_down(*args, **kwargs):
        raise ServiceError("cache store down")

    monkeypatch.setattr(harness.cache_repo, "add", cache_down)
    monkeypatch.setattr(harness.knowledge_repo, "add", unreachable)

    async def scenario():
        events = await collect(harness.orchestrator.stream_turn("alice", "Hello there"))
        return events, await harness.orchestrator.get_session("alice")

    events, session = asyncio.run(scenario())

    assert done_of(events).degraded is False
    assert [m.content for m in session.messages] == ["Hello there", "Got it, I'll remember that."]


def test_session_log_failure_still_answers(harness, monkeypatch):
    monkeypatch.setattr(harness.sessions, "events", unreachable)
    monkeypatch.setattr(harness.sessions, "append", unreachable)

    events = asyncio.run(collect(harness.orchestrator.stream_turn("alice", "Hello there")))

    assert content_of(events) == "Got it, I'll remember that."
    assert done_of(events).degraded is False


def test_unexpected_stream_error_degrades():
    harness = build_harness(chat=ScriptedChat([[StorageDown("socket closed")]]))

    events = asyncio.run(collect(harness.orchestrator.stream_turn("alice", "Hello there")))

    assert content_of(events) == DEGRADED_RESPONSE
    assert done_of(events).degraded is True


def test_owner_locks_are_released_after_turns():
    chat = ScriptedChat([text("first ") + [0.05] + text("answer") + finish(), text("second answer") + finish()])
    harness = build_harness(chat=chat)

    async def scenario():
        await asyncio.gather(
            collect(harness.orchestrator.stream_turn("alice", "one")),
            collect(harness.orchestrator.stream_turn("alice", "two")),
            collect(harness.orchestrator.stream_turn("bob", "three")),
        )

    asyncio.run(scenario())

    assert harness.orchestrator._locks == {}
    assert harness.orchestrator._lock_users == {}


def test_stages_are_timed(harness):
    async def scenario():
        await collect(harness.orchestrator.stream_turn("alice", "Hello there"))
        await collect(harness.orchestrator.stream_turn("alice", "Hello there"))

    asyncio.run(scenario())
    monitor = harness.orchestrator.monitor

    assert monitor.operations() == ["cache_check", "embedding", "persisting", "retrieving", "streaming"]
    # the second turn is a cache hit and never reaches retrieval
    assert monitor.stats("cache_check").count == 2
    assert monitor.stats("retrieving").count == 1
    assert monitor.stats().success_rate == 100.0


def test_tool_execution_is_timed():
    handler = RecordingHandler()
    chat = ScriptedChat([tool_call(0, "call_1", "viewCart", "{}") + finish("tool_calls")])
    harness = build_harness(chat=chat, registry=build_default_registry(handler))

    asyncio.run(collect(harness.orchestrator.stream_turn("alice", "show my cart")))

    assert harness.orchestrator.monitor.stats("executing").count == 1


def test_zero_top_k_retrieves_nothing():
    harness = build_harness(top_k=0)

    async def scenario():
        await collect(harness.orchestrator.stream_turn("alice", "My favorite food is pizza."))
        return await collect(harness.orchestrator.stream_turn("alice", "What's my favorite food?"))

    events = asyncio.run(scenario())

    assert harness.orchestrator.top_k == 0
    assert done_of(events).rag_context["context_count"] == 0
