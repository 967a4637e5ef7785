"""Tests for tool validation and execution."""

import asyncio

import pytest

from marketplace_assistant.core.base import ErrorCode
from marketplace_assistant.core.errors import ToolSchemaViolation, UnknownToolError
from marketplace_assistant.domain.models import ReconstructedToolCall, ToolCallFailure
from marketplace_assistant.services.tool_dispatch import (
    UNPARSEABLE_CALL_MESSAGE,
    ToolExecutor,
    build_default_registry,
)

from .fakes import RecordingHandler

ALL_TOOLS = ["addToCart", "applyFilters", "navigateTo", "removeFromCart", "viewCart"]


def call(name: str, arguments: dict, index: int = 0) -> ReconstructedToolCall:
    return ReconstructedToolCall(call_index=index, call_id=f"call_{index}", function_name=name, arguments=arguments)


class TestRegistry:
    def test_default_tools(self):
        registry = build_default_registry()

        assert registry.names == ALL_TOOLS
        assert registry.is_cacheable("applyFilters")
        assert not registry.is_cacheable("addToCart")
        assert not registry.is_cacheable("viewCart")
        assert not registry.is_cacheable("nope")

    def test_openai_tools_only_lists_enabled(self):
        registry = build_default_registry()

        tools = registry.openai_tools(["navigateTo", "bogus"])

        assert [t["function"]["name"] for t in tools] == ["navigateTo"]
        assert tools[0]["type"] == "function"
        assert "route" in tools[0]["function"]["parameters"]["properties"]

    def test_filter_schema_uses_wire_names(self):
        parameters = build_default_registry().openai_tools(["applyFilters"])[0]["function"]["parameters"]

        assert "daMin" in parameters["properties"]
        assert "da_min" not in parameters["properties"]

    def test_validate_normalizes_arguments(self):
        registry = build_default_registry()

        arguments = registry.validate(call("applyFilters", {"daMin": 50, "niche": "tech", "reasoning": "asked"}))

        assert arguments == {"daMin": 50, "niche": "tech", "reasoning": "asked"}

    def test_schema_violation_lists_field_errors(self):
        registry = build_default_registry()

        with pytest.raises(ToolSchemaViolation) as exc_info:
            registry.validate(call("addToCart", {"quantity": 0}))

        assert exc_info.value.code == ErrorCode.TOOL_SCHEMA_VIOLATION
        fields = sorted(error.split(":")[0] for error in exc_info.value.field_errors)
        assert fields == ["productId", "quantity"]

    def test_unexpected_argument_is_a_violation(self):
        with pytest.raises(ToolSchemaViolation):
            build_default_registry().validate(call("viewCart", {"verbose": True}))

    def test_external_route_is_rejected(self):
        with pytest.raises(ToolSchemaViolation) as exc_info:
            build_default_registry().validate(call("navigateTo", {"route": "https://evil.example"}))

        assert "route" in exc_info.value.field_errors[0]

    def test_out_of_bounds_filter_is_rejected_not_clamped(self):
        with pytest.raises(ToolSchemaViolation) as exc_info:
            build_default_registry().validate(call("applyFilters", {"daMin": 150}))

        assert exc_info.value.field_errors == ["daMin 150 is outside 0-100"]

    def test_unknown_tool(self):
        with pytest.raises(UnknownToolError) as exc_info:
            build_default_registry().validate(call("deleteEverything", {}))

        assert exc_info.value.code == ErrorCode.TOOL_UNKNOWN

    def test_registered_but_not_enabled_is_unknown(self):
        with pytest.raises(UnknownToolError):
            build_default_registry().validate(call("viewCart", {}), enabled_tools=["navigateTo"])


class TestExecutor:
    def test_bad_call_does_not_block_its_sibling(self):
        handler = RecordingHandler()
        executor = ToolExecutor(build_default_registry(handler))
        calls = [
            call("navigateTo", {"route": "/cart"}, index=0),
            call("applyFilters", {"daMin": 150}, index=1),
        ]

        results = asyncio.run(executor.execute_all("alice", calls, ALL_TOOLS))

        assert [r.success for r in results] == [True, False]
        assert "daMin 150" in results[1].error
        # only the valid call reached the handler
        assert handler.calls == [("navigateTo", {"route": "/cart"}, "alice")]

    def test_handler_exception_becomes_a_failed_result(self):
        handler = RecordingHandler(fail_on={"viewCart"})
        executor = ToolExecutor(build_default_registry(handler))

        results = asyncio.run(
            executor.execute_all(
                "alice",
                [call("viewCart", {}, index=0), call("navigateTo", {"route": "/"}, index=1)],
            )
        )

        assert results[0].success is False
        assert "viewCart handler exploded" in results[0].error
        assert results[1].success is True

    def test_results_keep_call_order(self):
        executor = ToolExecutor(build_default_registry(RecordingHandler()))
        calls = [call("navigateTo", {"route": f"/page/{i}"}, index=i) for i in range(5)]

        results = asyncio.run(executor.execute_all("alice", calls))

        assert [r.call_id for r in results] == [f"call_{i}" for i in range(5)]
        assert all(r.duration_ms >= 0 for r in results)

    def test_no_calls(self):
        executor = ToolExecutor(build_default_registry())

        assert asyncio.run(executor.execute_all("alice", [])) == []

    def test_unparseable_failure_entry(self):
        executed = ToolExecutor.unparseable(
            ToolCallFailure(call_index=3, function_name="navigateTo", raw_arguments="{", reason="not valid JSON")
        )

        assert executed.call_id == "call_3"
        assert executed.success is False
        assert executed.error.startswith(UNPARSEABLE_CALL_MESSAGE)


class TestMarketplaceHandler:
    def test_cart_flow_is_per_owner(self):
        executor = ToolExecutor(build_default_registry())

        async def scenario():
            await executor.execute_all("alice", [call("addToCart", {"productId": "p1", "quantity": 2})])
            await executor.execute_all("alice", [call("addToCart", {"productId": "p2"})])
            await executor.execute_all("bob", [call("addToCart", {"productId": "p9"})])
            removed = await executor.execute_all("alice", [call("removeFromCart", {"productId": "p1"})])
            missing = await executor.execute_all("alice", [call("removeFromCart", {"productId": "p1"})])
            viewed = await executor.execute_all("alice", [call("viewCart", {})])
            return removed[0], missing[0], viewed[0]

        removed, missing, viewed = asyncio.run(scenario())

        assert removed.result["totalItems"] == 1
        assert missing.success is False
        assert viewed.result == {"action": "cart_view", "items": [{"productId": "p2", "quantity": 1}], "totalItems": 1}

    def test_apply_filters_returns_storefront_url(self):
        executor = ToolExecutor(build_default_registry())

        results = asyncio.run(
            executor.execute_all("alice", [call("applyFilters", {"daMin": 50, "spamMax": 3, "reasoning": "r"})])
        )

        assert results[0].result["action"] == "filter_applied"
        assert results[0].result["filters"] == {"daMin": 50, "spamMax": 3}
        assert results[0].result["url"] == "/publishers?daMin=50&spamMax=3"
