"""Tool-call streaming and execution models."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .filters import FilterSpec


class ToolCallFragment(BaseModel):
    """One streamed piece of a tool call.

    ``call_index`` is the only reliable join key: ``call_id`` and
    ``function_name`` are usually present on the first fragment only.
    ``sequence`` is the per-call ordinal assigned by the streaming adapter.
    """

    call_index: int
    call_id: str | None = None
    function_name: str | None = None
    arguments_chunk: str = ""
    sequence: int | None = None


class ReconstructedToolCall(BaseModel):
    call_index: int
    call_id: str
    function_name: str
    arguments: dict[str, Any]


class ToolCallFailure(BaseModel):
    """A call whose fragments completed but could not be understood."""

    call_index: int
    call_id: str | None = None
    function_name: str | None = None
    raw_arguments: str
    reason: str


class ReconstructionResult(BaseModel):
    calls: list[ReconstructedToolCall] = Field(default_factory=list)
    failures: list[ToolCallFailure] = Field(default_factory=list)


class StreamDelta(BaseModel):
    """One item from a chat-completion stream."""

    text_delta: str | None = None
    fragment: ToolCallFragment | None = None
    finish_reason: str | None = None


class ToolExecutionResult(BaseModel):
    success: bool
    result: Any = None
    error: str | None = None


class ClientEvent(BaseModel):
    """Server-to-client stream event."""

    type: Literal["content", "tool_result", "done"]
    delta: str | None = None

    # tool_result
    call_id: str | None = None
    function_name: str | None = None
    success: bool | None = None
    result: Any = None
    error: str | None = None
    cached: bool | None = None

    # done
    rag_context: dict[str, Any] | None = None
    filter_decision: dict[str, Any] | None = None
    cache_hit: bool | None = None
    degraded: bool | None = None
    partial: bool | None = None

    def to_sse(self) -> str:
        return f"data: {self.model_dump_json(exclude_none=True)}\n\n"


# Tool argument schemas. Unknown arguments are a schema violation.


class ApplyFiltersArgs(FilterSpec):
    reasoning: str | None = None


class NavigateArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    route: str = Field(min_length=1)

    @field_validator("route")
    @classmethod
    def _must_be_internal(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("route must be an application path starting with '/'")
        return value


class AddToCartArgs(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    product_id: str = Field(alias="productId", min_length=1)
    quantity: int = Field(1, ge=1, le=100)


class RemoveFromCartArgs(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    product_id: str = Field(alias="productId", min_length=1)


class ViewCartArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")
