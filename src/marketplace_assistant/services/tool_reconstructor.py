"""Tool-Call Reconstructor: assembles streamed tool-call fragments into complete calls.

One instance per streamed model response. Fragments are joined by
``call_index`` only; ``call_id`` and ``function_name`` are taken from
whichever fragment first carries them and never overwritten.
"""

import json
from dataclasses import dataclass, field

from marketplace_assistant.core.base import StreamErrorDetails
from marketplace_assistant.core.errors import MalformedStreamError
from marketplace_assistant.core.logging import get_logger
from marketplace_assistant.domain.models import (
    ReconstructedToolCall,
    ReconstructionResult,
    ToolCallFailure,
    ToolCallFragment,
)

logger = get_logger(__name__)


@dataclass
class PartialCall:
    call_index: int
    call_id: str | None = None
    function_name: str | None = None
    chunks: list[str] = field(default_factory=list)
    next_sequence: int = 0

    @property
    def args_buffer(self) -> str:
        return "".join(self.chunks)


class ToolCallReconstructor:
    """Pure fold over the fragment stream.

    ``feed`` raises ``MalformedStreamError`` on any ordering or identity
    violation; ``finish`` parses every accumulated call and reports the
    unparseable ones as failures rather than raising.
    """

    def __init__(self) -> None:
        self._calls: dict[int, PartialCall] = {}
        self._finished = False

    @property
    def pending(self) -> int:
        return len(self._calls)

    def _violation(self, message: str, fragment: ToolCallFragment, partial: PartialCall | None = None) -> MalformedStreamError:
        details = StreamErrorDetails(
            source="tool_call_reconstructor",
            operation="feed",
            call_index=fragment.call_index,
            expected_sequence=partial.next_sequence if partial else None,
            received_sequence=fragment.sequence,
            call_id=partial.call_id if partial else fragment.call_id,
        )
        logger.error(message, **details.model_dump(exclude={"timestamp"}))
        return MalformedStreamError(message, details=details)

    def feed(self, fragment: ToolCallFragment) -> None:
        if self._finished:
            raise self._violation("Tool-call fragment received after end of turn", fragment)
        if fragment.call_index < 0:
            raise self._violation(f"Negative tool-call index {fragment.call_index}", fragment)

        partial = self._calls.get(fragment.call_index)
        if partial is None:
            partial = self._calls[fragment.call_index] = PartialCall(call_index=fragment.call_index)

        if fragment.sequence is not None and fragment.sequence != partial.next_sequence:
            raise self._violation(
                f"Out-of-order fragment for tool call {fragment.call_index}: "
                f"expected #{partial.next_sequence}, got #{fragment.sequence}",
                fragment,
                partial,
            )

        if fragment.call_id:
            if partial.call_id is None:
                partial.call_id = fragment.call_id
            elif partial.call_id != fragment.call_id:
                raise self._violation(
                    f"Tool call {fragment.call_index} changed id from {partial.call_id} to {fragment.call_id}",
                    fragment,
                    partial,
                )

        if fragment.function_name and partial.function_name is None:
            partial.function_name = fragment.function_name

        partial.chunks.append(fragment.arguments_chunk)
        partial.next_sequence += 1

    def finish(self) -> ReconstructionResult:
        """End of turn: parse every call, in ``call_index`` order."""
        self._finished = True
        result = ReconstructionResult()

        for index in sorted(self._calls):
            partial = self._calls[index]
            raw = partial.args_buffer
            call_id = partial.call_id or f"call_{index}"

            if not partial.function_name:
                result.failures.append(self._failure(partial, raw, "tool call has no function name"))
                continue

            if not raw.strip():
                # Providers send an empty buffer for tools without arguments
                arguments: object = {}
            else:
                try:
                    arguments = json.loads(raw)
                except json.JSONDecodeError as e:
                    result.failures.append(self._failure(partial, raw, f"arguments are not valid JSON: {e.msg}"))
                    continue

            if not isinstance(arguments, dict):
                result.failures.append(
                    self._failure(partial, raw, f"arguments must be a JSON object, got {type(arguments).__name__}")
                )
                continue

            result.calls.append(
                ReconstructedToolCall(
                    call_index=index,
                    call_id=call_id,
                    function_name=partial.function_name,
                    arguments=arguments,
                )
            )

        self._calls.clear()
        return result

    @staticmethod
    def _failure(partial: PartialCall, raw: str, reason: str) -> ToolCallFailure:
        logger.error(
            "Tool call could not be understood",
            call_index=partial.call_index,
            call_id=partial.call_id,
            function_name=partial.function_name,
            raw_arguments=raw,
            reason=reason,
        )
        return ToolCallFailure(
            call_index=partial.call_index,
            call_id=partial.call_id,
            function_name=partial.function_name,
            raw_arguments=raw,
            reason=reason,
        )

    def discard(self) -> int:
        """Drop every call still accumulating (client went away)."""
        dropped = len(self._calls)
        if dropped:
            logger.info("Discarding incomplete tool calls", dropped=dropped)
        self._calls.clear()
        self._finished = True
        return dropped
