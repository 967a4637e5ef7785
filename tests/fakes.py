"""Deterministic stand-ins for the embedding and chat providers."""

import asyncio
import hashlib
import re
from collections import deque
from collections.abc import AsyncIterator, Callable
from typing import Any

from marketplace_assistant.domain.models import StreamDelta, ToolCallFragment, ToolExecutionResult

DIMENSIONS = 256

_TOKEN = re.compile(r"[a-z0-9']+")


def bag_of_words(text: str, dimensions: int = DIMENSIONS) -> list[float]:
    """Hashed word counts: texts sharing words get a positive cosine."""
    vector = [0.0] * dimensions
    for token in _TOKEN.findall(text.lower()):
        vector[int(hashlib.md5(token.encode()).hexdigest(), 16) % dimensions] += 1.0
    if not any(vector):
        vector[0] = 1.0
    return vector


class FakeEmbedder:
    """EmbeddingService double. Raises the queued errors first, if any."""

    def __init__(self, dimensions: int = DIMENSIONS, errors: list[Exception] | None = None):
        self.dimensions = dimensions
        self.errors = deque(errors or [])
        self.calls: list[str] = []

    async def embed_text(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.errors:
            raise self.errors.popleft()
        return bag_of_words(text, self.dimensions)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed_text(text) for text in texts]

    def get_model_dimensions(self) -> int:
        return self.dimensions


# A script item is a delta to yield, an exception to raise or a float to sleep for
ScriptItem = StreamDelta | Exception | float


def text(*chunks: str) -> list[ScriptItem]:
    return [StreamDelta(text_delta=chunk) for chunk in chunks]


def tool_call(index: int, call_id: str | None, name: str | None, *chunks: str) -> list[ScriptItem]:
    """Fragments of one tool call as a streaming adapter emits them."""
    fragments: list[ScriptItem] = []
    for seq, chunk in enumerate(chunks or ("",)):
        fragments.append(
            StreamDelta(
                fragment=ToolCallFragment(
                    call_index=index,
                    call_id=call_id if seq == 0 else None,
                    function_name=name if seq == 0 else None,
                    arguments_chunk=chunk,
                    sequence=seq,
                )
            )
        )
    return fragments


def finish(reason: str = "stop") -> list[ScriptItem]:
    return [StreamDelta(finish_reason=reason)]


def memory_responder(messages: list[dict[str, Any]]) -> list[ScriptItem]:
    """Answers questions from the facts the prompt carries; acknowledges statements."""
    system = messages[0]["content"]
    question = messages[-1]["content"].strip()
    facts = re.search(r"Known facts about the user:\n((?:- .*(?:\n|$))+)", system)

    if question.endswith("?"):
        if facts:
            known = [line[2:].strip() for line in facts.group(1).splitlines() if line.startswith("- ")]
            answer = "From what you told me: " + "; ".join(known) + "."
        else:
            answer = "I don't know that yet."
    else:
        answer = "Got it, I'll remember that."

    middle = len(answer) // 2
    return text(answer[:middle], answer[middle:]) + finish()


class ScriptedChat:
    """ChatCompletionService double.

    Each call plays the next queued script; when none are left the
    ``responder`` builds one from the prompt.
    """

    def __init__(
        self,
        scripts: list[list[ScriptItem]] | None = None,
        responder: Callable[[list[dict[str, Any]]], list[ScriptItem]] = memory_responder,
    ):
        self.scripts = deque(scripts or [])
        self.responder = responder
        self.calls: list[dict[str, Any]] = []
        self.closed = 0

    async def chat_complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamDelta]:
        self.calls.append({"messages": messages, "tools": tools})
        script = self.scripts.popleft() if self.scripts else self.responder(messages)
        try:
            for item in script:
                if isinstance(item, Exception):
                    raise item
                if isinstance(item, float):
                    await asyncio.sleep(item)
                    continue
                yield item
        finally:
            self.closed += 1


class RecordingHandler:
    """ToolHandler double that records calls and can be told to blow up."""

    def __init__(self, fail_on: set[str] | None = None):
        self.fail_on = fail_on or set()
        self.calls: list[tuple[str, dict[str, Any], str]] = []

    async def execute(self, function_name: str, arguments: dict[str, Any], owner_id: str):
        self.calls.append((function_name, arguments, owner_id))
        if function_name in self.fail_on:
            raise RuntimeError(f"{function_name} handler exploded")
        return ToolExecutionResult(success=True, result={"handled": function_name, "arguments": arguments})


async def collect(events: AsyncIterator[Any]) -> list[Any]:
    return [event async for event in events]
