"""Error contexts: a trace id plus whatever the failing turn was bound to."""

from collections import OrderedDict
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from .base import ApplicationError
from .logging import get_log_context


class ErrorContext:
    """Snapshot taken when an error is observed.

    The owner and turn bound through ``log_context`` are copied in at capture
    time, so an error raised deep inside a repository can still be traced
    back to the conversation that triggered it.
    """

    def __init__(self, error: Exception, trace_id: str | None = None, **context: Any):
        self.error = error
        self.trace_id = trace_id or uuid4().hex
        self.timestamp = datetime.now(UTC)
        self.bound = get_log_context()
        self.context = context

    @property
    def owner_id(self) -> str | None:
        return self.bound.get("owner_id")

    @property
    def turn_id(self) -> str | None:
        return self.bound.get("turn_id")

    def to_dict(self) -> dict[str, Any]:
        """Flatten into log-friendly keys; details and call-site context are prefixed."""
        result: dict[str, Any] = {
            "error_type": type(self.error).__name__,
            "error_message": str(self.error),
            "trace_id": self.trace_id,
            "timestamp": self.timestamp.isoformat(),
            **self.bound,
        }

        if isinstance(self.error, ApplicationError):
            result["error_code"] = self.error.code.value
            result["error_level"] = self.error.level.value
            for key, value in self.error.details.model_dump().items():
                result[f"details.{key}"] = value

        for key, value in self.context.items():
            result[f"context.{key}"] = value

        return result


class ErrorContextManager:
    """Keeps the most recent error contexts so a trace id in a response can be looked up."""

    def __init__(self, max_contexts: int = 500) -> None:
        self.max_contexts = max_contexts
        self._contexts: OrderedDict[str, ErrorContext] = OrderedDict()

    def capture(self, error: Exception, **context: Any) -> ErrorContext:
        error_context = ErrorContext(error, **context)
        self._contexts[error_context.trace_id] = error_context
        while len(self._contexts) > self.max_contexts:
            self._contexts.popitem(last=False)
        return error_context

    def get(self, trace_id: str) -> ErrorContext | None:
        return self._contexts.get(trace_id)

    def __len__(self) -> int:
        return len(self._contexts)
