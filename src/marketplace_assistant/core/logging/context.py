"""Logging context utilities for structured logging.

Context set here is visible to every structlog event emitted from the same
task (the ``merge_contextvars`` processor picks it up), which is how a turn's
``owner_id`` and ``turn_id`` end up on every log line the turn produces.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import structlog

# Use None as default to avoid mutable default value issues
_log_context: ContextVar[dict[str, Any] | None] = ContextVar("log_context", default=None)


def get_log_context() -> dict[str, Any]:
    """Get a copy of the current logging context."""
    context: dict[str, Any] | None = _log_context.get()
    if context is None:
        context = {}
        _log_context.set(context)
    return context.copy()


def set_log_context(context: dict[str, Any]) -> None:
    """Replace the logging context."""
    _log_context.set(dict(context))
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**context)


def update_log_context(key: str, value: Any) -> None:
    """Update a single key in the logging context."""
    context = get_log_context()
    context[key] = value
    _log_context.set(context)
    structlog.contextvars.bind_contextvars(**{key: value})


def clear_log_context() -> None:
    """Clear the current logging context."""
    _log_context.set({})
    structlog.contextvars.clear_contextvars()


@contextmanager
def log_context(**values: Any) -> Iterator[None]:
    """Bind values for the duration of a block, restoring the previous context after."""
    previous = get_log_context()
    token = _log_context.set({**previous, **values})
    try:
        with structlog.contextvars.bound_contextvars(**values):
            yield
    finally:
        _log_context.reset(token)
