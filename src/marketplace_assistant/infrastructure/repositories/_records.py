"""Conversions between Neo4j node properties and domain models."""

import json
from typing import Any


def to_native(value: Any) -> Any:
    """Neo4j temporal values to ``datetime``; other values unchanged."""
    if value is not None and hasattr(value, "to_native"):
        return value.to_native()
    return value


def dumps(value: Any) -> str:
    return json.dumps(value, default=str, sort_keys=True)


def loads(value: str | None, default: Any) -> Any:
    return json.loads(value) if value else default
