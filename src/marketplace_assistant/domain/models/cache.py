"""Semantic cache models."""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from marketplace_assistant.domain.models.utils import utc_now


class CacheEntry(BaseModel):
    """A previously served answer, keyed by query embedding and scope."""

    id: UUID = Field(default_factory=uuid4)
    owner_id: str
    scope_key: str
    query_embedding: list[float]
    response_text: str
    # ToolResult payloads replayed on a hit
    tool_calls_snapshot: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utc_now())


class CacheStats(BaseModel):
    entries: int = 0
    lookups: int = 0
    hits: int = 0
    misses: int = 0
    stale: int = 0

    @property
    def hit_rate(self) -> float:
        return self.hits / self.lookups if self.lookups else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {**self.model_dump(), "hit_rate": round(self.hit_rate, 4)}
