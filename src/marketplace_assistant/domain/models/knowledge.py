"""Knowledge entry models."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from marketplace_assistant.domain.models.utils import utc_now


class ContentType(str, Enum):
    """What a knowledge entry records."""

    CONVERSATION = "conversation"
    USER_FACT = "user_fact"


class EmbeddingType(str, Enum):
    """Provider input type for an embedding request."""

    QUERY = "query"
    DOCUMENT = "document"


class KnowledgeEntry(BaseModel):
    """A text fragment owned by exactly one owner, addressed by its embedding.

    Entries are append-only. ``deleted_at`` is set by an owner purge or by
    retention compaction; soft-deleted entries never come back from a query.
    """

    id: UUID = Field(default_factory=uuid4)
    owner_id: str = Field(min_length=1)
    content: str
    content_type: ContentType
    embedding: list[float]
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class ScoredEntry(BaseModel):
    """A knowledge entry with its cosine similarity to a query."""

    entry: KnowledgeEntry
    score: float
