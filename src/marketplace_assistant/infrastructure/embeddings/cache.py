"""Exact-text embedding cache in Neo4j.

Repeated texts (a user asking the same thing twice, a fact equal to its
message) skip the provider call. Entries are keyed by model so a model
change never serves vectors of another shape.
"""

import hashlib

from neo4j import AsyncDriver

from marketplace_assistant.core.decorators import with_session
from marketplace_assistant.core.logging import get_logger
from marketplace_assistant.infrastructure.neo4j.queries import EmbeddingCacheQueries

logger = get_logger(__name__)


def text_hash(text: str) -> str:
    return hashlib.sha256(text.encode()).hexdigest()


class EmbeddingCache:
    def __init__(self, driver: AsyncDriver, max_age_days: int = 30):
        self.driver = driver
        self.max_age_days = max_age_days

    @with_session()
    async def get(self, session, text: str, model: str, dimensions: int) -> list[float] | None:
        result = await session.run(
            EmbeddingCacheQueries.get(),
            text_hash=text_hash(text),
            model=model,
            max_age_days=self.max_age_days,
        )
        record = await result.single()
        if record is None:
            return None
        if record["dimensions"] != dimensions:
            logger.warning(
                "Ignoring cached embedding with unexpected length",
                model=model,
                cached_dimensions=record["dimensions"],
                expected_dimensions=dimensions,
            )
            return None
        return list(record["vector"])

    @with_session()
    async def put(self, session, text: str, model: str, vector: list[float]) -> None:
        await session.run(
            EmbeddingCacheQueries.put(),
            text_hash=text_hash(text),
            model=model,
            vector=vector,
            dimensions=len(vector),
        )
