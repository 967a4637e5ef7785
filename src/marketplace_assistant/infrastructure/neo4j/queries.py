"""Cypher queries, one class per node label.

Every read that touches owner data matches on ``owner_id`` first, so other
owners' nodes are never scored or returned.
"""

from typing import LiteralString


class SchemaQueries:
    @staticmethod
    def statements() -> list[LiteralString]:
        return [
            "CREATE CONSTRAINT knowledge_entry_id IF NOT EXISTS "
            "FOR (k:KnowledgeEntry) REQUIRE k.id IS UNIQUE",
            "CREATE INDEX knowledge_entry_owner IF NOT EXISTS FOR (k:KnowledgeEntry) ON (k.owner_id)",
            "CREATE CONSTRAINT cache_entry_id IF NOT EXISTS FOR (c:CacheEntry) REQUIRE c.id IS UNIQUE",
            "CREATE INDEX cache_entry_scope IF NOT EXISTS FOR (c:CacheEntry) ON (c.owner_id, c.scope_key)",
            "CREATE INDEX session_event_owner IF NOT EXISTS FOR (e:SessionEvent) ON (e.owner_id, e.seq)",
            "CREATE CONSTRAINT session_counter_owner IF NOT EXISTS "
            "FOR (c:SessionCounter) REQUIRE c.owner_id IS UNIQUE",
            "CREATE INDEX embedding_vector_key IF NOT EXISTS FOR (e:EmbeddingVector) ON (e.text_hash, e.model)",
        ]


class KnowledgeQueries:
    @staticmethod
    def create() -> LiteralString:
        return """
            CREATE (k:KnowledgeEntry {
                id: $id,
                owner_id: $owner_id,
                content: $content,
                content_type: $content_type,
                embedding: $embedding,
                metadata_json: $metadata_json,
                created_at: $created_at
            })
            RETURN k.id AS id
        """

    @staticmethod
    def similarity_search() -> LiteralString:
        # vector.similarity.cosine is normalized to [0, 1]; convert back to raw cosine
        return """
            MATCH (k:KnowledgeEntry {owner_id: $owner_id})
            WHERE k.deleted_at IS NULL
            WITH k, 2 * vector.similarity.cosine(k.embedding, $embedding) - 1 AS score
            WHERE score >= $min_score
            RETURN k, score
            ORDER BY score DESC, k.created_at DESC
            LIMIT $top_k
        """

    @staticmethod
    def soft_delete_owner() -> LiteralString:
        return """
            MATCH (k:KnowledgeEntry {owner_id: $owner_id})
            WHERE k.deleted_at IS NULL
            SET k.deleted_at = $deleted_at
            RETURN count(k) AS deleted
        """

    @staticmethod
    def soft_delete_ids() -> LiteralString:
        return """
            MATCH (k:KnowledgeEntry {owner_id: $owner_id})
            WHERE k.id IN $ids AND k.deleted_at IS NULL
            SET k.deleted_at = $deleted_at
            RETURN count(k) AS deleted
        """

    @staticmethod
    def list_live() -> LiteralString:
        return """
            MATCH (k:KnowledgeEntry {owner_id: $owner_id})
            WHERE k.deleted_at IS NULL
              AND ($content_type IS NULL OR k.content_type = $content_type)
            RETURN k
            ORDER BY k.created_at ASC
        """

    @staticmethod
    def count_live() -> LiteralString:
        return """
            MATCH (k:KnowledgeEntry {owner_id: $owner_id})
            WHERE k.deleted_at IS NULL
              AND ($content_type IS NULL OR k.content_type = $content_type)
            RETURN count(k) AS total
        """

    @staticmethod
    def last_fact_change() -> LiteralString:
        return """
            MATCH (k:KnowledgeEntry {owner_id: $owner_id, content_type: 'user_fact'})
            RETURN max(coalesce(k.deleted_at, k.created_at)) AS changed_at
        """

    @staticmethod
    def owners() -> LiteralString:
        return """
            MATCH (k:KnowledgeEntry)
            WHERE k.deleted_at IS NULL
            RETURN DISTINCT k.owner_id AS owner_id
        """


class CacheQueries:
    @staticmethod
    def create() -> LiteralString:
        return """
            CREATE (c:CacheEntry {
                id: $id,
                owner_id: $owner_id,
                scope_key: $scope_key,
                query_embedding: $query_embedding,
                response_text: $response_text,
                tool_calls_json: $tool_calls_json,
                created_at: $created_at,
                expires_at: $expires_at
            })
            RETURN c.id AS id
        """

    @staticmethod
    def candidates() -> LiteralString:
        return """
            MATCH (c:CacheEntry {owner_id: $owner_id, scope_key: $scope_key})
            RETURN c
        """

    @staticmethod
    def delete_ids() -> LiteralString:
        return """
            MATCH (c:CacheEntry)
            WHERE c.id IN $ids
            DETACH DELETE c
            RETURN count(*) AS deleted
        """

    @staticmethod
    def delete_owner() -> LiteralString:
        return """
            MATCH (c:CacheEntry {owner_id: $owner_id})
            DETACH DELETE c
            RETURN count(*) AS deleted
        """

    @staticmethod
    def delete_expired() -> LiteralString:
        return """
            MATCH (c:CacheEntry)
            WHERE c.expires_at <= $now
            DETACH DELETE c
            RETURN count(*) AS deleted
        """

    @staticmethod
    def count() -> LiteralString:
        return "MATCH (c:CacheEntry) RETURN count(c) AS total"


class SessionQueries:
    @staticmethod
    def append() -> LiteralString:
        # The counter node serializes sequence allocation per owner
        return """
            MERGE (counter:SessionCounter {owner_id: $owner_id})
            ON CREATE SET counter.next_seq = 0
            SET counter.next_seq = counter.next_seq + 1
            WITH counter, counter.next_seq - 1 AS seq
            CREATE (e:SessionEvent {
                owner_id: $owner_id,
                seq: seq,
                kind: $kind,
                payload_json: $payload_json,
                timestamp: $timestamp
            })
            RETURN e
        """

    @staticmethod
    def events() -> LiteralString:
        return """
            MATCH (e:SessionEvent {owner_id: $owner_id})
            RETURN e
            ORDER BY e.seq ASC
        """


class EmbeddingCacheQueries:
    @staticmethod
    def get() -> LiteralString:
        return """
            MATCH (e:EmbeddingVector {text_hash: $text_hash, model: $model})
            WHERE e.created_at > datetime() - duration({days: $max_age_days})
            SET e.hit_count = coalesce(e.hit_count, 0) + 1
            RETURN e.vector AS vector, e.dimensions AS dimensions
        """

    @staticmethod
    def put() -> LiteralString:
        return """
            MERGE (e:EmbeddingVector {text_hash: $text_hash, model: $model})
            ON CREATE SET e.hit_count = 0
            SET e.vector = $vector,
                e.dimensions = $dimensions,
                e.created_at = datetime()
        """
