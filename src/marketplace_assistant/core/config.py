"""Configuration management."""

from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RetentionPolicy(BaseModel):
    """Retention limits for conversation-type knowledge entries.

    Both limits are optional; with neither set, compaction is a no-op.
    User facts are never compacted.
    """

    max_conversation_entries: int | None = Field(default=None, ge=1)
    max_age_days: int | None = Field(default=None, ge=1)

    @property
    def enabled(self) -> bool:
        return self.max_conversation_entries is not None or self.max_age_days is not None


class Settings(BaseSettings):
    # API Keys
    voyage_api_key: str = ""
    openai_api_key: str = ""

    # Embeddings
    voyage_model: str = "voyage-3-large"
    embedding_dimensions: int = Field(default=1024, ge=1)

    # Chat completion
    chat_model: str = "gpt-4o"
    chat_temperature: float = 0.1
    chat_max_tokens: int = 4000

    # Persistence
    storage_backend: Literal["memory", "neo4j"] = "memory"
    neo4j_uri: str = "bolt://localhost:7687"
    neo4j_user: str = "neo4j"
    neo4j_password: str = "password"

    # App config
    debug: bool = True

    # Semantic cache
    cache_similarity_threshold: float = Field(
        default=0.93, ge=0.0, le=1.0, description="Minimum cosine similarity for a cache hit"
    )
    cache_ttl_seconds: int = Field(default=1800, gt=0)

    # Retrieval
    knowledge_top_k: int = Field(default=5, ge=1, le=50)
    knowledge_min_score: float = Field(default=0.3, ge=-1.0, le=1.0)

    # Filter intelligence
    filter_confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)

    # Provider resilience
    stream_idle_timeout_seconds: float = Field(default=30.0, gt=0)
    provider_max_retries: int = Field(default=1, ge=0)
    provider_retry_backoff_seconds: float = Field(default=0.5, ge=0)

    # Retention extension point (disabled unless configured)
    conversation_retention_max_entries: int | None = None
    conversation_retention_days: int | None = None

    # Background maintenance
    enable_maintenance_jobs: bool = True
    maintenance_interval_minutes: int = Field(default=30, ge=1)

    # Prompting
    assistant_name: str = Field(default="Marketplace Assistant", description="Name the assistant uses")
    history_window: int = Field(default=10, ge=0, description="Session messages replayed into the prompt")
    system_prompt: str = Field(
        default=(
            "You are a helpful assistant for a publisher marketplace. You help users find publisher "
            "websites, manage their cart and navigate the app. Use the provided tools when the user "
            "asks for an action; answer conceptual questions directly without calling tools."
        ),
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",  # Ignore extra fields in .env file
        env_nested_delimiter="__",
    )

    @property
    def retention(self) -> RetentionPolicy:
        """Get the configured knowledge retention policy."""
        return RetentionPolicy(
            max_conversation_entries=self.conversation_retention_max_entries,
            max_age_days=self.conversation_retention_days,
        )


settings = Settings()
