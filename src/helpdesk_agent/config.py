"""Configuration models for the support agent and its knowledge base."""

from __future__ import annotations

from functools import lru_cache

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_EMBEDDING_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class ChunkingConfig(BaseModel):
    """Configures sentence packing and overlap for knowledge-base chunks."""

    max_tokens: int = Field(default=500, ge=20)
    overlap_tokens: int = Field(default=50, ge=0)
    min_chunk_size: int = Field(default=25, ge=0)

    @model_validator(mode="after")
    def _check_overlap(self) -> "ChunkingConfig":
        if self.overlap_tokens >= self.max_tokens:
            raise ValueError("overlap_tokens must be less than max_tokens")
        return self


class RetrievalConfig(BaseModel):
    """Configures vector search defaults."""

    top_k: int = Field(default=5, ge=1)
    score_threshold: float = Field(default=0.25, ge=0.0, le=1.0)
    max_limit: int = Field(default=20, ge=1)


class AgentConfig(BaseModel):
    """Configures the tool-calling loop."""

    max_iterations: int = Field(default=5, ge=1)
    max_tokens: int = Field(default=2000, ge=1)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    context_window: int = Field(default=10, ge=1)


class Settings(BaseSettings):
    """Environment-driven service settings (``HELPDESK_`` prefix)."""

    model_config = SettingsConfigDict(
        env_prefix="HELPDESK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    openai_api_key: str | None = None
    openai_base_url: str | None = None
    chat_model: str = "gpt-4o"
    embedding_model: str = "text-embedding-3-small"
    llm_timeout_seconds: float = 60.0

    qdrant_url: str | None = None
    qdrant_api_key: str | None = None
    qdrant_collection: str = "knowledge_base"
    vector_size: int | None = None
    vector_timeout_seconds: float = 30.0

    tool_http_timeout_seconds: float = 30.0
    database_path: str = "helpdesk_agent.db"
    index_workers: int = Field(default=2, ge=1)
    log_level: str = "INFO"

    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)

    @property
    def resolved_vector_size(self) -> int:
        return self.vector_size or vector_size_for_model(self.embedding_model)


def vector_size_for_model(model: str) -> int:
    """Return the embedding dimension for a known model (1536 otherwise)."""
    return _EMBEDDING_DIMENSIONS.get(model, 1536)


@lru_cache
def get_settings() -> Settings:
    return Settings()
