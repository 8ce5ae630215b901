"""Application settings for the site chatbot (Ollama + Milvus + Redis)."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration, read from ``SITECHAT_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SITECHAT_",
        env_file=None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Core application settings
    app_env: Literal["development", "staging", "production", "test"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = True

    # Embedding provider
    embedding_provider: Literal["ollama", "openai"] = "ollama"
    ollama_url: str = "http://localhost:11434"
    embedding_model: str = "nomic-embed-text"
    embedding_dimension: int = Field(default=768, ge=1)
    openai_api_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    embedding_timeout_seconds: float = Field(default=30.0, gt=0)
    embedding_concurrency: int = Field(default=4, ge=1, le=64)

    # Vector database
    milvus_uri: str = "http://localhost:19530"
    milvus_token: Optional[str] = None
    milvus_collection: str = "site_pages"
    vector_timeout_seconds: float = Field(default=10.0, gt=0)
    vector_upsert_batch_size: int = Field(default=100, ge=1)

    # Sparse index
    bm25_index_path: str = "data/bm25-index.json"

    # Chunking
    chunk_max_tokens: int = Field(default=800, ge=1)
    chunk_overlap_tokens: int = Field(default=100, ge=0)
    chunk_min_chars: int = Field(default=200, ge=0)
    heading_max_chars: int = Field(default=100, ge=1)
    min_page_chars: int = Field(default=100, ge=0)

    # Retrieval
    fusion_strategy: Literal["weighted", "rrf"] = "weighted"
    semantic_weight: float = Field(default=0.7, ge=0.0, le=1.0)
    rrf_k: int = Field(default=60, ge=1)
    default_top_k: int = Field(default=8, ge=1, le=100)
    similarity_threshold: float = Field(default=0.28, ge=0.0, le=1.0)
    candidate_multiplier: int = Field(default=2, ge=1)
    allow_sparse_only_fallback: bool = False
    query_expansion_rules_path: Optional[str] = None

    # Cache
    redis_url: Optional[str] = None
    cache_ttl_seconds: int = Field(default=3600, ge=1)

    # Answer generation
    llm_model: str = "llama3.2:3b"
    llm_timeout_seconds: float = Field(default=600.0, gt=0)
    llm_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    llm_max_tokens: int = Field(default=300, ge=1)
    site_name: str = "our website"

    @field_validator("chunk_overlap_tokens")
    @classmethod
    def overlap_must_be_smaller_than_chunk(cls, v: int, info) -> int:
        """Overlap has to leave room for new content in every chunk."""
        max_tokens = info.data.get("chunk_max_tokens")
        if max_tokens is not None and v >= max_tokens:
            raise ValueError("chunk_overlap_tokens must be smaller than chunk_max_tokens")
        return v

    @field_validator("openai_base_url", "ollama_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience alias
settings = get_settings()
