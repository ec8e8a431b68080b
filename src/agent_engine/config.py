"""Configuration models for the agent engine."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ChunkingConfig(BaseModel):
    """Configures sentence-packed chunking with tail overlap."""

    max_tokens: int = Field(default=512, gt=0)
    overlap_tokens: int = Field(default=50, ge=0)
    min_chunk_length: int = Field(default=50, ge=0)

    @model_validator(mode="after")
    def _check_overlap(self) -> "ChunkingConfig":
        if self.overlap_tokens >= self.max_tokens:
            raise ValueError("overlap_tokens must be less than max_tokens")
        return self


class EmbeddingConfig(BaseModel):
    """Configures embedding dimension and provider batching."""

    dimensions: int = Field(default=1536, ge=1)
    max_batch_size: int = Field(default=100, ge=1)


class RetrievalConfig(BaseModel):
    """Configures dual-route retrieval and RRF fusion."""

    vector_top_k: int = Field(default=20, ge=1)
    text_top_k: int = Field(default=20, ge=1)
    vector_weight: float = Field(default=0.7, ge=0.0)
    text_weight: float = Field(default=0.3, ge=0.0)
    min_score: float = Field(default=0.0, ge=0.0)
    rrf_k: int = Field(default=60, ge=1)


class AugmentationConfig(BaseModel):
    """Configures context injection into the latest user message."""

    threshold: float = Field(default=0.0, ge=0.0, le=1.0)
    limit: int = Field(default=5, ge=1)


class AgentConfig(BaseModel):
    """Configures a run coordinator."""

    provider: str | None = None
    model: str | None = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4096, ge=1)
    system_prompt: str = (
        "You are a helpful AI assistant. Provide clear, accurate, and helpful responses."
    )
    max_tool_iterations: int = Field(default=5, ge=0)


class EventLogConfig(BaseModel):
    """Configures the per-session event log."""

    ttl_seconds: int = Field(default=60 * 60, ge=1)
    key_prefix: str = "agui:events:"


class Settings(BaseSettings):
    """Process settings loaded from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_prefix="AGENT_ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    redis_url: str | None = None
    openai_api_key: str | None = Field(default=None, validation_alias="OPENAI_API_KEY")
    openai_model: str = Field(default="gpt-4o-mini", validation_alias="OPENAI_MODEL")
    provider: str = "openai"
    temperature: float = 0.7

    storage_root: Path = Path("var/storage")
    database_path: Path = Path("var/agent_engine.db")

    mail_api_key: str | None = None
    mail_from: str = "noreply@example.com"
    web_search_api_key: str | None = None

    log_level: str = "INFO"
    log_format: str = "console"
