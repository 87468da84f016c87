"""
Application Configuration
Loads environment variables and provides typed configuration.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # OpenAI-compatible model gateway
    openai_api_key: str = Field(...)
    openai_base_url: Optional[str] = Field(default=None)
    gateway_credits_url: Optional[str] = Field(default=None)

    # Pinecone
    pinecone_api_key: str = Field(...)
    pinecone_index: str = Field(default="pdf-rag")
    vector_metric: str = Field(default="cosine")

    # Supabase
    supabase_url: str = Field(...)
    supabase_service_key: str = Field(...)

    # App Settings
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")
    upload_dir: str = Field(default="/tmp/pdf-uploads")
    upstream_timeout_seconds: float = Field(default=30.0)

    # Embedding Settings
    embedding_model: str = "text-embedding-3-large"
    embedding_dimensions: int = 3072

    # Generation Settings
    llm_model: str = Field(default="gpt-4o-mini")
    llm_temperature: float = Field(default=0.3)
    llm_max_tokens: Optional[int] = Field(default=None)

    # Retrieval Settings
    top_k: int = Field(default=6)
    history_limit: int = Field(default=10)
    snippet_length: int = 80
    max_content_chars: int = 8000

    # Evaluation Settings
    judge_model: Optional[str] = Field(default=None)
    eval_overlap_threshold: float = Field(default=0.5)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
