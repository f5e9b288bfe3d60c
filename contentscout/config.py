"""
Application configuration using Pydantic Settings.
"""
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


class Settings(BaseSettings):
    """Settings loaded from environment variables (and an optional .env)."""

    # YouTube Data API
    YOUTUBE_API_KEY: str = ""
    YOUTUBE_API_BASE: str = "https://www.googleapis.com/youtube/v3"
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Ollama (AI analysis + embeddings)
    OLLAMA_HOST: Optional[str] = None
    LLM_MODEL: str = "qwen2.5:7b"

    # Embeddings: "ollama" or "sentence-transformers"
    EMBEDDING_BACKEND: str = "ollama"
    EMBEDDING_MODEL: str = "nomic-embed-text"
    SENTENCE_TRANSFORMER_MODEL: str = "paraphrase-multilingual-MiniLM-L12-v2"

    # Storage
    DB_PATH: str = "contentscout.db"

    # Pipeline tuning
    SEARCH_OVERSAMPLE: float = 2.0
    EMBED_BATCH_SIZE: int = 5
    TOP_K: int = 10

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=True, extra="ignore"
    )


settings = Settings()


def require_youtube_api_key(value: Optional[str] = None) -> str:
    """Return the YouTube API key or raise ConfigurationError."""
    api_key = (value if value is not None else settings.YOUTUBE_API_KEY or "").strip()
    if not api_key:
        raise ConfigurationError("YOUTUBE_API_KEY is not configured")
    return api_key
