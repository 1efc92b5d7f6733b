"""Application configuration."""

import os

from pydantic_settings import BaseSettings, SettingsConfigDict

_ENVIRONMENT = os.getenv("ENVIRONMENT", "local")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    api_base_url: str = "http://localhost:5000"
    api_token: str | None = None
    api_timeout_seconds: float = 30.0
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    openai_reasoning_effort: str | None = None
    openai_store: bool = False
    analysis_mode: str = "server"
    max_concurrent_uploads: int = 3
    chunk_size_bytes: int = 500 * 1024
    concurrent_chunks: int = 3
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    chunked_upload_threshold_bytes: int = 5 * 1024 * 1024
    analysis_batch_size: int = 10
    analysis_batch_delay_seconds: float = 1.0
    eager_data_url_max_bytes: int = 5 * 1024 * 1024
    backup_path: str = ".photo_report_backup.json"
    environment: str = _ENVIRONMENT

    model_config = SettingsConfigDict(
        env_file=(f".env.{_ENVIRONMENT}", ".env"),
        extra="ignore",
    )


def parse_api_base_url(raw: str) -> str:
    """Normalize the backend base URL so paths can be appended directly."""
    cleaned = raw.strip()
    if not cleaned:
        raise ValueError("API base URL must not be empty")
    return cleaned.rstrip("/")
