from enum import StrEnum
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class VisionProvider(StrEnum):
    OLLAMA = "ollama"
    OPENAI = "openai"
    CLAUDE = "claude"
    GEMINI = "gemini"


class StorageBackend(StrEnum):
    LOCAL = "local"
    S3 = "s3"


class Settings(BaseSettings):
    # Vision routing
    vision_provider: VisionProvider = VisionProvider.OPENAI
    vision_timeout_seconds: float = 60.0  # per HTTP request to the vision API
    vision_max_retries: int = 3
    vision_max_tokens: int = 1500
    vision_temperature: float = 0.1

    # Ollama
    ollama_base_url: str = "http://ollama:11434"
    ollama_vision_model: str = "qwen2.5-vl:7b"

    # Cloud providers (optional)
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o"
    claude_api_key: str = ""
    claude_model: str = "claude-sonnet-4-5-20250929"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"

    # Database
    database_url: str = "sqlite+aiosqlite:///data/medpack.db"

    # Photo storage
    storage_backend: StorageBackend = StorageBackend.LOCAL
    upload_dir: Path = Path("data/uploads")
    public_url_prefix: str = "/uploads"
    s3_bucket: str = ""
    s3_region: str | None = None
    s3_endpoint_url: str | None = None
    s3_public_url: str = ""  # e.g. https://bucket.fly.storage.tigris.dev

    # Batch processing
    initial_batch_entries: int = 3
    max_photos_per_entry: int = 3
    max_upload_bytes: int = 10_000_000
    allowed_extensions: list[str] = Field(default_factory=lambda: [".jpg", ".jpeg", ".png"])
    analysis_debounce_seconds: int = 5
    analysis_workers: int = 2
    analysis_job_max_attempts: int = 3
    analyze_all_concurrency: int = 3  # bound on parallel vision calls for "analyze all"

    # Stale upload cleanup
    upload_cleanup_max_age_hours: int = 24
    upload_cleanup_interval_seconds: int = 3600

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()
