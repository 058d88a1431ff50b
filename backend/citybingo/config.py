"""Application configuration using Pydantic Settings."""
from pathlib import Path
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # Application
    APP_NAME: str = "City Bingo"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./data/bingo.db"

    # Redis (Celery broker + batch progress pub/sub)
    REDIS_URL: str = "redis://redis:6379/0"

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # OpenAI
    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    OPENAI_IMAGE_MODEL: str = "dall-e-3"
    OPENAI_IMAGE_SIZE: str = "1024x1024"
    OPENAI_TEXT_MODEL: str = "gpt-4o"
    OPENAI_MAX_ATTEMPTS: int = 3
    OPENAI_RETRY_BASE_SECONDS: float = 2.0

    # Image storage: primary root, with a fallback for read-only runtimes
    IMAGE_DIR: str = "./public/images"
    IMAGE_FALLBACK_DIR: str = "/tmp/images"
    IMAGE_PUBLIC_PREFIX: str = "/images"
    IMAGE_FETCH_TIMEOUT_SECONDS: float = 30.0
    IMAGE_FETCH_USER_AGENT: str = "Mozilla/5.0 (compatible; BingoAppProxy/1.0)"
    # Hosts whose URLs expire after a short window (comma-separated)
    EXPIRING_IMAGE_HOSTS: str = "oaidalleapiprodscus.blob.core.windows.net"

    # Generation coordination
    DEDUP_STALE_SECONDS: float = 120.0
    GENERATION_TIMEOUT_SECONDS: float = 180.0
    PERSIST_MAX_ATTEMPTS: int = 3
    PERSIST_BASE_DELAY_SECONDS: float = 0.5

    # Batch pacing defaults
    BATCH_GROUP_SIZE: int = 3
    BATCH_INTER_DELAY_SECONDS: float = 5.0
    BATCH_SPACING_SECONDS: float = 3.0
    BATCH_REFRESH_EVERY: int = 5
    DESCRIPTION_BATCH_SIZE: int = 5
    DESCRIPTION_BATCH_DELAY_SECONDS: float = 1.0

    # Where background batch workers reach the API
    API_BASE_URL: str = "http://localhost:8000"

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def expiring_hosts_list(self) -> list[str]:
        return [h.strip().lower() for h in self.EXPIRING_IMAGE_HOSTS.split(",") if h.strip()]

    @property
    def image_path(self) -> Path:
        # Not created here: the storage root is resolved once at startup
        return Path(self.IMAGE_DIR)

    @property
    def image_fallback_path(self) -> Path:
        return Path(self.IMAGE_FALLBACK_DIR)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
