from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.

    Every outbound integration (gateway contacts lookup, automation,
    semantic memory) is optional: leaving its URL or credential unset
    disables it instead of failing startup.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    LOG_LEVEL: str = "INFO"

    # "production" sanitizes error bodies
    ENV: str = "development"

    # Webhook Security
    WEBHOOK_SECRET: Optional[str] = None
    RATE_LIMIT_MAX_REQUESTS: int = 100
    RATE_LIMIT_WINDOW_SECONDS: float = 60.0
    RATE_LIMIT_MAX_KEYS: int = 10_000

    # Evolution API (contacts lookup)
    EVOLUTION_API_BASE_URL: Optional[str] = None
    EVOLUTION_API_KEY: Optional[str] = None
    EVOLUTION_TIMEOUT_SECONDS: float = 10.0
    CONTACT_LOOKUP_ATTEMPTS: int = 2

    # AI auto-reply invocation
    AUTOMATION_URL: Optional[str] = None
    AUTOMATION_API_KEY: Optional[str] = None
    AUTOMATION_TIMEOUT_SECONDS: float = 10.0

    # Semantic memory (write-only)
    SUPERMEMORY_API_URL: str = "https://api.supermemory.ai"
    SUPERMEMORY_API_KEY: Optional[str] = None
    SUPERMEMORY_TIMEOUT_SECONDS: float = 5.0
    SUPERMEMORY_MAX_ATTEMPTS: int = 3
    SUPERMEMORY_BACKOFF_SECONDS: float = 0.5

    CONTEXT_CACHE_TTL_SECONDS: float = 300.0
    CONTEXT_CACHE_MAX_ENTRIES: int = 1000

    # Maintenance endpoints
    ADMIN_API_KEY: Optional[str] = None

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
