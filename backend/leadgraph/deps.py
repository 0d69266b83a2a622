"""Dependency providers and settings management."""

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    ENVIRONMENT: str = "development"

    # Redis Configuration (lock backend + ARQ)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Named lock backend: redis | postgres | local
    LOCK_BACKEND: str = "redis"
    LOCK_TTL_SECONDS: int = 30

    # Attribution
    AD_PLATFORM_KEYWORDS: str = "facebook,fb,meta,instagram,google,gclid,adwords,tiktok,cpc,paid"
    FALLBACK_WINDOW_DAYS: int = 3
    SESSION_LOOKBACK_DAYS: Optional[int] = None

    # Session linking
    SIMILAR_SESSION_LOOKBACK_DAYS: int = 30
    SIMILAR_SESSION_LIMIT: int = 20
    IP_TIMEZONE_RECENCY_HOURS: int = 2
    AUTO_LINK_MIN_PROBABILITY: float = 0.70

    # Batch jobs
    CLEANUP_CHUNK_SIZE: int = 50
    RETRO_LINK_LOOKBACK_HOURS: int = 2
    RETRO_LINK_BATCH_SIZE: int = 50
    RETRO_LINK_SESSION_DAYS: int = 7

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def ad_platform_keywords(self) -> List[str]:
        return [k.strip().lower() for k in self.AD_PLATFORM_KEYWORDS.split(",") if k.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


@lru_cache()
def get_lock_provider():
    """Named-lock provider for the configured backend (FastAPI dependency).

    Cached so the in-process backend shares one lock table per process.
    """
    from .services.named_lock import build_lock_provider

    return build_lock_provider(get_settings())
