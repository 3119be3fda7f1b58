from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required
    DATABASE_URL: str

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Webhook Security - signature check is skipped when empty
    META_APP_SECRET: str = ""

    # Provider (WhatsApp Cloud API)
    GRAPH_API_BASE_URL: str = "https://graph.facebook.com"
    DEFAULT_API_VERSION: str = "v23.0"
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Media storage (Google Cloud Storage) - relay is disabled when empty
    MEDIA_BUCKET: str = ""
    MEDIA_SIGNED_URL_TTL_SECONDS: int = 7 * 24 * 3600
    MEDIA_MAX_BYTES: int = 100 * 1024 * 1024


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
