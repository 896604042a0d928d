from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Signaling hub settings loaded from environment variables.
    Environment variables take precedence over the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Shared database with the REST API - required from .env
    DATABASE_URL: str

    LOG_LEVEL: str = "INFO"

    # Token verification - must match the REST API issuing the tokens
    JWT_SECRET: str
    JWT_ALGORITHM: str = "HS256"

    # Seconds an unauthenticated socket may stay open (0 disables)
    WS_AUTH_TIMEOUT: float = 10.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every connection.
    """
    return Settings()


settings = get_settings()
