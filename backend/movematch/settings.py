"""Centralized application settings using Pydantic BaseSettings.

Engine thresholds live next to the engine in ``services.matching.config``;
this module holds the service-level configuration (database, CORS, provider
timeouts).
"""
from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
import os


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )

    # Core
    app_name: str = "MoveMatch Backend"
    environment: str = Field("development", alias="ENVIRONMENT")
    debug: bool = False

    # Database
    mongo_uri: str = Field("mongodb://mongo:27017/movematch", alias="MONGO_URI")
    mongo_db: str = Field("movematch", alias="MONGO_DB")

    # URLs / CORS
    allowed_origins: str = Field("*", alias="ALLOWED_ORIGINS")
    cors_allow_credentials: bool = Field(True, alias="CORS_ALLOW_CREDENTIALS")

    # Distance provider
    distance_provider_timeout_seconds: float = Field(8.0, alias="DISTANCE_PROVIDER_TIMEOUT_SECONDS")
    geocode_country: str = Field("France", alias="GEOCODE_COUNTRY")


@lru_cache()
def get_settings() -> Settings:
    s = Settings()  # type: ignore[call-arg]

    env = (s.environment or os.getenv('ENVIRONMENT', '')).lower()
    if env in ('production', 'prod'):
        if not s.allowed_origins or str(s.allowed_origins).strip() in ('*', ''):
            raise RuntimeError('ALLOWED_ORIGINS must be set to specific origins in production (no "*")')
    return s


__all__ = ["Settings", "get_settings"]
