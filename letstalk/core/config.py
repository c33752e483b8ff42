"""Central configuration read from the environment."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global values read from `.env` or the environment."""

    environment: str = "development"
    log_level: str | None = Field(
        default=None,
        description="Global logging level (debug, info, warning). Defaults per environment when unset.",
    )
    log_file_path: str | None = None
    mongo_url: str = "mongodb://localhost:27017"
    mongo_db_name: str = "lets_talk"
    redis_url: str | None = Field(
        default=None,
        description="Enables the Redis fanout bus for realtime events when set.",
    )
    typing_ttl_seconds: float = Field(
        default=8.0,
        gt=0,
        description="Seconds after which a typing indicator expires without typing_stop.",
    )
    conversation_page_size: int = Field(default=20, ge=1, le=100)

    model_config = SettingsConfigDict(env_file=".env", env_prefix="LETSTALK_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
