from pydantic import AnyUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Literal

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "dev"
    SERVICE_PORT: int = 8080
    LOG_JSON: bool = True
    # Event store selection: "memory" or "redis"
    STORE_BACKEND: Literal["memory", "redis"] = "memory"
    REDIS_URL: AnyUrl | None = None
    # Retention window for events; expired events are never returned
    EVENT_RETENTION_SECONDS: int = 7 * 24 * 3600
    EVENT_SWEEP_INTERVAL_SECONDS: int = 60
    # Dispatcher retry policy
    DELIVERY_MAX_RETRIES: int = 5
    DELIVERY_BACKOFF_BASE_SECONDS: float = 30.0
    DELIVERY_BACKOFF_MAX_SECONDS: float = 3600.0
    DELIVERY_BATCH_SIZE: int = 100
    WEBHOOK_URL: AnyUrl | None = None
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0
    # Upper bound for a single shadow client call
    SHADOW_CALL_TIMEOUT_SECONDS: float = 15.0
    MAX_PAGE_SIZE: int = 500

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
