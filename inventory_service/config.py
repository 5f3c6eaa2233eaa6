from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./inventory.db"
    DATABASE_ECHO: bool = False
    API_KEY: str | None = None

    CATALOG_SERVICE_URL: str = "http://localhost:3001"
    CATALOG_API_KEY: str | None = None
    CATALOG_TIMEOUT: float = 5.0
    CATALOG_RETRY_ATTEMPTS: int = 3
    CATALOG_BACKOFF_BASE: float = 1.0
    CATALOG_BACKOFF_JITTER: float = 0.0
    # 0 disables the circuit breaker; pybreaker runs guarded calls one at a time
    CATALOG_BREAKER_FAIL_MAX: int = 0
    CATALOG_BREAKER_RESET_TIMEOUT: int = 60

    PURCHASE_HISTORY_LIMIT: int = 10
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
