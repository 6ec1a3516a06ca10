from __future__ import annotations
from functools import lru_cache
from typing import Dict
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── App ──────────────────────────────────────────────────────────────────
    APP_NAME: str = "Catalog Sync Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # ── Authentication ───────────────────────────────────────────────────────
    OPERATOR_API_KEY: str  # required, no default

    # ── Database ─────────────────────────────────────────────────────────────
    DB_USER: str  # required, no default
    DB_PASSWORD: str  # required, no default
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "catalog_sync"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # ── Redis (cancellation flags) ───────────────────────────────────────────
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_POOL_SIZE: int = 10
    REDIS_SOCKET_TIMEOUT: float = 2.0
    REDIS_CONNECT_TIMEOUT: float = 2.0

    @property
    def REDIS_URL(self) -> str:
        from urllib.parse import quote_plus
        if self.REDIS_PASSWORD:
            return f"redis://:{quote_plus(self.REDIS_PASSWORD)}@{self.REDIS_HOST}:{self.REDIS_PORT}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}"

    # ── Response cache TTLs (seconds) ────────────────────────────────────────
    CACHE_TTL_SEARCH: int = 3600
    CACHE_TTL_ITEM_DETAILS: int = 7200
    CACHE_TTL_BROWSE_NODES: int = 86400
    CACHE_TTL_VARIATIONS: int = 3600

    # ── External product API ─────────────────────────────────────────────────
    PRODUCT_API_URL: str = "https://products.example.com/v1"
    PRODUCT_API_KEY: str = ""
    PRODUCT_API_TIMEOUT: float = 10.0
    PRODUCT_API_MAX_RETRIES: int = 3

    # ── Sync engine ──────────────────────────────────────────────────────────
    SCHEDULER_ENABLED: bool = True
    ERROR_THRESHOLD: int = 5             # consecutive failures that abort a batch
    API_REQUEST_DELAY: float = 1.0       # seconds between external calls
    MAX_RETRIES: int = 3
    RETRY_DELAY: int = 300
    BACKOFF_MULTIPLIER: float = 2.0
    MAX_RETRY_DELAY: int = 3600
    LOG_RETENTION_DAYS: int = 30
    PRICE_HISTORY_LIMIT: int = 30
    PRICE_ALERT_THRESHOLD_PERCENT: float = 10.0

    # Named settings read by job preconditions ("1" = on, "0" = off)
    SYNC_OPTIONS: Dict[str, str] = {
        "auto_sync_enabled": "1",
        "sync_price": "1",
        "sync_stock": "1",
        "sync_title": "1",
        "sync_description": "0",
        "sync_images": "1",
        "auto_categories": "1",
        "product_category_cron": "1",
    }

    @property
    def DATABASE_URL(self) -> str:
        from urllib.parse import quote_plus
        return (
            f"postgresql+asyncpg://{quote_plus(self.DB_USER)}:{quote_plus(self.DB_PASSWORD)}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_env(cls, v: str) -> str:
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"ENVIRONMENT must be one of {allowed}")
        return v

    @field_validator("ERROR_THRESHOLD", "MAX_RETRIES")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    model_config = {"env_file": ".env", "extra": "ignore"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
