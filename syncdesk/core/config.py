from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    backend_url: str = Field(default="http://localhost:8080", alias="BACKEND_URL")
    request_timeout: float = Field(default=10.0, alias="REQUEST_TIMEOUT", gt=0)
    feed_reconnect_initial_delay: float = Field(default=0.5, alias="FEED_RECONNECT_INITIAL_DELAY", gt=0)
    feed_reconnect_max_delay: float = Field(default=30.0, alias="FEED_RECONNECT_MAX_DELAY", gt=0)
    order_refetch_coalesce: bool = Field(default=False, alias="ORDER_REFETCH_COALESCE")
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @property
    def normalized_backend_url(self) -> str:
        return (self.backend_url or "").strip().rstrip("/") or "http://localhost:8080"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
