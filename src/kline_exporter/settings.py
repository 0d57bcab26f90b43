from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import DEFAULT_TIMEZONE, MAX_LOGS
from .policy import MAX_BACKOFF_MS, RetryPolicy


class Settings(BaseSettings):
    """Runtime configuration, read from ``KLINE_*`` env vars or ``.env``."""

    model_config = SettingsConfigDict(env_prefix="KLINE_", env_file=".env", extra="ignore")

    base_url: str = "https://fapi.binance.com"
    request_timeout_s: float = 15.0
    kline_limit: int = 1000

    max_backoff_ms: int = MAX_BACKOFF_MS
    max_attempts: Optional[int] = None

    state_dsn: Optional[str] = None
    state_file: Path = Path.home() / ".kline-exporter" / "state.json"
    state_file_max_bytes: int = 5 * 1024 * 1024

    log_max: int = MAX_LOGS
    default_timezone: str = DEFAULT_TIMEZONE

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_backoff_ms=self.max_backoff_ms, max_attempts=self.max_attempts)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
