from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    # PostgreSQL
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "postgres"
    postgres_password: str = ""
    postgres_database: str = "cryptotracker"

    # Storage: "database" persists to the kv_store table, "memory" keeps
    # everything in-process (useful for local runs and tests)
    storage_backend: str = "database"

    # Namespace for ledger keys
    user_id: str = "local-user"

    # CoinGecko
    coingecko_base_url: str = "https://api.coingecko.com/api/v3"
    coingecko_api_key: str = ""
    vs_currency: str = "usd"
    connect_timeout_seconds: int = 30
    read_timeout_seconds: int = 45

    # Price provider rate limiting
    rate_limit_window_hours: int = 8
    min_call_interval_minutes: int = 5
    max_calls_per_window: int = 5
    asset_cache_hours: int = 6
    rate_limited_cache_hours: int = 12
    historical_cache_hours: int = 24

    # Portfolio refresh policy
    price_cache_hours: int = 8
    refresh_cooldown_hours: int = 8
    manual_refresh_penalty_hours: int = 2

    # Polling
    poll_interval_seconds: int = 900

    # API
    cors_origins: List[str] = ["*"]

    # Logging
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_database}"
        )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    return Settings()
