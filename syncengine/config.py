from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    database_url: str = "sqlite:///./syncengine.db"
    secret_key: str = "change-me-in-production"
    log_level: str = "INFO"

    # Where OAuth callbacks and post-connect redirects land
    frontend_url: str = "http://localhost:8002"

    # Sync engine settings
    sync_timeout_seconds: float = 300.0
    sync_max_concurrency: int = 4
    oauth_state_ttl_minutes: int = 10
    default_transaction_limit: int = 500
    incremental_overlap_days: int = 3

    # Scheduled sync of due connections
    scheduled_sync_interval_minutes: int = 60
    scheduled_sync_batch_size: int = 20

    class Config:
        env_file = ".env"


@lru_cache()
def get_settings():
    return Settings()
