from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Primary (local) database, read from the standard libpq variables
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "pratham_tarl"
    primary_database_url: Optional[str] = None  # overrides the PG* fields
    primary_pool_size: int = 20
    primary_connect_timeout: int = 5

    # Secondary (remote) database; never hard-coded, must be injected
    secondary_database_url: Optional[str] = None
    secondary_pghost: Optional[str] = None
    secondary_pgport: int = 5432
    secondary_pguser: str = "postgres"
    secondary_pgpassword: str = ""
    secondary_pgdatabase: str = "tarl_ptom"
    secondary_sslmode: str = "require"
    secondary_pool_size: int = 10
    secondary_connect_timeout: int = 10

    # Synchronization
    sync_enabled: bool = True
    sync_mode: str = "real-time"  # "real-time", "batch", "manual"
    sync_batch_interval: int = 5  # minutes
    sync_retry_attempts: int = 3
    sync_retry_delay: int = 1000  # milliseconds
    sync_batch_size: int = 100

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
