"""Application configuration via environment variables.

Provides type-safe settings loading using pydantic-settings.
Environment variables can be loaded from a .env file. Command-line flags
take precedence over these values (see main.py).
"""

import re
from typing import List, Optional
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings

from database import ConnectionOptions

_DURATION_PATTERN = re.compile(r"^(\d+)s$")


def parse_duration(value: str) -> float:
    """Parse a duration string such as ``"60s"`` into seconds.

    Only whole seconds with an ``s`` suffix are accepted. ``"0s"`` is valid
    and means "no timeout".

    Raises:
        ValueError: If the value is not formatted as ``<integer>s``
    """
    match = _DURATION_PATTERN.match(value.strip())
    if not match:
        raise ValueError(f"Duration must be an integer followed by 's' (e.g. '60s'), got {value!r}")
    return float(match.group(1))


def split_table_list(value: Optional[str]) -> List[str]:
    """Split a comma or whitespace separated list of table specs."""
    if not value:
        return []
    return [item for item in re.split(r"[,\s]+", value) if item]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Environment Variables:
        DB_HOST: Database host (default localhost)
        DB_PORT: Database port (default 5432)
        DB_SSL_MODE: disable | require | verify-ca | verify-full (default require)
        DB_NAME: Database name
        DB_USERNAME: Database user
        DB_PASSWORD: Database password
        DB_POOL_MAX_CONNECTIONS: Connection pool ceiling (default 5)
        DB_POOL_ACQUIRE_TIMEOUT: Seconds to wait for a pooled connection (default 10)
        DB_CONNECT_TIMEOUT: Seconds to wait for a new connection (default 10)
        RETENTION_BATCH_SIZE: Rows per delete batch, 0 for unbounded (default 1000)
        RETENTION_TIMEOUT: Per-operation timeout, e.g. "60s"; "0s" disables
        RETENTION_TABLES: Table specs for scheduled runs, comma separated
        LOG_LEVEL: Logging level (default INFO)
        LOG_JSON: Emit JSON log lines (default True)
        PUSHGATEWAY_URL: Prometheus Pushgateway address (optional)
        CELERY_BROKER_URL: Celery broker for scheduled runs
    """

    # Database
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_SSL_MODE: str = "require"
    DB_NAME: Optional[str] = None
    DB_USERNAME: Optional[str] = None
    DB_PASSWORD: Optional[str] = None
    DB_POOL_MAX_CONNECTIONS: int = 5
    DB_POOL_ACQUIRE_TIMEOUT: float = 10.0
    DB_CONNECT_TIMEOUT: float = 10.0

    # Retention
    RETENTION_BATCH_SIZE: int = 1000
    RETENTION_TIMEOUT: str = "60s"
    RETENTION_TABLES: str = ""

    # Observability
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    PUSHGATEWAY_URL: Optional[str] = None

    # Celery
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"

    @field_validator("RETENTION_TIMEOUT")
    @classmethod
    def validate_timeout(cls, v: str) -> str:
        parse_duration(v)
        return v

    @property
    def timeout_seconds(self) -> float:
        return parse_duration(self.RETENTION_TIMEOUT)

    @property
    def table_specs(self) -> List[str]:
        return split_table_list(self.RETENTION_TABLES)

    def connection_options(self) -> ConnectionOptions:
        """Build database connection options from these settings.

        Raises:
            ValueError: If DB_SSL_MODE is not a supported mode
            pydantic.ValidationError: If name or credentials are missing
        """
        return ConnectionOptions(
            host=self.DB_HOST,
            port=self.DB_PORT,
            database=self.DB_NAME,
            username=self.DB_USERNAME,
            password=self.DB_PASSWORD,
            ssl_mode=self.DB_SSL_MODE,
            max_connections=self.DB_POOL_MAX_CONNECTIONS,
            acquire_timeout=self.DB_POOL_ACQUIRE_TIMEOUT,
            connect_timeout=self.DB_CONNECT_TIMEOUT,
        )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache for singleton behavior.
    Call get_settings.cache_clear() to reload settings.
    """
    return Settings()
