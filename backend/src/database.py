"""Database connectivity for retention runs.

Builds the shared async connection pool (SQLAlchemy AsyncEngine over asyncpg),
maps TLS modes and verifies connectivity before any table is touched.
"""

import asyncio
import logging
from enum import Enum

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from retention.exceptions import ConnectionFailed

logger = logging.getLogger(__name__)


class SSLMode(str, Enum):
    """TLS modes understood by the PostgreSQL client."""
    DISABLE = "disable"
    REQUIRE = "require"
    VERIFY_CA = "verify-ca"
    VERIFY_FULL = "verify-full"


def parse_ssl_mode(mode: str) -> SSLMode:
    """Map a textual SSL mode to SSLMode.

    Raises:
        ValueError: If the mode is not one of disable, require, verify-ca, verify-full
    """
    try:
        return SSLMode(mode)
    except ValueError:
        supported = ", ".join(m.value for m in SSLMode)
        raise ValueError(f"Unsupported SSL mode {mode!r}; supported modes: {supported}") from None


class ConnectionOptions(BaseModel):
    """Connection parameters for the target database."""

    host: str = "localhost"
    port: int = Field(default=5432, ge=1, le=65535)
    database: str = Field(min_length=1)
    username: str = Field(min_length=1)
    password: str
    ssl_mode: SSLMode = SSLMode.REQUIRE
    max_connections: int = Field(default=5, ge=1)
    acquire_timeout: float = Field(default=10.0, gt=0)
    connect_timeout: float = Field(default=10.0, gt=0)

    @field_validator("ssl_mode", mode="before")
    @classmethod
    def validate_ssl_mode(cls, v):
        if isinstance(v, SSLMode):
            return v
        return parse_ssl_mode(v)

    def url(self) -> URL:
        return URL.create(
            "postgresql+asyncpg",
            username=self.username,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.database,
        )

    def safe_target(self) -> str:
        """host:port/database without credentials, for logging."""
        return f"{self.host}:{self.port}/{self.database}"


def create_engine(options: ConnectionOptions) -> AsyncEngine:
    """Create the async connection pool.

    The pool never grows beyond ``max_connections``; waiting for a free
    connection is bounded by ``acquire_timeout``.
    """
    return create_async_engine(
        options.url(),
        pool_size=options.max_connections,
        max_overflow=0,
        pool_timeout=options.acquire_timeout,
        pool_pre_ping=True,
        echo=False,
        connect_args={
            "ssl": options.ssl_mode.value,
            "timeout": options.connect_timeout,
        },
    )


async def verify_connection(engine: AsyncEngine, timeout: float) -> None:
    """Run a trivial query to prove the database is reachable.

    Raises:
        ConnectionFailed: If the connection cannot be established in time
    """
    async def _ping() -> None:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    try:
        await asyncio.wait_for(_ping(), timeout)
    except asyncio.TimeoutError as e:
        raise ConnectionFailed(f"Timed out after {timeout:g}s connecting to database") from e
    except Exception as e:
        raise ConnectionFailed(f"Failed to connect to database: {e}") from e


async def connect(options: ConnectionOptions) -> AsyncEngine:
    """Create the pool and verify connectivity.

    Returns:
        AsyncEngine: Ready-to-use shared pool handle

    Raises:
        ConnectionFailed: If the database is unreachable. The pool is disposed.
    """
    engine = create_engine(options)
    try:
        await verify_connection(engine, options.connect_timeout + options.acquire_timeout)
    except ConnectionFailed:
        await engine.dispose()
        raise

    logger.info(
        f"Connected to the database successfully ({options.safe_target()})",
        extra={"target": options.safe_target()},
    )
    return engine
