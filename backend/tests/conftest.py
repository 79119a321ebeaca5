"""Pytest fixtures for retention testing.

Provides reusable test fixtures for:
- SQLite (aiosqlite) async engines standing in for the shared connection pool
- A fixed clock so cutoffs are deterministic
- Helpers to create, fill and count timestamped tables
- Isolation of environment-driven settings

Usage:
    async def test_cleanup(sqlite_engine, make_table):
        await make_table("events", [NOW_NAIVE - timedelta(days=40)])
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, List

import pytest
from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, func, select
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

# Adjust imports based on your project structure
backend_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(backend_src))

from config import get_settings  # noqa: E402

# Fixed "now" for every test; rows are stored as naive UTC
NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
NOW_NAIVE = NOW.replace(tzinfo=None)

_SETTINGS_ENV = (
    "DB_HOST",
    "DB_PORT",
    "DB_SSL_MODE",
    "DB_NAME",
    "DB_USERNAME",
    "DB_PASSWORD",
    "RETENTION_BATCH_SIZE",
    "RETENTION_TIMEOUT",
    "RETENTION_TABLES",
    "LOG_LEVEL",
    "LOG_JSON",
    "PUSHGATEWAY_URL",
)


def fixed_clock() -> datetime:
    return NOW


def days_ago(days: float, microseconds: int = 0) -> datetime:
    """Naive UTC timestamp ``days`` before NOW."""
    return NOW_NAIVE - timedelta(days=days, microseconds=microseconds)


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """Clear settings env vars and the settings cache around each test."""
    for name in _SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)
    # Keep a developer's .env out of the tests
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def sqlite_engine(tmp_path) -> AsyncEngine:
    """File-backed SQLite engine (aiosqlite) disposed after the test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'retention.db'}")
    yield engine
    await engine.dispose()


@pytest.fixture
def make_table(sqlite_engine):
    """Create a table with an id, a label and a timestamp column, then insert rows.

    Returns an async callable: ``await make_table(name, timestamps, column="created_at")``.
    """
    async def _make_table(name: str, timestamps: Iterable[datetime], column: str = "created_at") -> Table:
        metadata = MetaData()
        table = Table(
            name,
            metadata,
            Column("id", Integer, primary_key=True),
            Column("label", String(50)),
            Column(column, DateTime()),
        )
        async with sqlite_engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
            rows = [{"label": f"row-{i}", column: ts} for i, ts in enumerate(timestamps)]
            if rows:
                await conn.execute(table.insert(), rows)
        return table

    return _make_table


@pytest.fixture
def count_rows(sqlite_engine):
    """Async callable returning the number of rows in a table."""
    async def _count_rows(table: Table) -> int:
        async with sqlite_engine.connect() as conn:
            return (await conn.execute(select(func.count()).select_from(table))).scalar_one()

    return _count_rows


@pytest.fixture
def fetch_timestamps(sqlite_engine):
    """Async callable returning a table's remaining timestamps, oldest first."""
    async def _fetch(table: Table, column: str = "created_at") -> List[datetime]:
        async with sqlite_engine.connect() as conn:
            result = await conn.execute(select(table.c[column]).order_by(table.c[column]))
            return list(result.scalars())

    return _fetch
