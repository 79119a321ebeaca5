"""Pydantic schemas for retention targets and run statistics.

This module defines retention-related schemas:
- TableSpec: One validated cleanup target (table, timestamp column, age)
- CleanupResult: Outcome of one table's cleanup pass
- RetentionStatistics: Summary of a whole retention run
"""

import re
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_TIMESTAMP_COLUMN = "created_at"

# ASCII only: str.isalnum() and \w accept non-ASCII letters
_IDENTIFIER_PATTERN = re.compile(r"[A-Za-z0-9_]+")


def is_valid_identifier(name: str) -> bool:
    """Whether name is safe to interpolate into SQL text as an identifier."""
    return bool(name) and _IDENTIFIER_PATTERN.fullmatch(name) is not None


class TableSpec(BaseModel):
    """A table whose rows expire after ``retention_days``.

    ``name`` and ``timestamp_column`` are interpolated into SQL text, so both
    are restricted to ASCII letters, digits and underscore.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Table to clean")

    timestamp_column: str = Field(
        default=DEFAULT_TIMESTAMP_COLUMN,
        description="Column compared against the cutoff"
    )

    retention_days: int = Field(
        default=0,
        ge=0,
        description="Rows older than this many days are deleted (0 = all current rows)"
    )

    @field_validator("name", "timestamp_column")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        if not is_valid_identifier(v):
            raise ValueError(f"{v!r} is not a valid identifier (allowed: A-Z, a-z, 0-9, _)")
        return v

    def __str__(self) -> str:
        return f"{self.name}:{self.timestamp_column}:{self.retention_days}"


class CleanupStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class CleanupResult(BaseModel):
    """Outcome of one table directive within a run."""

    spec: str = Field(description="Raw table directive as supplied")

    table: Optional[str] = Field(
        default=None,
        description="Table name (None when the directive did not parse)"
    )

    timestamp_column: Optional[str] = None
    retention_days: Optional[int] = None
    cutoff: Optional[datetime] = None

    status: CleanupStatus

    rows_deleted: int = Field(
        default=0,
        ge=0,
        description="Rows removed by committed batches"
    )

    batches: int = Field(
        default=0,
        ge=0,
        description="Delete statements committed, including the final empty one"
    )

    error_type: Optional[str] = None
    error: Optional[str] = None

    duration_seconds: float = Field(default=0.0, ge=0.0)

    @property
    def succeeded(self) -> bool:
        return self.status == CleanupStatus.COMPLETED


class RetentionStatistics(BaseModel):
    """Statistics from a retention run.

    Tracks how many tables were processed, how many rows were deleted,
    and which tables failed.
    """

    job_started_at: datetime = Field(
        description="When the retention run started"
    )

    job_completed_at: datetime = Field(
        description="When the retention run completed"
    )

    duration_seconds: float = Field(
        ge=0.0,
        description="Run duration in seconds"
    )

    run_id: Optional[str] = Field(
        default=None,
        description="Correlation ID attached to every log line of the run"
    )

    results: List[CleanupResult] = Field(default_factory=list)

    @property
    def tables_processed(self) -> int:
        return len(self.results)

    @property
    def tables_failed(self) -> int:
        return sum(1 for r in self.results if not r.succeeded)

    @property
    def total_records_deleted(self) -> int:
        """Total rows deleted across all tables, failed passes included."""
        return sum(r.rows_deleted for r in self.results)

    @property
    def has_errors(self) -> bool:
        """Whether any table failed to parse or clean."""
        return self.tables_failed > 0
