"""Data retention and cleanup module.

Deletes rows older than a per-table retention age, in bounded batches.

This module provides:
- Table directive parsing (name[:timestampColumn][:retentionDays])
- Batched, transactional, timeout-bounded cleanup per table
- Per-table failure isolation and run statistics
"""

from .exceptions import (
    RetentionError,
    TableSpecError,
    InvalidIdentifier,
    InvalidRetention,
    CleanupError,
    TimedOut,
    ExecutionFailed,
    ConnectionFailed,
)
from .parser import parse_table_spec
from .schemas import (
    TableSpec,
    CleanupResult,
    CleanupStatus,
    RetentionStatistics,
    is_valid_identifier,
)

# Service and tasks are imported lazily to avoid circular dependencies
# Use: from retention.service import RetentionService
# Use: from retention.tasks import retention_cleanup_task

__all__ = [
    "RetentionError",
    "TableSpecError",
    "InvalidIdentifier",
    "InvalidRetention",
    "CleanupError",
    "TimedOut",
    "ExecutionFailed",
    "ConnectionFailed",
    "parse_table_spec",
    "TableSpec",
    "CleanupResult",
    "CleanupStatus",
    "RetentionStatistics",
    "is_valid_identifier",
]
