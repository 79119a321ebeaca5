"""Exceptions raised by the retention module.

Hierarchy:
    RetentionError
    ├── TableSpecError         (spec skipped, other tables proceed)
    │   ├── InvalidIdentifier
    │   └── InvalidRetention
    ├── CleanupError           (table pass aborted, other tables proceed)
    │   ├── TimedOut
    │   └── ExecutionFailed
    └── ConnectionFailed       (fatal for the whole run)
"""

from typing import Optional


class RetentionError(Exception):
    """Base exception for retention operations."""
    pass


class TableSpecError(RetentionError):
    """A table directive could not be parsed."""
    pass


class InvalidIdentifier(TableSpecError):
    """Table or column name contains characters outside [A-Za-z0-9_]."""
    pass


class InvalidRetention(TableSpecError):
    """Retention days is not a non-negative integer."""
    pass


class CleanupError(RetentionError):
    """A table cleanup pass failed.

    Attributes:
        table: Table whose pass was aborted
        rows_deleted: Rows removed by batches committed before the failure
    """

    def __init__(self, message: str, table: Optional[str] = None, rows_deleted: int = 0):
        super().__init__(message)
        self.table = table
        self.rows_deleted = rows_deleted


class TimedOut(CleanupError):
    """A database step exceeded the per-operation timeout."""
    pass


class ExecutionFailed(CleanupError):
    """The database rejected or failed a statement."""
    pass


class ConnectionFailed(RetentionError):
    """Initial database connectivity could not be established."""
    pass
