"""Observability module for pg-maintenance.

Provides structured logging, run correlation IDs and metrics.
"""

from .logging_config import configure_logging, get_logger
from .metrics import (
    rows_deleted_total,
    batches_total,
    table_cleanups_total,
    batch_duration_seconds,
    push_metrics,
)
from .run_id import run_id_var, get_run_id, generate_run_id, run_context

__all__ = [
    # Logging
    "configure_logging",
    "get_logger",
    # Metrics
    "rows_deleted_total",
    "batches_total",
    "table_cleanups_total",
    "batch_duration_seconds",
    "push_metrics",
    # Run ID
    "run_id_var",
    "get_run_id",
    "generate_run_id",
    "run_context",
]
