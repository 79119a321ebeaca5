"""Prometheus metrics for retention runs.

Counters live in the default registry. A retention run is a short-lived
process, so metrics are pushed to a Pushgateway at the end of a run rather
than scraped.
"""

import logging

from prometheus_client import REGISTRY, Counter, Histogram, push_to_gateway

logger = logging.getLogger(__name__)

rows_deleted_total = Counter(
    "pg_maintenance_rows_deleted_total",
    "Total rows deleted by retention cleanup",
    ["table"]
)

batches_total = Counter(
    "pg_maintenance_batches_total",
    "Delete batches executed",
    ["table", "status"]  # status: committed|failed|timeout
)

table_cleanups_total = Counter(
    "pg_maintenance_table_cleanups_total",
    "Table cleanup passes by outcome",
    ["status"]  # status: completed|failed
)

batch_duration_seconds = Histogram(
    "pg_maintenance_batch_duration_seconds",
    "Time spent on one delete batch in seconds",
    ["table"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
)


def push_metrics(gateway: str, job: str = "pg_maintenance") -> None:
    """Push the default registry to a Prometheus Pushgateway.

    Failures are logged and swallowed: metrics delivery never changes the
    outcome of a retention run.
    """
    try:
        push_to_gateway(gateway, job=job, registry=REGISTRY)
        logger.debug(f"Pushed metrics to {gateway}")
    except Exception as e:
        logger.warning(
            f"Failed to push metrics to {gateway}: {e}",
            extra={"error_type": type(e).__name__},
        )
