"""Run IDs for correlating the log lines of one retention run.

A run ID looks like ``20260115T120000Z-3f9c2a1b``: the UTC start time
followed by a random suffix, so IDs sort by start time and one run's output
can be grepped out of shared logs.

``run_context()`` either starts a new run or joins the run already active in
the current context, so the CLI, the Celery task and ``run_retention_job``
all log under the same ID without passing it around.
"""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

run_id_var: ContextVar[Optional[str]] = ContextVar("run_id", default=None)


def generate_run_id(started_at: Optional[datetime] = None) -> str:
    started_at = started_at or datetime.now(timezone.utc)
    return f"{started_at:%Y%m%dT%H%M%SZ}-{uuid.uuid4().hex[:8]}"


def get_run_id() -> str:
    """Current run ID, or "no-run-id" outside a run."""
    return run_id_var.get() or "no-run-id"


@contextmanager
def run_context(run_id: Optional[str] = None) -> Iterator[str]:
    """Bind a run ID for the duration of the block and yield it.

    Uses ``run_id`` if given, otherwise the ID of the enclosing run, otherwise
    a fresh one. The previous value is restored on exit.
    """
    run_id = run_id or run_id_var.get() or generate_run_id()
    token = run_id_var.set(run_id)
    try:
        yield run_id
    finally:
        run_id_var.reset(token)
