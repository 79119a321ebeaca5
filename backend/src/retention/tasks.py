"""Celery tasks for scheduled retention cleanup.

Tasks:
- retention_cleanup_task: Cleans every table listed in RETENTION_TABLES

Example Celery Beat schedule configuration:
    from celery.schedules import crontab

    celery_app.conf.beat_schedule = {
        'retention-cleanup-nightly': {
            'task': 'retention.cleanup',
            'schedule': crontab(hour=2, minute=0),
            'options': {'expires': 3600},
        },
    }
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from celery import shared_task

from config import Settings, get_settings
from observability import push_metrics, run_context
from .exceptions import ConnectionFailed
from .service import run_retention_job

logger = logging.getLogger(__name__)


@shared_task(name="retention.cleanup")
def retention_cleanup_task(tables: Optional[List[str]] = None) -> Dict[str, Any]:
    """Run retention cleanup for the configured tables.

    Args:
        tables: Table directives; defaults to RETENTION_TABLES from settings

    Returns:
        Dict with status ('completed', 'skipped' or 'failed') and statistics.
        Per-table failures still yield 'completed' with has_errors set.
    """
    settings = get_settings()
    specs = tables if tables is not None else settings.table_specs

    with run_context() as run_id:
        result = _run_cleanup(settings, specs)
    result['run_id'] = run_id
    return result


def _run_cleanup(settings: Settings, specs: List[str]) -> Dict[str, Any]:
    if not specs:
        logger.warning("Retention cleanup task skipped: no tables configured")
        return {'status': 'skipped', 'total_deleted': 0}

    logger.info(f"Retention cleanup task started for {len(specs)} tables")

    try:
        options = settings.connection_options()
        statistics = asyncio.run(run_retention_job(
            options,
            specs,
            batch_size=settings.RETENTION_BATCH_SIZE,
            timeout=settings.timeout_seconds,
        ))
    except (ConnectionFailed, ValueError) as e:
        logger.error(
            "Retention cleanup task failed",
            exc_info=True,
            extra={"error_type": type(e).__name__}
        )
        return {
            'status': 'failed',
            'error': str(e),
            'total_deleted': 0,
        }
    finally:
        if settings.PUSHGATEWAY_URL:
            push_metrics(settings.PUSHGATEWAY_URL)

    return {
        'status': 'completed',
        'job_started_at': statistics.job_started_at.isoformat(),
        'job_completed_at': statistics.job_completed_at.isoformat(),
        'duration_seconds': statistics.duration_seconds,
        'tables_processed': statistics.tables_processed,
        'tables_failed': statistics.tables_failed,
        'total_deleted': statistics.total_records_deleted,
        'has_errors': statistics.has_errors,
        'results': [r.model_dump(mode="json") for r in statistics.results],
    }
