"""pg-maintenance command-line entry point.

Deletes rows older than a retention age from one or more tables, in batches.

Usage:
    DB_USERNAME=app DB_PASSWORD=secret pg-maintenance \
        --host db --db-name app \
        --table orders:created_at:30 \
        --table sessions::0 \
        --batch 100 --timeout 60s

Each --table is name[:timestampColumn[:days]]; the column defaults to
created_at and days to 0 (every row older than the start of the run).

Exit codes:
    0  Run finished (individual tables may still have failed, see logs)
    1  No tables, bad SSL mode, missing credentials or database unreachable
    2  Invalid command-line arguments
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from pydantic import ValidationError

from config import Settings, get_settings, parse_duration
from database import ConnectionOptions, parse_ssl_mode
from observability import configure_logging, push_metrics, run_context
from retention.exceptions import ConnectionFailed
from retention.service import run_retention_job

logger = logging.getLogger(__name__)


def _duration(value: str) -> float:
    try:
        return parse_duration(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    """Build the argument parser with defaults taken from settings."""
    parser = argparse.ArgumentParser(
        prog="pg-maintenance",
        description="Delete expired rows from database tables in bounded batches",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    # Connection
    parser.add_argument(
        '--host',
        default=settings.DB_HOST,
        help='Database host (default: %(default)s)'
    )
    parser.add_argument(
        '--port',
        type=int,
        default=settings.DB_PORT,
        help='Database port (default: %(default)s)'
    )
    parser.add_argument(
        '--ssl-mode',
        default=settings.DB_SSL_MODE,
        help='SSL mode: disable, require, verify-ca, verify-full (default: %(default)s)'
    )
    parser.add_argument(
        '--db-name',
        default=settings.DB_NAME,
        help='Database name'
    )
    parser.add_argument(
        '--db-username',
        default=settings.DB_USERNAME,
        help='Database username (default: $DB_USERNAME)'
    )
    parser.add_argument(
        '--db-password',
        default=settings.DB_PASSWORD,
        help='Database password (default: $DB_PASSWORD)'
    )

    # Cleanup
    parser.add_argument(
        '--table',
        dest='tables',
        action='append',
        metavar='NAME[:COLUMN[:DAYS]]',
        help='Table to clean (can be specified multiple times)'
    )
    parser.add_argument(
        '--batch',
        type=int,
        default=settings.RETENTION_BATCH_SIZE,
        help='Rows per delete batch, 0 for a single unbounded delete (default: %(default)s)'
    )
    parser.add_argument(
        '--timeout',
        type=_duration,
        default=settings.RETENTION_TIMEOUT,
        help='Timeout for each database operation, e.g. 60s; 0s disables (default: %(default)s)'
    )

    # Logging
    parser.add_argument(
        '--log-level',
        default=settings.LOG_LEVEL,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        type=str.upper,
        help='Log level (default: %(default)s)'
    )
    parser.add_argument(
        '--log-format',
        default='json' if settings.LOG_JSON else 'text',
        choices=['json', 'text'],
        help='Log output format (default: %(default)s)'
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    settings = get_settings()
    args = build_parser(settings).parse_args(argv)

    configure_logging(level=args.log_level, json_format=args.log_format == 'json')

    with run_context():
        return run(args, settings)


def run(args: argparse.Namespace, settings: Settings) -> int:
    """Validate the parsed arguments and run the retention job."""
    tables = args.tables or settings.table_specs
    if not tables:
        logger.error("At least one --table argument is required")
        return 1

    try:
        ssl_mode = parse_ssl_mode(args.ssl_mode)
    except ValueError as e:
        logger.error(str(e))
        return 1

    try:
        options = ConnectionOptions(
            host=args.host,
            port=args.port,
            database=args.db_name,
            username=args.db_username,
            password=args.db_password,
            ssl_mode=ssl_mode,
            max_connections=settings.DB_POOL_MAX_CONNECTIONS,
            acquire_timeout=settings.DB_POOL_ACQUIRE_TIMEOUT,
            connect_timeout=settings.DB_CONNECT_TIMEOUT,
        )
    except ValidationError as e:
        missing = ", ".join(str(err["loc"][0]) for err in e.errors())
        logger.error(f"Invalid connection settings: {missing} (set --db-name, --db-username, --db-password)")
        return 1

    try:
        asyncio.run(run_retention_job(
            options,
            tables,
            batch_size=args.batch,
            timeout=args.timeout,
        ))
    except ConnectionFailed as e:
        logger.error(f"Failed to connect to database: {e}")
        return 1
    finally:
        if settings.PUSHGATEWAY_URL:
            push_metrics(settings.PUSHGATEWAY_URL)

    return 0


if __name__ == '__main__':
    sys.exit(main())
