"""Retention service for age-based row deletion.

This service implements the core retention logic:
- Compute a cutoff once per table pass (now - retention_days)
- Delete eligible rows in bounded batches, one transaction per batch
- Bound every database step (acquire/begin, execute, commit) by a timeout
- Isolate failures per table so one broken table never blocks the others

Table and column names are interpolated into the DELETE text. This is only
safe because TableSpec restricts them to [A-Za-z0-9_]; the cutoff and batch
size are always bound parameters.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar, Union

from sqlalchemy import DateTime, Integer, bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncTransaction
from sqlalchemy.sql.elements import TextClause

import database
from observability import (
    batch_duration_seconds,
    batches_total,
    get_logger,
    rows_deleted_total,
    run_context,
    run_id_var,
    table_cleanups_total,
)
from .exceptions import (
    CleanupError,
    ExecutionFailed,
    InvalidIdentifier,
    TableSpecError,
    TimedOut,
)
from .parser import parse_table_spec
from .schemas import (
    CleanupResult,
    CleanupStatus,
    RetentionStatistics,
    TableSpec,
    is_valid_identifier,
)

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 1000
DEFAULT_TIMEOUT_SECONDS = 60.0

# Physical row locator per dialect. The sub-select picks locators so a batch
# never has to re-scan rows an earlier batch already removed.
ROW_LOCATORS: Dict[str, str] = {
    "postgresql": "ctid",
    "sqlite": "rowid",
}

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def with_timeout(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Await with a deadline; a timeout of 0 (or less) waits forever.

    Raises:
        TimedOut: If the operation did not finish within ``timeout`` seconds
    """
    if timeout <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        raise TimedOut(f"{operation} timed out after {timeout:g}s") from None


def build_delete_statement(spec: TableSpec, batch_size: int, row_locator: str = "ctid") -> TextClause:
    """Build the DELETE for one table.

    Bounded when ``batch_size > 0`` (``LIMIT :batch_size``), otherwise a
    single statement removes every eligible row. Rows are picked in timestamp
    order so batches are deterministic.

    Raises:
        InvalidIdentifier: If the table or column name is not a safe identifier
    """
    for identifier in (spec.name, spec.timestamp_column):
        if not is_valid_identifier(identifier):
            raise InvalidIdentifier(f"Refusing to interpolate unsafe identifier {identifier!r}")

    table = spec.name
    column = spec.timestamp_column
    limit = "\n    LIMIT :batch_size" if batch_size > 0 else ""

    stmt = text(
        f'DELETE FROM "{table}"\n'
        f'WHERE {row_locator} IN (\n'
        f'    SELECT {row_locator} FROM "{table}"\n'
        f'    WHERE "{column}" < :cutoff\n'
        f'    ORDER BY "{column}"{limit}\n'
        f')'
    )

    params = [bindparam("cutoff", type_=DateTime(timezone=True))]
    if batch_size > 0:
        params.append(bindparam("batch_size", type_=Integer))
    return stmt.bindparams(*params)


class RetentionService:
    """Runs batched cleanup passes against one shared connection pool.

    One connection is checked out per batch and released when the batch
    commits or rolls back, so a pass never holds more than one open
    transaction.

    Args:
        engine: Shared async connection pool
        batch_size: Rows per batch; 0 or less deletes everything in one statement
        timeout: Seconds allowed for each database step; 0 disables the timeout
        clock: Returns the current time (timezone-aware UTC)
    """

    def __init__(
        self,
        engine: AsyncEngine,
        batch_size: int = DEFAULT_BATCH_SIZE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        dialect = engine.dialect.name
        if dialect not in ROW_LOCATORS:
            raise ValueError(f"Unsupported database dialect: {dialect}")

        self.engine = engine
        self.batch_size = batch_size
        self.timeout = timeout
        self.clock = clock
        self.row_locator = ROW_LOCATORS[dialect]

    @property
    def bounded(self) -> bool:
        return self.batch_size > 0

    def calculate_cutoff(self, spec: TableSpec) -> datetime:
        """Rows strictly older than the returned instant are eligible."""
        return self.clock() - timedelta(days=spec.retention_days)

    async def cleanup_table(self, spec: TableSpec) -> CleanupResult:
        """Delete expired rows from one table until none remain.

        The cutoff is computed once, so rows inserted while the pass runs are
        never picked up by a later batch of the same pass.

        Returns:
            CleanupResult: Rows deleted and batches executed

        Raises:
            TimedOut: A database step exceeded the timeout
            ExecutionFailed: The database rejected a statement
        """
        started = time.monotonic()
        cutoff = self.calculate_cutoff(spec)
        stmt = build_delete_statement(spec, self.batch_size, self.row_locator)
        params = {"cutoff": cutoff}
        if self.bounded:
            params["batch_size"] = self.batch_size

        logger.info(
            f"Cleaning up table {spec.name} by column {spec.timestamp_column} for records "
            f"older than {spec.retention_days} days (batch={self.batch_size})",
            extra={
                "table": spec.name,
                "timestamp_column": spec.timestamp_column,
                "retention_days": spec.retention_days,
                "batch_size": self.batch_size,
                "cutoff": cutoff.isoformat(),
            }
        )

        total_deleted = 0
        batches = 0

        while True:
            try:
                rows = await self._run_batch(spec, stmt, params)
            except CleanupError as e:
                e.table = spec.name
                e.rows_deleted = total_deleted
                raise

            batches += 1

            if rows == 0:
                logger.info(
                    f"No more rows to delete in table {spec.name}",
                    extra={"table": spec.name, "total_deleted": total_deleted}
                )
                break

            total_deleted += rows
            rows_deleted_total.labels(table=spec.name).inc(rows)
            logger.info(
                f"Deleted {rows} rows from {spec.name}",
                extra={"table": spec.name, "rows_deleted": rows, "total_deleted": total_deleted}
            )

            if not self.bounded:
                break

        return CleanupResult(
            spec=str(spec),
            table=spec.name,
            timestamp_column=spec.timestamp_column,
            retention_days=spec.retention_days,
            cutoff=cutoff,
            status=CleanupStatus.COMPLETED,
            rows_deleted=total_deleted,
            batches=batches,
            duration_seconds=time.monotonic() - started,
        )

    async def _run_batch(self, spec: TableSpec, stmt: TextClause, params: dict) -> int:
        """Execute one delete in its own transaction and return rows affected."""
        started = time.monotonic()
        status = "failed"
        conn = self.engine.connect()
        connected = False

        try:
            try:
                await with_timeout(conn.start(), self.timeout, f"Connection acquire for {spec.name}")
            except TimedOut:
                # The pool may have handed out a connection just before the cancel
                await self._invalidate(conn, spec)
                raise
            connected = True

            trans = conn.begin()
            try:
                await with_timeout(trans.start(), self.timeout, f"Transaction begin for {spec.name}")
                result = await with_timeout(
                    conn.execute(stmt, params), self.timeout, f"Delete from {spec.name}"
                )
                rows = result.rowcount
                await with_timeout(trans.commit(), self.timeout, f"Commit for {spec.name}")
            except TimedOut:
                await self._rollback(trans, spec)
                await self._invalidate(conn, spec)
                raise
            except Exception as e:
                # asyncpg raises OSError and its own errors without a DBAPI wrapper
                logger.error(
                    f"Failed to execute query for table {spec.name}: {e}",
                    extra={"table": spec.name, "error_type": type(e).__name__}
                )
                await self._rollback(trans, spec)
                if not isinstance(e, SQLAlchemyError):
                    await self._invalidate(conn, spec)
                raise ExecutionFailed(f"Delete failed for table {spec.name}: {e}") from e

            status = "committed"
            return rows

        except TimedOut:
            status = "timeout"
            raise

        except ExecutionFailed:
            raise

        except Exception as e:
            raise ExecutionFailed(f"Could not acquire a connection for table {spec.name}: {e}") from e

        finally:
            if connected:
                await conn.close()
            batches_total.labels(table=spec.name, status=status).inc()
            batch_duration_seconds.labels(table=spec.name).observe(time.monotonic() - started)

    async def _rollback(self, trans: AsyncTransaction, spec: TableSpec) -> None:
        # Best-effort: the original failure stays the reported cause
        try:
            await with_timeout(trans.rollback(), self.timeout, f"Rollback for {spec.name}")
        except Exception as e:
            logger.warning(
                f"Rollback failed for table {spec.name}: {e}",
                extra={"table": spec.name, "error_type": type(e).__name__}
            )

    async def _invalidate(self, conn: AsyncConnection, spec: TableSpec) -> None:
        # A cancelled statement leaves the connection in an unknown state
        try:
            await conn.invalidate()
        except Exception as e:
            logger.warning(
                f"Could not invalidate connection for table {spec.name}: {e}",
                extra={"table": spec.name, "error_type": type(e).__name__}
            )

    async def process(self, spec: Union[str, TableSpec]) -> CleanupResult:
        """Parse (if needed) and clean one table, never raising table-level errors.

        Parse failures and cleanup failures are logged and returned as a
        failed CleanupResult so the caller can move on to the next table.
        """
        raw = spec if isinstance(spec, str) else str(spec)
        started = time.monotonic()

        try:
            table_spec = parse_table_spec(spec) if isinstance(spec, str) else spec
        except TableSpecError as e:
            logger.error(
                f"Invalid table format {raw}: {e}",
                extra={"error_type": type(e).__name__}
            )
            table_cleanups_total.labels(status=CleanupStatus.FAILED.value).inc()
            return CleanupResult(
                spec=raw,
                status=CleanupStatus.FAILED,
                error_type=type(e).__name__,
                error=str(e),
                duration_seconds=time.monotonic() - started,
            )

        try:
            result = await self.cleanup_table(table_spec)
        except CleanupError as e:
            logger.error(
                f"Failed to cleanup table {table_spec.name}: {e}",
                extra={
                    "table": table_spec.name,
                    "rows_deleted": e.rows_deleted,
                    "error_type": type(e).__name__,
                }
            )
            table_cleanups_total.labels(status=CleanupStatus.FAILED.value).inc()
            return CleanupResult(
                spec=raw,
                table=table_spec.name,
                timestamp_column=table_spec.timestamp_column,
                retention_days=table_spec.retention_days,
                status=CleanupStatus.FAILED,
                rows_deleted=e.rows_deleted,
                error_type=type(e).__name__,
                error=str(e),
                duration_seconds=time.monotonic() - started,
            )

        result.spec = raw
        table_cleanups_total.labels(status=CleanupStatus.COMPLETED.value).inc()
        return result


async def cleanup_table(
    engine: AsyncEngine,
    spec: TableSpec,
    batch_size: int = DEFAULT_BATCH_SIZE,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> CleanupResult:
    """Clean one table; see RetentionService.cleanup_table."""
    service = RetentionService(engine, batch_size=batch_size, timeout=timeout)
    return await service.cleanup_table(spec)


async def run_retention_cleanup(
    engine: AsyncEngine,
    specs: Iterable[Union[str, TableSpec]],
    batch_size: int = DEFAULT_BATCH_SIZE,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    clock: Callable[[], datetime] = utcnow,
) -> RetentionStatistics:
    """Run retention cleanup for every table, one after the other.

    Errors in one table do not block processing of the others; they are
    logged and reported in the returned statistics.

    Args:
        engine: Shared async connection pool
        specs: Raw table directives or parsed TableSpecs
        batch_size: Rows per batch (0 = unbounded)
        timeout: Per-operation timeout in seconds (0 = disabled)
        clock: Time source, injectable for tests

    Returns:
        RetentionStatistics: Aggregated per-table results
    """
    start_time = utcnow()
    service = RetentionService(engine, batch_size=batch_size, timeout=timeout, clock=clock)

    results: List[CleanupResult] = []
    for spec in specs:
        results.append(await service.process(spec))

    end_time = utcnow()
    statistics = RetentionStatistics(
        job_started_at=start_time,
        job_completed_at=end_time,
        duration_seconds=(end_time - start_time).total_seconds(),
        run_id=run_id_var.get(),
        results=results,
    )

    logger.info(
        f"Retention run completed: {statistics.total_records_deleted} rows deleted "
        f"from {statistics.tables_processed} tables ({statistics.tables_failed} failed)",
        extra={"total_deleted": statistics.total_records_deleted}
    )

    if statistics.has_errors:
        failed = ", ".join(r.table or r.spec for r in statistics.results if not r.succeeded)
        logger.error(f"Retention run completed with errors: {failed}")

    return statistics


async def run_retention_job(
    options: database.ConnectionOptions,
    specs: Iterable[Union[str, TableSpec]],
    batch_size: int = DEFAULT_BATCH_SIZE,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    clock: Optional[Callable[[], datetime]] = None,
) -> RetentionStatistics:
    """Connect, clean every table and dispose of the pool.

    Runs under the caller's run ID when one is active, otherwise starts a
    new run; the ID is reported on the returned statistics.

    Raises:
        ConnectionFailed: If the database cannot be reached. Nothing is deleted.
    """
    with run_context():
        engine = await database.connect(options)
        try:
            return await run_retention_cleanup(
                engine,
                specs,
                batch_size=batch_size,
                timeout=timeout,
                clock=clock or utcnow,
            )
        finally:
            await engine.dispose()
