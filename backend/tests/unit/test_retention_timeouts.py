"""Unit tests for timeout, rollback and connection handling in the cleanup engine.

A scripted fake engine stands in for the asyncpg-backed pool so slow or
failing database steps can be simulated precisely.
"""

import asyncio
import re
from types import SimpleNamespace
from typing import Dict, List

import pytest
from sqlalchemy.exc import OperationalError

from conftest import fixed_clock
from retention.exceptions import ExecutionFailed, TimedOut
from retention.schemas import CleanupStatus, TableSpec
from retention.service import RetentionService, run_retention_cleanup, with_timeout

HANG = "hang"
SLOW = "slow"


class FakeTransaction:
    def __init__(self, conn: "FakeConnection"):
        self.conn = conn
        self.pending = 0

    async def start(self):
        self.conn.engine.events.append("begin")
        await self.conn.engine.maybe_sleep("begin")
        return self

    async def commit(self):
        await self.conn.engine.maybe_sleep("commit")
        self.conn.engine.events.append("commit")
        self.conn.engine.committed_rows += self.pending

    async def rollback(self):
        self.conn.engine.events.append("rollback")
        self.pending = 0
        if self.conn.engine.rollback_error:
            raise self.conn.engine.rollback_error


class FakeConnection:
    def __init__(self, engine: "FakeEngine"):
        self.engine = engine
        self.transaction = None
        self.invalidated = False
        self.closed = False

    async def start(self):
        await self.engine.maybe_sleep("connect")
        # One-shot: the next checkout succeeds
        error, self.engine.connect_error = self.engine.connect_error, None
        if error:
            raise error
        self.engine.events.append("connect")
        self.engine.open_connections += 1
        self.engine.max_open = max(self.engine.max_open, self.engine.open_connections)
        return self

    def begin(self):
        self.transaction = FakeTransaction(self)
        return self.transaction

    async def execute(self, stmt, params):
        table = re.search(r'DELETE FROM "(\w+)"', str(stmt)).group(1)
        self.engine.statements.append((table, dict(params)))
        action = self.engine.plan[table].pop(0)
        if action == HANG:
            await asyncio.sleep(10)
        if action == SLOW:
            await asyncio.sleep(0.05)
            action = 1
        if isinstance(action, Exception):
            raise action
        self.transaction.pending = action
        return SimpleNamespace(rowcount=action)

    async def invalidate(self):
        self.invalidated = True
        self.engine.events.append("invalidate")

    async def close(self):
        self.closed = True
        self.engine.open_connections -= 1
        self.engine.events.append("close")


class FakeEngine:
    """Scripted stand-in for an AsyncEngine.

    ``plan`` maps table name to the outcome of each successive delete:
    an int rows-affected, HANG, SLOW or an exception instance.
    """

    def __init__(self, plan: Dict[str, List], delays: Dict[str, float] = None):
        self.dialect = SimpleNamespace(name="postgresql")
        self.plan = plan
        self.delays = delays or {}
        self.events: List[str] = []
        self.statements: List = []
        self.committed_rows = 0
        self.open_connections = 0
        self.max_open = 0
        self.rollback_error = None
        self.connect_error = None

    async def maybe_sleep(self, step: str):
        if step in self.delays:
            await asyncio.sleep(self.delays[step])

    def connect(self):
        return FakeConnection(self)


def _operational_error(message: str) -> OperationalError:
    return OperationalError("DELETE ...", {}, Exception(message))


class TestWithTimeout:
    """Test the per-operation timeout wrapper."""

    @pytest.mark.asyncio
    async def test_returns_result_in_time(self):
        async def quick():
            return 42

        assert await with_timeout(quick(), 1, "quick") == 42

    @pytest.mark.asyncio
    async def test_raises_timed_out(self):
        with pytest.raises(TimedOut, match="nap timed out after 0.01s"):
            await with_timeout(asyncio.sleep(1), 0.01, "nap")

    @pytest.mark.asyncio
    async def test_zero_disables_timeout(self):
        async def slowish():
            await asyncio.sleep(0.05)
            return "done"

        assert await with_timeout(slowish(), 0, "slowish") == "done"


class TestTimeouts:
    """Test that timed-out steps abort the pass without leaving work open."""

    @pytest.mark.asyncio
    async def test_execute_timeout_rolls_back(self):
        engine = FakeEngine({"orders": [3, HANG]})
        service = RetentionService(engine, batch_size=3, timeout=0.05, clock=fixed_clock)

        with pytest.raises(TimedOut) as exc:
            await service.cleanup_table(TableSpec(name="orders", retention_days=30))

        assert exc.value.table == "orders"
        # First batch stays committed, the timed-out one is rolled back
        assert exc.value.rows_deleted == 3
        assert engine.committed_rows == 3
        assert engine.events == [
            "connect", "begin", "commit", "close",
            "connect", "begin", "rollback", "invalidate", "close",
        ]
        assert engine.open_connections == 0

    @pytest.mark.asyncio
    async def test_commit_timeout(self):
        engine = FakeEngine({"orders": [5]}, delays={"commit": 1})
        service = RetentionService(engine, batch_size=10, timeout=0.05, clock=fixed_clock)

        with pytest.raises(TimedOut, match="Commit for orders"):
            await service.cleanup_table(TableSpec(name="orders"))

        assert "rollback" in engine.events
        assert engine.committed_rows == 0

    @pytest.mark.asyncio
    async def test_begin_timeout(self):
        engine = FakeEngine({"orders": [5]}, delays={"begin": 1})
        service = RetentionService(engine, batch_size=10, timeout=0.05, clock=fixed_clock)

        with pytest.raises(TimedOut, match="Transaction begin"):
            await service.cleanup_table(TableSpec(name="orders"))

        assert engine.statements == []
        assert engine.open_connections == 0

    @pytest.mark.asyncio
    async def test_connection_acquire_timeout(self):
        engine = FakeEngine({"orders": [5]}, delays={"connect": 1})
        service = RetentionService(engine, batch_size=10, timeout=0.05, clock=fixed_clock)

        with pytest.raises(TimedOut, match="Connection acquire"):
            await service.cleanup_table(TableSpec(name="orders"))

        assert engine.events == ["invalidate"]
        assert engine.statements == []

    @pytest.mark.asyncio
    async def test_zero_timeout_lets_slow_statements_finish(self):
        engine = FakeEngine({"orders": [SLOW, 0]})
        service = RetentionService(engine, batch_size=10, timeout=0, clock=fixed_clock)

        result = await service.cleanup_table(TableSpec(name="orders"))

        assert result.rows_deleted == 1

    @pytest.mark.asyncio
    async def test_slow_statement_times_out_when_enabled(self):
        engine = FakeEngine({"orders": [SLOW]})
        service = RetentionService(engine, batch_size=10, timeout=0.01, clock=fixed_clock)

        with pytest.raises(TimedOut):
            await service.cleanup_table(TableSpec(name="orders"))

    @pytest.mark.asyncio
    async def test_timeout_isolated_to_one_table(self):
        """A timed-out table is reported; later tables in the run still execute."""
        engine = FakeEngine({"orders": [HANG], "sessions": [4, 0]})

        stats = await run_retention_cleanup(
            engine,
            ["orders:created_at:30", "sessions::0"],
            batch_size=100,
            timeout=0.05,
            clock=fixed_clock,
        )

        orders, sessions = stats.results
        assert orders.status == CleanupStatus.FAILED
        assert orders.error_type == "TimedOut"
        assert orders.rows_deleted == 0
        assert sessions.succeeded
        assert sessions.rows_deleted == 4
        assert [t for t, _ in engine.statements] == ["orders", "sessions", "sessions"]


class TestExecutionFailures:
    """Test statement failures, rollback and connection handling."""

    @pytest.mark.asyncio
    async def test_execution_error_rolls_back_without_retry(self):
        engine = FakeEngine({"orders": [2, _operational_error("relation does not exist"), 7]})
        service = RetentionService(engine, batch_size=2, timeout=1, clock=fixed_clock)

        with pytest.raises(ExecutionFailed) as exc:
            await service.cleanup_table(TableSpec(name="orders"))

        assert isinstance(exc.value.__cause__, OperationalError)
        assert exc.value.rows_deleted == 2
        assert len(engine.statements) == 2
        assert engine.events[-2:] == ["rollback", "close"]
        assert "invalidate" not in engine.events

    @pytest.mark.asyncio
    async def test_rollback_failure_keeps_original_error(self):
        engine = FakeEngine({"orders": [_operational_error("disk full")]})
        engine.rollback_error = RuntimeError("connection lost")
        service = RetentionService(engine, batch_size=2, timeout=1, clock=fixed_clock)

        with pytest.raises(ExecutionFailed, match="disk full"):
            await service.cleanup_table(TableSpec(name="orders"))

    @pytest.mark.asyncio
    async def test_connection_error_is_execution_failure(self):
        engine = FakeEngine({"orders": [1]})
        engine.connect_error = _operational_error("too many connections")
        service = RetentionService(engine, batch_size=2, timeout=1, clock=fixed_clock)

        with pytest.raises(ExecutionFailed, match="Could not acquire a connection"):
            await service.cleanup_table(TableSpec(name="orders"))

    @pytest.mark.asyncio
    async def test_refused_connection_is_execution_failure(self):
        """asyncpg raises OSError on connect without a SQLAlchemy wrapper."""
        engine = FakeEngine({"orders": [1]})
        engine.connect_error = ConnectionRefusedError(111, "Connect call failed ('127.0.0.1', 5432)")
        service = RetentionService(engine, batch_size=2, timeout=1, clock=fixed_clock)

        with pytest.raises(ExecutionFailed, match="Connect call failed") as exc:
            await service.cleanup_table(TableSpec(name="orders"))

        assert isinstance(exc.value.__cause__, ConnectionRefusedError)
        assert exc.value.table == "orders"
        assert engine.statements == []

    @pytest.mark.asyncio
    async def test_refused_connection_isolated_to_one_table(self):
        """A database restart mid-run fails one table; later tables still run."""
        engine = FakeEngine({"orders": [1], "sessions": [4, 0]})
        engine.connect_error = ConnectionRefusedError(111, "Connect call failed ('127.0.0.1', 5432)")

        stats = await run_retention_cleanup(
            engine,
            ["orders::30", "sessions::0"],
            batch_size=100,
            timeout=1,
            clock=fixed_clock,
        )

        orders, sessions = stats.results
        assert orders.status == CleanupStatus.FAILED
        assert orders.error_type == "ExecutionFailed"
        assert sessions.succeeded
        assert sessions.rows_deleted == 4
        assert stats.tables_failed == 1

    @pytest.mark.asyncio
    async def test_connection_reset_during_delete(self):
        """Unwrapped driver errors roll back and discard the connection."""
        engine = FakeEngine({"orders": [2, ConnectionResetError(104, "Connection reset by peer")]})
        service = RetentionService(engine, batch_size=2, timeout=1, clock=fixed_clock)

        with pytest.raises(ExecutionFailed, match="Connection reset by peer") as exc:
            await service.cleanup_table(TableSpec(name="orders"))

        assert exc.value.rows_deleted == 2
        assert engine.committed_rows == 2
        assert engine.events[-3:] == ["rollback", "invalidate", "close"]

    @pytest.mark.asyncio
    async def test_one_connection_per_batch(self):
        engine = FakeEngine({"orders": [2, 2, 1, 0]})
        service = RetentionService(engine, batch_size=2, timeout=1, clock=fixed_clock)

        result = await service.cleanup_table(TableSpec(name="orders"))

        assert result.rows_deleted == 5
        assert result.batches == 4
        assert engine.max_open == 1
        assert engine.events.count("connect") == engine.events.count("close") == 4

    @pytest.mark.asyncio
    async def test_parameters_are_bound(self):
        engine = FakeEngine({"orders": [0]})
        service = RetentionService(engine, batch_size=25, timeout=1, clock=fixed_clock)

        result = await service.cleanup_table(TableSpec(name="orders", retention_days=3))

        (_, params), = engine.statements
        assert params == {"cutoff": result.cutoff, "batch_size": 25}

    @pytest.mark.asyncio
    async def test_unbounded_mode_binds_only_cutoff(self):
        engine = FakeEngine({"orders": [9]})
        service = RetentionService(engine, batch_size=0, timeout=1, clock=fixed_clock)

        await service.cleanup_table(TableSpec(name="orders"))

        (_, params), = engine.statements
        assert set(params) == {"cutoff"}
