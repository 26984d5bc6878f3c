import asyncio
from dataclasses import replace

import pytest

from conftest import PgError
from school_api.database import Database
from school_api.errors import (
    ApplicationError,
    DatabaseConnectionError,
    PoolTimeout,
    QueryTimeout,
    TransactionTimeout,
)
from school_api.pool import ConnectionPool


def rows_of(*rows):
    return lambda query, args: [dict(row) for row in rows]


@pytest.mark.asyncio
async def test_execute_returns_rows_and_records_metrics(database, connector):
    connector.responder = rows_of({"id": 1, "name": "Room 1/1"})

    result = await database.execute("SELECT id, name FROM rooms WHERE id = $1", [1])

    assert result.rows == [{"id": 1, "name": "Room 1/1"}]
    assert result.row_count == 1
    assert result.scalar("name") == "Room 1/1"
    assert connector.connections[0].fetched == [("SELECT id, name FROM rooms WHERE id = $1", (1,))]
    snapshot = database.metrics.snapshot()
    assert snapshot["total_queries"] == 1
    assert snapshot["failed_queries"] == 0
    assert database.pool.idle_count == 1


@pytest.mark.asyncio
async def test_transient_failures_are_retried_with_backoff(database, connector, sleeper):
    attempts = []

    def flaky(query, args):
        attempts.append(query)
        if len(attempts) < 3:
            raise ConnectionResetError("connection reset by peer")
        return [{"ok": True}]

    connector.responder = flaky

    result = await database.execute("SELECT 1 AS ok")

    assert result.first() == {"ok": True}
    assert len(attempts) == 3
    assert sleeper.delays == [2.0, 4.0]
    snapshot = database.metrics.snapshot()
    assert snapshot["total_queries"] == 3
    assert snapshot["failed_queries"] == 2
    # Broken connections are discarded, never handed out again.
    assert [conn.terminated for conn in connector.connections] == [True, True, False]


@pytest.mark.asyncio
async def test_exhausted_retries_raise_connection_error(database, connector, sleeper):
    def broken(query, args):
        raise ConnectionResetError("server closed the connection")

    connector.responder = broken

    with pytest.raises(DatabaseConnectionError) as info:
        await database.execute("SELECT 1")

    assert isinstance(info.value.__cause__, ConnectionResetError)
    assert len(sleeper.delays) == 2
    assert database.metrics.state.last_error == "server closed the connection"


@pytest.mark.asyncio
async def test_unique_violation_is_not_retried(database, connector, sleeper):
    calls = []

    def duplicate(query, args):
        calls.append(query)
        raise PgError("duplicate key value violates unique constraint", sqlstate="23505")

    connector.responder = duplicate

    with pytest.raises(ApplicationError) as info:
        await database.execute("INSERT INTO rooms (name) VALUES ($1)", ["1/1"])

    assert info.value.sqlstate == "23505"
    assert len(calls) == 1
    assert sleeper.delays == []
    assert database.pool.idle_count == 1
    assert not connector.connections[0].terminated


@pytest.mark.asyncio
async def test_syntax_error_message_is_not_retried(database, connector, sleeper):
    def bad_sql(query, args):
        raise RuntimeError('syntax error at or near "SELEC"')

    connector.responder = bad_sql

    with pytest.raises(ApplicationError):
        await database.execute("SELEC 1")

    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_slow_query_times_out_and_drops_connection(database, connector):
    async def slow(query, args):
        await asyncio.sleep(1)
        return []

    connector.responder = slow

    with pytest.raises(QueryTimeout):
        await database.execute("SELECT pg_sleep(1)", retries=0)

    assert connector.connections[0].terminated
    assert database.pool.total_count == 0
    assert database.metrics.snapshot()["failed_queries"] == 1


@pytest.mark.asyncio
async def test_pool_timeout_is_not_retried(pool, sleeper):
    database = Database(pool, query_timeout=1.0, retries=2, sleep=sleeper)
    held = [await pool.acquire(), await pool.acquire()]

    with pytest.raises(PoolTimeout):
        await database.execute("SELECT 1")

    assert sleeper.delays == []
    for conn in held:
        await pool.release(conn)


@pytest.mark.asyncio
async def test_transaction_commits_and_returns_body_result(database, connector):
    connector.responder = rows_of({"id": 7})

    async def body(tx):
        result = await tx.query("INSERT INTO rooms (name) VALUES ($1) RETURNING id", ["1/1"])
        return result.scalar("id")

    assert await database.run(body) == 7

    conn = connector.connections[0]
    assert conn.executed[-2:] == ["BEGIN", "COMMIT"]
    assert not conn.terminated
    assert database.pool.idle_count == 1


@pytest.mark.asyncio
async def test_transaction_rolls_back_when_body_fails(database, connector):
    async def body(tx):
        await tx.query("UPDATE rooms SET name = $1", ["x"])
        raise ValueError("invalid grade")

    with pytest.raises(ValueError, match="invalid grade"):
        await database.run(body)

    conn = connector.connections[0]
    assert conn.executed[-2:] == ["BEGIN", "ROLLBACK"]
    assert "COMMIT" not in conn.executed
    assert conn.terminated
    assert database.pool.total_count == 0


@pytest.mark.asyncio
async def test_transaction_timeout_rolls_back_and_releases_once(database, connector, monkeypatch):
    releases = []
    original_release = database.pool.release

    async def spy_release(conn, had_error=False):
        releases.append(had_error)
        await original_release(conn, had_error=had_error)

    monkeypatch.setattr(database.pool, "release", spy_release)
    reached_end = False

    async def body(tx):
        nonlocal reached_end
        await asyncio.sleep(1)
        reached_end = True

    with pytest.raises(TransactionTimeout):
        await database.run(body, timeout=0.05)

    await asyncio.sleep(0)
    assert not reached_end
    assert releases == [True]
    assert connector.connections[0].executed[-1] == "ROLLBACK"
    assert database.pool.in_use_count == 0


@pytest.mark.asyncio
async def test_failed_rollback_keeps_original_error(database, connector):
    connector.execute_errors["ROLLBACK"] = RuntimeError("connection lost during rollback")

    async def body(tx):
        raise LookupError("student missing")

    with pytest.raises(LookupError, match="student missing"):
        await database.run(body)

    assert connector.connections[0].terminated
    assert database.pool.in_use_count == 0


@pytest.mark.asyncio
async def test_cancelled_caller_still_releases_connection(database, connector):
    started = asyncio.Event()

    async def body(tx):
        started.set()
        await asyncio.sleep(1)

    task = asyncio.ensure_future(database.run(body, timeout=5))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert database.pool.in_use_count == 0
    assert connector.connections[0].terminated


@pytest.mark.asyncio
async def test_with_connection_lends_one_connection(database, connector):
    connector.responder = rows_of({"n": 3})

    async def body(conn):
        first = await conn.query("SELECT 3 AS n")
        second = await conn.query("SELECT 3 AS n")
        return first.scalar("n") + second.scalar("n")

    assert await database.with_connection(body) == 6
    assert len(connector.connections) == 1
    assert "BEGIN" not in connector.connections[0].executed
    assert database.pool.idle_count == 1


@pytest.mark.asyncio
async def test_with_connection_timeout_raises_query_timeout(database, connector):
    async def body(conn):
        await asyncio.sleep(1)

    with pytest.raises(QueryTimeout):
        await database.with_connection(body, timeout=0.05)

    assert connector.connections[0].terminated


@pytest.mark.asyncio
async def test_health_check_reports_connected(database, connector):
    connector.responder = rows_of({"time": "2026-01-01T00:00:00", "version": "PostgreSQL 16.2"})

    report = await database.health_check()

    assert report["status"] == "healthy"
    assert report["database"] == "connected"
    assert report["version"] == "PostgreSQL 16.2"
    assert report["pool"] == {"total": 1, "idle": 1, "waiting": 0}


@pytest.mark.asyncio
async def test_health_check_reports_unreachable_database(database, connector):
    connector.fail_with = ConnectionRefusedError("could not connect to server")

    report = await database.health_check()

    assert report["status"] == "unhealthy"
    assert "could not connect" in report["error"]
    assert report["pool"]["total"] == 0


@pytest.mark.asyncio
async def test_shutdown_runs_once(database, connector):
    conn = await database.pool.acquire()
    await database.pool.release(conn)

    await database.shutdown()
    await database.shutdown()

    assert database.pool.closed
    assert connector.connections[0].closed


@pytest.mark.asyncio
async def test_third_concurrent_query_waits_for_a_free_connection(pool_config, connector, sleeper):
    pool = ConnectionPool(connector, replace(pool_config, max_size=2, connection_timeout=1.0))
    database = Database(pool, query_timeout=1.0, sleep=sleeper)
    peak = 0

    async def slow(query, args):
        nonlocal peak
        peak = max(peak, pool.in_use_count)
        await asyncio.sleep(0.02)
        return [{"n": args[0]}]

    connector.responder = slow

    results = await asyncio.gather(*(database.execute("SELECT $1::int AS n", [n]) for n in range(3)))

    assert [result.scalar("n") for result in results] == [0, 1, 2]
    assert peak == 2
    assert len(connector.connections) == 2


@pytest.mark.asyncio
async def test_constraint_violation_in_transaction_is_application_error(database, connector):
    def respond(query, args):
        if query.startswith("INSERT INTO teachers"):
            raise PgError('duplicate key value violates unique constraint "teachers_teacher_code_key"', sqlstate="23505")
        return [{"id": 40}]

    connector.responder = respond

    async def body(tx):
        await tx.query("INSERT INTO users (phone) VALUES ($1) RETURNING id", ["0811112222"])
        await tx.query("INSERT INTO teachers (user_id, teacher_code) VALUES ($1, $2)", [40, "T001"])

    with pytest.raises(ApplicationError) as info:
        await database.run(body)

    assert info.value.sqlstate == "23505"
    assert isinstance(info.value.original, PgError)
    assert connector.connections[0].executed[-1] == "ROLLBACK"


@pytest.mark.asyncio
async def test_other_statement_errors_in_body_pass_through(database, connector):
    def respond(query, args):
        raise ValueError("invalid input for query argument $1")

    connector.responder = respond

    async def body(conn):
        await conn.query("SELECT $1::int", ["x"])

    with pytest.raises(ValueError):
        await database.with_connection(body)


@pytest.mark.asyncio
async def test_unreachable_database_fails_transaction_with_connection_error(database, connector):
    connector.fail_with = ConnectionRefusedError("could not connect to server")

    async def body(tx):
        return "unreachable"

    with pytest.raises(DatabaseConnectionError) as info:
        await database.run(body)

    assert isinstance(info.value.__cause__, ConnectionRefusedError)
    assert database.pool.total_count == 0


@pytest.mark.asyncio
async def test_unreachable_database_exhausts_query_retries(database, connector, sleeper):
    connector.fail_with = ConnectionRefusedError("could not connect to server")

    with pytest.raises(DatabaseConnectionError) as info:
        await database.execute("SELECT 1")

    assert isinstance(info.value.__cause__, ConnectionRefusedError)
    assert sleeper.delays == [2.0, 4.0]
