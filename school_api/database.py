import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable, Iterator, Sequence
from typing import Any, TypeVar

import asyncpg

from .config import Settings, settings
from .errors import (
    ApplicationError,
    DatabaseConnectionError,
    DatabaseError,
    PoolClosedError,
    PoolTimeout,
    QueryTimeout,
    TransactionTimeout,
    is_application_error,
    sqlstate_of,
)
from .metrics import MetricsCollector, MonitorThresholds
from .pool import ConnectionPool, PoolConfig, PooledConnection


logger = logging.getLogger(__name__)

T = TypeVar("T")

HEALTH_QUERY = "SELECT now() AS time, version() AS version"


def _preview(query: str) -> str:
    text = " ".join(query.split())
    return text[:100] + ("..." if len(text) > 100 else "")


class QueryResult:
    def __init__(self, rows: list[dict[str, Any]]):
        self.rows = rows

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def first(self) -> dict[str, Any] | None:
        return self.rows[0] if self.rows else None

    def scalar(self, key: str, default: Any = None) -> Any:
        row = self.first()
        return default if row is None else row.get(key, default)

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(self.rows)

    def __repr__(self) -> str:
        return f"<QueryResult rows={self.row_count}>"


async def _fetch(raw: Any, query: str, params: Sequence[Any] | None) -> QueryResult:
    records = await raw.fetch(query, *(params or ()))
    return QueryResult([dict(record) for record in records])


class BorrowedConnection:
    """A pooled connection lent to a caller-supplied body.

    ``release`` is guarded by a single flag so that whichever exit path gets
    there first (success, body error, timeout, cancellation) returns the
    connection and every later attempt is a no-op.
    """

    def __init__(self, pool: ConnectionPool, conn: PooledConnection):
        self._pool = pool
        self._conn = conn
        self.released = False

    async def query(self, query: str, params: Sequence[Any] | None = None) -> QueryResult:
        if self.released:
            raise DatabaseConnectionError("Connection has already been released")
        try:
            return await _fetch(self._conn.raw, query, params)
        except Exception as exc:
            if is_application_error(exc) and not isinstance(exc, ApplicationError):
                raise ApplicationError(str(exc), sqlstate=sqlstate_of(exc), original=exc) from exc
            raise

    async def abort(self) -> None:
        pass

    async def release(self, had_error: bool = False) -> bool:
        if self.released:
            return False
        self.released = True
        await self._pool.release(self._conn, had_error=had_error)
        return True


class Transaction(BorrowedConnection):
    def __init__(self, pool: ConnectionPool, conn: PooledConnection):
        super().__init__(pool, conn)
        self.state = "acquired"

    async def begin(self) -> None:
        await self._conn.raw.execute("BEGIN")
        self.state = "begun"

    async def commit(self) -> None:
        await self._conn.raw.execute("COMMIT")
        self.state = "committed"

    async def abort(self) -> None:
        """Roll back, logging rather than raising if the rollback itself fails."""
        if self.state == "committed" or self.released:
            return
        try:
            await self._conn.raw.execute("ROLLBACK")
            self.state = "rolled_back"
        except Exception as exc:
            logger.error(f"Error during rollback: {exc}")


class Database:
    """Pooled query execution with retries, bounded transactions and health reporting."""

    def __init__(
        self,
        pool: ConnectionPool,
        metrics: MetricsCollector | None = None,
        *,
        query_timeout: float = 30.0,
        transaction_timeout: float = 30.0,
        retries: int = 2,
        retry_base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.pool = pool
        self.metrics = metrics or MetricsCollector(pool)
        self.query_timeout = query_timeout
        self.transaction_timeout = transaction_timeout
        self.retries = retries
        self.retry_base_delay = retry_base_delay
        self._sleep = sleep
        self._shutdown_started = False

    @classmethod
    def from_settings(cls, config: Settings) -> "Database":
        pool = ConnectionPool(
            functools.partial(asyncpg.connect, **config.connect_kwargs()),
            PoolConfig(
                max_size=config.db_pool_max,
                min_size=config.db_pool_min,
                idle_timeout=config.db_idle_timeout_ms / 1000,
                connection_timeout=config.db_connection_timeout_ms / 1000,
                max_uses=config.db_max_uses,
                statement_timeout_ms=config.db_statement_timeout_ms,
            ),
        )
        metrics = MetricsCollector(
            pool,
            thresholds=MonitorThresholds(
                waiting=config.db_alert_waiting,
                failed_queries=config.db_alert_failed_queries,
                interval=config.db_monitor_interval_s,
            ),
        )
        return cls(
            pool,
            metrics,
            query_timeout=config.db_query_timeout_ms / 1000,
            transaction_timeout=config.db_transaction_timeout_ms / 1000,
            retries=config.db_query_retries,
        )

    async def start(self) -> None:
        await self.pool.open()
        self.metrics.start()
        logger.info(
            f"Database pool ready (max={self.pool.config.max_size}, min={self.pool.config.min_size})"
        )

    async def execute(
        self,
        query: str,
        params: Sequence[Any] | None = None,
        retries: int | None = None,
    ) -> QueryResult:
        retries = self.retries if retries is None else retries
        loop = asyncio.get_running_loop()
        last_error: DatabaseError | None = None

        for attempt in range(retries + 1):
            if attempt > 0:
                delay = self.retry_base_delay * 2**attempt
                logger.info(f"Retry attempt {attempt} for query in {delay:g}s")
                await self._sleep(delay)

            started = loop.time()
            try:
                result = await asyncio.wait_for(self._execute_once(query, params), self.query_timeout)
            except asyncio.TimeoutError as exc:
                last_error = QueryTimeout(f"Query timeout after {self.query_timeout:g}s")
                last_error.__cause__ = exc
                self._record_failure(query, attempt, retries, started, last_error)
            except (PoolTimeout, PoolClosedError) as exc:
                self._record_failure(query, attempt, retries, started, exc)
                raise
            except Exception as exc:
                self._record_failure(query, attempt, retries, started, exc)
                if is_application_error(exc):
                    raise ApplicationError(str(exc), sqlstate=sqlstate_of(exc), original=exc) from exc
                if isinstance(exc, DatabaseConnectionError):
                    last_error = exc
                else:
                    last_error = DatabaseConnectionError(str(exc) or type(exc).__name__)
                    last_error.__cause__ = exc
            else:
                duration_ms = (loop.time() - started) * 1000
                self.metrics.record(True, duration_ms)
                logger.info(
                    f"Executed query {_preview(query)!r} in {duration_ms:.1f}ms, "
                    f"rows={result.row_count}" + (f", attempt={attempt}" if attempt else "")
                )
                return result

        raise last_error

    async def run(
        self,
        body: Callable[[Transaction], Awaitable[T]],
        timeout: float | None = None,
    ) -> T:
        """Run ``body`` inside BEGIN/COMMIT on one dedicated connection."""
        tx = Transaction(self.pool, await self.pool.acquire())
        return await self._guard(tx, self._transaction_body(tx, body), timeout, TransactionTimeout, "Transaction")

    async def with_connection(
        self,
        body: Callable[[BorrowedConnection], Awaitable[T]],
        timeout: float | None = None,
    ) -> T:
        """Lend one connection to ``body`` without opening a transaction."""
        handle = BorrowedConnection(self.pool, await self.pool.acquire())
        return await self._guard(handle, self._call(body, handle), timeout, QueryTimeout, "Client query")

    async def health_check(self) -> dict[str, Any]:
        try:
            result = await asyncio.wait_for(self._execute_once(HEALTH_QUERY, None), self.query_timeout)
        except Exception as exc:
            return {
                "status": "unhealthy",
                "error": str(exc) or type(exc).__name__,
                "pool": self.metrics.pool_stats(),
            }
        row = result.first() or {}
        return {
            "status": "healthy",
            "database": "connected",
            "timestamp": row.get("time"),
            "version": row.get("version"),
            "pool": self.metrics.pool_stats(),
            "metrics": {
                **self.metrics.snapshot(),
                "last_error": self.metrics.state.last_error,
                "last_error_time": self.metrics.state.last_error_time,
            },
        }

    async def shutdown(self) -> None:
        if self._shutdown_started:
            return
        self._shutdown_started = True
        logger.info("Shutting down database connection pool...")
        await self.metrics.stop()
        try:
            await self.pool.close()
            logger.info("Database pool closed successfully")
        except Exception as exc:
            logger.error(f"Error closing database pool: {exc}")

    async def _execute_once(self, query: str, params: Sequence[Any] | None) -> QueryResult:
        conn = await self.pool.acquire()
        had_error = True
        try:
            result = await _fetch(conn.raw, query, params)
            had_error = False
            return result
        except Exception as exc:
            # Statement-level rejections leave the connection usable.
            had_error = not is_application_error(exc)
            raise
        finally:
            await self.pool.release(conn, had_error=had_error)

    def _record_failure(
        self, query: str, attempt: int, retries: int, started: float, error: BaseException
    ) -> None:
        duration_ms = (asyncio.get_running_loop().time() - started) * 1000
        self.metrics.record(False, duration_ms, error)
        logger.error(
            f"Database query error (attempt {attempt + 1}/{retries + 1}): {error} "
            f"[code={sqlstate_of(error)}] query={_preview(query)!r}"
        )

    async def _guard(
        self,
        handle: BorrowedConnection,
        work: Awaitable[T],
        timeout: float | None,
        timeout_error: type[DatabaseError],
        label: str,
    ) -> T:
        timeout = self.transaction_timeout if timeout is None else timeout
        task = asyncio.ensure_future(work)
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            await self._abandon(handle, task)
            raise

        if task not in done:
            logger.error(f"{label} timeout after {timeout:g}s - rolling back and releasing connection")
            await self._abandon(handle, task)
            raise timeout_error(f"{label} exceeded {timeout:g}s")

        try:
            result = task.result()
        except BaseException as exc:
            logger.error(f"{label} error: {exc!r}")
            await handle.abort()
            await handle.release(had_error=True)
            raise
        await handle.release()
        return result

    async def _abandon(self, handle: BorrowedConnection, task: asyncio.Future) -> None:
        task.cancel()
        # Whatever the body produces after this point is discarded.
        await asyncio.gather(task, return_exceptions=True)
        await handle.abort()
        await handle.release(had_error=True)

    @staticmethod
    async def _transaction_body(tx: Transaction, body: Callable[[Transaction], Awaitable[T]]) -> T:
        await tx.begin()
        result = await body(tx)
        await tx.commit()
        return result

    @staticmethod
    async def _call(body: Callable[[BorrowedConnection], Awaitable[T]], handle: BorrowedConnection) -> T:
        return await body(handle)


db = Database.from_settings(settings)


def get_database() -> Database:
    return db
