import asyncio
import inspect

import pytest

from school_api.database import Database, QueryResult
from school_api.pool import ConnectionPool, PoolConfig


class PgError(Exception):
    """Stand-in for a driver error carrying a SQLSTATE code."""

    def __init__(self, message: str, sqlstate: str | None = None):
        super().__init__(message)
        self.sqlstate = sqlstate


class FakeConnection:
    def __init__(self, responder=None, execute_errors: dict[str, Exception] | None = None):
        self.responder = responder
        self.execute_errors = execute_errors or {}
        self.executed: list[str] = []
        self.fetched: list[tuple[str, tuple]] = []
        self.closed = False
        self.terminated = False

    async def execute(self, query: str, *args):
        self.executed.append(query)
        for prefix, error in self.execute_errors.items():
            if query.startswith(prefix):
                raise error
        return "OK"

    async def fetch(self, query: str, *args):
        self.fetched.append((query, args))
        if self.responder is None:
            return []
        result = self.responder(query, args)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def close(self):
        self.closed = True

    def terminate(self):
        self.terminated = True


class FakeConnector:
    def __init__(self, responder=None):
        self.responder = responder
        self.connections: list[FakeConnection] = []
        self.fail_with: Exception | None = None
        self.execute_errors: dict[str, Exception] = {}
        self.connect_delay = 0.0

    async def __call__(self):
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.fail_with is not None:
            raise self.fail_with
        conn = FakeConnection(self.responder, dict(self.execute_errors))
        self.connections.append(conn)
        return conn


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def pool_config():
    return PoolConfig(
        max_size=2,
        min_size=0,
        idle_timeout=0,
        connection_timeout=0.1,
        max_uses=100,
        statement_timeout_ms=5000,
        close_timeout=0.1,
    )


@pytest.fixture
def pool(connector, pool_config):
    return ConnectionPool(connector, pool_config)


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def database(pool, sleeper):
    return Database(
        pool,
        query_timeout=0.2,
        transaction_timeout=0.2,
        retries=2,
        retry_base_delay=1.0,
        sleep=sleeper,
    )


class ScriptedTransaction:
    def __init__(self, db: "ScriptedDatabase"):
        self._db = db

    async def query(self, query: str, params=None) -> QueryResult:
        return await self._db.execute(query, params)


class ScriptedDatabase:
    """Answers queries by the first registered fragment that occurs in the SQL."""

    def __init__(self):
        self.handlers: list[tuple[str, list | None, Exception | None]] = []
        self.calls: list[tuple[str, list]] = []
        self.transactions = 0
        self.health = {"status": "healthy", "database": "connected", "pool": {"total": 1, "idle": 1, "waiting": 0}}

    def on(self, fragment: str, rows: list | None = None, error: Exception | None = None) -> "ScriptedDatabase":
        self.handlers.append((fragment, rows, error))
        return self

    def queries(self, fragment: str) -> list[tuple[str, list]]:
        return [call for call in self.calls if fragment in call[0]]

    async def execute(self, query: str, params=None, retries=None) -> QueryResult:
        self.calls.append((query, list(params or [])))
        for fragment, rows, error in self.handlers:
            if fragment in query:
                if error is not None:
                    raise error
                return QueryResult([dict(row) for row in rows or []])
        return QueryResult([])

    async def run(self, body, timeout=None):
        self.transactions += 1
        return await body(ScriptedTransaction(self))

    async def with_connection(self, body, timeout=None):
        return await body(ScriptedTransaction(self))

    async def health_check(self):
        return self.health
