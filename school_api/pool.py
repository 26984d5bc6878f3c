"""Bounded asyncio connection pool.

Every connection is in exactly one place at a time: the idle deque, the
in-use set, or nowhere (being handed to a waiter or torn down). ``total_count`` also counts
connections that are still being opened, so it never exceeds ``max_size``.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .errors import DatabaseConnectionError, PoolClosedError, PoolTimeout


logger = logging.getLogger(__name__)

POOL_EVENTS = ("connect", "acquire", "remove", "error")


@dataclass(frozen=True)
class PoolConfig:
    max_size: int = 20
    min_size: int = 2
    idle_timeout: float = 30.0
    connection_timeout: float = 10.0
    max_uses: int = 7500
    statement_timeout_ms: int = 30000
    close_timeout: float = 10.0


class PooledConnection:
    def __init__(self, raw: Any):
        self.raw = raw
        self.use_count = 0
        self.last_used = time.monotonic()
        self._idle_handle: asyncio.TimerHandle | None = None

    def cancel_idle_timer(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def __repr__(self) -> str:
        return f"<PooledConnection uses={self.use_count} raw={self.raw!r}>"


class ConnectionPool:
    def __init__(self, connect: Callable[[], Awaitable[Any]], config: PoolConfig | None = None):
        self.config = config or PoolConfig()
        self._connect = connect
        self._idle: deque[PooledConnection] = deque()
        self._in_use: set[PooledConnection] = set()
        self._waiters: deque[asyncio.Future] = deque()
        self._total = 0
        self._listeners: dict[str, list[Callable[..., Any]]] = {name: [] for name in POOL_EVENTS}
        self._background: set[asyncio.Task] = set()
        self._drained: asyncio.Event | None = None
        self._closing = False

    @property
    def total_count(self) -> int:
        return self._total

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    @property
    def waiting_count(self) -> int:
        return len(self._waiters)

    @property
    def in_use_count(self) -> int:
        return len(self._in_use)

    @property
    def closed(self) -> bool:
        return self._closing

    def on(self, event: str, listener: Callable[..., Any]) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown pool event: {event}")
        self._listeners[event].append(listener)

    def _emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners[event]):
            try:
                listener(*args)
            except Exception:
                logger.exception(f"Pool '{event}' listener failed")

    async def open(self) -> None:
        """Warm the pool up to ``min_size`` connections."""
        while not self._closing and self._total < self.config.min_size:
            try:
                conn = await self._create()
            except Exception as exc:
                logger.error(f"Failed to open warm-up connection: {exc}")
                break
            self._make_idle(conn)

    async def acquire(self) -> PooledConnection:
        """Borrow a connection, waiting in FIFO order when the pool is full.

        ``connection_timeout`` bounds the whole call, including opening a new
        connection. A connection released while callers are queued is handed
        straight to the oldest of them.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.connection_timeout
        woken = False
        while True:
            if self._closing:
                raise PoolClosedError("Connection pool is closed")

            # Newcomers may only skip the queue when nobody is waiting.
            if woken or not self._waiters:
                conn = self._take_idle()
                if conn is not None:
                    return self._checkout(conn)
                if self._total < self.config.max_size:
                    return self._checkout(await self._open_within(deadline - loop.time()))

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise self._timeout("waiting for")
            waiter = loop.create_future()
            if woken:
                self._waiters.appendleft(waiter)
            else:
                self._waiters.append(waiter)
            try:
                conn = await asyncio.wait_for(waiter, remaining)
            except asyncio.TimeoutError:
                self._drop_waiter(waiter)
                raise self._timeout("waiting for") from None
            except asyncio.CancelledError:
                self._drop_waiter(waiter)
                raise
            if conn is not None:
                if self._closing:
                    await self._remove(conn)
                    raise PoolClosedError("Connection pool is closed")
                return self._checkout(conn)
            woken = True

    async def _open_within(self, remaining: float) -> PooledConnection:
        if remaining <= 0:
            raise self._timeout("opening")
        try:
            conn = await asyncio.wait_for(self._create(), remaining)
        except asyncio.TimeoutError as exc:
            raise self._timeout("opening") from exc
        except Exception as exc:
            raise DatabaseConnectionError(f"Could not connect to database: {exc}") from exc
        if self._closing:
            await self._remove(conn, terminate=True)
            raise PoolClosedError("Connection pool is closed")
        return conn

    def _timeout(self, action: str) -> PoolTimeout:
        return PoolTimeout(f"Timed out after {self.config.connection_timeout}s {action} a database connection")

    async def release(self, conn: PooledConnection, had_error: bool = False) -> None:
        if conn not in self._in_use:
            logger.warning(f"Ignoring release of a connection that is not checked out: {conn!r}")
            return
        self._in_use.discard(conn)
        conn.last_used = time.monotonic()

        if had_error or self._closing:
            await self._remove(conn, terminate=had_error)
        elif conn.use_count >= self.config.max_uses:
            logger.info(f"Retiring connection after {conn.use_count} uses")
            await self._remove(conn)
        else:
            self._make_idle(conn)

        if self._drained is not None and not self._in_use:
            self._drained.set()

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True

        while self._waiters:
            self._wake_next()

        idle = list(self._idle)
        self._idle.clear()
        for conn in idle:
            conn.cancel_idle_timer()
            await self._remove(conn)

        if self._in_use:
            self._drained = asyncio.Event()
            try:
                await asyncio.wait_for(self._drained.wait(), self.config.close_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"{len(self._in_use)} connection(s) still in use after {self.config.close_timeout}s, terminating"
                )
                for conn in list(self._in_use):
                    self._in_use.discard(conn)
                    await self._remove(conn, terminate=True)

        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def _create(self) -> PooledConnection:
        self._total += 1
        try:
            raw = await self._connect()
        except BaseException as exc:
            self._total -= 1
            self._wake_next()
            if isinstance(exc, Exception):
                self._emit("error", exc, None)
            raise

        conn = PooledConnection(raw)
        try:
            await raw.execute(f"SET statement_timeout = {int(self.config.statement_timeout_ms)}")
        except asyncio.CancelledError:
            await self._remove(conn, terminate=True)
            raise
        except Exception as exc:
            logger.error(f"Failed to set statement timeout: {exc}")
            self._emit("error", exc, conn)

        logger.info("New client connected to PostgreSQL database")
        self._emit("connect", conn)
        return conn

    def _take_idle(self) -> PooledConnection | None:
        if not self._idle:
            return None
        # Most recently used first so surplus connections age out.
        conn = self._idle.pop()
        conn.cancel_idle_timer()
        return conn

    def _checkout(self, conn: PooledConnection) -> PooledConnection:
        conn.use_count += 1
        conn.last_used = time.monotonic()
        self._in_use.add(conn)
        self._emit("acquire", conn)
        return conn

    def _make_idle(self, conn: PooledConnection) -> None:
        conn.cancel_idle_timer()
        if self._hand_off(conn):
            return
        self._idle.append(conn)
        if self.config.idle_timeout > 0:
            loop = asyncio.get_running_loop()
            conn._idle_handle = loop.call_later(self.config.idle_timeout, self._expire_idle, conn)

    def _expire_idle(self, conn: PooledConnection) -> None:
        conn._idle_handle = None
        if conn not in self._idle or self._total <= self.config.min_size:
            return
        self._idle.remove(conn)
        logger.debug(f"Closing connection idle for {time.monotonic() - conn.last_used:.1f}s")
        self._spawn(self._remove(conn))

    async def _remove(self, conn: PooledConnection, terminate: bool = False) -> None:
        self._total -= 1
        self._emit("remove", conn)
        self._wake_next()
        try:
            if terminate:
                conn.raw.terminate()
            else:
                await conn.raw.close()
        except Exception as exc:
            logger.warning(f"Error closing database connection: {exc}")
            self._emit("error", exc, conn)

    def _wake_next(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return

    def _hand_off(self, conn: PooledConnection) -> bool:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(conn)
                return True
        return False

    def _drop_waiter(self, waiter: asyncio.Future) -> None:
        if waiter.done() and not waiter.cancelled():
            # Already served: pass the connection or the wake-up on so it is not lost.
            conn = waiter.result()
            if conn is not None and self._closing:
                self._spawn(self._remove(conn))
            elif conn is not None:
                self._make_idle(conn)
            else:
                self._wake_next()
            return
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
