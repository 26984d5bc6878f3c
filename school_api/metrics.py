import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

from .pool import ConnectionPool


logger = logging.getLogger(__name__)


@dataclass
class MetricsState:
    total_queries: int = 0
    failed_queries: int = 0
    avg_query_time: float = 0.0
    last_error: str | None = None
    last_error_time: datetime | None = None

    def record(self, success: bool, duration_ms: float, error: BaseException | None = None) -> None:
        """Fold one finished query attempt into the counters."""
        self.total_queries += 1
        self.avg_query_time += (duration_ms - self.avg_query_time) / self.total_queries
        if not success:
            self.failed_queries += 1
            if error is not None:
                self.record_error(error)

    def record_error(self, error: BaseException) -> None:
        self.last_error = str(error) or type(error).__name__
        self.last_error_time = datetime.now(timezone.utc)

    @property
    def success_rate(self) -> float:
        if self.total_queries == 0:
            return 100.0
        return (self.total_queries - self.failed_queries) / self.total_queries * 100

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class MonitorThresholds:
    waiting: int = 5
    failed_queries: int = 10
    interval: float = 60.0


class MetricsCollector:
    """Owns the process-wide query counters and the periodic pool monitor."""

    def __init__(
        self,
        pool: ConnectionPool,
        state: MetricsState | None = None,
        thresholds: MonitorThresholds | None = None,
    ):
        self.pool = pool
        self.state = state or MetricsState()
        self.thresholds = thresholds or MonitorThresholds()
        self._task: asyncio.Task | None = None
        pool.on("error", self._on_pool_error)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def record(self, success: bool, duration_ms: float, error: BaseException | None = None) -> None:
        self.state.record(success, duration_ms, error)

    def pool_stats(self) -> dict[str, int]:
        return {
            "total": self.pool.total_count,
            "idle": self.pool.idle_count,
            "waiting": self.pool.waiting_count,
        }

    def snapshot(self) -> dict[str, Any]:
        return {
            **self.pool_stats(),
            "total_queries": self.state.total_queries,
            "failed_queries": self.state.failed_queries,
            "success_rate": round(self.state.success_rate, 2),
            "avg_query_time": round(self.state.avg_query_time, 2),
        }

    def check(self) -> list[str]:
        """Log the alert conditions that currently hold and return their names."""
        alerts = []
        if self.pool.waiting_count > self.thresholds.waiting:
            logger.warning(
                f"Database pool under heavy load, waiting clients: {self.pool.waiting_count}"
            )
            alerts.append("high_load")
        if self.pool.idle_count == 0 and self.pool.total_count >= self.pool.config.max_size:
            logger.warning("Connection pool exhausted")
            alerts.append("pool_exhausted")
        if self.state.failed_queries > self.thresholds.failed_queries:
            logger.error(f"High query failure count detected: {self.state.failed_queries}")
            alerts.append("failed_queries")
        return alerts

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.ensure_future(self._monitor())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _monitor(self) -> None:
        while True:
            await asyncio.sleep(self.thresholds.interval)
            try:
                logger.info(f"Pool status: {self.snapshot()}")
                self.check()
            except Exception:
                logger.exception("Pool monitor iteration failed")

    def _on_pool_error(self, error: BaseException, conn: Any = None) -> None:
        logger.error(f"Unexpected error on database connection: {error}")
        self.state.record_error(error)
