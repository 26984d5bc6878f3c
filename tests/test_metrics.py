import asyncio
from types import SimpleNamespace

import pytest

from school_api.errors import DatabaseConnectionError
from school_api.metrics import MetricsCollector, MetricsState, MonitorThresholds


class StubPool:
    def __init__(self, total=0, idle=0, waiting=0, max_size=2):
        self.total_count = total
        self.idle_count = idle
        self.waiting_count = waiting
        self.config = SimpleNamespace(max_size=max_size)
        self.listeners = {}

    def on(self, event, listener):
        self.listeners[event] = listener


def test_state_tracks_running_average_and_success_rate():
    state = MetricsState()
    assert state.success_rate == 100.0

    state.record(True, 10.0)
    state.record(True, 20.0)
    state.record(False, 30.0, RuntimeError("connection reset"))

    assert state.total_queries == 3
    assert state.failed_queries == 1
    assert state.avg_query_time == pytest.approx(20.0)
    assert state.success_rate == pytest.approx(200 / 3)
    assert state.last_error == "connection reset"
    assert state.last_error_time is not None


def test_snapshot_combines_pool_and_query_counters():
    collector = MetricsCollector(StubPool(total=2, idle=1, waiting=0))
    collector.record(True, 4.0)
    collector.record(False, 6.0, RuntimeError("boom"))

    assert collector.snapshot() == {
        "total": 2,
        "idle": 1,
        "waiting": 0,
        "total_queries": 2,
        "failed_queries": 1,
        "success_rate": 50.0,
        "avg_query_time": 5.0,
    }


def test_check_is_quiet_for_healthy_pool():
    collector = MetricsCollector(StubPool(total=1, idle=1))

    assert collector.check() == []


def test_check_reports_every_breached_threshold():
    pool = StubPool(total=2, idle=0, waiting=6, max_size=2)
    collector = MetricsCollector(pool, thresholds=MonitorThresholds(waiting=5, failed_queries=1))
    collector.record(False, 1.0)
    collector.record(False, 1.0)

    assert collector.check() == ["high_load", "pool_exhausted", "failed_queries"]


def test_pool_errors_update_last_error():
    pool = StubPool()
    collector = MetricsCollector(pool)

    pool.listeners["error"](ConnectionResetError("terminated by administrator"), None)

    assert collector.state.last_error == "terminated by administrator"
    assert collector.state.failed_queries == 0


@pytest.mark.asyncio
async def test_pool_connect_failure_reaches_collector(pool, connector):
    collector = MetricsCollector(pool)
    connector.fail_with = ConnectionRefusedError("could not connect")

    with pytest.raises(DatabaseConnectionError):
        await pool.acquire()

    assert collector.state.last_error == "could not connect"


@pytest.mark.asyncio
async def test_monitor_runs_until_stopped(monkeypatch):
    collector = MetricsCollector(StubPool(), thresholds=MonitorThresholds(interval=0.01))
    ticks = []
    monkeypatch.setattr(collector, "check", lambda: ticks.append(1) or [])

    collector.start()
    collector.start()
    assert collector.running
    await asyncio.sleep(0.05)
    await collector.stop()

    assert not collector.running
    assert ticks
    await collector.stop()
