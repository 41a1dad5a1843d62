"""
Tests for the health monitor.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from mcpfleet.core.errors import ConfigurationError, RequestTimeoutError
from mcpfleet.core.events import ClientEvent, EventNotifier
from mcpfleet.core.health import HealthMonitor, HealthRecord
from mcpfleet.core.logging import StructuredLogger
from mcpfleet.core.timers import ManualScheduler


class ProbeTarget:
    """Connection stub answering (or failing) the liveness probe."""

    def __init__(self, name, connected=True, fail=False):
        self.name = name
        self.connected = connected
        self.fail = fail
        self.health = HealthRecord()
        self.probes = []

    async def request(self, method, params=None, *, require_connected=True):
        self.probes.append(method)
        if self.fail:
            raise RequestTimeoutError(f"Request {method} to worker '{self.name}' timed out")
        return {"tools": []}


def make_monitor(targets, scheduler=None, interval=30.0):
    notifier = EventNotifier()
    monitor = HealthMonitor(
        lambda: targets,
        scheduler or ManualScheduler(),
        notifier,
        StructuredLogger(),
        interval=interval,
    )
    return monitor, notifier


class TestHealthRecord:
    def test_marks(self):
        record = HealthRecord()
        assert record.healthy is False
        assert record.last_check is None

        record.mark_unhealthy("down")
        assert record.error == "down"
        assert record.last_check is not None

        record.mark_healthy()
        assert record.healthy is True
        assert record.error is None


class TestHealthMonitor:
    @pytest.mark.asyncio
    async def test_periodic_probe(self):
        scheduler = ManualScheduler()
        target = ProbeTarget("a")
        monitor, _ = make_monitor([target], scheduler)

        monitor.start()
        await scheduler.advance(29.0)
        assert target.probes == []

        await scheduler.advance(1.0)
        assert target.probes == ["tools/list"]
        assert target.health.healthy is True

        await scheduler.advance(30.0)
        assert len(target.probes) == 2
        monitor.stop()

    @pytest.mark.asyncio
    async def test_failed_probe_reports_unhealthy(self):
        target = ProbeTarget("a", fail=True)
        monitor, notifier = make_monitor([target])
        seen = []
        notifier.subscribe(ClientEvent.WORKER_UNHEALTHY, seen.append)

        healthy = await monitor.check(target)

        assert healthy is False
        assert target.health.healthy is False
        assert "timed out" in target.health.error
        assert seen[0]["worker"] == "a"

    @pytest.mark.asyncio
    async def test_only_connected_workers_probed(self):
        up = ProbeTarget("up")
        down = ProbeTarget("down", connected=False)
        monitor, _ = make_monitor([up, down])

        await monitor.check_all()

        assert up.probes == ["tools/list"]
        assert down.probes == []

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        scheduler = ManualScheduler()
        target = ProbeTarget("a")
        monitor, _ = make_monitor([target], scheduler)

        monitor.start()
        monitor.start()
        await scheduler.advance(30.0)

        assert target.probes == ["tools/list"]
        monitor.stop()

    @pytest.mark.asyncio
    async def test_stop(self):
        scheduler = ManualScheduler()
        target = ProbeTarget("a")
        monitor, _ = make_monitor([target], scheduler)

        monitor.stop()
        monitor.start()
        assert monitor.running
        monitor.stop()
        monitor.stop()
        assert not monitor.running

        await scheduler.advance(60.0)
        assert target.probes == []

    @pytest.mark.asyncio
    async def test_custom_probe_method(self):
        target = ProbeTarget("a")
        monitor = HealthMonitor(
            lambda: [target],
            ManualScheduler(),
            EventNotifier(),
            StructuredLogger(),
            probe_method="ping",
        )

        assert await monitor.check(target) is True
        assert target.probes == ["ping"]

    @pytest.mark.asyncio
    async def test_start_requires_positive_interval(self):
        monitor, _ = make_monitor([ProbeTarget("a")], interval=0)

        with pytest.raises(ConfigurationError):
            monitor.start()
        assert not monitor.running
