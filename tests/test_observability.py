"""
Tests for metrics, structured logging and event notification.
"""

import itertools
import json
import logging
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from mcpfleet.core.events import ClientEvent, Event, EventNotifier
from mcpfleet.core.logging import (
    LogEntry,
    LogEvent,
    LogLevel,
    StructuredLogger,
    default_json_handler,
    default_pretty_handler,
    stdlib_handler,
)
from mcpfleet.core.metrics import Metrics, MetricsSnapshot


def stepping_clock(step=0.1):
    """Clock that alternates start/end times exactly step seconds apart."""
    values = itertools.cycle([0.0, step])
    return lambda: next(values)


class TestMetrics:
    """Test metrics collection."""

    def test_metrics_creation(self):
        snapshot = Metrics().snapshot()
        assert snapshot.requests_total == 0
        assert snapshot.latency_avg_ms == 0.0
        assert snapshot.error_rate == 0.0

    def test_average_is_exact_mean(self):
        """Ten 100ms requests average exactly 100ms."""
        metrics = Metrics(clock=stepping_clock(0.1))

        for _ in range(10):
            start = metrics.start_request()
            metrics.end_request(start, success=True)

        snapshot = metrics.snapshot()
        assert snapshot.requests_total == 10
        assert snapshot.requests_success == 10
        assert snapshot.latencies_ms == [100.0] * 10
        assert snapshot.latency_avg_ms == 100.0
        assert metrics.average_latency_ms == 100.0

    def test_failures_do_not_affect_latency(self):
        metrics = Metrics(clock=stepping_clock(0.1))

        start = metrics.start_request()
        metrics.end_request(start, success=True)
        start = metrics.start_request()
        metrics.end_request(start, success=False, error="Timeout")

        snapshot = metrics.snapshot()
        assert snapshot.requests_total == 2
        assert snapshot.requests_failed == 1
        assert snapshot.latencies_ms == [100.0]
        assert snapshot.error_rate == 0.5

    def test_end_request_returns_latency(self):
        metrics = Metrics(clock=stepping_clock(0.25))
        start = metrics.start_request()
        assert metrics.end_request(start) == 250.0

    def test_inflight_tracking(self):
        metrics = Metrics(clock=lambda: 0.0)
        starts = [metrics.start_request() for _ in range(3)]
        assert metrics.snapshot().inflight == 3

        for start in starts:
            metrics.end_request(start)

        snapshot = metrics.snapshot()
        assert snapshot.inflight == 0
        assert snapshot.inflight_max == 3

    def test_abandoned_requests_leave_inflight(self):
        metrics = Metrics(clock=lambda: 0.0)
        for _ in range(3):
            metrics.start_request()

        metrics.abandon_requests(2)

        snapshot = metrics.snapshot()
        assert snapshot.requests_abandoned == 2
        assert snapshot.inflight == 1
        assert snapshot.inflight_max == 3
        assert snapshot.requests_failed == 0
        assert metrics.to_dict()["requests"]["abandoned"] == 2

    def test_percentiles(self):
        times = iter([0.0, 0.125, 0.0, 0.25, 0.0, 0.375, 0.0, 0.5])
        metrics = Metrics(clock=lambda: next(times))
        for _ in range(4):
            metrics.end_request(metrics.start_request())

        snapshot = metrics.snapshot()
        assert snapshot.latency_min_ms == 125.0
        assert snapshot.latency_max_ms == 500.0
        assert snapshot.latency_p50_ms == 375.0
        assert snapshot.latency_p99_ms == 500.0

    def test_reset(self):
        metrics = Metrics(clock=stepping_clock())
        metrics.end_request(metrics.start_request())
        metrics.reset()

        snapshot = metrics.snapshot()
        assert snapshot.requests_total == 0
        assert snapshot.latencies_ms == []

    def test_to_dict(self):
        metrics = Metrics(clock=stepping_clock())
        metrics.end_request(metrics.start_request())

        data = metrics.to_dict()
        assert data["requests"]["total"] == 1
        assert data["latency_ms"]["avg"] == 100.0
        assert "inflight" in data
        json.dumps(data)

    def test_snapshot_type(self):
        assert isinstance(Metrics().snapshot(), MetricsSnapshot)


class TestStructuredLogger:
    """Test structured logging."""

    def test_handler_receives_entries(self):
        entries = []
        logger = StructuredLogger(handler=entries.append)

        logger.info(LogEvent.WORKER_READY, "ready", worker="math")

        assert len(entries) == 1
        assert entries[0].event == "worker_ready"
        assert entries[0].level == "info"
        assert entries[0].worker == "math"

    def test_level_filter(self):
        entries = []
        logger = StructuredLogger(handler=entries.append, level=LogLevel.WARN)

        logger.debug(LogEvent.REQUEST_START, "debug")
        logger.info(LogEvent.REQUEST_END, "info")
        logger.warn(LogEvent.REQUEST_TIMEOUT, "warn")
        logger.error(LogEvent.WORKER_FAILED, "error")

        assert [e.level for e in entries] == ["warn", "error"]

    def test_no_handler_is_silent(self):
        StructuredLogger().error(LogEvent.WORKER_FAILED, "nobody listens")

    def test_handler_errors_are_contained(self, capsys):
        def broken(entry):
            raise RuntimeError("handler broke")

        StructuredLogger(handler=broken).info(LogEvent.CLIENT_INIT, "x")

        assert "Log handler error" in capsys.readouterr().err

    def test_request_helpers(self):
        entries = []
        logger = StructuredLogger(handler=entries.append, level=LogLevel.DEBUG)

        logger.request_start("math", 3, "tools/call")
        logger.request_end("math", 3, "tools/call", 12.5, success=False, error="boom")

        start, end = entries
        assert start.event == "request_start"
        assert start.request_id == 3
        assert end.event == "request_error"
        assert end.level == "warn"
        assert end.duration_ms == 12.5
        assert end.error == "boom"

    def test_process_helpers(self):
        entries = []
        logger = StructuredLogger(handler=entries.append)

        logger.process_spawn("math", 1234, "python math.py")
        logger.process_exit("math", 0)
        logger.process_exit("math", 1)

        assert entries[0].metadata == {"pid": 1234}
        assert [e.level for e in entries[1:]] == ["info", "warn"]

    def test_entry_serialization_omits_none(self):
        entry = LogEntry(event="e", level="info", message="m", worker="w")
        data = json.loads(entry.to_json())
        assert data["worker"] == "w"
        assert "request_id" not in data

    def test_default_handlers_write_stderr(self, capsys):
        entry = LogEntry(
            event="request_end",
            level="info",
            message="Completed",
            worker="math",
            request_id=1,
            duration_ms=1.5,
        )
        default_json_handler(entry)
        default_pretty_handler(entry)

        err = capsys.readouterr().err.splitlines()
        assert json.loads(err[0])["worker"] == "math"
        assert "[math]" in err[1]
        assert "req=1" in err[1]
        assert "1.5ms" in err[1]

    def test_stdlib_handler(self, caplog):
        logger = StructuredLogger(handler=stdlib_handler)
        with caplog.at_level(logging.WARNING, logger="mcpfleet"):
            logger.warn(LogEvent.HEALTH_UNHEALTHY, "probe failed", worker="math")

        assert caplog.records[0].levelno == logging.WARNING
        assert caplog.records[0].getMessage() == "[math] probe failed"


class TestEventNotifier:
    """Test event subscription and delivery."""

    def test_subscribe_and_emit(self):
        notifier = EventNotifier()
        seen = []
        notifier.subscribe(ClientEvent.CONNECTED, seen.append)

        event = notifier.emit(ClientEvent.CONNECTED, worker_count=2)

        assert seen == [event]
        assert isinstance(event, Event)
        assert event["worker_count"] == 2
        assert event.get("missing", "x") == "x"

    def test_only_matching_events_delivered(self):
        notifier = EventNotifier()
        seen = []
        notifier.subscribe("worker_log", seen.append)

        notifier.emit(ClientEvent.CONNECTED)
        notifier.emit(ClientEvent.WORKER_LOG, worker="a", message="hi")

        assert [e.name for e in seen] == [ClientEvent.WORKER_LOG]

    def test_subscription_order(self):
        notifier = EventNotifier()
        order = []
        notifier.subscribe(ClientEvent.DISCONNECTED, lambda e: order.append(1))
        notifier.subscribe_all(lambda e: order.append(2))
        notifier.subscribe(ClientEvent.DISCONNECTED, lambda e: order.append(3))

        notifier.emit(ClientEvent.DISCONNECTED)

        assert order == [1, 2, 3]

    def test_unsubscribe(self):
        notifier = EventNotifier()
        seen = []
        unsubscribe = notifier.subscribe(ClientEvent.CONNECTED, seen.append)
        notifier.subscribe_all(seen.append)

        unsubscribe()
        unsubscribe()
        notifier.unsubscribe(seen.append)
        notifier.emit(ClientEvent.CONNECTED)

        assert seen == []
        assert len(notifier) == 0

    def test_failing_handler_is_logged_and_skipped(self):
        entries = []
        notifier = EventNotifier(StructuredLogger(handler=entries.append))
        seen = []

        def broken(event):
            raise ValueError("bad handler")

        notifier.subscribe(ClientEvent.CONNECTED, broken)
        notifier.subscribe(ClientEvent.CONNECTED, seen.append)
        notifier.emit(ClientEvent.CONNECTED)

        assert len(seen) == 1
        assert entries[0].event == "handler_error"
        assert "bad handler" in entries[0].error
