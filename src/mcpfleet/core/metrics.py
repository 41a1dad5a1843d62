"""
Metrics collection for observability.

Tracks request counts, latency and in-flight depth across every worker of a
client. Counters are never reset by the client itself, so they survive
disconnect().
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional


@dataclass
class MetricsSnapshot:
    """Point-in-time snapshot of all metrics."""

    # Counters
    requests_total: int = 0
    requests_success: int = 0
    requests_failed: int = 0
    requests_abandoned: int = 0

    # Latency (milliseconds), successful requests only
    latencies_ms: List[float] = field(default_factory=list)
    latency_avg_ms: float = 0.0
    latency_p50_ms: float = 0.0
    latency_p95_ms: float = 0.0
    latency_p99_ms: float = 0.0
    latency_min_ms: float = 0.0
    latency_max_ms: float = 0.0

    # In-flight requests
    inflight: int = 0
    inflight_max: int = 0

    # Timestamp
    timestamp: float = field(default_factory=time.time)

    @property
    def error_rate(self) -> float:
        if self.requests_total == 0:
            return 0.0
        return self.requests_failed / self.requests_total


class Metrics:
    """
    Metrics collector shared by all workers of a FleetClient.

    Usage:
        metrics = Metrics()

        start = metrics.start_request()
        # ... do work ...
        metrics.end_request(start, success=True)

        snapshot = metrics.snapshot()
        print(f"Avg latency: {snapshot.latency_avg_ms}ms")

    The clock defaults to time.perf_counter; FleetClient passes its
    scheduler's clock so latencies follow virtual time in tests.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.perf_counter

        self._requests_total = 0
        self._requests_success = 0
        self._requests_failed = 0
        self._requests_abandoned = 0

        self._inflight = 0
        self._inflight_max = 0

        # Full history; the average is the exact mean of all of it
        self._latencies: List[float] = []
        self._latency_sum = 0.0

    def start_request(self) -> float:
        """
        Start tracking a request.

        Returns start timestamp for later end_request() call.
        """
        self._requests_total += 1
        self._inflight += 1
        self._inflight_max = max(self._inflight_max, self._inflight)
        return self._clock()

    def end_request(
        self,
        start_time: float,
        success: bool = True,
        error: Optional[str] = None,
    ) -> float:
        """
        End tracking a request.

        Returns latency in milliseconds.
        """
        latency_ms = (self._clock() - start_time) * 1000
        self._inflight = max(self._inflight - 1, 0)

        if success:
            self._requests_success += 1
            self._latencies.append(latency_ms)
            self._latency_sum += latency_ms
        else:
            self._requests_failed += 1

        return latency_ms

    def abandon_requests(self, count: int) -> None:
        """Stop tracking requests that will never complete (disconnect)."""
        self._requests_abandoned += count
        self._inflight = max(self._inflight - count, 0)

    @property
    def average_latency_ms(self) -> float:
        if not self._latencies:
            return 0.0
        return self._latency_sum / len(self._latencies)

    def snapshot(self) -> MetricsSnapshot:
        """Get a point-in-time snapshot of all metrics."""
        latencies = list(self._latencies)

        if latencies:
            sorted_latencies = sorted(latencies)
            n = len(sorted_latencies)
            p50_idx = int(n * 0.50)
            p95_idx = int(n * 0.95)
            p99_idx = int(n * 0.99)

            latency_p50 = sorted_latencies[min(p50_idx, n - 1)]
            latency_p95 = sorted_latencies[min(p95_idx, n - 1)]
            latency_p99 = sorted_latencies[min(p99_idx, n - 1)]
            latency_min = sorted_latencies[0]
            latency_max = sorted_latencies[-1]
        else:
            latency_p50 = latency_p95 = latency_p99 = 0.0
            latency_min = latency_max = 0.0

        return MetricsSnapshot(
            requests_total=self._requests_total,
            requests_success=self._requests_success,
            requests_failed=self._requests_failed,
            requests_abandoned=self._requests_abandoned,
            latencies_ms=latencies,
            latency_avg_ms=self.average_latency_ms,
            latency_p50_ms=latency_p50,
            latency_p95_ms=latency_p95,
            latency_p99_ms=latency_p99,
            latency_min_ms=latency_min,
            latency_max_ms=latency_max,
            inflight=self._inflight,
            inflight_max=self._inflight_max,
        )

    def reset(self):
        """Reset all metrics."""
        self._requests_total = 0
        self._requests_success = 0
        self._requests_failed = 0
        self._requests_abandoned = 0
        self._inflight = 0
        self._inflight_max = 0
        self._latencies.clear()
        self._latency_sum = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Get metrics as a dictionary (for logging/serialization)."""
        snapshot = self.snapshot()
        return {
            "requests": {
                "total": snapshot.requests_total,
                "success": snapshot.requests_success,
                "failed": snapshot.requests_failed,
                "abandoned": snapshot.requests_abandoned,
                "error_rate": snapshot.error_rate,
            },
            "latency_ms": {
                "avg": round(snapshot.latency_avg_ms, 2),
                "p50": round(snapshot.latency_p50_ms, 2),
                "p95": round(snapshot.latency_p95_ms, 2),
                "p99": round(snapshot.latency_p99_ms, 2),
                "min": round(snapshot.latency_min_ms, 2),
                "max": round(snapshot.latency_max_ms, 2),
            },
            "inflight": {
                "depth": snapshot.inflight,
                "max_depth": snapshot.inflight_max,
            },
        }
