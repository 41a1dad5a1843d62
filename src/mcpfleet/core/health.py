"""
Liveness monitoring independent of user traffic.

The monitor only reports. Respawning a worker stays with its connection's
exit handling.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Iterable, Optional

from .events import ClientEvent, EventNotifier
from .errors import ConfigurationError, FleetError
from .logging import LogEvent, StructuredLogger
from .timers import Scheduler

if TYPE_CHECKING:
    from .supervisor import WorkerConnection


@dataclass
class HealthRecord:
    """Last known health of one worker."""

    healthy: bool = False
    last_check: Optional[float] = None
    error: Optional[str] = None

    def mark_healthy(self) -> None:
        self.healthy = True
        self.last_check = time.time()
        self.error = None

    def mark_unhealthy(self, error: str) -> None:
        self.healthy = False
        self.last_check = time.time()
        self.error = error


class HealthMonitor:
    """
    Periodically probes every connected worker.

    start() twice keeps a single loop; stop() when not started does nothing.
    """

    def __init__(
        self,
        connections: Callable[[], Iterable["WorkerConnection"]],
        scheduler: Scheduler,
        notifier: EventNotifier,
        logger: StructuredLogger,
        interval: float = 30.0,
        probe_method: str = "tools/list",
    ):
        self._connections = connections
        self._scheduler = scheduler
        self._notifier = notifier
        self._logger = logger
        self.interval = interval
        self.probe_method = probe_method
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        if not self.interval or self.interval <= 0:
            raise ConfigurationError(
                f"Health check interval must be positive, got {self.interval}"
            )
        self._task = asyncio.get_running_loop().create_task(self._loop())

    def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        self._task = None

    async def _loop(self) -> None:
        while True:
            await self._scheduler.sleep(self.interval)
            await self.check_all()

    async def check_all(self) -> None:
        """Probe every connected worker once, concurrently."""
        targets = [conn for conn in self._connections() if conn.connected]
        if targets:
            await asyncio.gather(*(self.check(conn) for conn in targets))

    async def check(self, connection: "WorkerConnection") -> bool:
        """Probe one worker and update its HealthRecord."""
        try:
            await connection.request(self.probe_method)
        except FleetError as e:
            connection.health.mark_unhealthy(str(e))
            self._logger.warn(
                LogEvent.HEALTH_UNHEALTHY,
                f"Health check failed: {e}",
                worker=connection.name,
                error=str(e),
            )
            self._notifier.emit(
                ClientEvent.WORKER_UNHEALTHY, worker=connection.name, error=str(e)
            )
            return False

        connection.health.mark_healthy()
        self._logger.debug(
            LogEvent.HEALTH_CHECK, "Health check passed", worker=connection.name
        )
        return True
