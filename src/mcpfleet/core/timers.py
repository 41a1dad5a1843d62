"""
Schedulable timers.

Everything time-related in the client (request timeouts, startup grace,
reconnect backoff, health checks, latency measurement) goes through a
Scheduler. AsyncioScheduler is backed by the running event loop;
ManualScheduler keeps virtual time that tests advance explicitly.
"""

import asyncio
import heapq
import itertools
from typing import Any, Callable, List, Optional, Tuple


class Scheduler:
    """Interface for clocks and timers used by the client."""

    def time(self) -> float:
        """Current monotonic time in seconds."""
        raise NotImplementedError

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any):
        """Run callback after delay seconds. Returns a handle with cancel()."""
        raise NotImplementedError

    async def sleep(self, delay: float) -> None:
        """Suspend the calling coroutine for delay seconds."""
        raise NotImplementedError


class AsyncioScheduler(Scheduler):
    """Scheduler backed by the running asyncio event loop."""

    def time(self) -> float:
        return asyncio.get_running_loop().time()

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any):
        return asyncio.get_running_loop().call_later(max(delay, 0.0), callback, *args)

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(max(delay, 0.0))


class ManualTimer:
    """Handle for a timer registered on a ManualScheduler."""

    __slots__ = ("when", "_callback", "_args", "_cancelled")

    def __init__(self, when: float, callback: Callable[..., Any], args: Tuple[Any, ...]):
        self.when = when
        self._callback = callback
        self._args = args
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled

    def _run(self) -> None:
        if not self._cancelled:
            self._cancelled = True
            self._callback(*self._args)


async def settle(rounds: int = 50) -> None:
    """Yield to the event loop until ready callbacks have run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class ManualScheduler(Scheduler):
    """
    Scheduler with virtual time.

    Timers only fire when advance() moves the clock past their deadline, so
    tests can check timeouts and backoff without wall-clock sleeps.

    Usage:
        scheduler = ManualScheduler()
        client = FleetClient(scheduler=scheduler, ...)
        task = asyncio.create_task(client.invoke_operation("math", "slow"))
        await scheduler.advance(10.0)   # fires the request timeout
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._timers: List[Tuple[float, int, ManualTimer]] = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> ManualTimer:
        timer = ManualTimer(self._now + max(delay, 0.0), callback, args)
        heapq.heappush(self._timers, (timer.when, next(self._seq), timer))
        return timer

    async def sleep(self, delay: float) -> None:
        if delay <= 0:
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        timer = self.call_later(delay, _resolve, future)
        try:
            await future
        finally:
            timer.cancel()

    @property
    def pending_timers(self) -> int:
        """Number of timers that have not fired or been cancelled."""
        return sum(1 for _, _, timer in self._timers if not timer.cancelled())

    def next_deadline(self) -> Optional[float]:
        """Deadline of the earliest live timer, if any."""
        live = [when for when, _, timer in self._timers if not timer.cancelled()]
        return min(live) if live else None

    async def advance(self, seconds: float) -> None:
        """Move virtual time forward, firing due timers in deadline order."""
        target = self._now + seconds
        await settle()
        while self._timers and self._timers[0][0] <= target:
            when, _, timer = heapq.heappop(self._timers)
            if timer.cancelled():
                continue
            self._now = max(self._now, when)
            timer._run()
            await settle()
        self._now = target
        await settle()


def _resolve(future: asyncio.Future) -> None:
    if not future.done():
        future.set_result(None)
