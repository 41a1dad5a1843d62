"""
Request correlation for one worker.

Ids are allocated per worker starting at 1. Each pending request leaves the
table exactly once: on its response, on its timeout, when the process exits,
or when the client disconnects.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .errors import RequestTimeoutError
from .message import RpcMessage
from .timers import Scheduler


@dataclass
class PendingRequest:
    """An outstanding request awaiting its response."""

    id: int
    method: str
    issued_at: float
    future: asyncio.Future
    timeout: float
    timer: Any = None
    abandoned: bool = False


class RequestCorrelator:
    """Matches responses from one worker to the callers awaiting them."""

    def __init__(self, worker: str, scheduler: Scheduler):
        self.worker = worker
        self._scheduler = scheduler
        self._next_id = 1
        self._pending: Dict[int, PendingRequest] = {}

    def open(self, method: str, timeout: float) -> PendingRequest:
        """Allocate an id, register the request and arm its timeout."""
        request_id = self._next_id
        self._next_id += 1

        pending = PendingRequest(
            id=request_id,
            method=method,
            issued_at=self._scheduler.time(),
            future=asyncio.get_running_loop().create_future(),
            timeout=timeout,
        )
        pending.timer = self._scheduler.call_later(timeout, self._expire, request_id)
        self._pending[request_id] = pending
        return pending

    def resolve(self, message: RpcMessage) -> bool:
        """
        Hand a response to its caller.

        Returns False (and does nothing) when no request with that id is
        pending, e.g. a duplicate response or one that arrived after timeout.
        """
        pending = self._pending.pop(message.id, None)
        if pending is None:
            return False
        self._cancel_timer(pending)
        if not pending.future.done():
            pending.future.set_result(message)
        return True

    def _expire(self, request_id: int) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        if not pending.future.done():
            pending.future.set_exception(
                RequestTimeoutError(
                    f"Request {pending.method} to worker '{self.worker}' "
                    f"timed out after {pending.timeout}s"
                )
            )

    def discard(self, request_id: int) -> Optional[PendingRequest]:
        """Drop a request without completing it."""
        pending = self._pending.pop(request_id, None)
        if pending is not None:
            self._cancel_timer(pending)
        return pending

    def fail_all(self, error: BaseException) -> int:
        """Fail every pending request with error. Returns how many."""
        pending = list(self._pending.values())
        self._pending.clear()
        for request in pending:
            self._cancel_timer(request)
            if not request.future.done():
                request.future.set_exception(error)
        return len(pending)

    def abandon_all(self) -> int:
        """Forget every pending request without resolving it. Returns how many."""
        pending = list(self._pending.values())
        self._pending.clear()
        for request in pending:
            self._cancel_timer(request)
            request.abandoned = True
        return len(pending)

    @staticmethod
    def _cancel_timer(pending: PendingRequest) -> None:
        if pending.timer is not None:
            pending.timer.cancel()
            pending.timer = None

    @property
    def next_id(self) -> int:
        return self._next_id

    def pending_ids(self) -> List[int]:
        return list(self._pending)

    def __contains__(self, request_id: int) -> bool:
        return request_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)
