"""
Tests for request correlation and per-request timeouts.
"""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from mcpfleet.core.correlator import RequestCorrelator
from mcpfleet.core.errors import ProcessExitError, RequestTimeoutError
from mcpfleet.core.message import RpcMessage
from mcpfleet.core.timers import ManualScheduler


def response(request_id, result="ok"):
    return RpcMessage.create_response(result, request_id)


class TestRequestCorrelator:
    """Test id allocation, matching and expiry."""

    @pytest.mark.asyncio
    async def test_ids_start_at_one_and_increase(self):
        correlator = RequestCorrelator("a", ManualScheduler())
        ids = [correlator.open("m", 10.0).id for _ in range(3)]
        assert ids == [1, 2, 3]
        assert correlator.next_id == 4
        assert correlator.pending_ids() == [1, 2, 3]
        correlator.abandon_all()

    @pytest.mark.asyncio
    async def test_ids_are_per_worker(self):
        scheduler = ManualScheduler()
        a = RequestCorrelator("a", scheduler)
        b = RequestCorrelator("b", scheduler)
        assert a.open("m", 1.0).id == 1
        assert b.open("m", 1.0).id == 1
        a.abandon_all()
        b.abandon_all()

    @pytest.mark.asyncio
    async def test_resolve(self):
        scheduler = ManualScheduler()
        correlator = RequestCorrelator("a", scheduler)
        pending = correlator.open("tools/list", 10.0)

        assert correlator.resolve(response(pending.id, {"tools": []})) is True

        assert pending.future.result().result == {"tools": []}
        assert pending.id not in correlator
        assert scheduler.pending_timers == 0

    @pytest.mark.asyncio
    async def test_resolve_unknown_id_is_ignored(self):
        correlator = RequestCorrelator("a", ManualScheduler())
        pending = correlator.open("m", 10.0)

        assert correlator.resolve(response(99)) is False
        assert correlator.resolve(response(None)) is False
        assert not pending.future.done()
        correlator.abandon_all()

    @pytest.mark.asyncio
    async def test_duplicate_response_ignored(self):
        correlator = RequestCorrelator("a", ManualScheduler())
        pending = correlator.open("m", 10.0)

        assert correlator.resolve(response(pending.id, "first")) is True
        assert correlator.resolve(response(pending.id, "second")) is False
        assert pending.future.result().result == "first"

    @pytest.mark.asyncio
    async def test_timeout(self):
        scheduler = ManualScheduler()
        correlator = RequestCorrelator("math", scheduler)
        slow = correlator.open("tools/call", 5.0)
        other = correlator.open("tools/call", 20.0)

        await scheduler.advance(5.0)

        with pytest.raises(RequestTimeoutError) as exc_info:
            slow.future.result()
        assert "timed out after 5.0s" in str(exc_info.value)
        assert "'math'" in str(exc_info.value)
        assert not other.future.done()
        assert len(correlator) == 1

        # Late response for the expired request has nowhere to go
        assert correlator.resolve(response(slow.id)) is False
        correlator.abandon_all()

    @pytest.mark.asyncio
    async def test_fail_all(self):
        scheduler = ManualScheduler()
        correlator = RequestCorrelator("a", scheduler)
        requests = [correlator.open("m", 10.0) for _ in range(3)]

        assert correlator.fail_all(ProcessExitError("gone")) == 3

        for request in requests:
            assert isinstance(request.future.exception(), ProcessExitError)
        assert len(correlator) == 0
        assert scheduler.pending_timers == 0

    @pytest.mark.asyncio
    async def test_abandon_all_leaves_futures_unresolved(self):
        scheduler = ManualScheduler()
        correlator = RequestCorrelator("a", scheduler)
        requests = [correlator.open("m", 10.0) for _ in range(2)]

        assert correlator.abandon_all() == 2

        await scheduler.advance(60.0)
        assert not any(request.future.done() for request in requests)
        assert len(correlator) == 0
        assert all(request.abandoned for request in requests)

    @pytest.mark.asyncio
    async def test_discard(self):
        scheduler = ManualScheduler()
        correlator = RequestCorrelator("a", scheduler)
        pending = correlator.open("m", 10.0)

        assert correlator.discard(pending.id) is pending
        assert correlator.discard(pending.id) is None
        assert scheduler.pending_timers == 0
        assert not pending.future.done()

    @pytest.mark.asyncio
    async def test_issued_at_uses_scheduler_clock(self):
        scheduler = ManualScheduler(start=100.0)
        correlator = RequestCorrelator("a", scheduler)
        pending = correlator.open("m", 1.0)
        assert pending.issued_at == 100.0
        assert pending.timeout == 1.0
        correlator.abandon_all()
