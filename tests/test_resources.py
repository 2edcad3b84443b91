"""
Tests for the timing lease.
"""

import asyncio

import pytest

from dance_timer.core.resources import TimingLease


class FakeHandle:
    def __init__(self, callback):
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    def __init__(self):
        self.handles = []

    def call_later(self, delay, callback, *args):
        handle = FakeHandle(callback)
        handle.delay = delay
        self.handles.append(handle)
        return handle


class TestTimingLease:
    """Test acquire, release and the hard maximum hold."""

    def test_acquire_and_release(self):
        scheduler = FakeScheduler()
        lease = TimingLease(max_hold_seconds=3600, scheduler=scheduler)
        assert not lease.held
        lease.acquire()
        assert lease.held
        assert scheduler.handles[0].delay == 3600
        lease.release()
        assert not lease.held
        assert scheduler.handles[0].cancelled

    def test_reacquire_restarts_timeout(self):
        scheduler = FakeScheduler()
        lease = TimingLease(scheduler=scheduler)
        lease.acquire()
        lease.acquire()
        assert scheduler.handles[0].cancelled
        assert not scheduler.handles[1].cancelled

    def test_expires_after_max_hold(self):
        scheduler = FakeScheduler()
        lease = TimingLease(scheduler=scheduler)
        lease.acquire()
        scheduler.handles[0].callback()
        assert not lease.held

    def test_release_without_acquire(self):
        lease = TimingLease(scheduler=FakeScheduler())
        lease.release()
        assert not lease.held

    def test_invalid_max_hold(self):
        with pytest.raises(ValueError):
            TimingLease(max_hold_seconds=0)

    @pytest.mark.asyncio
    async def test_uses_running_loop_by_default(self):
        lease = TimingLease(max_hold_seconds=0.01)
        lease.acquire()
        await asyncio.sleep(0.05)
        assert not lease.held
