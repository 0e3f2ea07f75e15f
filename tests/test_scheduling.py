"""Tests for core.scheduling."""

import asyncio

import pytest

from core.scheduling import DEFAULT_VIRTUAL_EPOCH, LoopScheduler, VirtualScheduler


class TestVirtualScheduler:
    @pytest.mark.asyncio
    async def test_runs_due_callbacks_in_order(self):
        scheduler = VirtualScheduler()
        fired = []

        scheduler.call_later(20, fired.append, "b")
        scheduler.call_later(10, fired.append, "a")
        scheduler.call_later(30, fired.append, "c")

        await scheduler.advance(25)
        assert fired == ["a", "b"]
        assert scheduler.time() == DEFAULT_VIRTUAL_EPOCH + 25
        assert scheduler.pending() == 1

    @pytest.mark.asyncio
    async def test_clock_reads_timer_time_inside_callback(self):
        scheduler = VirtualScheduler(start=0.0)
        seen = []
        scheduler.call_later(7, lambda: seen.append(scheduler.time()))

        await scheduler.advance(100)
        assert seen == [7.0]

    @pytest.mark.asyncio
    async def test_cancelled_timer_does_not_fire(self):
        scheduler = VirtualScheduler()
        fired = []
        handle = scheduler.call_later(5, fired.append, "x")
        handle.cancel()

        await scheduler.advance(10)
        assert fired == []
        assert handle.cancelled

    @pytest.mark.asyncio
    async def test_awaits_coroutine_callbacks(self):
        scheduler = VirtualScheduler()
        fired = []

        async def tick():
            await asyncio.sleep(0)
            fired.append(scheduler.time())

        scheduler.call_later(3, tick)
        await scheduler.advance(3)
        assert fired == [DEFAULT_VIRTUAL_EPOCH + 3]

    @pytest.mark.asyncio
    async def test_rescheduling_callbacks_run_within_window(self):
        scheduler = VirtualScheduler(start=0.0)
        ticks = []

        def tick():
            ticks.append(scheduler.time())
            scheduler.call_later(10, tick)

        scheduler.call_later(10, tick)
        await scheduler.advance(35)
        assert ticks == [10.0, 20.0, 30.0]

    @pytest.mark.asyncio
    async def test_runaway_loop_raises(self):
        scheduler = VirtualScheduler(max_steps=50)

        def spin():
            scheduler.call_later(0, spin)

        scheduler.call_later(0, spin)
        with pytest.raises(RuntimeError, match="did not settle"):
            await scheduler.advance(1)


class TestLoopScheduler:
    @pytest.mark.asyncio
    async def test_fires_sync_and_async_callbacks(self):
        scheduler = LoopScheduler()
        fired = []

        async def coro_callback(value):
            fired.append(value)

        try:
            scheduler.call_later(0.01, fired.append, "sync")
            scheduler.call_later(0.02, coro_callback, "async")
            await asyncio.sleep(0.5)
        finally:
            scheduler.shutdown()

        assert sorted(fired) == ["async", "sync"]

    @pytest.mark.asyncio
    async def test_cancel_prevents_callback(self):
        scheduler = LoopScheduler()
        fired = []
        try:
            handle = scheduler.call_later(0.05, fired.append, "x")
            handle.cancel()
            await asyncio.sleep(0.3)
        finally:
            scheduler.shutdown()

        assert fired == []
