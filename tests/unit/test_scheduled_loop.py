# tests/unit/test_scheduled_loop.py
"""Tests for the precise interval loop."""

import asyncio

import pytest

from common.scheduler import ScheduledLoop


# ================================================================
# LIFECYCLE TESTS
# ================================================================
class TestScheduledLoopLifecycle:
    """Test start/stop/join."""

    def test_rejects_non_positive_interval(self):
        async def noop():
            pass

        with pytest.raises(ValueError):
            ScheduledLoop(0, noop)
        with pytest.raises(ValueError):
            ScheduledLoop(-1, noop)

    @pytest.mark.asyncio
    async def test_fires_repeatedly(self):
        calls = []

        async def callback():
            calls.append(1)

        loop = ScheduledLoop(0.02, callback, name="repeat")
        await loop.start()
        await asyncio.sleep(0.15)
        loop.stop()
        await loop.join(1.0)

        assert len(calls) >= 3
        assert loop.execution_count == len(calls)
        assert not loop.is_running

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self):
        async def noop():
            pass

        loop = ScheduledLoop(0.05, noop)
        await loop.start()
        task = loop._task
        await loop.start()
        assert loop._task is task
        loop.stop()
        await loop.join(1.0)

    @pytest.mark.asyncio
    async def test_stop_lets_inflight_callback_finish(self):
        started = asyncio.Event()
        finished = []

        async def slow():
            started.set()
            await asyncio.sleep(0.1)
            finished.append(1)

        loop = ScheduledLoop(0.02, slow, name="slow")
        await loop.start()
        await asyncio.wait_for(started.wait(), 1.0)

        loop.stop()
        await loop.join(1.0)

        assert finished == [1]

    @pytest.mark.asyncio
    async def test_join_without_start(self):
        async def noop():
            pass

        await ScheduledLoop(1.0, noop).join(0.1)


# ================================================================
# TIMING TESTS
# ================================================================
class TestScheduledLoopTiming:
    """Test non-overlap and error containment."""

    @pytest.mark.asyncio
    async def test_callbacks_never_overlap(self):
        in_flight = 0
        max_in_flight = 0

        async def slow():
            nonlocal in_flight, max_in_flight
            in_flight += 1
            max_in_flight = max(max_in_flight, in_flight)
            await asyncio.sleep(0.05)
            in_flight -= 1

        # Callback takes longer than the interval
        loop = ScheduledLoop(0.01, slow, name="overrun")
        await loop.start()
        await asyncio.sleep(0.3)
        loop.stop()
        await loop.join(1.0)

        assert max_in_flight == 1
        assert loop.skipped_count > 0

    @pytest.mark.asyncio
    async def test_callback_error_does_not_stop_loop(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")

        loop = ScheduledLoop(0.02, flaky, name="flaky")
        await loop.start()
        await asyncio.sleep(0.15)
        loop.stop()
        await loop.join(1.0)

        assert len(calls) >= 2
        assert loop.get_stats()["error_count"] == 1

    def test_early_wakeup_still_advances_one_interval(self):
        async def noop():
            pass

        loop = ScheduledLoop(1.0, noop, name="early")
        loop._due = 100.0

        loop._advance(99.9995)

        assert loop._due == 101.0
        assert loop.skipped_count == 0

    def test_overrun_counts_missed_boundaries(self):
        async def noop():
            pass

        loop = ScheduledLoop(1.0, noop, name="overrun-count")
        loop._due = 100.0

        loop._advance(102.5)

        assert loop._due == 103.0
        assert loop.skipped_count == 2
