"""
Unit tests for deadlines and sync task wrappers
"""

import asyncio

import pytest

from syncengine.app.provider_sync.tasks import Deadline, SyncTask


class TestDeadline:

    def test_remaining_never_negative(self):
        deadline = Deadline(0)
        assert deadline.remaining() == 0.0
        assert deadline.expired

    @pytest.mark.asyncio
    async def test_run_returns_result_within_deadline(self):
        async def work():
            return 42

        assert await Deadline(5).run(work()) == 42

    @pytest.mark.asyncio
    async def test_expired_deadline_raises_without_running(self):
        started = []

        async def work():
            started.append(True)

        with pytest.raises(asyncio.TimeoutError):
            await Deadline(0).run(work())
        assert started == []

    @pytest.mark.asyncio
    async def test_slow_work_times_out(self):
        with pytest.raises(asyncio.TimeoutError):
            await Deadline(0.05).run(asyncio.sleep(1))


class TestSyncTask:

    @pytest.mark.asyncio
    async def test_run_inline(self):
        async def work():
            return "done"

        assert await SyncTask(work, name="inline").run() == "done"

    @pytest.mark.asyncio
    async def test_detach_returns_same_task(self):
        async def work():
            await asyncio.sleep(0)
            return "done"

        task = SyncTask(work, name="detached")
        first = task.detach()

        assert task.detach() is first
        assert await first == "done"

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        async def work():
            await asyncio.sleep(10)

        task = SyncTask(work, name="cancelled").detach()
        await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
