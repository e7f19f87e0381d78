"""Tests for recurring jobs."""

import pytest

from okr_sync.utils.scheduler import RecurringJob


class TestRecurringJob:

    @pytest.mark.asyncio
    async def test_start_is_idempotent_and_stop_clears(self):
        async def noop():
            return None

        job = RecurringJob("test-job", noop, 5)
        try:
            assert job.start() is True
            assert job.start() is False
            assert job.running
            assert job.next_run_time is not None
        finally:
            assert job.stop() is True

        assert not job.running
        assert job.next_run_time is None
        assert job.stop() is False

    @pytest.mark.asyncio
    async def test_run_once_swallows_errors(self):
        calls = []

        async def failing():
            calls.append(1)
            raise RuntimeError("boom")

        job = RecurringJob("failing-job", failing, 5)
        await job.run_once()
        await job.run_once()

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_reschedule_running_job(self):
        async def noop():
            return None

        job = RecurringJob("resched-job", noop, 5)
        job.start()
        try:
            job.reschedule(10)
            assert job.running
            assert job.interval_minutes == 10
        finally:
            job.stop()
