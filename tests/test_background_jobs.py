"""Tests for the fire-and-forget background job queue."""

import asyncio

import pytest

from app.core.background_jobs import BackgroundJobQueue


class TestBackgroundJobQueue:
    @pytest.mark.asyncio
    async def test_runs_async_and_sync_jobs(self):
        queue = BackgroundJobQueue(maxsize=10, workers=2)
        seen = []

        async def async_job(value):
            seen.append(("async", value))

        def sync_job(value, suffix=""):
            seen.append(("sync", value + suffix))

        assert queue.enqueue("a", async_job, 1)
        assert queue.enqueue("b", sync_job, "x", suffix="!")
        await queue.join()

        assert sorted(seen) == [("async", 1), ("sync", "x!")]
        assert queue.stats["completed_count"] == 2
        assert not queue.is_pending("a")
        await queue.stop()

    @pytest.mark.asyncio
    async def test_pending_key_is_deduplicated(self):
        queue = BackgroundJobQueue(maxsize=10, workers=1)
        release = asyncio.Event()
        calls = []

        async def slow_job():
            calls.append(1)
            await release.wait()

        assert queue.enqueue("synthesis:user-1", slow_job) is True
        assert queue.enqueue("synthesis:user-1", slow_job) is False
        assert queue.is_pending("synthesis:user-1")

        release.set()
        await queue.join()

        assert calls == [1]
        assert queue.enqueue("synthesis:user-1", slow_job) is True
        await queue.join()
        await queue.stop()

    @pytest.mark.asyncio
    async def test_failed_job_goes_to_dead_letter(self):
        queue = BackgroundJobQueue(maxsize=10, workers=1)

        async def broken():
            raise ValueError("bad payload")

        queue.enqueue("style:user-1", broken)
        await queue.join()

        assert queue.stats["failed_count"] == 1
        letter = queue.dead_letters[-1]
        assert letter.key == "style:user-1"
        assert "ValueError: bad payload" in letter.error
        assert not queue.is_pending("style:user-1")
        await queue.stop()

    @pytest.mark.asyncio
    async def test_full_queue_rejects_job(self):
        queue = BackgroundJobQueue(maxsize=1, workers=1)
        release = asyncio.Event()

        async def blocker():
            await release.wait()

        queue.enqueue("first", blocker)
        await asyncio.sleep(0)  # worker takes the first job
        queue.enqueue("second", blocker)

        assert queue.enqueue("third", blocker) is False
        assert queue.dead_letters[-1].error == "queue full"

        release.set()
        await queue.join()
        await queue.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_workers(self):
        queue = BackgroundJobQueue(maxsize=10, workers=2)
        await queue.start()
        assert queue.stats["running"] is True

        await queue.stop()

        assert queue.stats["running"] is False
        assert queue.stats["pending"] == 0
