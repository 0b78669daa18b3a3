"""Tests for the deduplicating work queue."""

import asyncio

import pytest

from tier_operator.workqueue import WorkQueue


class TestWorkQueue:
    """Tests for WorkQueue."""

    @pytest.mark.asyncio
    async def test_add_deduplicates(self) -> None:
        """Test that a key queued twice is handed out once."""
        queue = WorkQueue()
        queue.add("base")
        queue.add("base")
        queue.add("advanced")

        assert len(queue) == 2
        assert await queue.get() == "base"
        assert await queue.get() == "advanced"
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_key_added_while_processing_is_requeued_on_done(self) -> None:
        """Test that a key is never handed to two workers at once."""
        queue = WorkQueue()
        queue.add("base")
        key = await queue.get()

        queue.add("base")
        assert len(queue) == 0

        queue.done(key)
        assert len(queue) == 1
        assert await queue.get() == "base"

    @pytest.mark.asyncio
    async def test_done_without_readd_does_not_requeue(self) -> None:
        queue = WorkQueue()
        queue.add("base")
        queue.done(await queue.get())

        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_add_after(self) -> None:
        queue = WorkQueue()
        queue.add_after("base", 0.01)

        assert len(queue) == 0
        assert await asyncio.wait_for(queue.get(), timeout=1) == "base"

    @pytest.mark.asyncio
    async def test_rate_limited_backoff_grows_and_caps(self) -> None:
        """Test that failure delays double up to the maximum."""
        queue = WorkQueue(base_delay_seconds=5, max_delay_seconds=30)

        delays = [queue.add_rate_limited("base") for _ in range(5)]

        assert delays == [5, 10, 20, 30, 30]
        assert queue.failures("base") == 5
        queue.shut_down()

    @pytest.mark.asyncio
    async def test_forget_resets_backoff(self) -> None:
        queue = WorkQueue(base_delay_seconds=5, max_delay_seconds=30)
        queue.add_rate_limited("base")
        queue.add_rate_limited("base")

        queue.forget("base")

        assert queue.failures("base") == 0
        assert queue.add_rate_limited("base") == 5
        queue.shut_down()

    @pytest.mark.asyncio
    async def test_shut_down_releases_all_waiters(self) -> None:
        """Test that every blocked get() returns None after shutdown."""
        queue = WorkQueue()
        waiters = [asyncio.create_task(queue.get()) for _ in range(3)]
        await asyncio.sleep(0)

        queue.shut_down()

        assert await asyncio.gather(*waiters) == [None, None, None]
        assert queue.shutting_down

    @pytest.mark.asyncio
    async def test_shut_down_drops_pending_work(self) -> None:
        queue = WorkQueue()
        queue.add("base")
        queue.add_after("advanced", 0.01)

        queue.shut_down()
        queue.add("other")

        assert await queue.get() is None
        await asyncio.sleep(0.02)
        assert await queue.get() is None

    def test_invalid_delays(self) -> None:
        with pytest.raises(ValueError):
            WorkQueue(base_delay_seconds=0)
        with pytest.raises(ValueError):
            WorkQueue(base_delay_seconds=10, max_delay_seconds=5)
