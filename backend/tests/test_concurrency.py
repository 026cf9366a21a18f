"""Tests for the task-reentrant KeyedLock."""
import asyncio

import pytest

from chatrelay.concurrency import KeyedLock


class TestKeyedLock:

    @pytest.mark.asyncio
    async def test_same_key_is_mutually_exclusive(self):
        locks = KeyedLock()
        trace = []

        async def worker(name):
            async with locks.hold("conv-1"):
                trace.append(f"{name}-in")
                await asyncio.sleep(0.01)
                trace.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert trace in (
            ["a-in", "a-out", "b-in", "b-out"],
            ["b-in", "b-out", "a-in", "a-out"],
        )

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self):
        locks = KeyedLock()
        entered = asyncio.Event()

        async def holder():
            async with locks.hold("conv-1"):
                await asyncio.wait_for(entered.wait(), timeout=1)

        async def other():
            async with locks.hold("conv-2"):
                entered.set()

        await asyncio.gather(holder(), other())

    @pytest.mark.asyncio
    async def test_reentrant_within_one_task(self):
        locks = KeyedLock()
        async with locks.hold("conv-1"):
            async with locks.hold("conv-1"):
                assert locks.is_locked("conv-1")
            assert locks.is_locked("conv-1")
        assert not locks.is_locked("conv-1")

    @pytest.mark.asyncio
    async def test_entries_are_released(self):
        locks = KeyedLock()
        async with locks.hold(("conversation", "c1")):
            assert len(locks) == 1
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_released_after_exception(self):
        locks = KeyedLock()
        with pytest.raises(ValueError):
            async with locks.hold("k"):
                raise ValueError("boom")
        assert not locks.is_locked("k")
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_leak(self):
        locks = KeyedLock()
        release = asyncio.Event()

        async def holder():
            async with locks.hold("k"):
                await release.wait()

        holder_task = asyncio.create_task(holder())
        await asyncio.sleep(0)

        async def waiter():
            async with locks.hold("k"):
                pass

        waiter_task = asyncio.create_task(waiter())
        await asyncio.sleep(0)
        waiter_task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter_task

        release.set()
        await holder_task
        assert len(locks) == 0
