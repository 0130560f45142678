import asyncio

import pytest

from anonchat.services.locks import KeyedLock


@pytest.mark.asyncio
async def test_hold_serializes_overlapping_keys():
    locks = KeyedLock()
    order = []

    async def worker(name, *keys):
        async with locks.hold(*keys):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("first", "a", "b"), worker("second", "b", "c"))

    assert order in (
        ["first-in", "first-out", "second-in", "second-out"],
        ["second-in", "second-out", "first-in", "first-out"],
    )


@pytest.mark.asyncio
async def test_opposite_key_order_does_not_deadlock():
    locks = KeyedLock()

    async def worker(*keys):
        for _ in range(5):
            async with locks.hold(*keys):
                await asyncio.sleep(0)

    await asyncio.wait_for(asyncio.gather(worker("a", "b"), worker("b", "a")), timeout=2)


@pytest.mark.asyncio
async def test_unused_locks_are_dropped():
    locks = KeyedLock()

    async with locks.hold("a", "b"):
        assert locks.locked("a")
        assert len(locks) == 2

    assert len(locks) == 0
    assert not locks.locked("a")


@pytest.mark.asyncio
async def test_disjoint_keys_run_concurrently():
    locks = KeyedLock()
    inside = asyncio.Event()

    async def holder():
        async with locks.hold("a"):
            inside.set()
            await asyncio.sleep(0.05)

    task = asyncio.create_task(holder())
    await inside.wait()
    async with locks.hold("b"):
        assert locks.locked("a")
    await task
